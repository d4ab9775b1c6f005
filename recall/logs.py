from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_handler: logging.Handler | None = None


def configure_logging(log_path: str | None, level: str = "INFO") -> logging.Handler | None:
    """Route `recall.*` loggers to a rotating file; never to the terminal.

    Hooks run `recall save --auto` at session end, so diagnostics go to the
    log file only. Calling this again replaces the previous handler.
    """

    global _handler
    root = logging.getLogger("recall")
    if _handler is not None:
        root.removeHandler(_handler)
        _handler.close()
        _handler = None
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not log_path:
        _handler = logging.NullHandler()
        root.addHandler(_handler)
        return None
    path = Path(log_path).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = RotatingFileHandler(
            path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
        )
    except OSError:
        return None
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    _handler = handler
    return handler
