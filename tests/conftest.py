from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from recall.events import Event

RECALL_ENV = (
    "RECALL_API_URL",
    "RECALL_API_TOKEN",
    "RECALL_USER_EMAIL",
    "RECALL_MEMORY_DIR",
    "RECALL_WINDOW_SIZE",
    "RECALL_SUMMARIZER",
    "RECALL_SUMMARIZER_MODEL",
    "RECALL_SUMMARIZER_API_KEY",
    "RECALL_HTTP_TIMEOUT_S",
    "RECALL_HTTP_RETRIES",
    "RECALL_SYNC_MAX_ATTEMPTS",
    "RECALL_GIT_PUSH",
    "RECALL_TEAM_KEY",
    "RECALL_TEAM_KEY_VERSION",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
)


@pytest.fixture(autouse=True)
def _isolate_recall_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("RECALL_CONFIG", str(home / ".recall" / "config.json"))
    monkeypatch.setenv("RECALL_STATE_DB", str(home / ".recall" / "state.sqlite"))
    monkeypatch.setenv("RECALL_LOG_PATH", str(home / ".recall" / "recall.log"))
    for name in RECALL_ENV:
        monkeypatch.delenv(name, raising=False)


def make_event(
    event_id: str,
    ts: str,
    *,
    tool: str = "claude-code",
    type: str = "session",
    summary: str = "",
    user: str = "ray@example.com",
    files: tuple[str, ...] = (),
) -> Event:
    return Event.from_dict(
        {
            "id": event_id,
            "ts": ts,
            "tool": tool,
            "type": type,
            "summary": summary,
            "user": user,
            "files": list(files),
        }
    )


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def git_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Ray")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "ray@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Ray")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "ray@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "--quiet")
    git(repo, "config", "user.email", "ray@example.com")
    git(repo, "config", "user.name", "Ray")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("demo\n")
    git(repo, "add", "README.md")
    git(repo, "commit", "--quiet", "-m", "init")
    return Path(git(repo, "rev-parse", "--show-toplevel"))
