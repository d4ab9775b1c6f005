from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .config import RecallConfig
from .errors import SummarizationError
from .events import Event
from .snapshots import render_medium, render_small

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-haiku-4-5"
DEFAULT_MAX_TOKENS = 4000

SMALL_SUMMARY_PROMPT = """You write concise team context for AI coding assistants.
An assistant reads your output at the start of every session, so it must be
scannable in seconds. Produce markdown with these sections:

# <Project> - Team Context
Sessions: <count> | Last: <date>
## What It Is
## Current Status (phase, what works, what is blocked)
## Recent Decisions (each with the reason, not just the outcome)
## Don't Repeat These Mistakes
## Key Files

Be specific: names, paths, versions. Keep it under roughly 3k tokens."""

MEDIUM_SUMMARY_PROMPT = """You write the development history of a project for AI coding assistants.
Group the events into sessions, most recent first. For each session produce:

## <Date>: <Session title>
### What Was Done
### Key Decisions (with reasoning)
### Files Changed
### Gotchas/Lessons
### What Failed (tried, failed because, don't repeat)

Be specific about files. It should read like a development journal."""


@dataclass(frozen=True, slots=True)
class Summary:
    small: str
    medium: str
    source: str


class SummaryBackend(Protocol):
    name: str

    def summarize(self, events: Sequence[Event], project_name: str) -> tuple[str, str]: ...


def format_event_line(event: Event) -> str:
    date, _, rest = event.ts.partition("T")
    clock = rest.split(".", 1)[0].rstrip("Z")
    files = f" | Files: {', '.join(event.files)}" if event.files else ""
    return f"[{date} {clock}] {event.type.upper()} ({event.tool}, {event.user}): {event.summary}{files}"


def build_user_prompt(events: Sequence[Event], project_name: str) -> str:
    sessions = sum(1 for event in events if event.type == "session") or len(events)
    last = events[-1].day if events else ""
    body = "\n".join(format_event_line(event) for event in events)
    return (
        f"Project: {project_name or 'Project'}\n"
        f"Sessions: {sessions}\n"
        f"Last Updated: {last}\n\n"
        "Here are the development events to summarize:\n\n"
        f"{body}\n\n"
        "Generate the summary now."
    )


class TemplateSummarizer:
    name = "template"

    def summarize(self, events: Sequence[Event], project_name: str) -> tuple[str, str]:
        return render_small(events), render_medium(events)


class ApiSummarizer:
    """Remote summarization endpoint: POST /summarize {events, projectName}."""

    name = "api"

    def __init__(
        self,
        base_url: str,
        token: str | None,
        *,
        timeout_s: float = 15.0,
        retries: int = 1,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = f"{base_url.rstrip('/')}/summarize"
        self.token = token
        self.timeout_s = timeout_s
        self.retries = max(0, retries)
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def summarize(self, events: Sequence[Event], project_name: str) -> tuple[str, str]:
        body = {"events": [event.to_dict() for event in events], "projectName": project_name}
        last_error: Exception | None = None
        with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
            for attempt in range(self.retries + 1):
                try:
                    response = client.post(self.url, json=body, headers=self._headers())
                except httpx.HTTPError as exc:
                    last_error = exc
                    logger.info(
                        "summarize request failed",
                        extra={"attempt": attempt + 1, "error": str(exc)},
                    )
                    continue
                if response.status_code >= 500:
                    last_error = SummarizationError(f"summarize returned {response.status_code}")
                    continue
                return self._parse(response)
        raise SummarizationError(f"summarize endpoint unavailable: {last_error}")

    @staticmethod
    def _parse(response: httpx.Response) -> tuple[str, str]:
        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise SummarizationError("summarize returned non-json response") from exc
        if not isinstance(payload, dict):
            raise SummarizationError("summarize returned unexpected payload")
        if response.status_code >= 400 or payload.get("error"):
            raise SummarizationError(
                f"summarize failed ({response.status_code}): {payload.get('error') or 'unknown'}"
            )
        small = payload.get("small")
        medium = payload.get("medium")
        if not isinstance(small, str) or not isinstance(medium, str):
            raise SummarizationError("summarize response missing tiers")
        return small, medium


class OpenAISummarizer:
    name = "openai"

    def __init__(self, api_key: str | None, model: str | None = None, *, timeout_s: float = 60.0):
        self.model = model or DEFAULT_OPENAI_MODEL
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.timeout_s = timeout_s
        self.client: Any = None

    def _client(self) -> Any:
        if self.client is None:
            if not self.api_key:
                raise SummarizationError("missing openai api key")
            from openai import OpenAI

            self.client = OpenAI(api_key=self.api_key, timeout=self.timeout_s)
        return self.client

    def _call(self, system: str, prompt: str) -> str:
        try:
            resp = self._client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=0,
                max_tokens=DEFAULT_MAX_TOKENS,
            )
        except SummarizationError:
            raise
        except Exception as exc:
            raise SummarizationError(f"openai call failed: {exc}") from exc
        return resp.choices[0].message.content or ""

    def summarize(self, events: Sequence[Event], project_name: str) -> tuple[str, str]:
        prompt = build_user_prompt(events, project_name)
        return self._call(SMALL_SUMMARY_PROMPT, prompt), self._call(MEDIUM_SUMMARY_PROMPT, prompt)


class AnthropicSummarizer:
    name = "anthropic"

    def __init__(self, api_key: str | None, model: str | None = None, *, timeout_s: float = 60.0):
        self.model = model or DEFAULT_ANTHROPIC_MODEL
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.timeout_s = timeout_s
        self.client: Any = None

    def _client(self) -> Any:
        if self.client is None:
            if not self.api_key:
                raise SummarizationError("missing anthropic api key")
            import anthropic

            self.client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout_s)
        return self.client

    def _call(self, system: str, prompt: str) -> str:
        try:
            resp = self._client().messages.create(
                model=self.model,
                system=system,
                messages=[{"role": "user", "content": prompt}],
                temperature=0,
                max_tokens=DEFAULT_MAX_TOKENS,
            )
        except SummarizationError:
            raise
        except Exception as exc:
            raise SummarizationError(f"anthropic call failed: {exc}") from exc
        return "".join(
            getattr(block, "text", "") for block in resp.content if getattr(block, "type", "") == "text"
        )

    def summarize(self, events: Sequence[Event], project_name: str) -> tuple[str, str]:
        prompt = build_user_prompt(events, project_name)
        return self._call(SMALL_SUMMARY_PROMPT, prompt), self._call(MEDIUM_SUMMARY_PROMPT, prompt)


class SummarizationClient:
    """Produces the small/medium tiers, degrading to the template on any failure.

    Stateless apart from the backend's network call.
    """

    def __init__(self, backend: SummaryBackend | None = None) -> None:
        self.backend = backend
        self.template = TemplateSummarizer()

    def summarize(self, events: Sequence[Event], project_name: str = "") -> Summary:
        if self.backend is None or not events:
            small, medium = self.template.summarize(events, project_name)
            return Summary(small=small, medium=medium, source=self.template.name)
        try:
            small, medium = self.backend.summarize(events, project_name)
            if not small.strip() or not medium.strip():
                raise SummarizationError("summarizer returned an empty tier")
        except SummarizationError as exc:
            logger.warning(
                "summarizer failed; using template",
                extra={"backend": self.backend.name, "error": str(exc)},
            )
            small, medium = self.template.summarize(events, project_name)
            return Summary(small=small, medium=medium, source=self.template.name)
        return Summary(small=small, medium=medium, source=self.backend.name)


def resolve_backend_name(config: RecallConfig) -> str:
    name = (config.summarizer or "").strip().lower()
    if name in {"api", "openai", "anthropic", "template"}:
        return name
    return "api" if config.api_token else "template"


def build_summarizer(
    config: RecallConfig,
    *,
    transport: httpx.BaseTransport | None = None,
) -> SummarizationClient:
    name = resolve_backend_name(config)
    backend: SummaryBackend | None
    if name == "api":
        backend = ApiSummarizer(
            config.api_url,
            config.api_token,
            timeout_s=config.http_timeout_s,
            retries=config.http_retries,
            transport=transport,
        )
    elif name == "openai":
        backend = OpenAISummarizer(config.summarizer_api_key, config.summarizer_model)
    elif name == "anthropic":
        backend = AnthropicSummarizer(config.summarizer_api_key, config.summarizer_model)
    else:
        backend = None
    return SummarizationClient(backend)
