from __future__ import annotations

import json

import httpx
import pytest
from conftest import make_event

from recall.config import RecallConfig
from recall.errors import SummarizationError
from recall.summarizer import (
    AnthropicSummarizer,
    ApiSummarizer,
    OpenAISummarizer,
    SummarizationClient,
    build_summarizer,
    build_user_prompt,
    format_event_line,
    resolve_backend_name,
)

EVENTS = [
    make_event("a", "2025-01-01T09:00:00Z", summary="Scaffold the API"),
    make_event(
        "b",
        "2025-01-01T10:00:00Z",
        type="decision",
        summary="Use JWT",
        files=("app/auth.py",),
    ),
]


def _api(handler, retries: int = 0) -> ApiSummarizer:
    return ApiSummarizer(
        "https://api.example.test/",
        "tok",
        retries=retries,
        transport=httpx.MockTransport(handler),
    )


def test_format_event_line() -> None:
    assert (
        format_event_line(EVENTS[1])
        == "[2025-01-01 10:00:00] DECISION (claude-code, ray@example.com): Use JWT | Files: app/auth.py"
    )
    prompt = build_user_prompt(EVENTS, "demo")
    assert prompt.startswith("Project: demo\nSessions: 1\nLast Updated: 2025-01-01")


def test_api_summarizer_posts_events() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"small": "# S", "medium": "# M"})

    assert _api(handler).summarize(EVENTS, "demo") == ("# S", "# M")
    assert seen["url"] == "https://api.example.test/summarize"
    assert seen["auth"] == "Bearer tok"
    assert seen["body"]["projectName"] == "demo"
    assert [item["id"] for item in seen["body"]["events"]] == ["a", "b"]


def test_api_summarizer_reports_service_error() -> None:
    handler = lambda request: httpx.Response(200, json={"error": "quota exceeded"})  # noqa: E731
    with pytest.raises(SummarizationError, match="quota exceeded"):
        _api(handler).summarize(EVENTS, "demo")


def test_api_summarizer_retries_then_gives_up() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(SummarizationError, match="unavailable"):
        _api(handler, retries=2).summarize(EVENTS, "demo")
    assert len(calls) == 3


def test_client_falls_back_when_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    summary = SummarizationClient(_api(handler)).summarize(EVENTS, "demo")

    assert summary.source == "template"
    assert summary.small.startswith("# Team Context")
    assert "Use JWT" in summary.small
    assert summary.medium.startswith("# Session History")


def test_client_falls_back_on_empty_tier() -> None:
    handler = lambda request: httpx.Response(200, json={"small": "  ", "medium": "# M"})  # noqa: E731
    summary = SummarizationClient(_api(handler)).summarize(EVENTS, "demo")
    assert summary.source == "template"


def test_client_uses_backend_output() -> None:
    handler = lambda request: httpx.Response(200, json={"small": "# S", "medium": "# M"})  # noqa: E731
    summary = SummarizationClient(_api(handler)).summarize(EVENTS, "demo")
    assert (summary.small, summary.medium, summary.source) == ("# S", "# M", "api")


def test_llm_backends_without_keys_fall_back() -> None:
    for backend in (OpenAISummarizer(None), AnthropicSummarizer(None)):
        summary = SummarizationClient(backend).summarize(EVENTS, "demo")
        assert summary.source == "template"


class FakeCompletions:
    def create(self, **kwargs):
        class Message:
            content = f"summary for {kwargs['model']}"

        class Choice:
            message = Message()

        class Response:
            choices = [Choice()]

        return Response()


class FakeChat:
    completions = FakeCompletions()


class FakeOpenAI:
    chat = FakeChat()


def test_openai_backend_calls_chat_completions() -> None:
    backend = OpenAISummarizer("sk-test", "gpt-test")
    backend.client = FakeOpenAI()

    small, medium = backend.summarize(EVENTS, "demo")

    assert small == medium == "summary for gpt-test"


@pytest.mark.parametrize(
    ("config", "expected"),
    [
        (RecallConfig(), "template"),
        (RecallConfig(api_token="tok"), "api"),
        (RecallConfig(api_token="tok", summarizer="Template"), "template"),
        (RecallConfig(summarizer="openai"), "openai"),
        (RecallConfig(summarizer="bogus"), "template"),
    ],
)
def test_resolve_backend_name(config: RecallConfig, expected: str) -> None:
    assert resolve_backend_name(config) == expected


def test_build_summarizer_template_has_no_backend() -> None:
    assert build_summarizer(RecallConfig()).backend is None
    assert isinstance(build_summarizer(RecallConfig(api_token="t")).backend, ApiSummarizer)
