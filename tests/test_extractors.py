from __future__ import annotations

import datetime as dt
import hashlib
import json
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from conftest import make_event

from recall.events import Event
from recall.extractors import (
    ClaudeCodeExtractor,
    CodexExtractor,
    CursorExtractor,
    GeminiExtractor,
    default_extractors,
    extract_all_events,
    get_active_extractors,
    get_installed_extractors,
    select_extractors,
)
from recall.extractors.claude_code import encode_project_path
from recall.extractors.cursor import workspace_storage_dir
from recall.normalize import Normalizer, stable_event_id


def _write_jsonl(path: Path, lines: list[object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(line if isinstance(line, str) else json.dumps(line) for line in lines))


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "fake-home"
    path.mkdir()
    return path


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "work" / "app"
    path.mkdir(parents=True)
    return path


def test_encode_project_path() -> None:
    assert encode_project_path(Path("/Users/ray/my.app")) == "-Users-ray-my-app"


def test_claude_code_reads_sessions_with_both_roles(home: Path, repo: Path) -> None:
    session_dir = home / ".claude" / "projects" / encode_project_path(repo)
    _write_jsonl(
        session_dir / "abc.jsonl",
        [
            {
                "type": "user",
                "sessionId": "abc",
                "timestamp": "2025-01-01T10:00:00Z",
                "message": {"role": "user", "content": "Fix the login bug"},
            },
            "{corrupt",
            {
                "type": "assistant",
                "sessionId": "abc",
                "timestamp": "2025-01-01T10:05:00Z",
                "message": {
                    "role": "assistant",
                    "content": [
                        {"type": "text", "text": 'Fixed it, tests working. Edit: "app/login.py"'}
                    ],
                },
            },
        ],
    )
    _write_jsonl(
        session_dir / "lonely.jsonl",
        [{"type": "user", "timestamp": "2025-01-01T11:00:00Z", "message": {"content": "hi"}}],
    )
    extractor = ClaudeCodeExtractor(repo_root=repo, home=home)

    assert extractor.is_installed()
    assert extractor.is_active()
    events = extractor.extract_events(None, Normalizer("ray"))

    assert len(events) == 1
    event = events[0]
    assert event.id == stable_event_id("claude-code", "abc")
    assert event.ts == "2025-01-01T10:05:00.000Z"
    assert event.type == "error_resolved"
    assert event.summary == "Fix the login bug"
    assert event.files == ("app/login.py",)

    since = dt.datetime(2025, 1, 1, 10, 5, tzinfo=dt.UTC)
    assert extractor.extract_events(since, Normalizer("ray")) == []


def test_claude_code_summary_line_is_truncated(home: Path, repo: Path) -> None:
    session_dir = home / ".claude" / "projects" / encode_project_path(repo)
    _write_jsonl(
        session_dir / "long.jsonl",
        [
            {"type": "summary", "summary": "word " * 300},
            {"type": "user", "sessionId": "long", "timestamp": "2025-01-01T10:00:00Z", "message": {"content": "go"}},
            {"type": "assistant", "sessionId": "long", "timestamp": "2025-01-01T10:01:00Z", "message": {"content": "ok"}},
        ],
    )

    events = ClaudeCodeExtractor(repo_root=repo, home=home).extract_events(None, Normalizer("ray"))

    assert len(events) == 1
    assert events[0].summary.endswith("...")
    assert len(events[0].summary) <= 203


def test_claude_code_inactive_without_project_dir(home: Path, repo: Path) -> None:
    (home / ".claude").mkdir()
    extractor = ClaudeCodeExtractor(repo_root=repo, home=home)
    assert extractor.is_installed()
    assert not extractor.is_active()
    assert extractor.extract_events(None, Normalizer("ray")) == []


def test_codex_filters_sessions_by_cwd(home: Path, repo: Path, tmp_path: Path) -> None:
    day = home / ".codex" / "sessions" / "2025" / "01" / "02"
    _write_jsonl(
        day / "rollout-2025-01-02-a.jsonl",
        [
            {
                "timestamp": "2025-01-02T09:00:00Z",
                "type": "session_meta",
                "payload": {"id": "codex-1", "cwd": str(repo)},
            },
            {
                "timestamp": "2025-01-02T09:00:01Z",
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": "<environment_context>x"}],
                },
            },
            {
                "timestamp": "2025-01-02T09:00:02Z",
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": "Add pagination to the API"}],
                },
            },
        ],
    )
    other = tmp_path / "elsewhere"
    other.mkdir()
    _write_jsonl(
        day / "rollout-2025-01-02-b.jsonl",
        [
            {"timestamp": "2025-01-02T09:10:00Z", "type": "session_meta", "payload": {"id": "codex-2", "cwd": str(other)}},
            {"timestamp": "2025-01-02T09:10:01Z", "type": "response_item", "payload": {"type": "message", "role": "user", "content": "Unrelated"}},
        ],
    )
    extractor = CodexExtractor(repo_root=repo, home=home)

    events = extractor.extract_events(None, Normalizer("ray"))

    assert [event.summary for event in events] == ["Add pagination to the API"]
    assert events[0].id == stable_event_id("codex", "codex-1")
    assert events[0].ts == "2025-01-02T09:00:02.000Z"


def test_gemini_reads_chats_for_project_hash(home: Path, repo: Path) -> None:
    digest = hashlib.sha256(str(repo).encode("utf-8")).hexdigest()
    chat = home / ".gemini" / "tmp" / digest / "chats" / "session-1.json"
    chat.parent.mkdir(parents=True)
    chat.write_text(
        json.dumps(
            {
                "sessionId": "g1",
                "startTime": "2025-01-03T08:00:00Z",
                "lastUpdated": "2025-01-03T08:30:00Z",
                "messages": [
                    {"type": "user", "content": "Explain the cache layer"},
                    {"type": "gemini", "content": "It is an LRU."},
                ],
            }
        )
    )
    (chat.parent / "broken.json").write_text("{nope")
    extractor = GeminiExtractor(repo_root=repo, home=home)

    assert extractor.is_active()
    events = extractor.extract_events(None, Normalizer("ray"))

    assert len(events) == 1
    assert events[0].summary == "Explain the cache layer"
    assert events[0].ts == "2025-01-03T08:30:00.000Z"


def test_gemini_undecodable_chat_is_dropped_not_fatal(home: Path, repo: Path) -> None:
    digest = hashlib.sha256(str(repo).encode("utf-8")).hexdigest()
    chats = home / ".gemini" / "tmp" / digest / "chats"
    chats.mkdir(parents=True)
    (chats / "good.json").write_text(
        json.dumps(
            {
                "sessionId": "g1",
                "lastUpdated": "2025-01-03T08:30:00Z",
                "messages": [{"type": "user", "content": "Tune the cache"}],
            }
        )
    )
    (chats / "latin1.json").write_bytes(b'{"sessionId": "g2", "messages": "\xff"}')

    report = extract_all_events([GeminiExtractor(repo_root=repo, home=home)], user="ray")

    assert report.failures == {}
    assert report.counts == {"gemini": 1}
    assert report.stats["gemini"].dropped_unreadable == 1
    assert report.dropped == 1


def test_claude_code_unreadable_session_is_dropped_not_fatal(home: Path, repo: Path) -> None:
    session_dir = home / ".claude" / "projects" / encode_project_path(repo)
    _write_jsonl(
        session_dir / "ok.jsonl",
        [
            {"type": "user", "sessionId": "ok", "timestamp": "2025-01-01T10:00:00Z", "message": {"content": "Add retries"}},
            {"type": "assistant", "sessionId": "ok", "timestamp": "2025-01-01T10:01:00Z", "message": {"content": "Done"}},
        ],
    )
    (session_dir / "odd.jsonl").mkdir()
    normalizer = Normalizer("ray")

    events = ClaudeCodeExtractor(repo_root=repo, home=home).extract_events(None, normalizer)

    assert [event.summary for event in events] == ["Add retries"]
    assert normalizer.stats.dropped_unreadable == 1
    assert normalizer.stats.dropped == 1


def _cursor_workspace(home: Path, repo: Path, items: dict[str, object]) -> Path:
    workspace = workspace_storage_dir(home) / "0f3c"
    workspace.mkdir(parents=True)
    (workspace / "workspace.json").write_text(json.dumps({"folder": repo.as_uri()}))
    db_path = workspace / "state.vscdb"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    for key, value in items.items():
        conn.execute("INSERT INTO ItemTable(key, value) VALUES (?, ?)", (key, json.dumps(value)))
    conn.commit()
    conn.close()
    return db_path


def test_cursor_reads_composers_read_only(
    home: Path, repo: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("APPDATA", raising=False)
    db_path = _cursor_workspace(
        home,
        repo,
        {
            "composer.composerData": {
                "allComposers": [
                    {
                        "composerId": "c1",
                        "name": "Refactor auth middleware",
                        "createdAt": 1735725600000,
                        "lastUpdatedAt": 1735729200000,
                    },
                    {"composerId": "c2", "name": "No timestamps"},
                ]
            }
        },
    )
    before = db_path.read_bytes()
    extractor = CursorExtractor(repo_root=repo, home=home)

    assert extractor.is_installed()
    assert extractor.is_active()
    events = extractor.extract_events(None, Normalizer("ray"))

    assert [event.summary for event in events] == ["Refactor auth middleware"]
    assert events[0].ts == "2025-01-01T11:00:00.000Z"
    assert db_path.read_bytes() == before


def test_cursor_falls_back_to_prompt_history(
    home: Path, repo: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("APPDATA", raising=False)
    _cursor_workspace(
        home,
        repo,
        {"aiService.prompts": [{"text": "hello there"}, {"text": "hello there"}, {"text": "  "}]},
    )
    extractor = CursorExtractor(repo_root=repo, home=home)

    events = extractor.extract_events(None, Normalizer("ray"))

    assert [event.summary for event in events] == ["hello there"]


def test_default_extractors_are_priority_ordered(repo: Path, home: Path) -> None:
    names = [extractor.name for extractor in default_extractors(repo, home)]
    assert names == ["claude-code", "cursor", "codex", "gemini"]


@dataclass
class StubExtractor:
    name: str
    priority: int
    events: list[Event] = field(default_factory=list)
    installed: bool = True
    active: bool = True
    error: Exception | None = None
    calls: list[dt.datetime | None] = field(default_factory=list)

    def is_installed(self) -> bool:
        return self.installed

    def is_active(self) -> bool:
        if isinstance(self.error, RuntimeError):
            raise self.error
        return self.active

    def extract_events(self, since: dt.datetime | None, normalizer: Normalizer) -> list[Event]:
        self.calls.append(since)
        if self.error is not None:
            raise self.error
        return [event for event in self.events if since is None or event.timestamp > since]


def test_extract_all_events_orders_across_tools() -> None:
    first = StubExtractor(
        "claude-code",
        1,
        [
            make_event("x2", "2025-01-01T10:02:00Z"),
            make_event("x1", "2025-01-01T10:01:00Z"),
        ],
    )
    second = StubExtractor("cursor", 2, [make_event("y1", "2025-01-01T10:00:00Z", tool="cursor")])

    report = extract_all_events([second, first])

    assert [event.ts[11:16] for event in report.events] == ["10:00", "10:01", "10:02"]
    assert report.counts == {"claude-code": 2, "cursor": 1}


def test_extract_all_events_breaks_ties_by_priority_then_id() -> None:
    ts = "2025-01-01T10:00:00Z"
    low = StubExtractor("gemini", 4, [make_event("a", ts, tool="gemini")])
    high = StubExtractor("claude-code", 1, [make_event("z", ts), make_event("b", ts)])

    report = extract_all_events([low, high])

    assert [(event.tool, event.id) for event in report.events] == [
        ("claude-code", "b"),
        ("claude-code", "z"),
        ("gemini", "a"),
    ]


def test_extractor_failure_is_isolated() -> None:
    healthy = StubExtractor("codex", 3, [make_event("c1", "2025-01-01T10:00:00Z", tool="codex")])
    broken = StubExtractor("cursor", 2, error=OSError("database is locked"))

    report = extract_all_events([healthy, broken])

    assert [event.id for event in report.events] == ["c1"]
    assert "cursor" in report.failures
    assert "database is locked" in report.failures["cursor"]
    assert report.counts["cursor"] == 0


def test_checkpoints_take_precedence_over_since() -> None:
    extractor = StubExtractor(
        "claude-code",
        1,
        [make_event("a", "2025-01-01T10:00:00Z"), make_event("b", "2025-01-01T10:05:00Z")],
    )
    checkpoint = dt.datetime(2025, 1, 1, 10, 1, tzinfo=dt.UTC)

    report = extract_all_events([extractor], checkpoints={"claude-code": checkpoint})

    assert [event.id for event in report.events] == ["b"]
    assert extractor.calls == [checkpoint]


def test_selection_filters_and_first_registration_wins() -> None:
    preferred = StubExtractor("claude-code", 1)
    shadowed = StubExtractor("claude-code", 5)
    missing = StubExtractor("gemini", 4, installed=False)
    idle = StubExtractor("codex", 3, active=False)
    flaky = StubExtractor("cursor", 2, error=RuntimeError("probe exploded"))
    extractors = [missing, shadowed, idle, flaky, preferred]

    assert select_extractors(extractors) == [preferred, flaky, idle, missing]
    assert [item.name for item in get_installed_extractors(extractors)] == [
        "claude-code",
        "cursor",
        "codex",
    ]
    assert get_active_extractors(extractors) == [preferred]
