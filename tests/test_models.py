from datetime import datetime, timedelta, timezone

import pytest

from sessiondeck.models import AiMode, HistoryEntry, RestoreEntry, Session, SessionStatus, parse_status


def _session(**overrides) -> Session:
    fields = {
        "id": "session-1-1700000000000",
        "name": "Session 1",
        "working_directory": "/project",
        "repo_path": "/project",
        "ai_mode": AiMode.CLAUDE,
    }
    fields.update(overrides)
    return Session(**fields)


class TestSession:
    def test_defaults(self):
        s = _session()
        assert s.status == SessionStatus.IDLE
        assert s.terminal_handle is None
        assert s.conversation_id is None
        assert s.continue_last_session is False
        assert s.created_at.tzinfo is not None

    def test_wire_form_uses_camel_case(self):
        wire = _session(branch="feature", worktree_path="/wt").to_wire()
        assert wire["workingDirectory"] == "/project"
        assert wire["repoPath"] == "/project"
        assert wire["aiMode"] == "claude"
        assert wire["worktreePath"] == "/wt"
        assert wire["status"] == "idle"
        assert "working_directory" not in wire

    def test_accepts_wire_names(self):
        s = Session.model_validate({
            "id": "s", "name": "n", "workingDirectory": "/w", "repoPath": "/r", "aiMode": "plain",
        })
        assert s.ai_mode == AiMode.PLAIN
        assert s.working_directory == "/w"

    def test_touch_never_moves_backwards(self):
        future = datetime.now(timezone.utc) + timedelta(hours=1)
        s = _session(last_active_at=future)
        s.touch()
        assert s.last_active_at == future

    def test_touch_bumps_activity(self):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        s = _session(last_active_at=past)
        s.touch()
        assert s.last_active_at > past


@pytest.mark.parametrize("value,expected", [
    ("working", SessionStatus.WORKING),
    ("needs_input", SessionStatus.NEEDS_INPUT),
    ("planning", SessionStatus.THINKING),
    ("finished", SessionStatus.IDLE),
    ("  Error ", SessionStatus.ERROR),
    ("bogus", None),
    ("", None),
])
def test_parse_status(value, expected):
    assert parse_status(value) == expected


class TestHistoryEntry:
    def test_parses_index_entry(self):
        entry = HistoryEntry.model_validate({
            "sessionId": "abc",
            "fullPath": "/x/abc.jsonl",
            "fileMtime": 1700000000000,
            "firstPrompt": "fix the bug",
            "messageCount": 4,
            "created": "2024-01-01T00:00:00.000Z",
            "modified": "2024-01-02T00:00:00.000Z",
            "gitBranch": "main",
            "projectPath": "/project",
            "isSidechain": False,
            "unknownField": 1,
        })
        assert entry.session_id == "abc"
        assert entry.first_prompt == "fix the bug"

    def test_modified_timestamp_parses_zulu(self):
        entry = HistoryEntry(session_id="a", modified="2024-01-02T00:00:00Z")
        assert entry.modified_timestamp() == datetime(2024, 1, 2, tzinfo=timezone.utc).timestamp()

    def test_modified_timestamp_falls_back_to_mtime(self):
        entry = HistoryEntry(session_id="a", modified="not a date", file_mtime=5000)
        assert entry.modified_timestamp() == 5.0

    def test_default_prompt(self):
        assert HistoryEntry(session_id="a").first_prompt == "No prompt"


def test_restore_entry_wire_form():
    entry = RestoreEntry(conversation_id="c1", repo_path="/p", name="S", branch="b")
    assert entry.to_wire() == {
        "conversationId": "c1",
        "repoPath": "/p",
        "name": "S",
        "mode": "claude",
        "branch": "b",
        "worktreePath": None,
    }
