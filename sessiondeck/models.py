from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AiMode(str, Enum):
    CLAUDE = "claude"
    PLAIN = "plain"


class SessionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    THINKING = "thinking"
    WORKING = "working"
    NEEDS_INPUT = "needs_input"
    DISCONNECTED = "disconnected"
    ERROR = "error"


FREEABLE_STATUSES = frozenset({SessionStatus.IDLE, SessionStatus.NEEDS_INPUT})

# Extra words the assistant may use when it reports its own state.
_STATUS_ALIASES = {
    "planning": SessionStatus.THINKING,
    "finished": SessionStatus.IDLE,
    "executing": SessionStatus.WORKING,
}


def parse_status(value: str) -> SessionStatus | None:
    value = (value or "").strip().lower()
    if value in _STATUS_ALIASES:
        return _STATUS_ALIASES[value]
    try:
        return SessionStatus(value)
    except ValueError:
        return None


class WireModel(BaseModel):
    """Base for models exchanged with clients: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Session(WireModel):
    id: str
    name: str
    working_directory: str
    repo_path: str
    ai_mode: AiMode
    model: str | None = None
    system_prompt: str | None = None
    mcp_servers: list[str] | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    branch: str | None = None
    worktree_path: str | None = None
    status: SessionStatus = SessionStatus.IDLE
    status_message: str | None = None
    needs_input_prompt: bool | None = None
    conversation_id: str | None = None
    resume_session_id: str | None = None
    fork_session_id: str | None = None
    continue_last_session: bool = False
    skip_permissions: bool = False
    terminal_handle: str | None = None
    created_at: datetime = Field(default_factory=_now)
    last_active_at: datetime = Field(default_factory=_now)

    def touch(self) -> None:
        self.last_active_at = max(_now(), self.last_active_at)


class HistoryEntry(WireModel):
    session_id: str
    full_path: str = ""
    file_mtime: float = 0
    first_prompt: str = "No prompt"
    summary: str = ""
    message_count: int = 0
    created: str = ""
    modified: str = ""
    git_branch: str = ""
    project_path: str = ""
    is_sidechain: bool = False

    def modified_timestamp(self) -> float:
        if self.modified:
            try:
                return datetime.fromisoformat(self.modified.replace("Z", "+00:00")).timestamp()
            except ValueError:
                pass
        return self.file_mtime / 1000


class RestoreEntry(WireModel):
    conversation_id: str
    repo_path: str
    name: str
    mode: AiMode = AiMode.CLAUDE
    branch: str | None = None
    worktree_path: str | None = None


class HookEventKind(str, Enum):
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    STATUS = "status"
    PROCESS_EXIT = "process_exit"


class HookEvent(BaseModel):
    """A hook event file translated into something the registry understands."""

    kind: HookEventKind
    app_session_id: str | None = None
    conversation_id: str | None = None
    cwd: str | None = None
    handle: str | None = None
    exit_code: int | None = None
    status: str | None = None
    message: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class CleanupResult(BaseModel):
    ok: bool
    error: str | None = None
    target: str | None = None


class LaunchResult(BaseModel):
    success: bool
    handle: str | None = None
    error: str | None = None
