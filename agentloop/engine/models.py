"""Core data models for agent processes, sessions and iterations."""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .line_buffer import LineBuffer

# Placeholder prefix for sessions whose real id has not been reported yet.
PENDING_PREFIX = "__pending__"

# Messages are plain decoded JSON objects from the agent's stdout.
Message = dict[str, Any]


def provisional_session_id(process_id: str) -> str:
    return f"{PENDING_PREFIX}{process_id}"


def is_provisional(session_id: str | None) -> bool:
    return not session_id or session_id.startswith(PENDING_PREFIX)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProviderKind(Enum):
    CLAUDE_CODE = "claude_code"
    AMP = "amp"


class SessionKind(Enum):
    """What a session was launched for."""
    PLAN = "plan"
    ITERATION = "iteration"


class LinkType(Enum):
    """Kind of workspace file a session is linked to."""
    PLAN = "plan"
    TASK = "task"


class IterationStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"


class ErrorKind(Enum):
    """Classification of provider failures."""
    NOT_INSTALLED = "not_installed"
    NOT_LOGGED_IN = "not_logged_in"
    PAYMENT_REQUIRED = "payment_required"
    UNKNOWN = "unknown"


@dataclass
class ProviderStatus:
    """Result of a provider availability check."""
    available: bool
    error: str | None = None
    error_kind: ErrorKind | None = None
    auth_instructions: str | None = None


# Called with the exiting session's messages once its process ends.
ExitHandler = Callable[[tuple[Message, ...]], Awaitable[None]]


@dataclass
class ProcessHandle:
    """Bookkeeping for one running agent invocation."""
    process_id: str
    session_id: str
    parse_buffer: LineBuffer
    kind: SessionKind = SessionKind.PLAN
    provider: ProviderKind = ProviderKind.CLAUDE_CODE
    cwd: str = "."
    on_exit: ExitHandler | None = field(default=None, repr=False)

    @property
    def is_provisional(self) -> bool:
        return is_provisional(self.session_id)


@dataclass
class IterationRecord:
    """One attempt of the iteration loop against a task."""
    task_id: str
    iteration_number: int
    status: IterationStatus = IterationStatus.RUNNING
    session_id: str = ""
    created_at: str = field(default_factory=_utcnow_iso)
    provider: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "iteration_number": self.iteration_number,
            "status": self.status.value,
            "session_id": self.session_id,
            "created_at": self.created_at,
            "provider": self.provider,
        }


@dataclass
class FolderSession:
    """A persisted session listed for a workspace folder."""
    session_id: str
    provider: str
    kind: str
    created_at: str


@dataclass
class SessionLink:
    """A workspace file tied to the session that produced it."""
    session_id: str
    file_name: str
    link_type: LinkType
    created_at: str
    updated_at: str
    provider: str | None = None
