"""Session records shared by the orchestrator, storage and daemon."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path


class SessionStatus(Enum):
    """Lifecycle status of a session.

    ``Loading -> Ready -> Running <-> Paused``. A stopped session is deleted,
    so there is no stored "stopped" value.
    """

    RUNNING = "running"
    READY = "ready"
    LOADING = "loading"
    PAUSED = "paused"

    @property
    def is_active(self) -> bool:
        """Whether the session owns a live workspace and backend session."""
        return self is not SessionStatus.PAUSED

    @property
    def accepts_input(self) -> bool:
        return self in (SessionStatus.READY, SessionStatus.RUNNING)


@dataclass
class Session:
    """A unit of work: an isolated workspace paired with a terminal program."""

    session_id: str
    title: str
    repo_path: Path
    branch: str
    program: str
    status: SessionStatus = SessionStatus.LOADING
    workspace_path: Path | None = None
    width: int = 0
    height: int = 0
    auto_yes: bool = False
    prompt: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __str__(self) -> str:
        return f"{self.title} [{self.session_id}] ({self.status.value})"


@dataclass
class CreateSessionRequest:
    """Parameters accepted by ``SessionOrchestrator.create_session``."""

    title: str
    path: Path | str
    program: str
    branch: str | None = None
    width: int = 0
    height: int = 0
    auto_yes: bool = False
    prompt: str | None = None


@dataclass
class SessionFilter:
    """Optional filters for listing stored sessions."""

    status: SessionStatus | None = None
    branch: str | None = None
    repo_path: Path | None = None
    auto_yes: bool | None = None
    limit: int | None = None


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def generate_session_id(title: str) -> str:
    """Build a unique, filesystem- and tmux-safe ID from a title."""
    slug = _SLUG_RE.sub("-", title.lower()).strip("-")[:32] or "session"
    return f"{slug}-{uuid.uuid4().hex[:8]}"
