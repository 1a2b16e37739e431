"""Session data model shared across agentsquad."""

from .models import (
    CreateSessionRequest,
    Session,
    SessionFilter,
    SessionStatus,
    generate_session_id,
)

__all__ = [
    "CreateSessionRequest",
    "Session",
    "SessionFilter",
    "SessionStatus",
    "generate_session_id",
]
