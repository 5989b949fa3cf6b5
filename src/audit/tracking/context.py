"""
Mutation Context

Carries the transaction handle, the acting user and request metadata for
one mutation. The transaction coordinator binds the active context to a
context variable so repositories and hooks running inside the unit of
work pick it up without threading it through every call.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .errors import AuditError

SESSION_ID_INFO_KEY = "change_tracking_session_id"


@dataclass(frozen=True)
class ActorContext:
    """Who performed a mutation, and from where."""
    actor_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def to_metadata(self) -> Dict[str, Any]:
        """Build ChangeRecord metadata; ``location`` is included only when known."""
        metadata: Dict[str, Any] = {
            "ip": self.ip,
            "user_agent": self.user_agent,
        }
        if self.location is not None:
            metadata["location"] = self.location
        metadata.update(self.extra)
        return metadata


def session_identifier(session: Any) -> Optional[str]:
    """
    Stable identifier for a database session.

    Stored in ``session.info`` so that every hook touching the same session
    derives the same cache key.
    """
    if session is None:
        return None
    info = getattr(session, "info", None)
    if isinstance(info, dict):
        return info.setdefault(SESSION_ID_INFO_KEY, uuid.uuid4().hex)
    return f"{id(session):x}"


class MutationContext:
    """Per-mutation context passed explicitly to hooks and recorder."""

    def __init__(
        self,
        session: Any = None,
        actor: Optional[ActorContext] = None,
        session_id: Optional[str] = None,
    ):
        self.session = session
        self.actor = actor or ActorContext()
        self._session_id = session_id
        self.fatal_error: Optional[AuditError] = None

    @property
    def session_id(self) -> Optional[str]:
        if self._session_id is None:
            self._session_id = session_identifier(self.session)
        return self._session_id

    @property
    def in_transaction(self) -> bool:
        return self.session is not None

    @property
    def actor_id(self) -> Optional[str]:
        return self.actor.actor_id

    def mark_fatal(self, error: AuditError) -> None:
        """Record a fatal error; the first one wins."""
        if self.fatal_error is None:
            self.fatal_error = error

    def __repr__(self) -> str:
        return (
            f"MutationContext(session_id={self.session_id!r}, "
            f"actor_id={self.actor_id!r}, fatal={self.fatal_error is not None})"
        )


_mutation_context_ctx: ContextVar[Optional[MutationContext]] = ContextVar(
    "mutation_context",
    default=None,
)


def current_mutation_context() -> Optional[MutationContext]:
    """Get the mutation context bound by the enclosing unit of work, if any."""
    return _mutation_context_ctx.get()


def bind_mutation_context(context: MutationContext) -> Token[Optional[MutationContext]]:
    """Bind a mutation context for the current task. Returns a reset token."""
    return _mutation_context_ctx.set(context)


def reset_mutation_context(token: Token[Optional[MutationContext]]) -> None:
    """Restore the previously bound mutation context."""
    _mutation_context_ctx.reset(token)


def resolve_context(context: Optional[MutationContext] = None) -> MutationContext:
    """Explicit context first, then the bound one, then an empty non-transactional context."""
    if context is not None:
        return context
    return current_mutation_context() or MutationContext()
