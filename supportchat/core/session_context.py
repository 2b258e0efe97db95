"""Explicit caller identity for guest and authenticated sessions.

A :class:`SessionContext` is built once at the edge (HTTP dependency or
WebSocket handshake) and handed to every operation that needs to decide
whether the caller may act on a conversation. Nothing below the routers
reads ambient request state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .errors import Unauthorized

__all__ = ["SessionContext", "ensure_can_access"]

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class SessionContext:
    """Identity of the party issuing a request."""

    session_id: str | None = None
    user_id: str | None = None
    role: str | None = None
    name: str | None = None
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @property
    def principal_id(self) -> str | None:
        """Identifier echoed in events: user id when known, otherwise the session."""

        return self.user_id or self.session_id

    def owns(self, conversation: Any) -> bool:
        """Return ``True`` when this session owns ``conversation``.

        Ownership is a matching authenticated user id or, for guests, a
        matching session id.
        """

        owner = getattr(conversation, "user_id", None)
        if self.user_id and owner is not None and str(owner) == str(self.user_id):
            return True
        session = getattr(conversation, "session_id", None)
        return bool(self.session_id and session and session == self.session_id)

    def as_user(self, *, include_email: bool = True) -> dict[str, Any]:
        """Return the ``user`` object embedded in broadcast events."""

        user: dict[str, Any] = {"id": self.principal_id, "name": self.name}
        if include_email:
            user["email"] = self.email
        return user

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "SessionContext":
        """Build a guest context from header or query-string style keys.

        Only the self-asserted guest fields are read here; user id and role
        come from a verified access token (see :mod:`supportchat.core.auth`).
        """

        def pick(*keys: str) -> str | None:
            for key in keys:
                value = values.get(key)
                if value:
                    return str(value)
            return None

        return cls(
            session_id=pick("x-session-id", "session_id"),
            name=pick("x-user-name", "name"),
            email=pick("x-user-email", "email"),
        )


def ensure_can_access(context: SessionContext, conversation: Any) -> None:
    """Raise :class:`Unauthorized` unless ``context`` may act on ``conversation``."""

    if context.is_admin or context.owns(conversation):
        return
    raise Unauthorized(f"Session may not access conversation {conversation.id}")
