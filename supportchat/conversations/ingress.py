"""Message Ingress: validate, persist and fan out a submitted message."""

from __future__ import annotations

import logging
import threading
from typing import Any

from ..analysis.dispatcher import AnalysisDispatcher
from ..broadcast import events
from ..broadcast.hub import BroadcastHub
from ..core.errors import NotFoundError, ValidationError
from ..core.session_context import SessionContext, ensure_can_access
from ..jobs import queue as jobs
from ..jobs.queue import QueueClient
from . import schemas
from .repository import ConversationStore

logger = logging.getLogger(__name__)

GUEST_NAME = "Guest"
LOCK_STRIPES = 64


def validate_message(content: Any, role: Any, max_length: int) -> None:
    errors: dict[str, list[str]] = {}
    if not isinstance(content, str) or not content.strip():
        errors.setdefault("content", []).append("can't be blank")
    elif len(content) > max_length:
        errors.setdefault("content", []).append(
            f"is too long (maximum is {max_length} characters)"
        )
    if role not in schemas.ROLES:
        errors.setdefault("role", []).append("is not included in the list")
    if errors:
        raise ValidationError(errors)


def customer_display_name(conversation: schemas.Conversation) -> str:
    return conversation.metadata.get("name") or conversation.guest_user_id or GUEST_NAME


class MessageIngress:
    """Entry point for every new message, from HTTP or a live socket.

    Submissions for the same conversation are serialized in-process so the
    count based "first user message" check cannot fire twice.
    """

    def __init__(
        self,
        store: ConversationStore,
        hub: BroadcastHub,
        dispatcher: AnalysisDispatcher,
        queue: QueueClient,
        *,
        max_length: int = 10_000,
    ) -> None:
        self._store = store
        self._hub = hub
        self._dispatcher = dispatcher
        self._queue = queue
        self._max_length = max_length
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def submit_message(
        self,
        conversation_id: int,
        content: str,
        role: str = "user",
        metadata: dict[str, Any] | None = None,
        context: SessionContext | None = None,
    ) -> schemas.Message:
        try:
            validate_message(content, role, self._max_length)
        except ValidationError as exc:
            logger.info("Rejected message for conversation %s: %s", conversation_id, exc)
            raise

        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if context is not None:
            ensure_can_access(context, conversation)

        metadata = dict(metadata or {})
        if context is not None and context.principal_id:
            metadata.setdefault("sender_id", context.principal_id)

        with self._lock_for(conversation.id):
            first_user_message = (
                role == "user" and self._store.count_messages(conversation.id, role="user") == 0
            )
            message = self._store.add_message(conversation.id, content, role, metadata)
            user_turns = (
                self._store.count_messages(conversation.id, role="user") if role == "user" else 0
            )

        try:
            self._store.touch_conversation(conversation.id)
        except Exception:
            logger.warning("Failed to touch conversation %s", conversation.id, exc_info=True)

        user = context.as_user(include_email=False) if context is not None else None
        self._hub.publish(conversation.id, events.new_message(message, user))

        if first_user_message:
            self._trigger(
                "preview analysis", self._dispatcher.dispatch_preview_analysis, conversation.id
            )
            if conversation.customer_type == "new" and conversation.category:
                self._trigger(
                    "new inquiry notification",
                    self._queue.enqueue,
                    jobs.NEW_INQUIRY_NOTIFICATION,
                    conversation.category,
                    customer_display_name(conversation),
                    message.content,
                    conversation.id,
                )
        if message.from_user:
            self._trigger(
                "assistant response", self._queue.enqueue, jobs.ASSISTANT_RESPONSE, message.id
            )
            preview = self._dispatcher.preview_settings
            if preview.enabled and preview.within_window(user_turns):
                self._trigger(
                    "needs preview refresh",
                    self._dispatcher.dispatch_preview_refresh,
                    conversation.id,
                )
        return message

    def _trigger(self, label: str, fn: Any, *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Failed to dispatch %s for conversation message", label)

    def _lock_for(self, conversation_id: int) -> threading.Lock:
        return self._locks[hash(conversation_id) % LOCK_STRIPES]
