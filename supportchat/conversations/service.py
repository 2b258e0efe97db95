"""Conversation lifecycle and live actions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from ..broadcast import events
from ..broadcast.hub import BroadcastHub
from ..core.errors import NotFoundError
from ..core.session_context import SessionContext, ensure_can_access
from . import schemas
from .repository import ConversationStore

logger = logging.getLogger(__name__)


class ConversationService:
    """Creates, ends and resumes conversations and relays typing/read events."""

    def __init__(self, store: ConversationStore, hub: BroadcastHub) -> None:
        self._store = store
        self._hub = hub

    # ------------------------------------------------------------------
    # Lifecycle

    def create_conversation(
        self,
        context: SessionContext,
        metadata: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> schemas.Conversation:
        """Start a conversation for ``context``.

        Guests without a session id get a fresh uuid4 one; the store rejects
        an id that is already taken.
        """

        conversation = self._store.create_conversation(
            session_id or context.session_id or str(uuid.uuid4()),
            user_id=context.user_id,
            guest_user_id=None if context.user_id else context.session_id,
            metadata=metadata,
        )
        logger.info(
            "Conversation %s created for %s", conversation.id, context.principal_id or "guest"
        )
        return conversation

    def find_or_create_by_session(
        self, context: SessionContext, metadata: dict[str, Any] | None = None
    ) -> schemas.Conversation:
        if context.session_id:
            existing = self._store.get_by_session(context.session_id)
            if existing is not None:
                ensure_can_access(context, existing)
                return existing
        return self.create_conversation(context, metadata)

    def get_conversation(
        self, conversation_id: int, context: SessionContext | None = None
    ) -> schemas.Conversation:
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if context is not None:
            ensure_can_access(context, conversation)
        return conversation

    def get_detail(
        self, conversation_id: int, context: SessionContext | None = None
    ) -> schemas.ConversationDetail:
        conversation = self.get_conversation(conversation_id, context)
        messages = self._store.list_messages(conversation.id)
        return schemas.ConversationDetail(
            **conversation.model_dump(),
            messages=messages,
            message_count=len(messages),
            latest_analysis=self.latest_analysis(conversation.id),
        )

    def end_conversation(
        self, conversation_id: int, context: SessionContext | None = None
    ) -> schemas.Conversation:
        conversation = self.get_conversation(conversation_id, context)
        if conversation.active:
            self._store.set_ended_at(conversation.id, datetime.now(timezone.utc))
            logger.info("Conversation %s ended", conversation.id)
        return self.get_conversation(conversation.id)

    def resume_conversation(
        self, conversation_id: int, context: SessionContext | None = None
    ) -> schemas.Conversation:
        conversation = self.get_conversation(conversation_id, context)
        if not conversation.active:
            self._store.set_ended_at(conversation.id, None)
            logger.info("Conversation %s resumed", conversation.id)
        return self.get_conversation(conversation.id)

    def list_messages(
        self, conversation_id: int, context: SessionContext | None = None
    ) -> list[schemas.Message]:
        conversation = self.get_conversation(conversation_id, context)
        return self._store.list_messages(conversation.id)

    def list_analyses(
        self, conversation_id: int, context: SessionContext | None = None
    ) -> list[schemas.Analysis]:
        conversation = self.get_conversation(conversation_id, context)
        return self._store.list_analyses(conversation.id)

    def latest_analysis(self, conversation_id: int) -> schemas.Analysis | None:
        analyses = self._store.list_analyses(conversation_id)
        return analyses[0] if analyses else None

    # ------------------------------------------------------------------
    # Live actions

    def typing(self, conversation_id: int, context: SessionContext, is_typing: bool) -> None:
        self.get_conversation(conversation_id, context)
        self._hub.publish(
            conversation_id, events.typing(context.as_user(include_email=False), is_typing)
        )

    def mark_as_read(
        self, conversation_id: int, context: SessionContext, message_id: int
    ) -> schemas.Message:
        self.get_conversation(conversation_id, context)
        message = self._store.get_message(message_id)
        if message is None or message.conversation_id != conversation_id:
            raise NotFoundError(f"Message {message_id} not found")
        updated = self._store.update_message_metadata(
            message.id,
            {
                "read_by": context.principal_id,
                "read_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        self._hub.publish(conversation_id, events.message_read(message.id, context.principal_id))
        return updated or message
