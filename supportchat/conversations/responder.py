"""Assistant replies to user messages, generated out of band."""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

from ..broadcast import events
from ..broadcast.hub import BroadcastHub
from ..core.errors import NotFoundError, ValidationError
from ..jobs import queue as jobs
from ..jobs.queue import JobRegistry, QueueClient
from . import schemas
from .repository import ConversationStore

logger = logging.getLogger(__name__)

ERROR_REPLY = "申し訳ございません。現在システムに問題が発生しています。しばらくしてから再度お試しください。"

ASSISTANT_USER = {"id": "assistant", "name": "Assistant"}


class ResponseGenerator(Protocol):
    def generate(
        self, conversation: schemas.Conversation, history: Sequence[schemas.Message]
    ) -> str: ...


class TemplateResponseGenerator:
    """Canned replies chosen from the tone of the latest user message."""

    COMPLAINT_MARKERS = ("困", "できない", "できません", "不便", "遅い", "最悪", "ひどい")
    GRATITUDE_MARKERS = ("ありがとう", "助かり")

    def generate(
        self, conversation: schemas.Conversation, history: Sequence[schemas.Message]
    ) -> str:
        latest = next((m.content for m in reversed(history) if m.from_user), "")
        if any(marker in latest for marker in self.COMPLAINT_MARKERS):
            return "ご不便をおかけして申し訳ございません。詳細を確認させていただきます。"
        if any(marker in latest for marker in self.GRATITUDE_MARKERS):
            return "貴重なフィードバックをありがとうございます。"
        if latest.endswith(("?", "？")) or "教えて" in latest:
            return "ご質問ありがとうございます。詳しく確認させていただきます。"
        return "メッセージありがとうございます。どのようにお手伝いできますでしょうか？"


class AssistantResponder:
    """Job handler that answers one user message."""

    HISTORY_LIMIT = 10

    def __init__(
        self,
        store: ConversationStore,
        hub: BroadcastHub,
        generator: ResponseGenerator,
        *,
        queue: QueueClient | None = None,
    ) -> None:
        self._store = store
        self._hub = hub
        self._generator = generator
        self._queue = queue

    def respond(self, message_id: int) -> schemas.Message | None:
        message = self._store.get_message(message_id)
        if message is None:
            logger.error("Message not found: %s", message_id)
            raise NotFoundError(f"Message {message_id} not found")
        if not message.from_user:
            logger.warning("Message %s is not a user message; no reply generated", message.id)
            return None
        conversation = self._store.get_conversation(message.conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {message.conversation_id} not found")

        history = self._store.list_messages(conversation.id)[-self.HISTORY_LIMIT:]
        try:
            content = self._generator.generate(conversation, history)
        except Exception:
            logger.exception("Failed to generate a reply for message %s", message.id)
            return self._store_error_reply(message)

        reply = self._store.add_message(
            conversation.id,
            content,
            "assistant",
            {"in_reply_to": message.id},
        )
        self._hub.publish(conversation.id, events.new_message(reply, ASSISTANT_USER))
        if self._queue is not None:
            try:
                self._queue.enqueue(jobs.FULL_ANALYSIS, conversation.id, {})
            except Exception:
                logger.exception("Failed to queue analysis for conversation #%s", conversation.id)
        return reply

    def _store_error_reply(self, message: schemas.Message) -> schemas.Message | None:
        try:
            reply = self._store.add_message(
                message.conversation_id,
                ERROR_REPLY,
                "assistant",
                {"error": True, "original_message_id": message.id},
            )
        except ValidationError:
            logger.info("Error reply for message %s already stored", message.id)
            return None
        self._hub.publish(message.conversation_id, events.new_message(reply, ASSISTANT_USER))
        return reply

    def register(self, registry: JobRegistry) -> None:
        registry.register(jobs.ASSISTANT_RESPONSE, self.respond)
