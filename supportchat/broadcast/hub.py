"""Topic based fan-out of conversation events to live connections.

Each topic (``conversation_<id>`` or the dashboard ``escalation_channel``)
owns its subscriber map and its own lock, so publishers on different
conversations never contend. Delivery is asynchronous and best-effort:
``publish`` only appends the event to every subscriber's bounded mailbox and
schedules a drain on the executor. A subscription is drained by at most one
task at a time, which keeps events in publish order per subscriber, and each
``send`` runs inside its own failure boundary.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Protocol

from ..conversations.repository import ConversationStore
from ..core.errors import DeliveryBestEffortFailure, NotFoundError, Unauthorized
from ..core.session_context import SessionContext, ensure_can_access
from . import events
from .events import ESCALATION_TOPIC, Event, conversation_topic

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Anything that can accept a JSON-serializable event push."""

    def send(self, event: Event) -> None: ...


class Executor(Protocol):
    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any: ...


class Subscription:
    """Handle returned by :meth:`BroadcastHub.subscribe`."""

    def __init__(
        self,
        topic: str,
        connection: Connection,
        context: SessionContext,
        executor: Executor,
        *,
        conversation_id: int | None = None,
        mailbox_size: int = 100,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.topic = topic
        self.conversation_id = conversation_id
        self.connection = connection
        self.context = context
        self.failures = 0
        self.dropped = 0
        self._executor = executor
        self._mailbox: deque[Event] = deque()
        self._mailbox_size = max(1, mailbox_size)
        self._lock = threading.Lock()
        self._draining = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: Event) -> bool:
        """Queue ``event`` for delivery. Returns ``False`` once closed."""

        with self._lock:
            if self._closed:
                return False
            if len(self._mailbox) >= self._mailbox_size:
                dropped = self._mailbox.popleft()
                self.dropped += 1
                logger.warning(
                    "Mailbox full for subscription %s on %s; dropped %s event",
                    self.id,
                    self.topic,
                    dropped.get("type"),
                )
            self._mailbox.append(event)
            if self._draining:
                return True
            self._draining = True
        try:
            self._executor.submit(self._drain)
        except RuntimeError:
            with self._lock:
                self._draining = False
            logger.warning("Broadcast executor unavailable; event for %s left queued", self.topic)
        return True

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._mailbox.clear()

    def _drain(self) -> None:
        while True:
            with self._lock:
                if self._closed or not self._mailbox:
                    self._draining = False
                    return
                event = self._mailbox.popleft()
            try:
                self.connection.send(event)
            except Exception as exc:
                self.failures += 1
                failure = DeliveryBestEffortFailure(
                    f"{event.get('type')} to subscription {self.id} on {self.topic}: {exc}"
                )
                logger.warning("Delivery failed: %s", failure)


class _Topic:
    __slots__ = ("lock", "subscriptions", "retired")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.subscriptions: dict[str, Subscription] = {}
        self.retired = False


class BroadcastHub:
    """Registry of live subscriptions keyed by topic."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        executor: Executor | None = None,
        mailbox_size: int = 100,
        max_workers: int = 8,
        forward: Callable[[str, Event], None] | None = None,
    ) -> None:
        self._store = store
        self._forward = forward
        self._owns_executor = executor is None
        self._executor: Executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="broadcast"
        )
        self._mailbox_size = mailbox_size
        self._topics: dict[str, _Topic] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Subscriptions

    def subscribe(
        self, conversation_id: int, connection: Connection, context: SessionContext
    ) -> Subscription:
        """Register ``connection`` for events on ``conversation_id``.

        Raises :class:`NotFoundError` for unknown conversations and
        :class:`Unauthorized` when ``context`` neither owns the conversation nor
        holds the administrator role. On success every subscriber of the topic,
        the new one included, receives ``user_connected``.
        """

        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        ensure_can_access(context, conversation)
        subscription = Subscription(
            conversation_topic(conversation_id),
            connection,
            context,
            self._executor,
            conversation_id=conversation_id,
            mailbox_size=self._mailbox_size,
        )
        self._register(subscription, events.user_connected(context.as_user()))
        logger.info(
            "Subscription %s joined %s (%s)",
            subscription.id,
            subscription.topic,
            context.principal_id,
        )
        return subscription

    def subscribe_dashboard(
        self, connection: Connection, context: SessionContext
    ) -> Subscription:
        """Register an administrator connection on the escalation dashboard topic."""

        if not context.is_admin:
            raise Unauthorized("Escalation dashboard requires the admin role")
        subscription = Subscription(
            ESCALATION_TOPIC,
            connection,
            context,
            self._executor,
            mailbox_size=self._mailbox_size,
        )
        self._register(subscription, None)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove ``subscription``. Safe to call repeatedly and during a publish."""

        with self._registry_lock:
            topic = self._topics.get(subscription.topic)
        if topic is None:
            subscription.close()
            return
        with topic.lock:
            removed = topic.subscriptions.pop(subscription.id, None)
            subscription.close()
            if removed is None:
                return
            if topic.subscriptions:
                if subscription.conversation_id is not None:
                    event = events.user_disconnected(subscription.context.as_user())
                    for remaining in list(topic.subscriptions.values()):
                        remaining.offer(event)
            else:
                topic.retired = True
                with self._registry_lock:
                    if self._topics.get(subscription.topic) is topic:
                        del self._topics[subscription.topic]
        logger.info("Subscription %s left %s", subscription.id, subscription.topic)

    # ------------------------------------------------------------------
    # Publishing

    def publish(self, conversation_id: int, event: Event) -> int:
        """Deliver ``event`` to every live subscriber of ``conversation_id``.

        Returns the number of subscribers the event was queued for. Events are
        not persisted; subscribers that connect later never see them.
        """

        return self.publish_topic(conversation_topic(conversation_id), event)

    def publish_dashboard(self, event: Event) -> int:
        return self.publish_topic(ESCALATION_TOPIC, event)

    def publish_topic(self, topic_name: str, event: Event, *, relay: bool = True) -> int:
        if event.get("type") not in events.EVENT_TYPES:
            raise ValueError(f"Unknown event type {event.get('type')!r}")
        if relay and self._forward is not None:
            try:
                self._forward(topic_name, event)
            except Exception:
                logger.warning(
                    "Failed to forward %s event on %s",
                    event.get("type"),
                    topic_name,
                    exc_info=True,
                )
        with self._registry_lock:
            topic = self._topics.get(topic_name)
        if topic is None:
            return 0
        delivered = 0
        with topic.lock:
            for subscription in list(topic.subscriptions.values()):
                if subscription.offer(event):
                    delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Introspection / lifecycle

    def subscriber_count(self, conversation_id: int) -> int:
        return self.topic_size(conversation_topic(conversation_id))

    def topic_size(self, topic_name: str) -> int:
        with self._registry_lock:
            topic = self._topics.get(topic_name)
        if topic is None:
            return 0
        with topic.lock:
            return len(topic.subscriptions)

    def shutdown(self) -> None:
        if self._owns_executor and isinstance(self._executor, ThreadPoolExecutor):
            self._executor.shutdown(wait=False)

    def _register(self, subscription: Subscription, announce: Event | None) -> None:
        while True:
            with self._registry_lock:
                topic = self._topics.setdefault(subscription.topic, _Topic())
            with topic.lock:
                if topic.retired:
                    continue
                topic.subscriptions[subscription.id] = subscription
                if announce is not None:
                    for member in list(topic.subscriptions.values()):
                        member.offer(announce)
                return
