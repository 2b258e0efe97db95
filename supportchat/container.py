"""Explicit wiring of the support chat components.

Every collaborator is constructed here and passed down by hand; nothing in
the core looks up a global. ``build_container`` picks PostgreSQL and Celery
when ``DATABASE_URL`` / ``CELERY_BROKER_URL`` are set and in-memory
implementations otherwise.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import partial

import requests
from celery import Celery

from .analysis.analyzer import ConversationAnalyzer, KeywordAnalyzer
from .analysis.dispatcher import AnalysisDispatcher
from .broadcast.hub import BroadcastHub, Executor
from .broadcast.relay import RedisEventRelay
from .conversations.ingress import MessageIngress
from .conversations.repository import (
    ConversationStore,
    InMemoryConversationStore,
    PostgresConversationStore,
)
from .conversations.responder import (
    AssistantResponder,
    ResponseGenerator,
    TemplateResponseGenerator,
)
from .conversations.service import ConversationService
from .core import db
from .core.settings import Settings, get_settings
from .jobs.celery_app import CeleryQueueClient, create_celery_app
from .jobs.queue import (
    DeadLetterStore,
    InMemoryDeadLetterStore,
    InMemoryJobQueue,
    JobRegistry,
    QueueClient,
    RedisDeadLetterStore,
)
from .notifications.escalation import EscalationNotifier, Mailer
from .notifications.inquiry import InquiryNotifier
from .notifications.webhook import WebhookClient

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    store: ConversationStore
    hub: BroadcastHub
    queue: QueueClient
    registry: JobRegistry
    dead_letters: DeadLetterStore
    dispatcher: AnalysisDispatcher
    ingress: MessageIngress
    conversations: ConversationService
    responder: AssistantResponder
    inquiries: InquiryNotifier
    escalations: EscalationNotifier
    celery_app: Celery | None = None
    relay: RedisEventRelay | None = None

    def shutdown(self) -> None:
        if self.relay is not None:
            self.relay.stop()
        self.hub.shutdown()


def _build_store(settings: Settings) -> ConversationStore:
    if not settings.database_url:
        return InMemoryConversationStore()
    connect = partial(db.connect, settings.database_url)
    with connect() as conn:
        db.ensure_schema(conn)
    return PostgresConversationStore(connect)


def build_container(
    settings: Settings | None = None,
    *,
    store: ConversationStore | None = None,
    queue: QueueClient | None = None,
    dead_letters: DeadLetterStore | None = None,
    executor: Executor | None = None,
    analyzer: ConversationAnalyzer | None = None,
    generator: ResponseGenerator | None = None,
    http_session: requests.Session | None = None,
    mailer: Mailer | None = None,
    forward_events: bool = False,
) -> Container:
    settings = settings or get_settings()
    if store is None:
        store = _build_store(settings)
    registry = JobRegistry()

    celery_app = None
    if queue is None and settings.broker_url:
        celery_app = create_celery_app(settings)
        queue = CeleryQueueClient(celery_app)
        if dead_letters is None and settings.broker_url.startswith("redis"):
            dead_letters = RedisDeadLetterStore.from_url(settings.broker_url)
    dead_letters = dead_letters if dead_letters is not None else InMemoryDeadLetterStore()
    if queue is None:
        queue = InMemoryJobQueue(registry, dead_letters=dead_letters)

    relay = None
    if settings.broker_url and settings.broker_url.startswith("redis"):
        relay = RedisEventRelay.from_url(settings.broker_url)
    hub = BroadcastHub(
        store,
        executor=executor,
        mailbox_size=settings.broadcast_mailbox_size,
        max_workers=settings.broadcast_workers,
        forward=relay.forward if (relay is not None and forward_events) else None,
    )
    webhook = WebhookClient(session=http_session, timeout=settings.webhook_timeout)
    dispatcher = AnalysisDispatcher(
        store, hub, queue, analyzer or KeywordAnalyzer(), settings.needs_preview
    )
    responder = AssistantResponder(
        store, hub, generator or TemplateResponseGenerator(), queue=queue
    )
    inquiries = InquiryNotifier(webhook, settings.inquiry_webhooks, app_url=settings.app_url)
    escalations = EscalationNotifier(
        store,
        hub,
        webhook,
        slack_webhook_url=settings.escalation_webhook_url,
        mailer=mailer,
        email_to=settings.escalation_email_to,
        queue=queue,
    )
    for component in (dispatcher, responder, inquiries, escalations):
        component.register(registry)

    logger.info(
        "Container ready (store=%s, queue=%s)", type(store).__name__, type(queue).__name__
    )
    return Container(
        settings=settings,
        store=store,
        hub=hub,
        queue=queue,
        registry=registry,
        dead_letters=dead_letters,
        dispatcher=dispatcher,
        ingress=MessageIngress(
            store, hub, dispatcher, queue, max_length=settings.message_max_length
        ),
        conversations=ConversationService(store, hub),
        responder=responder,
        inquiries=inquiries,
        escalations=escalations,
        celery_app=celery_app,
        relay=relay,
    )


_container: Container | None = None
_container_lock = threading.Lock()


def get_container() -> Container:
    """Process wide container, built on first use."""

    global _container
    with _container_lock:
        if _container is None:
            _container = build_container()
        return _container


def set_container(container: Container | None) -> Container | None:
    global _container
    with _container_lock:
        previous, _container = _container, container
    return previous
