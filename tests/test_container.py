from conftest import InlineExecutor
from supportchat.container import build_container, get_container, set_container
from supportchat.conversations.repository import InMemoryConversationStore
from supportchat.core.settings import Settings
from supportchat.jobs import queue as jobs
from supportchat.jobs.celery_app import CeleryQueueClient
from supportchat.jobs.queue import InMemoryDeadLetterStore, InMemoryJobQueue


def test_in_memory_wiring_registers_every_job():
    container = build_container(Settings(), executor=InlineExecutor())

    assert isinstance(container.store, InMemoryConversationStore)
    assert isinstance(container.queue, InMemoryJobQueue)
    assert container.celery_app is None
    assert container.relay is None
    for name in (
        jobs.FULL_ANALYSIS,
        jobs.BATCH_ANALYSIS,
        jobs.PREVIEW_ANALYSIS,
        jobs.PREVIEW_REFRESH,
        jobs.ASSISTANT_RESPONSE,
        jobs.NEW_INQUIRY_NOTIFICATION,
        jobs.ESCALATION_NOTIFICATION,
    ):
        assert name in container.registry


def test_broker_switches_to_celery():
    container = build_container(Settings(broker_url="memory://"), executor=InlineExecutor())

    assert isinstance(container.queue, CeleryQueueClient)
    assert container.celery_app is not None
    assert container.celery_app.conf.task_default_queue == "default"
    assert isinstance(container.dead_letters, InMemoryDeadLetterStore)
    assert container.relay is None


def test_process_container_can_be_swapped():
    replacement = build_container(Settings(), executor=InlineExecutor())
    previous = set_container(replacement)
    try:
        assert get_container() is replacement
    finally:
        set_container(previous)
