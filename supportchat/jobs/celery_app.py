"""Celery backed job queue.

The same :class:`~supportchat.jobs.queue.JobRegistry` that drives the in-memory
queue is turned into Celery tasks here, one task per job name, each routed to
the queue class of its :class:`~supportchat.jobs.queue.RetryPolicy`.
"""

from __future__ import annotations

import logging
from typing import Any

from celery import Celery
from celery.exceptions import MaxRetriesExceededError

from ..core.settings import Settings
from .queue import (
    JOB_POLICIES,
    DeadLetterStore,
    JobDefinition,
    JobRegistry,
    give_up,
    policy_for,
)

logger = logging.getLogger(__name__)


def create_celery_app(settings: Settings) -> Celery:
    if not settings.broker_url:
        raise RuntimeError("CELERY_BROKER_URL not configured")
    app = Celery(
        "supportchat",
        broker=settings.broker_url,
        backend=settings.result_backend,
    )
    app.conf.task_routes = {name: {"queue": policy.queue} for name, policy in JOB_POLICIES.items()}
    app.conf.task_default_queue = "default"
    app.conf.task_acks_late = True
    app.conf.task_serializer = "json"
    app.conf.accept_content = ["json"]
    app.conf.broker_pool_limit = 0
    return app


class CeleryQueueClient:
    """:class:`~supportchat.jobs.queue.QueueClient` that publishes to a broker."""

    def __init__(self, app: Celery) -> None:
        self._app = app

    def enqueue(self, job: str, *args: Any, **kwargs: Any) -> str:
        policy = policy_for(job)
        result = self._app.send_task(job, args=list(args), kwargs=kwargs, queue=policy.queue)
        logger.debug("Sent %s to %s (%s)", job, policy.queue, result.id)
        return str(result.id)


def _make_task(app: Celery, definition: JobDefinition, dead_letters: DeadLetterStore | None):
    policy = definition.policy

    @app.task(
        name=definition.name,
        bind=True,
        max_retries=policy.max_retries,
        queue=policy.queue,
        ignore_result=True,
    )
    def run(self, *args: Any, **kwargs: Any) -> None:
        try:
            definition.handler(*args, **kwargs)
        except Exception as exc:
            attempt = self.request.retries + 1
            if policy.should_retry(attempt, exc):
                countdown = policy.backoff(attempt, exc)
                logger.warning(
                    "Task %s failed, retry %d/%d in %.0fs: %s",
                    definition.name,
                    attempt,
                    policy.max_retries,
                    countdown,
                    exc,
                )
                try:
                    raise self.retry(exc=exc, countdown=countdown)
                except MaxRetriesExceededError:
                    pass
            give_up(
                definition,
                args,
                kwargs,
                exc,
                attempts=attempt,
                job_id=str(self.request.id),
                dead_letters=dead_letters,
            )

    return run


def register_tasks(
    app: Celery, registry: JobRegistry, dead_letters: DeadLetterStore | None = None
) -> dict[str, Any]:
    """Create one Celery task per registered job and return them by name."""

    return {definition.name: _make_task(app, definition, dead_letters) for definition in registry}
