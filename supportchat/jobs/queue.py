"""Job queue contracts, retry policies and an in-process queue.

Producers only see :class:`QueueClient`. Which queue class a job lands on,
how often it is retried and whether it is dead-lettered is decided here by
the job name, so the in-memory queue and the Celery client apply the same
policy.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import redis
import requests

from ..core.errors import NotFoundError, TransientExternalError, ValidationError

logger = logging.getLogger(__name__)

Backoff = Callable[[int, BaseException], float]
GiveUpHook = Callable[[tuple, dict, BaseException], None]

# Job names ------------------------------------------------------------------
FULL_ANALYSIS = "analysis.full"
BATCH_ANALYSIS = "analysis.batch"
PREVIEW_ANALYSIS = "analysis.preview"
PREVIEW_REFRESH = "analysis.preview_refresh"
ASSISTANT_RESPONSE = "responses.generate"
NEW_INQUIRY_NOTIFICATION = "notifications.new_inquiry"
ESCALATION_NOTIFICATION = "notifications.escalation"


def is_timeout(exc: BaseException) -> bool:
    """Return ``True`` for timeout-class failures of external calls."""

    if isinstance(exc, TransientExternalError):
        return exc.timeout
    return isinstance(exc, (TimeoutError, requests.exceptions.Timeout))


def is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, (NotFoundError, ValidationError))


def quadratic_backoff(base_seconds: float) -> Backoff:
    def _backoff(attempt: int, exc: BaseException) -> float:
        return float(attempt**2 * base_seconds)

    return _backoff


def analysis_backoff(attempt: int, exc: BaseException) -> float:
    """``attempt² × 30s`` for timeouts, ``attempt² × 10s`` for anything else."""

    return float(attempt**2 * (30 if is_timeout(exc) else 10))


@dataclass(frozen=True)
class RetryPolicy:
    queue: str
    max_retries: int = 0
    backoff: Backoff = quadratic_backoff(10)
    dead_letter: bool = False

    def should_retry(self, attempt: int, exc: BaseException) -> bool:
        """``attempt`` is the 1-based number of the retry being considered."""

        return attempt <= self.max_retries and is_retryable(exc)


JOB_POLICIES: dict[str, RetryPolicy] = {
    FULL_ANALYSIS: RetryPolicy(
        "analysis", max_retries=5, backoff=analysis_backoff, dead_letter=True
    ),
    BATCH_ANALYSIS: RetryPolicy("low", max_retries=3),
    PREVIEW_ANALYSIS: RetryPolicy("low_priority"),
    PREVIEW_REFRESH: RetryPolicy("low_priority"),
    ASSISTANT_RESPONSE: RetryPolicy("default", max_retries=3),
    NEW_INQUIRY_NOTIFICATION: RetryPolicy("notifications"),
    ESCALATION_NOTIFICATION: RetryPolicy("critical", max_retries=10, dead_letter=True),
}


def policy_for(job: str) -> RetryPolicy:
    try:
        return JOB_POLICIES[job]
    except KeyError as exc:
        raise KeyError(f"Job '{job}' is not configured") from exc


class QueueClient(Protocol):
    """What producers need from a job queue: enqueue and return immediately."""

    def enqueue(self, job: str, *args: Any, **kwargs: Any) -> str: ...


# ---------------------------------------------------------------------------
# Registry


@dataclass
class JobDefinition:
    name: str
    handler: Callable[..., Any]
    policy: RetryPolicy
    on_give_up: GiveUpHook | None = None


class JobRegistry:
    """Maps job names to the callables that execute them."""

    def __init__(self) -> None:
        self._definitions: dict[str, JobDefinition] = {}

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        *,
        on_give_up: GiveUpHook | None = None,
        policy: RetryPolicy | None = None,
    ) -> JobDefinition:
        definition = JobDefinition(name, handler, policy or policy_for(name), on_give_up)
        self._definitions[name] = definition
        return definition

    def get(self, name: str) -> JobDefinition:
        if name not in self._definitions:
            raise KeyError(f"No handler registered for job '{name}'")
        return self._definitions[name]

    def __iter__(self) -> Iterator[JobDefinition]:
        return iter(list(self._definitions.values()))

    def __contains__(self, name: object) -> bool:
        return name in self._definitions


# ---------------------------------------------------------------------------
# Dead letters


@dataclass(frozen=True)
class DeadJob:
    job_id: str
    name: str
    args: tuple
    kwargs: dict
    queue: str
    attempts: int
    error: str
    failed_at: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "job_id": self.job_id,
                "name": self.name,
                "args": list(self.args),
                "kwargs": self.kwargs,
                "queue": self.queue,
                "attempts": self.attempts,
                "error": self.error,
                "failed_at": self.failed_at.isoformat(),
            },
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> "DeadJob":
        data = json.loads(raw)
        return cls(
            job_id=data["job_id"],
            name=data["name"],
            args=tuple(data.get("args") or ()),
            kwargs=dict(data.get("kwargs") or {}),
            queue=data["queue"],
            attempts=int(data["attempts"]),
            error=data["error"],
            failed_at=datetime.fromisoformat(data["failed_at"]),
        )


class DeadLetterStore(Protocol):
    def add(self, job: DeadJob) -> None: ...

    def list(self) -> list[DeadJob]: ...


class InMemoryDeadLetterStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: list[DeadJob] = []

    def add(self, job: DeadJob) -> None:
        with self._lock:
            self._jobs.append(job)

    def list(self) -> list[DeadJob]:
        with self._lock:
            return list(self._jobs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class RedisDeadLetterStore:
    """Dead letters kept in a Redis list next to the Celery broker."""

    KEY = "supportchat:dead_jobs"

    def __init__(self, client: redis.Redis, *, key: str | None = None) -> None:
        self._redis = client
        self._key = key or self.KEY

    @classmethod
    def from_url(cls, url: str) -> "RedisDeadLetterStore":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=5))

    def add(self, job: DeadJob) -> None:
        self._redis.lpush(self._key, job.to_json())

    def list(self) -> list[DeadJob]:
        return [DeadJob.from_json(raw) for raw in self._redis.lrange(self._key, 0, -1)]


def give_up(
    definition: JobDefinition,
    args: tuple,
    kwargs: dict,
    exc: BaseException,
    *,
    attempts: int,
    job_id: str,
    dead_letters: DeadLetterStore | None,
) -> None:
    """Stop retrying a job: log, dead-letter when configured, run the hook."""

    if not is_retryable(exc):
        logger.error("Job %s (%s) failed permanently: %s", definition.name, job_id, exc)
    else:
        logger.error(
            "Job %s (%s) exhausted after %d attempt(s): %s",
            definition.name,
            job_id,
            attempts,
            exc,
        )
    if definition.policy.dead_letter and is_retryable(exc) and dead_letters is not None:
        dead_letters.add(
            DeadJob(
                job_id=job_id,
                name=definition.name,
                args=tuple(args),
                kwargs=dict(kwargs),
                queue=definition.policy.queue,
                attempts=attempts,
                error=f"{type(exc).__name__}: {exc}",
                failed_at=datetime.now(timezone.utc),
            )
        )
        logger.error("Job died: %s with args %r", definition.name, list(args))
    if definition.on_give_up is not None:
        try:
            definition.on_give_up(tuple(args), dict(kwargs), exc)
        except Exception:
            logger.exception("Give-up hook for %s failed", definition.name)


# ---------------------------------------------------------------------------
# In-process queue


@dataclass
class Job:
    name: str
    args: tuple
    kwargs: dict
    queue: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    run_at: float = 0.0
    last_error: str | None = None


class InMemoryJobQueue:
    """Queue that keeps jobs in memory and runs them on :meth:`run_pending`.

    Used when no broker is configured and by the test-suite. Enqueueing never
    executes anything; retries are rescheduled ``backoff`` seconds ahead on the
    injected ``clock``.
    """

    def __init__(
        self,
        registry: JobRegistry | None = None,
        *,
        dead_letters: DeadLetterStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry or JobRegistry()
        self.dead_letters = dead_letters if dead_letters is not None else InMemoryDeadLetterStore()
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: list[Job] = []
        self.history: list[Job] = []

    def enqueue(self, job: str, *args: Any, **kwargs: Any) -> str:
        policy = policy_for(job)
        entry = Job(job, tuple(args), dict(kwargs), policy.queue, run_at=self._clock())
        with self._lock:
            self._pending.append(entry)
            self.history.append(entry)
        logger.debug("Enqueued %s on %s (%s)", job, policy.queue, entry.id)
        return entry.id

    def enqueued(self, name: str | None = None) -> list[Job]:
        with self._lock:
            return [job for job in self.history if name is None or job.name == name]

    def pending(self) -> list[Job]:
        with self._lock:
            return list(self._pending)

    def run_pending(self) -> int:
        """Run every due job, including jobs enqueued while running."""

        executed = 0
        while True:
            now = self._clock()
            with self._lock:
                due = [job for job in self._pending if job.run_at <= now]
                if not due:
                    return executed
                job = min(due, key=lambda j: j.run_at)
                self._pending.remove(job)
            self._execute(job)
            executed += 1

    def _execute(self, job: Job) -> None:
        definition = self.registry.get(job.name)
        try:
            definition.handler(*job.args, **job.kwargs)
        except Exception as exc:
            job.attempts += 1
            job.last_error = f"{type(exc).__name__}: {exc}"
            if definition.policy.should_retry(job.attempts, exc):
                delay = definition.policy.backoff(job.attempts, exc)
                job.run_at = self._clock() + delay
                with self._lock:
                    self._pending.append(job)
                logger.warning(
                    "Job %s (%s) failed, retry %d/%d in %.0fs: %s",
                    job.name,
                    job.id,
                    job.attempts,
                    definition.policy.max_retries,
                    delay,
                    exc,
                )
                return
            give_up(
                definition,
                job.args,
                job.kwargs,
                exc,
                attempts=job.attempts,
                job_id=job.id,
                dead_letters=self.dead_letters,
            )
