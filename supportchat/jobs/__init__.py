"""Background job policies and queue clients."""

from .queue import JOB_POLICIES, InMemoryJobQueue, JobRegistry, QueueClient, RetryPolicy

__all__ = ["JOB_POLICIES", "InMemoryJobQueue", "JobRegistry", "QueueClient", "RetryPolicy"]
