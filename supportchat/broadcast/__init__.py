"""Live event fan-out for conversations and the escalation dashboard."""

from . import events
from .hub import BroadcastHub, Connection, Subscription

__all__ = ["BroadcastHub", "Connection", "Subscription", "events"]
