"""Outbound notifications: chat-ops webhooks, mail and the escalation dashboard."""

from .escalation import EscalationNotifier, LoggingMailer
from .inquiry import InquiryNotifier
from .webhook import WebhookClient

__all__ = ["EscalationNotifier", "InquiryNotifier", "LoggingMailer", "WebhookClient"]
