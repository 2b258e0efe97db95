"""Escalation Notifier: tell humans about analyses that need attention."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Protocol

from ..broadcast import events
from ..broadcast.hub import BroadcastHub
from ..conversations import schemas
from ..conversations.repository import ConversationStore
from ..core.errors import NotFoundError, ValidationError
from ..jobs import queue as jobs
from ..jobs.queue import JobRegistry, QueueClient
from .webhook import WebhookClient

logger = logging.getLogger(__name__)

CHANNELS = ("email", "slack", "dashboard")
CHANNEL_CHOICES = CHANNELS + ("all",)

PRIORITY_COLORS = {
    "urgent": "danger",
    "high": "warning",
    "medium": "#36a64f",
}
DEFAULT_COLOR = "good"


def priority_color(priority_level: str | None) -> str:
    return PRIORITY_COLORS.get(priority_level or "", DEFAULT_COLOR)


def build_slack_message(
    analysis: schemas.Analysis, conversation: schemas.Conversation | None
) -> dict[str, Any]:
    email = (conversation.metadata.get("email") if conversation else None) or "Unknown"
    reasons = ", ".join(analysis.escalation_reasons) or "N/A"
    confidence = (
        f"{round(analysis.confidence_score * 100)}%"
        if analysis.confidence_score is not None
        else "N/A"
    )
    return {
        "text": "⚠️ エスカレーションが必要な会話を検出しました",
        "attachments": [
            {
                "color": priority_color(analysis.priority_level),
                "fields": [
                    {"title": "会話ID", "value": analysis.conversation_id, "short": True},
                    {"title": "ユーザー", "value": email, "short": True},
                    {"title": "優先度", "value": analysis.priority_level, "short": True},
                    {"title": "感情状態", "value": analysis.sentiment, "short": True},
                    {"title": "エスカレーション理由", "value": reasons, "short": False},
                    {"title": "信頼度スコア", "value": confidence, "short": True},
                ],
                "footer": "Intelligent Chatbot System",
                "ts": int(time.time()),
            }
        ],
    }


def escalation_summary(analysis: schemas.Analysis) -> dict[str, Any]:
    """Short summary handed to the mail channel."""

    actions = [need.get("suggestion") for need in analysis.hidden_needs if need.get("suggestion")]
    return {
        "analysis_id": analysis.id,
        "conversation_id": analysis.conversation_id,
        "priority": analysis.priority_level,
        "sentiment": analysis.sentiment,
        "reasons": analysis.escalation_reasons,
        "suggested_actions": actions[:3],
    }


class Mailer(Protocol):
    def send_escalation(self, to: str, summary: dict[str, Any]) -> None: ...


class LoggingMailer:
    """Mailer that writes the escalation summary to the log instead of sending it."""

    def send_escalation(self, to: str, summary: dict[str, Any]) -> None:
        logger.info(
            "Escalation mail to %s: analysis #%s priority=%s sentiment=%s actions=%s",
            to,
            summary.get("analysis_id"),
            summary.get("priority"),
            summary.get("sentiment"),
            summary.get("suggested_actions"),
        )


class EscalationNotifier:
    def __init__(
        self,
        store: ConversationStore,
        hub: BroadcastHub,
        webhook: WebhookClient,
        *,
        slack_webhook_url: str | None = None,
        mailer: Mailer | None = None,
        email_to: str | None = None,
        queue: QueueClient | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._hub = hub
        self._webhook = webhook
        self._slack_webhook_url = slack_webhook_url
        self._mailer = mailer or LoggingMailer()
        self._email_to = email_to

    def enabled_channels(self) -> tuple[str, ...]:
        enabled = []
        if self._email_to:
            enabled.append("email")
        if self._slack_webhook_url:
            enabled.append("slack")
        enabled.append("dashboard")
        return tuple(enabled)

    def notify(
        self, analysis_id: int, channel: str = "all", forced: bool = False
    ) -> schemas.EscalationResult:
        """Notify the requested channel(s) about ``analysis_id``.

        Without ``forced`` nothing is sent unless the analysis requires
        escalation. The analysis is marked escalated as soon as one channel
        has delivered. When ``channel`` is ``"all"`` every failed channel gets
        its own forced follow-up job, so channels that already delivered are
        never sent twice; a single-channel failure is raised for the job's
        retry policy.
        """

        if channel not in CHANNEL_CHOICES:
            raise ValidationError.single("channel", f"must be one of {', '.join(CHANNEL_CHOICES)}")
        analysis = self._store.get_analysis(analysis_id)
        if analysis is None:
            logger.error("Analysis not found: %s", analysis_id)
            raise NotFoundError(f"Analysis {analysis_id} not found")

        if not forced and not analysis.requires_escalation:
            logger.info("Analysis #%s does not require escalation", analysis.id)
            return schemas.EscalationResult(
                analysis_id=analysis.id, notified=False, escalated=analysis.escalated
            )

        logger.info("Processing escalation notification for analysis #%s", analysis.id)
        enabled = self.enabled_channels()
        requested = CHANNELS if channel == "all" else (channel,)
        delivered: dict[str, bool] = {}
        failures: dict[str, Exception] = {}
        for name in requested:
            if name not in enabled:
                logger.info("Escalation channel %s is not configured; skipped", name)
                delivered[name] = False
                continue
            try:
                self._deliver(name, analysis)
            except Exception as exc:
                logger.error(
                    "Escalation via %s failed for analysis #%s: %s", name, analysis.id, exc
                )
                delivered[name] = False
                failures[name] = exc
            else:
                delivered[name] = True

        notified = any(delivered.values())
        escalated = analysis.escalated
        if notified and not escalated:
            self._store.mark_escalated(analysis.id, datetime.now(timezone.utc))
            escalated = True

        if failures and (len(requested) == 1 or self._queue is None):
            raise next(iter(failures.values()))
        for name in failures:
            self._queue.enqueue(jobs.ESCALATION_NOTIFICATION, analysis.id, name, True)
            logger.warning(
                "Escalation via %s queued for retry for analysis #%s", name, analysis.id
            )

        logger.info("Completed escalation notification for analysis #%s", analysis.id)
        return schemas.EscalationResult(
            analysis_id=analysis.id,
            notified=notified,
            channels=delivered,
            escalated=escalated,
            retrying=list(failures),
        )

    def run_job(self, analysis_id: int, channel: str = "all", force: bool = False) -> None:
        self.notify(analysis_id, channel, forced=force)

    def register(self, registry: JobRegistry) -> None:
        registry.register(jobs.ESCALATION_NOTIFICATION, self.run_job)

    # ------------------------------------------------------------------

    def _deliver(self, channel: str, analysis: schemas.Analysis) -> None:
        if channel == "dashboard":
            self._hub.publish_dashboard(events.new_escalation(analysis))
        elif channel == "slack":
            conversation = self._store.get_conversation(analysis.conversation_id)
            logger.info("Sending Slack notification for analysis #%s", analysis.id)
            self._webhook.post(self._slack_webhook_url, build_slack_message(analysis, conversation))
        elif channel == "email":
            self._mailer.send_escalation(self._email_to, escalation_summary(analysis))
