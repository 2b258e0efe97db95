"""Chat-ops notification for a first inquiry from a new customer."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from ..jobs import queue as jobs
from ..jobs.queue import JobRegistry
from .webhook import WebhookClient

logger = logging.getLogger(__name__)

# inquiry category -> team webhook
CATEGORY_TEAMS: dict[str, str] = {
    "marketing": "marketing",
    "service": "customer_service",
    "consultation": "customer_service",
    "tech": "engineering",
    "project": "sales",
    "cost": "sales",
    "pricing": "sales",
    "case": "sales",
    "cases": "sales",
}

CATEGORY_LABELS: dict[str, str] = {
    "marketing": "📈 マーケティング戦略",
    "service": "🏢 サービス概要・能力範囲",
    "tech": "💻 技術・システム関連",
    "project": "📋 プロジェクト進行・体制",
    "cost": "💰 費用・契約",
    "pricing": "💰 費用・契約",
    "case": "📚 実績・事例",
    "cases": "📚 実績・事例",
    "consultation": "💬 初回相談・問い合わせ",
    "integration": "🔗 連携・統合",
    "support": "🎧 サポート",
}


def category_label(category: str) -> str:
    return CATEGORY_LABELS.get(str(category).lower(), str(category))


def build_inquiry_payload(
    *,
    category: str,
    customer_name: str,
    message: str,
    conversation_id: int,
    app_url: str,
    received_at: datetime | None = None,
) -> dict[str, Any]:
    """Slack Block Kit document announcing a new inquiry."""

    label = category_label(category)
    received = (received_at or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return {
        "text": f"🔔 新規お問い合わせ（{label}）",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "📬 新規お問い合わせがありました", "emoji": True},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*カテゴリー:*\n{label}"},
                    {"type": "mrkdwn", "text": f"*お客様名:*\n{customer_name}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*お問い合わせ内容:*\n```{message}```"},
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*対応ページ:*\n<{app_url}/dashboard|ダッシュボードで確認>",
                },
            },
            {
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": f"会話ID: {conversation_id} | 受信時刻: {received}"}
                ],
            },
        ],
    }


class InquiryNotifier:
    def __init__(
        self,
        webhook: WebhookClient,
        team_webhooks: Mapping[str, str],
        *,
        app_url: str = "http://localhost:8000",
    ) -> None:
        self._webhook = webhook
        self._team_webhooks = dict(team_webhooks)
        self._app_url = app_url.rstrip("/")

    def webhook_url_for(self, category: str) -> str | None:
        team = CATEGORY_TEAMS.get(str(category).lower())
        if team is None:
            return None
        return self._team_webhooks.get(team)

    def notify_new_inquiry(
        self, category: str, customer_name: str, message: str, conversation_id: int
    ) -> bool:
        """Post the inquiry to the team owning ``category``.

        Returns ``False`` when no team webhook is configured for the category.
        Delivery failures raise :class:`~supportchat.core.errors.WebhookDeliveryError`.
        """

        url = self.webhook_url_for(category)
        logger.info(
            "New inquiry notification - category: %s, webhook configured: %s",
            category,
            url is not None,
        )
        if url is None:
            return False
        payload = build_inquiry_payload(
            category=category,
            customer_name=customer_name,
            message=message,
            conversation_id=conversation_id,
            app_url=self._app_url,
        )
        self._webhook.post(url, payload)
        logger.info("New inquiry notification sent for conversation %s", conversation_id)
        return True

    def register(self, registry: JobRegistry) -> None:
        registry.register(jobs.NEW_INQUIRY_NOTIFICATION, self.notify_new_inquiry)
