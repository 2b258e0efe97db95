"""Outbound JSON webhook delivery."""

from __future__ import annotations

import logging
from typing import Any

import requests

from ..core.errors import WebhookDeliveryError


class WebhookClient:
    """POST JSON documents to chat-ops webhooks.

    Delivery is attempted exactly once; non-2xx answers and network failures
    are logged and raised as :class:`WebhookDeliveryError` so the job running
    the notification decides whether to retry.
    """

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def post(self, url: str, payload: dict[str, Any]) -> None:
        try:
            response = self.session.request(
                "POST",
                url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as exc:
            self.logger.warning("Webhook timed out after %ss: %s", self.timeout, _redact(url))
            raise WebhookDeliveryError(f"webhook timed out: {exc}", timeout=True) from exc
        except requests.exceptions.RequestException as exc:
            self.logger.warning("Webhook request failed for %s: %s", _redact(url), exc)
            raise WebhookDeliveryError(f"webhook request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            self.logger.warning(
                "Webhook %s answered %s: %s",
                _redact(url),
                response.status_code,
                (response.text or "")[:200],
            )
            raise WebhookDeliveryError(
                f"webhook answered {response.status_code}", status_code=response.status_code
            )
        self.logger.debug("Webhook delivered to %s", _redact(url))


def _redact(url: str) -> str:
    """Hide the secret path segment of a webhook URL in log lines."""

    head, _, tail = url.rpartition("/")
    if not head:
        return url
    return f"{head}/{tail[:4]}***" if tail else url
