"""Environment driven configuration.

Values are read once and cached; call :func:`reset_settings_cache` after
changing the environment (tests do this through ``monkeypatch.setenv``).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class NeedsPreviewSettings:
    """Tuning for the needs-preview pass."""

    enabled: bool = True
    turn_threshold_min: int = 2
    turn_threshold_max: int = 3

    def within_window(self, user_turns: int) -> bool:
        return self.turn_threshold_min <= user_turns <= self.turn_threshold_max


@dataclass(frozen=True)
class TokenSettings:
    """Verification parameters for operator access tokens."""

    secret: str | None = None
    issuer: str = "supportchat"
    audience: str = "supportchat-api"
    algorithm: str = "HS256"
    access_token_ttl_seconds: int = 900


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    broker_url: str | None = None
    result_backend: str | None = None
    message_max_length: int = 10_000
    needs_preview: NeedsPreviewSettings = field(default_factory=NeedsPreviewSettings)
    escalation_webhook_url: str | None = None
    inquiry_webhooks: dict[str, str] = field(default_factory=dict)
    webhook_timeout: float = 5.0
    escalation_email_to: str | None = None
    app_url: str = "http://localhost:8000"
    broadcast_mailbox_size: int = 100
    broadcast_workers: int = 8
    rate_limit_messages: str = "30/minute"
    auth: TokenSettings = field(default_factory=TokenSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        preview = NeedsPreviewSettings(
            enabled=_env_bool("NEEDS_PREVIEW_ENABLED", True),
            turn_threshold_min=_env_int("NEEDS_PREVIEW_TURN_MIN", 2),
            turn_threshold_max=_env_int("NEEDS_PREVIEW_TURN_MAX", 3),
        )
        if preview.turn_threshold_min > preview.turn_threshold_max:
            raise RuntimeError("NEEDS_PREVIEW_TURN_MIN must not exceed NEEDS_PREVIEW_TURN_MAX")
        inquiry_webhooks = {
            team: url
            for team, url in {
                "marketing": os.getenv("SLACK_MARKETING_WEBHOOK_URL"),
                "customer_service": os.getenv("SLACK_CUSTOMER_SERVICE_WEBHOOK_URL"),
                "engineering": os.getenv("SLACK_ENGINEERING_WEBHOOK_URL"),
                "sales": os.getenv("SLACK_SALES_WEBHOOK_URL"),
            }.items()
            if url
        }
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            broker_url=os.getenv("CELERY_BROKER_URL") or None,
            result_backend=os.getenv("CELERY_RESULT_BACKEND") or None,
            message_max_length=_env_int("MESSAGE_MAX_LENGTH", 10_000),
            needs_preview=preview,
            escalation_webhook_url=os.getenv("SLACK_WEBHOOK_URL") or None,
            inquiry_webhooks=inquiry_webhooks,
            webhook_timeout=float(os.getenv("WEBHOOK_TIMEOUT", "5")),
            escalation_email_to=os.getenv("ESCALATION_EMAIL_TO") or None,
            app_url=os.getenv("APP_URL", "http://localhost:8000").rstrip("/"),
            broadcast_mailbox_size=_env_int("BROADCAST_MAILBOX_SIZE", 100),
            broadcast_workers=_env_int("BROADCAST_WORKERS", 8),
            rate_limit_messages=os.getenv("RATE_LIMIT_MESSAGES", "30/minute"),
            auth=TokenSettings(
                secret=os.getenv("AUTH_TOKEN_SECRET") or None,
                issuer=os.getenv("AUTH_TOKEN_ISSUER", "supportchat"),
                audience=os.getenv("AUTH_TOKEN_AUDIENCE", "supportchat-api"),
                algorithm=os.getenv("AUTH_TOKEN_ALGORITHM", "HS256"),
                access_token_ttl_seconds=_env_int("ACCESS_TOKEN_TTL_SECONDS", 900),
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process wide settings, reading the environment on first use."""

    return Settings.from_env()


def reset_settings_cache() -> None:
    get_settings.cache_clear()
