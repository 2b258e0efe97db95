"""Shared SlowAPI limiter keyed by client IP."""

from fastapi import Request
from slowapi import Limiter

from .core.settings import get_settings


def get_client_ip(request: Request) -> str:
    """First ``X-Forwarded-For`` hop when present, else the socket peer."""

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def message_rate_limit() -> str:
    return get_settings().rate_limit_messages


limiter = Limiter(key_func=get_client_ip)
