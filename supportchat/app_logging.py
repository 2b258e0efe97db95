"""Application, worker and access logging setup.

- ``LOG_JSON=true`` switches every handler to one JSON object per line.
- Files rotate at midnight (``LOG_ROTATE_UTC``) and are kept for
  ``LOG_RETENTION_DAYS``: ``app.log`` for the API process, ``worker.log`` for
  the Celery worker and ``access.log`` for HTTP requests.
- The access middleware writes one scrubbed JSON line per request and echoes
  the request id in ``X-Request-Id``.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

ROOT_LOGGER = "supportchat"

SKIP_PATHS = {"/api/health", "/api/metrics", "/api/version"}

SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-user-email",
    "email",
    "password",
    "token",
    "webhook_url",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")


def _scrub(data: object) -> object:
    """Mask sensitive keys in nested dicts and lists."""

    if isinstance(data, dict):
        return {
            key: ("***" if str(key).lower() in SENSITIVE_FIELDS else _scrub(value))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub(item) for item in data]
    return data


def _rotating_handler(path: str, formatter: logging.Formatter) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=int(os.getenv("LOG_RETENTION_DAYS", "7")),
        utc=os.getenv("LOG_ROTATE_UTC", "false").lower() == "true",
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def _install_access_logging(app: FastAPI) -> None:
    log_bodies = os.getenv("LOG_REQUEST_BODIES", "false").lower() == "true"
    access_logger = logging.getLogger("uvicorn.access")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in SKIP_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        body: object = None
        if log_bodies:
            raw = await request.body()

            async def receive() -> dict:
                return {"type": "http.request", "body": raw, "more_body": False}

            request._receive = receive  # type: ignore[attr-defined]
            if raw:
                try:
                    body = _scrub(json.loads(raw))
                except ValueError:
                    body = raw.decode("utf-8", errors="replace")

        response = await call_next(request)

        client_ip = request.headers.get("X-Forwarded-For")
        if not client_ip and request.client is not None:
            client_ip = request.client.host
        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": client_ip,
            "session_id": request.headers.get("X-Session-Id"),
            "headers": _scrub(dict(request.headers)),
        }
        if body is not None:
            entry["body"] = body

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(entry, default=str, ensure_ascii=False))
        return response


def init_logging(app: FastAPI | None = None, *, component: str = "app") -> logging.Logger:
    """Attach rotating file handlers to the ``supportchat`` logger.

    ``component`` names the log file (``app`` or ``worker``). Passing ``app``
    also configures ``access.log`` and installs the access middleware.
    """

    log_dir = os.getenv("LOG_DIR", "logs")
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    formatter = _formatter(os.getenv("LOG_JSON", "false").lower() == "true")
    os.makedirs(log_dir, exist_ok=True)

    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        root.addHandler(_rotating_handler(os.path.join(log_dir, f"{component}.log"), formatter))
    root.setLevel(level)

    if app is not None:
        access_logger = logging.getLogger("uvicorn.access")
        access_logger.handlers.clear()
        access_logger.addHandler(_rotating_handler(os.path.join(log_dir, "access.log"), formatter))
        access_logger.setLevel(level)
        cast(Any, app).logger = root
        _install_access_logging(app)
    return root
