"""Builders for the JSON payloads pushed to live subscribers.

The shapes are consumed by existing browser clients and must not drift:

- ``new_message``: ``{type, message: {id, content, role, created_at, user?}}``
- ``typing``: ``{type, user: {id, name}, is_typing}``
- ``user_connected`` / ``user_disconnected``: ``{type, user: {id, name, email}, timestamp}``
- ``message_read``: ``{type, message_id, user_id, timestamp}``
- ``analysis_complete``: ``{type, conversation_id, analysis: {...}, timestamp}``
- ``analysis_error``: ``{type, conversation_id, error, timestamp}``
- ``needs_preview``: ``{type, analysis: {confidence, category, need_type, keywords, evidence}}``
- ``new_escalation``: ``{type, analysis_id, conversation_id, priority, sentiment, reasons, timestamp}``
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..conversations import schemas

Event = dict[str, Any]

EVENT_TYPES = frozenset(
    {
        "new_message",
        "typing",
        "user_connected",
        "user_disconnected",
        "message_read",
        "analysis_complete",
        "analysis_error",
        "needs_preview",
        "new_escalation",
    }
)

ESCALATION_TOPIC = "escalation_channel"


def conversation_topic(conversation_id: int) -> str:
    return f"conversation_{conversation_id}"


def _timestamp(value: datetime | None = None) -> str:
    return (value or datetime.now(timezone.utc)).isoformat()


def new_message(message: schemas.Message, user: dict[str, Any] | None = None) -> Event:
    body: dict[str, Any] = {
        "id": message.id,
        "content": message.content,
        "role": message.role,
        "created_at": _timestamp(message.created_at),
    }
    if user is not None:
        body["user"] = user
    return {"type": "new_message", "message": body}


def typing(user: dict[str, Any], is_typing: bool) -> Event:
    return {
        "type": "typing",
        "user": {"id": user.get("id"), "name": user.get("name")},
        "is_typing": bool(is_typing),
    }


def user_connected(user: dict[str, Any]) -> Event:
    return {"type": "user_connected", "user": user, "timestamp": _timestamp()}


def user_disconnected(user: dict[str, Any]) -> Event:
    return {"type": "user_disconnected", "user": user, "timestamp": _timestamp()}


def message_read(message_id: int, user_id: str | None) -> Event:
    return {
        "type": "message_read",
        "message_id": message_id,
        "user_id": user_id,
        "timestamp": _timestamp(),
    }


def analysis_complete(conversation_id: int, summary: dict[str, Any]) -> Event:
    return {
        "type": "analysis_complete",
        "conversation_id": conversation_id,
        "analysis": summary,
        "timestamp": _timestamp(),
    }


def analysis_error(conversation_id: int, error: str) -> Event:
    return {
        "type": "analysis_error",
        "conversation_id": conversation_id,
        "error": error,
        "timestamp": _timestamp(),
    }


def needs_preview(analysis: schemas.Analysis) -> Event:
    data = analysis.analysis_data
    return {
        "type": "needs_preview",
        "analysis": {
            "confidence": analysis.confidence_score,
            "category": data.get("category"),
            "need_type": data.get("need_type"),
            "keywords": data.get("keywords") or [],
            "evidence": data.get("evidence") or [],
        },
    }


def new_escalation(analysis: schemas.Analysis) -> Event:
    return {
        "type": "new_escalation",
        "analysis_id": analysis.id,
        "conversation_id": analysis.conversation_id,
        "priority": analysis.priority_level,
        "sentiment": analysis.sentiment,
        "reasons": analysis.escalation_reasons,
        "timestamp": _timestamp(),
    }
