"""Helpers for psycopg connections and the conversation schema."""

from __future__ import annotations

import logging

import psycopg

from .settings import get_settings

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id BIGSERIAL PRIMARY KEY,
        session_id TEXT NOT NULL,
        user_id TEXT,
        guest_user_id TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        ended_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS ix_conversations_session_id ON conversations (session_id)",
    "CREATE INDEX IF NOT EXISTS ix_conversations_user_id ON conversations (user_id)",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id BIGSERIAL PRIMARY KEY,
        conversation_id BIGINT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system', 'company')),
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_messages_conversation_created
        ON messages (conversation_id, created_at)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ix_messages_unique_error_reply
        ON messages (conversation_id, (metadata->>'original_message_id'))
        WHERE role = 'assistant' AND (metadata->>'error')::boolean IS TRUE
    """,
    """
    CREATE TABLE IF NOT EXISTS analyses (
        id BIGSERIAL PRIMARY KEY,
        conversation_id BIGINT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        analysis_type TEXT NOT NULL
            CHECK (analysis_type IN ('needs', 'sentiment', 'escalation', 'pattern')),
        analysis_data JSONB NOT NULL DEFAULT '{}'::jsonb,
        priority_level TEXT CHECK (priority_level IN ('low', 'medium', 'high', 'urgent')),
        sentiment TEXT CHECK (sentiment IN ('positive', 'neutral', 'negative', 'frustrated')),
        confidence_score DOUBLE PRECISION,
        escalated BOOLEAN NOT NULL DEFAULT false,
        escalated_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_analyses_conversation_created
        ON analyses (conversation_id, created_at DESC)
    """,
)


def connect(database_url: str | None = None) -> psycopg.Connection:
    """Open a new connection to ``database_url`` (defaults to ``DATABASE_URL``)."""

    url = database_url or get_settings().database_url
    if not url:
        raise RuntimeError("DATABASE_URL not configured")
    return psycopg.connect(url)


def ensure_schema(conn: psycopg.Connection) -> None:
    """Create the conversation tables and indexes when they are missing."""

    try:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        conn.commit()
    except Exception:
        logger.exception("Failed to ensure conversation schema")
        conn.rollback()
        raise
