"""Persistence for conversations, messages and analyses."""
from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..core.errors import NotFoundError, ValidationError
from . import schemas


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore(Protocol):
    """Abstraction for persisting conversation artefacts.

    Every write is a single-row operation. Implementations enforce unique
    ``session_id`` values and at most one flagged error reply per
    ``(conversation, original_message_id)``; both surface as
    :class:`ValidationError`.
    """

    def create_conversation(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        guest_user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Conversation: ...

    def get_conversation(self, conversation_id: int) -> Optional[schemas.Conversation]: ...

    def get_by_session(self, session_id: str) -> Optional[schemas.Conversation]: ...

    def set_ended_at(self, conversation_id: int, ended_at: Optional[datetime]) -> None: ...

    def touch_conversation(self, conversation_id: int) -> None: ...

    def delete_conversation(self, conversation_id: int) -> None: ...

    def add_message(
        self,
        conversation_id: int,
        content: str,
        role: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Message: ...

    def get_message(self, message_id: int) -> Optional[schemas.Message]: ...

    def update_message_metadata(
        self, message_id: int, updates: Dict[str, Any]
    ) -> Optional[schemas.Message]: ...

    def list_messages(self, conversation_id: int) -> List[schemas.Message]: ...

    def count_messages(self, conversation_id: int, role: Optional[str] = None) -> int: ...

    def create_analysis(
        self,
        conversation_id: int,
        analysis_type: str,
        analysis_data: Dict[str, Any],
        *,
        priority_level: Optional[str] = None,
        sentiment: Optional[str] = None,
        confidence_score: Optional[float] = None,
    ) -> schemas.Analysis: ...

    def get_analysis(self, analysis_id: int) -> Optional[schemas.Analysis]: ...

    def list_analyses(self, conversation_id: int) -> List[schemas.Analysis]: ...

    def mark_escalated(self, analysis_id: int, escalated_at: datetime) -> bool:
        """Flip ``escalated`` to true. Returns ``False`` when it already was."""
        ...


_SESSION_TAKEN = "has already been taken"
_ERROR_REPLY_TAKEN = "an error reply already exists for this message"


class InMemoryConversationStore:
    """Thread-safe dictionary backed store used in development and tests."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._conversations: Dict[int, schemas.Conversation] = {}
        self._messages: Dict[int, schemas.Message] = {}
        self._analyses: Dict[int, schemas.Analysis] = {}
        self._conversation_seq = 1
        self._message_seq = 1
        self._analysis_seq = 1

    # Conversations ------------------------------------------------------------
    def create_conversation(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        guest_user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Conversation:
        with self._lock:
            if any(c.session_id == session_id for c in self._conversations.values()):
                raise ValidationError.single("session_id", _SESSION_TAKEN)
            now = _now()
            conversation = schemas.Conversation(
                id=self._conversation_seq,
                session_id=session_id,
                user_id=user_id,
                guest_user_id=guest_user_id,
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            self._conversation_seq += 1
            self._conversations[conversation.id] = conversation
            return conversation.model_copy(deep=True)

    def get_conversation(self, conversation_id: int) -> Optional[schemas.Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    def get_by_session(self, session_id: str) -> Optional[schemas.Conversation]:
        with self._lock:
            for conversation in self._conversations.values():
                if conversation.session_id == session_id:
                    return conversation.model_copy(deep=True)
        return None

    def set_ended_at(self, conversation_id: int, ended_at: Optional[datetime]) -> None:
        with self._lock:
            conversation = self._require_conversation(conversation_id)
            conversation.ended_at = ended_at
            conversation.updated_at = _now()

    def touch_conversation(self, conversation_id: int) -> None:
        with self._lock:
            self._require_conversation(conversation_id).updated_at = _now()

    def delete_conversation(self, conversation_id: int) -> None:
        with self._lock:
            self._conversations.pop(conversation_id, None)
            self._messages = {
                k: m for k, m in self._messages.items() if m.conversation_id != conversation_id
            }
            self._analyses = {
                k: a for k, a in self._analyses.items() if a.conversation_id != conversation_id
            }

    # Messages -----------------------------------------------------------------
    def add_message(
        self,
        conversation_id: int,
        content: str,
        role: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Message:
        metadata = dict(metadata or {})
        with self._lock:
            self._require_conversation(conversation_id)
            if role == "assistant" and metadata.get("error"):
                original = str(metadata.get("original_message_id"))
                for existing in self._messages.values():
                    if (
                        existing.conversation_id == conversation_id
                        and existing.is_error_reply
                        and str(existing.metadata.get("original_message_id")) == original
                    ):
                        raise ValidationError.single("original_message_id", _ERROR_REPLY_TAKEN)
            message = schemas.Message(
                id=self._message_seq,
                conversation_id=conversation_id,
                content=content,
                role=role,
                metadata=metadata,
                created_at=_now(),
            )
            self._message_seq += 1
            self._messages[message.id] = message
            return message.model_copy(deep=True)

    def get_message(self, message_id: int) -> Optional[schemas.Message]:
        with self._lock:
            message = self._messages.get(message_id)
            return message.model_copy(deep=True) if message else None

    def update_message_metadata(
        self, message_id: int, updates: Dict[str, Any]
    ) -> Optional[schemas.Message]:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return None
            message.metadata = {**message.metadata, **updates}
            return message.model_copy(deep=True)

    def list_messages(self, conversation_id: int) -> List[schemas.Message]:
        with self._lock:
            items = [
                m.model_copy(deep=True)
                for m in self._messages.values()
                if m.conversation_id == conversation_id
            ]
        items.sort(key=lambda m: (m.created_at, m.id))
        return items

    def count_messages(self, conversation_id: int, role: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1
                for m in self._messages.values()
                if m.conversation_id == conversation_id and (role is None or m.role == role)
            )

    # Analyses -----------------------------------------------------------------
    def create_analysis(
        self,
        conversation_id: int,
        analysis_type: str,
        analysis_data: Dict[str, Any],
        *,
        priority_level: Optional[str] = None,
        sentiment: Optional[str] = None,
        confidence_score: Optional[float] = None,
    ) -> schemas.Analysis:
        with self._lock:
            self._require_conversation(conversation_id)
            analysis = schemas.Analysis(
                id=self._analysis_seq,
                conversation_id=conversation_id,
                analysis_type=analysis_type,
                analysis_data=dict(analysis_data),
                priority_level=priority_level,
                sentiment=sentiment,
                confidence_score=confidence_score,
                created_at=_now(),
            )
            self._analysis_seq += 1
            self._analyses[analysis.id] = analysis
            return analysis.model_copy(deep=True)

    def get_analysis(self, analysis_id: int) -> Optional[schemas.Analysis]:
        with self._lock:
            analysis = self._analyses.get(analysis_id)
            return analysis.model_copy(deep=True) if analysis else None

    def list_analyses(self, conversation_id: int) -> List[schemas.Analysis]:
        with self._lock:
            items = [
                a.model_copy(deep=True)
                for a in self._analyses.values()
                if a.conversation_id == conversation_id
            ]
        items.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return items

    def mark_escalated(self, analysis_id: int, escalated_at: datetime) -> bool:
        with self._lock:
            analysis = self._analyses.get(analysis_id)
            if analysis is None:
                raise NotFoundError(f"Analysis {analysis_id} not found")
            if analysis.escalated:
                return False
            analysis.escalated = True
            analysis.escalated_at = escalated_at
            return True

    # Helpers ------------------------------------------------------------------
    def _require_conversation(self, conversation_id: int) -> schemas.Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation


class PostgresConversationStore:
    """PostgreSQL implementation of :class:`ConversationStore`.

    Each call opens its own connection from ``connect`` and commits on
    exit, so every write is an independent single-row statement.
    """

    def __init__(self, connect: Callable[[], psycopg.Connection]) -> None:
        self._connect = connect

    # Utility -----------------------------------------------------------------
    def _execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                if cur.description is None:
                    return []
                return cur.fetchall()

    def _one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        rows = self._execute(query, params)
        return rows[0] if rows else None

    # Conversation operations --------------------------------------------------
    def create_conversation(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        guest_user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Conversation:
        try:
            row = self._one(
                """
                INSERT INTO conversations (session_id, user_id, guest_user_id, metadata)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (session_id, user_id, guest_user_id, Jsonb(metadata or {})),
            )
        except psycopg.errors.UniqueViolation as exc:
            raise ValidationError.single("session_id", _SESSION_TAKEN) from exc
        return schemas.Conversation(**row)

    def get_conversation(self, conversation_id: int) -> Optional[schemas.Conversation]:
        row = self._one("SELECT * FROM conversations WHERE id = %s", (conversation_id,))
        return schemas.Conversation(**row) if row else None

    def get_by_session(self, session_id: str) -> Optional[schemas.Conversation]:
        row = self._one("SELECT * FROM conversations WHERE session_id = %s", (session_id,))
        return schemas.Conversation(**row) if row else None

    def set_ended_at(self, conversation_id: int, ended_at: Optional[datetime]) -> None:
        row = self._one(
            "UPDATE conversations SET ended_at = %s, updated_at = now() WHERE id = %s RETURNING id",
            (ended_at, conversation_id),
        )
        if row is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")

    def touch_conversation(self, conversation_id: int) -> None:
        self._execute(
            "UPDATE conversations SET updated_at = now() WHERE id = %s", (conversation_id,)
        )

    def delete_conversation(self, conversation_id: int) -> None:
        self._execute("DELETE FROM conversations WHERE id = %s", (conversation_id,))

    # Messages -----------------------------------------------------------------
    def add_message(
        self,
        conversation_id: int,
        content: str,
        role: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Message:
        try:
            row = self._one(
                """
                INSERT INTO messages (conversation_id, content, role, metadata)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (conversation_id, content, role, Jsonb(metadata or {})),
            )
        except psycopg.errors.ForeignKeyViolation as exc:
            raise NotFoundError(f"Conversation {conversation_id} not found") from exc
        except psycopg.errors.UniqueViolation as exc:
            raise ValidationError.single("original_message_id", _ERROR_REPLY_TAKEN) from exc
        return schemas.Message(**row)

    def get_message(self, message_id: int) -> Optional[schemas.Message]:
        row = self._one("SELECT * FROM messages WHERE id = %s", (message_id,))
        return schemas.Message(**row) if row else None

    def update_message_metadata(
        self, message_id: int, updates: Dict[str, Any]
    ) -> Optional[schemas.Message]:
        row = self._one(
            "UPDATE messages SET metadata = metadata || %s WHERE id = %s RETURNING *",
            (Jsonb(updates), message_id),
        )
        return schemas.Message(**row) if row else None

    def list_messages(self, conversation_id: int) -> List[schemas.Message]:
        rows = self._execute(
            "SELECT * FROM messages WHERE conversation_id = %s ORDER BY created_at ASC, id ASC",
            (conversation_id,),
        )
        return [schemas.Message(**row) for row in rows]

    def count_messages(self, conversation_id: int, role: Optional[str] = None) -> int:
        if role is None:
            row = self._one(
                "SELECT COUNT(*) AS n FROM messages WHERE conversation_id = %s",
                (conversation_id,),
            )
        else:
            row = self._one(
                "SELECT COUNT(*) AS n FROM messages WHERE conversation_id = %s AND role = %s",
                (conversation_id, role),
            )
        return int(row["n"]) if row else 0

    # Analyses -----------------------------------------------------------------
    def create_analysis(
        self,
        conversation_id: int,
        analysis_type: str,
        analysis_data: Dict[str, Any],
        *,
        priority_level: Optional[str] = None,
        sentiment: Optional[str] = None,
        confidence_score: Optional[float] = None,
    ) -> schemas.Analysis:
        try:
            row = self._one(
                """
                INSERT INTO analyses
                    (conversation_id, analysis_type, analysis_data, priority_level,
                     sentiment, confidence_score)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    conversation_id,
                    analysis_type,
                    Jsonb(analysis_data),
                    priority_level,
                    sentiment,
                    confidence_score,
                ),
            )
        except psycopg.errors.ForeignKeyViolation as exc:
            raise NotFoundError(f"Conversation {conversation_id} not found") from exc
        return schemas.Analysis(**row)

    def get_analysis(self, analysis_id: int) -> Optional[schemas.Analysis]:
        row = self._one("SELECT * FROM analyses WHERE id = %s", (analysis_id,))
        return schemas.Analysis(**row) if row else None

    def list_analyses(self, conversation_id: int) -> List[schemas.Analysis]:
        rows = self._execute(
            "SELECT * FROM analyses WHERE conversation_id = %s ORDER BY created_at DESC, id DESC",
            (conversation_id,),
        )
        return [schemas.Analysis(**row) for row in rows]

    def mark_escalated(self, analysis_id: int, escalated_at: datetime) -> bool:
        row = self._one(
            """
            UPDATE analyses SET escalated = true, escalated_at = %s
            WHERE id = %s AND escalated = false
            RETURNING id
            """,
            (escalated_at, analysis_id),
        )
        if row is not None:
            return True
        if self.get_analysis(analysis_id) is None:
            raise NotFoundError(f"Analysis {analysis_id} not found")
        return False
