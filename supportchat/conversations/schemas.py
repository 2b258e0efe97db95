"""Pydantic records for conversations, messages and analyses."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ROLES = ("user", "assistant", "system", "company")
ANALYSIS_TYPES = ("needs", "sentiment", "escalation", "pattern")
PRIORITY_LEVELS = ("low", "medium", "high", "urgent")
SENTIMENTS = ("positive", "neutral", "negative", "frustrated")

Role = Literal["user", "assistant", "system", "company"]
AnalysisType = Literal["needs", "sentiment", "escalation", "pattern"]
PriorityLevel = Literal["low", "medium", "high", "urgent"]
Sentiment = Literal["positive", "neutral", "negative", "frustrated"]


class Conversation(BaseModel):
    id: int
    session_id: str
    user_id: str | None = None
    guest_user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    ended_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def active(self) -> bool:
        return self.ended_at is None

    @property
    def category(self) -> str | None:
        return self.metadata.get("category")

    @property
    def customer_type(self) -> str | None:
        return self.metadata.get("customerType") or self.metadata.get("customer_type")


class Message(BaseModel):
    id: int
    conversation_id: int
    content: str
    role: Role
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @property
    def from_user(self) -> bool:
        return self.role == "user"

    @property
    def is_error_reply(self) -> bool:
        return self.role == "assistant" and bool(self.metadata.get("error"))


class Analysis(BaseModel):
    id: int
    conversation_id: int
    analysis_type: AnalysisType
    analysis_data: dict[str, Any] = Field(default_factory=dict)
    priority_level: PriorityLevel | None = None
    sentiment: Sentiment | None = None
    confidence_score: float | None = Field(default=None, ge=0, le=1)
    escalated: bool = False
    escalated_at: datetime | None = None
    created_at: datetime

    @property
    def hidden_needs(self) -> list[dict[str, Any]]:
        return list(self.analysis_data.get("hidden_needs") or [])

    @property
    def is_preview(self) -> bool:
        return self.analysis_data.get("kind") == "preview"

    @property
    def sentiment_score(self) -> float | None:
        sentiment = self.analysis_data.get("sentiment")
        if isinstance(sentiment, dict):
            return sentiment.get("score")
        return None

    @property
    def evidence_quotes(self) -> list[str]:
        return list(self.analysis_data.get("evidence_quotes") or [])

    @property
    def requires_escalation(self) -> bool:
        """Whether a non-forced notification should go out for this analysis.

        Urgent analyses always qualify; high priority and frustrated ones only
        until they have been escalated once.
        """

        if self.priority_level == "urgent":
            return True
        if self.escalated:
            return False
        return self.priority_level == "high" or self.sentiment == "frustrated"

    @property
    def escalation_reasons(self) -> list[str]:
        reason = self.analysis_data.get("escalation_reason")
        if reason:
            return [reason] if isinstance(reason, str) else list(reason)
        reasons: list[str] = []
        if self.priority_level in {"high", "urgent"}:
            reasons.append(f"priority:{self.priority_level}")
        if self.sentiment in {"negative", "frustrated"}:
            reasons.append(f"sentiment:{self.sentiment}")
        return reasons


# ---------------------------------------------------------------------------
# API payloads


class ConversationCreate(BaseModel):
    metadata: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None


class ConversationDetail(Conversation):
    messages: list[Message] = Field(default_factory=list)
    message_count: int = 0
    latest_analysis: Analysis | None = None


class MessageCreate(BaseModel):
    content: str
    role: str = "user"
    metadata: dict[str, Any] = Field(default_factory=dict)


class MessageList(BaseModel):
    items: list[Message]
    total: int


class AnalysisList(BaseModel):
    items: list[Analysis]
    total: int


class AnalysisTriggerRequest(BaseModel):
    analysis_type: AnalysisType = "needs"
    escalate: bool = True


class AnalysisTriggerResponse(BaseModel):
    conversation_id: int
    job_id: str
    status: str = "queued"


class BatchAnalysisRequest(BaseModel):
    conversation_ids: list[int]
    analysis_type: AnalysisType = "needs"


class BatchAnalysisSummary(BaseModel):
    total: int
    queued: int
    failed: list[int] = Field(default_factory=list)


class EscalationRequest(BaseModel):
    channel: Literal["email", "slack", "dashboard", "all"] = "all"
    force: bool = False


class EscalationResult(BaseModel):
    analysis_id: int
    notified: bool
    channels: dict[str, bool] = Field(default_factory=dict)
    escalated: bool = False
    retrying: list[str] = Field(default_factory=list)
