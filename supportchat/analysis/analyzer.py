"""Conversation scoring.

The scoring function itself is pluggable (:class:`ConversationAnalyzer`); the
pipeline only relies on the single :class:`AnalysisResult` shape it returns.
:class:`KeywordAnalyzer` is a dependency-free lexical scorer used when no
model-backed analyzer is wired in.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Literal, Protocol, Sequence

from pydantic import BaseModel, Field

from ..conversations import schemas

ResultKind = Literal["full", "preview"]


class AnalysisResult(BaseModel):
    """Outcome of one analysis pass, full or preview."""

    kind: ResultKind = "full"
    analysis_type: schemas.AnalysisType = "needs"
    sentiment: schemas.Sentiment | None = None
    sentiment_score: float = 0.0
    confidence_score: float = Field(default=0.0, ge=0, le=1)
    priority_level: schemas.PriorityLevel | None = None
    hidden_needs: list[dict[str, Any]] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    evidence_quotes: list[str] = Field(default_factory=list)
    escalation_required: bool = False
    escalation_reason: str | None = None
    category: str | None = None
    need_type: str | None = None

    def analysis_data(self) -> dict[str, Any]:
        """Payload stored in ``analyses.analysis_data``."""

        data: dict[str, Any] = {
            "kind": self.kind,
            "keywords": self.keywords,
            "evidence_quotes": self.evidence_quotes,
        }
        if self.kind == "preview":
            data.update(
                category=self.category,
                need_type=self.need_type,
                evidence=self.evidence_quotes,
                confidence=self.confidence_score,
            )
            return data
        data.update(
            sentiment={"overall": self.sentiment, "score": self.sentiment_score},
            hidden_needs=self.hidden_needs,
            escalation_required=self.escalation_required,
        )
        if self.escalation_reason:
            data["escalation_reason"] = self.escalation_reason
        return data


def summarize(analysis: schemas.Analysis) -> dict[str, Any]:
    """Normalized view of a stored analysis used in ``analysis_complete`` events."""

    data = analysis.analysis_data
    return {
        "id": analysis.id,
        "analysis_type": analysis.analysis_type,
        "sentiment": analysis.sentiment,
        "confidence_score": analysis.confidence_score,
        "hidden_needs": analysis.hidden_needs,
        "keywords": list(data.get("keywords") or []),
        "priority_level": analysis.priority_level,
        "escalation_required": bool(data.get("escalation_required")),
        "escalated": analysis.escalated,
    }


class ConversationAnalyzer(Protocol):
    def analyze(
        self, messages: Sequence[schemas.Message], *, analysis_type: str = "needs"
    ) -> AnalysisResult: ...

    def preview(
        self, messages: Sequence[schemas.Message], *, category: str | None = None
    ) -> AnalysisResult: ...


# ---------------------------------------------------------------------------
# Lexical scorer

SENTIMENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "positive": ("ありがとう", "助かり", "素晴らしい", "便利", "嬉しい", "満足", "解決しました", "thank", "great"),
    "negative": ("困って", "分からない", "できない", "できません", "難しい", "複雑", "面倒", "不便", "遅い", "使えない", "problem", "broken"),
    "frustrated": ("いつまで", "何度も", "何回も", "ずっと", "イライラ", "うんざり", "最悪", "ひどい", "もう限界", "ridiculous", "again"),
}

URGENT_KEYWORDS = ("至急", "緊急", "今すぐ", "すぐに", "早急", "急ぎ", "今日中", "urgent", "asap")

NEED_KEYWORDS: dict[str, tuple[str, ...]] = {
    "cost": ("費用", "価格", "予算", "コスト", "見積", "料金", "値段", "price", "cost"),
    "timeline": ("期間", "納期", "スケジュール", "期限", "deadline"),
    "integration": ("連携", "API", "連動", "接続", "インテグレーション", "integration"),
    "security": ("セキュリティ", "暗号", "情報保護", "認証", "監査", "security"),
    "performance": ("速度", "パフォーマンス", "遅い", "最適化", "performance"),
    "support": ("サポート", "体制", "導入", "運用", "保守", "support"),
    "marketing": ("マーケティング", "リード", "広告", "施策", "コンバージョン", "marketing"),
    "analytics": ("分析", "指標", "KPI", "ダッシュボード", "レポート", "analytics"),
}

NEED_SUGGESTIONS = {
    "cost": "コスト最適化プランの提案",
    "timeline": "導入スケジュールの提示",
    "integration": "外部システムとの連携強化",
    "security": "セキュリティ要件の確認",
    "performance": "効率化・自動化ツールの導入",
    "support": "サポート体制の説明",
    "marketing": "マーケティング施策の提案",
    "analytics": "レポート・可視化の提案",
}

# need type -> inquiry category used for routing
NEED_CATEGORIES = {
    "cost": "cost",
    "timeline": "project",
    "integration": "tech",
    "security": "tech",
    "performance": "tech",
    "support": "service",
    "marketing": "marketing",
    "analytics": "marketing",
}

_SENTENCE_SPLIT = re.compile(r"(?<=[。！？!?\.])\s*")


def _hits(text: str, keywords: Sequence[str]) -> list[str]:
    lowered = text.lower()
    return [keyword for keyword in keywords if keyword.lower() in lowered]


def _evidence(texts: Sequence[str], keywords: Sequence[str], limit: int = 3) -> list[str]:
    quotes: list[str] = []
    for text in texts:
        for sentence in _SENTENCE_SPLIT.split(text):
            sentence = sentence.strip()
            if sentence and _hits(sentence, keywords) and sentence not in quotes:
                quotes.append(sentence[:200])
                if len(quotes) >= limit:
                    return quotes
    return quotes


class KeywordAnalyzer:
    """Scores user turns by counting sentiment, urgency and need vocabulary."""

    def analyze(
        self, messages: Sequence[schemas.Message], *, analysis_type: str = "needs"
    ) -> AnalysisResult:
        texts = [m.content for m in messages if m.from_user]
        corpus = "\n".join(texts)

        sentiment_hits = {name: _hits(corpus, words) for name, words in SENTIMENT_KEYWORDS.items()}
        urgent_hits = _hits(corpus, URGENT_KEYWORDS)
        score = (
            len(sentiment_hits["positive"])
            - len(sentiment_hits["negative"])
            - 2 * len(sentiment_hits["frustrated"])
            - 1.5 * len(urgent_hits)
        )
        if len(sentiment_hits["frustrated"]) >= 2 or score <= -3:
            sentiment = "frustrated"
        elif score < 0:
            sentiment = "negative"
        elif score > 0:
            sentiment = "positive"
        else:
            sentiment = "neutral"

        needs = []
        for need_type, words in NEED_KEYWORDS.items():
            found = _hits(corpus, words)
            if not found:
                continue
            needs.append(
                {
                    "need_type": need_type,
                    "keywords": found,
                    "confidence": round(min(0.95, 0.5 + 0.15 * len(found)), 2),
                    "suggestion": NEED_SUGGESTIONS[need_type],
                }
            )
        needs.sort(key=lambda need: need["confidence"], reverse=True)

        if urgent_hits:
            priority = "urgent"
        elif sentiment == "frustrated":
            priority = "high"
        elif sentiment == "negative" or len(needs) >= 3:
            priority = "medium"
        else:
            priority = "low"

        escalation_reason = None
        if urgent_hits:
            escalation_reason = f"緊急キーワード: {', '.join(urgent_hits)}"
        elif sentiment == "frustrated":
            escalation_reason = "顧客の強い不満を検知"

        keywords = [kw for need in needs for kw in need["keywords"]]
        matched = keywords + urgent_hits + [kw for hits in sentiment_hits.values() for kw in hits]
        signal = len(matched)
        confidence = 0.3 if not texts else round(min(0.95, 0.4 + 0.1 * signal), 2)

        return AnalysisResult(
            kind="full",
            analysis_type=analysis_type,
            sentiment=sentiment,
            sentiment_score=float(score),
            confidence_score=confidence,
            priority_level=priority,
            hidden_needs=needs,
            keywords=keywords,
            evidence_quotes=_evidence(texts, matched),
            escalation_required=priority in {"high", "urgent"},
            escalation_reason=escalation_reason,
        )

    def preview(
        self, messages: Sequence[schemas.Message], *, category: str | None = None
    ) -> AnalysisResult:
        texts = [m.content for m in messages if m.from_user][-8:]
        counts: Counter[str] = Counter()
        found: list[str] = []
        for need_type, words in NEED_KEYWORDS.items():
            hits = _hits("\n".join(texts), words)
            counts[need_type] = len(hits)
            found.extend(hit for hit in hits if hit not in found)
        need_type, best = counts.most_common(1)[0] if counts else ("general", 0)
        if best == 0:
            need_type = "general"
        confidence = 0.3 if best == 0 else round(min(0.9, 0.45 + 0.15 * best), 2)
        return AnalysisResult(
            kind="preview",
            analysis_type="needs",
            confidence_score=confidence,
            keywords=found[:8],
            evidence_quotes=_evidence(texts, found, limit=2),
            category=category or NEED_CATEGORIES.get(need_type, "general"),
            need_type=need_type,
        )
