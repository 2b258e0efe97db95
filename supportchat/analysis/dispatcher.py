"""Analysis Dispatcher: enqueue analysis work and run it on the worker side.

Producers call the ``dispatch_*`` methods, which only enqueue and return the
job id. The ``run_*`` methods are the job handlers registered with the
:class:`~supportchat.jobs.queue.JobRegistry`; they persist a new
:class:`~supportchat.conversations.schemas.Analysis` on every run (repeated
runs are not deduplicated) and report results through the broadcast hub.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ..broadcast import events
from ..broadcast.hub import BroadcastHub
from ..conversations import schemas
from ..conversations.repository import ConversationStore
from ..core.errors import NotFoundError
from ..core.settings import NeedsPreviewSettings
from ..jobs import queue as jobs
from ..jobs.queue import JobRegistry, QueueClient
from .analyzer import AnalysisResult, ConversationAnalyzer, summarize

logger = logging.getLogger(__name__)

PREVIEW_FIRST_PASS_MESSAGES = 2
PREVIEW_REFRESH_MESSAGES = 8


class AnalysisDispatcher:
    def __init__(
        self,
        store: ConversationStore,
        hub: BroadcastHub,
        queue: QueueClient,
        analyzer: ConversationAnalyzer,
        preview_settings: NeedsPreviewSettings | None = None,
    ) -> None:
        self._store = store
        self._hub = hub
        self._queue = queue
        self._analyzer = analyzer
        self._preview = preview_settings or NeedsPreviewSettings()

    @property
    def preview_settings(self) -> NeedsPreviewSettings:
        return self._preview

    # ------------------------------------------------------------------
    # Producer side

    def dispatch_full_analysis(
        self, conversation_id: int, options: dict[str, Any] | None = None
    ) -> str:
        """Enqueue a full sentiment and hidden-needs analysis."""

        return self._queue.enqueue(jobs.FULL_ANALYSIS, conversation_id, dict(options or {}))

    def dispatch_preview_analysis(self, conversation_id: int) -> str:
        return self._queue.enqueue(jobs.PREVIEW_ANALYSIS, conversation_id)

    def dispatch_preview_refresh(self, conversation_id: int) -> str:
        return self._queue.enqueue(jobs.PREVIEW_REFRESH, conversation_id)

    def dispatch_batch(
        self, conversation_ids: Iterable[int], options: dict[str, Any] | None = None
    ) -> schemas.BatchAnalysisSummary:
        """Enqueue one full analysis per id.

        A failing enqueue is recorded in ``failed`` and the fan-out carries on;
        failures of the analyses themselves are not reflected here.
        """

        ids = list(conversation_ids)
        queued = 0
        failed: list[int] = []
        for conversation_id in ids:
            try:
                self.dispatch_full_analysis(conversation_id, options)
            except Exception as exc:
                logger.error(
                    "Failed to queue analysis for conversation #%s: %s", conversation_id, exc
                )
                failed.append(conversation_id)
            else:
                queued += 1
        logger.info("Batch analysis queued: %d successful, %d failed", queued, len(failed))
        return schemas.BatchAnalysisSummary(total=len(ids), queued=queued, failed=failed)

    def enqueue_batch(
        self, conversation_ids: Iterable[int], options: dict[str, Any] | None = None
    ) -> str:
        """Hand the fan-out itself to the low priority queue."""

        return self._queue.enqueue(jobs.BATCH_ANALYSIS, list(conversation_ids), dict(options or {}))

    # ------------------------------------------------------------------
    # Worker side

    def run_full_analysis(
        self, conversation_id: int, options: dict[str, Any] | None = None
    ) -> schemas.Analysis:
        options = options or {}
        logger.info("Starting analysis for conversation #%s", conversation_id)
        conversation = self._require_conversation(conversation_id)
        messages = self._store.list_messages(conversation.id)
        result = self._analyzer.analyze(
            messages, analysis_type=options.get("analysis_type") or "needs"
        )
        analysis = self._persist(conversation.id, result)
        self._hub.publish(
            conversation.id, events.analysis_complete(conversation.id, summarize(analysis))
        )
        logger.info(
            "Completed analysis %s for conversation #%s (priority=%s, sentiment=%s)",
            analysis.id,
            conversation.id,
            analysis.priority_level,
            analysis.sentiment,
        )
        if options.get("escalate", True) and analysis.requires_escalation:
            try:
                self._queue.enqueue(jobs.ESCALATION_NOTIFICATION, analysis.id, "all")
            except Exception:
                logger.exception("Failed to queue escalation for analysis %s", analysis.id)
        return analysis

    def run_batch(
        self, conversation_ids: list[int], options: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        return self.dispatch_batch(conversation_ids, options).model_dump()

    def run_preview_analysis(self, conversation_id: int) -> schemas.Analysis | None:
        """First-contact needs preview from the latest couple of messages."""

        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            logger.warning("Needs preview skipped, conversation not found: %s", conversation_id)
            return None
        messages = self._store.list_messages(conversation.id)[-PREVIEW_FIRST_PASS_MESSAGES:]
        result = self._analyzer.preview(messages, category=conversation.category)
        analysis = self._persist(conversation.id, result)
        logger.info("Needs preview saved for conversation #%s", conversation.id)
        return analysis

    def run_preview_refresh(self, conversation_id: int) -> schemas.Analysis | None:
        """Re-estimate the needs preview once the conversation has a few turns.

        Runs inside the configured user-turn window, or past it while no
        preview exists yet, and pushes a ``needs_preview`` event.
        """

        if not self._preview.enabled:
            return None
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            logger.warning(
                "Needs preview refresh skipped, conversation not found: %s", conversation_id
            )
            return None
        user_turns = self._store.count_messages(conversation.id, role="user")
        has_preview = any(a.is_preview for a in self._store.list_analyses(conversation.id))
        over_window = user_turns > self._preview.turn_threshold_max and not has_preview
        if not (self._preview.within_window(user_turns) or over_window):
            logger.debug(
                "Needs preview refresh not due for conversation #%s (%d user turns)",
                conversation.id,
                user_turns,
            )
            return None
        messages = self._store.list_messages(conversation.id)[-PREVIEW_REFRESH_MESSAGES:]
        result = self._analyzer.preview(messages, category=conversation.category)
        analysis = self._persist(conversation.id, result)
        self._hub.publish(conversation.id, events.needs_preview(analysis))
        return analysis

    def on_full_analysis_gave_up(self, args: tuple, kwargs: dict, exc: BaseException) -> None:
        conversation_id = args[0] if args else kwargs.get("conversation_id")
        if conversation_id is None:
            return
        self._hub.publish(conversation_id, events.analysis_error(conversation_id, str(exc)))

    def register(self, registry: JobRegistry) -> None:
        registry.register(
            jobs.FULL_ANALYSIS, self.run_full_analysis, on_give_up=self.on_full_analysis_gave_up
        )
        registry.register(jobs.BATCH_ANALYSIS, self.run_batch)
        registry.register(jobs.PREVIEW_ANALYSIS, self.run_preview_analysis)
        registry.register(jobs.PREVIEW_REFRESH, self.run_preview_refresh)

    # ------------------------------------------------------------------

    def _require_conversation(self, conversation_id: int) -> schemas.Conversation:
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            logger.error("Conversation not found: %s", conversation_id)
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def _persist(self, conversation_id: int, result: AnalysisResult) -> schemas.Analysis:
        return self._store.create_analysis(
            conversation_id,
            result.analysis_type,
            result.analysis_data(),
            priority_level=result.priority_level,
            sentiment=result.sentiment,
            confidence_score=result.confidence_score,
        )
