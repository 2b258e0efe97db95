from datetime import datetime, timezone

import pytest

from conftest import ESCALATION_WEBHOOK, FakeClock, RecordingConnection, _FakeSession
from supportchat.conversations import schemas
from supportchat.core.errors import NotFoundError, ValidationError, WebhookDeliveryError
from supportchat.jobs import queue as jobs
from supportchat.jobs.queue import InMemoryJobQueue, JobRegistry
from supportchat.notifications.escalation import (
    EscalationNotifier,
    build_slack_message,
    escalation_summary,
    priority_color,
)
from supportchat.notifications.webhook import WebhookClient


def _analysis(**overrides):
    values = {
        "id": 1,
        "conversation_id": 1,
        "analysis_type": "needs",
        "created_at": datetime.now(timezone.utc),
    }
    values.update(overrides)
    return schemas.Analysis(**values)


@pytest.fixture
def conversation(store):
    return store.create_conversation("sess-esc", metadata={"email": "hanako@example.com"})


def _stored_analysis(store, conversation, priority="urgent", sentiment="negative", **data):
    return store.create_analysis(
        conversation.id,
        "needs",
        {
            "kind": "full",
            "hidden_needs": [
                {"need_type": "cost", "suggestion": "コスト最適化プランの提案"},
            ],
            **data,
        },
        priority_level=priority,
        sentiment=sentiment,
        confidence_score=0.82,
    )


def _notifier(store, hub, session, mailer=None, *, slack=True, email=True):
    return EscalationNotifier(
        store,
        hub,
        WebhookClient(session=session),
        slack_webhook_url=ESCALATION_WEBHOOK if slack else None,
        mailer=mailer,
        email_to="support-leads@example.com" if email else None,
    )


@pytest.fixture
def dashboard(hub, admin):
    connection = RecordingConnection()
    hub.subscribe_dashboard(connection, admin)
    return connection


@pytest.mark.parametrize(
    "priority,sentiment,escalated,expected",
    [
        ("urgent", None, False, True),
        ("urgent", "neutral", True, True),
        ("high", "neutral", False, True),
        ("high", "neutral", True, False),
        ("low", "frustrated", False, True),
        ("low", "frustrated", True, False),
        ("medium", "neutral", False, False),
        ("medium", "negative", False, False),
        (None, None, False, False),
    ],
)
def test_requires_escalation(priority, sentiment, escalated, expected):
    analysis = _analysis(priority_level=priority, sentiment=sentiment, escalated=escalated)
    assert analysis.requires_escalation is expected


@pytest.mark.parametrize(
    "priority,color",
    [
        ("urgent", "danger"),
        ("high", "warning"),
        ("medium", "#36a64f"),
        ("low", "good"),
        (None, "good"),
    ],
)
def test_priority_color(priority, color):
    assert priority_color(priority) == color


def test_slack_message_fields(store, conversation):
    analysis = _stored_analysis(store, conversation, escalation_reason="緊急キーワード: 至急")

    message = build_slack_message(analysis, conversation)

    assert message["text"] == "⚠️ エスカレーションが必要な会話を検出しました"
    [attachment] = message["attachments"]
    assert attachment["color"] == "danger"
    fields = {field["title"]: field["value"] for field in attachment["fields"]}
    assert fields["会話ID"] == conversation.id
    assert fields["ユーザー"] == "hanako@example.com"
    assert fields["優先度"] == "urgent"
    assert fields["感情状態"] == "negative"
    assert fields["エスカレーション理由"] == "緊急キーワード: 至急"
    assert fields["信頼度スコア"] == "82%"


def test_slack_message_without_email(store):
    conversation = store.create_conversation("anonymous")
    analysis = _stored_analysis(store, conversation, priority="high", sentiment="neutral")

    [attachment] = build_slack_message(analysis, conversation)["attachments"]
    fields = {field["title"]: field["value"] for field in attachment["fields"]}

    assert fields["ユーザー"] == "Unknown"
    assert fields["エスカレーション理由"] == "priority:high"


def test_escalation_summary_lists_suggested_actions(store, conversation):
    summary = escalation_summary(_stored_analysis(store, conversation))

    assert summary["suggested_actions"] == ["コスト最適化プランの提案"]
    assert summary["reasons"] == ["priority:urgent", "sentiment:negative"]


def test_dashboard_notification_is_idempotent(store, hub, conversation, dashboard, monkeypatch):
    analysis = _stored_analysis(store, conversation)
    notifier = _notifier(store, hub, _FakeSession())
    marks = []
    original = store.mark_escalated

    def _mark(analysis_id, escalated_at):
        marks.append(analysis_id)
        return original(analysis_id, escalated_at)

    monkeypatch.setattr(store, "mark_escalated", _mark)

    first = notifier.notify(analysis.id, "dashboard")
    second = notifier.notify(analysis.id, "dashboard")

    assert first.notified and first.escalated
    assert second.notified and second.escalated
    assert first.channels == {"dashboard": True}
    assert marks == [analysis.id]
    assert dashboard.types() == ["new_escalation", "new_escalation"]
    event = dashboard.events[0]
    assert event["analysis_id"] == analysis.id
    assert event["conversation_id"] == conversation.id
    assert event["priority"] == "urgent"
    assert event["reasons"] == ["priority:urgent", "sentiment:negative"]
    assert store.get_analysis(analysis.id).escalated_at is not None


def test_high_priority_is_not_renotified_after_escalation(store, hub, conversation, dashboard):
    analysis = _stored_analysis(store, conversation, priority="high", sentiment="neutral")
    notifier = _notifier(store, hub, _FakeSession())

    assert notifier.notify(analysis.id, "dashboard").notified
    result = notifier.notify(analysis.id, "dashboard")

    assert result.notified is False
    assert result.escalated is True
    assert dashboard.types() == ["new_escalation"]


def test_non_qualifying_analysis_needs_force(store, hub, conversation, dashboard):
    analysis = _stored_analysis(store, conversation, priority="medium", sentiment="neutral")
    session = _FakeSession()
    notifier = _notifier(store, hub, session)

    skipped = notifier.notify(analysis.id)
    assert skipped.notified is False
    assert skipped.channels == {}
    assert dashboard.events == []
    assert session.calls == []

    forced = notifier.notify(analysis.id, "dashboard", forced=True)
    assert forced.notified is True
    assert forced.escalated is True


def test_all_channels(store, hub, conversation, dashboard, mailer):
    analysis = _stored_analysis(store, conversation)
    session = _FakeSession()
    notifier = _notifier(store, hub, session, mailer)

    result = notifier.notify(analysis.id, "all")

    assert result.channels == {"email": True, "slack": True, "dashboard": True}
    assert result.escalated is True
    [call] = session.calls
    assert call["method"] == "POST"
    assert call["url"] == ESCALATION_WEBHOOK
    assert call["json"]["attachments"][0]["color"] == "danger"
    [(to, summary)] = mailer.sent
    assert to == "support-leads@example.com"
    assert summary["analysis_id"] == analysis.id
    assert dashboard.types() == ["new_escalation"]


def test_unconfigured_channels_are_skipped(store, hub, conversation, dashboard):
    analysis = _stored_analysis(store, conversation)
    notifier = _notifier(store, hub, _FakeSession(), slack=False, email=False)

    result = notifier.notify(analysis.id, "all")

    assert notifier.enabled_channels() == ("dashboard",)
    assert result.channels == {"email": False, "slack": False, "dashboard": True}
    assert result.notified is True


def _queued_notifier(store, hub, session, mailer, clock):
    registry = JobRegistry()
    queue = InMemoryJobQueue(registry, clock=clock)
    notifier = EscalationNotifier(
        store,
        hub,
        WebhookClient(session=session),
        slack_webhook_url=ESCALATION_WEBHOOK,
        mailer=mailer,
        email_to="support-leads@example.com",
        queue=queue,
    )
    notifier.register(registry)
    return notifier, queue


def test_slack_failure_only_retries_slack(store, hub, conversation, dashboard, mailer):
    analysis = _stored_analysis(store, conversation)
    session = _FakeSession(status_code=500)
    clock = FakeClock()
    _, queue = _queued_notifier(store, hub, session, mailer, clock)

    queue.enqueue(jobs.ESCALATION_NOTIFICATION, analysis.id, "all")
    queue.run_pending()
    for _ in range(20):
        clock.advance(10_000)
        queue.run_pending()

    assert dashboard.types() == ["new_escalation"]
    assert len(mailer.sent) == 1
    assert store.get_analysis(analysis.id).escalated is True
    # one attempt from the "all" job, then the slack job and its ten retries
    assert len(session.calls) == 12
    [dead] = queue.dead_letters.list()
    assert dead.name == jobs.ESCALATION_NOTIFICATION
    assert dead.args == (analysis.id, "slack", True)
    assert dead.queue == "critical"


def test_slack_retry_succeeds_without_resending_others(
    store, hub, conversation, dashboard, mailer
):
    analysis = _stored_analysis(store, conversation)
    session = _FakeSession(status_code=500)
    clock = FakeClock()
    notifier, queue = _queued_notifier(store, hub, session, mailer, clock)

    result = notifier.notify(analysis.id, "all")

    assert result.channels == {"email": True, "slack": False, "dashboard": True}
    assert result.retrying == ["slack"]
    assert result.escalated is True
    [job] = queue.enqueued(jobs.ESCALATION_NOTIFICATION)
    assert job.args == (analysis.id, "slack", True)

    queue.run_pending()
    session.status_code = 200
    clock.advance(10)
    queue.run_pending()

    assert queue.pending() == []
    assert len(session.calls) == 3
    assert len(mailer.sent) == 1
    assert dashboard.types() == ["new_escalation"]
    assert len(queue.dead_letters) == 0


def test_single_channel_failure_is_raised(store, hub, conversation, dashboard):
    analysis = _stored_analysis(store, conversation)
    notifier = _notifier(store, hub, _FakeSession(status_code=500))

    with pytest.raises(WebhookDeliveryError) as excinfo:
        notifier.notify(analysis.id, "slack")

    assert excinfo.value.status_code == 500
    assert dashboard.events == []
    assert store.get_analysis(analysis.id).escalated is False


def test_invalid_channel(store, hub, conversation):
    analysis = _stored_analysis(store, conversation)
    with pytest.raises(ValidationError) as excinfo:
        _notifier(store, hub, _FakeSession()).notify(analysis.id, "pager")
    assert "channel" in excinfo.value.errors


def test_missing_analysis(store, hub):
    with pytest.raises(NotFoundError):
        _notifier(store, hub, _FakeSession()).notify(999)


def test_failed_slack_delivery_is_retried_by_job(store, hub, conversation):
    analysis = _stored_analysis(store, conversation)
    session = _FakeSession(status_code=503)
    notifier = _notifier(store, hub, session, email=False)
    registry = JobRegistry()
    notifier.register(registry)
    queue = InMemoryJobQueue(registry, clock=lambda: 0.0)

    queue.enqueue(jobs.ESCALATION_NOTIFICATION, analysis.id, "slack")
    queue.run_pending()

    [job] = queue.pending()
    assert job.attempts == 1
    assert job.run_at == 10.0
    assert job.last_error == "WebhookDeliveryError: webhook answered 503"
