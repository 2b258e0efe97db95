import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FailingConnection, InlineExecutor, RecordingConnection
from supportchat.broadcast import events
from supportchat.broadcast.hub import BroadcastHub, Subscription
from supportchat.core.errors import NotFoundError, Unauthorized
from supportchat.core.session_context import SessionContext


class _ManualExecutor:
    """Collects submitted drains so the test decides when they run."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, /, *args, **kwargs):
        self.submitted.append((fn, args, kwargs))

    def run_all(self):
        while self.submitted:
            fn, args, kwargs = self.submitted.pop(0)
            fn(*args, **kwargs)


@pytest.fixture
def conversation(store, guest):
    return store.create_conversation(guest.session_id, guest_user_id=guest.session_id)


def test_subscribe_unknown_conversation_raises(hub, guest):
    with pytest.raises(NotFoundError):
        hub.subscribe(404, RecordingConnection(), guest)


def test_subscribe_requires_owner_or_admin(hub, conversation, admin):
    stranger = SessionContext(session_id="someone-else")
    with pytest.raises(Unauthorized):
        hub.subscribe(conversation.id, RecordingConnection(), stranger)

    subscription = hub.subscribe(conversation.id, RecordingConnection(), admin)
    assert hub.subscriber_count(conversation.id) == 1
    hub.unsubscribe(subscription)


def test_authenticated_owner_may_subscribe(store, hub):
    conversation = store.create_conversation("sess-user", user_id="42")
    context = SessionContext(session_id="another-tab", user_id="42")
    hub.subscribe(conversation.id, RecordingConnection(), context)
    assert hub.subscriber_count(conversation.id) == 1


def test_user_connected_reaches_every_subscriber(hub, conversation, guest, admin):
    first = RecordingConnection()
    second = RecordingConnection()
    hub.subscribe(conversation.id, first, guest)
    hub.subscribe(conversation.id, second, admin)

    assert first.types() == ["user_connected", "user_connected"]
    assert second.types() == ["user_connected"]
    assert second.events[0]["user"] == {"id": "op-1", "name": "Operator", "email": None}


def test_publish_isolates_failing_subscriber(hub, conversation, guest, admin):
    healthy_a = RecordingConnection()
    broken = FailingConnection()
    healthy_b = RecordingConnection()
    hub.subscribe(conversation.id, healthy_a, guest)
    broken_sub = hub.subscribe(conversation.id, broken, admin)
    hub.subscribe(conversation.id, healthy_b, guest)

    delivered = hub.publish(conversation.id, events.typing({"id": "sess-guest"}, True))

    assert delivered == 3
    assert healthy_a.types()[-1] == "typing"
    assert healthy_b.types()[-1] == "typing"
    assert broken_sub.failures >= 1


def test_unsubscribe_then_publish_skips_connection(hub, conversation, guest, admin):
    leaving = RecordingConnection()
    staying = RecordingConnection()
    leaving_sub = hub.subscribe(conversation.id, leaving, guest)
    hub.subscribe(conversation.id, staying, admin)
    seen = len(leaving.events)

    hub.unsubscribe(leaving_sub)
    hub.unsubscribe(leaving_sub)
    hub.publish(conversation.id, events.typing({"id": "op-1"}, False))

    assert len(leaving.events) == seen
    assert staying.types()[-2:] == ["user_disconnected", "typing"]
    assert hub.subscriber_count(conversation.id) == 1


def test_last_unsubscribe_retires_topic(hub, conversation, guest):
    subscription = hub.subscribe(conversation.id, RecordingConnection(), guest)
    hub.unsubscribe(subscription)

    assert hub.subscriber_count(conversation.id) == 0
    assert hub.publish(conversation.id, events.typing({"id": "x"}, True)) == 0


def test_publish_without_subscribers_is_noop(hub):
    assert hub.publish(12345, events.analysis_error(12345, "boom")) == 0


def test_unknown_event_type_rejected(hub, conversation):
    with pytest.raises(ValueError):
        hub.publish(conversation.id, {"type": "surprise"})


def test_dashboard_requires_admin(hub, guest):
    with pytest.raises(Unauthorized):
        hub.subscribe_dashboard(RecordingConnection(), guest)


def test_dashboard_receives_only_dashboard_events(hub, conversation, guest, admin):
    dashboard = RecordingConnection()
    hub.subscribe_dashboard(dashboard, admin)
    hub.subscribe(conversation.id, RecordingConnection(), guest)

    hub.publish(conversation.id, events.typing({"id": "sess-guest"}, True))
    hub.publish_dashboard(
        {"type": "new_escalation", "analysis_id": 1, "conversation_id": conversation.id}
    )

    assert dashboard.types() == ["new_escalation"]


def test_events_arrive_in_publish_order(store, guest, conversation):
    executor = ThreadPoolExecutor(max_workers=4)
    hub = BroadcastHub(store, executor=executor)
    received = []
    done = threading.Event()

    class _Collector:
        def send(self, event):
            received.append(event)
            if len(received) == 51:
                done.set()

    hub.subscribe(conversation.id, _Collector(), guest)
    for i in range(50):
        hub.publish(conversation.id, events.message_read(i, "sess-guest"))

    assert done.wait(timeout=5)
    executor.shutdown(wait=True)
    assert [e["message_id"] for e in received[1:]] == list(range(50))


def test_full_mailbox_drops_oldest(guest):
    executor = _ManualExecutor()
    subscription = Subscription("conversation_1", RecordingConnection(), guest, executor, mailbox_size=2)

    for i in range(3):
        assert subscription.offer(events.message_read(i, "x"))
    executor.run_all()

    assert subscription.dropped == 1
    assert [e["message_id"] for e in subscription.connection.events] == [1, 2]


def test_closed_subscription_refuses_events(guest):
    subscription = Subscription("conversation_1", RecordingConnection(), guest, InlineExecutor())
    subscription.close()

    assert subscription.offer(events.message_read(1, "x")) is False
    assert subscription.connection.events == []


def test_forward_hook_sees_relayed_publishes_only(store, conversation, guest):
    forwarded = []
    hub = BroadcastHub(
        store, executor=InlineExecutor(), forward=lambda topic, event: forwarded.append(topic)
    )
    connection = RecordingConnection()
    hub.subscribe(conversation.id, connection, guest)

    hub.publish(conversation.id, events.typing({"id": "a"}, True))
    hub.publish_topic(f"conversation_{conversation.id}", events.typing({"id": "b"}, True), relay=False)

    assert forwarded == ["conversation_1"]
    assert connection.types()[-2:] == ["typing", "typing"]


def test_forward_failure_does_not_block_local_delivery(store, conversation, guest):
    def _broken_forward(topic, event):
        raise ConnectionError("redis down")

    hub = BroadcastHub(store, executor=InlineExecutor(), forward=_broken_forward)
    connection = RecordingConnection()
    hub.subscribe(conversation.id, connection, guest)

    assert hub.publish(conversation.id, events.typing({"id": "a"}, True)) == 1
    assert connection.types()[-1] == "typing"


def test_unsubscribe_races_with_in_flight_publishes(store, guest, conversation):
    executor = ThreadPoolExecutor(max_workers=4)
    hub = BroadcastHub(store, executor=executor)
    steady = RecordingConnection()
    hub.subscribe(conversation.id, steady, guest)
    stop = threading.Event()
    errors = []

    def _publish():
        i = 0
        while not stop.is_set():
            try:
                hub.publish(conversation.id, events.message_read(i, "sess-guest"))
            except Exception as exc:
                errors.append(exc)
                return
            i += 1

    publishers = [threading.Thread(target=_publish) for _ in range(4)]
    for thread in publishers:
        thread.start()
    try:
        for _ in range(2000):
            subscription = hub.subscribe(conversation.id, RecordingConnection(), guest)
            hub.unsubscribe(subscription)
    finally:
        stop.set()
        for thread in publishers:
            thread.join(timeout=5)
        executor.shutdown(wait=True)

    assert errors == []
    assert hub.subscriber_count(conversation.id) == 1
    assert steady.of_type("message_read")
