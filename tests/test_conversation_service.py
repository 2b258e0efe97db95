import uuid

import pytest

from conftest import RecordingConnection
from supportchat.conversations.service import ConversationService
from supportchat.core.errors import NotFoundError, Unauthorized, ValidationError
from supportchat.core.session_context import SessionContext


@pytest.fixture
def service(store, hub):
    return ConversationService(store, hub)


def test_guest_without_session_gets_generated_id(service):
    conversation = service.create_conversation(SessionContext(), {"category": "tech"})

    assert uuid.UUID(conversation.session_id)
    assert conversation.category == "tech"
    assert conversation.active


def test_guest_session_is_recorded(service, guest):
    conversation = service.create_conversation(guest)

    assert conversation.session_id == "sess-guest"
    assert conversation.guest_user_id == "sess-guest"
    assert conversation.user_id is None


def test_authenticated_user(service):
    context = SessionContext(session_id="tab-1", user_id="u-9", name="Ken")
    conversation = service.create_conversation(context)

    assert conversation.user_id == "u-9"
    assert conversation.guest_user_id is None


def test_session_ids_are_unique(service, guest):
    service.create_conversation(guest)

    with pytest.raises(ValidationError) as excinfo:
        service.create_conversation(guest)

    assert excinfo.value.errors == {"session_id": ["has already been taken"]}


def test_find_or_create_by_session(service, guest):
    created = service.find_or_create_by_session(guest, {"category": "marketing"})
    again = service.find_or_create_by_session(guest)

    assert again.id == created.id


def test_access_rules(service, guest, admin):
    conversation = service.create_conversation(guest)

    with pytest.raises(Unauthorized):
        service.get_conversation(conversation.id, SessionContext(session_id="other"))
    assert service.get_conversation(conversation.id, admin).id == conversation.id
    with pytest.raises(NotFoundError):
        service.get_conversation(999, admin)


def test_end_and_resume_are_idempotent(service, guest):
    conversation = service.create_conversation(guest)

    ended = service.end_conversation(conversation.id, guest)
    ended_again = service.end_conversation(conversation.id, guest)
    assert not ended.active
    assert ended_again.ended_at == ended.ended_at

    resumed = service.resume_conversation(conversation.id, guest)
    assert resumed.active
    assert service.resume_conversation(conversation.id, guest).active


def test_detail_includes_messages_and_latest_analysis(service, store, guest):
    conversation = service.create_conversation(guest)
    store.add_message(conversation.id, "hello", "user")
    store.create_analysis(conversation.id, "needs", {"kind": "preview"})
    latest = store.create_analysis(conversation.id, "sentiment", {"kind": "full"})

    detail = service.get_detail(conversation.id, guest)

    assert detail.message_count == 1
    assert detail.messages[0].content == "hello"
    assert detail.latest_analysis.id == latest.id
    assert [a.id for a in service.list_analyses(conversation.id, guest)][0] == latest.id


def test_typing_is_broadcast(service, hub, guest):
    conversation = service.create_conversation(guest)
    connection = RecordingConnection()
    hub.subscribe(conversation.id, connection, guest)

    service.typing(conversation.id, guest, True)

    [event] = connection.of_type("typing")
    assert event == {"type": "typing", "user": {"id": "sess-guest", "name": "Aiko"}, "is_typing": True}


def test_mark_as_read(service, store, hub, guest, admin):
    conversation = service.create_conversation(guest)
    message = store.add_message(conversation.id, "reply", "assistant")
    connection = RecordingConnection()
    hub.subscribe(conversation.id, connection, admin)

    updated = service.mark_as_read(conversation.id, guest, message.id)

    assert updated.metadata["read_by"] == "sess-guest"
    assert "read_at" in updated.metadata
    [event] = connection.of_type("message_read")
    assert event["message_id"] == message.id
    assert event["user_id"] == "sess-guest"


def test_mark_as_read_rejects_foreign_message(service, store, guest):
    mine = service.create_conversation(guest)
    other = store.create_conversation("someone-else")
    foreign = store.add_message(other.id, "not yours", "user")

    with pytest.raises(NotFoundError):
        service.mark_as_read(mine.id, guest, foreign.id)
