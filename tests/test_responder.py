import pytest

from conftest import RecordingConnection
from supportchat.conversations.responder import (
    ERROR_REPLY,
    AssistantResponder,
    TemplateResponseGenerator,
)
from supportchat.core.errors import NotFoundError
from supportchat.jobs import queue as jobs
from supportchat.jobs.queue import InMemoryJobQueue


class _FailingGenerator:
    def __init__(self):
        self.calls = 0

    def generate(self, conversation, history):
        self.calls += 1
        raise TimeoutError("language model timed out")


@pytest.fixture
def conversation(store, guest):
    return store.create_conversation(guest.session_id, guest_user_id=guest.session_id)


@pytest.fixture
def listener(hub, conversation, guest):
    connection = RecordingConnection()
    hub.subscribe(conversation.id, connection, guest)
    return connection


@pytest.fixture
def queue():
    return InMemoryJobQueue()


def test_reply_is_stored_broadcast_and_analysed(store, hub, queue, conversation, listener):
    question = store.add_message(conversation.id, "導入期間を教えてください", "user")
    responder = AssistantResponder(store, hub, TemplateResponseGenerator(), queue=queue)

    reply = responder.respond(question.id)

    assert reply.role == "assistant"
    assert reply.content == "ご質問ありがとうございます。詳しく確認させていただきます。"
    assert reply.metadata == {"in_reply_to": question.id}
    [event] = listener.of_type("new_message")
    assert event["message"]["id"] == reply.id
    assert event["message"]["user"] == {"id": "assistant", "name": "Assistant"}
    [job] = queue.enqueued(jobs.FULL_ANALYSIS)
    assert job.args == (conversation.id, {})


def test_generator_failure_stores_single_error_reply(store, hub, queue, conversation, listener):
    question = store.add_message(conversation.id, "こんにちは", "user")
    generator = _FailingGenerator()
    responder = AssistantResponder(store, hub, generator, queue=queue)

    first = responder.respond(question.id)
    second = responder.respond(question.id)

    assert first.content == ERROR_REPLY
    assert first.metadata == {"error": True, "original_message_id": question.id}
    assert first.is_error_reply
    assert second is None
    assert generator.calls == 2
    replies = [m for m in store.list_messages(conversation.id) if m.role == "assistant"]
    assert len(replies) == 1
    assert len(listener.of_type("new_message")) == 1
    assert queue.enqueued() == []


def test_non_user_message_gets_no_reply(store, hub, queue, conversation):
    note = store.add_message(conversation.id, "社内メモ", "system")
    responder = AssistantResponder(store, hub, TemplateResponseGenerator(), queue=queue)

    assert responder.respond(note.id) is None
    assert store.count_messages(conversation.id) == 1


def test_missing_message(store, hub):
    responder = AssistantResponder(store, hub, TemplateResponseGenerator())
    with pytest.raises(NotFoundError):
        responder.respond(404)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("ログインできません", "ご不便をおかけして申し訳ございません。詳細を確認させていただきます。"),
        ("ありがとうございました", "貴重なフィードバックをありがとうございます。"),
        ("料金は？", "ご質問ありがとうございます。詳しく確認させていただきます。"),
        ("こんにちは", "メッセージありがとうございます。どのようにお手伝いできますでしょうか？"),
    ],
)
def test_template_generator(store, conversation, text, expected):
    message = store.add_message(conversation.id, text, "user")
    generated = TemplateResponseGenerator().generate(conversation, [message])
    assert generated == expected
