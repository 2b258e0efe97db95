import os
import pathlib
import sys
import tempfile
from dataclasses import dataclass, field

import pytest

# Importing supportchat.main configures file logging; keep it out of the repo.
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="supportchat-logs-"))

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from supportchat.broadcast.hub import BroadcastHub
from supportchat.container import build_container
from supportchat.conversations.repository import InMemoryConversationStore
from supportchat.core.session_context import SessionContext
from supportchat.core.settings import Settings, TokenSettings

MARKETING_WEBHOOK = "https://hooks.example.com/services/T000/B000/marketingsecret"
ESCALATION_WEBHOOK = "https://hooks.example.com/services/T000/B000/escalationsecret"
TOKEN_SETTINGS = TokenSettings(secret="supportchat-test-signing-secret-0123456789")


class InlineExecutor:
    """Runs hub deliveries on the publishing thread."""

    def submit(self, fn, /, *args, **kwargs):
        fn(*args, **kwargs)


class RecordingConnection:
    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)

    def types(self):
        return [event["type"] for event in self.events]

    def of_type(self, event_type):
        return [event for event in self.events if event["type"] == event_type]


class FailingConnection:
    def __init__(self):
        self.attempts = 0

    def send(self, event):
        self.attempts += 1
        raise ConnectionError("socket closed")


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "ok"):
        self.status_code = status_code
        self.text = text


@dataclass
class _FakeSession:
    """Stands in for ``requests.Session``; answers ``status_code`` or raises ``error``."""

    status_code: int = 200
    error: Exception | None = None
    calls: list[dict] = field(default_factory=list)

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return _FakeResponse(self.status_code, "ok" if self.status_code < 300 else "invalid_token")


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send_escalation(self, to, summary):
        self.sent.append((to, summary))


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def hub(store):
    return BroadcastHub(store, executor=InlineExecutor())


@pytest.fixture
def http_session():
    return _FakeSession()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def settings():
    return Settings(
        inquiry_webhooks={"marketing": MARKETING_WEBHOOK},
        escalation_webhook_url=ESCALATION_WEBHOOK,
        app_url="https://support.example.com",
        auth=TOKEN_SETTINGS,
    )


@pytest.fixture
def container(settings, store, http_session, mailer):
    built = build_container(
        settings,
        store=store,
        executor=InlineExecutor(),
        http_session=http_session,
        mailer=mailer,
    )
    yield built
    built.shutdown()


@pytest.fixture
def guest():
    return SessionContext(session_id="sess-guest", name="Aiko")


@pytest.fixture
def admin():
    return SessionContext(session_id="sess-admin", user_id="op-1", role="admin", name="Operator")
