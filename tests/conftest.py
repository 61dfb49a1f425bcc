"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any app import, and the
settings cache is cleared so they are the ones the app sees.
"""

import json
import os
import tempfile
import threading
import time
from pathlib import Path

import pytest

_TMP_DIR = tempfile.mkdtemp(prefix="relay-tests-")
ROOT = Path(__file__).resolve().parent.parent

TEST_ENV = {
    "DATABASE_PATH": os.path.join(_TMP_DIR, "test.sqlite"),
    "META_VERIFY_TOKEN": "test-verify-token",
    "META_APP_SECRET": "test-app-secret",
    "META_ACCESS_TOKEN": "test-access-token",
    "META_PHONE_NUMBER_ID": "123456789",
    "DEEPSEEK_API_KEY": "test-deepseek-key",
    "SLACK_WEBHOOK_URL": "https://hooks.slack.com/test",
    "SLACK_SIGNING_SECRET": "test-slack-secret",
    "LOG_LEVEL": "WARNING",
    "PROMPT_PATH": str(ROOT / "templates" / "system_prompt.yaml"),
}
os.environ.update(TEST_ENV)

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings  # noqa: E402
get_settings.cache_clear()

from app import models  # noqa: E402,F401
from app.escalation import EscalationError  # noqa: E402
from app.models import Conversation, STATUS_ACTIVE  # noqa: E402
from app.pipeline import InboundPipeline  # noqa: E402
from app.schemas import LLMReply  # noqa: E402
from app.storage import (  # noqa: E402
    Base,
    SessionLocal,
    engine,
    get_conversation_status,
    get_extracted_data,
    get_recent_messages,
)
from app.utils import utc_now  # noqa: E402


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def tables():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class StoreView:
    """
    Reads and seeds the database in short-lived sessions, so a test never
    holds the single pooled connection while the pipeline needs it.
    """

    def messages(self, phone, limit=1000):
        with SessionLocal() as db:
            return [(m.id, m.role, m.content) for m in get_recent_messages(db, phone, limit)]

    def status(self, phone):
        with SessionLocal() as db:
            return get_conversation_status(db, phone)

    def extracted(self, phone):
        with SessionLocal() as db:
            return get_extracted_data(db, phone)

    def seed_conversation(self, phone, status=STATUS_ACTIVE):
        with SessionLocal() as db:
            now = utc_now()
            db.add(Conversation(id=phone, status=status, created_at=now, updated_at=now))
            db.commit()


@pytest.fixture
def store(tables):
    return StoreView()


# =============================================================================
# Fake collaborators
# =============================================================================

class FakeSender:
    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send_text(self, to, body):
        with self._lock:
            self.sent.append((to, body))
        return True

    def bodies_for(self, phone):
        with self._lock:
            return [body for to, body in self.sent if to == phone]


class FakeNotifier:
    def __init__(self):
        self.calls = []
        self.fail = False

    def notify_handoff(self, conversation_id, extracted_data):
        self.calls.append((conversation_id, dict(extracted_data)))
        if self.fail:
            raise EscalationError("slack: unexpected status 500")


class FakeGateway:
    """
    Returns a fixed reply (or a queued one) and records every transcript.

    Tracks how many calls run at once so tests can check the pipeline's
    serialization.
    """

    def __init__(self):
        self.calls = []
        self.replies = []
        self.default = LLMReply(
            reply_to_user="Thanks! What is the pickup address?",
            extracted_data={"address": "unknown", "inventory": "sofa"},
            action="continue",
        )
        self.error = None
        self.delay = 0.0
        self.raises = None
        self.gate = None
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def generate_reply(self, history):
        with self._lock:
            self.calls.append([(m.role, m.content) for m in history])
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=10)
            if self.delay:
                time.sleep(self.delay)
            if self.raises is not None:
                raise self.raises
            with self._lock:
                reply = self.replies.pop(0) if self.replies else self.default
            return reply, self.error
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def pipeline(tables, gateway, sender, notifier):
    p = InboundPipeline(
        session_factory=SessionLocal,
        gateway=gateway,
        sender=sender,
        notifier=notifier,
        max_workers=8,
        history_limit=20,
        llm_timeout_seconds=5.0,
        scheduling_link="https://book.example/assess",
    )
    yield p
    p.shutdown(wait=True)


# =============================================================================
# Payload builders
# =============================================================================

def text_message(message_id, phone, body):
    return {"from": phone, "id": message_id, "type": "text", "text": {"body": body}}


def wa_body(*messages):
    payload = {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"value": {"messages": list(messages)}}]}],
    }
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def make_text_message():
    return text_message


@pytest.fixture
def make_body():
    return wa_body


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture
def client(pipeline):
    """Test client whose webhook route feeds the fake-backed pipeline."""
    from fastapi.testclient import TestClient

    from app.main import app, get_pipeline

    app.dependency_overrides[get_pipeline] = lambda: pipeline
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
