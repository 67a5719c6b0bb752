"""
Pytest configuration and fixtures for WhatsApp Reminder Bot tests.
"""

import os
import tempfile

# Settings are read on import, so the environment must be ready first
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest123")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test_token")
os.environ.setdefault("TWILIO_WHATSAPP_NUMBER", "whatsapp:+14155238886")
os.environ.setdefault("OPENAI_API_KEY", "sk-test123")
os.environ.setdefault("ALLOWED_WHATSAPP_NUMBERS", '["whatsapp:+923001234567"]')
os.environ.setdefault("VALIDATE_TWILIO_SIGNATURE", "false")
os.environ.setdefault("TIMEZONE", "Asia/Karachi")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="reminder-tests-"))

from datetime import datetime, timedelta
from typing import List
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from app.domain.reminder import DeliveryResult, ExtractionResult, RawCandidate
from app.infrastructure.database import create_engine, create_session_factory, init_database
from app.infrastructure.reminder_store import ReminderStore
from app.utils.time import get_timezone

# Use a separate in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

CHAT_ID = "whatsapp:+923001234567"
OTHER_CHAT_ID = "whatsapp:+923009999999"


@pytest.fixture
def tz():
    """Timezone the tests read and display times in."""
    return get_timezone("Asia/Karachi")


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine with all tables."""
    engine = create_engine(TEST_DATABASE_URL)
    await init_database(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    """Session factory bound to the test engine."""
    return create_session_factory(test_engine)


@pytest_asyncio.fixture
async def store(session_factory) -> ReminderStore:
    """Reminder store without selection expiry."""
    return ReminderStore(session_factory)


class FakeSink:
    """Delivery sink that records calls and answers with a fixed outcome."""

    def __init__(self, ok: bool = True, reason: str = "send failed"):
        self.ok = ok
        self.reason = reason
        self.calls: List[tuple] = []

    async def __call__(self, chat_id: str, origin_message_id: str, message: str) -> DeliveryResult:
        self.calls.append((chat_id, origin_message_id, message))
        if self.ok:
            return DeliveryResult(ok=True)
        return DeliveryResult(ok=False, reason=self.reason)


class FakeExtractor:
    """Extractor returning canned pairs, or raising a canned error."""

    def __init__(self, pairs=None, error: Exception = None, prompt_tokens: int = 12, completion_tokens: int = 7):
        self.pairs = pairs or []
        self.error = error
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.calls: List[str] = []

    async def __call__(self, text: str, now: datetime, tz, default_hour: int) -> ExtractionResult:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return ExtractionResult(
            candidates=[RawCandidate(message=m, when=w) for m, w in self.pairs],
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
        )


@pytest.fixture
def succeeding_sink() -> FakeSink:
    return FakeSink(ok=True)


@pytest.fixture
def failing_sink() -> FakeSink:
    return FakeSink(ok=False)


@pytest.fixture
def past(tz) -> datetime:
    """An instant a minute ago."""
    return datetime.now(tz).replace(second=0, microsecond=0) - timedelta(minutes=1)


@pytest.fixture
def mock_settings():
    """Mock application settings for testing."""
    mock = MagicMock()
    mock.twilio_account_sid = "ACtest123"
    mock.twilio_auth_token = "test_token"
    mock.twilio_whatsapp_number = "whatsapp:+14155238886"
    mock.openai_api_key = "sk-test123"
    mock.openai_model = "gpt-4o-mini"
    mock.allowed_whatsapp_numbers = [CHAT_ID]
    mock.default_hour = 8
    mock.max_num_tries = 5
    mock.monitor_interval_seconds = 30
    mock.privacy_policy_url = ""
    mock.debug = False
    mock.validate_twilio_signature = False
    mock.timezone = "Asia/Karachi"
    return mock


@pytest.fixture
def mock_twilio_client():
    """Mock Twilio client for testing."""
    mock_client = MagicMock()
    mock_message = MagicMock()
    mock_message.sid = "SM123456789"
    mock_client.messages.create.return_value = mock_message
    return mock_client
