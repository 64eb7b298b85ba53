from datetime import datetime, timezone

import pytest
import pytest_asyncio

import db
from app.errors import PermanentProviderError, TransientProviderError
from app.types.reminder_contract import CourtEventIn, ProviderStatus, SendReceipt


UTC = timezone.utc


class FakeProvider:
    """In-memory stand-in for the Telnyx provider.

    ``send_results`` / ``statuses`` are consumed in order; an exception
    instance is raised instead of returned.
    """

    def __init__(self, send_results=None, statuses=None):
        self.send_results = list(send_results or [])
        self.statuses = dict(statuses or {})
        self.sent = []
        self.lookups = []
        self._counter = 0

    def send(self, to, body):
        self.sent.append((to, body))
        if self.send_results:
            result = self.send_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return SendReceipt(provider_message_id=result, status="queued")
        self._counter += 1
        return SendReceipt(provider_message_id=f"SM{self._counter}", status="queued")

    def fetch_status(self, provider_message_id):
        self.lookups.append(provider_message_id)
        result = self.statuses.get(provider_message_id, "sent")
        if isinstance(result, Exception):
            raise result
        return ProviderStatus(status=result, raw={"id": provider_message_id, "status": result})


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def transient():
    return TransientProviderError("503 from carrier")


@pytest.fixture
def permanent():
    return PermanentProviderError("invalid destination number")


@pytest_asyncio.fixture
async def database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'reminders.db'}")
    await db.dispose_engine()
    await db.create_all()
    yield
    await db.dispose_engine()


def make_event(**overrides) -> CourtEventIn:
    data = {
        "id": "evt-1",
        "recipient_address": "+15550001111",
        "recipient_name": "Jordan Smith",
        "event_at": datetime(2025, 3, 10, 9, 0, tzinfo=UTC),
        "location": "Courtroom 4B",
        "case_number": "CR-2025-0042",
        "timezone": "UTC",
    }
    data.update(overrides)
    return CourtEventIn(**data)


@pytest_asyncio.fixture
async def template_id(database):
    return await db.insert_template(
        "Hello {client_name}, you have court on {court_date} at {court_time} in {court_location}.",
        2,
        name="two days before",
        template_id="tpl-2d",
    )
