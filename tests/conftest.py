from datetime import date, datetime
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import utils
from communications import GuestCommunicationService
from guest_analysis import GuestAnalysisService
from models import Base, ReservationInfo, get_db

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0)


class FakeOpenPhone:
    """In-memory OpenPhone; values that are Exceptions are raised instead of returned."""

    def __init__(self, configured=True):
        self.configured = configured
        self.phone_numbers = [{"id": "PN1"}]
        self.messages = {}     # phone_number_id -> list | Exception
        self.calls = {}        # phone_number_id -> list | Exception
        self.summaries = {}    # call_id -> dict | Exception
        self.transcripts = {}  # call_id -> dict | Exception
        self.requests = []

    def is_configured(self):
        return self.configured

    @staticmethod
    def _result(value):
        if isinstance(value, Exception):
            raise value
        return value

    async def list_phone_numbers(self):
        self.requests.append(("phone_numbers",))
        return self._result(self.phone_numbers)

    async def list_messages(self, participants, phone_number_id):
        self.requests.append(("messages", tuple(participants), phone_number_id))
        return self._result(self.messages.get(phone_number_id, []))

    async def list_calls(self, participants, phone_number_id):
        self.requests.append(("calls", tuple(participants), phone_number_id))
        return self._result(self.calls.get(phone_number_id, []))

    async def get_call_summary(self, call_id):
        self.requests.append(("summary", call_id))
        return self._result(self.summaries.get(call_id, RuntimeError("no summary")))

    async def get_call_transcript(self, call_id):
        self.requests.append(("transcript", call_id))
        return self._result(self.transcripts.get(call_id, RuntimeError("no transcript")))


class FakeHostify:
    def __init__(self, configured=True):
        self.configured = configured
        self.reservation_info = {}  # reservation_id -> dict | Exception
        self.threads = {}           # inbox_id -> dict | Exception
        self.requests = []

    def is_configured(self):
        return self.configured

    async def get_reservation_info(self, reservation_id):
        self.requests.append(("reservation", reservation_id))
        value = self.reservation_info.get(reservation_id, {})
        if isinstance(value, Exception):
            raise value
        return value

    async def get_inbox_thread(self, inbox_id):
        self.requests.append(("thread", inbox_id))
        value = self.threads.get(str(inbox_id), {"messages": []})
        if isinstance(value, Exception):
            raise value
        return value


class FakeCompletions:
    def __init__(self):
        self.content = '{"summary": "Guest asked about check-in.", "sentiment": "Positive", ' \
                       '"sentimentReason": "Friendly exchange.", "flags": []}'
        self.error = None
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


class FakeOpenAI:
    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)


class Clock:
    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture(autouse=True)
def system_log_session(session_factory, monkeypatch):
    # Audit rows written without an explicit session go to the test database
    monkeypatch.setattr(utils, "SessionLocal", session_factory)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def reservation(db):
    res = ReservationInfo(
        id=101,
        guest_name="Jane Doe",
        phone="5552010099",
        listing_name="Lakeview Cabin",
        arrival_date=date(2024, 5, 28),
        departure_date=date(2024, 6, 1),
        channel_name="Airbnb",
        status="accepted"
    )
    db.add(res)
    db.commit()
    return res


@pytest.fixture
def openphone():
    return FakeOpenPhone()


@pytest.fixture
def hostify():
    return FakeHostify()


@pytest.fixture
def openai_client():
    return FakeOpenAI()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def communication_service(openphone, hostify):
    return GuestCommunicationService(openphone=openphone, hostify=hostify)


@pytest.fixture
def analysis_service(communication_service, openai_client, clock):
    return GuestAnalysisService(
        communications=communication_service,
        openai_client=openai_client,
        model="test-model",
        clock=clock
    )


@pytest_asyncio.fixture
async def async_client(db, communication_service, analysis_service):
    from main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.state.communication_service = communication_service
    app.state.analysis_service = analysis_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
