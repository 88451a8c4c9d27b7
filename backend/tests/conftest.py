"""
Test configuration and fixtures for HiveGate backend tests.
"""
import os

# Set test environment BEFORE any imports
os.environ["ENVIRONMENT"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.setdefault("SESSION_SECRET", "test-session-secret-key-for-testing-only")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("MONGODB_URI", None)
os.environ.pop("REDIS_URI", None)

import pytest
import pytest_asyncio
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hivegate import database
from hivegate.database import get_db
from hivegate.main import app
from hivegate.models.user import Base
from hivegate.models.audit_log import AuditLog  # noqa: F401 (registers the audit_logs table)
from hivegate.schemas.keystroke import KeystrokeEvent
from hivegate.services.auth_session import AuthSessionManager
from hivegate.services.credential_store import CredentialStore
from hivegate.services.otp_ledger import OtpLedger
from hivegate.services.otp_store import MemoryOtpStore
from hivegate.services.pending_registration import MemoryPendingRegistrations
from hivegate.services.rate_limit import limiter
from hivegate.services.token_service import establish_session


class AsyncSessionWrapper:
    """Async facade over a sync SQLite session, enough for the code under test."""

    def __init__(self, sync_session):
        self.sync_session = sync_session

    async def execute(self, *args, **kwargs):
        return self.sync_session.execute(*args, **kwargs)

    async def commit(self):
        self.sync_session.commit()

    async def rollback(self):
        self.sync_session.rollback()

    async def close(self):
        self.sync_session.close()

    async def refresh(self, *args, **kwargs):
        return self.sync_session.refresh(*args, **kwargs)

    def add(self, *args, **kwargs):
        self.sync_session.add(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self.sync_session, name)


@pytest.fixture(scope="function")
def test_engine():
    """In-memory SQLite engine with fresh tables for every test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_session(test_engine):
    SessionLocal = sessionmaker(bind=test_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def db(test_db_session):
    return AsyncSessionWrapper(test_db_session)


@pytest.fixture
def otp_store():
    return MemoryOtpStore()


@pytest.fixture
def pending_store():
    return MemoryPendingRegistrations()


@pytest.fixture(autouse=True)
def mock_external_services(monkeypatch, otp_store, pending_store):
    """Route every store lookup to in-memory fakes and switch rate limits off."""
    monkeypatch.setattr(database, "mongo_db", None)
    monkeypatch.setattr(database, "redis_client", None)
    monkeypatch.setattr(database, "memory_otp_store", otp_store)
    monkeypatch.setattr(database, "memory_pending_registrations", pending_store)
    monkeypatch.setattr(limiter, "enabled", False)


@pytest.fixture
def mailer():
    """Mailer collaborator that reports successful delivery."""
    return MagicMock(return_value=True)


@pytest.fixture
def ledger(otp_store):
    return OtpLedger(otp_store)


@pytest.fixture
def credential_store(db):
    return CredentialStore(db)


@pytest.fixture
def manager(ledger, credential_store, pending_store, mailer):
    return AuthSessionManager(
        ledger=ledger,
        credentials=credential_store,
        pending=pending_store,
        mailer=mailer,
        session_issuer=establish_session,
        require_pattern=False,
    )


@pytest.fixture
def mock_mongo_collection():
    """Motor collection double for MongoOtpStore tests."""
    collection = AsyncMock()
    collection.find_one.return_value = None
    collection.find_one_and_update.return_value = None
    collection.insert_one.return_value = MagicMock(inserted_id="otp-1")
    collection.delete_many.return_value = MagicMock(deleted_count=1)
    return collection


@pytest.fixture
def mock_redis():
    """Mock Redis client."""
    mock_client = AsyncMock()
    mock_client.get.return_value = None
    mock_client.setex.return_value = True
    mock_client.set.return_value = True
    mock_client.delete.return_value = 1
    return mock_client


@pytest_asyncio.fixture
async def async_client(db, monkeypatch):
    """HTTP client bound to the app with the test database session."""
    monkeypatch.setattr("hivegate.services.email_service.send_otp_email", MagicMock(return_value=False))

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)


def typed(word: str, start: int = 1000, gap: int = 120, hold: int = 80) -> List[KeystrokeEvent]:
    """Events for typing `word` one key at a time with a steady rhythm."""
    events = []
    for i, key in enumerate(word):
        down = start + i * gap
        events.append(KeystrokeEvent(key=key, timestamp=down, phase="down"))
        events.append(KeystrokeEvent(key=key, timestamp=down + hold, phase="up"))
    return events


@pytest.fixture
def sample_user_data() -> Dict[str, Any]:
    return {
        "username": "newuser",
        "email": "new@x.com",
        "password": "pass1234",
    }
