"""
Pytest configuration and fixtures for the backend tests.

The app talks to an in-memory MongoDB (mongomock behind a small awaitable
wrapper shaped like motor) and OTP emails land in
an ``Outbox`` instead of SMTP. Settings are read at import time, so the
environment is prepared before anything from the app is imported.
"""
import os
import tempfile
from datetime import datetime, timedelta

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="finance-tracker-logs-"))
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
from faker import Faker
from httpx import ASGITransport, AsyncClient
import mongomock

from core.security import create_access_token, get_password_hash
from db import mongodb
from services import otp_service
from services.otp_service import OtpLedger
from main import app

# Initialize Faker for test data generation
fake = Faker()

TEST_PASSWORD = "testpassword123"


def wrong_code(code: str) -> str:
    """A well-formed code guaranteed to differ from ``code``."""
    return f"{(int(code) + 1) % 1000000:06d}"


class Clock:
    """Controllable replacement for datetime.utcnow."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class Outbox:
    """Notifier that records every passcode instead of sending it."""

    def __init__(self):
        self.messages = []
        self.fail = False

    def __call__(self, to_email: str, code: str, template: str) -> bool:
        if self.fail:
            return False
        self.messages.append({"to": to_email, "code": code, "template": template})
        return True

    def last_code(self, to_email: str = None) -> str:
        for message in reversed(self.messages):
            if to_email is None or message["to"] == to_email:
                return message["code"]
        raise AssertionError(f"No passcode sent to {to_email}")


class MockCursor:
    """Async iteration and ``to_list`` over a mongomock cursor, like motor's cursors."""

    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, count):
        self._cursor = self._cursor.skip(count)
        return self

    def limit(self, count):
        self._cursor = self._cursor.limit(count)
        return self

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return next(self._cursor)
        except StopIteration:
            raise StopAsyncIteration

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class MockCollection:
    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return MockCursor(self._collection.find(*args, **kwargs))

    def aggregate(self, pipeline, **kwargs):
        return MockCursor(iter(self._collection.aggregate(pipeline, **kwargs)))

    def __getattr__(self, name):
        method = getattr(self._collection, name)

        async def call(*args, **kwargs):
            return method(*args, **kwargs)

        return call


class MockDatabase:
    def __init__(self, database):
        self._database = database

    def __getitem__(self, name):
        return MockCollection(self._database[name])

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    async def command(self, command):
        return {"ok": 1.0}


@pytest_asyncio.fixture
async def mongo_db(monkeypatch):
    """Fresh in-memory database with the production indexes, installed as the app's database."""
    db = MockDatabase(mongomock.MongoClient()["finance_tracker_test"])
    await mongodb.ensure_indexes(db)
    monkeypatch.setattr(mongodb, "_mongo_db", db)
    yield db


@pytest.fixture
def clock() -> Clock:
    # mongomock applies TTL indexes against the real clock, so fake time starts from now
    return Clock(datetime.utcnow().replace(microsecond=0))


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def ledger(mongo_db, outbox, clock) -> OtpLedger:
    return OtpLedger(db=mongo_db, notifier=outbox, clock=clock)


@pytest.fixture
def app_outbox(mongo_db, monkeypatch) -> Outbox:
    """Route the app-wide ledger's emails into an outbox."""
    box = Outbox()
    monkeypatch.setattr(otp_service.otp_ledger, "_notifier", box)
    monkeypatch.setattr(otp_service.otp_ledger, "_db", mongo_db)
    return box


@pytest_asyncio.fixture
async def async_client(mongo_db, app_outbox):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def sample_signup():
    return {
        "name": fake.name()[:50],
        "email": fake.unique.email().lower(),
        "password": TEST_PASSWORD,
    }


async def insert_user(db, *, email: str = None, verified: bool = True, password: str = TEST_PASSWORD, **extra) -> dict:
    now = datetime.utcnow()
    doc = {
        "name": fake.name()[:50],
        "email": (email or fake.unique.email()).lower(),
        "phone": "",
        "hashed_password": get_password_hash(password),
        "is_verified": verified,
        "preferences": {},
        "last_login": None,
        "created_at": now - timedelta(days=30),
        "updated_at": now - timedelta(days=30),
        **extra,
    }
    result = await db.users.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


@pytest_asyncio.fixture
async def verified_user(mongo_db) -> dict:
    return await insert_user(mongo_db)


@pytest.fixture
def auth_headers(verified_user) -> dict:
    token = create_access_token(str(verified_user["_id"]), verified_user["email"])
    return {"Authorization": f"Bearer {token}"}


async def insert_transaction(db, user_id: str, **overrides) -> dict:
    when = overrides.pop("date", datetime(2024, 5, 10, 9, 0))
    doc = {
        "user_id": user_id,
        "type": "expense",
        "amount": 25.0,
        "category": "Basic Needs",
        "description": "Groceries",
        "tags": [],
        "notes": None,
        "location": None,
        "is_recurring": False,
        "recurring_frequency": None,
        "date": when,
        "month": when.month,
        "year": when.year,
        "created_at": when,
        "updated_at": when,
        **overrides,
    }
    result = await db.transactions.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc
