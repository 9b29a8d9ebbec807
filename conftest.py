"""Shared fixtures: in-memory database, a user, a recording sender and a fixed clock."""

import os

os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import crud
import database
from intents import fallback_intent

# Tuesday
FIXED_NOW = datetime(2025, 5, 20, 10, 0, tzinfo=timezone.utc)


class FakeSender:
    """Records every outbound message instead of calling the gateway."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent = []

    async def send(self, to, body):
        self.sent.append((to, body))
        return self.ok

    @property
    def bodies(self):
        return [body for _, body in self.sent]


class FakeNLP:
    """Returns queued intents in order, then the keyword fallback."""

    def __init__(self, *intents):
        self.intents = list(intents)
        self.calls = []

    async def extract_intent(self, message_text, state=None, today=None):
        self.calls.append((message_text, getattr(state, "stage", None), today))
        if self.intents:
            return self.intents.pop(0)
        return fallback_intent(message_text)


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database.init_db(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def user(db):
    return crud.get_or_create_user(db, "+15550001111", "UTC")


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def failing_sender():
    return FakeSender(ok=False)


@pytest.fixture
def make_nlp():
    return FakeNLP
