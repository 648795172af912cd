"""Pytest configuration and fixtures for the reaper loops."""

import sys
from pathlib import Path
# Inject sys.path for reliable pytest imports without an editable install
_APPS = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(_APPS / "api"))  # => .../apps/api
sys.path.insert(0, str(_APPS / "api" / "tests"))  # => shared stubs (paystack_stub, testkit)
sys.path.insert(0, str(_APPS / "reaper"))  # => .../apps/reaper

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from paystack_stub import TEST_BASE_URL, TEST_SECRET, FakeSleep, PaystackStub
from payrecon_api.billing.paystack import PaystackClient
from payrecon_api.db.engine import build_sessionmaker
from payrecon_api.db.models import Base
from payrecon_reaper.shutdown import shutdown_event
from testkit import MutableClock


@pytest.fixture(autouse=True)
def _reset_shutdown_event():
    shutdown_event.clear()
    yield
    shutdown_event.clear()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return build_sessionmaker(engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def paystack_stub() -> PaystackStub:
    return PaystackStub()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def gateway(paystack_stub: PaystackStub, fake_sleep: FakeSleep) -> PaystackClient:
    return PaystackClient(
        secret_key=TEST_SECRET,
        base_url=TEST_BASE_URL,
        max_attempts=3,
        retry_delay=2.0,
        sleep=fake_sleep,
        transport=httpx.MockTransport(paystack_stub.handler),
    )
