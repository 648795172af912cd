"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
# Inject sys.path for reliable pytest imports without an editable install
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api
sys.path.insert(0, str(Path(__file__).resolve().parent))  # => .../apps/api/tests

from typing import Callable, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from paystack_stub import TEST_BASE_URL, TEST_SECRET, FakeSleep, PaystackStub, RecordingDispatch
from payrecon_api.billing.org_sync import OrganizationSync
from payrecon_api.billing.paystack import PaystackClient
from payrecon_api.billing.reconciler import ConfirmationReconciler
from payrecon_api.billing.signature import SignatureVerifier
from payrecon_api.billing.subscriptions import SubscriptionProjector
from payrecon_api.config import Settings
from payrecon_api.db.engine import build_sessionmaker
from payrecon_api.db.models import Base, Organization
from payrecon_api.main import configure_state, create_app
from testkit import MutableClock, make_settings, seed_organization


@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite shared by every session in the test."""
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
        session.rollback()
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
    """Real PaystackClient wired to the stub transport (3 attempts, 2s apart)."""
    return PaystackClient(
        secret_key=TEST_SECRET,
        base_url=TEST_BASE_URL,
        max_attempts=3,
        retry_delay=2.0,
        sleep=fake_sleep,
        transport=httpx.MockTransport(paystack_stub.handler),
    )


@pytest.fixture
def verifier() -> SignatureVerifier:
    return SignatureVerifier(TEST_SECRET)


@pytest.fixture
def dispatch() -> RecordingDispatch:
    return RecordingDispatch()


@pytest.fixture
def reconciler(
    db_session: Session,
    session_factory,
    gateway: PaystackClient,
    verifier: SignatureVerifier,
    clock: MutableClock,
    dispatch: RecordingDispatch,
) -> ConfirmationReconciler:
    return ConfirmationReconciler(
        db=db_session,
        gateway=gateway,
        verifier=verifier,
        projector=SubscriptionProjector(db_session, clock=clock),
        org_sync=OrganizationSync(session_factory),
        dispatch=dispatch,
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def make_client(engine, gateway: PaystackClient, clock: MutableClock) -> Callable[..., TestClient]:
    """Build a TestClient over a fully configured app.

    Unhandled exceptions are rendered as 500 responses, as in production.
    """
    created: list = []

    def _make(settings: Optional[Settings] = None, supabase=None) -> TestClient:
        settings = settings or make_settings()
        app = create_app(settings)
        configure_state(app, settings, engine=engine, gateway=gateway, clock=clock, supabase=supabase)
        created.append(app)
        return TestClient(app, raise_server_exceptions=False)

    yield _make

    for app in created:
        app.dependency_overrides.clear()


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def org(db_session: Session) -> Organization:
    return seed_organization(db_session)
