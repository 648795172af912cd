"""HTTP contract tests for /payments/*.

Webhook error semantics (retry storm prevention):
  - bad signature        -> 401, never 500, no Retry-After
  - invalid payload      -> 400
  - missing secret key   -> 500 WEBHOOK_PROVIDER_MISCONFIG + Retry-After: 60
  - internal failure     -> 500 WEBHOOK_INTERNAL_ERROR + Retry-After: 60
  - anything verified    -> 200 (including ignored events and unknown references)
"""

import json
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from paystack_stub import PaystackStub, charge_success_body, server_error, verify_envelope
from payrecon_api.auth.session_auth import CallerContext, get_caller_context
from payrecon_api.billing.signature import SignatureVerifier
from payrecon_api.billing.subscriptions import SubscriptionProjector
from payrecon_api.db.models import Organization, Payment, Subscription
from payrecon_api.main import configure_state, create_app
from testkit import ORG_ID, make_settings, seed_organization, seed_payment


# ===========================================================================
# Shared helpers
# ===========================================================================

_INIT_BODY = {
    "email": "ada@example.com",
    "amount": 500_000,
    "metadata": {"orgId": ORG_ID, "planId": "pro", "billingCycle": "monthly"},
}


def _post_webhook(client: TestClient, body: bytes, signature) -> httpx.Response:
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["X-Paystack-Signature"] = signature
    return client.post("/payments/webhook", content=body, headers=headers)


def _signed(client: TestClient, verifier: SignatureVerifier, body: bytes):
    return _post_webhook(client, body, verifier.sign(body))


def _as_caller(client: TestClient) -> None:
    client.app.dependency_overrides[get_caller_context] = lambda: CallerContext(
        user_id="user_ada", email="ada@example.com"
    )


def _fresh(session_factory, model, key):
    db = session_factory()
    try:
        return db.get(model, key)
    finally:
        db.close()


# ===========================================================================
# POST /payments/initialize
# ===========================================================================


def test_initialize_requires_session(client: TestClient, paystack_stub: PaystackStub) -> None:
    resp = client.post("/payments/initialize", json=_INIT_BODY)

    assert resp.status_code == 401, resp.text
    assert resp.headers["content-type"].startswith("application/problem+json")
    assert resp.json()["code"] == "UNAUTHORIZED"
    assert paystack_stub.requests == []


class _FakeSupabaseAuth:
    def __init__(self, valid_token: str):
        self.valid_token = valid_token
        self.tokens: list[str] = []

    def get_user(self, token: str):
        self.tokens.append(token)
        if token != self.valid_token:
            raise RuntimeError("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id="user_grace", email="grace@example.com"))


def test_initialize_without_supabase_is_not_configured(make_client, paystack_stub: PaystackStub) -> None:
    client = make_client(supabase=None)

    resp = client.post("/payments/initialize", json=_INIT_BODY, headers={"Authorization": "Bearer jwt_abc"})

    assert resp.status_code == 500, resp.text
    assert resp.json()["code"] == "NOT_CONFIGURED"
    assert paystack_stub.requests == []


def test_initialize_validates_jwt_with_startup_supabase_client(make_client, session_factory) -> None:
    auth = _FakeSupabaseAuth(valid_token="jwt_good")
    client = make_client(supabase=SimpleNamespace(auth=auth))

    rejected = client.post(
        "/payments/initialize", json=_INIT_BODY, headers={"Authorization": "Bearer jwt_forged"}
    )
    accepted = client.post(
        "/payments/initialize",
        json={**_INIT_BODY, "reference": "ref_http_jwt"},
        headers={"Authorization": "Bearer jwt_good"},
    )

    assert rejected.status_code == 401
    assert accepted.status_code == 200, accepted.text
    assert auth.tokens == ["jwt_forged", "jwt_good"]
    assert client.app.state.supabase.auth is auth, "client is reused, never rebuilt per request"
    assert _fresh(session_factory, Payment, "ref_http_jwt").user_id == "user_grace"


def test_supabase_client_is_built_once_at_startup(engine, gateway, clock, monkeypatch) -> None:
    built = []

    def _build(settings):
        built.append(settings.supabase_url)
        return SimpleNamespace(auth=_FakeSupabaseAuth(valid_token="jwt_good"))

    monkeypatch.setattr("payrecon_api.main.build_supabase_client", _build)
    settings = make_settings(supabase_url="https://sb.payrecon.test", supabase_publishable_key="sb_publishable_test")
    app = create_app(settings)
    configure_state(app, settings, engine=engine, gateway=gateway, clock=clock)

    assert app.state.supabase is None
    with TestClient(app, raise_server_exceptions=False) as client:
        client.post("/payments/initialize", json=_INIT_BODY, headers={"Authorization": "Bearer jwt_good"})
        client.post("/payments/initialize", json=_INIT_BODY, headers={"Authorization": "Bearer jwt_good"})
        assert app.state.supabase is not None

    assert built == ["https://sb.payrecon.test"]


def test_initialize_records_pending_payment(
    client: TestClient, paystack_stub: PaystackStub, session_factory
) -> None:
    _as_caller(client)

    resp = client.post("/payments/initialize", json={**_INIT_BODY, "reference": "ref_http_001"})

    assert resp.status_code == 200, resp.text
    assert resp.json() == {
        "success": True,
        "authorizationUrl": "https://checkout.paystack.com/ref_http_001",
        "reference": "ref_http_001",
    }

    sent = json.loads(paystack_stub.initialize_calls()[0].content)
    assert sent["currency"] == "NGN", "currency defaults to NGN"
    assert sent["callback_url"] == "https://app.payrecon.test/billing/callback"
    assert sent["metadata"] == {"orgId": ORG_ID, "planId": "pro", "billingCycle": "monthly"}

    payment = _fresh(session_factory, Payment, "ref_http_001")
    assert payment.status == "pending"
    assert payment.amount == 500_000
    assert payment.user_id == "user_ada"
    assert payment.organization_id == ORG_ID
    assert payment.billing_cycle == "monthly"


def test_initialize_keys_ledger_by_provider_reference(
    client: TestClient, session_factory
) -> None:
    _as_caller(client)

    resp = client.post("/payments/initialize", json=_INIT_BODY)

    assert resp.status_code == 200, resp.text
    reference = resp.json()["reference"]
    assert reference == "ps_generated_7PVGX8MEk85tgeEpVDtD"
    assert _fresh(session_factory, Payment, reference) is not None


def test_initialize_duplicate_reference_is_409(
    client: TestClient, paystack_stub: PaystackStub, db_session: Session
) -> None:
    seed_payment(db_session, "ref_http_dup")
    _as_caller(client)

    resp = client.post("/payments/initialize", json={**_INIT_BODY, "reference": "ref_http_dup"})

    assert resp.status_code == 409, resp.text
    assert resp.json()["code"] == "DUPLICATE_PAYMENT_REFERENCE"
    assert paystack_stub.initialize_calls() == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": 0},
        {"amount": "500000"},
        {"amount": 12.5},
        {"email": "not-an-email"},
        {"metadata": {"orgId": ORG_ID, "planId": "pro", "billingCycle": "weekly"}},
        {"currency": "NAIRA"},
    ],
)
def test_initialize_validation_errors(client: TestClient, paystack_stub: PaystackStub, overrides) -> None:
    _as_caller(client)

    resp = client.post("/payments/initialize", json={**_INIT_BODY, **overrides})

    assert resp.status_code == 422, resp.text
    assert resp.json()["type"] == "urn:payrecon:problem:validation-error"
    assert paystack_stub.requests == []


def test_initialize_gateway_rejection_creates_no_record(
    client: TestClient, paystack_stub: PaystackStub, session_factory
) -> None:
    paystack_stub.initialize_response = httpx.Response(400, json={"status": False, "message": "Invalid currency"})
    _as_caller(client)

    resp = client.post("/payments/initialize", json={**_INIT_BODY, "reference": "ref_http_002"})

    assert resp.status_code == 400
    assert resp.json()["code"] == "GATEWAY_UNAVAILABLE"
    assert _fresh(session_factory, Payment, "ref_http_002") is None


# ===========================================================================
# GET /payments/verify/{reference}
# ===========================================================================


def test_verify_success_response_shape(
    client: TestClient, paystack_stub: PaystackStub, db_session: Session, session_factory
) -> None:
    seed_organization(db_session)
    seed_payment(db_session, "ref_http_003")
    paystack_stub.queue_verify("ref_http_003", verify_envelope("ref_http_003"))

    resp = client.get("/payments/verify/ref_http_003")

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["success"] is True
    assert body["status"] == "completed"
    assert body["amount"] == 5000.0, "amount is returned in major units"
    assert body["reference"] == "ref_http_003"
    assert body["paidAt"].startswith("2026-10-18T10:15:00")

    # Organization sync ran as a background task after the response
    org = _fresh(session_factory, Organization, ORG_ID)
    assert org.subscription_status == "active"
    assert org.trial_start_date is None


def test_verify_unknown_reference_is_404(client: TestClient, paystack_stub: PaystackStub) -> None:
    resp = client.get("/payments/verify/ref_nobody")

    assert resp.status_code == 404
    assert resp.json()["code"] == "PAYMENT_RECORD_NOT_FOUND"
    assert resp.json()["reference"] == "ref_nobody"
    assert paystack_stub.requests == []


def test_verify_gateway_unavailable_is_400_and_failed(
    client: TestClient, paystack_stub: PaystackStub, db_session: Session, session_factory
) -> None:
    seed_payment(db_session, "ref_http_004")
    paystack_stub.queue_verify("ref_http_004", server_error())

    resp = client.get("/payments/verify/ref_http_004")

    assert resp.status_code == 400
    assert resp.json()["code"] == "GATEWAY_UNAVAILABLE"
    assert _fresh(session_factory, Payment, "ref_http_004").status == "failed"

    # Polling again answers from the ledger
    again = client.get("/payments/verify/ref_http_004")
    assert again.status_code == 200
    assert again.json()["success"] is False
    assert again.json()["status"] == "failed"


def test_verify_without_secret_key_is_500_not_configured(
    make_client, db_session: Session, session_factory
) -> None:
    from payrecon_api.billing.paystack import PaystackClient

    seed_payment(db_session, "ref_http_005")
    client = make_client(make_settings(paystack_secret_key=None))
    client.app.state.gateway = PaystackClient(secret_key=None)

    resp = client.get("/payments/verify/ref_http_005")

    assert resp.status_code == 500
    assert resp.json()["code"] == "NOT_CONFIGURED"
    assert _fresh(session_factory, Payment, "ref_http_005").status == "pending"


# ===========================================================================
# POST /payments/webhook
# ===========================================================================


def test_webhook_bad_signature_is_401(client: TestClient, db_session: Session) -> None:
    seed_payment(db_session, "ref_wh_001")

    resp = _post_webhook(client, charge_success_body("ref_wh_001"), "deadbeef")

    assert resp.status_code == 401
    body = resp.json()
    assert body["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert body["provider"] == "paystack"
    assert "Retry-After" not in resp.headers


def test_webhook_missing_signature_is_401(client: TestClient) -> None:
    resp = _post_webhook(client, charge_success_body("ref_wh_002"), None)
    assert resp.status_code == 401


def test_webhook_non_ascii_signature_is_401(client: TestClient, db_session: Session, session_factory) -> None:
    seed_payment(db_session, "ref_wh_002b")

    resp = _post_webhook(client, charge_success_body("ref_wh_002b"), b"\xff\xfe" * 64)

    assert resp.status_code == 401
    assert resp.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert "Retry-After" not in resp.headers
    assert _fresh(session_factory, Payment, "ref_wh_002b").status == "pending"


def test_webhook_invalid_payload_is_400(client: TestClient, verifier: SignatureVerifier) -> None:
    resp = _signed(client, verifier, b"{not json")

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "WEBHOOK_INVALID_PAYLOAD"


def test_webhook_processes_charge_success(
    client: TestClient, verifier: SignatureVerifier, db_session: Session, session_factory
) -> None:
    seed_organization(db_session)
    seed_payment(db_session, "ref_wh_003")
    body = charge_success_body("ref_wh_003")

    resp = _signed(client, verifier, body)
    assert resp.status_code == 200, resp.text
    assert resp.json() == {"status": "processed"}

    assert _fresh(session_factory, Payment, "ref_wh_003").status == "completed"
    assert _fresh(session_factory, Organization, ORG_ID).subscription_plan == "pro"

    redelivery = _signed(client, verifier, body)
    assert redelivery.status_code == 200
    assert redelivery.json() == {"status": "already_processed"}


@pytest.mark.parametrize(
    "body, expected",
    [
        (json.dumps({"event": "transfer.success", "data": {"id": 9}}).encode(), "ignored"),
        (charge_success_body("ref_from_elsewhere", transaction_id=10), "unknown_reference"),
    ],
)
def test_webhook_acknowledges_what_it_does_not_act_on(
    client: TestClient, verifier: SignatureVerifier, body: bytes, expected: str
) -> None:
    resp = _signed(client, verifier, body)
    assert resp.status_code == 200
    assert resp.json() == {"status": expected}


def test_webhook_without_secret_is_500_with_retry_after(make_client) -> None:
    client = make_client(make_settings(paystack_secret_key=None))

    resp = _post_webhook(client, charge_success_body("ref_wh_004"), "a" * 128)

    assert resp.status_code == 500
    assert resp.json()["error_code"] == "WEBHOOK_PROVIDER_MISCONFIG"
    assert resp.headers["Retry-After"] == "60"


def test_webhook_internal_error_is_500_and_redelivery_recovers(
    client: TestClient,
    verifier: SignatureVerifier,
    db_session: Session,
    session_factory,
    monkeypatch,
) -> None:
    """A crash after the signature check asks Paystack to retry; the retry completes the work."""
    seed_organization(db_session)
    seed_payment(db_session, "ref_wh_005")
    body = charge_success_body("ref_wh_005", transaction_id=31337)

    original_apply = SubscriptionProjector.apply

    def exploding_apply(self, payment):
        raise RuntimeError("database connection lost")

    monkeypatch.setattr(SubscriptionProjector, "apply", exploding_apply)
    resp = _signed(client, verifier, body)

    assert resp.status_code == 500
    assert resp.json()["error_code"] == "WEBHOOK_INTERNAL_ERROR"
    assert resp.headers["Retry-After"] == "60"
    assert "database connection lost" not in resp.text, "internal details stay in logs"

    db_session.expire_all()
    status = db_session.execute(
        text("SELECT status FROM webhook_dedup_events WHERE dedup_key = :k"),
        {"k": "ev_charge.success:31337"},
    ).scalar_one()
    assert status == "failed"

    monkeypatch.setattr(SubscriptionProjector, "apply", original_apply)
    retry = _signed(client, verifier, body)

    assert retry.status_code == 200
    assert retry.json() == {"status": "processed"}
    db_session.expire_all()
    [subscription] = db_session.execute(select(Subscription)).scalars().all()
    assert subscription.payment_reference == "ref_wh_005"


def test_request_id_is_echoed(client: TestClient) -> None:
    resp = client.get("/payments/verify/ref_missing", headers={"X-Request-ID": "req-abc-123"})
    assert resp.headers["X-Request-ID"] == "req-abc-123"
    assert resp.json()["instance"] == "urn:payrecon:trace:req-abc-123"
