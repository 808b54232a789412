"""HTTP tests for the webhook, cron, subscription and health routes."""

import uuid
from decimal import Decimal

import httpx
import pytest
from conftest import FAKE_SIGNATURE, webhook_body
from sqlalchemy import func, select

from api.app import app
from api.routes.subscription import get_payment_gateway
from api.routes.webhooks import get_gateway_registry
from core.auth import get_current_user
from core.config import settings
from core.constants import CheckoutStatus, SubscriptionStatus
from database.connection import get_db_session
from database.models import PaymentTransaction
from database.service import DatabaseService
from schemas.auth import AuthenticatedUser


@pytest.fixture
async def client(db_session, gateway, admin_user):
    async def override_db_session():
        yield db_session

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_gateway_registry] = lambda: {"midtrans": gateway}
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(
        user_id="auth0|admin-1", email="admin@acme.test", name="Acme Admin"
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://localhost") as ac:
        yield ac

    app.dependency_overrides.clear()


async def open_checkout(client, catalog) -> str:
    response = await client.post(
        "/api/v1/subscription/checkout/paid",
        json={
            "subscription_plan_id": catalog["standard"].id,
            "seat_plan_id": catalog["standard_small"].id,
            "is_monthly": True,
        },
    )
    assert response.status_code == 200
    return response.json()["session_id"]


async def count_payments(db_session) -> int:
    return await db_session.scalar(select(func.count(PaymentTransaction.id)))


# ==================== WEBHOOKS ====================


async def test_bad_signature_is_rejected_without_changes(client, db_session, catalog):
    session_id = await open_checkout(client, catalog)

    response = await client.post(
        "/api/v1/webhooks/midtrans",
        content=webhook_body(session_id, transaction_id="tx-forged", amount=500000),
        headers={"X-Signature-Key": "forged"},
    )

    assert response.status_code == 401
    assert response.json()["error"] == "invalid_signature"
    stored = await DatabaseService(db_session).get_checkout_session(session_id)
    assert stored.status == CheckoutStatus.PENDING
    assert await count_payments(db_session) == 0


async def test_signed_webhook_activates_subscription(client, db_session, catalog, admin_user):
    session_id = await open_checkout(client, catalog)
    body = webhook_body(session_id, transaction_id="tx-api", amount=500000)
    headers = {"X-Signature-Key": FAKE_SIGNATURE}

    response = await client.post("/api/v1/webhooks/midtrans", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "outcome": "processed"}

    replay = await client.post("/api/v1/webhooks/midtrans", content=body, headers=headers)
    assert replay.json()["outcome"] == "already_processed"
    assert await count_payments(db_session) == 1

    me = await client.get("/api/v1/subscription/me")
    assert me.status_code == 200
    assert me.json()["status"] == SubscriptionStatus.ACTIVE.value
    assert me.json()["seat_plan_id"] == catalog["standard_small"].id


async def test_malformed_webhook_is_bad_request(client):
    response = await client.post(
        "/api/v1/webhooks/midtrans",
        content=b"{not json",
        headers={"X-Signature-Key": FAKE_SIGNATURE},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "malformed_payload"


async def test_webhook_for_unknown_session_is_not_found(client):
    response = await client.post(
        "/api/v1/webhooks/midtrans",
        content=webhook_body(str(uuid.uuid4()), amount=500000),
        headers={"X-Signature-Key": FAKE_SIGNATURE},
    )
    assert response.status_code == 404


async def test_unregistered_gateway_is_not_found(client):
    response = await client.post("/api/v1/webhooks/xendit", content=b"{}")
    assert response.status_code == 404


# ==================== CRON ====================


async def test_cron_requires_key(client):
    response = await client.post("/api/v1/cron/trial-expiry")
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_cron_key"

    wrong = await client.post(
        "/api/v1/cron/trial-expiry", headers={"Authorization": "Bearer not-the-key"}
    )
    assert wrong.status_code == 401


async def test_cron_sweep_returns_counts(client, catalog):
    await open_checkout(client, catalog)

    response = await client.post(
        "/api/v1/cron/checkout-expiry",
        headers={"Authorization": f"Bearer {settings.cron_api_key}"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "sweep": "expire_stale_checkout_sessions",
        "examined": 0,
        "affected": 0,
        "skipped": 0,
        "failed": 0,
    }


# ==================== SUBSCRIPTION ====================


async def test_plans_are_listed(client, catalog):
    response = await client.get("/api/v1/subscription/plans")
    assert response.status_code == 200
    assert {plan["name"] for plan in response.json()} == {"Standard", "Premium"}

    seats = await client.get(f"/api/v1/subscription/plans/{catalog['premium'].id}/seat-plans")
    assert [seat["max_employees"] for seat in seats.json()] == [10, 50]
    assert Decimal(str(seats.json()[0]["price_per_month"])) == Decimal("800000")


async def test_domain_errors_render_as_json(client):
    response = await client.get(
        "/api/v1/subscription/me", headers={"X-Request-ID": "req-123"}
    )

    assert response.status_code == 404
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json() == {
        "error": "not_found",
        "description": "subscription not found",
        "details": {},
        "request_id": "req-123",
    }


async def test_trial_activation_over_http(client, catalog):
    response = await client.post("/api/v1/subscription/trial/activate")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == SubscriptionStatus.TRIAL.value
    assert body["seat_plan_id"] == catalog["premium_small"].id
    assert body["is_in_trial"] is True
    assert 13 <= body["remaining_trial_days"] <= 14

    again = await client.post("/api/v1/subscription/trial/activate")
    assert again.status_code == 400


# ==================== HEALTH ====================


async def test_liveness_and_security_headers(client):
    response = await client.get("/api/v1/health/live")
    assert response.status_code == 200
    assert response.json() == {"status": "alive"}
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
