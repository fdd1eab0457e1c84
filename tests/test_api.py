import json

import pytest
from fastapi.testclient import TestClient

from dineflow.api.dependencies import get_config, get_gateway, get_store
from dineflow.core.dates import utcnow
from dineflow.main import app
from dineflow.models.subscription import PaymentKind


@pytest.fixture
def client(store, gateway, config):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_config] = lambda: config
    # Sin `with`: no corre el lifespan, la base es la sqlite en memoria del fixture
    yield TestClient(app)
    app.dependency_overrides.clear()


ADMIN = {"X-Admin-Token": "test-admin"}


def test_list_plans(client, plan):
    response = client.get("/api/v1/subscriptions/plans")

    assert response.status_code == 200
    data = response.json()
    assert [p["name"] for p in data] == ["Pro"]
    assert data[0]["billing_cycle"] == "MONTHLY"
    assert data[0]["features"] == ["menu_digital", "reportes"]


def test_missing_plan_returns_404(client):
    response = client.get("/api/v1/subscriptions/plans/999")

    assert response.status_code == 404
    assert response.json()["code"] == "NotFoundError"


def test_select_plan_and_read_subscription(client, restaurant, plan):
    response = client.post(
        "/api/v1/subscriptions/restaurant",
        json={"restaurant_id": restaurant.id, "plan_id": plan.id}
    )
    assert response.status_code == 201
    assert response.json()["status"] == "TRIAL"

    response = client.get(f"/api/v1/subscriptions/restaurant/{restaurant.id}")
    assert response.status_code == 200
    data = response.json()
    assert data["plan"]["name"] == "Pro"
    assert data["payments"] == []


def test_invalid_plan_returns_400(client, restaurant):
    response = client.post(
        "/api/v1/subscriptions/restaurant",
        json={"restaurant_id": restaurant.id, "plan_id": 999}
    )

    assert response.status_code == 400


def test_cancel_subscription(client, make_subscription):
    sub = make_subscription()

    response = client.post(f"/api/v1/subscriptions/restaurant/{sub.restaurant_id}/cancel")

    assert response.status_code == 200
    assert response.json()["cancel_at_period_end"] is True


def test_cancel_without_subscription(client):
    assert client.post("/api/v1/subscriptions/restaurant/999/cancel").status_code == 404


def test_attach_payment_method(client, restaurant, plan):
    client.post("/api/v1/subscriptions/restaurant", json={"restaurant_id": restaurant.id, "plan_id": plan.id})

    response = client.post(
        f"/api/v1/subscriptions/restaurant/{restaurant.id}/payment-method",
        json={"number": "5555555555554444", "exp_month": 8, "exp_year": 2031, "cvc": "321"}
    )

    assert response.status_code == 200
    assert response.json()["payment_method_last4"] == "4444"
    assert response.json()["payment_method_brand"] == "mastercard"


def test_declined_card_returns_402(client, restaurant, plan):
    client.post("/api/v1/subscriptions/restaurant", json={"restaurant_id": restaurant.id, "plan_id": plan.id})

    response = client.post(
        f"/api/v1/subscriptions/restaurant/{restaurant.id}/payment-method",
        json={"number": "4000000000000002", "exp_month": 8, "exp_year": 2031, "cvc": "321"}
    )

    assert response.status_code == 402


def test_sweep_requires_admin_token(client):
    assert client.post("/api/v1/billing/sweep").status_code == 401
    assert client.post("/api/v1/billing/sweep", headers={"X-Admin-Token": "otro"}).status_code == 401


def test_sweep_returns_summary(client, store, make_subscription):
    sub = make_subscription()

    response = client.post("/api/v1/billing/sweep", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["renewals_processed"] == 1
    payments = client.get(f"/api/v1/subscriptions/restaurant/{sub.restaurant_id}").json()["payments"]
    assert [p["status"] for p in payments] == ["completed"]


def test_webhook_bad_signature(client):
    response = client.post(
        "/api/v1/webhooks/payments",
        content=b'{"type": "payment_intent.succeeded"}',
        headers={"X-Mock-Signature": "nope"}
    )

    assert response.status_code == 400


def test_webhook_conflict_returns_409(client, store, mock_gateway, make_subscription):
    sub = make_subscription()
    payment = store.open_pending_payment(
        sub.id, sub.plan.price, "USD", "mock", sub.next_billing_date.date(), PaymentKind.RENEWAL
    )
    store.acquire_lease(sub.id, utcnow(), 300)
    body = json.dumps({
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_1", "metadata": {"payment_id": str(payment.id)}}},
    }).encode()

    response = client.post(
        "/api/v1/webhooks/payments", content=body, headers={"X-Mock-Signature": mock_gateway.sign(body)}
    )

    assert response.status_code == 409


def test_webhook_reconciles(client, store, mock_gateway, make_subscription):
    sub = make_subscription()
    payment = store.open_pending_payment(
        sub.id, sub.plan.price, "USD", "mock", sub.next_billing_date.date(), PaymentKind.RENEWAL
    )
    body = json.dumps({
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_ok", "metadata": {"payment_id": str(payment.id)}}},
    }).encode()

    response = client.post(
        "/api/v1/webhooks/payments", content=body, headers={"X-Mock-Signature": mock_gateway.sign(body)}
    )

    assert response.status_code == 200
    assert response.json()["status"] == "reconciled"


def test_admin_lists_subscriptions(client, make_subscription, make_trial):
    active = make_subscription()
    make_trial()

    assert client.get("/api/v1/subscriptions").status_code == 401

    response = client.get("/api/v1/subscriptions", headers=ADMIN)
    assert response.status_code == 200
    assert len(response.json()) == 2

    response = client.get("/api/v1/subscriptions", params={"status": "ACTIVE"}, headers=ADMIN)
    assert [s["id"] for s in response.json()] == [active.id]
