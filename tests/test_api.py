import pytest
from fastapi.testclient import TestClient
from jose import jwt

from learnpay.main import app as fastapi_app
import learnpay.auth
import learnpay.main
import learnpay.routes


@pytest.fixture
def client(service):
    # Route every request through the test service and bypass auth
    fastapi_app.dependency_overrides[learnpay.routes.get_payment_service] = lambda: service
    fastapi_app.dependency_overrides[learnpay.auth.verify_token] = lambda: {"sub": "learner-1"}
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def unauthenticated_client(service):
    fastapi_app.dependency_overrides[learnpay.routes.get_payment_service] = lambda: service
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


ORDER = {
    "provider": "card",
    "currency": "usd",
    "items": [{"unit_amount": 2000, "quantity": 3, "id": "course-101", "name": "Intro to SQL"}],
    "tax_region": {"country": "US"},
}


def test_create_payment_success(client):
    response = client.post("/payments", json=ORDER)

    assert response.status_code == 200
    body = response.json()
    assert body["provider"] == "card"
    assert body["status"] == "requires_action"
    assert body["payment_id"].startswith("pay_")
    assert body["client_artifact"] == {"client_secret": f"secret_{body['payment_id']}"}
    assert body["totals"]["total"] == 6480
    assert body["totals"]["line_items"][0]["tax"] == 480


def test_create_payment_records_commission(client, service):
    payment_id = client.post("/payments", json=ORDER).json()["payment_id"]
    intent = service.get_payment(payment_id)
    assert intent.meta["commission"] == 162
    assert intent.user_id == "learner-1"


def test_create_payment_validation_error(client):
    response = client.post("/payments", json={**ORDER, "items": []})

    assert response.status_code == 400
    assert response.json() == {
        "detail": "At least one line item is required",
        "kind": "validation",
        "code": "LINE_ITEMS_REQUIRED",
    }


def test_unknown_coupon_is_rejected(client):
    response = client.post("/payments", json={**ORDER, "coupon_code": "NOPE"})
    assert response.status_code == 400
    assert response.json()["code"] == "COUPON_INVALID"


def test_get_missing_payment(client):
    response = client.get("/payments/pay_missing")
    assert response.status_code == 404
    assert response.json()["kind"] == "not_found"


def test_capture_and_refund_payment(client):
    payment_id = client.post("/payments", json=ORDER).json()["payment_id"]

    captured = client.post(f"/payments/{payment_id}/capture")
    assert captured.status_code == 200
    assert captured.json()["status"] == "succeeded"

    refunded = client.post(f"/payments/{payment_id}/refunds", json={"amount": 480, "reason": "requested_by_customer"})
    assert refunded.status_code == 200
    assert refunded.json()["status"] == "partially_refunded"
    assert refunded.json()["amount_available"] == 6000

    too_much = client.post(f"/payments/{payment_id}/refunds", json={"amount": 6001})
    assert too_much.status_code == 400
    assert too_much.json()["code"] == "REFUND_EXCEEDS_BALANCE"


def test_refund_unpaid_payment_conflicts(client):
    payment_id = client.post("/payments", json=ORDER).json()["payment_id"]
    response = client.post(f"/payments/{payment_id}/refunds", json={})
    assert response.status_code == 409


def test_open_circuit_maps_to_503(client, card_gateway):
    for _ in range(card_gateway.breaker.failure_threshold):
        card_gateway.breaker.record_failure()

    response = client.post("/payments", json=ORDER)
    assert response.status_code == 503
    assert response.json()["kind"] == "circuit_open"


def test_webhook_invalid_signature(client):
    response = client.post("/webhooks/card", content=b"{}", headers={"x-signature": "invalid_sig"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"


def test_webhook_for_unknown_provider(client):
    response = client.post("/webhooks/bitcoin", content=b"{}")
    assert response.status_code == 400
    assert response.json()["code"] == "PROVIDER_UNAVAILABLE"


def test_missing_token_is_rejected(unauthenticated_client):
    response = unauthenticated_client.post("/payments", json=ORDER, headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_valid_token_is_accepted(unauthenticated_client):
    token = jwt.encode({"sub": "learner-7"}, learnpay.auth.settings.jwt_secret, algorithm="HS256")
    response = unauthenticated_client.post("/payments", json=ORDER, headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200


def test_run_serves_app_with_uvicorn(mocker):
    serve = mocker.patch("learnpay.main.uvicorn.run")
    mocker.patch.object(learnpay.main.settings, "port", 9100)
    mocker.patch.object(learnpay.main.settings, "log_level", "WARNING")

    learnpay.main.run()

    serve.assert_called_once_with(
        "learnpay.main:app", host=learnpay.main.settings.host, port=9100, log_level="warning"
    )
