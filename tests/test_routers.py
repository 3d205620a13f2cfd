import uuid

import pytest
from fastapi.testclient import TestClient

from bookstore.app_main import create_app
from bookstore.services.auth import AuthService
from bookstore.services.container import get_container


@pytest.fixture
def client(container):
    app = create_app(use_lifespan=False)
    app.dependency_overrides[get_container] = lambda: container
    with TestClient(app) as client:
        yield client


def auth(user_id, role="customer"):
    return {"Authorization": f"Bearer {AuthService.create_token(user_id, role)}"}


def test_create_and_fetch_order(client, seed):
    response = client.post("/orders", json={"payment_method": "cod"}, headers=auth(seed.user_id))

    assert response.status_code == 201
    data = response.json()
    assert data["order_number"] == "ORD-20260310-001"
    assert data["status"] == "confirmed"

    detail = client.get(f"/orders/{data['order_id']}", headers=auth(seed.user_id))
    assert detail.status_code == 200
    assert detail.json()["order_number"] == data["order_number"]


def test_requires_token(client):
    assert client.get("/orders").status_code == 401


def test_errors_use_code_body(client, seed):
    response = client.get(f"/orders/{uuid.uuid4()}", headers=auth(seed.user_id))

    assert response.status_code == 404
    assert response.json()["code"] == "ORD001"


def test_empty_cart_is_rejected(client, seed):
    client.post("/orders", json={"payment_method": "cod"}, headers=auth(seed.user_id))
    response = client.post("/orders", json={"payment_method": "cod"}, headers=auth(seed.user_id))
    assert response.status_code == 422
    assert response.json()["code"] == "ORD012"


def test_admin_routes_require_admin(client, seed):
    assert client.get("/admin/orders", headers=auth(seed.user_id)).status_code == 403
    assert client.get("/admin/orders", headers=auth(seed.admin_id, "admin")).status_code == 200


def test_payment_and_webhook_flow(client, seed, gateways):
    order = client.post("/orders", json={"payment_method": "vnpay"}, headers=auth(seed.user_id)).json()
    payment = client.post(
        "/payments", json={"order_id": order["order_id"], "gateway": "vnpay"}, headers=auth(seed.user_id)
    )
    assert payment.status_code == 201
    payment_id = payment.json()["payment_transaction_id"]
    assert payment.json()["payment_url"]

    body = gateways["vnpay"].signed(transaction_ref=payment_id, gateway_txn_id="VNP42", code="00")
    ack = client.post("/webhooks/vnpay", json=body)
    assert ack.status_code == 200
    assert ack.json() == {"status": "success"}

    status = client.get(f"/payments/{payment_id}", headers=auth(seed.user_id))
    assert status.json()["status"] == "success"


def test_webhook_with_bad_signature(client, gateways):
    body = gateways["vnpay"].signed(transaction_ref=str(uuid.uuid4()), gateway_txn_id="VNP43", code="00")
    body["signature"] = "bad"

    response = client.post("/webhooks/vnpay", json=body)

    assert response.status_code == 400
    assert response.json() == {"status": "error"}


def test_malformed_webhook_returns_bad_request(client, gateways):
    body = gateways["vnpay"].signed(transaction_ref=str(uuid.uuid4()), gateway_txn_id="VNP44", code="00", amount="12x")

    response = client.post("/webhooks/vnpay", json=body)

    assert response.status_code == 400
    assert response.json()["code"] == "ORD017"


def test_webhook_for_unknown_gateway(client):
    assert client.post("/webhooks/paypal", json={}).status_code == 404
