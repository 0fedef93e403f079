import pytest
from fastapi.testclient import TestClient

from cartsync.artifacts import MemoryArtifactStore
from cartsync.document_store import MemoryDocumentStore
from cartsync.exceptions import PaymentGatewayError
from cartsync.main import create_app

from conftest import FakePaymentClient, seed_catalog

USER = {"X-User-ID": "user-1", "X-User-Email": "shopper@example.com"}

ADDRESS = {"street": "1 Rizal Ave", "city": "Manila", "province": "Metro Manila"}


@pytest.fixture
def payment_client():
    return FakePaymentClient()


@pytest.fixture
def client(payment_client):
    store = MemoryDocumentStore()
    app = create_app(
        document_store=store,
        payment_client=payment_client,
        artifacts=MemoryArtifactStore(),
    )
    with TestClient(app) as client:
        client.portal.call(seed_catalog, store)
        yield client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["document_store"]["status"] == "healthy"


def test_cart_requires_identity(client):
    response = client.get("/cart")

    assert response.status_code == 401
    assert response.json()["message"] == "Please log in to continue."


def test_add_without_identity_warns(client):
    response = client.post("/cart/items", json={"item_id": "A"})

    assert response.status_code == 401
    notifications = client.get("/notifications").json()
    assert notifications[0]["type"] == "warning"


def test_add_and_update_cart(client):
    client.post("/cart/items", json={"item_id": "A"}, headers=USER)
    response = client.post("/cart/items", json={"item_id": "A"}, headers=USER)

    assert response.status_code == 200
    cart = response.json()
    assert cart["items"][0]["itemId"] == "A"
    assert cart["items"][0]["quantity"] == 2
    assert cart["total_items"] == 2

    response = client.post(
        "/cart/items",
        json={"item_id": "B", "selected_variations": {"Color": "red"}},
        headers=USER,
    )
    assert response.json()["total_price"] in ("240", "240.0")

    response = client.put("/cart/items/A", json={"quantity": 0}, headers=USER)
    assert [item["itemId"] for item in response.json()["items"]] == ["B"]

    response = client.delete("/cart", headers=USER)
    assert response.json()["items"] == []


def test_add_missing_item(client):
    response = client.post("/cart/items", json={"item_id": "ghost"}, headers=USER)

    assert response.status_code == 404
    assert response.json()["message"] == "This product is no longer available."


def test_checkout_empty_cart(client):
    response = client.post("/checkout/start", headers=USER)

    assert response.status_code == 400
    assert response.json()["message"] == "Your cart is empty."


def test_checkout_flow(client, payment_client):
    client.post("/cart/items", json={"item_id": "A"}, headers=USER)

    response = client.post("/checkout/start", headers=USER)
    assert response.status_code == 200
    handle = response.json()
    assert handle["checkout_url"] == payment_client.url

    order = client.get(f"/orders/{handle['order_id']}", headers=USER).json()
    assert order["status"] == "pending"
    assert order["userId"] == "user-1"

    state = client.get("/checkout/state", headers=USER).json()
    assert state == {"state": "awaiting_payment", "has_pending_order": True}

    response = client.post("/checkout/confirm", headers=USER)
    assert response.json() == {"order_id": handle["order_id"], "state": "confirmed"}

    assert client.get("/cart", headers=USER).json()["items"] == []
    order = client.get(f"/orders/{handle['order_id']}", headers=USER).json()
    assert order["status"] == "processing"


def test_cancel_then_discard(client):
    client.post("/cart/items", json={"item_id": "A"}, headers=USER)
    handle = client.post("/checkout/start", headers=USER).json()

    cancelled = client.post("/checkout/cancel", headers=USER).json()
    assert cancelled["state"] == "abandoned"
    assert cancelled["pending_order"]["orderId"] == handle["order_id"]

    assert client.delete("/checkout/pending", headers=USER).json() == {"discarded": True}
    order = client.get(f"/orders/{handle['order_id']}", headers=USER).json()
    assert order["status"] == "cancelled"


def test_gateway_rejection(client, payment_client):
    payment_client.error = PaymentGatewayError("Card declined", status_code=400)
    client.post("/cart/items", json={"item_id": "A"}, headers=USER)

    response = client.post("/checkout/start", headers=USER)

    assert response.status_code == 502
    assert response.json()["message"] == "Card declined"
    assert client.get("/checkout/state", headers=USER).json()["state"] == "idle"


def test_payment_endpoint(client, payment_client):
    body = {"amount": "100", "items": [{"id": "A", "name": "Keyboard", "price": "100", "quantity": 1}]}

    response = client.post("/api/payment", json=body)
    assert response.json() == {"checkoutUrl": payment_client.url}

    payment_client.error = PaymentGatewayError("Failed to create checkout session")
    response = client.post("/api/payment", json=body)
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to create checkout session"}


def test_shipping_quote_and_tracking(client):
    response = client.post(
        "/shipping/quote",
        json={"origin": ADDRESS, "destination": {"city": "Cebu City"}, "weight": 5},
    )
    rates = response.json()
    assert len(rates) == 5
    assert rates[0]["courier"] == "jt_express"
    assert rates[0]["total"] == 175

    response = client.post(
        "/shipments",
        json={"origin": ADDRESS, "destination": {"city": "Cebu City"}, "weight": 5, "courier": "lbc"},
    )
    assert response.status_code == 201
    tracking_number = response.json()["tracking_number"]

    tracked = client.get(f"/shipments/{tracking_number}").json()
    assert tracked["status"] == "pending"

    response = client.get("/shipments/LB0000000000")
    assert response.status_code == 404
    assert response.json()["message"] == "Shipment not found"


def test_confirm_without_checkout_keeps_cart(client):
    client.post("/cart/items", json={"item_id": "A"}, headers=USER)

    response = client.post("/checkout/confirm", headers=USER)

    assert response.status_code == 400
    assert response.json()["message"] == "There is no checkout in progress."
    assert len(client.get("/cart", headers=USER).json()["items"]) == 1
    assert client.get("/checkout/state", headers=USER).json()["state"] == "idle"


def test_catalog_items(client):
    response = client.post("/items", json={"itemName": "Mouse", "price": "25", "category": "Peripherals"})
    assert response.status_code == 201
    item_id = response.json()["id"]

    items = client.get("/items", params={"category": "Peripherals"}).json()
    assert sorted(item["itemName"] for item in items) == ["Keyboard", "Mouse"]

    found = client.get("/items/search", params={"q": "mou"}).json()
    assert [item["id"] for item in found] == [item_id]

    response = client.patch(f"/items/{item_id}", json={"stock": 3})
    assert response.json()["stock"] == 3
    assert client.get(f"/items/{item_id}").json()["stock"] == 3

    response = client.delete(f"/items/{item_id}")
    assert response.json() == {"success": True, "message": "Item deleted"}
    assert client.get(f"/items/{item_id}").status_code == 404


def test_categories(client):
    response = client.put("/categories/Mobile", json={"groups": {"Phones": ["Android", "iOS"]}})
    assert response.status_code == 200

    categories = client.get("/categories").json()
    assert categories[0]["name"] == "Mobile"
    assert categories[0]["groups"] == {"Phones": ["Android", "iOS"]}

    assert client.delete("/categories/Mobile").json() == {"success": True, "message": "Category deleted"}
    assert client.delete("/categories/Mobile").status_code == 404
