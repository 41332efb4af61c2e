"""
HTTP and WebSocket surface, run in-process against a SQLite store and the
poll feed.
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.config import Settings
from app.main import create_app

OWNER = {"X-User-Id": "owner-1"}
WAITER = {"X-User-Id": "w1", "X-Owner-Id": "owner-1", "X-User-Role": "waiter"}
KITCHEN = {"X-User-Id": "k1", "X-Owner-Id": "owner-1", "X-User-Role": "kitchen"}
OTHER = {"X-User-Id": "owner-2"}

DRAFT = {
    "table": "T4",
    "items": [
        {"menuId": "m1", "name": "Pho", "price": 9.5, "quantity": 2},
        {"menuId": "m2", "name": "Iced tea", "price": 2.0, "quantity": 1},
    ],
    "waiterId": "w1",
    "waiterName": "Alex",
    "totalAmount": 21.0,
}


@pytest.fixture
def client(tmp_path):
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        feed_backend="poll",
        order_poll_interval=0.05,
        notification_poll_interval=0.05,
    )
    with TestClient(create_app(settings)) as client:
        yield client


def place(client, headers=WAITER, **overrides):
    response = client.post("/commands/orders", json={**DRAFT, **overrides}, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


class TestCommands:

    def test_create_and_read_back(self, client):
        created = place(client)
        assert created["orderNumber"]

        response = client.get(f"/queries/orders/{created['id']}", headers=OWNER)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["restaurantId"] == "owner-1"
        assert body["orderNumber"] == created["orderNumber"]
        assert body["items"][0]["menuId"] == "m1"

    def test_staff_and_owner_share_a_restaurant(self, client):
        first = place(client, headers=WAITER)
        second = place(client, headers=OWNER)
        assert int(second["orderNumber"]) == int(first["orderNumber"]) + 1

    def test_missing_tenant(self, client):
        response = client.post("/commands/orders", json=DRAFT)
        assert response.status_code == 400
        assert response.json()["error"] == "TenantMissing"

    def test_total_mismatch_is_rejected(self, client):
        response = client.post("/commands/orders", json={**DRAFT, "totalAmount": 5.0}, headers=WAITER)
        assert response.status_code == 422

    def test_empty_order_is_rejected(self, client):
        response = client.post("/commands/orders", json={**DRAFT, "items": []}, headers=WAITER)
        assert response.status_code == 422

    def test_status_flow(self, client):
        order_id = place(client)["id"]

        response = client.post(
            f"/commands/orders/{order_id}/status", json={"status": "cooking"}, headers=KITCHEN
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cooking"

        response = client.post(
            f"/commands/orders/{order_id}/status", json={"status": "pending"}, headers=KITCHEN
        )
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransition"

    def test_unknown_status_value(self, client):
        order_id = place(client)["id"]
        response = client.post(
            f"/commands/orders/{order_id}/status", json={"status": "eaten"}, headers=KITCHEN
        )
        assert response.status_code == 422


class TestQueries:

    def test_unknown_order(self, client):
        response = client.get("/queries/orders/missing", headers=OWNER)
        assert response.status_code == 404
        assert response.json()["error"] == "OrderNotFound"

    def test_other_restaurant_gets_404(self, client):
        order_id = place(client)["id"]
        assert client.get(f"/queries/orders/{order_id}", headers=OTHER).status_code == 404

    def test_list_with_filters(self, client):
        first = place(client)["id"]
        second = place(client, waiterId="w2")["id"]
        client.post(f"/commands/orders/{first}/status", json={"status": "cooking"}, headers=KITCHEN)

        everything = client.get("/queries/orders", headers=OWNER).json()
        pending = client.get("/queries/orders", params={"status": "pending"}, headers=OWNER).json()
        mine = client.get("/queries/orders", params={"waiterId": "w1"}, headers=OWNER).json()
        latest = client.get("/queries/orders", params={"limit": 1}, headers=OWNER).json()

        assert {o["id"] for o in everything} == {first, second}
        assert [o["id"] for o in pending] == [second]
        assert [o["id"] for o in mine] == [first]
        assert len(latest) == 1
        assert client.get("/queries/orders", headers=OTHER).json() == []

    def test_list_needs_tenant(self, client):
        assert client.get("/queries/orders").status_code == 400


class TestLive:

    def test_health(self, client):
        assert client.get("/health").json() == {
            "status": "ok",
            "service": "order-service",
            "feed": "poll",
        }

    def test_order_snapshot_starts_with_current_state(self, client):
        order_id = place(client)["id"]
        with client.websocket_connect("/ws/orders?status=pending", headers=OWNER) as ws:
            snapshot = ws.receive_json()
        assert snapshot["initial"] is True
        assert [o["id"] for o in snapshot["orders"]] == [order_id]
        assert snapshot["changes"][0]["type"] == "added"

    def test_order_snapshot_follows_writes(self, client):
        with client.websocket_connect("/ws/orders", headers=OWNER) as ws:
            assert ws.receive_json()["orders"] == []
            order_id = place(client)["id"]
            snapshot = ws.receive_json()
        assert snapshot["initial"] is False
        assert [(c["type"], c["order"]["id"]) for c in snapshot["changes"]] == [("added", order_id)]

    def test_waiter_notifications_need_a_user(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/notifications/waiter", headers={"X-Owner-Id": "owner-1"}) as ws:
                ws.receive_json()

    def test_bad_role_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/notifications/cashier", headers=KITCHEN) as ws:
                ws.receive_json()

    def test_tenant_is_required(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/orders") as ws:
                ws.receive_json()

