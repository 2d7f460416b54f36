from sqlalchemy import select

from conftest import ADMIN_HEADERS, auth_headers
from services.order_service.models import InventoryOutbox
from services.product_service.repository import ProductRepository


class TestOrderQueries:

    async def test_lists_only_own_orders_newest_first(self, client, place_order):
        first = await place_order(user_id=1)
        second = await place_order(user_id=1)
        await place_order(user_id=2)

        resp = await client.get("/orders", headers=auth_headers(1))

        assert resp.status_code == 200
        body = resp.json()
        assert [o["id"] for o in body["orders"]] == [second["order"]["id"], first["order"]["id"]]
        assert body["pagination"] == {"page": 1, "limit": 20, "total": 2, "totalPages": 1}
        assert body["orders"][0]["payment"]["status"] == "pending"
        assert len(body["orders"][0]["items"]) == 1

    async def test_pagination(self, client, place_order):
        for _ in range(3):
            await place_order()

        resp = await client.get("/orders", params={"page": 2, "limit": 2}, headers=auth_headers())

        body = resp.json()
        assert len(body["orders"]) == 1
        assert body["pagination"]["total"] == 3
        assert body["pagination"]["totalPages"] == 2

    async def test_empty_list(self, client):
        resp = await client.get("/orders", headers=auth_headers(7))
        assert resp.json()["orders"] == []
        assert resp.json()["pagination"]["totalPages"] == 0

    async def test_detail_includes_product_snapshot(self, client, place_order, add_product):
        pid = await add_product("Lamp", price="40.00", images=["lamp.jpg"])
        created = await place_order(items=[{"productId": pid, "quantity": 2}])

        resp = await client.get(f"/orders/{created['order']['id']}", headers=auth_headers())

        assert resp.status_code == 200
        order = resp.json()["order"]
        assert order["totalAmount"] == "80.00"
        assert order["shippingAddress"]["city"] == "London"
        assert order["items"] == [{
            "productId": pid,
            "quantity": 2,
            "price": "40.00",
            "product": {"name": "Lamp", "images": ["lamp.jpg"]},
        }]
        assert order["payment"]["status"] == "pending"
        assert order["payment"]["amount"] == "80.00"

    async def test_detail_survives_deleted_product(self, client, place_order, add_product, catalog_sessions):
        pid = await add_product()
        created = await place_order(items=[{"productId": pid, "quantity": 1}])
        async with catalog_sessions() as session:
            await session.delete(await ProductRepository.get_product_by_id(session, pid))
            await session.commit()

        resp = await client.get(f"/orders/{created['order']['id']}", headers=auth_headers())

        assert resp.status_code == 200
        assert resp.json()["order"]["items"][0]["product"] is None

    async def test_other_users_order_is_not_found(self, client, place_order):
        created = await place_order(user_id=1)
        resp = await client.get(f"/orders/{created['order']['id']}", headers=auth_headers(2))
        assert resp.status_code == 404
        assert resp.json()["error"] == "Order not found"


class TestOrderStatus:

    async def test_requires_internal_key(self, client, place_order):
        created = await place_order()
        resp = await client.patch(
            f"/orders/{created['order']['id']}/status", json={"status": "confirmed"}, headers=auth_headers()
        )
        assert resp.status_code == 403

    async def test_forward_transitions(self, client, place_order):
        order_id = (await place_order())["order"]["id"]

        resp = await client.patch(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["changes"] == {"from": "pending", "to": "confirmed"}

        resp = await client.patch(
            f"/orders/{order_id}/status",
            json={"status": "shipped", "trackingNumber": "TRK-1"},
            headers=ADMIN_HEADERS,
        )
        assert resp.status_code == 200
        assert resp.json()["order"]["status"] == "shipped"
        assert resp.json()["order"]["trackingNumber"] == "TRK-1"

    async def test_same_status_is_rejected(self, client, place_order):
        order_id = (await place_order())["order"]["id"]
        resp = await client.patch(f"/orders/{order_id}/status", json={"status": "pending"}, headers=ADMIN_HEADERS)
        assert resp.status_code == 400
        assert resp.json()["error"] == "No changes detected"

    async def test_unknown_status_is_rejected(self, client, place_order):
        order_id = (await place_order())["order"]["id"]
        resp = await client.patch(f"/orders/{order_id}/status", json={"status": "lost"}, headers=ADMIN_HEADERS)
        assert resp.status_code == 400
        assert "pending" in resp.json()["details"]["validStatuses"]

    async def test_cannot_skip_to_delivered(self, client, place_order):
        order_id = (await place_order())["order"]["id"]
        resp = await client.patch(f"/orders/{order_id}/status", json={"status": "delivered"}, headers=ADMIN_HEADERS)
        assert resp.status_code == 409
        assert resp.json()["details"] == {"from": "pending", "to": "delivered"}

    async def test_missing_order(self, client):
        resp = await client.patch("/orders/999/status", json={"status": "confirmed"}, headers=ADMIN_HEADERS)
        assert resp.status_code == 404


class TestInventoryReconcile:

    async def _queue(self, client, add_product, monkeypatch, inventory=5, quantity=2):
        pid = await add_product(inventory=inventory)

        async def lost_race(db, product_id, qty):
            return False
        monkeypatch.setattr(ProductRepository, "decrement_inventory", lost_race)
        resp = await client.post(
            "/orders",
            json={"items": [{"productId": pid, "quantity": quantity}], "shippingAddress": {
                "fullName": "Ada", "street": "1 Road", "city": "London", "postalCode": "N1", "country": "GB",
            }},
            headers=auth_headers(),
        )
        assert resp.json()["inventoryPending"] == [pid]
        monkeypatch.undo()
        return pid

    async def test_applies_pending_decrement(self, client, add_product, inventory_of, order_sessions, monkeypatch):
        pid = await self._queue(client, add_product, monkeypatch)

        resp = await client.post("/orders/inventory/reconcile", headers=ADMIN_HEADERS)

        assert resp.status_code == 200
        assert resp.json() == {"applied": 1, "retried": 0, "abandoned": 0}
        assert await inventory_of(pid) == 3
        async with order_sessions() as session:
            entry = (await session.execute(select(InventoryOutbox))).scalars().one()
        assert entry.status == "applied"
        assert entry.attempts == 2
        assert entry.last_error is None

        again = await client.post("/orders/inventory/reconcile", headers=ADMIN_HEADERS)
        assert again.json() == {"applied": 0, "retried": 0, "abandoned": 0}
        assert await inventory_of(pid) == 3

    async def test_abandons_after_max_attempts(
        self, client, add_product, catalog_sessions, order_sessions, monkeypatch
    ):
        pid = await self._queue(client, add_product, monkeypatch)
        async with catalog_sessions() as session:
            await ProductRepository.set_inventory(session, pid, 0)

        results = [
            (await client.post("/orders/inventory/reconcile", headers=ADMIN_HEADERS)).json()
            for _ in range(4)
        ]

        # attempt 1 happened at checkout; the limit is 5
        assert results[0] == {"applied": 0, "retried": 1, "abandoned": 0}
        assert results[3] == {"applied": 0, "retried": 0, "abandoned": 1}
        async with order_sessions() as session:
            entry = (await session.execute(select(InventoryOutbox))).scalars().one()
        assert entry.status == "abandoned"
        assert entry.attempts == 5
        assert entry.last_error == "insufficient inventory"

    async def test_requires_internal_key(self, client):
        resp = await client.post("/orders/inventory/reconcile")
        assert resp.status_code == 403
