from sqlalchemy import func, select

from conftest import ADMIN_HEADERS, auth_headers
from fakes import VALID_SIGNATURE, webhook_body
from services.order_service.models import Order
from services.payment_service.models import Payment, PaymentEvent

SIGNED = {"x-fake-signature": VALID_SIGNATURE, "content-type": "application/json"}


async def _state(order_sessions, order_id):
    async with order_sessions() as session:
        payment = (await session.execute(select(Payment).where(Payment.order_id == order_id))).scalars().one()
        order_status = await session.scalar(select(Order.status).where(Order.id == order_id))
        events = await session.scalar(select(func.count(PaymentEvent.id)))
    return payment, order_status, events


class TestWebhookVerification:

    async def test_bad_signature_changes_nothing(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]

        resp = await client.post(
            "/payments/webhook",
            content=webhook_body("evt_1", order_id),
            headers={"x-fake-signature": "forged"},
        )

        assert resp.status_code == 400
        assert "signature" in resp.json()["error"]
        payment, order_status, events = await _state(order_sessions, order_id)
        assert payment.status == "pending"
        assert order_status == "pending"
        assert events == 0

    async def test_paypal_route_uses_paypal_processor(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]

        resp = await client.post(
            "/payments/webhook/paypal", content=webhook_body("WH-1", order_id, transaction_id="SALE-1"), headers=SIGNED
        )

        assert resp.status_code == 200
        payment, order_status, _ = await _state(order_sessions, order_id)
        assert payment.status == "completed"
        assert payment.payment_method == "paypal"
        assert payment.transaction_id == "SALE-1"
        assert order_status == "confirmed"


class TestWebhookSettlement:

    async def test_success_event_settles(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]

        resp = await client.post("/payments/webhook", content=webhook_body("evt_1", order_id), headers=SIGNED)

        assert resp.status_code == 200
        assert resp.json() == {"received": True}
        payment, order_status, events = await _state(order_sessions, order_id)
        assert payment.status == "completed"
        assert payment.transaction_id == "txn_hook"
        assert order_status == "confirmed"
        assert events == 1

    async def test_duplicate_event_is_acknowledged_once(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]
        body = webhook_body("evt_1", order_id, outcome="failed")

        first = await client.post("/payments/webhook", content=body, headers=SIGNED)
        await client.post(
            "/payments/confirm",
            json={"orderId": order_id, "paymentMethod": "stripe", "paymentData": {"reference": "pi_9"}},
            headers=auth_headers(),
        )
        second = await client.post("/payments/webhook", content=body, headers=SIGNED)

        assert first.status_code == second.status_code == 200
        payment, _, events = await _state(order_sessions, order_id)
        # the replayed failure must not undo the later success
        assert payment.status == "completed"
        assert events == 1

    async def test_failure_never_reverses_completed_payment(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]
        await client.post("/payments/webhook", content=webhook_body("evt_ok", order_id), headers=SIGNED)

        resp = await client.post(
            "/payments/webhook", content=webhook_body("evt_fail", order_id, outcome="failed"), headers=SIGNED
        )

        assert resp.status_code == 200
        payment, order_status, events = await _state(order_sessions, order_id)
        assert payment.status == "completed"
        assert order_status == "confirmed"
        assert events == 2

    async def test_failure_event_marks_payment_failed(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]

        await client.post(
            "/payments/webhook", content=webhook_body("evt_1", order_id, outcome="failed"), headers=SIGNED
        )

        payment, order_status, _ = await _state(order_sessions, order_id)
        assert payment.status == "failed"
        assert order_status == "pending"

    async def test_match_by_transaction_id(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]
        intent = await client.post(
            "/payments/intent", json={"orderId": order_id, "paymentMethod": "stripe"}, headers=auth_headers()
        )
        reference = intent.json()["reference"]

        await client.post(
            "/payments/webhook", content=webhook_body("evt_1", None, transaction_id=reference), headers=SIGNED
        )

        payment, order_status, _ = await _state(order_sessions, order_id)
        assert payment.status == "completed"
        assert order_status == "confirmed"

    async def test_unhandled_type_is_acknowledged(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]
        body = webhook_body("evt_1", order_id, outcome=None, event_type="charge.dispute.created")

        resp = await client.post("/payments/webhook", content=body, headers=SIGNED)

        assert resp.status_code == 200
        payment, _, events = await _state(order_sessions, order_id)
        assert payment.status == "pending"
        assert events == 1

    async def test_unknown_order_is_acknowledged(self, client, order_sessions):
        resp = await client.post(
            "/payments/webhook", content=webhook_body("evt_1", 4242, transaction_id="txn_none"), headers=SIGNED
        )
        assert resp.status_code == 200

    async def test_success_for_cancelled_order_does_not_settle(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]
        await client.patch(f"/orders/{order_id}/status", json={"status": "cancelled"}, headers=ADMIN_HEADERS)

        resp = await client.post("/payments/webhook", content=webhook_body("evt_1", order_id), headers=SIGNED)

        assert resp.status_code == 200
        payment, order_status, events = await _state(order_sessions, order_id)
        assert payment.status == "pending"
        assert payment.transaction_id is None
        assert order_status == "cancelled"
        assert events == 1


class TestConfirmWebhookRace:

    async def test_confirm_after_webhook_is_a_no_op(self, client, place_order, processors, order_sessions):
        order_id = (await place_order())["order"]["id"]
        await client.post("/payments/webhook", content=webhook_body("evt_1", order_id), headers=SIGNED)

        resp = await client.post(
            "/payments/confirm",
            json={"orderId": order_id, "paymentMethod": "stripe", "paymentData": {"reference": "pi_late"}},
            headers=auth_headers(),
        )

        assert resp.status_code == 200
        assert resp.json()["message"] == "Payment already completed"
        assert processors["stripe"].confirm_calls == []
        payment, _, _ = await _state(order_sessions, order_id)
        assert payment.transaction_id == "txn_hook"

    async def test_webhook_after_confirm_is_a_no_op(self, client, place_order, order_sessions):
        order_id = (await place_order())["order"]["id"]
        await client.post(
            "/payments/confirm",
            json={"orderId": order_id, "paymentMethod": "stripe", "paymentData": {"reference": "pi_1"}},
            headers=auth_headers(),
        )

        resp = await client.post(
            "/payments/webhook", content=webhook_body("evt_1", order_id, transaction_id="pi_1"), headers=SIGNED
        )

        assert resp.status_code == 200
        payment, order_status, _ = await _state(order_sessions, order_id)
        assert payment.status == "completed"
        assert payment.transaction_id == "pi_1"
        assert order_status == "confirmed"
