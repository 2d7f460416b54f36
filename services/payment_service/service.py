from typing import Mapping, Optional

import structlog
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import (
    InvalidTransition,
    OrderNotFound,
    OrderNotPayable,
    PaymentInitiationFailed,
    PaymentNotFound,
    ProcessorError,
    UnsupportedPaymentMethod,
    WebhookSignatureError,
)
from shared.observability import ecomm_payment_transitions_total, ecomm_webhook_events_total
from services.order_service.models import Order
from services.order_service.repository import OrderRepository
from .models import Payment, PaymentEvent
from .processors import ConfirmationResult, PaymentProcessor
from .repository import PaymentEventRepository, PaymentRepository

logger = structlog.get_logger(__name__)

# Settlement never touches these; "refunding" is held while a refund is in flight
FINAL_STATUSES = ("completed", "refunding", "refunded")


def _resolve_processor(processors: Mapping[str, PaymentProcessor], method: Optional[str]) -> PaymentProcessor:
    processor = processors.get(method) if method else None
    if processor is None:
        raise UnsupportedPaymentMethod(method)
    return processor


class PaymentService:

    @staticmethod
    def list_methods(processors: Mapping[str, PaymentProcessor]) -> list[dict]:
        return [p.describe() for p in processors.values()]

    @staticmethod
    async def _owned_order_and_payment(db: AsyncSession, order_id: int, user_id: int) -> tuple[Order, Payment]:
        order = await OrderRepository.get_user_order(db, order_id, user_id)
        if not order:
            raise OrderNotFound(order_id)
        payment = await PaymentRepository.get_by_order_id(db, order_id)
        if not payment:
            raise PaymentNotFound(order_id)
        return order, payment

    @staticmethod
    async def create_intent(
        db: AsyncSession, processors: Mapping[str, PaymentProcessor], user_id: int, order_id: int, method: str
    ) -> dict:
        processor = _resolve_processor(processors, method)
        order, payment = await PaymentService._owned_order_and_payment(db, order_id, user_id)

        if order.status != "pending":
            raise OrderNotPayable(order.id, order.status)
        if payment.status in FINAL_STATUSES:
            raise InvalidTransition("Payment", payment.status, "pending")

        try:
            intent = await processor.create_intent(order)
        except ProcessorError as e:
            logger.warning("payment_intent_failed", order_id=order.id, processor=processor.name, error=e.message)
            raise PaymentInitiationFailed(e.message, details=e.details) from e

        await PaymentRepository.attach_intent(db, payment, processor.name, intent.reference)
        logger.info("payment_intent_created", order_id=order.id, processor=processor.name, reference=intent.reference)
        return {"paymentMethod": processor.name, **intent.payload}

    @staticmethod
    async def _apply_outcome(
        db: AsyncSession,
        payment: Payment,
        processor: str,
        succeeded: bool,
        transaction_id: Optional[str],
        details,
    ) -> bool:
        """
        The one place payment outcomes become state.

        completed: order pending -> confirmed, then payment -> completed.
        failed:    payment -> failed, order untouched so the customer can retry.
        Returns False (and changes nothing) if the payment was already settled
        by an earlier confirmation or webhook, or if the order is no longer
        pending. Caller commits.
        """
        if payment.status in FINAL_STATUSES:
            if transaction_id and payment.transaction_id and transaction_id != payment.transaction_id:
                logger.warning(
                    "settlement_for_settled_payment",
                    order_id=payment.order_id, existing=payment.transaction_id, incoming=transaction_id,
                )
            return False

        if succeeded:
            # A payment only completes against an order that is still pending
            confirmed = await PaymentRepository.set_order_status(db, payment.order_id, ("pending",), "confirmed")
            if not confirmed:
                ecomm_payment_transitions_total.labels(processor=processor, status="conflict").inc()
                logger.critical(
                    "settlement_conflict",
                    order_id=payment.order_id, processor=processor, transaction_id=transaction_id,
                    payment_status=payment.status, reason="order is not pending; captured funds need a manual refund",
                )
                return False

            values = {"status": "completed", "payment_method": processor, "payment_details": details}
            if transaction_id:
                values["transaction_id"] = transaction_id
            applied = await PaymentRepository.settle(db, payment.id, values)
            if not applied:
                await PaymentRepository.set_order_status(db, payment.order_id, ("confirmed",), "pending")
        else:
            applied = await PaymentRepository.settle(db, payment.id, {"status": "failed", "payment_details": details})

        if applied:
            status = "completed" if succeeded else "failed"
            ecomm_payment_transitions_total.labels(processor=processor, status=status).inc()
            logger.info("payment_settled", order_id=payment.order_id, processor=processor, status=status,
                        transaction_id=transaction_id)
        return applied

    @staticmethod
    async def confirm(
        db: AsyncSession,
        processors: Mapping[str, PaymentProcessor],
        user_id: int,
        order_id: int,
        method: str,
        payment_data: dict,
    ) -> dict:
        processor = _resolve_processor(processors, method)
        order, payment = await PaymentService._owned_order_and_payment(db, order_id, user_id)

        if payment.status in FINAL_STATUSES:
            logger.info("payment_confirm_noop", order_id=order.id, status=payment.status)
            return {
                "success": True,
                "message": "Payment already completed",
                "order": {"id": order.id, "status": order.status},
                "payment_status": payment.status,
            }
        if order.status != "pending":
            raise OrderNotPayable(order.id, order.status)

        result: ConfirmationResult = await processor.confirm(order, payment_data)
        details = result.details if result.success else {**result.details, "error": result.error}
        await PaymentService._apply_outcome(db, payment, processor.name, result.success, result.transaction_id, details)
        await db.commit()
        await db.refresh(order)
        await db.refresh(payment)

        if payment.status == "completed":
            return {
                "success": True,
                "message": "Payment completed successfully",
                "order": {"id": order.id, "status": order.status},
                "payment_status": payment.status,
            }
        if result.success:
            # The order left pending while the processor was being asked
            raise OrderNotPayable(order.id, order.status)
        return {
            "success": False,
            "error": "Payment failed",
            "details": result.error,
            "order": {"id": order.id, "status": order.status},
            "payment_status": payment.status,
        }

    @staticmethod
    async def handle_webhook(db: AsyncSession, processor: PaymentProcessor, body: bytes, headers) -> None:
        """
        Verify, de-duplicate and apply a processor webhook.

        Signature verification happens before anything is read from or
        written to the database.
        """
        try:
            event = await processor.parse_webhook(body, headers)
        except WebhookSignatureError as e:
            ecomm_webhook_events_total.labels(processor=processor.name, outcome="rejected").inc()
            logger.warning("webhook_rejected", processor=processor.name, error=e.message)
            raise

        event_id = event.event_id or f"{event.event_type}:{event.transaction_id}"
        if await PaymentEventRepository.exists(db, processor.name, event_id):
            ecomm_webhook_events_total.labels(processor=processor.name, outcome="duplicate").inc()
            logger.info("webhook_duplicate", processor=processor.name, event_id=event_id)
            return

        PaymentEventRepository.add(db, PaymentEvent(
            processor=processor.name,
            event_id=event_id,
            event_type=event.event_type,
            order_id=event.order_id,
        ))

        outcome = "ignored"
        if event.outcome is None:
            logger.info("webhook_unhandled_type", processor=processor.name, event_type=event.event_type)
        else:
            payment = None
            if event.order_id is not None:
                payment = await PaymentRepository.get_by_order_id(db, event.order_id)
            if payment is None and event.transaction_id:
                payment = await PaymentRepository.get_by_transaction_id(db, event.transaction_id)

            if payment is None:
                logger.warning("webhook_unknown_payment", processor=processor.name, event_id=event_id,
                               order_id=event.order_id, transaction_id=event.transaction_id)
            else:
                await PaymentService._apply_outcome(
                    db, payment, processor.name, event.outcome == "succeeded", event.transaction_id, event.details
                )
                outcome = "processed"

        try:
            await db.commit()
        except DBIntegrityError:
            # Same event delivered concurrently; the other delivery wins
            await db.rollback()
            outcome = "duplicate"
        ecomm_webhook_events_total.labels(processor=processor.name, outcome=outcome).inc()

    @staticmethod
    async def refund(db: AsyncSession, processors: Mapping[str, PaymentProcessor], order_id: int) -> dict:
        order = await OrderRepository.get_order(db, order_id)
        if not order:
            raise OrderNotFound(order_id)
        payment = await PaymentRepository.get_by_order_id(db, order_id)
        if not payment:
            raise PaymentNotFound(order_id)
        if payment.status != "completed":
            raise InvalidTransition("Payment", payment.status, "refunded")

        processor = _resolve_processor(processors, payment.payment_method)

        # Claim the payment before any money moves; a concurrent refund loses here
        claimed = await PaymentRepository.transition(db, payment.id, ("completed",), {"status": "refunding"})
        await db.commit()
        if not claimed:
            await db.refresh(payment)
            raise InvalidTransition("Payment", payment.status, "refunded")

        try:
            refund = await processor.refund(payment)
        except ProcessorError as e:
            await PaymentRepository.transition(db, payment.id, ("refunding",), {"status": "completed"})
            await db.commit()
            logger.warning("payment_refund_failed", order_id=order.id, processor=processor.name, error=e.message)
            raise

        details = {**(payment.payment_details or {}), "refund": refund}
        await PaymentRepository.transition(
            db, payment.id, ("refunding",), {"status": "refunded", "payment_details": details}
        )
        await PaymentRepository.set_order_status(db, order.id, ("pending", "confirmed"), "cancelled")
        ecomm_payment_transitions_total.labels(processor=processor.name, status="refunded").inc()
        await db.commit()
        await db.refresh(order)
        await db.refresh(payment)
        logger.info("payment_refunded", order_id=order.id, processor=processor.name, order_status=order.status)
        return {"success": True, "order": {"id": order.id, "status": order.status}, "payment_status": payment.status}
