import math
import time
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.settings import INVENTORY_RECONCILE_MAX_ATTEMPTS
from shared.errors import InvalidTransition, OrderNotFound, StorefrontError, UnsupportedPaymentMethod, ValidationError
from shared.money import to_money
from shared.observability import (
    ecomm_checkout_duration_seconds,
    ecomm_checkout_total,
    ecomm_inventory_reconciled_total,
)
from services.payment_service.models import PAYMENT_METHODS, Payment
from services.product_service.repository import ProductRepository
from services.product_service.service import CheckedLine, InventoryService
from .models import ORDER_STATUSES, ORDER_TRANSITIONS, InventoryOutbox, Order, OrderItem
from .repository import InventoryOutboxRepository, OrderRepository
from .schemas import OrderCreate, OrderStatusUpdate

logger = structlog.get_logger(__name__)


class OrderService:

    @staticmethod
    async def create_order(db: AsyncSession, catalog_db: AsyncSession, user_id: int, data: OrderCreate) -> dict:
        """
        Checkout: inventory check -> atomic order write -> post-commit decrement.

        The three steps run strictly in sequence. Only the order write is
        transactional; decrement failures are queued in the inventory outbox
        and never undo the order.
        """
        started = time.perf_counter()
        try:
            if data.payment_method is not None and data.payment_method not in PAYMENT_METHODS:
                raise UnsupportedPaymentMethod(data.payment_method)

            lines = await InventoryService.check_availability(
                catalog_db, [(item.product_id, item.quantity) for item in data.items]
            )
            order, payment = await OrderService._write_order(db, user_id, lines, data)
        except StorefrontError:
            ecomm_checkout_total.labels(status="failed").inc()
            raise
        finally:
            ecomm_checkout_duration_seconds.observe(time.perf_counter() - started)

        logger.info("order_created", order_id=order.id, user_id=user_id, total_amount=str(order.total_amount))
        ecomm_checkout_total.labels(status="success").inc()

        pending = await OrderService._decrement_inventory(db, catalog_db, order.id, lines)
        return {
            "order": order,
            "payment": payment,
            "inventory_pending": pending,
        }

    @staticmethod
    async def _write_order(
        db: AsyncSession, user_id: int, lines: list[CheckedLine], data: OrderCreate
    ) -> tuple[Order, Payment]:
        total = to_money(sum((line.line_total for line in lines), to_money(0)))
        order = Order(
            user_id=user_id,
            total_amount=total,
            status="pending",
            shipping_address=data.shipping_address.model_dump(),
        )
        # Prices come from the catalog snapshot, never from the request
        items = [
            OrderItem(product_id=line.product_id, quantity=line.quantity, price=line.unit_price)
            for line in lines
        ]
        payment = Payment(
            payment_method=data.payment_method,
            amount=total,
            status="pending",
        )
        order = await OrderRepository.create_order_aggregate(db, order, items, payment)
        return order, payment

    @staticmethod
    async def _decrement_inventory(
        db: AsyncSession, catalog_db: AsyncSession, order_id: int, lines: list[CheckedLine]
    ) -> list[str]:
        failures = await InventoryService.apply_decrements(
            catalog_db, order_id, [(line.product_id, line.quantity) for line in lines]
        )
        if not failures:
            return []

        entries = [
            InventoryOutbox(
                order_id=order_id,
                product_id=f.product_id,
                quantity=f.quantity,
                status="pending",
                attempts=1,
                last_error=f.reason,
            )
            for f in failures
        ]
        try:
            await InventoryOutboxRepository.add_entries(db, entries)
        except SQLAlchemyError as e:
            await db.rollback()
            # Nothing left to fall back on; the log line is the reconciliation record
            logger.critical(
                "inventory_outbox_write_failed",
                order_id=order_id,
                lines=[{"product_id": f.product_id, "quantity": f.quantity} for f in failures],
                error=str(e),
            )
        return [f.product_id for f in failures]

    @staticmethod
    async def list_orders(db: AsyncSession, user_id: int, page: int, limit: int) -> dict:
        orders, total = await OrderRepository.list_user_orders(db, user_id, limit=limit, offset=(page - 1) * limit)
        return {
            "orders": orders,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        }

    @staticmethod
    async def get_order_for_user(db: AsyncSession, order_id: int, user_id: int) -> Order:
        order = await OrderRepository.get_user_order(db, order_id, user_id)
        if not order:
            raise OrderNotFound(order_id)
        return order

    @staticmethod
    async def get_order_detail(db: AsyncSession, catalog_db: AsyncSession, order_id: int, user_id: int) -> dict:
        order = await OrderService.get_order_for_user(db, order_id, user_id)

        items = []
        for item in order.items:
            product = await ProductRepository.get_product_by_id(catalog_db, item.product_id)
            items.append({
                "product_id": item.product_id,
                "quantity": item.quantity,
                "price": item.price,
                "product": {"name": product.name, "images": list(product.images or [])} if product else None,
            })

        payment = order.payment
        return {
            "id": order.id,
            "user_id": order.user_id,
            "total_amount": order.total_amount,
            "status": order.status,
            "shipping_address": order.shipping_address,
            "tracking_number": order.tracking_number,
            "created_at": order.created_at,
            "updated_at": order.updated_at,
            "items": items,
            "payment": {
                "status": payment.status,
                "payment_method": payment.payment_method,
                "transaction_id": payment.transaction_id,
                "amount": payment.amount,
                "payment_details": payment.payment_details,
            } if payment else None,
        }

    @staticmethod
    async def update_status(db: AsyncSession, order_id: int, data: OrderStatusUpdate) -> dict:
        order = await OrderRepository.get_order(db, order_id)
        if not order:
            raise OrderNotFound(order_id)

        if data.status not in ORDER_STATUSES:
            raise ValidationError("Invalid status value", details={"validStatuses": list(ORDER_STATUSES)})
        if data.status == order.status:
            raise ValidationError(
                "No changes detected",
                details={"message": f'Order is already in "{data.status}" status', "currentStatus": order.status},
            )
        if data.status not in ORDER_TRANSITIONS[order.status]:
            raise InvalidTransition("Order", order.status, data.status)

        old_status = order.status
        order.status = data.status
        if data.tracking_number is not None:
            order.tracking_number = data.tracking_number
        order = await OrderRepository.save(db, order)

        logger.info("order_status_changed", order_id=order.id, from_status=old_status, to_status=order.status)
        return {"changes": {"from": old_status, "to": order.status}, "order": order}

    @staticmethod
    async def reconcile_inventory(db: AsyncSession, catalog_db: AsyncSession, batch_size: int = 100) -> dict:
        """Re-attempt decrements recorded in the inventory outbox."""
        counts = {"applied": 0, "retried": 0, "abandoned": 0}
        entries = await InventoryOutboxRepository.list_pending(db, batch_size)

        for entry in entries:
            entry.attempts += 1
            try:
                applied = await InventoryService.decrement(catalog_db, entry.product_id, entry.quantity)
                error: Optional[str] = None if applied else "insufficient inventory"
            except SQLAlchemyError as e:
                await catalog_db.rollback()
                applied, error = False, f"store error: {e}"

            if applied:
                entry.status = "applied"
                entry.last_error = None
                counts["applied"] += 1
                logger.info("inventory_reconciled", order_id=entry.order_id, product_id=entry.product_id,
                            quantity=entry.quantity, attempts=entry.attempts)
            elif entry.attempts >= INVENTORY_RECONCILE_MAX_ATTEMPTS:
                entry.status = "abandoned"
                entry.last_error = error
                counts["abandoned"] += 1
                logger.critical(
                    "inventory_reconcile_abandoned",
                    order_id=entry.order_id, product_id=entry.product_id, quantity=entry.quantity,
                    attempts=entry.attempts, error=error,
                )
            else:
                entry.last_error = error
                counts["retried"] += 1

        await db.commit()
        for outcome, count in counts.items():
            if count:
                ecomm_inventory_reconciled_total.labels(outcome=outcome).inc(count)
        return counts
