from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.order_service.models import Order
from .models import SETTLEABLE_STATUSES, Payment, PaymentEvent


class PaymentRepository:

    @staticmethod
    async def get_by_order_id(db: AsyncSession, order_id: int) -> Optional[Payment]:
        result = await db.execute(select(Payment).where(Payment.order_id == order_id))
        return result.scalars().first()

    @staticmethod
    async def get_by_transaction_id(db: AsyncSession, transaction_id: str) -> Optional[Payment]:
        result = await db.execute(select(Payment).where(Payment.transaction_id == transaction_id))
        return result.scalars().first()

    @staticmethod
    async def attach_intent(db: AsyncSession, payment: Payment, method: str, reference: str) -> Payment:
        payment.payment_method = method
        payment.transaction_id = reference
        await db.commit()
        await db.refresh(payment)
        return payment

    @staticmethod
    async def transition(
        db: AsyncSession, payment_id: int, from_statuses, values: dict[str, Any]
    ) -> bool:
        """
        Conditional status change: applies only while the row is still in one
        of ``from_statuses``. Returns False when another settlement got there
        first. Does not commit.
        """
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(tuple(from_statuses)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    @staticmethod
    async def settle(db: AsyncSession, payment_id: int, values: dict[str, Any]) -> bool:
        return await PaymentRepository.transition(db, payment_id, SETTLEABLE_STATUSES, values)

    @staticmethod
    async def set_order_status(db: AsyncSession, order_id: int, from_statuses, status: str) -> bool:
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(tuple(from_statuses)))
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0


class PaymentEventRepository:

    @staticmethod
    async def exists(db: AsyncSession, processor: str, event_id: str) -> bool:
        result = await db.execute(
            select(PaymentEvent.id).where(PaymentEvent.processor == processor, PaymentEvent.event_id == event_id)
        )
        return result.first() is not None

    @staticmethod
    def add(db: AsyncSession, event: PaymentEvent) -> None:
        db.add(event)
