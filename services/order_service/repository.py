from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import IntegrityError
from services.payment_service.models import Payment
from .models import InventoryOutbox, Order, OrderItem


class OrderRepository:

    @staticmethod
    async def create_order_aggregate(
        db: AsyncSession, order: Order, items: list[OrderItem], payment: Payment
    ) -> Order:
        """
        Persist an order header, its lines and its payment placeholder in one
        transaction. Either every row is committed or none is.
        """
        try:
            db.add(order)
            await db.flush() # assign order.id
            for item in items:
                item.order_id = order.id
                db.add(item)
            payment.order_id = order.id
            db.add(payment)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise IntegrityError("Order could not be saved", details={"reason": str(e.__class__.__name__)}) from e
        await db.refresh(order)
        return order

    @staticmethod
    async def get_order(db: AsyncSession, order_id: int) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.id == order_id))
        return result.scalars().first()

    @staticmethod
    async def get_user_order(db: AsyncSession, order_id: int, user_id: int) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.id == order_id, Order.user_id == user_id))
        return result.scalars().first()

    @staticmethod
    async def list_user_orders(db: AsyncSession, user_id: int, limit: int, offset: int) -> tuple[list[Order], int]:
        total = await db.scalar(select(func.count(Order.id)).where(Order.user_id == user_id))
        result = await db.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    @staticmethod
    async def save(db: AsyncSession, order: Order) -> Order:
        await db.commit()
        await db.refresh(order)
        return order


class InventoryOutboxRepository:

    @staticmethod
    async def add_entries(db: AsyncSession, entries: list[InventoryOutbox]) -> None:
        db.add_all(entries)
        await db.commit()

    @staticmethod
    async def list_pending(db: AsyncSession, limit: int) -> list[InventoryOutbox]:
        result = await db.execute(
            select(InventoryOutbox)
            .where(InventoryOutbox.status == "pending")
            .order_by(InventoryOutbox.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_for_order(db: AsyncSession, order_id: int) -> list[InventoryOutbox]:
        result = await db.execute(select(InventoryOutbox).where(InventoryOutbox.order_id == order_id))
        return list(result.scalars().all())
