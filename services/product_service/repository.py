from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Product


class ProductRepository:

    @staticmethod
    async def create_product(db: AsyncSession, product: Product) -> Product:
        db.add(product)
        await db.commit()
        await db.refresh(product)
        return product

    @staticmethod
    async def list_products(db: AsyncSession, category: Optional[str] = None) -> list[Product]:
        stmt = select(Product).where(Product.is_active.is_(True)).order_by(Product.name)
        if category:
            stmt = stmt.where(Product.category == category)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def get_product_by_id(db: AsyncSession, product_id: str) -> Optional[Product]:
        result = await db.execute(select(Product).where(Product.id == product_id))
        return result.scalars().first()

    @staticmethod
    async def get_low_stock(db: AsyncSession, threshold: int) -> list[Product]:
        result = await db.execute(
            select(Product)
            .where(Product.inventory <= threshold, Product.is_active.is_(True))
            .order_by(Product.inventory)
        )
        return list(result.scalars().all())

    @staticmethod
    async def set_inventory(db: AsyncSession, product_id: str, inventory: int) -> Optional[Product]:
        product = await ProductRepository.get_product_by_id(db, product_id)
        if not product:
            return None
        product.inventory = inventory
        await db.commit()
        await db.refresh(product)
        return product

    @staticmethod
    async def decrement_inventory(db: AsyncSession, product_id: str, quantity: int) -> bool:
        """Atomically decrement stock if available. Returns True on success."""
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.inventory >= quantity)
            .values(inventory=Product.inventory - quantity)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        return (result.rowcount or 0) > 0
