from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import OutOfStock, ProductNotFound
from shared.money import to_money
from shared.observability import ecomm_inventory_decrement_failures_total
from .models import Product
from .repository import ProductRepository
from .schemas import ProductCreate

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckedLine:
    """One order line after the inventory check, carrying the snapshot price."""
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    available: int

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass(frozen=True)
class DecrementFailure:
    product_id: str
    quantity: int
    reason: str


class ProductService:

    @staticmethod
    async def create_product(db: AsyncSession, data: ProductCreate) -> Product:
        product = Product(
            name=data.name,
            description=data.description,
            price=to_money(data.price),
            category=data.category,
            brand=data.brand,
            images=list(data.images),
            attributes=dict(data.attributes),
            inventory=data.inventory,
        )
        return await ProductRepository.create_product(db, product)

    @staticmethod
    async def list_products(db: AsyncSession, query: Optional[str] = None, category: Optional[str] = None):
        products = await ProductRepository.list_products(db, category=category)
        if query:
            query_words = set(query.lower().split())
            products = [p for p in products if query_words & set(p.name.lower().split())]
        return products

    @staticmethod
    async def get_product_by_id(db: AsyncSession, product_id: str) -> Optional[Product]:
        return await ProductRepository.get_product_by_id(db, product_id)

    @staticmethod
    async def set_inventory(db: AsyncSession, product_id: str, inventory: int) -> Product:
        product = await ProductRepository.set_inventory(db, product_id, inventory)
        if not product:
            raise ProductNotFound(product_id)
        logger.info("inventory_set", product_id=product_id, inventory=inventory)
        return product

    @staticmethod
    async def low_stock(db: AsyncSession, threshold: int) -> list[Product]:
        return await ProductRepository.get_low_stock(db, threshold)


class InventoryService:
    """Reads and decrements stock in the catalog store."""

    @staticmethod
    def merge_lines(items: Iterable[tuple[str, int]]) -> list[tuple[str, int]]:
        merged: dict[str, int] = {}
        for product_id, quantity in items:
            merged[product_id] = merged.get(product_id, 0) + quantity
        return list(merged.items())

    @staticmethod
    async def check_availability(db: AsyncSession, items: Iterable[tuple[str, int]]) -> list[CheckedLine]:
        """
        Fetch every requested product and snapshot its price.

        Fails on the first product that is missing or short on stock. Nothing
        is reserved: the conditional decrement after the order commits is the
        authoritative check.
        """
        lines = []
        for product_id, quantity in InventoryService.merge_lines(items):
            product = await ProductRepository.get_product_by_id(db, product_id)
            if not product or not product.is_active:
                raise ProductNotFound(product_id)
            if product.inventory < quantity:
                raise OutOfStock(product_id, product.name, product.inventory, quantity)
            lines.append(
                CheckedLine(
                    product_id=product.id,
                    name=product.name,
                    quantity=quantity,
                    unit_price=to_money(product.price),
                    available=product.inventory,
                )
            )
        return lines

    @staticmethod
    async def decrement(db: AsyncSession, product_id: str, quantity: int) -> bool:
        return await ProductRepository.decrement_inventory(db, product_id, quantity)

    @staticmethod
    async def apply_decrements(db: AsyncSession, order_id: int, lines: Iterable[tuple[str, int]]) -> list[DecrementFailure]:
        """
        Decrement stock for each line of a committed order.

        Never raises for a single line: failures are logged and returned so
        the caller can queue them for reconciliation.
        """
        failures = []
        for product_id, quantity in lines:
            try:
                applied = await InventoryService.decrement(db, product_id, quantity)
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(
                    "inventory_decrement_error",
                    order_id=order_id, product_id=product_id, quantity=quantity, error=str(e),
                )
                ecomm_inventory_decrement_failures_total.labels(reason="store_error").inc()
                failures.append(DecrementFailure(product_id, quantity, f"store error: {e}"))
                continue

            if not applied:
                logger.warning(
                    "inventory_decrement_rejected",
                    order_id=order_id, product_id=product_id, quantity=quantity,
                )
                ecomm_inventory_decrement_failures_total.labels(reason="insufficient").inc()
                failures.append(DecrementFailure(product_id, quantity, "insufficient inventory"))
        return failures
