from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from shared.config.database import Base

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled")

# Forward-only lifecycle; cancellation only before shipping
ORDER_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False) # Σ price × quantity at creation
    status = Column(String(20), nullable=False, default="pending")
    shipping_address = Column(JSON, nullable=False) # snapshot, not a reference
    tracking_number = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship(
        "OrderItem", back_populates="order", lazy="selectin", cascade="all, delete-orphan"
    )
    payment = relationship(
        "Payment", back_populates="order", lazy="selectin", uselist=False, cascade="all, delete-orphan"
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(64), nullable=False) # catalog reference, no FK across stores
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False) # unit price snapshot

    order = relationship("Order", back_populates="items")


class InventoryOutbox(Base):
    """Catalog decrements that did not apply after their order committed."""
    __tablename__ = "inventory_outbox"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True) # pending, applied, abandoned
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
