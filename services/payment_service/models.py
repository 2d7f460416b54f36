from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from shared.config.database import Base

PAYMENT_METHODS = ("stripe", "paypal")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunding", "refunded")

# Statuses a settlement may start from. "failed" stays settleable so a
# customer can retry; "completed" is final apart from a refund.
SETTLEABLE_STATUSES = ("pending", "failed")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    payment_method = Column(String(20), nullable=True) # null until the customer picks one
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    transaction_id = Column(String(255), nullable=True, index=True)
    payment_details = Column(JSON, nullable=True) # raw processor payload, kept for disputes
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="payment")


class PaymentEvent(Base):
    """Webhook deliveries already processed, keyed by the processor's event id."""
    __tablename__ = "payment_events"
    __table_args__ = (UniqueConstraint("processor", "event_id", name="uq_payment_events_processor_event"),)

    id = Column(Integer, primary_key=True, index=True)
    processor = Column(String(20), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    order_id = Column(Integer, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
