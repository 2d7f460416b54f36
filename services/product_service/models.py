import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text
from sqlalchemy.sql import func

from shared.config.database import CatalogBase


def _new_product_id() -> str:
    return uuid.uuid4().hex


class Product(CatalogBase):
    __tablename__ = "products"

    id = Column(String(32), primary_key=True, default=_new_product_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(Numeric(12, 2), nullable=False)
    category = Column(String(100), nullable=False, index=True)
    brand = Column(String(100), nullable=False, default="")
    images = Column(JSON, nullable=False, default=list)
    attributes = Column(JSON, nullable=False, default=dict)
    inventory = Column(Integer, nullable=False, default=0) # available stock count
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
