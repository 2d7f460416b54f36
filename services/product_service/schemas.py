from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from shared.schemas import CamelModel


class ProductCreate(CamelModel):
    name: str = Field(min_length=1)
    description: str = ""
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    category: str = Field(min_length=1)
    brand: str = ""
    images: list[str] = []
    attributes: dict[str, str] = {}
    inventory: int = Field(ge=0)


class InventoryUpdate(CamelModel):
    inventory: int = Field(ge=0)


class ProductResponse(CamelModel):
    id: str
    name: str
    description: str
    price: Decimal
    category: str
    brand: str
    images: list[str]
    attributes: dict[str, str]
    inventory: int
    is_active: bool
    created_at: Optional[datetime] = None


class StockLevel(CamelModel):
    id: str
    name: str
    inventory: int
