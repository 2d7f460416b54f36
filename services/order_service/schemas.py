from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import Field

from shared.schemas import CamelModel


class ShippingAddress(CamelModel):
    full_name: str = Field(min_length=1)
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: Optional[str] = None
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=2)
    phone: Optional[str] = None


class OrderItemCreate(CamelModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class OrderCreate(CamelModel):
    items: list[OrderItemCreate] = Field(min_length=1)
    shipping_address: ShippingAddress
    payment_method: Optional[str] = None


class OrderSummary(CamelModel):
    id: int
    total_amount: Decimal
    status: str


class PaymentSummary(CamelModel):
    id: int
    amount: Decimal


class OrderCreated(CamelModel):
    message: str = "Order created successfully"
    order: OrderSummary
    payment: PaymentSummary
    inventory_pending: list[str] = []


class OrderItemResponse(CamelModel):
    product_id: str
    quantity: int
    price: Decimal


class ProductSnapshot(CamelModel):
    name: str
    images: list[str] = []


class OrderItemDetail(OrderItemResponse):
    product: Optional[ProductSnapshot] = None


class OrderPaymentResponse(CamelModel):
    status: str
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None


class OrderPaymentDetail(OrderPaymentResponse):
    amount: Decimal
    payment_details: Optional[dict[str, Any]] = None


class OrderResponse(CamelModel):
    id: int
    user_id: int
    total_amount: Decimal
    status: str
    shipping_address: dict[str, Any]
    tracking_number: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: list[OrderItemResponse] = []
    payment: Optional[OrderPaymentResponse] = None


class OrderDetail(OrderResponse):
    items: list[OrderItemDetail] = []
    payment: Optional[OrderPaymentDetail] = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class OrderList(CamelModel):
    orders: list[OrderResponse]
    pagination: Pagination


class OrderDetailResponse(CamelModel):
    order: OrderDetail


class OrderStatusUpdate(CamelModel):
    status: str
    tracking_number: Optional[str] = None


class OrderStatusChanged(CamelModel):
    message: str = "Order updated successfully"
    changes: dict[str, str]
    order: OrderResponse


class ReconcileResult(CamelModel):
    applied: int
    retried: int
    abandoned: int
