from typing import Any, Optional

from pydantic import Field

from shared.schemas import CamelModel


class PaymentIntentCreate(CamelModel):
    order_id: int
    payment_method: str = Field(min_length=1)


class PaymentConfirm(CamelModel):
    order_id: int
    payment_method: str = Field(min_length=1)
    payment_data: dict[str, Any] = {}


class ConfirmedOrder(CamelModel):
    id: int
    status: str


class PaymentConfirmResponse(CamelModel):
    success: bool
    message: str
    order: ConfirmedOrder
    payment_status: str


class PaymentMethodInfo(CamelModel):
    id: str
    name: str
    description: str
    supported_cards: Optional[list[str]] = None


class PaymentMethodsResponse(CamelModel):
    payment_methods: list[PaymentMethodInfo]


class RefundResponse(CamelModel):
    success: bool
    order: ConfirmedOrder
    payment_status: str


class WebhookAck(CamelModel):
    received: bool = True
