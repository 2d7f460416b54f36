"""
Payment endpoints.

Webhook routes are public (the processor signs them); everything a customer
calls requires a bearer token, and refunds require the internal API key.
"""
from typing import Mapping

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db
from shared.config.settings import PAYMENT_RATE_LIMIT
from shared.errors import UnsupportedPaymentMethod
from shared.security import get_current_user, limiter, verify_internal_api_key
from .processors import PaymentProcessor, get_payment_processors
from .schemas import (
    PaymentConfirm,
    PaymentConfirmResponse,
    PaymentIntentCreate,
    PaymentMethodsResponse,
    RefundResponse,
    WebhookAck,
)
from .service import PaymentService

router = APIRouter(prefix="/payments", tags=["Payments"])
webhook_router = APIRouter(prefix="/payments", tags=["Payments"])
admin_router = APIRouter(prefix="/payments", tags=["Payments"], dependencies=[Depends(verify_internal_api_key)])


@router.get("/methods", response_model=PaymentMethodsResponse)
async def payment_methods(
    user_id: int = Depends(get_current_user),
    processors: Mapping[str, PaymentProcessor] = Depends(get_payment_processors),
):
    return {"payment_methods": PaymentService.list_methods(processors)}


@router.post("/intent")
@limiter.limit(PAYMENT_RATE_LIMIT)
async def create_payment_intent(
    request: Request,
    payload: PaymentIntentCreate,
    user_id: int = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processors: Mapping[str, PaymentProcessor] = Depends(get_payment_processors),
):
    return await PaymentService.create_intent(db, processors, user_id, payload.order_id, payload.payment_method)


@router.post("/confirm", response_model=PaymentConfirmResponse, responses={400: {"description": "Payment failed"}})
@limiter.limit(PAYMENT_RATE_LIMIT)
async def confirm_payment(
    request: Request,
    payload: PaymentConfirm,
    user_id: int = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processors: Mapping[str, PaymentProcessor] = Depends(get_payment_processors),
):
    result = await PaymentService.confirm(
        db, processors, user_id, payload.order_id, payload.payment_method, payload.payment_data
    )
    if not result["success"]:
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder({
                "success": False,
                "error": result["error"],
                "details": result["details"],
                "order": result["order"],
                "paymentStatus": result["payment_status"],
            }),
        )
    return result


async def _handle_webhook(request: Request, method: str, db: AsyncSession, processors) -> dict:
    processor = processors.get(method)
    if processor is None:
        raise UnsupportedPaymentMethod(method)
    body = await request.body()
    await PaymentService.handle_webhook(db, processor, body, request.headers)
    return {"received": True}


@webhook_router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    processors: Mapping[str, PaymentProcessor] = Depends(get_payment_processors),
):
    return await _handle_webhook(request, "stripe", db, processors)


@webhook_router.post("/webhook/paypal", response_model=WebhookAck)
async def paypal_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    processors: Mapping[str, PaymentProcessor] = Depends(get_payment_processors),
):
    return await _handle_webhook(request, "paypal", db, processors)


@admin_router.post("/{order_id}/refund", response_model=RefundResponse)
async def refund_payment(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    processors: Mapping[str, PaymentProcessor] = Depends(get_payment_processors),
):
    return await PaymentService.refund(db, processors, order_id)
