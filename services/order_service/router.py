from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_catalog_db, get_db
from shared.config.settings import CHECKOUT_RATE_LIMIT
from shared.security import get_current_user, limiter, verify_internal_api_key
from .schemas import (
    OrderCreate,
    OrderCreated,
    OrderDetailResponse,
    OrderList,
    OrderStatusChanged,
    OrderStatusUpdate,
    ReconcileResult,
)
from .service import OrderService

router = APIRouter(prefix="/orders", tags=["Orders"])
# Fulfilment and reconciliation are operator-only
admin_router = APIRouter(prefix="/orders", tags=["Orders"], dependencies=[Depends(verify_internal_api_key)])


@router.post("", response_model=OrderCreated, status_code=status.HTTP_201_CREATED)
@limiter.limit(CHECKOUT_RATE_LIMIT)
async def create_order(
    request: Request,
    payload: OrderCreate,
    user_id: int = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog_db: AsyncSession = Depends(get_catalog_db),
):
    return await OrderService.create_order(db, catalog_db, user_id, payload)


@router.get("", response_model=OrderList)
async def list_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: int = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService.list_orders(db, user_id, page, limit)


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: int,
    user_id: int = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog_db: AsyncSession = Depends(get_catalog_db),
):
    order = await OrderService.get_order_detail(db, catalog_db, order_id, user_id)
    return {"order": order}


@admin_router.patch("/{order_id}/status", response_model=OrderStatusChanged)
async def update_order_status(order_id: int, payload: OrderStatusUpdate, db: AsyncSession = Depends(get_db)):
    return await OrderService.update_status(db, order_id, payload)


@admin_router.post("/inventory/reconcile", response_model=ReconcileResult)
async def reconcile_inventory(
    batch_size: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    catalog_db: AsyncSession = Depends(get_catalog_db),
):
    return await OrderService.reconcile_inventory(db, catalog_db, batch_size)
