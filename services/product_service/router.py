from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_catalog_db
from shared.config.settings import LOW_STOCK_THRESHOLD
from shared.errors import ProductNotFound
from shared.security.dependencies import verify_internal_api_key
from .schemas import InventoryUpdate, ProductCreate, ProductResponse, StockLevel
from .service import ProductService

router = APIRouter(prefix="/products", tags=["Catalog"])
# Catalog maintenance is operator-only
admin_router = APIRouter(prefix="/products", tags=["Catalog"], dependencies=[Depends(verify_internal_api_key)])


@router.get("", response_model=list[ProductResponse])
async def list_products(
    query: Optional[str] = Query(default=None),
    category: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_catalog_db),
):
    return await ProductService.list_products(db, query=query, category=category)


@admin_router.get("/low-stock", response_model=list[StockLevel])
async def low_stock(
    threshold: int = Query(default=LOW_STOCK_THRESHOLD, ge=0),
    db: AsyncSession = Depends(get_catalog_db),
):
    return await ProductService.low_stock(db, threshold)


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(product_id: str, db: AsyncSession = Depends(get_catalog_db)):
    product = await ProductService.get_product_by_id(db, product_id)
    if not product or not product.is_active:
        raise ProductNotFound(product_id)
    return product


@admin_router.post("", response_model=ProductResponse, status_code=201)
async def create_product(product: ProductCreate, db: AsyncSession = Depends(get_catalog_db)):
    return await ProductService.create_product(db, product)


@admin_router.put("/{product_id}/inventory", response_model=ProductResponse)
async def set_inventory(product_id: str, payload: InventoryUpdate, db: AsyncSession = Depends(get_catalog_db)):
    return await ProductService.set_inventory(db, product_id, payload.inventory)
