from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from .settings import CATALOG_DATABASE_URL, DATABASE_URL, DB_ECHO

# Relational store: orders, order items, payments and their bookkeeping tables
engine = create_async_engine(DATABASE_URL, echo=DB_ECHO)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
Base = declarative_base()

# Catalog store: product documents. Separate metadata, separate engine,
# so no catalog write is ever part of an order transaction.
catalog_engine = create_async_engine(CATALOG_DATABASE_URL, echo=DB_ECHO)
CatalogSessionLocal = async_sessionmaker(catalog_engine, expire_on_commit=False, class_=AsyncSession)
CatalogBase = declarative_base()


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


async def get_catalog_db():
    async with CatalogSessionLocal() as session:
        yield session


async def init_models():
    """Create tables for both stores. Call once from the process entry point."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with catalog_engine.begin() as conn:
        await conn.run_sync(CatalogBase.metadata.create_all)


async def dispose_engines():
    await engine.dispose()
    await catalog_engine.dispose()
