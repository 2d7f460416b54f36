from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from shared.config.database import dispose_engines, init_models
from shared.config.settings import SERVICE_NAME
from shared.errors import register_exception_handlers
from shared.observability import setup_observability
from shared.security import limiter

# IMPORTANT: import models so they register with their Base
from services.product_service import models as product_models  # noqa: F401
from services.order_service import models as order_models  # noqa: F401
from services.payment_service import models as payment_models  # noqa: F401

from services.product_service.router import admin_router as product_admin_router, router as product_router
from services.order_service.router import admin_router as order_admin_router, router as order_router
from services.payment_service.router import (
    admin_router as payment_admin_router,
    router as payment_router,
    webhook_router as payment_webhook_router,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    yield
    await dispose_engines()


def create_app() -> FastAPI:
    app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)

    # --- OBSERVABILITY BOOTSTRAP ---
    setup_observability(app, SERVICE_NAME)

    # --- SECURITY SETUP ---
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_exception_handlers(app)

    @app.get("/health", include_in_schema=False)
    async def health_check():
        return {"service": SERVICE_NAME, "status": "running"}

    # Static admin paths before the dynamic /{id} routes
    app.include_router(product_admin_router)
    app.include_router(product_router)
    app.include_router(order_admin_router)
    app.include_router(order_router)
    app.include_router(payment_webhook_router)
    app.include_router(payment_admin_router)
    app.include_router(payment_router)
    return app


app = create_app()
