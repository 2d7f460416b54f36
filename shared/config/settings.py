import os
from dotenv import load_dotenv

load_dotenv()


def _get_bool(env_name: str, default: bool = False) -> bool:
    val = os.getenv(env_name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


# Relational store (orders, order items, payments)
DB_USER = os.getenv("POSTGRES_USER", "postgres")
DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
DB_HOST = os.getenv("POSTGRES_HOST", "localhost")  # In Docker, this will be 'postgres'
DB_PORT = os.getenv("POSTGRES_PORT", "5433")
DB_NAME = os.getenv("POSTGRES_DB", "storefront")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

# Catalog store (products). Kept on its own connection so nothing it does
# can ride along with an order transaction.
CATALOG_DATABASE_URL = os.getenv(
    "CATALOG_DATABASE_URL",
    f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}_catalog",
)

DB_ECHO = _get_bool("DB_ECHO", False)

# Payment processors
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
STRIPE_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))

PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID", "")
PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox")

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
PROCESSOR_TIMEOUT_SECONDS = float(os.getenv("PROCESSOR_TIMEOUT_SECONDS", "10.0"))

# Inventory reconciliation
INVENTORY_RECONCILE_MAX_ATTEMPTS = int(os.getenv("INVENTORY_RECONCILE_MAX_ATTEMPTS", "5"))
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))

# Rate limiting
RATE_LIMIT_ENABLED = _get_bool("RATE_LIMIT_ENABLED", True)
CHECKOUT_RATE_LIMIT = os.getenv("CHECKOUT_RATE_LIMIT", "10/minute")
PAYMENT_RATE_LIMIT = os.getenv("PAYMENT_RATE_LIMIT", "20/minute")

# Observability
SERVICE_NAME = os.getenv("SERVICE_NAME", "storefront")
TRACING_ENABLED = _get_bool("TRACING_ENABLED", True)
OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
