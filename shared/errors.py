"""Error taxonomy for the storefront API.

Services raise these; ``register_exception_handlers`` turns them into
``{"error": ..., "details": ...}`` JSON bodies with the matching status code.
"""
import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class StorefrontError(Exception):
    """Base class for every error the API reports on purpose."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(StorefrontError):
    """Malformed or missing request fields."""


class UnsupportedPaymentMethod(ValidationError):
    def __init__(self, method):
        super().__init__("Unsupported payment method", details={"paymentMethod": method})


class NotFound(StorefrontError):
    status_code = status.HTTP_404_NOT_FOUND


class ProductNotFound(NotFound):
    def __init__(self, product_id: str):
        super().__init__(f"Product with ID {product_id} is not available.")
        self.product_id = product_id


class OrderNotFound(NotFound):
    def __init__(self, order_id: int):
        super().__init__("Order not found", details={"orderId": order_id})


class PaymentNotFound(NotFound):
    def __init__(self, order_id: int):
        super().__init__("Payment record not found", details={"orderId": order_id})


class ConflictError(StorefrontError):
    status_code = status.HTTP_409_CONFLICT


class OutOfStock(ConflictError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, product_id: str, name: str, available: int, requested: int):
        super().__init__(
            f'Insufficient inventory for product "{name}". Only {available} left.',
            details={"productId": product_id, "available": available, "requested": requested},
        )
        self.product_id = product_id


class InvalidTransition(ConflictError):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"{entity} cannot move from '{current}' to '{target}'",
            details={"from": current, "to": target},
        )


class OrderNotPayable(ConflictError):
    def __init__(self, order_id: int, current: str):
        super().__init__("Order cannot be paid for", details={"orderId": order_id, "status": current})


class ExternalServiceError(StorefrontError):
    """A payment processor call failed or returned an error."""


class ProcessorError(ExternalServiceError):
    pass


class PaymentInitiationFailed(ExternalServiceError):
    pass


class WebhookSignatureError(ExternalServiceError):
    pass


class IntegrityError(StorefrontError):
    """The relational transaction failed and was rolled back."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


async def storefront_error_handler(request: Request, exc: StorefrontError):
    logger.info(
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=exc.message,
        status_code=exc.status_code,
    )
    body = {"error": exc.message}
    if exc.details is not None:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Validation failed", "details": details},
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
