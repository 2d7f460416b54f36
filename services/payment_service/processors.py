"""
Payment processor integrations.

Stripe goes through its SDK (backed by httpx); PayPal is called over httpx
directly. Both normalise the answers into ``IntentResult`` /
``ConfirmationResult`` / ``WebhookEvent`` so the settlement logic never sees
provider-specific shapes.
"""
import json
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Optional

import httpx
import stripe
import structlog

from shared.config import settings
from shared.errors import ProcessorError, ValidationError, WebhookSignatureError
from shared.money import format_amount, to_minor_units

logger = structlog.get_logger(__name__)


@dataclass
class IntentResult:
    reference: str
    payload: dict[str, Any]


@dataclass
class ConfirmationResult:
    success: bool
    transaction_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    error: Any = None


@dataclass
class WebhookEvent:
    event_id: str
    event_type: str
    outcome: Optional[str] # "succeeded", "failed" or None for events we do not act on
    order_id: Optional[int] = None
    transaction_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


def _order_id(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PaymentProcessor:
    name: str = ""
    display_name: str = ""
    description: str = ""

    def describe(self) -> dict:
        return {"id": self.name, "name": self.display_name, "description": self.description}

    async def create_intent(self, order) -> IntentResult:
        raise NotImplementedError

    async def confirm(self, order, payment_data: dict) -> ConfirmationResult:
        raise NotImplementedError

    async def refund(self, payment) -> dict:
        raise NotImplementedError

    async def parse_webhook(self, body: bytes, headers) -> WebhookEvent:
        raise NotImplementedError


class StripeProcessor(PaymentProcessor):
    name = "stripe"
    display_name = "Credit/Debit Card"
    description = "Pay securely with your credit or debit card"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        api_base: str = "https://api.stripe.com",
        currency: str = "usd",
        tolerance: int = 300,
        timeout: float = 10.0,
        client: Optional[stripe.StripeClient] = None,
    ):
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.tolerance = tolerance
        # SDK calls go out through httpx so they are traced like every other outbound call
        self.client = client or stripe.StripeClient(
            secret_key,
            base_addresses={"api": api_base},
            http_client=stripe.HTTPXClient(timeout=timeout),
        )

    def describe(self) -> dict:
        return {**super().describe(), "supportedCards": ["visa", "mastercard", "amex"]}

    @staticmethod
    async def _call(action: str, request):
        try:
            return await request
        except stripe.StripeError as e:
            raise ProcessorError(
                f"Stripe {action} failed: {e.user_message or e}", details={"code": e.code}
            ) from e

    async def create_intent(self, order) -> IntentResult:
        intent = await self._call("payment creation", self.client.payment_intents.create_async(
            params={
                "amount": to_minor_units(order.total_amount),
                "currency": self.currency,
                "metadata": {"orderId": str(order.id), "userId": str(order.user_id)},
                "automatic_payment_methods": {"enabled": True},
            },
            options={"idempotency_key": f"order-{order.id}-intent"},
        ))
        return IntentResult(
            reference=intent["id"],
            payload={"clientSecret": intent.get("client_secret"), "paymentIntentId": intent["id"]},
        )

    async def confirm(self, order, payment_data: dict) -> ConfirmationResult:
        intent_id = (payment_data or {}).get("paymentIntentId")
        if not intent_id:
            raise ValidationError("paymentData.paymentIntentId is required")

        intent = await self._call("payment confirmation", self.client.payment_intents.retrieve_async(intent_id))
        if (intent.get("metadata") or {}).get("orderId") != str(order.id):
            return ConfirmationResult(
                success=False,
                details={"status": intent.get("status")},
                error="Payment intent does not belong to this order",
            )
        if intent.get("amount") != to_minor_units(order.total_amount):
            return ConfirmationResult(
                success=False,
                details={"status": intent.get("status")},
                error="Payment intent amount does not match the order total",
            )
        if intent.get("status") == "succeeded":
            return ConfirmationResult(success=True, transaction_id=intent["id"], details=dict(intent))
        return ConfirmationResult(
            success=False,
            transaction_id=intent["id"],
            details={"status": intent.get("status"), "error": intent.get("last_payment_error")},
            error=intent.get("last_payment_error"),
        )

    async def refund(self, payment) -> dict:
        refund = await self._call("refund", self.client.refunds.create_async(
            params={"payment_intent": payment.transaction_id, "amount": to_minor_units(payment.amount)},
        ))
        return dict(refund)

    def construct_event(self, body: bytes, header: Optional[str]):
        """Verify the ``Stripe-Signature`` header against the raw body and decode the event."""
        if not header:
            raise WebhookSignatureError("Webhook Error: missing Stripe-Signature header")
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook Error: no webhook secret configured")
        try:
            return stripe.Webhook.construct_event(body, header, self.webhook_secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Webhook Error: {e.user_message or e}") from e
        except ValueError as e:
            raise WebhookSignatureError("Webhook Error: invalid payload") from e

    async def parse_webhook(self, body: bytes, headers) -> WebhookEvent:
        event = self.construct_event(body, headers.get("stripe-signature"))

        obj = (event.get("data") or {}).get("object") or {}
        outcome = {
            "payment_intent.succeeded": "succeeded",
            "payment_intent.payment_failed": "failed",
        }.get(event.get("type"))
        return WebhookEvent(
            event_id=event.get("id", ""),
            event_type=event.get("type", ""),
            outcome=outcome,
            order_id=_order_id((obj.get("metadata") or {}).get("orderId")),
            transaction_id=obj.get("id"),
            details=dict(obj),
        )


class PayPalProcessor(PaymentProcessor):
    name = "paypal"
    display_name = "PayPal"
    description = "Pay with your PayPal account"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str = "",
        mode: str = "sandbox",
        frontend_url: str = "http://localhost:5173",
        currency: str = "USD",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.api_base = "https://api-m.paypal.com" if mode == "live" else "https://api-m.sandbox.paypal.com"
        self.frontend_url = frontend_url
        self.currency = currency.upper()
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.api_base, timeout=self.timeout, transport=self.transport)

    async def _request(self, method: str, path: str, action: str, **kwargs) -> dict:
        try:
            async with self._client() as client:
                token_resp = await client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                )
                if token_resp.status_code >= 400:
                    raise ProcessorError(f"PayPal {action} failed: authentication rejected")
                token = token_resp.json()["access_token"]
                resp = await client.request(method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs)
        except httpx.HTTPError as e:
            raise ProcessorError(f"PayPal {action} failed: {e}") from e
        body = resp.json() if resp.content else {}
        if resp.status_code >= 400:
            message = body.get("message") or body.get("error_description") or resp.text
            raise ProcessorError(f"PayPal {action} failed: {message}", details=body)
        return body

    async def create_intent(self, order) -> IntentResult:
        payment = await self._request(
            "POST",
            "/v1/payments/payment",
            "payment creation",
            json={
                "intent": "sale",
                "payer": {"payment_method": "paypal"},
                "redirect_urls": {
                    "return_url": f"{self.frontend_url}/payment/success",
                    "cancel_url": f"{self.frontend_url}/payment/cancel",
                },
                "transactions": [{
                    "amount": {"currency": self.currency, "total": format_amount(order.total_amount)},
                    "description": f"Payment for order #{order.id}",
                    "custom": str(order.id),
                }],
            },
        )
        approval_url = next(
            (link["href"] for link in payment.get("links", []) if link.get("rel") == "approval_url"), None
        )
        return IntentResult(reference=payment["id"], payload={"paymentId": payment["id"], "approvalUrl": approval_url})

    async def confirm(self, order, payment_data: dict) -> ConfirmationResult:
        payment_data = payment_data or {}
        payment_id, payer_id = payment_data.get("paymentId"), payment_data.get("payerId")
        if not payment_id or not payer_id:
            raise ValidationError("paymentData.paymentId and paymentData.payerId are required")

        payment = await self._request(
            "POST", f"/v1/payments/payment/{payment_id}/execute", "payment execution", json={"payer_id": payer_id}
        )
        transaction = (payment.get("transactions") or [{}])[0]
        if (
            transaction.get("custom") != str(order.id)
            or (transaction.get("amount") or {}).get("total") != format_amount(order.total_amount)
        ):
            return ConfirmationResult(
                success=False,
                details={"state": payment.get("state")},
                error="PayPal payment does not match this order",
            )
        if payment.get("state") == "approved":
            return ConfirmationResult(success=True, transaction_id=payment["id"], details=payment)
        return ConfirmationResult(
            success=False,
            transaction_id=payment.get("id"),
            details=payment,
            error=payment.get("failure_reason") or f"payment state is {payment.get('state')}",
        )

    @staticmethod
    def _sale_id(details: Optional[dict]) -> Optional[str]:
        details = details or {}
        if details.get("parent_payment"):  # settled by webhook: details is the sale itself
            return details.get("id")
        for transaction in details.get("transactions", []):
            for resource in transaction.get("related_resources", []):
                sale = resource.get("sale")
                if sale and sale.get("id"):
                    return sale["id"]
        return None

    async def refund(self, payment) -> dict:
        sale_id = self._sale_id(payment.payment_details)
        if not sale_id:
            raise ProcessorError("PayPal refund failed: no sale recorded for this payment")
        return await self._request(
            "POST",
            f"/v1/payments/sale/{sale_id}/refund",
            "refund",
            json={"amount": {"total": format_amount(payment.amount), "currency": self.currency}},
        )

    async def parse_webhook(self, body: bytes, headers) -> WebhookEvent:
        try:
            event = json.loads(body)
        except ValueError as e:
            raise WebhookSignatureError("Webhook Error: invalid payload") from e

        required = ("paypal-transmission-id", "paypal-transmission-time", "paypal-cert-url",
                    "paypal-auth-algo", "paypal-transmission-sig")
        if not self.webhook_id or any(not headers.get(h) for h in required):
            raise WebhookSignatureError("Webhook Error: missing PayPal transmission headers")

        try:
            verification = await self._request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                "webhook verification",
                json={
                    "transmission_id": headers.get("paypal-transmission-id"),
                    "transmission_time": headers.get("paypal-transmission-time"),
                    "cert_url": headers.get("paypal-cert-url"),
                    "auth_algo": headers.get("paypal-auth-algo"),
                    "transmission_sig": headers.get("paypal-transmission-sig"),
                    "webhook_id": self.webhook_id,
                    "webhook_event": event,
                },
            )
        except ProcessorError as e:
            raise WebhookSignatureError(f"Webhook Error: {e.message}") from e
        if verification.get("verification_status") != "SUCCESS":
            raise WebhookSignatureError("Webhook Error: signature verification failed")

        resource = event.get("resource") or {}
        outcome = {
            "PAYMENT.SALE.COMPLETED": "succeeded",
            "PAYMENT.SALE.DENIED": "failed",
        }.get(event.get("event_type"))
        return WebhookEvent(
            event_id=event.get("id", ""),
            event_type=event.get("event_type", ""),
            outcome=outcome,
            order_id=_order_id(resource.get("custom")),
            transaction_id=resource.get("parent_payment"),
            details=resource,
        )


@lru_cache
def get_payment_processors() -> dict[str, PaymentProcessor]:
    """Processors with credentials configured, keyed by payment method."""
    processors: dict[str, PaymentProcessor] = {}
    if settings.STRIPE_SECRET_KEY:
        processors["stripe"] = StripeProcessor(
            settings.STRIPE_SECRET_KEY,
            settings.STRIPE_WEBHOOK_SECRET,
            api_base=settings.STRIPE_API_BASE,
            currency=settings.PAYMENT_CURRENCY,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            timeout=settings.PROCESSOR_TIMEOUT_SECONDS,
        )
    if settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET:
        processors["paypal"] = PayPalProcessor(
            settings.PAYPAL_CLIENT_ID,
            settings.PAYPAL_CLIENT_SECRET,
            webhook_id=settings.PAYPAL_WEBHOOK_ID,
            mode=settings.PAYPAL_MODE,
            frontend_url=settings.FRONTEND_URL,
            currency=settings.PAYMENT_CURRENCY,
            timeout=settings.PROCESSOR_TIMEOUT_SECONDS,
        )
    if not processors:
        logger.warning("no_payment_processors_configured")
    return processors
