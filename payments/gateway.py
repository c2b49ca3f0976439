"""
Payment processor adapter.

``PaymentGateway`` is the contract the booking core depends on; the Stripe
implementation below is the production one. Webhook payloads are verified
before they are parsed and normalized into ``GatewayEvent`` so nothing
downstream handles raw Stripe objects.
"""

import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

import stripe

from common.config import Settings
from common.errors import ConfigurationError, SignatureVerificationError, UpstreamError

from .models import CheckoutSession, GatewayEvent, GatewayEventType, PaymentPurpose, RefundResult

logger = logging.getLogger(__name__)

STRIPE_EVENT_TYPES = {
    "checkout.session.completed": GatewayEventType.PAYMENT_SUCCEEDED,
    "checkout.session.async_payment_succeeded": GatewayEventType.PAYMENT_SUCCEEDED,
    "checkout.session.async_payment_failed": GatewayEventType.PAYMENT_FAILED,
    "checkout.session.expired": GatewayEventType.PAYMENT_FAILED,
    "payment_intent.payment_failed": GatewayEventType.PAYMENT_FAILED,
    "charge.refunded": GatewayEventType.REFUND_SUCCEEDED,
}

FAILED_REFUND_STATUSES = ("failed", "canceled")


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Optional[int]) -> Optional[Decimal]:
    if value is None:
        return None
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class PaymentGateway(ABC):
    @abstractmethod
    def create_checkout_session(
        self,
        purpose: PaymentPurpose,
        amount: Decimal,
        currency: str,
        metadata: dict,
        description: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        ...

    @abstractmethod
    def issue_refund(
        self, payment_reference: str, amount: Decimal, idempotency_key: Optional[str] = None
    ) -> RefundResult:
        ...


class StripeGateway(PaymentGateway):
    def __init__(self, settings: Settings):
        self.settings = settings

    def create_checkout_session(
        self,
        purpose: PaymentPurpose,
        amount: Decimal,
        currency: str,
        metadata: dict,
        description: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        api_key = self._api_key()
        frontend_url = self.settings.frontend_url.rstrip("/")
        params = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {"name": description},
                    "unit_amount": to_minor_units(amount),
                },
                "quantity": 1,
            }],
            "success_url": f"{frontend_url}/play/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{frontend_url}/play/payment/cancel",
            "metadata": {key: str(value) for key, value in {**metadata, "type": purpose.value}.items()},
        }
        if customer_email:
            params["customer_email"] = customer_email

        options = {"api_key": api_key}
        if "payment_id" in metadata:
            options["idempotency_key"] = f"checkout_{metadata['payment_id']}"
        try:
            session = stripe.checkout.Session.create(**options, **params)
        except stripe.StripeError as e:
            logger.error("Stripe checkout creation failed: %s", e)
            raise UpstreamError(f"Payment gateway rejected checkout: {e}") from e

        logger.info("Created Stripe checkout session %s for %s", session.id, purpose.value)
        return CheckoutSession(session_id=session.id, url=session.url)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise ConfigurationError("Webhook secret not configured")
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header")

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text, signature, secret, self.settings.webhook_tolerance_seconds
            )
            data = json.loads(text)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise SignatureVerificationError("Invalid webhook signature") from e
        except ValueError as e:
            logger.warning("Webhook payload could not be parsed: %s", e)
            raise SignatureVerificationError("Unverifiable webhook payload") from e

        return self.parse_event(data)

    @staticmethod
    def parse_event(data: dict) -> GatewayEvent:
        source_type = data.get("type", "")
        obj = data.get("data", {}).get("object", {}) or {}
        event_type = STRIPE_EVENT_TYPES.get(source_type, GatewayEventType.IGNORED)

        external_reference = None
        payment_intent_id = None
        amount = None
        if source_type.startswith("checkout.session."):
            external_reference = obj.get("id")
            payment_intent_id = _object_id(obj.get("payment_intent"))
            amount = from_minor_units(obj.get("amount_total"))
        elif source_type.startswith("payment_intent."):
            payment_intent_id = obj.get("id")
            amount = from_minor_units(obj.get("amount"))
        elif source_type.startswith("charge."):
            payment_intent_id = _object_id(obj.get("payment_intent"))
            amount = from_minor_units(obj.get("amount_refunded") or obj.get("amount"))

        currency = obj.get("currency")
        return GatewayEvent(
            id=data.get("id", "unknown"),
            type=event_type,
            source_type=source_type,
            external_reference=external_reference,
            payment_intent_id=payment_intent_id,
            amount=amount,
            currency=currency.lower() if currency else None,
            metadata=obj.get("metadata") or {},
        )

    def issue_refund(
        self, payment_reference: str, amount: Decimal, idempotency_key: Optional[str] = None
    ) -> RefundResult:
        api_key = self._api_key()
        try:
            payment_intent = payment_reference
            if payment_reference.startswith("cs_"):
                session = stripe.checkout.Session.retrieve(payment_reference, api_key=api_key)
                payment_intent = _object_id(session.payment_intent)
            if not payment_intent:
                raise UpstreamError(f"No captured payment found for {payment_reference}")

            options = {"api_key": api_key}
            if idempotency_key:
                options["idempotency_key"] = idempotency_key
            refund = stripe.Refund.create(
                **options,
                payment_intent=payment_intent,
                amount=to_minor_units(amount),
            )
        except stripe.StripeError as e:
            logger.error("Stripe refund for %s failed: %s", payment_reference, e)
            raise UpstreamError(f"Refund failed for {payment_reference}: {e}") from e

        if refund.status in FAILED_REFUND_STATUSES:
            raise UpstreamError(f"Refund {refund.id} for {payment_reference} ended {refund.status}")

        logger.info("Issued refund %s for %s (%s)", refund.id, payment_reference, amount)
        return RefundResult(refund_id=refund.id, status=refund.status, amount=amount)

    def _api_key(self) -> str:
        if not self.settings.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")
        return self.settings.stripe_secret_key
