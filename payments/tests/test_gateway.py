"""
Unit Tests for the Stripe gateway adapter

Stripe API calls are replaced with monkeypatched fakes; webhook signatures
are produced with the real HMAC scheme so verification runs unchanged.
"""

import pytest
import time
from decimal import Decimal
from types import SimpleNamespace

import stripe

from common.config import Settings
from common.errors import ConfigurationError, SignatureVerificationError, UpstreamError
from payments.gateway import StripeGateway, from_minor_units, to_minor_units
from payments.models import GatewayEventType, PaymentPurpose

from conftest import WEBHOOK_SECRET, session_completed, sign_payload, stripe_event


def make_gateway(**overrides):
    values = {"stripe_secret_key": "sk_test_123", "stripe_webhook_secret": WEBHOOK_SECRET}
    values.update(overrides)
    return StripeGateway(Settings(**values))


class TestMinorUnits:
    """Tests for amount conversion."""

    def test_to_minor_units(self):
        assert to_minor_units(Decimal("15.00")) == 1500
        assert to_minor_units(Decimal("0.105")) == 11

    def test_from_minor_units(self):
        assert from_minor_units(1500) == Decimal("15.00")
        assert from_minor_units(None) is None


class TestWebhookVerification:
    """Tests for signature checks and event normalization."""

    def test_valid_signature_parses_event(self):
        """Test that a correctly signed completion is normalized."""
        payload = session_completed("cs_test_abc", 3000, payment_intent="pi_abc")

        event = make_gateway().verify_webhook(payload.encode(), sign_payload(payload))

        assert event.type == GatewayEventType.PAYMENT_SUCCEEDED
        assert event.source_type == "checkout.session.completed"
        assert event.external_reference == "cs_test_abc"
        assert event.payment_intent_id == "pi_abc"
        assert event.amount == Decimal("30.00")
        assert event.currency == "aud"

    def test_wrong_secret_rejected(self):
        """Test that a payload signed with another secret fails."""
        payload = session_completed("cs_test_abc", 3000)

        with pytest.raises(SignatureVerificationError):
            make_gateway().verify_webhook(payload.encode(), sign_payload(payload, secret="whsec_other"))

    def test_tampered_payload_rejected(self):
        """Test that changing the body after signing fails."""
        payload = session_completed("cs_test_abc", 3000)
        signature = sign_payload(payload)
        tampered = payload.replace("3000", "1")

        with pytest.raises(SignatureVerificationError):
            make_gateway().verify_webhook(tampered.encode(), signature)

    def test_missing_signature_rejected(self):
        payload = session_completed("cs_test_abc", 3000)

        with pytest.raises(SignatureVerificationError):
            make_gateway().verify_webhook(payload.encode(), None)

    def test_stale_timestamp_rejected(self):
        """Test that replays outside the tolerance window fail."""
        payload = session_completed("cs_test_abc", 3000)
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(SignatureVerificationError):
            make_gateway().verify_webhook(payload.encode(), signature)

    def test_unconfigured_secret(self):
        payload = session_completed("cs_test_abc", 3000)

        with pytest.raises(ConfigurationError):
            make_gateway(stripe_webhook_secret=None).verify_webhook(payload.encode(), sign_payload(payload))

    @pytest.mark.parametrize("source_type,expected", [
        ("checkout.session.async_payment_failed", GatewayEventType.PAYMENT_FAILED),
        ("checkout.session.expired", GatewayEventType.PAYMENT_FAILED),
        ("customer.created", GatewayEventType.IGNORED),
    ])
    def test_event_type_mapping(self, source_type, expected):
        """Test normalization of Stripe event types."""
        event = StripeGateway.parse_event({"id": "evt_1", "type": source_type, "data": {"object": {"id": "cs_x"}}})
        assert event.type == expected

    def test_charge_refunded_uses_payment_intent(self):
        """Test that refund events are keyed by payment intent."""
        payload = stripe_event("charge.refunded", {
            "id": "ch_1", "payment_intent": "pi_refund", "amount": 1500,
            "amount_refunded": 1500, "currency": "AUD",
        })
        event = make_gateway().verify_webhook(payload.encode(), sign_payload(payload))

        assert event.type == GatewayEventType.REFUND_SUCCEEDED
        assert event.payment_intent_id == "pi_refund"
        assert event.external_reference is None
        assert event.amount == Decimal("15.00")
        assert event.currency == "aud"


class TestCheckoutAndRefund:
    """Tests for outbound Stripe calls."""

    def test_checkout_session_params(self, monkeypatch):
        """Test amounts, metadata and idempotency key sent to Stripe."""
        calls = []

        def fake_create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="cs_test_new", url="https://checkout.stripe.com/c/cs_test_new")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        session = make_gateway().create_checkout_session(
            purpose=PaymentPurpose.PLAY,
            amount=Decimal("22.50"),
            currency="AUD",
            metadata={"payment_id": "p-1", "registration_id": "r-1"},
            description="Registration for Social Play",
            customer_email="player@club.example",
        )

        assert session.session_id == "cs_test_new"
        sent = calls[0]
        assert sent["api_key"] == "sk_test_123"
        assert sent["idempotency_key"] == "checkout_p-1"
        assert sent["mode"] == "payment"
        assert sent["line_items"][0]["price_data"]["unit_amount"] == 2250
        assert sent["line_items"][0]["price_data"]["currency"] == "aud"
        assert sent["metadata"] == {"payment_id": "p-1", "registration_id": "r-1", "type": "play"}
        assert sent["customer_email"] == "player@club.example"

    def test_checkout_stripe_error(self, monkeypatch):
        def fake_create(**kwargs):
            raise stripe.StripeError("card network down")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        with pytest.raises(UpstreamError):
            make_gateway().create_checkout_session(
                PaymentPurpose.PLAY, Decimal("10.00"), "aud", {}, "Play"
            )

    def test_checkout_without_api_key(self):
        with pytest.raises(ConfigurationError):
            make_gateway(stripe_secret_key=None).create_checkout_session(
                PaymentPurpose.PLAY, Decimal("10.00"), "aud", {}, "Play"
            )

    def test_refund_resolves_session_reference(self, monkeypatch):
        """Test that a checkout session reference is refunded through its payment intent."""
        refunds = []

        monkeypatch.setattr(
            stripe.checkout.Session, "retrieve",
            lambda session_id, **kwargs: SimpleNamespace(id=session_id, payment_intent="pi_from_session"),
        )

        def fake_refund(**kwargs):
            refunds.append(kwargs)
            return SimpleNamespace(id="re_1", status="succeeded")

        monkeypatch.setattr(stripe.Refund, "create", fake_refund)

        result = make_gateway().issue_refund("cs_test_paid", Decimal("15.00"), idempotency_key="refund_r-1")

        assert result.refund_id == "re_1"
        assert refunds[0]["payment_intent"] == "pi_from_session"
        assert refunds[0]["amount"] == 1500
        assert refunds[0]["idempotency_key"] == "refund_r-1"

    def test_failed_refund_status(self, monkeypatch):
        """Test that a refund Stripe marks failed is an upstream error."""
        monkeypatch.setattr(stripe.Refund, "create", lambda **kwargs: SimpleNamespace(id="re_2", status="failed"))

        with pytest.raises(UpstreamError):
            make_gateway().issue_refund("pi_direct", Decimal("15.00"))
