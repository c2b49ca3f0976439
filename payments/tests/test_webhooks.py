"""
Unit Tests for checkout creation and webhook reconciliation

Tests cover:
1. Checkout sessions for pending and waitlisted registrations
2. Payment success, replay, late arrival and a failed apply being retried
3. Add-guests checkouts
4. Failure and gateway retry
5. Refund events and ignored event types
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from booking.models import RegistrationStatus
from common.errors import ConflictError, RegistrationNotFoundError, SignatureVerificationError
from payments.models import PaymentPurpose, PaymentStatus, WebhookOutcome

from conftest import session_completed, sign_payload, stripe_event


def deliver(services, payload):
    return services.payments.handle_webhook(payload.encode(), sign_payload(payload))


class TestCheckout:
    """Tests for starting checkout."""

    def test_checkout_for_pending_registration(self, services, gateway, make_user, make_event, book):
        """Test that checkout charges price times party size."""
        user = make_user()
        event = make_event(price="12.50")
        registration = book(user, event, guest_count=2)

        response = services.payments.start_checkout(user.id, registration.id)

        assert response.payment.status == PaymentStatus.CREATED
        assert response.payment.purpose == PaymentPurpose.PLAY
        assert response.payment.amount == Decimal("37.50")
        assert response.checkout_url.endswith(response.payment.external_reference)
        assert gateway.sessions[0]["amount"] == Decimal("37.50")
        assert gateway.sessions[0]["metadata"]["registration_id"] == str(registration.id)
        assert gateway.sessions[0]["metadata"]["payment_id"] == str(response.payment.id)
        assert services.registrations.get(registration.id).payment_id == response.payment.id

    def test_checkout_for_waitlisted_registration(self, services, make_user, make_event, book):
        """Test that waitlisted members can pay up front."""
        event = make_event(capacity=1)
        book(make_user(), event)
        user = make_user()
        registration = book(user, event)

        response = services.payments.start_checkout(user.id, registration.id)

        assert response.payment.purpose == PaymentPurpose.WAITLIST

    def test_checkout_for_confirmed_conflicts(self, services, make_user, make_event, book):
        user = make_user()
        registration = book(user, make_event())
        services.registrations.confirm_payment(registration.id, Decimal("15.00"))

        with pytest.raises(ConflictError):
            services.payments.start_checkout(user.id, registration.id)

    def test_checkout_for_other_users_registration(self, services, make_user, make_event, book):
        registration = book(make_user(), make_event())

        with pytest.raises(RegistrationNotFoundError):
            services.payments.start_checkout(make_user().id, registration.id)


class TestPaymentSucceeded:
    """Tests for successful payment webhooks."""

    def test_confirms_registration(self, services, make_user, make_event, book):
        """Test that a completed checkout confirms the registration."""
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)

        result = deliver(services, session_completed(checkout.payment.external_reference, 1500, "pi_ok"))

        assert result.outcome == WebhookOutcome.APPLIED
        assert result.registration_id == registration.id
        payment = services.payments.get(checkout.payment.id)
        assert payment.status == PaymentStatus.PAID
        assert payment.payment_intent_id == "pi_ok"
        confirmed = services.registrations.get(registration.id)
        assert confirmed.status == RegistrationStatus.CONFIRMED
        assert confirmed.amount_paid == Decimal("15.00")
        assert confirmed.payment_reference == "pi_ok"

    def test_replay_is_idempotent(self, services, notifier, make_user, make_event, book):
        """Test that the same event delivered twice confirms once."""
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)
        payload = session_completed(checkout.payment.external_reference, 1500, "pi_replay")

        first = deliver(services, payload)
        second = deliver(services, payload)

        assert first.outcome == WebhookOutcome.APPLIED
        assert second.outcome == WebhookOutcome.DUPLICATE
        assert services.registrations.get(registration.id).status == RegistrationStatus.CONFIRMED
        assert [n[0] for n in notifier.sent].count("confirmation") == 1
        assert services.ledger.get_balance(user.id).total_entries == 0

    def test_unknown_reference_acknowledged(self, services):
        """Test that payments we never created are logged and acknowledged."""
        result = deliver(services, session_completed("cs_test_unknown", 1500, "pi_unknown"))

        assert result.outcome == WebhookOutcome.UNKNOWN_PAYMENT
        assert result.payment_id is None

    def test_late_payment_for_expired_registration(self, services, make_user, make_event, book, now):
        """Test that a capture after expiry keeps the payment and flags it."""
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)
        services.registrations.expire(registration.id, now)

        result = deliver(services, session_completed(checkout.payment.external_reference, 1500, "pi_late"))

        assert result.outcome == WebhookOutcome.ORPHANED
        assert services.payments.get(checkout.payment.id).status == PaymentStatus.PAID
        assert services.payments.get(checkout.payment.id).orphaned is True
        assert services.payments.captured_payments_for(registration.id) == []
        assert services.registrations.get(registration.id).status == RegistrationStatus.EXPIRED

    def test_failed_confirmation_left_for_retry(self, services, monkeypatch, make_user, make_event, book):
        """Test that a crash while confirming leaves the payment unpaid so the retry confirms."""
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)
        payload = session_completed(checkout.payment.external_reference, 1500, "pi_crash")
        real_confirm = services.registrations.confirm_payment
        calls = {"n": 0}

        def crash_once(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("worker crashed")
            return real_confirm(*args, **kwargs)

        monkeypatch.setattr(services.registrations, "confirm_payment", crash_once)

        with pytest.raises(RuntimeError):
            deliver(services, payload)

        assert services.payments.get(checkout.payment.id).status == PaymentStatus.CREATED
        assert services.registrations.get(registration.id).status == RegistrationStatus.PENDING_PAYMENT

        retry = deliver(services, payload)

        # Verify
        assert retry.outcome == WebhookOutcome.APPLIED
        assert services.payments.get(checkout.payment.id).status == PaymentStatus.PAID
        assert services.registrations.get(registration.id).status == RegistrationStatus.CONFIRMED

    def test_waitlist_payment_keeps_place(self, services, make_user, make_event, book):
        """Test that an up-front payment leaves the entry on the waitlist."""
        event = make_event(capacity=1)
        book(make_user(), event)
        user = make_user()
        registration = book(user, event)
        checkout = services.payments.start_checkout(user.id, registration.id)

        result = deliver(services, session_completed(checkout.payment.external_reference, 1500, "pi_wait"))

        assert result.outcome == WebhookOutcome.APPLIED
        waiting = services.registrations.get(registration.id)
        assert waiting.status == RegistrationStatus.WAITLISTED
        assert waiting.payment_reference == "pi_wait"
        assert waiting.position == 1

    def test_bad_signature_changes_nothing(self, services, make_user, make_event, book):
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)
        payload = session_completed(checkout.payment.external_reference, 1500)

        with pytest.raises(SignatureVerificationError):
            services.payments.handle_webhook(payload.encode(), sign_payload(payload, secret="whsec_forged"))

        assert services.payments.get(checkout.payment.id).status == PaymentStatus.CREATED
        assert services.registrations.get(registration.id).status == RegistrationStatus.PENDING_PAYMENT


class TestAddGuestsCheckout:
    """Tests for paying for extra guests."""

    @pytest.fixture
    def holding(self, services, make_user, make_event, book):
        user = make_user()
        registration = book(user, make_event(price="12.50"))
        services.registrations.confirm_payment(registration.id, Decimal("12.50"), payment_reference="pi_first")
        services.registrations.add_guests(user.id, registration.id, 2)
        return user, registration

    def test_checkout_charges_held_guests(self, services, gateway, holding):
        """Test that a confirmed registration with held guests pays for those guests only."""
        user, registration = holding

        response = services.payments.start_checkout(user.id, registration.id)

        assert response.payment.purpose == PaymentPurpose.ADD_GUESTS
        assert response.payment.amount == Decimal("25.00")
        assert response.payment.guest_count == 2
        assert gateway.sessions[0]["metadata"]["guest_count"] == "2"
        assert services.registrations.get(registration.id).payment_id is None

    def test_webhook_adds_guests(self, services, holding):
        user, registration = holding
        checkout = services.payments.start_checkout(user.id, registration.id)

        result = deliver(services, session_completed(checkout.payment.external_reference, 2500, "pi_guests"))

        assert result.outcome == WebhookOutcome.APPLIED
        updated = services.registrations.get(registration.id)
        assert updated.guest_count == 2
        assert updated.pending_guest_count == 0
        assert updated.amount_paid == Decimal("37.50")
        assert updated.status == RegistrationStatus.CONFIRMED

    def test_payment_after_hold_released_is_orphaned(self, services, holding):
        """Test that guests are not added once their held places were given up."""
        user, registration = holding
        checkout = services.payments.start_checkout(user.id, registration.id)
        services.registrations.release_guest_hold(registration.id)

        result = deliver(services, session_completed(checkout.payment.external_reference, 2500, "pi_guests_late"))

        assert result.outcome == WebhookOutcome.ORPHANED
        assert services.payments.get(checkout.payment.id).status == PaymentStatus.PAID
        assert services.registrations.get(registration.id).guest_count == 0


class TestPaymentFailed:
    """Tests for failed payment webhooks."""

    def test_failure_leaves_registration_pending(self, services, make_user, make_event, book):
        """Test that a failure does not cancel the registration."""
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)
        payload = stripe_event("checkout.session.async_payment_failed", {"id": checkout.payment.external_reference})

        result = deliver(services, payload)

        assert result.outcome == WebhookOutcome.APPLIED
        assert services.payments.get(checkout.payment.id).status == PaymentStatus.FAILED
        assert services.registrations.get(registration.id).status == RegistrationStatus.PENDING_PAYMENT

    def test_success_after_failure(self, services, make_user, make_event, book):
        """Test that a gateway retry can still succeed."""
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)
        reference = checkout.payment.external_reference

        deliver(services, stripe_event("checkout.session.async_payment_failed", {"id": reference}))
        result = deliver(services, session_completed(reference, 1500, "pi_retry"))

        assert result.outcome == WebhookOutcome.APPLIED
        assert services.registrations.get(registration.id).status == RegistrationStatus.CONFIRMED

    def test_failure_after_success_ignored(self, services, make_user, make_event, book):
        """Test that a paid payment never moves back."""
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)
        reference = checkout.payment.external_reference

        deliver(services, session_completed(reference, 1500, "pi_first"))
        result = deliver(services, stripe_event("checkout.session.expired", {"id": reference}))

        assert result.outcome == WebhookOutcome.DUPLICATE
        assert services.payments.get(checkout.payment.id).status == PaymentStatus.PAID


class TestRefundAndIgnored:
    """Tests for refund and unrelated events."""

    def test_refund_event_marks_payment(self, services, make_user, make_event, book):
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)
        deliver(services, session_completed(checkout.payment.external_reference, 1500, "pi_to_refund"))

        payload = stripe_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_to_refund", "amount_refunded": 1500})
        first = deliver(services, payload)
        second = deliver(services, payload)

        assert first.outcome == WebhookOutcome.APPLIED
        assert second.outcome == WebhookOutcome.DUPLICATE
        assert services.payments.get(checkout.payment.id).status == PaymentStatus.REFUNDED

    def test_unhandled_type_ignored(self, services):
        result = deliver(services, stripe_event("customer.created", {"id": "cus_1"}))

        assert result.outcome == WebhookOutcome.IGNORED


class TestPaymentReads:
    """Tests for listing payments."""

    def test_list_and_captured_lookup(self, services, make_user, make_event, book, now):
        user = make_user()
        registration = book(user, make_event())
        checkout = services.payments.start_checkout(user.id, registration.id)

        assert services.payments.captured_payments_for(registration.id) == []
        deliver(services, session_completed(checkout.payment.external_reference, 1500, "pi_list"))

        assert [p.id for p in services.payments.captured_payments_for(registration.id)] == [checkout.payment.id]
        assert [p.id for p in services.payments.list_payments(user_id=user.id)] == [checkout.payment.id]
        assert services.payments.list_payments(status=PaymentStatus.FAILED) == []
        assert services.payments.total_captured() == Decimal("15.00")
