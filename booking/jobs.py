"""
Scheduled reconciliation sweeps.

Each sweep is safe to run repeatedly and concurrently with user traffic:
work is split into small units (one event or one registration), each in its
own storage transaction, and a failing unit is reported in the result while
the rest of the sweep carries on.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from common.notifier import notify_safely
from payments.gateway import PaymentGateway
from payments.models import Payment
from payments.service import PaymentService

from .models import RegistrationStatus, SweepError, SweepResult
from .service import RegistrationService

logger = logging.getLogger(__name__)

REFUNDABLE = (RegistrationStatus.CANCELLED, RegistrationStatus.WAITLISTED)


def refund_key(payment_id) -> str:
    return f"refund_{payment_id}"


class ReconciliationJobs:
    def __init__(
        self,
        registrations: RegistrationService,
        payments: PaymentService,
        gateway: PaymentGateway,
    ):
        self.registrations = registrations
        self.payments = payments
        self.gateway = gateway
        self.storage = registrations.storage
        self.events = registrations.events

    def expire_pending_and_promote(self, now: Optional[datetime] = None) -> SweepResult:
        """Expire unpaid holds past their window and refill the freed places.

        Runs over every event, including ones that have started: their stale
        holds still expire, and promotion is skipped for them.
        """
        now = now or datetime.now(timezone.utc)
        result = SweepResult(job="expire_pending_and_promote", ran_at=now)

        for event in self.events.list_events():
            try:
                expired, released, promoted = self._expire_event(event.id, now)
            except Exception as e:
                logger.exception("Expiry sweep failed for event %s", event.id)
                result.errors.append(SweepError(subject=f"event:{event.id}", error=str(e)))
                continue
            result.processed += 1
            result.expired += expired
            result.guest_holds_released += released
            result.promoted += promoted

        logger.info(
            "Expiry sweep: %d expired, %d guest holds released, %d promoted, %d errors",
            result.expired, result.guest_holds_released, result.promoted, len(result.errors),
        )
        return result

    def _expire_event(self, event_id: int, now: datetime) -> tuple[int, int, int]:
        with self.storage.transaction():
            waiting = self._waiting(event_id)
            stale = [
                r for r in self.registrations.list_registrations(
                    event_id=event_id, status=RegistrationStatus.PENDING_PAYMENT
                )
                if r.pending_payment_expires_at is not None and r.pending_payment_expires_at <= now
            ]
            for registration in stale:
                self.registrations.expire(registration.id, now)
            stale_guests = [
                r for r in self.registrations.list_registrations(
                    event_id=event_id, status=RegistrationStatus.CONFIRMED
                )
                if r.pending_guest_count and r.guest_hold_expires_at is not None and r.guest_hold_expires_at <= now
            ]
            for registration in stale_guests:
                self.registrations.release_guest_hold(registration.id, now)
            # Also picks up room left by a capacity increase.
            self.registrations.promote_waitlist(event_id, now)
            promoted = len(waiting - self._waiting(event_id))
        return len(stale), len(stale_guests), promoted

    def _waiting(self, event_id: int) -> set:
        waiting = {("spot", r.id) for r in self.registrations.waitlist(event_id)}
        waiting |= {("guests", r.id) for r in self.registrations.guest_waitlist(event_id)}
        return waiting

    def complete_past_events(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or datetime.now(timezone.utc)
        result = SweepResult(job="complete_past_events", ran_at=now)

        started = {e.id for e in self.events.list_events() if self.events.has_started(e, now)}
        confirmed = [
            r for r in self.registrations.list_registrations(status=RegistrationStatus.CONFIRMED)
            if r.event_id in started
        ]
        for registration in confirmed:
            try:
                self.registrations.complete(registration.id, now)
            except Exception as e:
                logger.exception("Could not complete registration %s", registration.id)
                result.errors.append(SweepError(subject=f"registration:{registration.id}", error=str(e)))
                continue
            result.processed += 1
            result.completed += 1

        logger.info("Completion sweep: %d completed, %d errors", result.completed, len(result.errors))
        return result

    def process_refunds(self, now: Optional[datetime] = None) -> SweepResult:
        """Refund captured payments for registrations that will never be played.

        Cancelled and still-waitlisted registrations are refunded once their
        event has started. Orphaned payments (captured after the registration
        could no longer take them) are refunded on the next run. Gateway calls
        happen outside any transaction and each refund is recorded on its
        payment as soon as it is accepted, so a failure part way is retried
        by the next run without refunding anything twice.
        """
        now = now or datetime.now(timezone.utc)
        result = SweepResult(job="process_refunds", ran_at=now)

        started = {e.id: e for e in self.events.list_events() if self.events.has_started(e, now)}
        candidates = [
            r for r in self.registrations.list_registrations()
            if r.status in REFUNDABLE and r.event_id in started and r.refund_reference is None
        ]
        for registration in candidates:
            try:
                payments = [p for p in self.payments.captured_payments_for(registration.id) if p.gateway_reference]
                if not payments:
                    continue
                result.processed += 1
                refund_ids = [self._refund(payment) for payment in payments]
                self.registrations.mark_refunded(registration.id, refund_ids[-1], now)
            except Exception as e:
                logger.exception("Refund failed for registration %s", registration.id)
                result.errors.append(SweepError(subject=f"registration:{registration.id}", error=str(e)))
                continue

            result.refunded += 1
            amount = sum(p.amount for p in payments)
            logger.info("Refunded %s for registration %s", amount, registration.id)
            self._notify_refund(registration.user_id, started[registration.event_id].title, amount)

        for payment in self.payments.orphaned_payments():
            if not payment.gateway_reference:
                continue
            result.processed += 1
            try:
                self._refund(payment)
            except Exception as e:
                logger.exception("Refund failed for orphaned payment %s", payment.id)
                result.errors.append(SweepError(subject=f"payment:{payment.id}", error=str(e)))
                continue

            result.refunded += 1
            logger.info("Refunded orphaned payment %s (%s)", payment.id, payment.amount)
            self._notify_refund(payment.user_id, self._event_title(payment.registration_id), payment.amount)

        logger.info("Refund sweep: %d refunded, %d errors", result.refunded, len(result.errors))
        return result

    def _refund(self, payment: Payment) -> str:
        refund = self.gateway.issue_refund(
            payment.gateway_reference, payment.amount, idempotency_key=refund_key(payment.id)
        )
        self.payments.record_refund(payment.id, refund.refund_id)
        return refund.refund_id

    def _event_title(self, registration_id) -> str:
        if registration_id is None:
            return "your booking"
        return self.events.get(self.registrations.get(registration_id).event_id).title

    def _notify_refund(self, user_id, event_title: str, amount) -> None:
        user = self.registrations.users.find(user_id)
        if user:
            notify_safely(self.registrations.notifier.send_refund_notice, user.email, event_title, str(amount))
