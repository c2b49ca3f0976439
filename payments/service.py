import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from booking.models import RegistrationStatus
from booking.service import RegistrationService
from common.config import Settings
from common.errors import (
    ConflictError,
    InvalidRequestError,
    PaymentNotFoundError,
    RegistrationNotFoundError,
)
from common.storage import InMemoryStorage

from .gateway import PaymentGateway
from .models import (
    PAYMENT_TRANSITIONS,
    CheckoutResponse,
    GatewayEvent,
    GatewayEventType,
    Payment,
    PaymentPurpose,
    PaymentStatus,
    WebhookOutcome,
    WebhookResult,
)

logger = logging.getLogger(__name__)


class PaymentService:
    """Checkout creation and webhook reconciliation.

    The payment status field is written only by ``handle_webhook``; the
    external payment reference is the idempotency key, looked up before any
    change is applied.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        gateway: PaymentGateway,
        registrations: RegistrationService,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.gateway = gateway
        self.registrations = registrations
        self.settings = settings or Settings()

    def start_checkout(self, user_id: UUID, registration_id: UUID) -> CheckoutResponse:
        """Open a checkout for whatever the registration currently owes.

        A pending registration pays for its party, a waitlisted one may pay
        up front, and a confirmed one pays for guest places it is holding.
        """
        registration = self.registrations.get(registration_id)
        if registration.user_id != user_id:
            raise RegistrationNotFoundError(f"Registration {registration_id} not found")

        guest_count = None
        if registration.status == RegistrationStatus.PENDING_PAYMENT:
            purpose, places = PaymentPurpose.PLAY, registration.seats
        elif registration.status == RegistrationStatus.WAITLISTED and not registration.has_paid:
            purpose, places = PaymentPurpose.WAITLIST, registration.seats
        elif registration.status == RegistrationStatus.CONFIRMED and registration.pending_guest_count:
            purpose, places = PaymentPurpose.ADD_GUESTS, registration.pending_guest_count
            guest_count = registration.pending_guest_count
        else:
            raise ConflictError(
                f"Registration {registration_id} in {registration.status.value} state does not need payment"
            )

        event = self.registrations.events.get(registration.event_id)
        amount = event.price * places
        if amount <= 0:
            raise InvalidRequestError(f"Event {event.id} has no price to pay")

        user = self.registrations.users.get(user_id)
        now = datetime.now(timezone.utc)
        payment_id = uuid4()
        metadata = {
            "payment_id": str(payment_id),
            "user_id": str(user_id),
            "registration_id": str(registration_id),
            "event_id": str(event.id),
        }
        if guest_count:
            metadata["guest_count"] = str(guest_count)
            description = f"{guest_count} extra guests for {event.title}"
        else:
            description = f"Registration for {event.title}"
        session = self.gateway.create_checkout_session(
            purpose=purpose,
            amount=amount,
            currency=event.currency,
            metadata=metadata,
            description=description,
            customer_email=user.email,
        )

        with self.storage.transaction():
            payment_data = self.storage.payments.insert(payment_id, {
                "id": payment_id,
                "user_id": user_id,
                "external_reference": session.session_id,
                "payment_intent_id": None,
                "status": PaymentStatus.CREATED,
                "amount": amount,
                "currency": event.currency,
                "purpose": purpose,
                "registration_id": registration_id,
                "order_id": None,
                "guest_count": guest_count,
                "orphaned": False,
                "refund_reference": None,
                "checkout_url": session.url,
                "created_at": now,
                "updated_at": now,
            })
            if purpose != PaymentPurpose.ADD_GUESTS:
                self.registrations.attach_payment(registration_id, payment_id)
            payment = Payment(**payment_data)

        logger.info("Checkout %s started for registration %s (%s)", session.session_id, registration_id, amount)
        return CheckoutResponse(payment=payment, checkout_url=session.url)

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        event = self.gateway.verify_webhook(payload, signature)
        logger.info("Webhook %s received (%s)", event.id, event.source_type)

        if event.type == GatewayEventType.PAYMENT_SUCCEEDED:
            return self._payment_succeeded(event)
        if event.type == GatewayEventType.PAYMENT_FAILED:
            return self._payment_failed(event)
        if event.type == GatewayEventType.REFUND_SUCCEEDED:
            return self._refund_succeeded(event)

        logger.info("Unhandled webhook type %s", event.source_type)
        return self._result(event, WebhookOutcome.IGNORED)

    def _payment_succeeded(self, event: GatewayEvent) -> WebhookResult:
        # The paid status and the registration change commit together; a
        # failure leaves the payment unpaid so the gateway retry reapplies it.
        with self.storage.transaction():
            payment_data = self._find_record(event)
            if not payment_data:
                logger.error("Payment succeeded for unknown reference %s", event.external_reference or event.payment_intent_id)
                return self._result(event, WebhookOutcome.UNKNOWN_PAYMENT)
            if payment_data["status"] in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
                logger.info("Payment %s already %s; webhook %s ignored", payment_data["id"], payment_data["status"].value, event.id)
                return self._result(event, WebhookOutcome.DUPLICATE, payment_data)

            self._set_status(payment_data, PaymentStatus.PAID, event)
            if event.amount is not None:
                payment_data["amount"] = event.amount

            try:
                self._apply_to_registration(payment_data)
            except ConflictError as e:
                logger.error(
                    "Payment %s captured but registration %s could not take it: %s",
                    payment_data["id"], payment_data["registration_id"], e,
                )
                payment_data["orphaned"] = True
                return self._result(event, WebhookOutcome.ORPHANED, payment_data)

            return self._result(event, WebhookOutcome.APPLIED, payment_data)

    def _apply_to_registration(self, payment_data: dict) -> None:
        registration_id = payment_data["registration_id"]
        if registration_id is None:
            return

        purpose = payment_data["purpose"]
        reference = payment_data["payment_intent_id"] or payment_data["external_reference"]
        if purpose == PaymentPurpose.PLAY:
            self.registrations.confirm_payment(
                registration_id, payment_data["amount"], payment_data["id"], reference
            )
        elif purpose == PaymentPurpose.WAITLIST:
            self.registrations.record_waitlist_payment(
                registration_id, payment_data["amount"], payment_data["id"], reference
            )
        elif purpose == PaymentPurpose.ADD_GUESTS:
            self.registrations.confirm_guests(
                registration_id, payment_data["guest_count"] or 0, payment_data["amount"], reference
            )

    def _payment_failed(self, event: GatewayEvent) -> WebhookResult:
        with self.storage.transaction():
            payment_data = self._find_record(event)
            if not payment_data:
                logger.warning("Payment failed for unknown reference %s", event.external_reference or event.payment_intent_id)
                return self._result(event, WebhookOutcome.UNKNOWN_PAYMENT)
            if PaymentStatus.FAILED not in PAYMENT_TRANSITIONS[payment_data["status"]]:
                return self._result(event, WebhookOutcome.DUPLICATE, payment_data)
            self._set_status(payment_data, PaymentStatus.FAILED, event)

        logger.info("Payment %s failed; registration %s left awaiting payment", payment_data["id"], payment_data["registration_id"])
        return self._result(event, WebhookOutcome.APPLIED, payment_data)

    def _refund_succeeded(self, event: GatewayEvent) -> WebhookResult:
        with self.storage.transaction():
            payment_data = self._find_record(event)
            if not payment_data:
                logger.warning("Refund for unknown reference %s", event.payment_intent_id)
                return self._result(event, WebhookOutcome.UNKNOWN_PAYMENT)
            if PaymentStatus.REFUNDED not in PAYMENT_TRANSITIONS[payment_data["status"]]:
                return self._result(event, WebhookOutcome.DUPLICATE, payment_data)
            self._set_status(payment_data, PaymentStatus.REFUNDED, event)

        return self._result(event, WebhookOutcome.APPLIED, payment_data)

    def _set_status(self, payment_data: dict, status: PaymentStatus, event: GatewayEvent) -> None:
        current = payment_data["status"]
        if status not in PAYMENT_TRANSITIONS[current]:
            raise ConflictError(f"Payment {payment_data['id']} cannot move from {current.value} to {status.value}")
        payment_data["status"] = status
        payment_data["updated_at"] = datetime.now(timezone.utc)
        if event.payment_intent_id and not payment_data["payment_intent_id"]:
            payment_data["payment_intent_id"] = event.payment_intent_id
        logger.info("Payment %s %s -> %s", payment_data["id"], current.value, status.value)

    def _find_record(self, event: GatewayEvent) -> Optional[dict]:
        references = {ref for ref in (event.external_reference, event.payment_intent_id) if ref}
        for payment_data in self.storage.payments.values():
            if payment_data["external_reference"] in references or payment_data["payment_intent_id"] in references:
                return payment_data
        return None

    @staticmethod
    def _result(event: GatewayEvent, outcome: WebhookOutcome, payment_data: Optional[dict] = None) -> WebhookResult:
        return WebhookResult(
            event_id=event.id,
            event_type=event.source_type,
            outcome=outcome,
            payment_id=payment_data["id"] if payment_data else None,
            registration_id=payment_data["registration_id"] if payment_data else None,
        )

    # Refund bookkeeping

    def record_refund(self, payment_id: UUID, refund_reference: str) -> Payment:
        """Note that a refund was issued; the status itself follows the refund webhook."""
        with self.storage.transaction():
            payment_data = self.get_record(payment_id)
            payment_data["refund_reference"] = refund_reference
            payment_data["updated_at"] = datetime.now(timezone.utc)
            return Payment(**payment_data)

    # Reads

    def get(self, payment_id: UUID) -> Payment:
        with self.storage.read():
            return Payment(**self.get_record(payment_id))

    def get_record(self, payment_id: UUID) -> dict:
        payment_data = self.storage.payments.get(payment_id)
        if not payment_data:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return payment_data

    def list_payments(
        self,
        user_id: Optional[UUID] = None,
        status: Optional[PaymentStatus] = None,
        registration_id: Optional[UUID] = None,
    ) -> list[Payment]:
        with self.storage.read():
            payments = [
                Payment(**p) for p in self.storage.payments.values()
                if (user_id is None or p["user_id"] == user_id)
                and (status is None or p["status"] == status)
                and (registration_id is None or p["registration_id"] == registration_id)
            ]
        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments

    def captured_payments_for(self, registration_id: UUID) -> list[Payment]:
        """Paid, not yet refunded payments that a registration's refund must return."""
        with self.storage.read():
            payments = [
                Payment(**p) for p in self.storage.payments.values()
                if p["registration_id"] == registration_id
                and p["status"] == PaymentStatus.PAID
                and not p["orphaned"]
                and p["refund_reference"] is None
            ]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def orphaned_payments(self) -> list[Payment]:
        """Captured payments that no registration took and nobody has refunded yet."""
        with self.storage.read():
            payments = [
                Payment(**p) for p in self.storage.payments.values()
                if p["orphaned"] and p["status"] == PaymentStatus.PAID and p["refund_reference"] is None
            ]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def total_captured(self) -> Decimal:
        with self.storage.read():
            return sum(
                (p["amount"] for p in self.storage.payments.values() if p["status"] == PaymentStatus.PAID),
                Decimal("0.00"),
            )
