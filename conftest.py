import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import pytest

from api.deps import build_services
from booking.models import BookingRequest, CreateEventRequest
from common.config import Settings
from common.errors import UpstreamError
from common.notifier import Notifier
from common.storage import InMemoryStorage
from common.users import CreateUserRequest, UserRole
from payments.gateway import StripeGateway
from payments.models import CheckoutSession, PaymentPurpose, RefundResult

WEBHOOK_SECRET = "whsec_test_secret"
CRON_SECRET = "cron-test-secret"


class FakeStripeGateway(StripeGateway):
    """Stripe gateway with the network calls replaced; signature checks stay real."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.sessions: list[dict] = []
        self.refunds: list[dict] = []
        self.fail_refunds = False

    def create_checkout_session(
        self,
        purpose: PaymentPurpose,
        amount: Decimal,
        currency: str,
        metadata: dict,
        description: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        session_id = f"cs_test_{uuid4().hex}"
        self.sessions.append({
            "id": session_id, "purpose": purpose, "amount": amount,
            "currency": currency, "metadata": metadata,
        })
        return CheckoutSession(session_id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def issue_refund(self, payment_reference: str, amount: Decimal, idempotency_key: Optional[str] = None) -> RefundResult:
        if self.fail_refunds:
            raise UpstreamError(f"Refund failed for {payment_reference}: card_declined")
        refund_id = f"re_test_{len(self.refunds) + 1}"
        self.refunds.append({
            "id": refund_id, "reference": payment_reference,
            "amount": amount, "idempotency_key": idempotency_key,
        })
        return RefundResult(refund_id=refund_id, status="succeeded", amount=amount)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple] = []

    def send_booking_confirmation(self, email, event_title, registration_id):
        self.sent.append(("confirmation", email, event_title, registration_id))

    def send_waitlist_promotion(self, email, event_title, payment_link):
        self.sent.append(("promotion", email, event_title, payment_link))

    def send_refund_notice(self, email, event_title, amount):
        self.sent.append(("refund", email, event_title, amount))


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, event_id: Optional[str] = None) -> str:
    return json.dumps({
        "id": event_id or f"evt_{uuid4().hex}",
        "type": event_type,
        "data": {"object": obj},
    })


def session_completed(session_id: str, amount_total: int, payment_intent: str = "pi_test_1") -> str:
    return stripe_event("checkout.session.completed", {
        "id": session_id,
        "object": "checkout.session",
        "payment_intent": payment_intent,
        "amount_total": amount_total,
        "currency": "aud",
        "payment_status": "paid",
        "metadata": {},
    })


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_unused",
        stripe_webhook_secret=WEBHOOK_SECRET,
        cron_secret=CRON_SECRET,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def gateway(settings):
    return FakeStripeGateway(settings)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(storage, settings, gateway, notifier):
    return build_services(storage, settings, gateway, notifier)


@pytest.fixture
def make_user(services):
    counter = {"n": 0}

    def _make_user(role: UserRole = UserRole.MEMBER):
        counter["n"] += 1
        return services.users.create(CreateUserRequest(
            email=f"player{counter['n']}@club.example",
            name=f"Player {counter['n']}",
            role=role,
        ))

    return _make_user


@pytest.fixture
def make_event(services, now):
    def _make_event(capacity: int = 10, price: str = "15.00", reward_points: int = 50, starts_in: timedelta = timedelta(days=7)):
        return services.events.create(CreateEventRequest(
            title="Thursday Social Play",
            starts_at=now + starts_in,
            capacity=capacity,
            price=Decimal(price),
            reward_points=reward_points,
        ))

    return _make_event


@pytest.fixture
def book(services):
    def _book(user, event, guest_count: int = 0, now: Optional[datetime] = None):
        return services.registrations.book(user.id, BookingRequest(event_id=event.id, guest_count=guest_count), now)

    return _book


def move_event_start(services, event_id: int, starts_at: datetime) -> None:
    """Shift an event's start without going through the update guard."""
    services.storage.events[event_id]["starts_at"] = starts_at
