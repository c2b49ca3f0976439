from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class PaymentStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# Monotonic: a payment never moves back once paid, and never leaves refunded.
PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset] = {
    PaymentStatus.CREATED: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PAID}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


class PaymentPurpose(str, Enum):
    PLAY = "play"
    ADD_GUESTS = "add_guests"
    WAITLIST = "waitlist"
    SHOP = "shop"


class GatewayEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    REFUND_SUCCEEDED = "refund_succeeded"
    IGNORED = "ignored"


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_PAYMENT = "unknown_payment"
    ORPHANED = "orphaned"
    IGNORED = "ignored"


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None


class RefundResult(BaseModel):
    refund_id: str
    status: str
    amount: Decimal


class GatewayEvent(BaseModel):
    id: str
    type: GatewayEventType
    source_type: str
    external_reference: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class Payment(BaseModel):
    id: UUID
    user_id: UUID
    external_reference: Optional[str] = None
    payment_intent_id: Optional[str] = None
    status: PaymentStatus
    amount: Decimal
    currency: str
    purpose: PaymentPurpose
    registration_id: Optional[UUID] = None
    order_id: Optional[str] = None
    guest_count: Optional[int] = None
    orphaned: bool = False
    refund_reference: Optional[str] = None
    checkout_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def gateway_reference(self) -> Optional[str]:
        return self.payment_intent_id or self.external_reference


class CheckoutRequest(BaseModel):
    registration_id: UUID


class CheckoutResponse(BaseModel):
    payment: Payment
    checkout_url: Optional[str] = None


class WebhookResult(BaseModel):
    event_id: str
    event_type: str
    outcome: WebhookOutcome
    payment_id: Optional[UUID] = None
    registration_id: Optional[UUID] = None
