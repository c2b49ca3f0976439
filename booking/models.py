from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator


class RegistrationStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    WAITLISTED = "waitlisted"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    COMPLETED = "completed"


CAPACITY_HOLDING = (RegistrationStatus.PENDING_PAYMENT, RegistrationStatus.CONFIRMED)
ACTIVE = (RegistrationStatus.PENDING_PAYMENT, RegistrationStatus.CONFIRMED, RegistrationStatus.WAITLISTED)

MAX_GUESTS = 10


class CreateEventRequest(BaseModel):
    title: str = Field(..., min_length=3, max_length=200)
    starts_at: datetime
    capacity: int = Field(..., gt=0)
    price: Decimal = Field(default=Decimal("0.00"), ge=0)
    currency: str = Field(default="aud", min_length=3, max_length=3)
    reward_points: int = Field(default=0, ge=0)

    @field_validator("starts_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "title": "Thursday Social Play",
            "starts_at": "2026-11-05T18:30:00+10:00",
            "capacity": 24,
            "price": 15.00,
            "currency": "aud",
            "reward_points": 50
        }
    })


class UpdateEventRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=3, max_length=200)
    starts_at: Optional[datetime] = None
    capacity: Optional[int] = Field(default=None, gt=0)
    price: Optional[Decimal] = Field(default=None, ge=0)
    reward_points: Optional[int] = Field(default=None, ge=0)

    @field_validator("starts_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None or value.tzinfo:
            return value
        return value.replace(tzinfo=timezone.utc)


class Event(BaseModel):
    id: int
    title: str
    starts_at: datetime
    capacity: int
    price: Decimal
    currency: str = "aud"
    reward_points: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EventAvailability(BaseModel):
    event: Event
    occupied: int
    remaining_capacity: int
    waitlist_length: int
    guests_waiting: int = 0


class BookingRequest(BaseModel):
    event_id: int
    guest_count: int = Field(default=0, ge=0, le=MAX_GUESTS)


class GuestsRequest(BaseModel):
    count: int = Field(..., ge=1, le=MAX_GUESTS)


class StatusUpdateRequest(BaseModel):
    status: RegistrationStatus
    performed_by: Optional[str] = None


class Registration(BaseModel):
    id: UUID
    user_id: UUID
    event_id: int
    status: RegistrationStatus
    guest_count: int = 0
    amount_paid: Decimal = Decimal("0.00")
    payment_id: Optional[UUID] = None
    payment_reference: Optional[str] = None
    refund_reference: Optional[str] = None
    points_claimed: bool = False
    position: Optional[int] = None
    sequence: int
    pending_payment_expires_at: Optional[datetime] = None
    pending_guest_count: int = 0
    guest_hold_expires_at: Optional[datetime] = None
    waitlisted_guest_count: int = 0
    guest_waitlist_sequence: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def seats(self) -> int:
        return 1 + self.guest_count

    @property
    def has_paid(self) -> bool:
        return self.payment_reference is not None


class BookingResponse(BaseModel):
    registration: Registration
    message: str


class SweepError(BaseModel):
    subject: str
    error: str


class SweepResult(BaseModel):
    job: str
    ran_at: datetime
    processed: int = 0
    expired: int = 0
    promoted: int = 0
    completed: int = 0
    refunded: int = 0
    guest_holds_released: int = 0
    errors: list[SweepError] = Field(default_factory=list)
