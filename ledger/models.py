from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionReason(str, Enum):
    EVENT_CLAIM = "event_claim"
    BOOKING_REDEMPTION = "booking_redemption"


class UsePointsRequest(BaseModel):
    points: int = Field(..., ge=0, description="Points to spend on the booking")
    booking_ref: str = Field(..., min_length=1, description="Booking the points are applied to")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "points": 150,
            "booking_ref": "7d9f5e0c-2f7b-4c4e-9a55-1f6f1c1d9b21"
        }
    })


class RewardPointTransaction(BaseModel):
    id: UUID
    user_id: UUID
    delta: int
    reason: TransactionReason
    balance_after: int
    idempotency_key: str
    description: str
    registration_id: Optional[UUID] = None
    event_id: Optional[int] = None
    booking_ref: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_earn(self) -> bool:
        return self.delta > 0


class UserBalance(BaseModel):
    user_id: UUID
    reward_points: int
    total_points_earned: int
    total_points_spent: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[RewardPointTransaction]
    total_count: int
    current_balance: int


class PointsResponse(BaseModel):
    transaction: Optional[RewardPointTransaction] = None
    balance: UserBalance
    message: str


class UnclaimedCountResponse(BaseModel):
    count: int


class ReconciliationReport(BaseModel):
    user_id: UUID
    cached: UserBalance
    derived_points: int
    derived_earned: int
    derived_spent: int
    consistent: bool
