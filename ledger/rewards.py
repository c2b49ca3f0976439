import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from booking.events import EventRepository
from booking.models import RegistrationStatus
from common.errors import AlreadyClaimedError, InsufficientBalanceError, InvalidRequestError, RegistrationNotFoundError
from common.storage import InMemoryStorage

from .models import TransactionReason, PointsResponse
from .service import LedgerService

logger = logging.getLogger(__name__)


def claim_key(user_id: UUID, event_id: int) -> str:
    return f"claim:{user_id}:{event_id}"


class RewardService:
    """Earning and spending reward points on top of the ledger."""

    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: Optional[LedgerService] = None,
        events: Optional[EventRepository] = None,
    ):
        self.storage = storage
        self.ledger = ledger or LedgerService(storage)
        self.events = events or EventRepository(storage)

    def claim_points_for_event(self, user_id: UUID, event_id: int) -> PointsResponse:
        with self.storage.transaction():
            self.ledger.users.get_record(user_id)
            registrations = [
                r for r in self.storage.registrations.values()
                if r["user_id"] == user_id and r["event_id"] == event_id
                and r["status"] == RegistrationStatus.COMPLETED
            ]
            if not registrations:
                raise RegistrationNotFoundError(
                    f"No completed registration for user {user_id} and event {event_id}"
                )

            reg_data = registrations[0]
            key = claim_key(user_id, event_id)
            if reg_data["points_claimed"] or self.ledger.find_by_idempotency_key(key):
                raise AlreadyClaimedError(f"Points for event {event_id} were already claimed")

            event = self.events.get(event_id)
            transaction = self.ledger.append(
                user_id=user_id,
                delta=event.reward_points,
                reason=TransactionReason.EVENT_CLAIM,
                idempotency_key=key,
                description=f"Claimed points for {event.title}",
                registration_id=reg_data["id"],
                event_id=event_id,
            )
            reg_data["points_claimed"] = True
            reg_data["updated_at"] = datetime.now(timezone.utc)

        return PointsResponse(
            transaction=transaction,
            balance=self.ledger.get_balance(user_id),
            message="Points claimed successfully",
        )

    def use_points_for_booking(self, user_id: UUID, points: int, booking_ref: str) -> PointsResponse:
        if points < 0:
            raise InvalidRequestError("Points to spend must not be negative")

        with self.storage.transaction():
            user_data = self.ledger.users.get_record(user_id)
            if points > user_data["reward_points"]:
                raise InsufficientBalanceError(
                    f"Cannot spend {points} points with a balance of {user_data['reward_points']}"
                )
            if points == 0:
                return PointsResponse(
                    balance=self.ledger.get_balance(user_id),
                    message="No points used",
                )

            spend_index = self.storage.next_value(f"spend:{user_id}")
            transaction = self.ledger.append(
                user_id=user_id,
                delta=-points,
                reason=TransactionReason.BOOKING_REDEMPTION,
                idempotency_key=f"spend:{user_id}:{booking_ref}:{spend_index}",
                description=f"Used {points} points for booking {booking_ref}",
                booking_ref=booking_ref,
            )

        return PointsResponse(
            transaction=transaction,
            balance=self.ledger.get_balance(user_id),
            message="Points used successfully",
        )

    def get_unclaimed_points_count(self, user_id: UUID) -> int:
        self.ledger.users.get_record(user_id)
        with self.storage.read():
            return sum(
                1 for r in self.storage.registrations.values()
                if r["user_id"] == user_id
                and r["status"] == RegistrationStatus.COMPLETED
                and not r["points_claimed"]
            )
