import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from common.errors import ConflictError, InvariantViolationError
from common.storage import InMemoryStorage
from common.users import UserRepository

from .models import (
    TransactionReason,
    RewardPointTransaction,
    UserBalance,
    LedgerHistoryResponse,
    ReconciliationReport,
)

logger = logging.getLogger(__name__)


class IdempotencyConflictError(ConflictError):
    pass


class LedgerService:
    """Append-only reward point log with the cached balance on the user record.

    The log is the source of truth. ``reward_points``, ``total_points_earned``
    and ``total_points_spent`` on the user are a cache that is written in the
    same unit of work as each append and can be rebuilt from the log.
    """

    def __init__(self, storage: InMemoryStorage, users: Optional[UserRepository] = None):
        self.storage = storage
        self.users = users or UserRepository(storage)

    def append(
        self,
        user_id: UUID,
        delta: int,
        reason: TransactionReason,
        idempotency_key: str,
        description: str,
        registration_id: Optional[UUID] = None,
        event_id: Optional[int] = None,
        booking_ref: Optional[str] = None,
    ) -> RewardPointTransaction:
        with self.storage.transaction():
            user_data = self.users.get_record(user_id)

            if idempotency_key in self.storage.idempotency_index:
                raise IdempotencyConflictError(f"Transaction {idempotency_key} already recorded")

            self._assert_consistent(user_data)

            new_balance = user_data["reward_points"] + delta
            if new_balance < 0:
                logger.critical(
                    "Refusing ledger append for user %s: balance %s would become %s",
                    user_id, user_data["reward_points"], new_balance,
                )
                raise InvariantViolationError(f"Balance for user {user_id} would go negative")

            entry_data = {
                "id": uuid4(),
                "user_id": user_id,
                "delta": delta,
                "reason": reason,
                "balance_after": new_balance,
                "idempotency_key": idempotency_key,
                "description": description,
                "registration_id": registration_id,
                "event_id": event_id,
                "booking_ref": booking_ref,
                "created_at": datetime.now(timezone.utc),
            }

            entry_data = self.storage.point_transactions.insert(entry_data["id"], entry_data)
            self.storage.idempotency_index[idempotency_key] = entry_data["id"]

            user_data["reward_points"] = new_balance
            if delta > 0:
                user_data["total_points_earned"] += delta
            else:
                user_data["total_points_spent"] += -delta

        logger.info("Ledger %s %+d for user %s (balance %d)", reason.value, delta, user_id, new_balance)
        return RewardPointTransaction(**entry_data)

    def get_balance(self, user_id: UUID) -> UserBalance:
        with self.storage.read():
            user_data = self.users.get_record(user_id)
            entries = self._entries(user_id)
            last_entry = entries[-1] if entries else None

            return UserBalance(
                user_id=user_id,
                reward_points=user_data["reward_points"],
                total_points_earned=user_data["total_points_earned"],
                total_points_spent=user_data["total_points_spent"],
                total_entries=len(entries),
                last_transaction_at=last_entry["created_at"] if last_entry else None,
            )

    def get_ledger_history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.storage.read():
            user_data = self.users.get_record(user_id)
            current_balance = user_data["reward_points"]
            all_entries = [RewardPointTransaction(**e) for e in reversed(self._entries(user_id))]
        paginated = all_entries[offset:offset + limit]

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=current_balance,
        )

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[RewardPointTransaction]:
        entry_id = self.storage.idempotency_index.get(idempotency_key)
        if entry_id:
            entry_data = self.storage.point_transactions.get(entry_id)
            if entry_data:
                return RewardPointTransaction(**entry_data)
        return None

    def reconcile(self, user_id: UUID) -> ReconciliationReport:
        with self.storage.read():
            points, earned, spent = self._derive(user_id)
            cached = self.get_balance(user_id)
        consistent = (
            cached.reward_points == points
            and cached.total_points_earned == earned
            and cached.total_points_spent == spent
            and cached.reward_points == cached.total_points_earned - cached.total_points_spent
        )
        return ReconciliationReport(
            user_id=user_id,
            cached=cached,
            derived_points=points,
            derived_earned=earned,
            derived_spent=spent,
            consistent=consistent,
        )

    def rebuild_balance(self, user_id: UUID) -> UserBalance:
        with self.storage.transaction():
            user_data = self.users.get_record(user_id)
            points, earned, spent = self._derive(user_id)
            if user_data["reward_points"] != points:
                logger.warning(
                    "Rebuilding cached balance for user %s: %s -> %s",
                    user_id, user_data["reward_points"], points,
                )
            user_data["reward_points"] = points
            user_data["total_points_earned"] = earned
            user_data["total_points_spent"] = spent
        return self.get_balance(user_id)

    def _assert_consistent(self, user_data: dict) -> None:
        points, earned, spent = self._derive(user_data["id"])
        if (
            user_data["reward_points"] != points
            or user_data["total_points_earned"] != earned
            or user_data["total_points_spent"] != spent
        ):
            logger.critical(
                "Cached balance for user %s disagrees with ledger: cached=%s/%s/%s log=%s/%s/%s",
                user_data["id"], user_data["reward_points"], user_data["total_points_earned"],
                user_data["total_points_spent"], points, earned, spent,
            )
            raise InvariantViolationError(f"Balance for user {user_data['id']} does not match its ledger")

    def _derive(self, user_id: UUID) -> tuple[int, int, int]:
        entries = self._entries(user_id)
        earned = sum(e["delta"] for e in entries if e["delta"] > 0)
        spent = -sum(e["delta"] for e in entries if e["delta"] < 0)
        return earned - spent, earned, spent

    def _entries(self, user_id: UUID) -> list[dict]:
        with self.storage.read():
            return [e for e in self.storage.point_transactions.values() if e["user_id"] == user_id]
