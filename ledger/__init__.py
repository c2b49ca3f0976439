"""
Reward points ledger for club members

This module provides:
- Append-only point transactions with idempotency keys
- Cached balances kept in step with the log, rebuildable from it
- Claiming points for completed events and spending them on bookings
- Reconciliation reports for admins
"""

from .models import (
    TransactionReason,
    RewardPointTransaction,
    UserBalance,
)
from .service import LedgerService
from .rewards import RewardService

__all__ = [
    "TransactionReason",
    "RewardPointTransaction",
    "UserBalance",
    "LedgerService",
    "RewardService",
]
