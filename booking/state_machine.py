"""
Registration lifecycle as an explicit transition table.

Pure data and lookups, no I/O: every status change in the booking service
goes through ``next_status`` so an invalid move is rejected in one place.
"""

from enum import Enum
from typing import Optional

from common.errors import InvalidStateTransitionError

from .models import RegistrationStatus


class Trigger(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    EXPIRE = "expire"
    PROMOTE = "promote"
    CANCEL = "cancel"
    REFUND = "refund"
    COMPLETE = "complete"


TRANSITIONS: dict[tuple[RegistrationStatus, Trigger], RegistrationStatus] = {
    (RegistrationStatus.PENDING_PAYMENT, Trigger.PAYMENT_SUCCEEDED): RegistrationStatus.CONFIRMED,
    (RegistrationStatus.PENDING_PAYMENT, Trigger.EXPIRE): RegistrationStatus.EXPIRED,
    (RegistrationStatus.PENDING_PAYMENT, Trigger.CANCEL): RegistrationStatus.CANCELLED,
    (RegistrationStatus.WAITLISTED, Trigger.PROMOTE): RegistrationStatus.PENDING_PAYMENT,
    (RegistrationStatus.WAITLISTED, Trigger.CANCEL): RegistrationStatus.CANCELLED,
    (RegistrationStatus.WAITLISTED, Trigger.REFUND): RegistrationStatus.REFUNDED,
    (RegistrationStatus.CONFIRMED, Trigger.CANCEL): RegistrationStatus.CANCELLED,
    (RegistrationStatus.CONFIRMED, Trigger.COMPLETE): RegistrationStatus.COMPLETED,
    (RegistrationStatus.CANCELLED, Trigger.REFUND): RegistrationStatus.REFUNDED,
}

TERMINAL = frozenset({
    RegistrationStatus.EXPIRED,
    RegistrationStatus.REFUNDED,
    RegistrationStatus.COMPLETED,
})

# Statuses an admin may request directly, with the trigger that produces them.
ADMIN_TRIGGERS: dict[RegistrationStatus, Trigger] = {
    RegistrationStatus.CONFIRMED: Trigger.PAYMENT_SUCCEEDED,
    RegistrationStatus.CANCELLED: Trigger.CANCEL,
    RegistrationStatus.COMPLETED: Trigger.COMPLETE,
    RegistrationStatus.EXPIRED: Trigger.EXPIRE,
}


def can_apply(status: RegistrationStatus, trigger: Trigger) -> bool:
    return (status, trigger) in TRANSITIONS


def next_status(status: RegistrationStatus, trigger: Trigger) -> RegistrationStatus:
    target = TRANSITIONS.get((status, trigger))
    if target is None:
        raise InvalidStateTransitionError(
            f"Cannot {trigger.value} a registration in {status.value} state"
        )
    return target


def allowed_triggers(status: RegistrationStatus) -> list[Trigger]:
    return [trigger for (source, trigger) in TRANSITIONS if source == status]


def admin_trigger_for(target: RegistrationStatus) -> Optional[Trigger]:
    return ADMIN_TRIGGERS.get(target)
