"""
Event bookings and the registration lifecycle

This module provides:
- Capacity-checked bookings with a FIFO waitlist per event
- Registration lifecycle: pending_payment → confirmed → completed, with
  cancellation, expiry and refund exits
- Transition table shared by user, webhook, admin and sweep paths
"""

from .models import (
    RegistrationStatus,
    Event,
    Registration,
)
from .service import RegistrationService
from .state_machine import Trigger, next_status

__all__ = [
    "RegistrationStatus",
    "Event",
    "Registration",
    "RegistrationService",
    "Trigger",
    "next_status",
]
