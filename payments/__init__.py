"""
Payments and gateway reconciliation

This module provides:
- Stripe checkout sessions for registrations
- Verified webhook handling keyed by the external payment reference
- Refund issuance for the reconciliation sweeps
"""

from .models import PaymentStatus, Payment, WebhookOutcome
from .gateway import PaymentGateway, StripeGateway

__all__ = [
    "PaymentStatus",
    "Payment",
    "WebhookOutcome",
    "PaymentGateway",
    "StripeGateway",
]
