import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


@dataclass
class Settings:
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_currency: str = "aud"
    frontend_url: str = "http://localhost:5173"
    cron_secret: Optional[str] = None
    pending_payment_timeout_hours: int = 24
    webhook_tolerance_seconds: int = 300
    log_level: str = "INFO"

    @property
    def pending_payment_timeout(self) -> timedelta:
        return timedelta(hours=self.pending_payment_timeout_hours)

    @property
    def payment_link_base(self) -> str:
        return f"{self.frontend_url.rstrip('/')}/play/payment?pending="

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            stripe_currency=os.getenv("STRIPE_CURRENCY", "aud").lower(),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
            cron_secret=os.getenv("CRON_SECRET"),
            pending_payment_timeout_hours=int(os.getenv("PENDING_PAYMENT_TIMEOUT_HOURS", "24")),
            webhook_tolerance_seconds=int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
