import logging
from typing import Callable

logger = logging.getLogger(__name__)


class Notifier:
    """Outbound member notices. Delivery is fire-and-forget."""

    def send_booking_confirmation(self, email: str, event_title: str, registration_id: str) -> None:
        raise NotImplementedError

    def send_waitlist_promotion(self, email: str, event_title: str, payment_link: str) -> None:
        raise NotImplementedError

    def send_refund_notice(self, email: str, event_title: str, amount: str) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def send_booking_confirmation(self, email: str, event_title: str, registration_id: str) -> None:
        logger.info("Booking confirmation for %s to %s (registration %s)", event_title, email, registration_id)

    def send_waitlist_promotion(self, email: str, event_title: str, payment_link: str) -> None:
        logger.info("Waitlist promotion for %s to %s, pay at %s", event_title, email, payment_link)

    def send_refund_notice(self, email: str, event_title: str, amount: str) -> None:
        logger.info("Refund notice for %s to %s (%s)", event_title, email, amount)


def notify_safely(send: Callable[..., None], *args) -> None:
    try:
        send(*args)
    except Exception:
        logger.exception("Notification %s failed", getattr(send, "__name__", send))
