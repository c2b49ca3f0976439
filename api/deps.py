import hmac
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Header, HTTPException, Request, status

from booking.events import EventRepository
from booking.jobs import ReconciliationJobs
from booking.service import RegistrationService
from common.config import Settings
from common.notifier import LoggingNotifier, Notifier
from common.storage import InMemoryStorage
from common.users import UserRepository
from ledger.rewards import RewardService
from ledger.service import LedgerService
from payments.gateway import PaymentGateway, StripeGateway
from payments.service import PaymentService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: InMemoryStorage
    users: UserRepository
    events: EventRepository
    registrations: RegistrationService
    ledger: LedgerService
    rewards: RewardService
    payments: PaymentService
    jobs: ReconciliationJobs


def build_services(
    storage: Optional[InMemoryStorage] = None,
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[Notifier] = None,
) -> Services:
    settings = settings or Settings.from_env()
    storage = storage or InMemoryStorage(seed=True)
    gateway = gateway or StripeGateway(settings)

    users = UserRepository(storage)
    events = EventRepository(storage)
    registrations = RegistrationService(storage, settings, events, users, notifier or LoggingNotifier())
    ledger = LedgerService(storage, users)
    payments = PaymentService(storage, gateway, registrations, settings)

    return Services(
        settings=settings,
        storage=storage,
        users=users,
        events=events,
        registrations=registrations,
        ledger=ledger,
        rewards=RewardService(storage, ledger, events),
        payments=payments,
        jobs=ReconciliationJobs(registrations, payments, gateway),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> UUID:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user identity")


def require_admin(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> UUID:
    user_id = current_user_id(x_user_id)
    if x_user_role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user_id


def require_cron_secret(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_cron_secret: Optional[str] = Header(default=None),
) -> None:
    provided = x_cron_secret
    if authorization and authorization.lower().startswith("bearer "):
        provided = authorization[len("bearer "):].strip()
    if not provided:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Cron secret required")

    expected = get_services(request).settings.cron_secret
    if not expected:
        logger.error("Cron trigger rejected: CRON_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cron trigger not configured")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Cron trigger rejected: wrong secret")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid cron secret")
