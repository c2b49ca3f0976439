import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from api.deps import Services, current_user_id, get_services, require_admin, require_cron_secret
from booking.models import SweepResult
from common.errors import ClubServiceError

from .models import CheckoutRequest, CheckoutResponse, Payment, PaymentStatus, WebhookResult

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payments/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def start_checkout(
    request: CheckoutRequest,
    user_id: UUID = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> CheckoutResponse:
    try:
        return services.payments.start_checkout(user_id, request.registration_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/payments/webhook", response_model=WebhookResult, tags=["Payments"])
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> WebhookResult:
    payload = await request.body()
    try:
        return await run_in_threadpool(services.payments.handle_webhook, payload, stripe_signature)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/payments/me", response_model=list[Payment], tags=["Payments"])
def my_payments(user_id: UUID = Depends(current_user_id), services: Services = Depends(get_services)) -> list[Payment]:
    return services.payments.list_payments(user_id=user_id)


@router.get("/admin/payments", response_model=list[Payment], tags=["Admin"])
def list_payments(
    user_id: Optional[UUID] = None,
    payment_status: Optional[PaymentStatus] = None,
    registration_id: Optional[UUID] = None,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> list[Payment]:
    return services.payments.list_payments(user_id, payment_status, registration_id)


@router.get("/admin/payments/{payment_id}", response_model=Payment, tags=["Admin"])
def get_payment(
    payment_id: UUID,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Payment:
    try:
        return services.payments.get(payment_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


def _run_sweep(name: str, sweep) -> SweepResult:
    try:
        return sweep()
    except Exception as e:
        logger.exception("Sweep %s failed", name)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Sweep {name} failed: {e}")


@router.post(
    "/cron/expire-pending",
    response_model=SweepResult,
    dependencies=[Depends(require_cron_secret)],
    tags=["Cron"],
)
def cron_expire_pending(services: Services = Depends(get_services)) -> SweepResult:
    return _run_sweep("expire_pending_and_promote", services.jobs.expire_pending_and_promote)


@router.post(
    "/cron/complete-events",
    response_model=SweepResult,
    dependencies=[Depends(require_cron_secret)],
    tags=["Cron"],
)
def cron_complete_events(services: Services = Depends(get_services)) -> SweepResult:
    return _run_sweep("complete_past_events", services.jobs.complete_past_events)


@router.post(
    "/cron/process-refunds",
    response_model=SweepResult,
    dependencies=[Depends(require_cron_secret)],
    tags=["Cron"],
)
def cron_process_refunds(services: Services = Depends(get_services)) -> SweepResult:
    return _run_sweep("process_refunds", services.jobs.process_refunds)
