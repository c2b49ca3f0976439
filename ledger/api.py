from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from api.deps import Services, current_user_id, get_services, require_admin
from common.errors import ClubServiceError

from .models import (
    LedgerHistoryResponse,
    PointsResponse,
    ReconciliationReport,
    UnclaimedCountResponse,
    UsePointsRequest,
    UserBalance,
)

router = APIRouter()


@router.get("/rewards/balance", response_model=UserBalance, tags=["Rewards"])
def get_balance(user_id: UUID = Depends(current_user_id), services: Services = Depends(get_services)) -> UserBalance:
    try:
        return services.ledger.get_balance(user_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/rewards/history", response_model=LedgerHistoryResponse, tags=["Rewards"])
def get_history(
    limit: int = 50,
    offset: int = 0,
    user_id: UUID = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> LedgerHistoryResponse:
    try:
        return services.ledger.get_ledger_history(user_id, limit, offset)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/rewards/unclaimed-count", response_model=UnclaimedCountResponse, tags=["Rewards"])
def get_unclaimed_count(
    user_id: UUID = Depends(current_user_id), services: Services = Depends(get_services)
) -> UnclaimedCountResponse:
    try:
        return UnclaimedCountResponse(count=services.rewards.get_unclaimed_points_count(user_id))
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/rewards/claim/{event_id}", response_model=PointsResponse, tags=["Rewards"])
def claim_points(
    event_id: int,
    user_id: UUID = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> PointsResponse:
    try:
        return services.rewards.claim_points_for_event(user_id, event_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/rewards/use", response_model=PointsResponse, tags=["Rewards"])
def use_points(
    request: UsePointsRequest,
    user_id: UUID = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> PointsResponse:
    try:
        return services.rewards.use_points_for_booking(user_id, request.points, request.booking_ref)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/admin/users/{user_id}/reconcile", response_model=ReconciliationReport, tags=["Admin"])
def reconcile_user(
    user_id: UUID,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> ReconciliationReport:
    try:
        return services.ledger.reconcile(user_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/admin/users/{user_id}/rebuild-balance", response_model=UserBalance, tags=["Admin"])
def rebuild_balance(
    user_id: UUID,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> UserBalance:
    try:
        return services.ledger.rebuild_balance(user_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
