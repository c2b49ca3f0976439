from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from api.deps import Services, current_user_id, get_services, require_admin
from common.errors import ClubServiceError

from .models import (
    BookingRequest,
    BookingResponse,
    CreateEventRequest,
    Event,
    EventAvailability,
    GuestsRequest,
    Registration,
    RegistrationStatus,
    StatusUpdateRequest,
    UpdateEventRequest,
)

router = APIRouter()


@router.get("/events", response_model=list[Event], tags=["Events"])
def list_events(upcoming: bool = False, services: Services = Depends(get_services)) -> list[Event]:
    return services.events.list_events(upcoming_only=upcoming)


@router.get("/events/{event_id}", response_model=Event, tags=["Events"])
def get_event(event_id: int, services: Services = Depends(get_services)) -> Event:
    try:
        return services.events.get(event_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/events/{event_id}/availability", response_model=EventAvailability, tags=["Events"])
def get_availability(event_id: int, services: Services = Depends(get_services)) -> EventAvailability:
    try:
        return services.registrations.availability(event_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/events/{event_id}/waitlist", response_model=list[Registration], tags=["Events"])
def get_waitlist(
    event_id: int,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> list[Registration]:
    try:
        return services.registrations.waitlist(event_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/admin/events", response_model=Event, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def create_event(
    request: CreateEventRequest,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Event:
    return services.events.create(request)


@router.patch("/admin/events/{event_id}", response_model=Event, tags=["Admin"])
def update_event(
    event_id: int,
    request: UpdateEventRequest,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Event:
    try:
        return services.registrations.update_event(event_id, request)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/registrations", response_model=BookingResponse, status_code=status.HTTP_201_CREATED, tags=["Registrations"])
def book(
    request: BookingRequest,
    user_id: UUID = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> BookingResponse:
    try:
        registration = services.registrations.book(user_id, request)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    if registration.status == RegistrationStatus.WAITLISTED:
        message = f"Event is full; you are number {registration.position} on the waitlist"
    else:
        message = "Spot reserved; complete payment before it expires"
    return BookingResponse(registration=registration, message=message)


@router.get("/registrations/me", response_model=list[Registration], tags=["Registrations"])
def my_registrations(
    include_cancelled: bool = False,
    user_id: UUID = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> list[Registration]:
    return services.registrations.list_for_user(user_id, include_cancelled)


@router.post("/registrations/{registration_id}/cancel", response_model=Registration, tags=["Registrations"])
def cancel_registration(
    registration_id: UUID,
    user_id: UUID = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> Registration:
    try:
        return services.registrations.cancel(user_id, registration_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/registrations/{registration_id}/guests", response_model=BookingResponse, tags=["Registrations"])
def add_guests(
    registration_id: UUID,
    request: GuestsRequest,
    user_id: UUID = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> BookingResponse:
    try:
        registration = services.registrations.add_guests(user_id, registration_id, request.count)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    if registration.pending_guest_count:
        message = f"{registration.pending_guest_count} guest places held; complete payment before they are released"
    else:
        message = f"Event is full; {registration.waitlisted_guest_count} guests are on the waitlist"
    return BookingResponse(registration=registration, message=message)


@router.post("/registrations/{registration_id}/guests/waitlist/reduce", response_model=Registration, tags=["Registrations"])
def reduce_guest_waitlist(
    registration_id: UUID,
    request: GuestsRequest,
    user_id: UUID = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> Registration:
    try:
        return services.registrations.reduce_guest_waitlist(user_id, registration_id, request.count)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/admin/registrations", response_model=list[Registration], tags=["Admin"])
def list_registrations(
    event_id: Optional[int] = None,
    user_id: Optional[UUID] = None,
    registration_status: Optional[RegistrationStatus] = None,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> list[Registration]:
    return services.registrations.list_registrations(event_id, user_id, registration_status)


@router.get("/admin/registrations/{registration_id}", response_model=Registration, tags=["Admin"])
def get_registration(
    registration_id: UUID,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Registration:
    try:
        return services.registrations.get(registration_id)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.patch("/admin/registrations/{registration_id}/status", response_model=Registration, tags=["Admin"])
def update_registration_status(
    registration_id: UUID,
    request: StatusUpdateRequest,
    admin_id: UUID = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Registration:
    if request.performed_by is None:
        request = request.model_copy(update={"performed_by": str(admin_id)})
    try:
        return services.registrations.update_status(registration_id, request)
    except ClubServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
