import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from common.config import Settings
from common.errors import (
    ConflictError,
    DuplicateRegistrationError,
    InvalidRequestError,
    RegistrationNotFoundError,
)
from common.notifier import LoggingNotifier, Notifier, notify_safely
from common.storage import InMemoryStorage
from common.users import UserRepository

from .events import EventRepository
from .models import (
    ACTIVE,
    CAPACITY_HOLDING,
    MAX_GUESTS,
    BookingRequest,
    Event,
    EventAvailability,
    Registration,
    RegistrationStatus,
    StatusUpdateRequest,
    UpdateEventRequest,
)
from .state_machine import Trigger, admin_trigger_for, next_status

logger = logging.getLogger(__name__)

STATUS_TIMESTAMPS = {
    RegistrationStatus.CONFIRMED: "confirmed_at",
    RegistrationStatus.CANCELLED: "cancelled_at",
    RegistrationStatus.EXPIRED: "expired_at",
    RegistrationStatus.REFUNDED: "refunded_at",
    RegistrationStatus.COMPLETED: "completed_at",
}


class RegistrationService:
    """Bookings, waitlist and the registration lifecycle for events.

    Capacity is derived from registration counts: a ``pending_payment`` or
    ``confirmed`` registration holds ``1 + guest_count`` slots, plus any
    guest places held while an add-guests checkout is open. The check and
    the reservation happen inside one storage transaction, so concurrent
    bookings for the last slot cannot both succeed.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        settings: Optional[Settings] = None,
        events: Optional[EventRepository] = None,
        users: Optional[UserRepository] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.storage = storage
        self.settings = settings or Settings()
        self.events = events or EventRepository(storage)
        self.users = users or UserRepository(storage)
        self.notifier = notifier or LoggingNotifier()

    # Booking and cancellation

    def book(self, user_id: UUID, request: BookingRequest, now: Optional[datetime] = None) -> Registration:
        now = now or datetime.now(timezone.utc)
        seats = 1 + request.guest_count

        with self.storage.transaction():
            self.users.get_record(user_id)
            event = self.events.get(request.event_id)

            if self.events.has_started(event, now):
                raise ConflictError(f"Event {event.id} has already started")
            if seats > event.capacity:
                raise InvalidRequestError(
                    f"Booking for {seats} people exceeds the event capacity of {event.capacity}"
                )
            if self._active_record(user_id, event.id):
                raise DuplicateRegistrationError(f"User {user_id} already holds a registration for event {event.id}")

            queue = self._waitlist_records(event.id)
            has_room = not queue and self._occupied(event.id) + seats <= event.capacity

            registration_id = uuid4()
            reg_data = self.storage.registrations.insert(registration_id, {
                "id": registration_id,
                "user_id": user_id,
                "event_id": event.id,
                "status": RegistrationStatus.PENDING_PAYMENT if has_room else RegistrationStatus.WAITLISTED,
                "guest_count": request.guest_count,
                "amount_paid": Decimal("0.00"),
                "payment_id": None,
                "payment_reference": None,
                "refund_reference": None,
                "points_claimed": False,
                "position": None if has_room else len(queue) + 1,
                "sequence": self.storage.next_value("registrations"),
                "pending_payment_expires_at": now + self.settings.pending_payment_timeout if has_room else None,
                "pending_guest_count": 0,
                "guest_hold_expires_at": None,
                "waitlisted_guest_count": 0,
                "guest_waitlist_sequence": None,
                "created_at": now,
                "updated_at": now,
                "confirmed_at": None,
                "cancelled_at": None,
                "expired_at": None,
                "refunded_at": None,
                "completed_at": None,
            })
            if queue:
                self.promote_waitlist(event.id, now)
            registration = Registration(**reg_data)

        logger.info(
            "Registration %s for event %s by user %s is %s",
            registration.id, event.id, user_id, registration.status.value,
        )
        return registration

    def cancel(self, user_id: UUID, registration_id: UUID, now: Optional[datetime] = None) -> Registration:
        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self._owned_record(user_id, registration_id)
            self._cancel(reg_data, now)
            return Registration(**reg_data)

    def _cancel(self, reg_data: dict, now: datetime) -> None:
        event = self.events.get(reg_data["event_id"])
        if self.events.has_started(event, now):
            raise ConflictError(f"Event {event.id} has already started; registrations can no longer be cancelled")

        held_capacity = reg_data["status"] in CAPACITY_HOLDING
        self._apply(reg_data, Trigger.CANCEL, now)
        reg_data["pending_payment_expires_at"] = None
        reg_data["position"] = None
        self._clear_guest_requests(reg_data)
        logger.info("Registration %s cancelled", reg_data["id"])

        if held_capacity:
            self.promote_waitlist(event.id, now)
        else:
            self._renumber_waitlist(event.id)

    # Adding guests to an existing registration

    def add_guests(
        self, user_id: UUID, registration_id: UUID, count: int, now: Optional[datetime] = None
    ) -> Registration:
        """Ask for ``count`` more places on a confirmed registration.

        When the event has room and nobody is queued, the places are held
        for the payment window and the member pays through an ``add_guests``
        checkout. Otherwise the guests join the add-guests waitlist, which is
        served after the regular waitlist.
        """
        if count < 1:
            raise InvalidRequestError("At least one guest must be added")

        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self._owned_record(user_id, registration_id)
            if reg_data["status"] != RegistrationStatus.CONFIRMED:
                raise ConflictError(
                    f"Guests can only be added to a confirmed registration, not one in {reg_data['status'].value} state"
                )
            event = self.events.get(reg_data["event_id"])
            if self.events.has_started(event, now):
                raise ConflictError(f"Event {event.id} has already started")
            if reg_data["pending_guest_count"]:
                raise ConflictError(
                    f"Registration {registration_id} already has {reg_data['pending_guest_count']} guests awaiting payment"
                )
            requested = reg_data["guest_count"] + reg_data["waitlisted_guest_count"] + count
            if requested > MAX_GUESTS:
                raise InvalidRequestError(f"A registration can bring at most {MAX_GUESTS} guests")

            queued = self._waitlist_records(event.id) or self._guest_waitlist_records(event.id)
            if not queued and self._occupied(event.id) + count <= event.capacity:
                self._hold_guests(reg_data, count, now)
                logger.info("Holding %d guest places on registration %s", count, registration_id)
            else:
                reg_data["waitlisted_guest_count"] += count
                if reg_data["guest_waitlist_sequence"] is None:
                    reg_data["guest_waitlist_sequence"] = self.storage.next_value("registrations")
                logger.info("%d guests for registration %s joined the waitlist", count, registration_id)
            reg_data["updated_at"] = now
            return Registration(**reg_data)

    def reduce_guest_waitlist(
        self, user_id: UUID, registration_id: UUID, count: int, now: Optional[datetime] = None
    ) -> Registration:
        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self._owned_record(user_id, registration_id)
            waiting = reg_data["waitlisted_guest_count"]
            if count < 1 or count > waiting:
                raise InvalidRequestError(f"Registration {registration_id} has {waiting} guests on the waitlist")
            reg_data["waitlisted_guest_count"] = waiting - count
            if not reg_data["waitlisted_guest_count"]:
                reg_data["guest_waitlist_sequence"] = None
            reg_data["updated_at"] = now
            self.promote_waitlist(reg_data["event_id"], now)
            return Registration(**reg_data)

    def confirm_guests(
        self,
        registration_id: UUID,
        count: int,
        amount: Decimal,
        payment_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Registration:
        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self.get_record(registration_id)
            if reg_data["status"] != RegistrationStatus.CONFIRMED or reg_data["pending_guest_count"] != count:
                raise ConflictError(f"Registration {registration_id} is not holding {count} guest places")
            reg_data["guest_count"] += count
            reg_data["pending_guest_count"] = 0
            reg_data["guest_hold_expires_at"] = None
            reg_data["amount_paid"] += amount
            reg_data["updated_at"] = now
            registration = Registration(**reg_data)

        logger.info("Added %d paid guests to registration %s (%s)", count, registration_id, payment_reference)
        return registration

    def release_guest_hold(self, registration_id: UUID, now: Optional[datetime] = None) -> Registration:
        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self.get_record(registration_id)
            released = reg_data["pending_guest_count"]
            reg_data["pending_guest_count"] = 0
            reg_data["guest_hold_expires_at"] = None
            reg_data["updated_at"] = now
            logger.info("Released %d unpaid guest places on registration %s", released, registration_id)
            self.promote_waitlist(reg_data["event_id"], now)
            return Registration(**reg_data)

    # Payment driven transitions

    def confirm_payment(
        self,
        registration_id: UUID,
        amount: Decimal,
        payment_id: Optional[UUID] = None,
        payment_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Registration:
        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self.get_record(registration_id)
            self._apply(reg_data, Trigger.PAYMENT_SUCCEEDED, now)
            self._record_payment(reg_data, amount, payment_id, payment_reference)
            reg_data["pending_payment_expires_at"] = None
            registration = Registration(**reg_data)

        self._notify_confirmed(registration)
        return registration

    def record_waitlist_payment(
        self,
        registration_id: UUID,
        amount: Decimal,
        payment_id: Optional[UUID] = None,
        payment_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Registration:
        """Record an up-front payment from a waitlisted member.

        The entry keeps its place in the queue. If it was promoted before the
        payment landed, the payment confirms it instead.
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self.get_record(registration_id)
            if reg_data["status"] == RegistrationStatus.PENDING_PAYMENT:
                return self.confirm_payment(registration_id, amount, payment_id, payment_reference, now)
            if reg_data["status"] != RegistrationStatus.WAITLISTED:
                raise ConflictError(
                    f"Cannot take a waitlist payment for a registration in {reg_data['status'].value} state"
                )
            self._record_payment(reg_data, amount, payment_id, payment_reference)
            reg_data["updated_at"] = now
            return Registration(**reg_data)

    def attach_payment(self, registration_id: UUID, payment_id: UUID) -> None:
        with self.storage.transaction():
            reg_data = self.get_record(registration_id)
            reg_data["payment_id"] = payment_id

    # Sweep driven transitions

    def expire(self, registration_id: UUID, now: Optional[datetime] = None) -> Registration:
        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self.get_record(registration_id)
            self._apply(reg_data, Trigger.EXPIRE, now)
            reg_data["pending_payment_expires_at"] = None
            logger.info("Registration %s expired without payment", registration_id)
            self.promote_waitlist(reg_data["event_id"], now)
            return Registration(**reg_data)

    def promote_waitlist(self, event_id: int, now: Optional[datetime] = None) -> list[Registration]:
        """Promote waitlisted entries, head first, while they fit.

        Stops at the first entry that does not fit so nobody overtakes an
        earlier arrival. Guests waiting to join an existing registration are
        served once the regular waitlist is empty. Events that have started
        are never promoted.
        """
        now = now or datetime.now(timezone.utc)
        promoted: list[dict] = []
        guests_promoted: list[dict] = []

        with self.storage.transaction():
            event = self.events.get(event_id)
            if self.events.has_started(event, now):
                return []

            while True:
                queue = self._waitlist_records(event_id)
                if not queue:
                    break
                head = queue[0]
                if self._occupied(event_id) + 1 + head["guest_count"] > event.capacity:
                    break

                self._apply(head, Trigger.PROMOTE, now)
                head["position"] = None
                head["pending_payment_expires_at"] = now + self.settings.pending_payment_timeout
                if head["payment_reference"]:
                    self._apply(head, Trigger.PAYMENT_SUCCEEDED, now)
                    head["pending_payment_expires_at"] = None
                promoted.append(head)

            self._renumber_waitlist(event_id)

            while not self._waitlist_records(event_id):
                guest_queue = self._guest_waitlist_records(event_id)
                if not guest_queue:
                    break
                head = guest_queue[0]
                count = head["waitlisted_guest_count"]
                if head["pending_guest_count"] or self._occupied(event_id) + count > event.capacity:
                    break

                head["waitlisted_guest_count"] = 0
                head["guest_waitlist_sequence"] = None
                self._hold_guests(head, count, now)
                head["updated_at"] = now
                guests_promoted.append(head)

            registrations = [Registration(**r) for r in promoted]
            guest_registrations = [Registration(**r) for r in guests_promoted]

        for registration in registrations:
            logger.info(
                "Promoted registration %s for event %s to %s",
                registration.id, event_id, registration.status.value,
            )
            if registration.status == RegistrationStatus.CONFIRMED:
                self._notify_confirmed(registration)
            else:
                self._notify_promoted(registration, event.title)
        for registration in guest_registrations:
            logger.info(
                "Promoted %d waitlisted guests on registration %s for event %s",
                registration.pending_guest_count, registration.id, event_id,
            )
            self._notify_promoted(registration, event.title)
        return registrations + guest_registrations

    def complete(self, registration_id: UUID, now: Optional[datetime] = None) -> Registration:
        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self.get_record(registration_id)
            event = self.events.get(reg_data["event_id"])
            if not self.events.has_started(event, now):
                raise ConflictError(f"Event {event.id} has not taken place yet")
            self._apply(reg_data, Trigger.COMPLETE, now)
            self._clear_guest_requests(reg_data)
            return Registration(**reg_data)

    def mark_refunded(self, registration_id: UUID, refund_reference: str, now: Optional[datetime] = None) -> Registration:
        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self.get_record(registration_id)
            self._apply(reg_data, Trigger.REFUND, now)
            reg_data["refund_reference"] = refund_reference
            reg_data["position"] = None
            self._renumber_waitlist(reg_data["event_id"])
            return Registration(**reg_data)

    # Admin

    def update_event(self, event_id: int, request: UpdateEventRequest, now: Optional[datetime] = None) -> Event:
        """Apply an admin edit to an event, then fill any new room from the waitlist."""
        with self.storage.transaction():
            if request.capacity is not None:
                occupied = self._occupied(event_id)
                if request.capacity < occupied:
                    raise InvalidRequestError(
                        f"Capacity {request.capacity} is below the {occupied} places already taken"
                    )
            event = self.events.update(event_id, request)
            self.promote_waitlist(event_id, now)
        return event

    def update_status(
        self, registration_id: UUID, request: StatusUpdateRequest, now: Optional[datetime] = None
    ) -> Registration:
        trigger = admin_trigger_for(request.status)
        if trigger is None:
            raise InvalidRequestError(f"Status {request.status.value} cannot be set manually")

        logger.info(
            "Admin %s requested %s for registration %s",
            request.performed_by or "unknown", request.status.value, registration_id,
        )
        if trigger == Trigger.PAYMENT_SUCCEEDED:
            return self.confirm_payment(registration_id, Decimal("0.00"), now=now)
        if trigger == Trigger.COMPLETE:
            return self.complete(registration_id, now)
        if trigger == Trigger.EXPIRE:
            return self.expire(registration_id, now)

        now = now or datetime.now(timezone.utc)
        with self.storage.transaction():
            reg_data = self.get_record(registration_id)
            self._cancel(reg_data, now)
            return Registration(**reg_data)

    # Reads

    def get(self, registration_id: UUID) -> Registration:
        with self.storage.read():
            return Registration(**self.get_record(registration_id))

    def get_record(self, registration_id: UUID) -> dict:
        reg_data = self.storage.registrations.get(registration_id)
        if not reg_data:
            raise RegistrationNotFoundError(f"Registration {registration_id} not found")
        return reg_data

    def list_registrations(
        self,
        event_id: Optional[int] = None,
        user_id: Optional[UUID] = None,
        status: Optional[RegistrationStatus] = None,
    ) -> list[Registration]:
        with self.storage.read():
            records = [
                r for r in self.storage.registrations.values()
                if (event_id is None or r["event_id"] == event_id)
                and (user_id is None or r["user_id"] == user_id)
                and (status is None or r["status"] == status)
            ]
            records.sort(key=lambda r: r["sequence"])
            return [Registration(**r) for r in records]

    def list_for_user(self, user_id: UUID, include_cancelled: bool = False) -> list[Registration]:
        registrations = self.list_registrations(user_id=user_id)
        if not include_cancelled:
            registrations = [r for r in registrations if r.status != RegistrationStatus.CANCELLED]
        return registrations

    def waitlist(self, event_id: int) -> list[Registration]:
        with self.storage.read():
            self.events.get(event_id)
            return [Registration(**r) for r in self._waitlist_records(event_id)]

    def guest_waitlist(self, event_id: int) -> list[Registration]:
        with self.storage.read():
            self.events.get(event_id)
            return [Registration(**r) for r in self._guest_waitlist_records(event_id)]

    def occupancy(self, event_id: int) -> int:
        with self.storage.read():
            self.events.get(event_id)
            return self._occupied(event_id)

    def availability(self, event_id: int) -> EventAvailability:
        with self.storage.read():
            event = self.events.get(event_id)
            occupied = self._occupied(event_id)
            return EventAvailability(
                event=event,
                occupied=occupied,
                remaining_capacity=max(event.capacity - occupied, 0),
                waitlist_length=len(self._waitlist_records(event_id)),
                guests_waiting=sum(r["waitlisted_guest_count"] for r in self._guest_waitlist_records(event_id)),
            )

    # Internals

    def _apply(self, reg_data: dict, trigger: Trigger, now: datetime) -> None:
        target = next_status(reg_data["status"], trigger)
        reg_data["status"] = target
        reg_data["updated_at"] = now
        timestamp_field = STATUS_TIMESTAMPS.get(target)
        if timestamp_field:
            reg_data[timestamp_field] = now

    @staticmethod
    def _record_payment(
        reg_data: dict, amount: Decimal, payment_id: Optional[UUID], payment_reference: Optional[str]
    ) -> None:
        reg_data["amount_paid"] = amount
        if payment_id is not None:
            reg_data["payment_id"] = payment_id
        if payment_reference is not None:
            reg_data["payment_reference"] = payment_reference

    def _hold_guests(self, reg_data: dict, count: int, now: datetime) -> None:
        reg_data["pending_guest_count"] = count
        reg_data["guest_hold_expires_at"] = now + self.settings.pending_payment_timeout

    @staticmethod
    def _clear_guest_requests(reg_data: dict) -> None:
        reg_data["pending_guest_count"] = 0
        reg_data["guest_hold_expires_at"] = None
        reg_data["waitlisted_guest_count"] = 0
        reg_data["guest_waitlist_sequence"] = None

    def _owned_record(self, user_id: UUID, registration_id: UUID) -> dict:
        reg_data = self.storage.registrations.get(registration_id)
        if not reg_data or reg_data["user_id"] != user_id:
            raise RegistrationNotFoundError(f"Registration {registration_id} not found")
        return reg_data

    def _active_record(self, user_id: UUID, event_id: int) -> Optional[dict]:
        for reg_data in self.storage.registrations.values():
            if reg_data["user_id"] == user_id and reg_data["event_id"] == event_id and reg_data["status"] in ACTIVE:
                return reg_data
        return None

    def _occupied(self, event_id: int) -> int:
        return sum(
            1 + r["guest_count"] + r["pending_guest_count"] for r in self.storage.registrations.values()
            if r["event_id"] == event_id and r["status"] in CAPACITY_HOLDING
        )

    def _waitlist_records(self, event_id: int) -> list[dict]:
        queue = [
            r for r in self.storage.registrations.values()
            if r["event_id"] == event_id and r["status"] == RegistrationStatus.WAITLISTED
        ]
        queue.sort(key=lambda r: r["sequence"])
        return queue

    def _guest_waitlist_records(self, event_id: int) -> list[dict]:
        queue = [
            r for r in self.storage.registrations.values()
            if r["event_id"] == event_id
            and r["status"] == RegistrationStatus.CONFIRMED
            and r["waitlisted_guest_count"] > 0
        ]
        queue.sort(key=lambda r: r["guest_waitlist_sequence"])
        return queue

    def _renumber_waitlist(self, event_id: int) -> None:
        for position, reg_data in enumerate(self._waitlist_records(event_id), start=1):
            if reg_data["position"] != position:
                reg_data["position"] = position

    def _notify_confirmed(self, registration: Registration) -> None:
        user = self.users.find(registration.user_id)
        event_data = self.storage.events.get(registration.event_id)
        if user and event_data:
            notify_safely(self.notifier.send_booking_confirmation, user.email, event_data["title"], str(registration.id))

    def _notify_promoted(self, registration: Registration, event_title: str) -> None:
        user = self.users.find(registration.user_id)
        if user:
            payment_link = f"{self.settings.payment_link_base}{registration.id}"
            notify_safely(self.notifier.send_waitlist_promotion, user.email, event_title, payment_link)
