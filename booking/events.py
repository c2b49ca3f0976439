from datetime import datetime, timezone
from typing import Optional

from common.errors import EventNotFoundError
from common.storage import InMemoryStorage

from .models import CreateEventRequest, UpdateEventRequest, Event


class EventRepository:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def create(self, request: CreateEventRequest) -> Event:
        now = datetime.now(timezone.utc)
        with self.storage.transaction():
            event_id = self.storage.next_value("events")
            event_data = {
                "id": event_id,
                "title": request.title,
                "starts_at": request.starts_at,
                "capacity": request.capacity,
                "price": request.price,
                "currency": request.currency.lower(),
                "reward_points": request.reward_points,
                "created_at": now,
                "updated_at": now,
            }
            event_data = self.storage.events.insert(event_id, event_data)
        return Event(**event_data)

    def update(self, event_id: int, request: UpdateEventRequest) -> Event:
        with self.storage.transaction():
            event_data = self.get_record(event_id)
            event_data.update(request.model_dump(exclude_none=True))
            event_data["updated_at"] = datetime.now(timezone.utc)
        return Event(**event_data)

    def get(self, event_id: int) -> Event:
        return Event(**self.get_record(event_id))

    def get_record(self, event_id: int) -> dict:
        event_data = self.storage.events.get(event_id)
        if not event_data:
            raise EventNotFoundError(f"Event {event_id} not found")
        return event_data

    def list_events(self, upcoming_only: bool = False, now: Optional[datetime] = None) -> list[Event]:
        now = now or datetime.now(timezone.utc)
        with self.storage.read():
            events = [Event(**e) for e in self.storage.events.values()]
        if upcoming_only:
            events = [e for e in events if e.starts_at > now]
        events.sort(key=lambda e: e.starts_at)
        return events

    @staticmethod
    def has_started(event: Event, now: Optional[datetime] = None) -> bool:
        return event.starts_at <= (now or datetime.now(timezone.utc))
