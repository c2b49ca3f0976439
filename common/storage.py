import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import UUID

_MISSING = object()


class Record(dict):
    """A stored row. In-place writes made inside a transaction are journaled."""

    def __init__(self, storage: "InMemoryStorage", data=()):
        super().__init__(data)
        self._storage = storage

    def __setitem__(self, key, value):
        self._storage._journal_record(self)
        super().__setitem__(key, value)

    def __delitem__(self, key):
        self._storage._journal_record(self)
        super().__delitem__(key)

    def update(self, *args, **kwargs):
        self._storage._journal_record(self)
        super().update(*args, **kwargs)


class Table(dict):
    """A keyed table. Dict rows are stored as ``Record`` so later writes to them are tracked."""

    def __init__(self, storage: "InMemoryStorage"):
        super().__init__()
        self._storage = storage

    def __setitem__(self, key, value):
        self._storage._journal_key(self, key)
        if isinstance(value, dict) and not isinstance(value, Record):
            value = Record(self._storage, value)
        super().__setitem__(key, value)

    def __delitem__(self, key):
        self._storage._journal_key(self, key)
        super().__delitem__(key)

    def insert(self, key, data: dict) -> Record:
        """Store ``data`` under ``key`` and return the live record."""
        self[key] = data
        return super().__getitem__(key)


class _Savepoint:
    def __init__(self, start: int):
        self.start = start
        self.touched: set[int] = set()


class InMemoryStorage:
    """Process-local tables with serialized, all-or-nothing units of work.

    Every mutation of shared state happens inside ``transaction()``. The
    re-entrant lock serializes check-then-act sequences (capacity checks,
    balance checks). Writes are recorded in an undo journal: the first write
    to a record at each nesting level saves its prior contents, and a level
    that raises undoes only its own entries, so an inner failure can be
    caught by the caller without leaving half-applied writes behind.

    Reads that scan a table go through ``read()`` so they never iterate a
    table another thread is writing.
    """

    def __init__(self, seed: bool = False):
        self.users: dict[UUID, dict] = Table(self)
        self.events: dict[int, dict] = Table(self)
        self.registrations: dict[UUID, dict] = Table(self)
        self.payments: dict[UUID, dict] = Table(self)
        self.point_transactions: dict[UUID, dict] = Table(self)
        self.idempotency_index: dict[str, UUID] = Table(self)
        self.counters: dict[str, int] = Table(self)
        self._lock = threading.RLock()
        self._journal: list[tuple] = []
        self._savepoints: list[_Savepoint] = []
        self._owner: Optional[int] = None
        if seed:
            self._seed_data()

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if not self._savepoints:
                self._owner = threading.get_ident()
            savepoint = _Savepoint(len(self._journal))
            self._savepoints.append(savepoint)
            try:
                yield self
            except BaseException:
                self._rollback(savepoint.start)
                raise
            finally:
                self._savepoints.pop()
                if not self._savepoints:
                    self._journal.clear()
                    self._owner = None

    @contextmanager
    def read(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            yield self

    def next_value(self, counter: str) -> int:
        with self._lock:
            value = self.counters.get(counter, 0) + 1
            self.counters[counter] = value
            return value

    @property
    def journal_size(self) -> int:
        return len(self._journal)

    # Journal

    def _active_savepoint(self) -> Optional[_Savepoint]:
        if self._savepoints and self._owner == threading.get_ident():
            return self._savepoints[-1]
        return None

    def _journal_record(self, record: Record) -> None:
        savepoint = self._active_savepoint()
        if savepoint is None or id(record) in savepoint.touched:
            return
        savepoint.touched.add(id(record))
        self._journal.append(("record", record, dict(record)))

    def _journal_key(self, table: Table, key) -> None:
        if self._active_savepoint() is None:
            return
        self._journal.append(("key", table, key, dict.get(table, key, _MISSING)))

    def _rollback(self, start: int) -> None:
        while len(self._journal) > start:
            entry = self._journal.pop()
            if entry[0] == "record":
                _, record, saved = entry
                dict.clear(record)
                dict.update(record, saved)
            else:
                _, table, key, previous = entry
                if previous is _MISSING:
                    dict.pop(table, key, None)
                else:
                    dict.__setitem__(table, key, previous)

    def _seed_data(self):
        now = datetime.now(timezone.utc)
        admin_id = UUID("550e8400-e29b-41d4-a716-446655440000")
        member_id = UUID("660e8400-e29b-41d4-a716-446655440001")

        self.users[admin_id] = {
            "id": admin_id, "email": "admin@club.example", "name": "Club Admin",
            "role": "admin", "reward_points": 0, "total_points_earned": 0,
            "total_points_spent": 0, "created_at": now,
        }
        self.users[member_id] = {
            "id": member_id, "email": "member@club.example", "name": "Club Member",
            "role": "member", "reward_points": 0, "total_points_earned": 0,
            "total_points_spent": 0, "created_at": now,
        }
