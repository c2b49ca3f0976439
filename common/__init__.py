"""
Shared plumbing for the club backend.

- Typed service errors carrying their HTTP status
- Environment-driven settings
- In-memory tables with transactional units of work
- User records and outbound notifications
"""

from .config import Settings
from .errors import ClubServiceError
from .storage import InMemoryStorage

__all__ = [
    "Settings",
    "ClubServiceError",
    "InMemoryStorage",
]
