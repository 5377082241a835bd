"""
Domain-specific exception hierarchy for the booking synchronisation core.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import Booking


class StaySyncError(Exception):
    """Base class for all application-level errors."""


class ParseError(StaySyncError):
    """Raised when a feed payload cannot be read as a calendar at all."""


class FetchError(StaySyncError):
    """Raised when a feed payload cannot be retrieved."""

    def __init__(self, message: str, url: str = "") -> None:
        super().__init__(message)
        self.url = url


class UnreachableError(FetchError):
    """The feed host could not be contacted."""


class FetchTimeoutError(FetchError):
    """The feed did not answer in time."""


class MalformedResponseError(FetchError):
    """The feed answered, but not with a calendar document."""


class SchedulingError(StaySyncError):
    """Base class for rejections raised by the scheduling store."""


class InvalidRangeError(SchedulingError, ValueError):
    """Raised when a date range does not end strictly after it starts."""


class NotFoundError(SchedulingError):
    """Raised when no active booking exists for an identifier."""

    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Booking not found: {booking_id}")
        self.booking_id = booking_id


class OverlapError(SchedulingError):
    """Raised when a change would collide with another booking."""

    def __init__(self, message: str, conflicting: Optional["Booking"] = None) -> None:
        super().__init__(message)
        self.conflicting = conflicting


class StaleVersionError(SchedulingError):
    """Raised when a caller's expected version no longer matches the store."""

    def __init__(self, message: str, current: Optional["Booking"] = None) -> None:
        super().__init__(message)
        self.current = current


class DuplicateOriginError(StaleVersionError):
    """
    Raised when a feed event would be stored twice.

    Only one active booking may exist per ``(source_id, external_uid)``.
    Seeing this means another writer stored the event first, so it is
    handled like any other stale write.
    """
