"""
Domain models for booking ranges, calendar events and bookings.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .exceptions import InvalidRangeError

LOCAL_SOURCE_ID = "local"


@dataclass(frozen=True)
class DateRange:
    """
    Represents an immutable half-open range of calendar dates ``[start, end)``.

    Invariant: start must be before end. The end date is the check-out day
    and is not occupied, so two stays that touch on that day do not overlap.
    """
    start: date
    end: date

    def __post_init__(self):
        if self.start >= self.end:
            raise InvalidRangeError(
                f"Start date {self.start} must be before end date {self.end}"
            )

    def nights(self) -> int:
        """Return the number of nights covered."""
        return (self.end - self.start).days

    def overlaps(self, other: "DateRange") -> bool:
        """Check if this range overlaps with another."""
        return self.start < other.end and self.end > other.start

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    def __str__(self) -> str:
        return f"{self.start.isoformat()} -> {self.end.isoformat()}"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CONFLICTED = "conflicted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Origin:
    """
    Where a booking comes from: entered by staff, or imported from a feed.

    Use the ``local()`` and ``synced()`` constructors rather than building
    instances by hand.
    """
    source_id: str = LOCAL_SOURCE_ID
    external_uid: Optional[str] = None

    @classmethod
    def local(cls) -> "Origin":
        return cls()

    @classmethod
    def synced(cls, source_id: str, external_uid: str) -> "Origin":
        if source_id == LOCAL_SOURCE_ID:
            raise ValueError(f"'{LOCAL_SOURCE_ID}' is reserved for staff bookings")
        if not external_uid:
            raise ValueError("Synced bookings need an external uid")
        return cls(source_id=source_id, external_uid=external_uid)

    @property
    def is_local(self) -> bool:
        return self.source_id == LOCAL_SOURCE_ID

    @property
    def is_synced(self) -> bool:
        return not self.is_local

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        """Identity of the origin, ``(source_id, external_uid)``."""
        return (self.source_id, self.external_uid)

    def __str__(self) -> str:
        if self.is_local:
            return "local"
        return f"{self.source_id}:{self.external_uid}"


@dataclass(frozen=True)
class CalendarEvent:
    """
    A normalized event read from a feed.

    Events are short-lived: they only exist between parsing a payload and
    reconciling it against the stored bookings.
    """
    source_id: str
    external_uid: str
    resource_id: str
    range: DateRange
    summary: str = ""

    @property
    def start_date(self) -> date:
        return self.range.start

    @property
    def end_date(self) -> date:
        return self.range.end


@dataclass(frozen=True)
class FeedSource:
    """One external calendar feed bound to the resource it describes."""
    resource_id: str
    source_id: str
    url: str
    interval_seconds: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.resource_id}/{self.source_id}"


@dataclass(frozen=True)
class ParseWarning:
    """A single feed entry that was skipped while normalizing."""
    source_id: str
    reason: str
    external_uid: Optional[str] = None

    def __str__(self) -> str:
        uid = self.external_uid or "<no uid>"
        return f"[{self.source_id}] {uid}: {self.reason}"


@dataclass(frozen=True)
class Booking:
    """
    The persisted, authoritative record of a stay on a resource.

    Bookings are immutable values. Every change goes through ``evolve`` which
    returns a copy with ``version`` incremented, so a version number always
    identifies exactly one state of the booking.
    """
    id: str
    resource_id: str
    range: DateRange
    origin: Origin = field(default_factory=Origin.local)
    status: BookingStatus = BookingStatus.CONFIRMED
    version: int = 1
    summary: str = ""
    pinned: bool = False

    @classmethod
    def new(
        cls,
        resource_id: str,
        date_range: DateRange,
        origin: Optional[Origin] = None,
        summary: str = "",
        status: BookingStatus = BookingStatus.CONFIRMED,
    ) -> "Booking":
        """Create a first-version booking with a fresh identifier."""
        return cls(
            id=str(uuid.uuid4()),
            resource_id=resource_id,
            range=date_range,
            origin=origin or Origin.local(),
            status=status,
            version=1,
            summary=summary,
        )

    @property
    def start_date(self) -> date:
        return self.range.start

    @property
    def end_date(self) -> date:
        return self.range.end

    @property
    def is_active(self) -> bool:
        return self.status is not BookingStatus.CANCELLED

    def evolve(self, **changes) -> "Booking":
        """Return a copy with ``changes`` applied and the version bumped."""
        return replace(self, version=self.version + 1, **changes)

    def display_label(self) -> str:
        return self.summary or str(self.origin)


@dataclass(frozen=True)
class StagedChange:
    """A staged transition of an existing booking from ``before`` to ``after``."""
    before: Booking
    after: Booking

    @property
    def booking_id(self) -> str:
        return self.before.id


@dataclass
class ReconciliationPlan:
    """
    The mutations needed to merge one feed into one resource's timeline.

    ``basis`` records the version of every booking the plan was computed
    from, so the store can refuse to apply it once the timeline has moved on.
    """
    resource_id: str
    source_id: str
    to_create: List[Booking] = field(default_factory=list)
    to_update: List[StagedChange] = field(default_factory=list)
    to_cancel: List[StagedChange] = field(default_factory=list)
    to_flag_conflict: List[StagedChange] = field(default_factory=list)
    to_restore: List[StagedChange] = field(default_factory=list)
    conflicts: List[Tuple[str, str]] = field(default_factory=list)
    basis: Dict[str, int] = field(default_factory=dict)

    @property
    def changes(self) -> List[StagedChange]:
        return self.to_update + self.to_cancel + self.to_flag_conflict + self.to_restore

    @property
    def is_empty(self) -> bool:
        return not self.to_create and not self.changes

    def resulting_bookings(self) -> List[Booking]:
        """All bookings written by this plan, in their new state."""
        return list(self.to_create) + [change.after for change in self.changes]

    @property
    def newly_conflicted(self) -> List[Booking]:
        """Bookings this plan moves into the conflicted state."""
        flagged = [b for b in self.to_create if b.status is BookingStatus.CONFLICTED]
        flagged.extend(
            change.after for change in self.changes
            if change.after.status is BookingStatus.CONFLICTED
            and change.before.status is not BookingStatus.CONFLICTED
        )
        return flagged

    @property
    def resource_ids(self) -> List[str]:
        """Every resource touched by the plan, main resource first."""
        touched = {b.resource_id for b in self.resulting_bookings()}
        touched |= {change.before.resource_id for change in self.changes}
        others = sorted(touched - {self.resource_id})
        return [self.resource_id] + others
