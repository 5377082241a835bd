"""
Overlap detection over a resource's timeline.

Pure functions shared by the reconciliation engine and the scheduling store,
so that a feed merge and a staff action judge collisions the same way.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple

from .models import Booking, BookingStatus, DateRange


@dataclass
class ConflictScan:
    """Result of scanning a timeline for overlapping active bookings."""
    pairs: List[Tuple[Booking, Booking]] = field(default_factory=list)
    to_flag: List[Booking] = field(default_factory=list)
    to_restore: List[Booking] = field(default_factory=list)

    @property
    def involved_ids(self) -> Set[str]:
        ids: Set[str] = set()
        for first, second in self.pairs:
            ids.add(first.id)
            ids.add(second.id)
        return ids


def is_conflicting_pair(first: Booking, second: Booking) -> bool:
    """
    Check whether two bookings collide.

    Two active bookings on the same resource collide when their ranges
    overlap, unless they are the same external event (same source and uid),
    which is an update and never a conflict.
    """
    if first.id == second.id or first.resource_id != second.resource_id:
        return False
    if not (first.is_active and second.is_active):
        return False
    if first.origin.is_synced and first.origin.key == second.origin.key:
        return False
    return first.range.overlaps(second.range)


def find_overlapping_pairs(bookings: Iterable[Booking]) -> List[Tuple[Booking, Booking]]:
    """
    Return every colliding pair among ``bookings``.

    Sweeps the active bookings in start order, so only neighbours that start
    before the current booking ends are compared.
    """
    active = sorted(
        (booking for booking in bookings if booking.is_active),
        key=lambda b: (b.resource_id, b.start_date, b.end_date, b.id),
    )
    pairs: List[Tuple[Booking, Booking]] = []

    for index, current in enumerate(active):
        for other in active[index + 1:]:
            if other.resource_id != current.resource_id or other.start_date >= current.end_date:
                break
            if is_conflicting_pair(current, other):
                pairs.append((current, other))

    return pairs


def scan_conflicts(bookings: Iterable[Booking], auto_revert: bool = False) -> ConflictScan:
    """
    Classify the bookings of a timeline by conflict state.

    Confirmed bookings caught in a colliding pair are returned in
    ``to_flag``. When ``auto_revert`` is set, conflicted bookings that no
    longer collide with anything are returned in ``to_restore``.
    """
    timeline = list(bookings)
    pairs = find_overlapping_pairs(timeline)
    scan = ConflictScan(pairs=pairs)
    involved = scan.involved_ids

    for booking in timeline:
        if not booking.is_active:
            continue
        if booking.id in involved and booking.status is BookingStatus.CONFIRMED:
            scan.to_flag.append(booking)
        elif (
            auto_revert
            and booking.id not in involved
            and booking.status is BookingStatus.CONFLICTED
        ):
            scan.to_restore.append(booking)

    return scan


def find_collision(
    bookings: Iterable[Booking],
    resource_id: str,
    date_range: DateRange,
    exclude_id: Optional[str] = None,
    statuses: Tuple[BookingStatus, ...] = (BookingStatus.CONFIRMED, BookingStatus.CONFLICTED),
) -> Optional[Booking]:
    """Return the earliest booking in ``statuses`` that overlaps ``date_range``."""
    candidates = [
        booking for booking in bookings
        if booking.resource_id == resource_id
        and booking.id != exclude_id
        and booking.status in statuses
        and booking.range.overlaps(date_range)
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda b: (b.start_date, b.id))


def confirmed_collisions(bookings: Iterable[Booking]) -> List[Tuple[Booking, Booking]]:
    """Pairs of confirmed bookings that collide; must always be empty."""
    return [
        (first, second) for first, second in find_overlapping_pairs(bookings)
        if first.status is BookingStatus.CONFIRMED and second.status is BookingStatus.CONFIRMED
    ]
