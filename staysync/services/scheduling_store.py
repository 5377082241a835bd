"""
The scheduling store: authoritative bookings and their transactional changes.

Every mutation runs inside the lock of the resource(s) it touches. Within
that section the store re-reads current state, checks versions, re-checks
the overlap invariant on the resulting timeline and commits through the
repository in a single batch. Nothing is held across network calls; feed
payloads are fully materialized before ``apply_reconciliation`` is called.
"""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import replace
from datetime import date, datetime
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from ..adapters.booking_repository import BookingRepository
from ..domain.conflicts import confirmed_collisions, find_collision, scan_conflicts
from ..domain.exceptions import NotFoundError, OverlapError, StaleVersionError
from ..domain.models import (
    Booking,
    BookingStatus,
    DateRange,
    FeedSource,
    Origin,
    ReconciliationPlan,
)

logger = logging.getLogger(__name__)


class SchedulingStore:
    """
    Single source of truth for bookings, serialized per resource.

    Concurrent mutations on different resources run in parallel; two
    mutations on the same resource never interleave.
    """

    def __init__(self, repository: BookingRepository, auto_revert_conflicts: bool = False):
        self.repository = repository
        self.auto_revert_conflicts = auto_revert_conflicts
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------ reads

    def get(self, booking_id: str) -> Optional[Booking]:
        return self.repository.get(booking_id)

    def bookings_for_resource(self, resource_id: str) -> List[Booking]:
        """Every booking of a resource, cancelled ones included."""
        return self.repository.list_for_resource(resource_id)

    def timeline(
        self,
        resource_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        include_cancelled: bool = False,
    ) -> List[Booking]:
        """Bookings of a resource overlapping the window ``[start, end)``."""
        bookings = self.repository.list_for_resource(resource_id, start=start, end=end)
        if include_cancelled:
            return bookings
        return [b for b in bookings if b.is_active]

    def conflicts(self, resource_id: Optional[str] = None) -> List[Booking]:
        bookings = self.repository.list_by_status(BookingStatus.CONFLICTED)
        if resource_id is None:
            return bookings
        return [b for b in bookings if b.resource_id == resource_id]

    def bookings_for_reconciliation(self, resource_id: str, source_id: str) -> List[Booking]:
        """
        The state a feed merge is computed from.

        That is the resource's whole timeline plus the source's bookings that
        staff moved to other resources.
        """
        by_id = {b.id: b for b in self.repository.list_for_resource(resource_id)}
        for booking in self.repository.list_for_source(source_id):
            by_id.setdefault(booking.id, booking)
        return list(by_id.values())

    def last_synced(self) -> Dict[str, datetime]:
        """Last successful merge time per source id."""
        return self.repository.last_synced()

    def record_sync(self, feed: FeedSource, synced_at: datetime) -> None:
        self.repository.record_sync(feed.source_id, feed.resource_id, synced_at)

    # ------------------------------------------------------------- mutations

    def create_local(
        self,
        resource_id: str,
        start: date,
        end: date,
        summary: str = "",
    ) -> Booking:
        """
        Create a staff booking.

        Raises:
            InvalidRangeError: If end is not after start
            OverlapError: If the range collides with an active booking
        """
        date_range = DateRange(start=start, end=end)

        with self._resource_locks([resource_id]):
            timeline = self.repository.list_for_resource(resource_id)
            self._reject_collision(timeline, resource_id, date_range, exclude_id=None)

            booking = Booking.new(
                resource_id=resource_id,
                date_range=date_range,
                origin=Origin.local(),
                summary=summary,
            )
            self._commit([booking], [], [booking.resource_id])

        logger.info("Created local booking %s on %s (%s)", booking.id, resource_id, date_range)
        return booking

    def move(
        self,
        booking_id: str,
        new_resource_id: str,
        new_start: date,
        new_end: date,
        expected_version: int,
    ) -> Booking:
        """
        Move a booking to another range and/or resource.

        The move is all-or-nothing. A moved booking is confirmed, and a synced
        booking becomes pinned so later feed updates do not overwrite it.

        Raises:
            InvalidRangeError: If new_end is not after new_start
            NotFoundError: If no active booking has this id
            StaleVersionError: If expected_version is not the current version
            OverlapError: If the new range collides with an active booking
        """
        date_range = DateRange(start=new_start, end=new_end)
        current = self._require_active(booking_id)

        with self._resource_locks([current.resource_id, new_resource_id]):
            latest = self._require_active(booking_id)
            if latest.resource_id != current.resource_id:
                # Moved elsewhere between the unlocked read and the lock
                raise StaleVersionError(
                    f"Booking {booking_id} changed while the move was prepared",
                    current=latest,
                )
            self._check_version(latest, expected_version)
            current = latest

            target_timeline = self.repository.list_for_resource(new_resource_id)
            self._reject_collision(target_timeline, new_resource_id, date_range, exclude_id=booking_id)

            moved = current.evolve(
                resource_id=new_resource_id,
                range=date_range,
                status=BookingStatus.CONFIRMED,
                pinned=current.pinned or current.origin.is_synced,
            )
            self._commit([], [moved], [current.resource_id, new_resource_id])

        logger.info(
            "Moved booking %s to %s %s (version %d)",
            booking_id,
            new_resource_id,
            date_range,
            moved.version,
        )
        return moved

    def cancel(self, booking_id: str, expected_version: int) -> None:
        """
        Cancel a booking.

        A cancelled synced booking is pinned: its feed keeps listing the
        event, but later merges do not bring it back.

        Raises:
            NotFoundError: If no active booking has this id
            StaleVersionError: If expected_version is not the current version
        """
        current = self._require_active(booking_id)

        with self._resource_locks([current.resource_id]):
            latest = self._require_active(booking_id)
            if latest.resource_id != current.resource_id:
                raise StaleVersionError(
                    f"Booking {booking_id} changed while the cancellation was prepared",
                    current=latest,
                )
            self._check_version(latest, expected_version)

            cancelled = latest.evolve(
                status=BookingStatus.CANCELLED,
                pinned=latest.pinned or latest.origin.is_synced,
            )
            self._commit([], [cancelled], [latest.resource_id])

        logger.info("Cancelled booking %s on %s", booking_id, current.resource_id)

    def accept_override(self, booking_id: str, expected_version: int) -> Booking:
        """
        Confirm a conflicted booking by explicit staff decision.

        Raises:
            NotFoundError: If no active booking has this id
            StaleVersionError: If expected_version is not the current version
            OverlapError: While a confirmed booking still overlaps it
        """
        current = self._require_active(booking_id)

        with self._resource_locks([current.resource_id]):
            latest = self._require_active(booking_id)
            if latest.resource_id != current.resource_id:
                raise StaleVersionError(
                    f"Booking {booking_id} changed while the override was prepared",
                    current=latest,
                )
            self._check_version(latest, expected_version)

            if latest.status is BookingStatus.CONFIRMED:
                return latest

            timeline = self.repository.list_for_resource(latest.resource_id)
            collision = find_collision(
                timeline,
                latest.resource_id,
                latest.range,
                exclude_id=latest.id,
                statuses=(BookingStatus.CONFIRMED,),
            )
            if collision is not None:
                raise OverlapError(
                    f"Booking {booking_id} still overlaps confirmed booking {collision.id}",
                    conflicting=collision,
                )

            confirmed = latest.evolve(status=BookingStatus.CONFIRMED)
            self._commit([], [confirmed], [latest.resource_id])

        logger.info("Override accepted for booking %s", booking_id)
        return confirmed

    def apply_reconciliation(self, plan: ReconciliationPlan) -> List[Booking]:
        """
        Apply a reconciliation plan as one atomic batch.

        Returns:
            The bookings written, in their new state

        Raises:
            StaleVersionError: If the timeline changed since the plan was
                computed; nothing is written
        """
        if plan.is_empty:
            return []

        with self._resource_locks(plan.resource_ids):
            current = {
                b.id: b.version
                for b in self.bookings_for_reconciliation(plan.resource_id, plan.source_id)
            }
            if current != plan.basis:
                raise StaleVersionError(
                    f"Timeline of {plan.resource_id} changed since the plan for "
                    f"source '{plan.source_id}' was computed"
                )

            updates = [change.after for change in plan.changes]
            self._commit(plan.to_create, updates, plan.resource_ids)

        return plan.resulting_bookings()

    # ---------------------------------------------------------------- helpers

    def _commit(
        self,
        inserts: Sequence[Booking],
        updates: Sequence[Booking],
        resource_ids: Iterable[str],
    ) -> None:
        """
        Re-check the overlap invariant, run the local conflict check and write.

        Must be called while holding the locks of ``resource_ids``.
        """
        written: Dict[str, Booking] = {b.id: b for b in [*inserts, *updates]}
        inserts = list(inserts)
        extra_updates: List[Booking] = []

        for resource_id in dict.fromkeys(resource_ids):
            timeline = {b.id: b for b in self.repository.list_for_resource(resource_id)}
            for booking in written.values():
                timeline.pop(booking.id, None)
                if booking.resource_id == resource_id:
                    timeline[booking.id] = booking

            scan = scan_conflicts(timeline.values(), auto_revert=self.auto_revert_conflicts)
            for booking in scan.to_restore:
                restored = self._restore(booking, written)
                timeline[restored.id] = restored
                if restored.id in written:
                    written[restored.id] = restored
                    inserts = [restored if b.id == restored.id else b for b in inserts]
                    updates = [restored if b.id == restored.id else b for b in updates]
                else:
                    extra_updates.append(restored)
                logger.info("Booking %s no longer overlaps anything; restored", restored.id)

            collisions = confirmed_collisions(timeline.values())
            if collisions:
                first, second = collisions[0]
                raise OverlapError(
                    f"Bookings {first.id} and {second.id} would overlap on {resource_id}",
                    conflicting=second if first.id in written else first,
                )

        self.repository.commit(inserts, [*updates, *extra_updates])

    @staticmethod
    def _restore(booking: Booking, written: Dict[str, Booking]) -> Booking:
        if booking.id in written:
            # Already bumped in this batch
            return replace(booking, status=BookingStatus.CONFIRMED)
        return booking.evolve(status=BookingStatus.CONFIRMED)

    def _reject_collision(
        self,
        timeline: Sequence[Booking],
        resource_id: str,
        date_range: DateRange,
        exclude_id: Optional[str],
    ) -> None:
        collision = find_collision(timeline, resource_id, date_range, exclude_id=exclude_id)
        if collision is not None:
            raise OverlapError(
                f"{date_range} overlaps booking {collision.id} on {resource_id} ({collision.range})",
                conflicting=collision,
            )

    def _require_active(self, booking_id: str) -> Booking:
        booking = self.repository.get(booking_id)
        if booking is None or not booking.is_active:
            raise NotFoundError(booking_id)
        return booking

    @staticmethod
    def _check_version(booking: Booking, expected_version: int) -> None:
        if booking.version != expected_version:
            raise StaleVersionError(
                f"Booking {booking.id} is at version {booking.version}, "
                f"not {expected_version}",
                current=booking,
            )

    def _lock_for(self, resource_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = self._locks[resource_id] = threading.Lock()
            return lock

    @contextmanager
    def _resource_locks(self, resource_ids: Iterable[str]) -> Iterator[None]:
        """Acquire the locks of several resources in a stable order."""
        ordered = sorted(set(resource_ids))
        with ExitStack() as stack:
            for resource_id in ordered:
                stack.enter_context(self._lock_for(resource_id))
            yield
