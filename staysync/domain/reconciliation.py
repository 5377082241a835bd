"""
Merges a freshly fetched feed into a resource's booking timeline.

This is pure domain logic: the engine receives the events and the current
bookings, and returns a ``ReconciliationPlan``. It never talks to the store
or the network.
"""

import logging
from dataclasses import replace
from datetime import date
from typing import Dict, List, Optional, Sequence, Set

from .conflicts import scan_conflicts
from .models import (
    Booking,
    BookingStatus,
    CalendarEvent,
    Origin,
    ReconciliationPlan,
    StagedChange,
)

logger = logging.getLogger(__name__)

_CANCEL = "cancel"
_UPDATE = "update"
_FLAG = "flag"
_RESTORE = "restore"


class ReconciliationEngine:
    """
    Computes the mutations that bring stored bookings in line with a feed.

    Algorithm:
    1. Index the source's existing synced bookings by external uid
    2. Stage a create for every unseen uid, an update for every changed range
    3. Stage a cancellation for every indexed uid missing from the feed
    4. Scan the resulting timeline (all origins) for colliding pairs and
       flag both sides as conflicted
    5. Optionally restore conflicted bookings that no longer collide

    Local bookings are never created, updated or cancelled here; at most
    their conflict status changes. Pinned bookings keep the range staff
    gave them, and an event staff cancelled is not created again.
    """

    def __init__(self, auto_revert_conflicts: bool = False):
        self.auto_revert_conflicts = auto_revert_conflicts

    def reconcile(
        self,
        resource_id: str,
        source_id: str,
        fresh_events: Sequence[CalendarEvent],
        existing_bookings: Sequence[Booking],
        horizon: Optional[date] = None,
    ) -> ReconciliationPlan:
        """
        Plan the merge of one successful fetch into one resource.

        Args:
            resource_id: Resource the feed belongs to
            source_id: Feed identifier
            fresh_events: Every event of the successful fetch
            existing_bookings: The resource's timeline plus the source's
                synced bookings on other resources
            horizon: Synced bookings ending on or before this date are
                outside the fetched window and are not cancelled

        Returns:
            ReconciliationPlan; empty when nothing changed
        """
        plan = ReconciliationPlan(
            resource_id=resource_id,
            source_id=source_id,
            basis={b.id: b.version for b in existing_bookings},
        )

        originals: Dict[str, Booking] = {b.id: b for b in existing_bookings}
        working: Dict[str, Booking] = dict(originals)
        kinds: Dict[str, str] = {}

        # Step 1: index by external uid
        indexed: Dict[str, Booking] = {
            b.origin.external_uid: b
            for b in existing_bookings
            if b.is_active and b.origin.source_id == source_id and b.origin.is_synced
        }
        # Events staff cancelled by hand stay cancelled while the feed lists them
        dismissed: Set[str] = {
            b.origin.external_uid
            for b in existing_bookings
            if not b.is_active and b.pinned and b.origin.source_id == source_id
        }

        fresh: Dict[str, CalendarEvent] = {}
        for event in fresh_events:
            if event.source_id != source_id or event.resource_id != resource_id:
                continue
            fresh.setdefault(event.external_uid, event)

        # Step 2: creates and updates
        created: List[str] = []
        for uid, event in fresh.items():
            booking = indexed.get(uid)

            if booking is None:
                if uid in dismissed:
                    continue
                new_booking = Booking.new(
                    resource_id=resource_id,
                    date_range=event.range,
                    origin=Origin.synced(source_id, uid),
                    summary=event.summary,
                )
                working[new_booking.id] = new_booking
                created.append(new_booking.id)
                continue

            if booking.pinned:
                continue

            if booking.range != event.range or booking.resource_id != resource_id:
                working[booking.id] = replace(
                    working[booking.id],
                    resource_id=resource_id,
                    range=event.range,
                    summary=event.summary,
                )
                kinds[booking.id] = _UPDATE

        # Step 3: disappearance rule
        for uid, booking in indexed.items():
            if uid in fresh:
                continue
            if horizon is not None and booking.end_date <= horizon:
                continue
            # Unpinned so a channel that lists the uid again brings it back
            working[booking.id] = replace(
                working[booking.id], status=BookingStatus.CANCELLED, pinned=False
            )
            kinds[booking.id] = _CANCEL

        # Steps 4 and 5: conflicts across every origin on this resource
        timeline = [b for b in working.values() if b.resource_id == resource_id]
        scan = scan_conflicts(timeline, auto_revert=self.auto_revert_conflicts)

        for booking in scan.to_flag:
            working[booking.id] = replace(working[booking.id], status=BookingStatus.CONFLICTED)
            kinds.setdefault(booking.id, _FLAG)
        for booking in scan.to_restore:
            working[booking.id] = replace(working[booking.id], status=BookingStatus.CONFIRMED)
            kinds.setdefault(booking.id, _RESTORE)

        plan.conflicts = [(first.id, second.id) for first, second in scan.pairs]
        plan.to_create = [working[booking_id] for booking_id in created]

        for booking_id, kind in kinds.items():
            if booking_id not in originals:
                continue
            before = originals[booking_id]
            after = replace(working[booking_id], version=before.version + 1)
            change = StagedChange(before=before, after=after)
            if kind == _CANCEL:
                plan.to_cancel.append(change)
            elif kind == _UPDATE:
                plan.to_update.append(change)
            elif kind == _FLAG:
                plan.to_flag_conflict.append(change)
            else:
                plan.to_restore.append(change)

        for booking in plan.newly_conflicted:
            logger.warning(
                "Booking %s on %s is now conflicted",
                booking.id,
                resource_id,
                extra={
                    "event": "conflict_detected",
                    "resource_id": resource_id,
                    "source_id": source_id,
                    "booking_id": booking.id,
                },
            )

        return plan
