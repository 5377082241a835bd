"""
Tests for the ReconciliationEngine.
"""

from datetime import date
from typing import Dict, List

from staysync.domain.models import (
    Booking,
    BookingStatus,
    CalendarEvent,
    DateRange,
    Origin,
    ReconciliationPlan,
)
from staysync.domain.reconciliation import ReconciliationEngine


def _range(start: str, end: str) -> DateRange:
    return DateRange(start=date.fromisoformat(start), end=date.fromisoformat(end))


def _event(uid: str, start: str, end: str, source_id="airbnb", resource_id="R1") -> CalendarEvent:
    return CalendarEvent(
        source_id=source_id,
        external_uid=uid,
        resource_id=resource_id,
        range=_range(start, end),
        summary="Reserved",
    )


def _local(booking_id: str, start: str, end: str, resource_id="R1") -> Booking:
    return Booking(id=booking_id, resource_id=resource_id, range=_range(start, end))


def _apply(existing: List[Booking], plan: ReconciliationPlan) -> List[Booking]:
    """Apply a plan to an in-memory list, the way the store would."""
    by_id: Dict[str, Booking] = {b.id: b for b in existing}
    for booking in plan.resulting_bookings():
        by_id[booking.id] = booking
    return list(by_id.values())


def _by_uid(bookings: List[Booking], uid: str) -> Booking:
    return next(b for b in bookings if b.origin.external_uid == uid)


class TestCreatesAndUpdates:
    """Tests for steps 1 and 2 of the merge."""

    def test_unseen_events_are_created(self):
        engine = ReconciliationEngine()

        plan = engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-01", "2026-03-05")], [])

        assert len(plan.to_create) == 1
        created = plan.to_create[0]
        assert created.origin == Origin.synced("airbnb", "E1")
        assert created.range == _range("2026-03-01", "2026-03-05")
        assert created.status is BookingStatus.CONFIRMED
        assert created.version == 1

    def test_changed_range_is_updated(self):
        engine = ReconciliationEngine()
        bookings = _apply([], engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-01", "2026-03-05")], []))

        plan = engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-02", "2026-03-06")], bookings)

        assert plan.to_create == []
        assert len(plan.to_update) == 1
        change = plan.to_update[0]
        assert change.after.range == _range("2026-03-02", "2026-03-06")
        assert change.after.version == change.before.version + 1
        assert change.after.id == change.before.id

    def test_second_run_is_idempotent(self):
        """Test that the same fresh events twice produce no mutations."""
        engine = ReconciliationEngine()
        events = [
            _event("E1", "2026-03-01", "2026-03-05"),
            _event("E2", "2026-03-10", "2026-03-12"),
        ]
        existing = [_local("L1", "2026-03-20", "2026-03-22")]

        first = engine.reconcile("R1", "airbnb", events, existing)
        second = engine.reconcile("R1", "airbnb", events, _apply(existing, first))

        assert not first.is_empty
        assert second.is_empty

    def test_idempotent_with_conflicts(self):
        engine = ReconciliationEngine()
        events = [_event("E1", "2026-03-04", "2026-03-08")]
        existing = [_local("L1", "2026-03-01", "2026-03-05")]

        first = engine.reconcile("R1", "airbnb", events, existing)
        second = engine.reconcile("R1", "airbnb", events, _apply(existing, first))

        assert second.is_empty

    def test_events_of_other_feeds_are_ignored(self):
        engine = ReconciliationEngine()
        events = [
            _event("E1", "2026-03-01", "2026-03-05", source_id="vrbo"),
            _event("E2", "2026-03-01", "2026-03-05", resource_id="R2"),
        ]

        assert engine.reconcile("R1", "airbnb", events, []).is_empty

    def test_pinned_booking_is_not_overwritten(self):
        engine = ReconciliationEngine()
        pinned = Booking(
            id="B1",
            resource_id="R1",
            range=_range("2026-03-10", "2026-03-12"),
            origin=Origin.synced("airbnb", "E1"),
            version=3,
            pinned=True,
        )

        plan = engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-01", "2026-03-05")], [pinned])

        assert plan.is_empty

    def test_staff_cancelled_event_is_not_recreated(self):
        engine = ReconciliationEngine()
        dismissed = Booking(
            id="B1",
            resource_id="R1",
            range=_range("2026-03-01", "2026-03-05"),
            origin=Origin.synced("airbnb", "E1"),
            status=BookingStatus.CANCELLED,
            version=2,
            pinned=True,
        )

        plan = engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-01", "2026-03-05")], [dismissed])

        assert plan.is_empty

    def test_relisted_event_returns_after_disappearing(self):
        engine = ReconciliationEngine()
        event = _event("E1", "2026-03-01", "2026-03-05")
        bookings = _apply([], engine.reconcile("R1", "airbnb", [event], []))
        bookings = _apply(bookings, engine.reconcile("R1", "airbnb", [], bookings))

        plan = engine.reconcile("R1", "airbnb", [event], bookings)

        assert [b.origin.external_uid for b in plan.to_create] == ["E1"]


class TestDisappearanceRule:
    """Tests for step 3 of the merge."""

    def test_missing_synced_booking_is_cancelled(self):
        engine = ReconciliationEngine()
        bookings = _apply([], engine.reconcile(
            "R1", "airbnb",
            [_event("E1", "2026-03-01", "2026-03-05"), _event("E2", "2026-03-10", "2026-03-12")],
            [],
        ))

        plan = engine.reconcile("R1", "airbnb", [_event("E2", "2026-03-10", "2026-03-12")], bookings)

        assert [c.after.origin.external_uid for c in plan.to_cancel] == ["E1"]
        assert plan.to_cancel[0].after.status is BookingStatus.CANCELLED

    def test_local_booking_is_never_cancelled(self):
        engine = ReconciliationEngine()
        existing = [_local("L1", "2026-03-01", "2026-03-05")]

        plan = engine.reconcile("R1", "airbnb", [], existing)

        assert plan.is_empty

    def test_other_sources_are_not_cancelled(self):
        engine = ReconciliationEngine()
        other = Booking(
            id="V1",
            resource_id="R1",
            range=_range("2026-03-01", "2026-03-05"),
            origin=Origin.synced("vrbo", "X"),
        )

        assert engine.reconcile("R1", "airbnb", [], [other]).is_empty

    def test_past_bookings_outside_horizon_are_kept(self):
        engine = ReconciliationEngine()
        past = Booking(
            id="B1",
            resource_id="R1",
            range=_range("2026-01-01", "2026-01-05"),
            origin=Origin.synced("airbnb", "OLD"),
        )

        plan = engine.reconcile("R1", "airbnb", [], [past], horizon=date(2026, 2, 1))

        assert plan.is_empty

    def test_moved_booking_on_other_resource_is_cancelled(self):
        """Test that a booking staff moved to another resource still follows its feed."""
        engine = ReconciliationEngine()
        moved = Booking(
            id="B1",
            resource_id="R2",
            range=_range("2026-03-01", "2026-03-05"),
            origin=Origin.synced("airbnb", "E1"),
            version=2,
            pinned=True,
        )

        plan = engine.reconcile("R1", "airbnb", [], [moved])

        assert [c.booking_id for c in plan.to_cancel] == ["B1"]
        assert plan.resource_ids == ["R1", "R2"]


class TestConflicts:
    """Tests for steps 4 and 5 of the merge."""

    def test_overlap_with_local_flags_both(self):
        """A feed event overlapping a confirmed local booking flags both sides."""
        engine = ReconciliationEngine()
        local = _local("L1", "2026-03-01", "2026-03-05")

        plan = engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-04", "2026-03-08")], [local])

        assert len(plan.to_create) == 1
        assert plan.to_create[0].status is BookingStatus.CONFLICTED
        assert len(plan.to_flag_conflict) == 1
        flagged = plan.to_flag_conflict[0]
        assert flagged.booking_id == "L1"
        assert flagged.after.status is BookingStatus.CONFLICTED
        assert flagged.after.version == 2
        assert plan.conflicts == [("L1", plan.to_create[0].id)]
        assert len(plan.newly_conflicted) == 2

    def test_touching_ranges_are_not_conflicts(self):
        engine = ReconciliationEngine()
        local = _local("L1", "2026-03-01", "2026-03-05")

        plan = engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-05", "2026-03-08")], [local])

        assert plan.to_create[0].status is BookingStatus.CONFIRMED
        assert plan.to_flag_conflict == []

    def test_overlap_between_sources(self):
        engine = ReconciliationEngine()
        other = Booking(
            id="V1",
            resource_id="R1",
            range=_range("2026-03-01", "2026-03-05"),
            origin=Origin.synced("vrbo", "X"),
        )

        plan = engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-03", "2026-03-06")], [other])

        assert plan.to_create[0].status is BookingStatus.CONFLICTED
        assert [c.booking_id for c in plan.to_flag_conflict] == ["V1"]

    def test_resolved_overlap_keeps_conflict_by_default(self):
        """Moving E1 away persists the new range; conflicts stay until staff act."""
        engine = ReconciliationEngine()
        existing = [_local("L1", "2026-03-01", "2026-03-05")]
        bookings = _apply(existing, engine.reconcile(
            "R1", "airbnb", [_event("E1", "2026-03-04", "2026-03-08")], existing
        ))

        plan = engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-06", "2026-03-09")], bookings)
        bookings = _apply(bookings, plan)

        e1 = _by_uid(bookings, "E1")
        assert e1.range == _range("2026-03-06", "2026-03-09")
        assert e1.status is BookingStatus.CONFLICTED
        assert plan.to_restore == []

    def test_resolved_overlap_auto_reverts_when_enabled(self):
        engine = ReconciliationEngine(auto_revert_conflicts=True)
        existing = [_local("L1", "2026-03-01", "2026-03-05")]
        bookings = _apply(existing, engine.reconcile(
            "R1", "airbnb", [_event("E1", "2026-03-04", "2026-03-08")], existing
        ))

        plan = engine.reconcile("R1", "airbnb", [_event("E1", "2026-03-06", "2026-03-09")], bookings)
        bookings = _apply(bookings, plan)

        assert all(b.status is BookingStatus.CONFIRMED for b in bookings)
        assert _by_uid(bookings, "E1").range == _range("2026-03-06", "2026-03-09")
        assert [c.booking_id for c in plan.to_restore] == ["L1"]
        # E1 is updated and restored in a single change
        assert len(plan.to_update) == 1
        assert plan.to_update[0].after.status is BookingStatus.CONFIRMED

    def test_cancellation_of_counterpart_auto_reverts(self):
        engine = ReconciliationEngine(auto_revert_conflicts=True)
        existing = [_local("L1", "2026-03-01", "2026-03-05")]
        bookings = _apply(existing, engine.reconcile(
            "R1", "airbnb", [_event("E1", "2026-03-04", "2026-03-08")], existing
        ))

        plan = engine.reconcile("R1", "airbnb", [], bookings)

        assert len(plan.to_cancel) == 1
        assert [c.booking_id for c in plan.to_restore] == ["L1"]

    def test_basis_records_every_input_version(self):
        engine = ReconciliationEngine()
        existing = [_local("L1", "2026-03-01", "2026-03-05"), _local("L2", "2026-03-10", "2026-03-12")]

        plan = engine.reconcile("R1", "airbnb", [], existing)

        assert plan.basis == {"L1": 1, "L2": 1}
