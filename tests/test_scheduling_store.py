"""
Tests for the SchedulingStore.
"""

import threading
from datetime import date

import pytest

from staysync.adapters.booking_repository import InMemoryBookingRepository
from staysync.domain.exceptions import (
    InvalidRangeError,
    NotFoundError,
    OverlapError,
    StaleVersionError,
)
from staysync.domain.models import BookingStatus, CalendarEvent, DateRange
from staysync.domain.reconciliation import ReconciliationEngine
from staysync.services.scheduling_store import SchedulingStore


def _d(value: str) -> date:
    return date.fromisoformat(value)


def _event(uid: str, start: str, end: str, source_id="airbnb", resource_id="R1") -> CalendarEvent:
    return CalendarEvent(
        source_id=source_id,
        external_uid=uid,
        resource_id=resource_id,
        range=DateRange(start=_d(start), end=_d(end)),
    )


def _merge(store: SchedulingStore, events, resource_id="R1", source_id="airbnb"):
    engine = ReconciliationEngine(auto_revert_conflicts=store.auto_revert_conflicts)
    plan = engine.reconcile(
        resource_id,
        source_id,
        events,
        store.bookings_for_reconciliation(resource_id, source_id),
    )
    store.apply_reconciliation(plan)
    return plan


@pytest.fixture
def store() -> SchedulingStore:
    return SchedulingStore(InMemoryBookingRepository())


def _conflicted_pair(store: SchedulingStore):
    local = store.create_local("R1", _d("2026-03-01"), _d("2026-03-05"))
    _merge(store, [_event("E1", "2026-03-04", "2026-03-08")])
    synced = next(b for b in store.timeline("R1") if b.origin.is_synced)
    return store.get(local.id), synced


class TestCreateLocal:
    """Tests for staff-created bookings."""

    def test_create(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"), summary="Dupont")

        assert booking.version == 1
        assert booking.origin.is_local
        assert store.get(booking.id) == booking
        assert store.timeline("R1") == [booking]

    def test_overlapping_create_is_rejected(self, store):
        first = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))

        with pytest.raises(OverlapError) as exc_info:
            store.create_local("R1", _d("2026-04-02"), _d("2026-04-04"))

        assert exc_info.value.conflicting.id == first.id
        assert store.timeline("R1") == [first]

    def test_touching_create_is_accepted(self, store):
        store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))
        store.create_local("R1", _d("2026-04-03"), _d("2026-04-05"))

        assert len(store.timeline("R1")) == 2

    def test_other_resource_is_independent(self, store):
        store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))
        store.create_local("R2", _d("2026-04-01"), _d("2026-04-03"))

        assert len(store.timeline("R2")) == 1

    def test_invalid_range(self, store):
        with pytest.raises(InvalidRangeError):
            store.create_local("R1", _d("2026-04-03"), _d("2026-04-03"))

    def test_overlap_with_conflicted_booking_is_rejected(self, store):
        _, synced = _conflicted_pair(store)

        with pytest.raises(OverlapError) as exc_info:
            store.create_local("R1", _d("2026-03-07"), _d("2026-03-10"))

        assert exc_info.value.conflicting.id == synced.id


class TestMove:
    """Tests for moving bookings."""

    def test_move_within_resource(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))

        moved = store.move(booking.id, "R1", _d("2026-04-10"), _d("2026-04-12"), expected_version=1)

        assert moved.version == 2
        assert moved.range == DateRange(_d("2026-04-10"), _d("2026-04-12"))
        assert store.get(booking.id) == moved

    def test_move_to_other_resource(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))

        moved = store.move(booking.id, "R2", _d("2026-04-01"), _d("2026-04-03"), expected_version=1)

        assert moved.resource_id == "R2"
        assert store.timeline("R1") == []
        assert store.timeline("R2") == [moved]

    def test_stale_move_leaves_range_unchanged(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))
        store.move(booking.id, "R1", _d("2026-04-05"), _d("2026-04-07"), expected_version=1)

        with pytest.raises(StaleVersionError) as exc_info:
            store.move(booking.id, "R1", _d("2026-04-20"), _d("2026-04-22"), expected_version=1)

        current = store.get(booking.id)
        assert current.range == DateRange(_d("2026-04-05"), _d("2026-04-07"))
        assert current.version == 2
        assert exc_info.value.current == current

    def test_move_onto_other_booking_is_rejected(self, store):
        first = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))
        second = store.create_local("R1", _d("2026-04-05"), _d("2026-04-08"))

        with pytest.raises(OverlapError) as exc_info:
            store.move(second.id, "R1", _d("2026-04-02"), _d("2026-04-06"), expected_version=1)

        assert exc_info.value.conflicting.id == first.id
        assert store.get(second.id) == second

    def test_move_over_own_range(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-05"))

        moved = store.move(booking.id, "R1", _d("2026-04-02"), _d("2026-04-06"), expected_version=1)

        assert moved.start_date == _d("2026-04-02")

    def test_move_unknown_booking(self, store):
        with pytest.raises(NotFoundError):
            store.move("missing", "R1", _d("2026-04-01"), _d("2026-04-03"), expected_version=1)

    def test_move_invalid_range(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))

        with pytest.raises(InvalidRangeError):
            store.move(booking.id, "R1", _d("2026-04-05"), _d("2026-04-01"), expected_version=1)

    def test_moving_synced_booking_pins_it(self, store):
        _merge(store, [_event("E1", "2026-03-04", "2026-03-08")])
        synced = store.timeline("R1")[0]

        moved = store.move(synced.id, "R1", _d("2026-03-10"), _d("2026-03-14"), expected_version=1)
        _merge(store, [_event("E1", "2026-03-04", "2026-03-08")])

        assert moved.pinned
        assert store.get(synced.id).range == DateRange(_d("2026-03-10"), _d("2026-03-14"))

    def test_moving_conflicted_booking_away_confirms_it(self, store):
        local, _ = _conflicted_pair(store)

        moved = store.move(local.id, "R2", local.start_date, local.end_date, expected_version=local.version)

        assert moved.status is BookingStatus.CONFIRMED


class TestCancel:
    """Tests for cancelling bookings."""

    def test_cancel(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))

        store.cancel(booking.id, expected_version=1)

        assert store.get(booking.id).status is BookingStatus.CANCELLED
        assert store.timeline("R1") == []
        assert len(store.timeline("R1", include_cancelled=True)) == 1

    def test_cancel_frees_the_range(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))
        store.cancel(booking.id, expected_version=1)

        store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))

    def test_cancel_twice(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))
        store.cancel(booking.id, expected_version=1)

        with pytest.raises(NotFoundError):
            store.cancel(booking.id, expected_version=2)

    def test_stale_cancel(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))
        store.move(booking.id, "R1", _d("2026-04-05"), _d("2026-04-07"), expected_version=1)

        with pytest.raises(StaleVersionError):
            store.cancel(booking.id, expected_version=1)

        assert store.get(booking.id).is_active

    def test_cancelling_synced_booking_pins_it(self, store):
        _merge(store, [_event("E1", "2026-04-01", "2026-04-03")])
        synced = store.timeline("R1")[0]

        store.cancel(synced.id, expected_version=synced.version)
        _merge(store, [_event("E1", "2026-04-01", "2026-04-03")])

        assert store.get(synced.id).pinned
        assert store.timeline("R1") == []

    def test_cancelling_local_booking_does_not_pin_it(self, store):
        booking = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))

        store.cancel(booking.id, expected_version=1)

        assert not store.get(booking.id).pinned


class TestConflictResolution:
    """Tests for conflicted bookings and staff overrides."""

    def test_merge_flags_both_sides(self, store):
        local, synced = _conflicted_pair(store)

        assert local.status is BookingStatus.CONFLICTED
        assert synced.status is BookingStatus.CONFLICTED
        assert {b.id for b in store.conflicts("R1")} == {local.id, synced.id}
        assert store.conflicts("R2") == []

    def test_accept_override(self, store):
        local, synced = _conflicted_pair(store)
        store.cancel(local.id, expected_version=local.version)

        confirmed = store.accept_override(synced.id, expected_version=synced.version)

        assert confirmed.status is BookingStatus.CONFIRMED
        assert confirmed.version == synced.version + 1
        assert store.conflicts() == []

    def test_accept_override_blocked_by_confirmed_booking(self, store):
        local, synced = _conflicted_pair(store)
        store.accept_override(synced.id, expected_version=synced.version)

        with pytest.raises(OverlapError) as exc_info:
            store.accept_override(local.id, expected_version=local.version)

        assert exc_info.value.conflicting.id == synced.id
        assert store.get(local.id).status is BookingStatus.CONFLICTED

    def test_auto_revert_on_cancel(self):
        store = SchedulingStore(InMemoryBookingRepository(), auto_revert_conflicts=True)
        local, synced = _conflicted_pair(store)

        store.cancel(local.id, expected_version=local.version)

        assert store.get(synced.id).status is BookingStatus.CONFIRMED
        assert store.get(synced.id).version == synced.version + 1

    def test_confirmed_bookings_never_overlap(self, store):
        store.create_local("R1", _d("2026-03-01"), _d("2026-03-05"))
        _merge(store, [_event("E1", "2026-03-04", "2026-03-08")])
        _merge(store, [_event("V1", "2026-03-02", "2026-03-03")], source_id="vrbo")

        confirmed = [b for b in store.timeline("R1") if b.status is BookingStatus.CONFIRMED]
        for index, first in enumerate(confirmed):
            for second in confirmed[index + 1:]:
                assert not first.range.overlaps(second.range)


class TestApplyReconciliation:
    """Tests for applying merge plans."""

    def test_apply_plan(self, store):
        plan = _merge(store, [_event("E1", "2026-03-04", "2026-03-08")])

        assert len(plan.to_create) == 1
        assert store.timeline("R1") == plan.to_create

    def test_empty_plan_writes_nothing(self, store):
        engine = ReconciliationEngine()
        plan = engine.reconcile("R1", "airbnb", [], [])

        assert store.apply_reconciliation(plan) == []

    def test_stale_plan_is_rejected(self, store):
        engine = ReconciliationEngine()
        plan = engine.reconcile(
            "R1",
            "airbnb",
            [_event("E1", "2026-03-04", "2026-03-08")],
            store.bookings_for_reconciliation("R1", "airbnb"),
        )
        store.create_local("R1", _d("2026-03-01"), _d("2026-03-05"))

        with pytest.raises(StaleVersionError):
            store.apply_reconciliation(plan)

        assert [b.origin.is_local for b in store.timeline("R1")] == [True]
        assert store.timeline("R1")[0].status is BookingStatus.CONFIRMED

    def test_plan_racing_a_move_is_rejected(self, store):
        _merge(store, [_event("E1", "2026-03-04", "2026-03-08")])
        synced = store.timeline("R1")[0]
        engine = ReconciliationEngine()
        plan = engine.reconcile(
            "R1",
            "airbnb",
            [_event("E1", "2026-03-05", "2026-03-09")],
            store.bookings_for_reconciliation("R1", "airbnb"),
        )
        store.move(synced.id, "R1", _d("2026-03-20"), _d("2026-03-22"), expected_version=1)

        with pytest.raises(StaleVersionError):
            store.apply_reconciliation(plan)

        assert store.get(synced.id).range == DateRange(_d("2026-03-20"), _d("2026-03-22"))


class TestReads:
    """Tests for read access."""

    def test_timeline_window(self, store):
        first = store.create_local("R1", _d("2026-04-01"), _d("2026-04-03"))
        second = store.create_local("R1", _d("2026-04-10"), _d("2026-04-12"))

        assert store.timeline("R1", start=_d("2026-04-03"), end=_d("2026-04-10")) == []
        assert store.timeline("R1", start=_d("2026-04-02"), end=_d("2026-04-11")) == [first, second]
        assert store.timeline("R1", start=_d("2026-04-11")) == [second]


class TestConcurrency:
    """Tests for concurrent mutations on one resource."""

    def test_concurrent_creates_admit_exactly_one(self, store):
        barrier = threading.Barrier(8)
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                store.create_local("R1", _d("2026-05-01"), _d("2026-05-04"))
                result = "created"
            except OverlapError:
                result = "overlap"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("created") == 1
        assert outcomes.count("overlap") == 7
        assert len(store.timeline("R1")) == 1

    def test_concurrent_moves_with_same_version(self, store):
        booking = store.create_local("R1", _d("2026-05-01"), _d("2026-05-04"))
        barrier = threading.Barrier(2)
        outcomes = []

        def worker(start: str, end: str):
            barrier.wait()
            try:
                store.move(booking.id, "R1", _d(start), _d(end), expected_version=1)
                outcomes.append("moved")
            except StaleVersionError:
                outcomes.append("stale")

        threads = [
            threading.Thread(target=worker, args=("2026-05-10", "2026-05-12")),
            threading.Thread(target=worker, args=("2026-05-20", "2026-05-22")),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["moved", "stale"]
        assert store.get(booking.id).version == 2
