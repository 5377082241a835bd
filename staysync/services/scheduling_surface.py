"""
Controller behind the drag-and-drop booking grid.

Translates a drop on the grid into a store move and turns every outcome into
either the confirmed booking or one explicit rejection reason. It keeps no
state: what the grid shows always comes from the store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

import pendulum
from pendulum.parsing.exceptions import ParserError

from ..domain.exceptions import (
    InvalidRangeError,
    NotFoundError,
    OverlapError,
    StaleVersionError,
)
from ..domain.models import Booking
from .scheduling_store import SchedulingStore

logger = logging.getLogger(__name__)

DateInput = Union[date, str]


class RejectionReason(str, Enum):
    STALE_VERSION = "stale_version"
    OVERLAP = "overlap"
    INVALID_RANGE = "invalid_range"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class MoveResult:
    """
    Outcome of a proposed move.

    ``booking`` is the moved booking when accepted, and the freshly read
    current state when the proposal was stale.
    """
    accepted: bool
    booking: Optional[Booking] = None
    reason: Optional[RejectionReason] = None
    message: str = ""
    conflicting_booking_id: Optional[str] = None

    @classmethod
    def rejected(
        cls,
        reason: RejectionReason,
        message: str,
        booking: Optional[Booking] = None,
        conflicting_booking_id: Optional[str] = None,
    ) -> "MoveResult":
        return cls(
            accepted=False,
            booking=booking,
            reason=reason,
            message=message,
            conflicting_booking_id=conflicting_booking_id,
        )


def _parse_date(value: DateInput) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = pendulum.parse(value, exact=True)
    if isinstance(parsed, pendulum.DateTime):
        return parsed.date()
    if isinstance(parsed, pendulum.Date):
        return parsed
    raise ValueError(f"Not a date: {value}")


class SchedulingSurface:
    """Drag-and-drop entry point onto the scheduling store."""

    def __init__(self, store: SchedulingStore):
        self._store = store

    def propose_move(
        self,
        booking_id: str,
        target_resource_id: str,
        target_start: DateInput,
        target_end: DateInput,
        expected_version: Optional[int] = None,
    ) -> MoveResult:
        """
        Try to move a booking to the cell it was dropped on.

        The booking's version is read right before the move. When the grid
        passes the version it displayed at drag start as ``expected_version``,
        that one is checked instead, so a change made by someone else while
        the booking was being dragged is reported rather than overwritten.
        """
        try:
            start = _parse_date(target_start)
            end = _parse_date(target_end)
        except (ValueError, TypeError, ParserError) as exc:
            return MoveResult.rejected(RejectionReason.INVALID_RANGE, f"Invalid date: {exc}")

        current = self._store.get(booking_id)
        if current is None or not current.is_active:
            return MoveResult.rejected(RejectionReason.NOT_FOUND, f"Booking {booking_id} not found")

        try:
            moved = self._store.move(
                booking_id,
                target_resource_id,
                start,
                end,
                expected_version=current.version if expected_version is None else expected_version,
            )

        except StaleVersionError:
            latest = self._store.get(booking_id)
            logger.info("Rejected stale move of booking %s", booking_id)
            return MoveResult.rejected(
                RejectionReason.STALE_VERSION,
                "This booking changed, please retry",
                booking=latest,
            )

        except OverlapError as exc:
            conflicting = exc.conflicting.id if exc.conflicting is not None else None
            return MoveResult.rejected(
                RejectionReason.OVERLAP,
                str(exc),
                booking=current,
                conflicting_booking_id=conflicting,
            )

        except InvalidRangeError as exc:
            return MoveResult.rejected(RejectionReason.INVALID_RANGE, str(exc), booking=current)

        except NotFoundError as exc:
            return MoveResult.rejected(RejectionReason.NOT_FOUND, str(exc))

        return MoveResult(accepted=True, booking=moved, message="Booking moved")

    def board(
        self,
        resource_ids: Sequence[str],
        start: DateInput,
        end: DateInput,
    ) -> Dict[str, List[Booking]]:
        """Active bookings per resource for the visible window of the grid."""
        window_start = _parse_date(start)
        window_end = _parse_date(end)
        return {
            resource_id: self._store.timeline(resource_id, start=window_start, end=window_end)
            for resource_id in resource_ids
        }
