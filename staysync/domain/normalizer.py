"""
Turns iCalendar feed payloads into normalized ``CalendarEvent`` objects.

Channel feeds disagree on details: some send all-day ``DATE`` values, some
send UTC date-times, some floating local times or ``TZID`` parameters, and
some use ``DURATION`` instead of ``DTEND``. Everything is reduced here to a
half-open range of dates in one reference time zone.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterator, List, Optional, Set

import pendulum
from icalendar import Calendar

from .exceptions import InvalidRangeError, ParseError
from .models import CalendarEvent, DateRange, ParseWarning

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = "Reservation"


@dataclass
class NormalizationResult:
    """Events read from one payload plus the entries that were dropped."""
    events: List[CalendarEvent] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)
    skipped: int = 0


class _SkipEvent(Exception):
    """Internal signal: the current VEVENT is unusable."""


class EventNormalizer:
    """
    Parses calendar-exchange payloads for a single reference time zone.

    Failures of a single VEVENT are collected as warnings; only a payload that
    is not a calendar at all raises ``ParseError``.
    """

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self._tz = pendulum.timezone(timezone)

    def normalize(
        self,
        raw_payload: bytes,
        source_id: str,
        resource_id: str,
        not_before: Optional[date] = None,
    ) -> NormalizationResult:
        """
        Parse a payload into calendar events.

        Args:
            raw_payload: Raw iCalendar document as fetched from the feed
            source_id: Identifier of the feed the payload came from
            resource_id: Resource the feed describes
            not_before: Drop events that end on or before this date

        Returns:
            NormalizationResult with events, warnings and the skipped count

        Raises:
            ParseError: If the payload is not an iCalendar document
        """
        result = NormalizationResult()
        seen_uids: Set[str] = set()

        for component in self._iter_vevents(raw_payload, source_id):
            uid = self._text(component.get("UID"))

            if self._text(component.get("STATUS")).upper() == "CANCELLED":
                result.skipped += 1
                continue

            try:
                event = self._to_event(component, uid, source_id, resource_id)
            except _SkipEvent as exc:
                self._warn(result, ParseWarning(source_id, str(exc), uid or None))
                continue

            if uid in seen_uids:
                self._warn(result, ParseWarning(source_id, "duplicate uid in feed", uid))
                continue
            seen_uids.add(uid)

            if not_before is not None and event.end_date <= not_before:
                result.skipped += 1
                continue

            result.events.append(event)

        return result

    def _iter_vevents(self, raw_payload: bytes, source_id: str) -> Iterator[Any]:
        if not raw_payload or not raw_payload.strip():
            raise ParseError(f"Empty payload from source '{source_id}'")

        try:
            calendars = Calendar.from_ical(raw_payload, multiple=True)
        except (ValueError, IndexError, KeyError) as exc:
            raise ParseError(f"Payload from source '{source_id}' is not iCalendar: {exc}") from exc

        if not calendars or any(cal.name != "VCALENDAR" for cal in calendars):
            raise ParseError(f"Payload from source '{source_id}' has no VCALENDAR root")

        for calendar in calendars:
            yield from calendar.walk("VEVENT")

    def _to_event(
        self,
        component: Any,
        uid: str,
        source_id: str,
        resource_id: str,
    ) -> CalendarEvent:
        if not uid:
            raise _SkipEvent("missing UID")

        start_value = self._temporal(component, "DTSTART")
        if start_value is None:
            raise _SkipEvent("missing or unreadable DTSTART")

        end_value = self._temporal(component, "DTEND")
        if end_value is None:
            duration = self._duration(component)
            if duration is None:
                raise _SkipEvent("missing DTEND and DURATION")
            end_value = start_value + duration

        try:
            date_range = DateRange(start=self._to_date(start_value), end=self._to_date(end_value))
        except InvalidRangeError:
            raise _SkipEvent("end is not after start")

        summary = self._text(component.get("SUMMARY")) or DEFAULT_SUMMARY
        return CalendarEvent(
            source_id=source_id,
            external_uid=uid,
            resource_id=resource_id,
            range=date_range,
            summary=summary,
        )

    def _temporal(self, component: Any, name: str):
        prop = component.get(name)
        value = getattr(prop, "dt", None)
        if isinstance(value, (date, datetime)):
            return value
        return None

    def _duration(self, component: Any) -> Optional[timedelta]:
        prop = component.get("DURATION")
        value = getattr(prop, "dt", None)
        if isinstance(value, timedelta):
            return value
        return None

    def _to_date(self, value) -> date:
        """Reduce a DATE or DATE-TIME value to a date in the reference zone."""
        if not isinstance(value, datetime):
            return value
        if value.tzinfo is None:
            # Floating time: wall-clock time at the property
            local = pendulum.instance(value, tz=self._tz)
        else:
            local = pendulum.instance(value.astimezone(self._tz))
        return date(local.year, local.month, local.day)

    @staticmethod
    def _text(value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @staticmethod
    def _warn(result: NormalizationResult, warning: ParseWarning) -> None:
        result.warnings.append(warning)
        logger.warning(
            "Skipped feed entry: %s",
            warning,
            extra={
                "event": "parse_warning",
                "source_id": warning.source_id,
                "external_uid": warning.external_uid,
                "reason": warning.reason,
            },
        )


def normalize(
    raw_payload: bytes,
    source_id: str,
    resource_id: str,
    timezone: str = "UTC",
    not_before: Optional[date] = None,
) -> NormalizationResult:
    """Normalize a payload with a one-off ``EventNormalizer``."""
    return EventNormalizer(timezone=timezone).normalize(
        raw_payload,
        source_id=source_id,
        resource_id=resource_id,
        not_before=not_before,
    )
