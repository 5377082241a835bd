"""
Publishes bookings as an iCalendar feed that channels can subscribe to.

Every active booking becomes an all-day VEVENT from check-in to check-out,
so channels block exactly the nights that are taken here.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from icalendar import Calendar, Event

from .models import Booking, BookingStatus

PRODID = "-//staysync//Calendar//EN"
UID_DOMAIN = "staysync"


class BookingExporter:
    """
    Renders bookings into a calendar document.

    Text values are escaped by ``icalendar``; dates are written as
    ``VALUE=DATE`` so the feed carries no time zone ambiguity.
    """

    def __init__(self, calendar_name: str = "staysync", timezone: str = "UTC"):
        self.calendar_name = calendar_name
        self.timezone = timezone

    def export(
        self,
        bookings: Iterable[Booking],
        resource_names: Optional[Dict[str, str]] = None,
        local_only: bool = False,
        stamp: Optional[datetime] = None,
    ) -> bytes:
        """
        Build the calendar document.

        Args:
            bookings: Bookings to publish; cancelled ones are left out
            resource_names: Display name per resource id, used in summaries
            local_only: Only publish staff bookings, so a channel is not
                sent back the stays it exported itself
            stamp: DTSTAMP of every event, defaults to now

        Returns:
            The serialized calendar
        """
        names = resource_names or {}
        stamp = stamp or datetime.now(timezone.utc)

        calendar = Calendar()
        calendar.add("prodid", PRODID)
        calendar.add("version", "2.0")
        calendar.add("calscale", "GREGORIAN")
        calendar.add("method", "PUBLISH")
        calendar.add("x-wr-calname", self.calendar_name)
        calendar.add("x-wr-timezone", self.timezone)

        ordered = sorted(bookings, key=lambda b: (b.start_date, b.resource_id, b.id))
        for booking in ordered:
            if not booking.is_active:
                continue
            if local_only and booking.origin.is_synced:
                continue
            calendar.add_component(self._to_event(booking, names, stamp))

        return calendar.to_ical()

    @staticmethod
    def _to_event(booking: Booking, names: Dict[str, str], stamp: datetime) -> Event:
        resource_name = names.get(booking.resource_id, booking.resource_id)

        event = Event()
        event.add("uid", f"booking-{booking.id}@{UID_DOMAIN}")
        event.add("dtstamp", stamp)
        event.add("dtstart", booking.start_date)
        event.add("dtend", booking.end_date)
        event.add("summary", f"{booking.display_label()} - {resource_name}")
        event.add("categories", ["Reservation"])
        if booking.status is BookingStatus.CONFLICTED:
            event.add("status", "TENTATIVE")
        else:
            event.add("status", "CONFIRMED")
        event.add("transp", "TRANSPARENT")
        return event


def export_bookings(
    bookings: Iterable[Booking],
    calendar_name: str = "staysync",
    timezone: str = "UTC",
    resource_names: Optional[Dict[str, str]] = None,
    local_only: bool = False,
) -> bytes:
    """Export bookings with a one-off ``BookingExporter``."""
    return BookingExporter(calendar_name=calendar_name, timezone=timezone).export(
        bookings,
        resource_names=resource_names,
        local_only=local_only,
    )
