"""
Domain layer - Pure business logic without external dependencies.
"""

from .conflicts import find_overlapping_pairs, scan_conflicts
from .exporter import BookingExporter, export_bookings
from .models import (
    Booking,
    BookingStatus,
    CalendarEvent,
    DateRange,
    Origin,
    ParseWarning,
    ReconciliationPlan,
    StagedChange,
)
from .normalizer import EventNormalizer, NormalizationResult, normalize
from .reconciliation import ReconciliationEngine

__all__ = [
    "Booking",
    "BookingStatus",
    "BookingExporter",
    "CalendarEvent",
    "DateRange",
    "EventNormalizer",
    "NormalizationResult",
    "Origin",
    "ParseWarning",
    "ReconciliationEngine",
    "ReconciliationPlan",
    "StagedChange",
    "export_bookings",
    "find_overlapping_pairs",
    "normalize",
    "scan_conflicts",
]
