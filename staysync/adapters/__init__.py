"""
Adapters layer - External integrations (channel feeds, database).
"""

from .booking_repository import (
    BookingRepository,
    InMemoryBookingRepository,
    SqlBookingRepository,
)
from .feed_client import IcalFeedClient
from .static_feed_client import StaticFeedClient

__all__ = [
    "BookingRepository",
    "IcalFeedClient",
    "InMemoryBookingRepository",
    "SqlBookingRepository",
    "StaticFeedClient",
]
