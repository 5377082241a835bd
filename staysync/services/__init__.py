"""
Service layer helpers that orchestrate adapters and domain logic.
"""

from .feed_sync import FeedClientProtocol, FeedSyncService, SyncReport
from .scheduler import FeedScheduler
from .scheduling_store import SchedulingStore
from .scheduling_surface import MoveResult, RejectionReason, SchedulingSurface

__all__ = [
    "FeedClientProtocol",
    "FeedScheduler",
    "FeedSyncService",
    "MoveResult",
    "RejectionReason",
    "SchedulingStore",
    "SchedulingSurface",
    "SyncReport",
]
