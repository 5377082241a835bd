"""
Application service for synchronising channel feeds into the store.

The service coordinates fetching payloads via a feed client adapter and
delegates parsing and merging to the domain-level ``EventNormalizer`` and
``ReconciliationEngine``. Every feed is processed independently: a failure
of one source is reported and never affects the others.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

import pendulum

from ..domain.exceptions import FetchError, FetchTimeoutError, ParseError, StaleVersionError
from ..domain.models import FeedSource, ParseWarning
from ..domain.normalizer import EventNormalizer
from ..domain.reconciliation import ReconciliationEngine
from .scheduling_store import SchedulingStore

logger = logging.getLogger(__name__)


class FeedClientProtocol(Protocol):
    """Protocol describing the feed client behaviour needed by the service."""

    def fetch(self, feed: FeedSource) -> bytes:
        """Return the raw payload of a feed, raising ``FetchError`` on failure."""


@dataclass
class SyncReport:
    """Outcome of one sync cycle for one feed."""
    resource_id: str
    source_id: str
    created: int = 0
    updated: int = 0
    cancelled: int = 0
    flagged: int = 0
    restored: int = 0
    skipped: int = 0
    warnings: List[ParseWarning] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def summary(self) -> str:
        if not self.ok:
            return f"{self.resource_id}/{self.source_id}: failed ({self.error})"
        return (
            f"{self.resource_id}/{self.source_id}: {self.created} created, "
            f"{self.updated} updated, {self.cancelled} cancelled, "
            f"{self.skipped} skipped, {self.flagged} conflicts, "
            f"{self.restored} restored, {len(self.warnings)} warnings"
        )


class FeedSyncService:
    """
    Orchestrates fetch, normalization, reconciliation and persistence.

    Dependency inversion toward a protocol makes it easy to plug in the real
    HTTP adapter or the static client in tests.
    """

    def __init__(
        self,
        feed_client: FeedClientProtocol,
        store: SchedulingStore,
        engine: Optional[ReconciliationEngine] = None,
        normalizer: Optional[EventNormalizer] = None,
        timeout_seconds: float = 15.0,
        max_apply_attempts: int = 3,
        skip_past_events: bool = False,
    ) -> None:
        self._feed_client = feed_client
        self._store = store
        self._engine = engine or ReconciliationEngine(
            auto_revert_conflicts=store.auto_revert_conflicts
        )
        self._normalizer = normalizer or EventNormalizer()
        self.timeout_seconds = timeout_seconds
        self.max_apply_attempts = max_apply_attempts
        self.skip_past_events = skip_past_events

    async def fetch(self, feed: FeedSource) -> bytes:
        """
        Fetch a feed off the event loop, abandoning it after the timeout.

        Raises:
            FetchError: If the fetch fails or times out
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._feed_client.fetch, feed),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise FetchTimeoutError(
                f"Feed {feed} did not answer within {self.timeout_seconds}s",
                url=feed.url,
            ) from exc

    async def sync_feed(self, feed: FeedSource) -> SyncReport:
        """
        Fetch and merge a single feed.

        Never raises: whatever goes wrong with this feed ends up in the
        report, so the other feeds of the cycle are not affected.
        """
        try:
            payload = await self.fetch(feed)
            return self.process(feed, payload)
        except FetchError as exc:
            return self.report_failure(feed, exc)
        except Exception as exc:
            logger.exception("Unexpected error while syncing %s", feed)
            return self.report_failure(feed, exc)

    async def sync_all(self, feeds: Sequence[FeedSource]) -> List[SyncReport]:
        """Sync every feed concurrently; one slow or broken feed delays no other."""
        return list(await asyncio.gather(*(self.sync_feed(feed) for feed in feeds)))

    def report_failure(self, feed: FeedSource, error: Exception) -> SyncReport:
        """
        Record a failed sync cycle.

        The source's bookings are left untouched: a failed fetch is not a
        signal that anything was cancelled.
        """
        logger.warning(
            "Sync failed for %s: %s",
            feed,
            error,
            extra={
                "event": "fetch_failed" if isinstance(error, FetchError) else "sync_failed",
                "resource_id": feed.resource_id,
                "source_id": feed.source_id,
                "error_type": type(error).__name__,
            },
        )
        return SyncReport(
            resource_id=feed.resource_id,
            source_id=feed.source_id,
            error=f"{type(error).__name__}: {error}",
        )

    def process(self, feed: FeedSource, payload: bytes) -> SyncReport:
        """
        Normalize a fetched payload and merge it into the store.

        A plan that turns out stale when applied is recomputed from fresh
        state, up to ``max_apply_attempts`` times.
        """
        report = SyncReport(resource_id=feed.resource_id, source_id=feed.source_id)
        horizon = self._horizon()

        try:
            result = self._normalizer.normalize(
                payload,
                source_id=feed.source_id,
                resource_id=feed.resource_id,
                not_before=horizon,
            )
        except ParseError as exc:
            logger.warning(
                "Feed %s could not be parsed: %s",
                feed,
                exc,
                extra={
                    "event": "parse_failed",
                    "resource_id": feed.resource_id,
                    "source_id": feed.source_id,
                },
            )
            report.error = f"ParseError: {exc}"
            return report

        report.warnings = list(result.warnings)
        report.skipped = result.skipped

        for attempt in range(1, self.max_apply_attempts + 1):
            existing = self._store.bookings_for_reconciliation(feed.resource_id, feed.source_id)
            plan = self._engine.reconcile(
                resource_id=feed.resource_id,
                source_id=feed.source_id,
                fresh_events=result.events,
                existing_bookings=existing,
                horizon=horizon,
            )

            try:
                self._store.apply_reconciliation(plan)
            except StaleVersionError as exc:
                logger.info(
                    "Plan for %s was stale (attempt %d/%d): %s",
                    feed,
                    attempt,
                    self.max_apply_attempts,
                    exc,
                )
                continue

            report.created = len(plan.to_create)
            report.updated = len(plan.to_update)
            report.cancelled = len(plan.to_cancel)
            report.flagged = len(plan.newly_conflicted)
            report.restored = len(plan.to_restore)
            self._store.record_sync(feed, pendulum.now("UTC"))
            logger.info("Synced %s", report.summary())
            return report

        report.error = f"StaleVersionError: gave up after {self.max_apply_attempts} attempts"
        logger.warning(
            "Giving up on %s for this cycle",
            feed,
            extra={
                "event": "apply_failed",
                "resource_id": feed.resource_id,
                "source_id": feed.source_id,
            },
        )
        return report

    def _horizon(self):
        if not self.skip_past_events:
            return None
        return pendulum.today(self._normalizer.timezone).date()
