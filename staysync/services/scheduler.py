"""
Periodic background synchronisation.

Each feed gets its own poller task with its own interval, so a slow channel
never delays the others. Pollers only fetch; fetched payloads are handed to
a single reconciliation worker through a queue.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from ..domain.exceptions import FetchError
from ..domain.models import FeedSource
from .feed_sync import FeedSyncService, SyncReport

logger = logging.getLogger(__name__)


@dataclass
class _FetchOutcome:
    feed: FeedSource
    payload: Optional[bytes] = None
    error: Optional[Exception] = None


class FeedScheduler:
    """Runs one poller per feed and a single reconciliation worker."""

    def __init__(
        self,
        sync_service: FeedSyncService,
        feeds: Sequence[FeedSource],
        default_interval_seconds: float = 900,
        on_report: Optional[Callable[[SyncReport], None]] = None,
    ):
        self.sync_service = sync_service
        self.feeds = list(feeds)
        self.default_interval_seconds = default_interval_seconds
        self.on_report = on_report
        self.reports: List[SyncReport] = []

    def interval_for(self, feed: FeedSource) -> float:
        return feed.interval_seconds or self.default_interval_seconds

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll every feed on its own schedule until ``stop_event`` is set."""
        queue: asyncio.Queue[_FetchOutcome] = asyncio.Queue()
        pollers = [asyncio.create_task(self._poll(feed, queue, stop_event)) for feed in self.feeds]
        worker = asyncio.create_task(self._work(queue))

        try:
            await stop_event.wait()
        finally:
            for task in pollers:
                task.cancel()
            await asyncio.gather(*pollers, return_exceptions=True)
            # Let already fetched payloads be merged before stopping
            await queue.join()
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)

    async def run_once(self) -> List[SyncReport]:
        """Run a single cycle over every feed."""
        reports = await self.sync_service.sync_all(self.feeds)
        for report in reports:
            self._record(report)
        return reports

    async def _poll(
        self,
        feed: FeedSource,
        queue: asyncio.Queue[_FetchOutcome],
        stop_event: asyncio.Event,
    ) -> None:
        interval = self.interval_for(feed)
        while not stop_event.is_set():
            try:
                payload = await self.sync_service.fetch(feed)
                await queue.put(_FetchOutcome(feed=feed, payload=payload))
            except FetchError as exc:
                await queue.put(_FetchOutcome(feed=feed, error=exc))
            except Exception as exc:
                logger.exception("Unexpected error while fetching %s", feed)
                await queue.put(_FetchOutcome(feed=feed, error=exc))

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def _work(self, queue: asyncio.Queue[_FetchOutcome]) -> None:
        while True:
            outcome = await queue.get()
            try:
                if outcome.error is not None:
                    report = self.sync_service.report_failure(outcome.feed, outcome.error)
                else:
                    report = self.sync_service.process(outcome.feed, outcome.payload or b"")
                self._record(report)
            except Exception as exc:
                logger.exception("Unexpected error while merging %s", outcome.feed)
                self._record(self.sync_service.report_failure(outcome.feed, exc))
            finally:
                queue.task_done()

    def _record(self, report: SyncReport) -> None:
        self.reports.append(report)
        if self.on_report is not None:
            self.on_report(report)
