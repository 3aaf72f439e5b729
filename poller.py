#!/usr/bin/env python3
"""
Periodic feed poller.

FeedPoller runs one fetch cycle over all active sources as soon as it is
started and then one more every `interval` seconds until it is stopped:

- start() returns immediately; the first cycle runs as its own task
- stop() only signals the loop; a cycle already in flight runs to completion
- join() waits for the loop and in-flight cycles, for graceful shutdown
- a cycle that raises is logged and the loop keeps going

A stopped poller cannot be restarted. Manual refreshes are also exposed here
and are the only operations that report failures to their caller.
"""

import asyncio
from enum import Enum
from typing import List, Optional, Set

from config import get_logger
from errors import FeedNotFoundError, FeedFetchError
from fetcher import FeedFetcher, FetchSummary
from models import DatabaseQueue
from telemetry import init_telemetry, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("poller")

init_telemetry("rssy-poller")


class PollerState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class FeedPoller:
    """Runs FeedFetcher.fetch_all_feeds on a fixed interval."""

    def __init__(self, db: DatabaseQueue, interval: float, fetcher: Optional[FeedFetcher] = None):
        """Initialize the poller.

        Args:
            db: Started store queue
            interval: Seconds between scheduled cycles
            fetcher: Fetcher to drive (default: a FeedFetcher over db)
        """
        if interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {interval}")
        self.db = db
        self.interval = float(interval)
        self.fetcher = fetcher or FeedFetcher(db)
        self.cycles_completed = 0
        self.last_cycle: List[FetchSummary] = []
        self._stop_event = asyncio.Event()
        self._started = False
        self._loop_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._started and not self._stop_event.is_set()

    @property
    def state(self) -> PollerState:
        return PollerState.RUNNING if self.running else PollerState.STOPPED

    async def start(self) -> None:
        """Start polling: trigger an immediate cycle and schedule the rest.

        Raises:
            RuntimeError: If the poller has already been stopped.
        """
        if self._stop_event.is_set():
            raise RuntimeError("FeedPoller cannot be restarted after stop()")
        if self._started:
            logger.warning("Poller already running; ignoring start()")
            return

        self._started = True
        logger.info(f"Starting poller with interval {format_duration(self.interval)}")

        initial = asyncio.create_task(self._run_guarded_cycle("startup"))
        self._cycle_tasks.add(initial)
        initial.add_done_callback(self._cycle_tasks.discard)

        self._loop_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """Signal the poller to stop. Does not wait for an in-flight cycle."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        logger.info("Poller stop requested")

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop and in-flight cycles to finish.

        Returns:
            True if everything finished within the timeout.
        """
        tasks = list(self._cycle_tasks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
        if not tasks:
            return True

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} poller tasks still running after {timeout}s")
            return False
        return True

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            await self._run_guarded_cycle("scheduled")
        logger.info("Poller loop exited")

    async def _run_guarded_cycle(self, reason: str) -> None:
        try:
            await self._run_cycle(reason)
        except Exception as e:
            # Keep polling; the next tick retries every source
            logger.exception(f"Error in {reason} poll cycle: {e}")

    @trace_span(
        "poller.cycle",
        tracer_name="poller",
        attr_from_args=lambda self, reason: {"poll.reason": reason},
    )
    async def _run_cycle(self, reason: str) -> Optional[List[FetchSummary]]:
        if self._stop_event.is_set():
            logger.debug(f"Skipping {reason} poll cycle; poller is stopping")
            return None

        logger.info(f"Starting {reason} poll cycle")
        loop = asyncio.get_running_loop()
        started = loop.time()
        summaries = await self.fetcher.fetch_all_feeds()
        self.last_cycle = summaries
        self.cycles_completed += 1
        logger.info(
            f"Completed {reason} poll cycle over {len(summaries)} feeds "
            f"in {format_duration(loop.time() - started)}"
        )
        return summaries

    @trace_span("poller.refresh_all", tracer_name="poller")
    async def refresh_all(self) -> List[FetchSummary]:
        """Fetch all active sources now, independently of the schedule.

        Raises:
            StorageError: If the active sources cannot be listed.
        """
        logger.info("Manual refresh of all feeds")
        return await self.fetcher.fetch_all_feeds()

    @trace_span(
        "poller.refresh_feed",
        tracer_name="poller",
        attr_from_args=lambda self, feed_id: {"feed.id": int(feed_id)},
    )
    async def refresh_feed(self, feed_id: int) -> FetchSummary:
        """Fetch one source now.

        Raises:
            FeedNotFoundError: If no source has this id.
            FeedFetchError: If the document could not be retrieved or parsed.
            StorageError: If the source cannot be looked up.
        """
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if feed is None:
            raise FeedNotFoundError(feed_id)

        logger.info(f"Manual refresh of feed {feed['name']} (ID {feed_id})")
        summary = await self.fetcher.fetch_feed(feed)
        if not summary.ok:
            raise FeedFetchError(summary.error, feed_id=feed_id, summary=summary)
        return summary
