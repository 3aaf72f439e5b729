#!/usr/bin/env python3
"""
Feed ingestion service entry point.

Modes:
- run: start the poller and keep ingesting until SIGINT/SIGTERM
- fetch: fetch every active feed once and exit
- refresh FEED_ID: fetch a single feed once, exiting non-zero on failure
- status: print the registered feeds with their fetch and error bookkeeping

The store is opened (and seeded from feeds.yaml when empty) by every mode.
"""

import asyncio
import signal
import sys
import argparse
from datetime import datetime, timezone
from typing import Optional, List

from config import config, get_logger
from errors import StorageError, FeedNotFoundError, FeedFetchError
from fetcher import FetchSummary
from models import DatabaseQueue
from poller import FeedPoller
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("main")
init_telemetry("rssy")


class FeedIngestOrchestrator:
    """Owns the store and the poller for one process."""

    def __init__(self, database_path: Optional[str] = None, interval: Optional[float] = None) -> None:
        self.database_path = database_path or config.DATABASE_PATH
        self.interval = interval or config.FEED_REFRESH_INTERVAL
        self.db: Optional[DatabaseQueue] = None
        self.poller: Optional[FeedPoller] = None

    async def open(self) -> None:
        """Open the store, seed defaults if empty and build the poller."""
        logger.info(f"Configuration: {config.get_config_summary()}")
        self.db = DatabaseQueue(self.database_path)
        await self.db.start()
        if config.SEED_DEFAULT_FEEDS and config.SEED_FEEDS:
            await self.db.execute('seed_default_feeds', seeds=config.SEED_FEEDS)
        self.poller = FeedPoller(self.db, self.interval)

    async def close(self) -> None:
        if self.poller:
            await self.poller.fetcher.close()
            self.poller = None
        if self.db:
            await self.db.stop()
            self.db = None

    @trace_span("main.run_service", tracer_name="main")
    async def run_service(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll until stop_event is set (by default, on SIGINT or SIGTERM)."""
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name} on this platform")

        await self.poller.start()
        logger.info("Feed ingestion running; press Ctrl+C to stop")
        try:
            await stop_event.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            logger.info("Shutting down poller")
            await self.poller.stop()
            if not await self.poller.join(timeout=config.SHUTDOWN_TIMEOUT):
                logger.warning("Poll cycle still in flight after shutdown timeout; exiting anyway")

    @trace_span("main.fetch_once", tracer_name="main")
    async def fetch_once(self) -> List[FetchSummary]:
        return await self.poller.refresh_all()

    @trace_span("main.refresh", tracer_name="main", attr_from_args=lambda self, feed_id: {"feed.id": int(feed_id)})
    async def refresh(self, feed_id: int) -> FetchSummary:
        return await self.poller.refresh_feed(feed_id)

    async def check_status(self) -> dict:
        """Collect feed and post counts from the store."""
        feeds = await self.db.execute('list_feeds')
        for feed in feeds:
            feed['post_count'] = await self.db.execute('count_posts', feed_id=feed['id'])
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'database_path': self.database_path,
            'total_posts': await self.db.execute('count_posts'),
            'feeds': feeds,
        }

    def print_status(self, status: dict) -> None:
        """Print formatted status information."""
        print("\nFeed ingestion status")
        print(f"Time: {status['timestamp']}")
        print(f"Database: {status['database_path']}")
        print(f"Posts: {status['total_posts']}")
        print(f"\nFeeds ({len(status['feeds'])}):")
        for feed in status['feeds']:
            last = feed['last_fetched_at'].isoformat() if feed['last_fetched_at'] else "never"
            flag = "" if feed['is_active'] else " [inactive]"
            print(f"  [{feed['id']}] {feed['name']}{flag}")
            print(f"      {feed['url']}")
            print(f"      posts={feed['post_count']} last_fetched={last} errors={feed['error_count']}")
            if feed['last_error']:
                print(f"      last_error: {feed['last_error']}")


def print_summaries(summaries: List[FetchSummary]) -> None:
    for summary in summaries:
        state = "ok" if summary.ok else f"FAILED ({summary.error})"
        print(
            f"{summary.feed_name}: {state} created={summary.created} "
            f"duplicates={summary.duplicates} failed={summary.failed}"
        )


async def run_mode(args) -> int:
    """Run one CLI mode and return the process exit code."""
    orchestrator = FeedIngestOrchestrator(database_path=args.database)
    try:
        await orchestrator.open()

        if args.mode == 'run':
            await orchestrator.run_service()
            return 0

        if args.mode == 'fetch':
            summaries = await orchestrator.fetch_once()
            print_summaries(summaries)
            return 0

        if args.mode == 'refresh':
            if args.feed_id is None:
                logger.error("refresh requires a FEED_ID")
                return 2
            try:
                summary = await orchestrator.refresh(args.feed_id)
            except FeedNotFoundError as e:
                logger.error(str(e))
                return 4
            except FeedFetchError as e:
                logger.error(f"Refresh of feed {args.feed_id} failed: {e}")
                if e.summary is not None:
                    print_summaries([e.summary])
                return 1
            print_summaries([summary])
            return 0

        if args.mode == 'status':
            orchestrator.print_status(await orchestrator.check_status())
            return 0

        return 2
    except StorageError as e:
        logger.error(f"Storage error: {e}")
        return 1
    finally:
        await orchestrator.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed ingestion service')
    parser.add_argument('mode', choices=['run', 'fetch', 'refresh', 'status'],
                        help='Operation mode')
    parser.add_argument('feed_id', nargs='?', type=int,
                        help='Feed ID for refresh mode')
    parser.add_argument('--database', type=str,
                        help=f'SQLite database path (default: {config.DATABASE_PATH})')

    args = parser.parse_args(argv)

    try:
        sys.exit(asyncio.run(run_mode(args)))
    except KeyboardInterrupt:
        logger.info("Feed ingestion shutting down")


if __name__ == "__main__":
    main()
