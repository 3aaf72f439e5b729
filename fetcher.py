#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

This module retrieves feed documents over HTTP, parses them with feedparser
and stores every entry that is new for its source. Each source is fetched in
isolation: a network, parse or storage problem with one source or one entry
is logged and counted, never raised, so a polling cycle always runs to
completion for the remaining sources.
"""

from time import monotonic
from calendar import timegm
from asyncio import create_task, get_running_loop, Semaphore, gather, wait_for, TimeoutError
from aiohttp import ClientSession, ClientTimeout, ClientError
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from hashlib import md5
from typing import Any, Dict, List, Optional

import feedparser

from config import config, get_logger
from errors import StorageError, DuplicatePostError, FeedFetchError
from telemetry import init_telemetry, trace_span
from models import DatabaseQueue
from utils import RetryHelper, format_duration, utcnow, validate_url

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("rssy-fetcher")

# HTTP status codes
HTTP_OK = 200

# Seconds close() waits for in-flight parses
SHUTDOWN_WAIT_SECONDS = 30.0


class EntryOutcome(Enum):
    """Result of storing one feed entry."""

    CREATED = "created"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass
class FetchSummary:
    """Outcome of fetching one source."""

    feed_id: Optional[int]
    feed_name: str
    url: str
    created: int = 0
    duplicates: int = 0
    failed: int = 0
    error: Optional[str] = None
    timing: float = 0.0

    @property
    def ok(self) -> bool:
        """True when the document was retrieved and parsed."""
        return self.error is None

    @property
    def total(self) -> int:
        return self.created + self.duplicates + self.failed

    def record(self, outcome: EntryOutcome) -> None:
        if outcome is EntryOutcome.CREATED:
            self.created += 1
        elif outcome is EntryOutcome.DUPLICATE:
            self.duplicates += 1
        else:
            self.failed += 1


def _entry_value(entry, field: str, default: Any = None) -> Any:
    """Fetch a feedparser entry field with dict access, tolerating plain dicts."""
    getter = getattr(entry, 'get', None)
    if not callable(getter):
        return default
    value = getter(field)
    return default if value is None else value


def _struct_to_datetime(value) -> Optional[datetime]:
    """Convert a feedparser UTC time.struct_time into an aware datetime."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(timegm(tuple(value)[:9]), tz=timezone.utc)
    except (OverflowError, ValueError, OSError, TypeError) as e:
        logger.debug(f"Unusable entry date {value!r}: {e}")
        return None


def get_guid(entry) -> Optional[str]:
    """Extract or derive a stable identifier for an entry.

    Uses the entry id, else an MD5 of the link, else an MD5 of title and
    published date. Returns None when none of those are present.
    """
    entry_id = str(_entry_value(entry, 'id', '')).strip()
    if entry_id:
        return entry_id

    link = _entry_value(entry, 'link')
    if link:
        return md5(str(link).encode()).hexdigest()

    title = _entry_value(entry, 'title', '')
    published = _entry_value(entry, 'published', '')
    if title or published:
        return md5(f"{title}{published}".encode()).hexdigest()

    return None


def get_author(entry) -> str:
    detail = _entry_value(entry, 'author_detail')
    if isinstance(detail, dict) and detail.get('name'):
        return str(detail['name'])
    return str(_entry_value(entry, 'author', ''))


def get_published(entry) -> Optional[datetime]:
    """Publication time, falling back to the update time, else None."""
    published = _struct_to_datetime(_entry_value(entry, 'published_parsed'))
    if published is not None:
        return published
    return _struct_to_datetime(_entry_value(entry, 'updated_parsed'))


def get_image_url(entry) -> str:
    """Explicit entry image, else the first image enclosure, else ""."""
    image = _entry_value(entry, 'image')
    if isinstance(image, dict):
        href = image.get('href') or image.get('url')
        if href:
            return str(href)

    for enclosure in _entry_value(entry, 'enclosures', []) or []:
        if not isinstance(enclosure, dict):
            continue
        if str(enclosure.get('type') or '').startswith('image'):
            href = enclosure.get('href') or enclosure.get('url')
            if href:
                return str(href)
    return ""


def get_content(entry) -> str:
    for content_item in _entry_value(entry, 'content', []) or []:
        if isinstance(content_item, dict) and content_item.get('value'):
            return str(content_item['value'])
    return ""


def resolve_entry(entry) -> Dict[str, Any]:
    """Map a parsed feed entry onto the post fields stored for it.

    Raises:
        ValueError: If no stable identifier can be derived for the entry.
    """
    guid = get_guid(entry)
    if not guid:
        raise ValueError("entry has no id, link, title or date to identify it")

    return {
        'guid': guid,
        'title': str(_entry_value(entry, 'title', '')),
        'link': str(_entry_value(entry, 'link', '')),
        'description': str(_entry_value(entry, 'summary', '')),
        'content': get_content(entry),
        'author': get_author(entry),
        'published_at': get_published(entry),
        'image_url': get_image_url(entry),
    }


class FeedFetcher:
    def __init__(self, db: DatabaseQueue) -> None:
        self.db = db
        self.executor = ThreadPoolExecutor()
        self.retry_helper = RetryHelper(max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE)

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed, session=None: {
            "feed.id": int(feed.get('id') or 0),
            "feed.url": str(feed.get('url') or ''),
        },
    )
    async def fetch_feed(self, feed: Dict[str, Any], session: Optional[ClientSession] = None) -> FetchSummary:
        """Fetch one source and store its new entries.

        Never raises for network, parse or storage failures; they are
        reported through the returned FetchSummary and the source's error
        bookkeeping.
        """
        if session is None:
            async with ClientSession() as own_session:
                return await self._fetch_feed(feed, own_session)
        return await self._fetch_feed(feed, session)

    async def _fetch_feed(self, feed: Dict[str, Any], session: ClientSession) -> FetchSummary:
        feed_id = feed.get('id')
        url = feed.get('url') or ''
        summary = FetchSummary(feed_id=feed_id, feed_name=feed.get('name') or url, url=url)
        started = monotonic()
        logger.info(f"Fetching feed: {summary.feed_name} from {url}")

        try:
            if not feed_id:
                raise FeedFetchError(f"Feed {summary.feed_name} has no id", feed_id=feed_id)
            if not validate_url(url):
                raise FeedFetchError(f"Invalid feed URL: {url!r}", feed_id=feed_id)

            content = await self._fetch_feed_content(feed_id, url, session)
            parsed = await self._parse_feed(feed_id, summary.feed_name, content)
            await self._process_feed_entries(feed_id, summary, parsed.entries)

        except FeedFetchError as e:
            summary.error = str(e)
            logger.error(f"Error fetching {summary.feed_name}: {e}")
        except (OSError, RuntimeError, ValueError) as e:
            summary.error = f"Unexpected error: {e}"
            logger.exception(f"Unexpected error processing feed {summary.feed_name}: {e}")

        if feed_id:
            if summary.ok:
                await self._record_success(feed_id, summary.feed_name)
            else:
                await self._record_failure(feed_id, summary.feed_name, summary.error)

        summary.timing = monotonic() - started
        logger.info(
            "%s: created=%d duplicates=%d failed=%d%s in %s",
            summary.feed_name,
            summary.created,
            summary.duplicates,
            summary.failed,
            f" error={summary.error}" if summary.error else "",
            format_duration(summary.timing),
        )
        return summary

    @trace_span(
        "fetch_http_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed_id, url, session: {
            "http.url": url,
            "feed.id": int(feed_id) if feed_id else 0,
        },
    )
    async def _fetch_feed_content(self, feed_id: int, url: str, session: ClientSession) -> bytes:
        """Retrieve the raw feed document, retrying timeouts and client errors.

        Raises:
            FeedFetchError: On a non-200 response or once retries are exhausted.
        """
        headers = {'User-Agent': config.USER_AGENT}
        timeout = ClientTimeout(total=config.HTTP_TIMEOUT)
        max_retries = config.MAX_RETRIES

        for attempt in range(max_retries + 1):
            try:
                async with session.get(
                    url,
                    headers=headers,
                    timeout=timeout,
                    max_redirects=config.MAX_REDIRECTS,
                ) as response:
                    if response.status != HTTP_OK:
                        raise FeedFetchError(f"HTTP {response.status}", feed_id=feed_id)
                    return await response.read()

            except TimeoutError as e:
                logger.warning(
                    "Timeout fetching %s (attempt %d/%d, timeout=%ss): %s",
                    url,
                    attempt + 1,
                    max_retries + 1,
                    config.HTTP_TIMEOUT,
                    e,
                )
                if attempt < max_retries:
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FeedFetchError(f"Timed out after {attempt + 1} attempts", feed_id=feed_id) from e
            except ClientError as e:
                detail = self._format_client_error(e)
                if attempt < max_retries:
                    logger.warning("Retry %d/%d for %s due to error: %s", attempt + 1, max_retries, url, detail)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FeedFetchError(f"Network error after {attempt + 1} attempts ({detail})", feed_id=feed_id) from e

        raise FeedFetchError("No fetch attempt was made", feed_id=feed_id)

    @trace_span(
        "parse_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed_id, name, content: {
            "feed.id": int(feed_id) if feed_id else 0,
            "feed.bytes": len(content) if content else 0,
        },
    )
    async def _parse_feed(self, feed_id: int, name: str, content: bytes):
        """Parse a feed document; feedparser is not async, so it runs in the executor.

        Raises:
            FeedFetchError: If the document is not a recognisable feed.
        """
        parsed = await self.run_in_executor(feedparser.parse, content)

        version = parsed.get('version') or ''
        if not version and not parsed.entries:
            detail = parsed.get('bozo_exception')
            raise FeedFetchError(
                f"Failed to parse feed: {detail or 'not a recognised feed format'}",
                feed_id=feed_id,
            )

        logger.info(f"Feed {name} parsed as {version or 'unknown'} format with {len(parsed.entries)} entries")
        if parsed.get('bozo'):
            logger.warning(f"Feed parsing warning for {name}: {parsed.get('bozo_exception')}")
        return parsed

    @trace_span(
        "process_feed_entries",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed_id, summary, entries: {
            "feed.id": int(feed_id) if feed_id else 0,
            "feed.entries.count": len(entries) if entries else 0,
        },
    )
    async def _process_feed_entries(self, feed_id: int, summary: FetchSummary, entries: list) -> None:
        """Store entries in document order, counting each outcome."""
        for entry in entries:
            summary.record(await self._process_entry(feed_id, summary.feed_name, entry))

    async def _process_entry(self, feed_id: int, name: str, entry) -> EntryOutcome:
        try:
            post = resolve_entry(entry)
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Skipping unusable entry in {name}: {e}")
            return EntryOutcome.FAILED

        guid = post['guid']
        try:
            existing = await self.db.execute('get_post_by_guid', feed_id=feed_id, guid=guid)
            if existing is not None:
                return EntryOutcome.DUPLICATE

            post_id = await self.db.execute('create_post', feed_id=feed_id, post=post)
            logger.debug(f"Stored post {post_id} for {name}: {post['title'][:80]}")
            return EntryOutcome.CREATED

        except DuplicatePostError:
            # Another fetch of the same feed inserted it after our check
            logger.debug(f"Post {guid!r} for {name} was inserted concurrently")
            return EntryOutcome.DUPLICATE
        except StorageError as e:
            logger.error(f"Error storing entry {guid!r} for {name}: {e}")
            return EntryOutcome.FAILED

    async def _record_success(self, feed_id: int, name: str) -> None:
        try:
            await self.db.execute('update_last_fetched', feed_id=feed_id, fetched_at=utcnow())
            await self.db.execute('reset_feed_error', feed_id=feed_id)
        except StorageError as e:
            logger.error(f"Error updating fetch bookkeeping for {name}: {e}")

    async def _record_failure(self, feed_id: int, name: str, error_message: str) -> None:
        try:
            error_count = await self.db.execute('record_feed_error', feed_id=feed_id, last_error=error_message)
            logger.warning(f"Feed {name} error count increased to {error_count}")
        except StorageError as e:
            logger.error(f"Error updating feed error tracking for {name}: {e}")

    @trace_span(
        "fetch_all_feeds",
        tracer_name="fetcher",
        attr_from_args=lambda self, feeds=None: {
            "feed.count": len(feeds) if feeds is not None else -1,
        },
    )
    async def fetch_all_feeds(self, feeds: Optional[List[Dict[str, Any]]] = None) -> List[FetchSummary]:
        """Fetch active sources concurrently with a bounded number in flight.

        Args:
            feeds: Sources to fetch; defaults to every active source in the store.
                   Inactive sources in an explicit list are skipped.

        Raises:
            StorageError: Only if the list of active sources cannot be read.
        """
        if feeds is None:
            feeds = await self.db.execute('list_active_feeds')
        else:
            feeds = [feed for feed in feeds if feed.get('is_active', True)]

        if not feeds:
            logger.info("No active feeds to fetch")
            return []

        logger.info(f"Starting fetch of {len(feeds)} feeds")
        started = monotonic()

        async with ClientSession() as session:
            semaphore = Semaphore(config.FETCH_CONCURRENCY)

            async def fetch_with_semaphore(feed):
                async with semaphore:
                    return await self.fetch_feed(feed, session)

            tasks = [create_task(fetch_with_semaphore(feed)) for feed in feeds]
            results = await gather(*tasks, return_exceptions=True)

        summaries: List[FetchSummary] = []
        for feed, result in zip(feeds, results):
            if isinstance(result, BaseException):
                logger.error(f"Fetch task for {feed.get('name')} failed: {result!r}")
                result = FetchSummary(
                    feed_id=feed.get('id'),
                    feed_name=feed.get('name') or '',
                    url=feed.get('url') or '',
                    error=f"Unexpected error: {result!r}",
                )
            summaries.append(result)

        logger.info(
            "Fetched %d feeds in %s: created=%d duplicates=%d failed_entries=%d failed_feeds=%d",
            len(summaries),
            format_duration(monotonic() - started),
            sum(s.created for s in summaries),
            sum(s.duplicates for s in summaries),
            sum(s.failed for s in summaries),
            sum(1 for s in summaries if not s.ok),
        )
        return summaries

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        if self.executor:
            logger.info("Shutting down thread pool executor...")
            executor = self.executor
            self.executor = None
            try:
                await wait_for(
                    get_running_loop().run_in_executor(None, partial(executor.shutdown, wait=True)),
                    timeout=SHUTDOWN_WAIT_SECONDS,
                )
                logger.info("Thread pool executor shut down successfully")
            except TimeoutError:
                logger.warning(f"Thread pool executor shutdown timed out after {SHUTDOWN_WAIT_SECONDS} seconds")
                executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")
