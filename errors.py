#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports between the
store, the fetcher and the poller.
"""

from typing import Any, Optional


class StorageError(Exception):
    """Raised when the feed store cannot complete an operation."""


class ConflictError(StorageError):
    """Raised when an insert violates a uniqueness constraint."""


class DuplicateFeedError(ConflictError):
    """Raised when a feed with the same URL is already registered."""

    def __init__(self, url: str):
        super().__init__(f"Feed already exists: {url}")
        self.url = url


class DuplicatePostError(ConflictError):
    """Raised when a post with the same (feed_id, guid) pair already exists."""

    def __init__(self, feed_id: int, guid: str):
        super().__init__(f"Post {guid!r} already exists for feed {feed_id}")
        self.feed_id = feed_id
        self.guid = guid


class FeedNotFoundError(LookupError):
    """Raised by manual refresh when the requested feed id is unknown."""

    def __init__(self, feed_id: int):
        super().__init__(f"Feed not found: {feed_id}")
        self.feed_id = feed_id


class FeedFetchError(Exception):
    """Raised when a feed document cannot be retrieved or parsed.

    Attributes:
        feed_id: Id of the feed that failed, when known.
        summary: Optional FetchSummary describing the failed attempt.
    """

    def __init__(self, message: str, feed_id: Optional[int] = None, summary: Optional[Any] = None):
        super().__init__(message)
        self.feed_id = feed_id
        self.summary = summary


__all__ = [
    "StorageError",
    "ConflictError",
    "DuplicateFeedError",
    "DuplicatePostError",
    "FeedNotFoundError",
    "FeedFetchError",
]
