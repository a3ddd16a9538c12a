#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FeedSyncError(Exception):
    """Base class for all engine errors."""


class ValidationError(FeedSyncError):
    """Raised when a subscription's url or script path is rejected. Nothing is persisted."""


class FeedNotFoundError(FeedSyncError):
    """Raised when an operation references a feed id that does not exist."""

    def __init__(self, feed_id: int):
        super().__init__(f"Feed not found: {feed_id}")
        self.feed_id = feed_id


class FeedFetchError(FeedSyncError):
    """Raised when retrieving or parsing a feed fails.

    Attributes:
        feed_id: The feed the attempt was for, when known.
    """

    def __init__(self, message: str, feed_id: Optional[int] = None):
        super().__init__(message)
        self.feed_id = feed_id


class ScriptExecutionError(FeedFetchError):
    """Raised when a script feed cannot be run or exits unsuccessfully."""


class DiscoveryError(FeedSyncError):
    """Raised when a discovery crawl cannot proceed."""


class StoreError(FeedSyncError):
    """Raised by DatabaseQueue.execute when a queued operation fails."""


__all__ = [
    "FeedSyncError",
    "StoreError",
    "ValidationError",
    "FeedNotFoundError",
    "FeedFetchError",
    "ScriptExecutionError",
    "DiscoveryError",
]
