#!/usr/bin/env python3
"""
Subscription management.

Creates, edits and removes feeds, and triggers an immediate first fetch for
new subscriptions so they do not wait for the next scheduled refresh.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

from config import config, get_logger
from errors import FeedFetchError, FeedNotFoundError, StoreError, ValidationError
from fetcher import FeedFetcher
from models import Feed
from sources import resolve_script_path
from utils import validate_url

logger = get_logger("subscriptions")

EDITABLE_FIELDS = {
    'title', 'url', 'category', 'script_path', 'refresh_interval',
    'proxy_enabled', 'proxy_url', 'hide_from_timeline',
}


class SubscriptionManager:
    """Feed lifecycle operations on top of a FeedFetcher."""

    def __init__(self, fetcher: FeedFetcher):
        self.fetcher = fetcher
        self._background: Set[asyncio.Task] = set()

    @property
    def db(self):
        return self.fetcher.db

    async def subscribe(
        self,
        url: Optional[str] = None,
        script_path: Optional[str] = None,
        category: str = "",
        title: str = "",
        fetch_now: bool = True,
        **options,
    ) -> int:
        """Create a subscription and schedule its first fetch.

        Exactly one of url or script_path must be given. Extra options
        (refresh_interval, proxy_enabled, proxy_url) are passed through.

        Returns:
            The new feed id.

        Raises:
            ValidationError: on a bad url/script path, or both/neither given.
        """
        if bool(url) == bool(script_path):
            raise ValidationError("Provide exactly one of url or script_path")
        if url:
            feed_id = await self.fetcher.add_subscription(url, category=category, title=title, **options)
        else:
            options.pop('proxy_enabled', None)
            options.pop('proxy_url', None)
            feed_id = await self.fetcher.add_script_subscription(script_path, category=category, title=title, **options)

        if fetch_now:
            self._schedule_first_fetch(feed_id)
        return feed_id

    def _schedule_first_fetch(self, feed_id: int) -> None:
        task = asyncio.create_task(self._first_fetch(feed_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _first_fetch(self, feed_id: int) -> None:
        try:
            count = await self.fetcher.fetch_single_feed(feed_id)
            logger.info(f"Initial fetch of feed {feed_id} stored {count} articles")
        except (FeedFetchError, FeedNotFoundError) as e:
            # Already recorded on the feed's last_error
            logger.warning(f"Initial fetch of feed {feed_id} failed: {e}")

    async def update_feed(self, feed_id: int, **changes: Any) -> Feed:
        """Change a feed's configuration and return the updated feed.

        Raises:
            FeedNotFoundError: if the feed does not exist.
            ValidationError: on unknown fields or an invalid url/script path.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown feed fields: {', '.join(sorted(unknown))}")

        feed = await self.db.execute('get_feed_by_id', feed_id=feed_id)
        if feed is None:
            raise FeedNotFoundError(feed_id)

        if 'url' in changes:
            if feed.is_script:
                raise ValidationError("Cannot set a URL on a script feed")
            changes['url'] = (changes['url'] or "").strip()
            if not validate_url(changes['url']):
                raise ValidationError(f"Invalid feed URL: {changes['url']!r}")
        if 'script_path' in changes:
            if not feed.is_script:
                raise ValidationError("Cannot set a script path on a network feed")
            resolve_script_path(changes['script_path'])
        if 'refresh_interval' in changes:
            try:
                changes['refresh_interval'] = int(changes['refresh_interval'] or 0)
            except (TypeError, ValueError):
                raise ValidationError("refresh_interval must be a whole number of minutes")
            if changes['refresh_interval'] < 0:
                raise ValidationError("refresh_interval cannot be negative")

        try:
            await self.db.execute('update_feed', feed_id=feed_id, **changes)
        except StoreError as e:
            if 'UNIQUE' in str(e):
                raise ValidationError(f"Another feed already uses {changes.get('url')}")
            raise
        logger.info(f"Updated feed {feed_id}: {', '.join(sorted(changes))}")
        return await self.db.execute('get_feed_by_id', feed_id=feed_id)

    async def remove_feed(self, feed_id: int) -> None:
        """Delete a feed and its articles.

        Raises:
            FeedNotFoundError: if the feed does not exist.
        """
        if not await self.db.execute('delete_feed', feed_id=feed_id):
            raise FeedNotFoundError(feed_id)
        self.fetcher.forget_feed(feed_id)
        logger.info(f"Removed feed {feed_id}")

    async def refresh_feed(self, feed_id: int) -> int:
        """Fetch one feed now and return the number of new articles."""
        return await self.fetcher.fetch_single_feed(feed_id)

    async def list_feeds(self) -> List[Feed]:
        return await self.db.execute('get_feeds')

    async def import_from_config(self, fetch_now: bool = True) -> Dict[str, Optional[int]]:
        """Subscribe to every feed declared in feeds.yaml that is not stored yet.

        Returns:
            Mapping of declared slug to the feed id, or None when the entry
            was rejected.
        """
        existing = await self.db.execute('get_feeds')
        known_urls = {feed.url for feed in existing if feed.url}
        known_scripts = {feed.script_path for feed in existing if feed.script_path}

        results: Dict[str, Optional[int]] = {}
        new_ids: List[int] = []
        for slug, declared in config.FEED_SOURCES.items():
            url = (declared.get('url') or "").strip() or None
            script = (declared.get('script') or "").strip() or None
            if (url and url in known_urls) or (script and script in known_scripts):
                continue
            proxy = declared.get('proxy')
            options = {
                'refresh_interval': declared.get('interval_minutes') or 0,
            }
            if url:
                options['proxy_enabled'] = bool(proxy)
                options['proxy_url'] = proxy if isinstance(proxy, str) else ""
            try:
                feed_id = await self.subscribe(
                    url=url,
                    script_path=script,
                    category=str(declared.get('category') or ""),
                    title=str(declared.get('title') or ""),
                    fetch_now=False,
                    **options,
                )
            except ValidationError as e:
                logger.warning(f"Skipping declared feed '{slug}': {e}")
                results[slug] = None
                continue
            results[slug] = feed_id
            new_ids.append(feed_id)

        logger.info(f"Imported {len(new_ids)} feeds from {config.FEEDS_CONFIG_PATH}")
        if fetch_now and new_ids:
            await self.fetcher.fetch_feeds_by_ids(new_ids)
        return results

    async def close(self) -> None:
        """Cancel pending first fetches."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
