#!/usr/bin/env python3
"""
Feed fetcher and article reconciler.

This module retrieves feeds (over HTTP or from local scripts), parses them with
feedparser, and stores the entries that are not already known for the feed.
Entries are matched against stored articles first by exact URL and then by
canonical URL (scheme://host/path), so links that only differ by tracking
parameters are not stored twice.

Each attempt updates the feed's health: a success sets last_fetched_at and
clears last_error, a failure records last_error and raises FeedFetchError.
There is no retry inside an attempt; the next scheduled run is the retry.
"""

from calendar import timegm
from time import time
from asyncio import CancelledError, Lock, Semaphore, create_task, gather, get_running_loop, wait_for
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from os import path
import re
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import feedparser
from aiohttp import ClientSession

from config import config, get_logger
from errors import FeedFetchError, FeedNotFoundError, StoreError, ValidationError
from models import DatabaseQueue, Feed
from sources import FeedSource, NetworkSource, ScriptSource, resolve_script_path, source_for_feed
from telemetry import trace_span
from utils import (
    build_proxy_url,
    canonical_url,
    clean_html_to_markdown,
    extract_media_fields,
    first_image_src,
    html_to_text,
    resolve_relative_url,
    title_from_content,
    validate_url,
    youtube_embed_url,
)

# Module-specific logger
logger = get_logger("fetcher")

SECONDS_PER_MINUTE = 60
MAX_TITLE_LENGTH = 255
MAX_URL_LENGTH = 2048

FETCH_SETTING_KEYS = (
    'max_concurrent_refreshes',
    'proxy_enabled',
    'proxy_type',
    'proxy_host',
    'proxy_port',
    'proxy_username',
    'proxy_password',
)


class FeedFetcher:
    def __init__(self, db: Optional[DatabaseQueue] = None) -> None:
        self.executor = ThreadPoolExecutor()
        self.db = db
        self._owns_db = db is None
        self._feed_locks: Dict[int, Lock] = {}
        self._fetch_all_running = False
        self._progress = {'running': False, 'current': 0, 'total': 0}
        self._proxy_warning_feeds: Set[int] = set()

    async def initialize(self) -> None:
        """Initialize the database connection unless one was injected."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
            await self.db.start()
        logger.info("FeedFetcher initialized")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def add_subscription(
        self,
        url: str,
        category: str = "",
        title: str = "",
        refresh_interval: int = 0,
        proxy_enabled: bool = False,
        proxy_url: str = "",
    ) -> int:
        """Validate and persist a network feed. Returns the feed id.

        An empty title is filled in from the feed itself on the first
        successful fetch.

        Raises:
            ValidationError: if the URL is not an absolute http(s) URL.
        """
        url = (url or "").strip()
        if not validate_url(url):
            raise ValidationError(f"Invalid feed URL: {url!r}")
        feed_id = await self.db.execute(
            'add_feed',
            url=url,
            category=(category or "").strip(),
            title=(title or "").strip(),
            refresh_interval=refresh_interval,
            proxy_enabled=proxy_enabled,
            proxy_url=(proxy_url or "").strip(),
        )
        logger.info(f"Subscribed to {url} (feed {feed_id})")
        return feed_id

    async def add_script_subscription(
        self,
        script_path: str,
        category: str = "",
        title: str = "",
        refresh_interval: int = 0,
    ) -> int:
        """Validate and persist a script feed. Returns the feed id.

        The path is stored relative to SCRIPTS_DIR.

        Raises:
            ValidationError: if the script is missing, outside the scripts
                directory, or of an unsupported type.
        """
        absolute = resolve_script_path(script_path)
        relative = path.relpath(absolute, path.realpath(config.SCRIPTS_DIR))
        feed_id = await self.db.execute(
            'add_feed',
            script_path=relative,
            category=(category or "").strip(),
            title=(title or "").strip(),
            refresh_interval=refresh_interval,
        )
        logger.info(f"Subscribed to script {relative} (feed {feed_id})")
        return feed_id

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------
    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed, session=None, settings=None: {
            "feed.id": feed.id if isinstance(feed, Feed) else int(feed),
        },
    )
    async def fetch_single_feed(
        self,
        feed: Union[Feed, int],
        session: Optional[ClientSession] = None,
        settings: Optional[Dict[str, str]] = None,
    ) -> int:
        """Fetch one feed, store its new articles and update its health.

        Attempts on the same feed are serialized, so last_fetched_at and
        last_error always describe the most recent completed attempt.

        Returns:
            The number of newly stored articles.

        Raises:
            FeedNotFoundError: if a feed id does not exist.
            FeedFetchError: if retrieval, parsing or storage fails.
        """
        if not isinstance(feed, Feed):
            feed = await self._get_feed(feed)

        lock = self._feed_locks.setdefault(feed.id, Lock())
        async with lock:
            logger.info(f"Fetching {feed.display_name} from {feed.location}")
            try:
                if settings is None:
                    settings = await self._load_fetch_settings()
                parsed = await self._retrieve_and_parse(self._source_for(feed, settings), session)

                existing_urls, existing_canonical = await self.db.execute('get_article_urls', feed_id=feed.id)
                articles = self._build_articles(feed, parsed.entries, existing_urls, existing_canonical)
                new_count = 0
                if articles:
                    new_count = await self.db.execute('save_articles', feed_id=feed.id, articles=articles)

                await self.db.execute('record_fetch_success', feed_id=feed.id, **self._feed_metadata(parsed))
            except FeedFetchError as e:
                e.feed_id = feed.id
                await self._record_failure(feed, str(e))
                raise
            except Exception as e:
                message = f"Unexpected error: {e}"
                await self._record_failure(feed, message)
                raise FeedFetchError(message, feed_id=feed.id) from e

        logger.info(f"Added {new_count} new articles from {feed.display_name}")
        return new_count

    @trace_span("fetch_all_feeds", tracer_name="fetcher")
    async def fetch_all(self) -> Dict[int, Optional[str]]:
        """Refresh every due feed with bounded concurrency.

        Feeds with their own refresh_interval are skipped until that many
        minutes have passed since their last successful fetch. One feed's
        failure never aborts the others.

        Returns:
            Mapping of attempted feed id to None (success) or the error text.
            Empty when a refresh is already running.
        """
        if self._fetch_all_running:
            logger.info("Feed refresh already in progress; skipping")
            return {}

        self._fetch_all_running = True
        try:
            feeds = await self.db.execute('get_feeds')
            now = int(time())
            due = [feed for feed in feeds if not self._should_skip_feed_fetch(feed, now)]
            logger.info(f"Starting feed refresh: {len(due)} of {len(feeds)} feeds due")

            results = await self._fetch_many(due)

            await self.db.execute(
                'set_setting',
                key='last_article_update',
                value=datetime.now(timezone.utc).isoformat(),
            )
            failed = sum(1 for error in results.values() if error)
            logger.info(f"Feed refresh finished: {len(results) - failed} succeeded, {failed} failed")
            return results
        finally:
            self._fetch_all_running = False

    async def fetch_feeds_by_ids(self, feed_ids: Iterable[int]) -> Dict[int, Optional[str]]:
        """Refresh an explicit set of feeds regardless of their interval."""
        feeds = []
        for feed_id in feed_ids:
            feed = await self.db.execute('get_feed_by_id', feed_id=feed_id)
            if feed is None:
                logger.warning(f"Skipping unknown feed {feed_id}")
                continue
            feeds.append(feed)
        return await self._fetch_many(feeds)

    async def _fetch_many(self, feeds: List[Feed]) -> Dict[int, Optional[str]]:
        settings = await self._load_fetch_settings()
        limit = self._concurrency_limit(settings.get('max_concurrent_refreshes'))
        results: Dict[int, Optional[str]] = {}
        self._progress = {'running': True, 'current': 0, 'total': len(feeds)}

        try:
            async with ClientSession() as session:
                semaphore = Semaphore(limit)

                async def fetch_with_semaphore(feed: Feed):
                    async with semaphore:
                        try:
                            await self.fetch_single_feed(feed, session=session, settings=settings)
                            results[feed.id] = None
                        except FeedFetchError as e:
                            results[feed.id] = str(e)
                        except Exception as e:
                            logger.exception(f"Unexpected error refreshing {feed.display_name}")
                            results[feed.id] = f"Unexpected error: {e}"
                        finally:
                            self._progress['current'] += 1

                tasks = [create_task(fetch_with_semaphore(feed)) for feed in feeds]
                try:
                    await gather(*tasks)
                except CancelledError:
                    for task in tasks:
                        task.cancel()
                    # Let in-flight attempts unwind before the session closes
                    await gather(*tasks, return_exceptions=True)
                    logger.info("Feed refresh cancelled")
                    raise
        finally:
            self._progress['running'] = False

        return results

    def forget_feed(self, feed_id: int) -> None:
        """Drop the per-feed state kept for a deleted feed."""
        self._feed_locks.pop(feed_id, None)
        self._proxy_warning_feeds.discard(feed_id)

    def get_progress(self) -> Dict[str, Any]:
        """Return a copy of the current refresh progress."""
        return dict(self._progress)

    async def parse_feed(self, target: Union[Feed, str], session: Optional[ClientSession] = None) -> Dict[str, Any]:
        """Retrieve and parse a feed without storing anything.

        Args:
            target: A Feed, an http(s) URL, or a script path under SCRIPTS_DIR.

        Returns:
            Feed metadata plus the parsed entries (title, url, canonical_url,
            published_at).

        Raises:
            ValidationError: if a string target is neither a URL nor a script.
            FeedFetchError: if retrieval or parsing fails.
        """
        base_url = None
        if isinstance(target, Feed):
            settings = await self._load_fetch_settings() if self.db else {}
            source = self._source_for(target, settings)
            base_url = target.url
        elif validate_url(target):
            source = NetworkSource(target.strip())
            base_url = source.url
        else:
            resolve_script_path(target)
            source = ScriptSource(target)

        parsed = await self._retrieve_and_parse(source, session)
        result = self._feed_metadata(parsed)
        result['entries'] = [
            {
                'title': article['title'],
                'url': article['url'],
                'canonical_url': article['canonical_url'],
                'published_at': article['published_at'],
            }
            for article in self._build_articles(None, parsed.entries, set(), set(), base_url=base_url)
        ]
        return result

    @trace_span(
        "retrieve_and_parse",
        tracer_name="fetcher",
        attr_from_args=lambda self, source, session=None: {"feed.source": source.describe()},
    )
    async def _retrieve_and_parse(self, source: FeedSource, session: Optional[ClientSession]):
        content = await source.retrieve(session)
        # feedparser is not async, run in executor
        parsed = await self.run_in_executor(self._parse_document, content)
        if parsed.bozo:
            if not parsed.entries and not parsed.get('version'):
                raise FeedFetchError(f"Parse error: {parsed.get('bozo_exception', 'not a feed')}")
            logger.warning(f"Feed parsing warning for {source.describe()}: {parsed.get('bozo_exception')}")
        return parsed

    def _parse_document(self, content: bytes):
        parsed = feedparser.parse(content, sanitize_html=True, resolve_relative_uris=True)
        media = extract_media_fields(content)
        if len(media) == len(parsed.entries):
            for entry, fields in zip(parsed.entries, media):
                for key, value in fields.items():
                    entry[key] = value
        elif media:
            logger.debug(f"Ignoring Media RSS fields: {len(media)} items for {len(parsed.entries)} entries")
        return parsed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _get_feed(self, feed_id: int) -> Feed:
        feed = await self.db.execute('get_feed_by_id', feed_id=feed_id)
        if feed is None:
            raise FeedNotFoundError(feed_id)
        return feed

    async def _load_fetch_settings(self) -> Dict[str, str]:
        return await self.db.execute('get_settings', keys=FETCH_SETTING_KEYS)

    async def _record_failure(self, feed: Feed, message: str) -> None:
        logger.error(f"Error fetching {feed.display_name}: {message}")
        try:
            await self.db.execute('record_fetch_error', feed_id=feed.id, error=message)
        except StoreError as e:
            logger.error(f"Could not record error for feed {feed.id}: {e}")

    def _source_for(self, feed: Feed, settings: Dict[str, str]) -> FeedSource:
        proxy_url = None if feed.is_script else self._resolve_proxy_url(feed, settings)
        return source_for_feed(feed, proxy_url=proxy_url)

    def _resolve_proxy_url(self, feed: Feed, settings: Dict[str, str]) -> Optional[str]:
        """Determine the proxy URL to use for a feed, if any.

        A feed-level proxy URL wins. A feed that enables the proxy without a
        URL uses the global proxy from the settings, then the proxy declared
        in feeds.yaml. Feeds without the proxy flag never use one.
        """
        if not feed.proxy_enabled:
            return None
        own = (feed.proxy_url or "").strip()
        if own:
            return own
        global_proxy = build_proxy_url(settings) or getattr(config, 'PROXY_URL', None)
        if global_proxy:
            return global_proxy
        if feed.id not in self._proxy_warning_feeds:
            logger.warning(f"Feed {feed.display_name} requested proxy routing but no global proxy is configured")
            self._proxy_warning_feeds.add(feed.id)
        return None

    def _concurrency_limit(self, value: Any) -> int:
        """Parse max_concurrent_refreshes, clamped to 1..MAX_CONCURRENCY."""
        try:
            limit = int(str(value).strip())
        except (TypeError, ValueError):
            return config.DEFAULT_CONCURRENCY
        if limit < 1:
            return 1
        return min(limit, config.MAX_CONCURRENCY)

    def _should_skip_feed_fetch(self, feed: Feed, now: int) -> bool:
        """Check if a feed was fetched too recently for its own refresh_interval."""
        interval_minutes = feed.refresh_interval or 0
        if interval_minutes <= 0 or not feed.last_fetched_at:
            return False
        elapsed = now - int(feed.last_fetched_at)
        if elapsed < interval_minutes * SECONDS_PER_MINUTE:
            logger.debug(
                f"Skipping {feed.display_name}, fetched too recently "
                f"(last: {self._format_timestamp(feed.last_fetched_at)}, interval: {interval_minutes}m)"
            )
            return True
        return False

    def _build_articles(
        self,
        feed: Optional[Feed],
        entries: list,
        existing_urls: Set[str],
        existing_canonical: Set[str],
        base_url: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Turn parsed entries into article rows, dropping known links.

        An entry is known when its URL matches a stored URL exactly or its
        canonical URL matches a stored canonical URL. Entries earlier in the
        same batch count as stored. Relative image URLs are resolved against
        base_url (the feed URL by default).
        """
        seen_urls = set(existing_urls)
        seen_canonical = set(existing_canonical)
        name = feed.display_name if feed else "feed"
        if base_url is None and feed is not None:
            base_url = feed.url
        articles = []
        for entry in entries:
            link = self._get_entry_value(entry, 'link')
            if not link or not str(link).startswith(('http://', 'https://')):
                logger.debug(f"Skipping entry with invalid link in {name}")
                continue
            title, url = self._normalize_entry_identity(
                self._get_entry_value(entry, 'media_title') or self._get_entry_value(entry, 'title'),
                link,
                self._entry_html(entry),
            )
            key = canonical_url(url)
            if url in seen_urls or key in seen_canonical:
                continue
            seen_urls.add(url)
            seen_canonical.add(key)
            articles.append({
                'title': title,
                'url': url,
                'canonical_url': key,
                'content': self.extract_content(entry),
                'published_at': self.parse_date_enhanced(entry),
                'image_url': self.extract_image_url(entry, base_url),
                'audio_url': self.extract_audio_url(entry),
                'video_url': self.extract_video_url(entry),
            })
        return articles

    def _feed_metadata(self, parsed) -> Dict[str, str]:
        info = parsed.get('feed', {}) or {}
        image = info.get('image') or {}
        image_url = image.get('href') if isinstance(image, dict) else ""
        return {
            'title': (info.get('title') or "").strip()[:MAX_TITLE_LENGTH],
            'link': (info.get('link') or "").strip(),
            'description': (info.get('subtitle') or info.get('description') or "").strip(),
            'image_url': (image_url or info.get('icon') or info.get('logo') or "").strip(),
        }

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    def parse_date_enhanced(self, entry) -> int:
        """Parse publication date with enhanced error handling for various date formats."""
        current_time = int(time())

        date_fields = [
            'published',
            'updated',
            'created',
            'modified',
            'date',
            'pubDate',
            'pubdate',
            'issued',
        ]

        # Try the listed fields plus their *_parsed variants in priority order
        for field in date_fields:
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, field))
            if timestamp:
                return timestamp

            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{field}_parsed"))
            if timestamp:
                return timestamp

        # Try to extract date from the guid if it looks like it contains a timestamp
        entry_id = self._get_entry_value(entry, 'id')
        if entry_id:
            for pattern in (r'(\d{4})-(\d{2})-(\d{2})', r'(\d{4})/(\d{2})/(\d{2})'):
                match = re.search(pattern, str(entry_id))
                if match:
                    try:
                        year, month, day = map(int, match.groups())
                        if 1900 <= year <= 2100:
                            return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())
                    except (ValueError, OverflowError) as e:
                        logger.debug(f"Failed to parse date components for '{entry_id}': {e}")

        return current_time

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        try:
            value = getattr(entry, field)
        except AttributeError:
            value = None

        if value is not None:
            return value

        getter = getattr(entry, 'get', None)
        if callable(getter):
            try:
                return getter(field)
            except KeyError:
                return None
        return None

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ''):
            return None

        if isinstance(value, (int, float)):
            return int(value) if value > 0 else None

        if isinstance(value, datetime):
            dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())

        if isinstance(value, (list, tuple)):
            try:
                return int(timegm(tuple(value)))
            except (OverflowError, ValueError, OSError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value)

        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        parsers = (
            self._parse_with_email_utils,
            self._parse_with_custom_formats,
            self._parse_with_feedparser,
        )
        for parser in parsers:
            timestamp = parser(date_str)
            if timestamp is not None:
                return timestamp
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return int(timegm(time_struct))
        except (ValueError, TypeError, AttributeError, OSError, OverflowError):
            return None
        return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[int]:
        try:
            dt = parsedate_to_datetime(date_str)
            if dt:
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
        except (TypeError, ValueError, OverflowError, IndexError):
            return None
        return None

    def _parse_with_custom_formats(self, date_str: str) -> Optional[int]:
        custom_formats = [
            "%d %b %Y %H:%M:%S %z",
            "%d %b %Y %H:%M:%S %Z",
            "%d %b %Y %H:%M:%S",
            "%Y-%m-%dT%H:%M:%S%z",
            "%Y-%m-%d",
        ]
        for fmt in custom_formats:
            try:
                dt = datetime.strptime(date_str.strip(), fmt)
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
            except (ValueError, TypeError):
                continue
        return None

    def _entry_html(self, entry, include_media: bool = True) -> str:
        """Return the raw body of an entry.

        Priority: media:description, then the full content (content:encoded
        or Atom content), then the summary/description.
        """
        if include_media:
            media_description = self._get_entry_value(entry, 'media_description')
            if media_description:
                return media_description

        entry_content = self._get_entry_value(entry, 'content')
        if entry_content:
            for content_item in entry_content:
                if content_item.get('value'):
                    return content_item['value']

        return self._get_entry_value(entry, 'summary') or self._get_entry_value(entry, 'description') or ""

    def extract_content(self, entry) -> str:
        """Extract the content from a feed entry and convert to Markdown.

        Markup the converter cannot handle (such as very deep nesting) is
        stored as plain text so the rest of the document is still processed.
        """
        content = self._entry_html(entry)
        if not content:
            return ""
        link = self._get_entry_value(entry, 'link')
        try:
            return clean_html_to_markdown(content, base_url=link)
        except Exception as e:
            logger.warning(f"Storing plain text for {link}, Markdown conversion failed: {e!r}")
            return html_to_text(content)

    def extract_image_url(self, entry, base_url: Optional[str] = None) -> str:
        """Pick the entry's lead image.

        Priority: the item image, a Media RSS thumbnail, an image enclosure,
        then the first <img> of the content. Relative URLs are resolved
        against base_url.
        """
        image = self._get_entry_value(entry, 'image')
        if isinstance(image, dict) and image.get('href'):
            return resolve_relative_url(image['href'], base_url)

        for thumbnail in self._get_entry_value(entry, 'media_thumbnail') or []:
            if thumbnail.get('url'):
                return resolve_relative_url(thumbnail['url'], base_url)

        for enclosure in self._get_entry_value(entry, 'enclosures') or []:
            if str(enclosure.get('type', '')).startswith('image/') and enclosure.get('href'):
                return resolve_relative_url(enclosure['href'], base_url)

        return resolve_relative_url(first_image_src(self._entry_html(entry, include_media=False)), base_url)

    def extract_audio_url(self, entry) -> str:
        """Return the first audio enclosure (podcast episodes)."""
        for enclosure in self._get_entry_value(entry, 'enclosures') or []:
            if str(enclosure.get('type', '')).startswith('audio/') and enclosure.get('href'):
                return enclosure['href']
        return ""

    def extract_video_url(self, entry) -> str:
        """Return a YouTube embed URL from the entry link or its yt:videoId."""
        return youtube_embed_url(
            self._get_entry_value(entry, 'link'),
            self._get_entry_value(entry, 'yt_videoid'),
        )

    def _format_timestamp(self, timestamp: Optional[int]) -> str:
        """Return a human-readable UTC timestamp for diagnostics."""
        if timestamp in (None, ""):
            return "n/a"
        try:
            return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
        except (OSError, OverflowError, ValueError, TypeError):
            return str(timestamp)

    def _normalize_entry_identity(
        self, title: Optional[str], url: Optional[str], content: str = ""
    ) -> Tuple[str, str]:
        """Apply the same normalization used for storage so dedup logic stays consistent.

        Untitled entries get a title built from the start of their content.
        """
        norm_title = (title or "").strip()
        if not norm_title:
            norm_title = title_from_content(content)
        norm_title = norm_title[:MAX_TITLE_LENGTH]

        norm_url = (url or "").strip()[:MAX_URL_LENGTH]

        return norm_title, norm_url

    async def close(self) -> None:
        """Close connections and clean up resources."""
        if self.db and self._owns_db:
            await self.db.stop()
        if self.executor:
            try:
                await wait_for(
                    get_running_loop().run_in_executor(None, partial(self.executor.shutdown, wait=True)),
                    timeout=30.0,
                )
            except TimeoutError:
                logger.warning("Thread pool executor shutdown timed out after 30 seconds")
                self.executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")
