#!/usr/bin/env python3
"""
Feed discovery.

DiscoveryService crawls outward from one subscribed feed: it reads the feed to
find the site's homepage, collects links to other sites from that page
(preferring blogroll / friends sections), and checks each candidate for a
feed it can parse.

DiscoveryCoordinator runs discovery in the background and exposes its
progress through polling. It keeps two independent states, one for single-feed
discovery and one for batch discovery over every feed not yet used as a seed.
Each state moves Idle -> Running -> Complete | Errored; callers read copies.
"""

import asyncio
import copy
import re
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urljoin, urlsplit

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup

from config import config, get_logger
from errors import DiscoveryError, FeedFetchError, StoreError, ValidationError
from fetcher import FeedFetcher
from models import DatabaseQueue
from telemetry import trace_span
from utils import RateLimiter, canonical_url, truncate_string

logger = get_logger("discovery")

FEED_LINK_TYPES = ('application/rss+xml', 'application/atom+xml', 'application/rdf+xml')
COMMON_FEED_PATHS = ('/feed', '/rss.xml', '/atom.xml', '/index.xml', '/feed.xml', '/rss')

# Sections that usually hold links to other people's sites
FRIEND_SECTION_PATTERN = re.compile(r'blogroll|friends?|links|友链|友情链接|links?-list', re.I)

# Domains that host profiles or code, not blogs with their own feeds
BLOCKED_DOMAINS = {
    'facebook.com', 'twitter.com', 'x.com', 'instagram.com', 'linkedin.com',
    'github.com', 'gitlab.com', 'bitbucket.org', 'stackoverflow.com', 'stackexchange.com',
    'youtube.com', 'youtu.be', 'reddit.com', 'google.com', 'wikipedia.org',
    'amazon.com', 'apple.com', 'microsoft.com', 'discord.com', 'discord.gg',
    't.me', 'telegram.org', 'weibo.com', 'zhihu.com', 'bilibili.com',
    'tiktok.com', 'pinterest.com', 'patreon.com', 'paypal.com',
}


@dataclass
class Progress:
    stage: str = ""
    message: str = ""
    detail: str = ""
    current: int = 0
    total: int = 0
    feed_name: str = ""
    found_count: int = 0


@dataclass
class DiscoveredBlog:
    name: str
    homepage: str
    rss_feed: str
    icon: str = ""
    recent_articles: List[str] = field(default_factory=list)
    source_feed: str = ""


@dataclass
class DiscoveryState:
    running: bool = False
    progress: Progress = field(default_factory=Progress)
    feeds: List[DiscoveredBlog] = field(default_factory=list)
    error: str = ""
    complete: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ProgressCallback = Callable[[Progress], None]
FoundCallback = Callable[[DiscoveredBlog], None]


def resolve_url(base: str, href: str) -> str:
    """Resolve href against base; empty href stays empty."""
    if not href:
        return ""
    try:
        return urljoin(base, href.strip())
    except ValueError:
        return ""


def is_valid_blog_domain(host: str) -> bool:
    """False for hosts that belong to large platforms rather than blogs."""
    host = (host or "").lower().strip('.')
    if not host:
        return False
    if host.startswith('www.'):
        host = host[4:]
    labels = host.split('.')
    for i in range(len(labels) - 1):
        if '.'.join(labels[i:]) in BLOCKED_DOMAINS:
            return False
    return True


def get_favicon(site_url: str) -> str:
    host = urlsplit(site_url).hostname or ""
    return f"https://www.google.com/s2/favicons?domain={host}"


def find_feed_link(html: str, page_url: str) -> Optional[str]:
    """Find a feed advertised by <link rel="alternate"> on a page, preferring Atom."""
    soup = BeautifulSoup(html, 'html.parser')
    feed_links = []
    for link in soup.find_all('link', rel='alternate'):
        type_attr = (link.get('type') or '').lower()
        href = link.get('href')
        if type_attr in FEED_LINK_TYPES and href:
            feed_links.append((type_attr, resolve_url(page_url, href)))
    if not feed_links:
        return None
    atom_feeds = [href for type_attr, href in feed_links if 'atom' in type_attr]
    return atom_feeds[0] if atom_feeds else feed_links[0][1]


def extract_candidate_links(html: str, page_url: str, limit: int) -> List[str]:
    """Collect homepages of other sites linked from a page.

    Links inside blogroll/friends sections are used when the page has any;
    otherwise every external link counts. One candidate per host, blocked
    platforms and the page's own host excluded.
    """
    soup = BeautifulSoup(html, 'html.parser')
    own_host = (urlsplit(page_url).hostname or "").lower()

    sections = [
        tag for tag in soup.find_all(True)
        if FRIEND_SECTION_PATTERN.search(' '.join(tag.get('class') or []) + ' ' + (tag.get('id') or ''))
    ]
    for heading in soup.find_all(['h1', 'h2', 'h3', 'h4']):
        if FRIEND_SECTION_PATTERN.search(heading.get_text(" ", strip=True)):
            sibling = heading.find_next_sibling()
            if sibling is not None:
                sections.append(sibling)

    anchors = [a for section in sections for a in section.find_all('a', href=True)]
    if not anchors:
        anchors = soup.find_all('a', href=True)

    candidates: List[str] = []
    seen_hosts: Set[str] = set()
    for anchor in anchors:
        url = resolve_url(page_url, anchor['href'])
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        if parts.scheme not in ('http', 'https') or not host or host == own_host:
            continue
        if host in seen_hosts or not is_valid_blog_domain(host):
            continue
        seen_hosts.add(host)
        candidates.append(f"{parts.scheme}://{parts.netloc}/")
        if len(candidates) >= limit:
            break
    return candidates


class DiscoveryService:
    """Crawl one feed's site for links to other sites that publish feeds."""

    def __init__(self, fetcher: FeedFetcher):
        self.fetcher = fetcher
        self.rate_limiter = RateLimiter(config.DISCOVERY_REQUESTS_PER_MINUTE)

    @trace_span(
        "discover_from_feed",
        tracer_name="discovery",
        attr_from_args=lambda self, feed_url, *args, **kwargs: {"feed.url": feed_url},
    )
    async def discover_from_feed(
        self,
        feed_url: str,
        on_progress: Optional[ProgressCallback] = None,
        on_found: Optional[FoundCallback] = None,
    ) -> List[DiscoveredBlog]:
        """Discover blogs linked from the site behind feed_url.

        on_progress receives a Progress for every step; its current/total
        count checked candidates. on_found receives each blog as soon as it
        is confirmed.

        Raises:
            DiscoveryError: if the seed feed or its homepage cannot be read.
        """
        def report(**kwargs):
            if on_progress:
                on_progress(Progress(**kwargs))

        report(stage="fetching_feed", message="Reading feed", detail=feed_url)
        try:
            seed = await self.fetcher.parse_feed(feed_url)
        except (FeedFetchError, ValidationError) as e:
            raise DiscoveryError(f"Could not read feed: {e}")

        parts = urlsplit(feed_url)
        homepage = seed.get('link') or f"{parts.scheme}://{parts.netloc}/"
        source_name = seed.get('title') or parts.hostname or feed_url

        async with ClientSession() as session:
            report(stage="fetching_homepage", message="Fetching homepage", detail=homepage)
            html = await self._fetch_text(session, homepage)
            if html is None:
                raise DiscoveryError(f"Could not fetch homepage {homepage}")

            candidates = extract_candidate_links(html, homepage, config.DISCOVERY_MAX_CANDIDATES)
            total = len(candidates)
            logger.info(f"Found {total} candidate sites on {homepage}")
            report(stage="checking_rss", message="Checking linked sites", current=0, total=total)

            found: List[DiscoveredBlog] = []
            checked = 0
            semaphore = asyncio.Semaphore(config.DISCOVERY_CONCURRENCY)

            async def check(candidate: str):
                nonlocal checked
                async with semaphore:
                    blog = await self._discover_blog(session, candidate)
                checked += 1
                if blog is not None:
                    blog.source_feed = source_name
                    found.append(blog)
                    if on_found:
                        on_found(blog)
                report(
                    stage="checking_rss",
                    message="Checking linked sites",
                    detail=candidate,
                    current=checked,
                    total=total,
                    found_count=len(found),
                )

            tasks = [asyncio.create_task(check(candidate)) for candidate in candidates]
            try:
                await asyncio.gather(*tasks)
            except asyncio.CancelledError:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        return found

    async def _discover_blog(self, session: ClientSession, homepage: str) -> Optional[DiscoveredBlog]:
        """Return the blog at homepage if it publishes a parseable feed."""
        html = await self._fetch_text(session, homepage)
        feed_urls: List[str] = []
        if html:
            advertised = find_feed_link(html, homepage)
            if advertised:
                feed_urls.append(advertised)
        if not feed_urls:
            feed_urls = [resolve_url(homepage, candidate_path) for candidate_path in COMMON_FEED_PATHS]

        for feed_url in feed_urls:
            content = await self._fetch_bytes(session, feed_url)
            if not content:
                continue
            parsed = await self.fetcher.run_in_executor(feedparser.parse, content)
            if not parsed.entries or not parsed.get('version'):
                continue
            host = urlsplit(homepage).hostname or homepage
            return DiscoveredBlog(
                name=truncate_string((parsed.feed.get('title') or host).strip(), 255),
                homepage=parsed.feed.get('link') or homepage,
                rss_feed=feed_url,
                icon=get_favicon(homepage),
                recent_articles=[entry.get('title', '') for entry in parsed.entries[:3]],
            )
        return None

    async def _fetch_text(self, session: ClientSession, url: str) -> Optional[str]:
        content = await self._fetch_bytes(session, url)
        if content is None:
            return None
        return content.decode('utf-8', errors='replace')

    async def _fetch_bytes(self, session: ClientSession, url: str) -> Optional[bytes]:
        await self.rate_limiter.acquire()
        try:
            async with session.get(
                url,
                headers={'User-Agent': config.USER_AGENT},
                timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status != 200:
                    logger.debug(f"Discovery: {url} returned HTTP {response.status}")
                    return None
                return await response.read()
        except (ClientError, asyncio.TimeoutError, UnicodeError, ValueError) as e:
            logger.debug(f"Discovery: could not fetch {url}: {e}")
            return None


class DiscoveryCoordinator:
    """Run single and batch discovery in the background and report progress.

    All reads and writes of both states go through one lock; pollers receive
    deep copies, never the live objects.
    """

    SINGLE = "single"
    BATCH = "batch"

    def __init__(
        self,
        db: DatabaseQueue,
        service: DiscoveryService,
        single_timeout: Optional[float] = None,
        batch_timeout: Optional[float] = None,
    ):
        self.db = db
        self.service = service
        self.single_timeout = single_timeout or config.SINGLE_DISCOVERY_TIMEOUT
        self.batch_timeout = batch_timeout or config.BATCH_DISCOVERY_TIMEOUT
        self._lock = threading.Lock()
        self._states: Dict[str, DiscoveryState] = {self.SINGLE: DiscoveryState(), self.BATCH: DiscoveryState()}
        self._tasks: Dict[str, Optional[asyncio.Task]] = {self.SINGLE: None, self.BATCH: None}
        # Canonical keys already reported or subscribed, per run kind
        self._seen: Dict[str, Set[str]] = {self.SINGLE: set(), self.BATCH: set()}

    # Public surface
    async def start_single(self, feed_id: int) -> DiscoveryState:
        """Start discovery from one feed. Returns the current state copy."""
        return self._start(self.SINGLE, self._discover_single(feed_id), self.single_timeout, total=1)

    async def start_batch(self) -> DiscoveryState:
        """Start discovery over every feed not yet used as a seed."""
        return self._start(self.BATCH, self._discover_batch(), self.batch_timeout, total=0)

    def get_single_state(self) -> DiscoveryState:
        return self._snapshot(self.SINGLE)

    def get_batch_state(self) -> DiscoveryState:
        return self._snapshot(self.BATCH)

    def clear_single(self) -> bool:
        return self._clear(self.SINGLE)

    def clear_batch(self) -> bool:
        return self._clear(self.BATCH)

    async def close(self) -> None:
        """Cancel running discovery tasks and wait for them to finish."""
        tasks = [task for task in self._tasks.values() if task and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # State handling
    def _start(self, kind: str, work, timeout: float, total: int) -> DiscoveryState:
        with self._lock:
            if self._states[kind].running:
                work.close()
                logger.info(f"{kind.capitalize()} discovery already running")
                return copy.deepcopy(self._states[kind])
            self._states[kind] = DiscoveryState(
                running=True,
                progress=Progress(stage="starting", message="Starting discovery", current=0, total=total),
            )
            self._seen[kind] = set()
            snapshot = copy.deepcopy(self._states[kind])
        self._tasks[kind] = asyncio.create_task(self._run(kind, work, timeout))
        return snapshot

    def _snapshot(self, kind: str) -> DiscoveryState:
        with self._lock:
            return copy.deepcopy(self._states[kind])

    def _clear(self, kind: str) -> bool:
        with self._lock:
            if self._states[kind].running:
                return False
            self._states[kind] = DiscoveryState()
            return True

    def _update_progress(self, kind: str, **changes) -> None:
        """Apply progress changes. current and total never move backwards."""
        with self._lock:
            progress = self._states[kind].progress
            for key, value in changes.items():
                if key in ('current', 'total'):
                    value = max(getattr(progress, key), value)
                setattr(progress, key, value)
            if progress.current > progress.total:
                progress.total = progress.current

    def _add_found(self, kind: str, blog: DiscoveredBlog) -> None:
        key = canonical_url(blog.rss_feed)
        with self._lock:
            if key in self._seen[kind]:
                return
            self._seen[kind].add(key)
            state = self._states[kind]
            state.feeds.append(blog)
            state.progress.found_count = len(state.feeds)

    def _finish(self, kind: str, message: str) -> None:
        with self._lock:
            state = self._states[kind]
            state.running = False
            state.complete = True
            state.error = ""
            state.progress.stage = "complete"
            state.progress.message = message
            state.progress.current = state.progress.total
            state.progress.found_count = len(state.feeds)

    def _fail(self, kind: str, error: str) -> None:
        with self._lock:
            state = self._states[kind]
            state.running = False
            state.complete = False
            state.error = error
            state.progress.stage = "error"
            state.progress.message = error

    async def _run(self, kind: str, work, timeout: float) -> None:
        try:
            await asyncio.wait_for(work, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{kind.capitalize()} discovery timed out after {timeout}s")
            self._fail(kind, "Discovery timeout")
        except (DiscoveryError, FeedFetchError, ValidationError, StoreError) as e:
            logger.error(f"{kind.capitalize()} discovery failed: {e}")
            self._fail(kind, str(e))
        except asyncio.CancelledError:
            self._fail(kind, "Discovery cancelled")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in {kind} discovery")
            self._fail(kind, f"Unexpected error: {e}")

    async def _subscribed_keys(self, kind: str) -> None:
        urls = await self.db.execute('get_all_feed_urls')
        with self._lock:
            self._seen[kind].update(canonical_url(url) for url in urls)

    @trace_span("discovery.single", tracer_name="discovery")
    async def _discover_single(self, feed_id: int) -> None:
        feed = await self.db.execute('get_feed_by_id', feed_id=feed_id)
        if feed is None:
            raise DiscoveryError("Feed not found")
        if not feed.url:
            raise DiscoveryError("Script feeds cannot be used for discovery")
        await self._subscribed_keys(self.SINGLE)

        self._update_progress(self.SINGLE, stage="fetching_feed", message="Reading feed", feed_name=feed.display_name)

        def on_progress(p: Progress) -> None:
            changes = dict(stage=p.stage, message=p.message, detail=p.detail, current=p.current)
            if p.total:
                changes['total'] = p.total
            self._update_progress(self.SINGLE, **changes)

        await self.service.discover_from_feed(
            feed.url,
            on_progress=on_progress,
            on_found=lambda blog: self._add_found(self.SINGLE, blog),
        )
        await self.db.execute('mark_feed_discovered', feed_id=feed.id)

        found = len(self.get_single_state().feeds)
        logger.info(f"Discovery from {feed.display_name} found {found} new feeds")
        self._finish(self.SINGLE, f"Found {found} feeds")

    @trace_span("discovery.batch", tracer_name="discovery")
    async def _discover_batch(self) -> None:
        seeds = await self.db.execute('get_undiscovered_feeds')
        if not seeds:
            self._finish(self.BATCH, "All feeds have already been discovered")
            return
        await self._subscribed_keys(self.BATCH)

        total = len(seeds)
        self._update_progress(self.BATCH, stage="processing", current=0, total=total)

        def on_progress(p: Progress) -> None:
            self._update_progress(self.BATCH, stage=p.stage, detail=p.detail or p.message)

        for index, seed in enumerate(seeds):
            self._update_progress(
                self.BATCH,
                message=f"Processing feed {index + 1} of {total}",
                feed_name=seed.display_name,
            )
            try:
                await self.service.discover_from_feed(
                    seed.url,
                    on_progress=on_progress,
                    on_found=lambda blog: self._add_found(self.BATCH, blog),
                )
            except (DiscoveryError, FeedFetchError, ValidationError) as e:
                logger.warning(f"Discovery from {seed.display_name} failed: {e}")
            await self.db.execute('mark_feed_discovered', feed_id=seed.id)
            self._update_progress(self.BATCH, current=index + 1)

        found = len(self.get_batch_state().feeds)
        self._finish(self.BATCH, f"Found {found} feeds from {total} sources")
