import asyncio

import pytest
import pytest_asyncio

from discovery import (
    DiscoveredBlog,
    DiscoveryCoordinator,
    DiscoveryService,
    Progress,
    extract_candidate_links,
    find_feed_link,
    is_valid_blog_domain,
)
from errors import DiscoveryError
from fetcher import FeedFetcher


class FakeService:
    """Stands in for DiscoveryService, reporting scripted results per seed URL."""

    def __init__(self, results=None, delay=0.0, fail=()):
        self.results = results or {}
        self.delay = delay
        self.fail = set(fail)
        self.calls = []
        self.release = asyncio.Event()
        self.block = False

    async def discover_from_feed(self, feed_url, on_progress=None, on_found=None):
        self.calls.append(feed_url)
        if self.block:
            await self.release.wait()
        if feed_url in self.fail:
            raise DiscoveryError(f"Could not read feed: {feed_url}")
        blogs = self.results.get(feed_url, [])
        on_progress(Progress(stage="checking_rss", message="Checking", current=0, total=len(blogs)))
        for index, blog in enumerate(blogs, start=1):
            if self.delay:
                await asyncio.sleep(self.delay)
            on_found(blog)
            on_progress(Progress(stage="checking_rss", message="Checking", current=index, total=len(blogs)))
        return blogs


def blog(name):
    return DiscoveredBlog(name=name, homepage=f"https://{name}.example/", rss_feed=f"https://{name}.example/feed")


async def wait_until_stopped(read_state, timeout=5.0):
    async def poll():
        while True:
            state = read_state()
            if not state.running:
                return state
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(poll(), timeout)


@pytest_asyncio.fixture
async def feeds(db):
    a = await db.execute('add_feed', url="https://a.example/feed", title="A")
    b = await db.execute('add_feed', url="https://b.example/feed", title="B")
    return a, b


@pytest.mark.asyncio
async def test_single_discovery_completes(db, feeds):
    feed_a, _ = feeds
    service = FakeService({"https://a.example/feed": [blog("x"), blog("y")]})
    coordinator = DiscoveryCoordinator(db, service)

    started = await coordinator.start_single(feed_a)
    assert started.running
    assert (started.progress.current, started.progress.total) == (0, 1)

    state = await wait_until_stopped(coordinator.get_single_state)
    assert state.complete
    assert state.error == ""
    assert [b.name for b in state.feeds] == ["x", "y"]
    assert state.progress.current == state.progress.total == 2
    feed = await db.execute('get_feed_by_id', feed_id=feed_a)
    assert feed.discovery_completed


@pytest.mark.asyncio
async def test_single_discovery_unknown_feed(db):
    coordinator = DiscoveryCoordinator(db, FakeService())

    await coordinator.start_single(999)
    state = await wait_until_stopped(coordinator.get_single_state)

    assert state.error == "Feed not found"
    assert not state.complete


@pytest.mark.asyncio
async def test_results_exclude_subscribed_and_duplicate_feeds(db, feeds):
    feed_a, _ = feeds
    subscribed = DiscoveredBlog(name="b", homepage="https://b.example/", rss_feed="https://b.example/feed?src=x")
    service = FakeService({"https://a.example/feed": [blog("x"), subscribed, blog("x")]})
    coordinator = DiscoveryCoordinator(db, service)

    await coordinator.start_single(feed_a)
    state = await wait_until_stopped(coordinator.get_single_state)

    assert [b.name for b in state.feeds] == ["x"]


@pytest.mark.asyncio
async def test_batch_discovery_two_seeds(db, feeds):
    feed_a, feed_b = feeds
    service = FakeService({
        "https://a.example/feed": [blog("x")],
        "https://b.example/feed": [blog("y"), blog("x")],
    })
    coordinator = DiscoveryCoordinator(db, service)

    started = await coordinator.start_batch()
    assert started.running

    state = await wait_until_stopped(coordinator.get_batch_state)
    assert state.complete
    assert state.progress.current == state.progress.total == 2
    assert sorted(b.name for b in state.feeds) == ["x", "y"]
    assert await db.execute('get_undiscovered_feeds') == []


@pytest.mark.asyncio
async def test_batch_discovery_is_single_running(db, feeds):
    service = FakeService({"https://a.example/feed": [blog("x")]})
    service.block = True
    coordinator = DiscoveryCoordinator(db, service)

    first = await coordinator.start_batch()
    await asyncio.sleep(0.05)
    second = await coordinator.start_batch()

    assert first.running and second.running
    assert len(service.calls) == 1

    service.release.set()
    state = await wait_until_stopped(coordinator.get_batch_state)
    assert state.complete
    assert len(service.calls) == 2


@pytest.mark.asyncio
async def test_batch_discovery_without_seeds(db, feeds):
    for feed_id in feeds:
        await db.execute('mark_feed_discovered', feed_id=feed_id)
    coordinator = DiscoveryCoordinator(db, FakeService())

    await coordinator.start_batch()
    state = await wait_until_stopped(coordinator.get_batch_state)

    assert state.complete
    assert state.progress.message == "All feeds have already been discovered"
    assert state.feeds == []


@pytest.mark.asyncio
async def test_batch_discovery_skips_failing_seed(db, feeds):
    service = FakeService({"https://b.example/feed": [blog("y")]}, fail={"https://a.example/feed"})
    coordinator = DiscoveryCoordinator(db, service)

    await coordinator.start_batch()
    state = await wait_until_stopped(coordinator.get_batch_state)

    assert state.complete
    assert [b.name for b in state.feeds] == ["y"]
    assert await db.execute('get_undiscovered_feeds') == []


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(db, feeds):
    feed_a, _ = feeds
    service = FakeService({"https://a.example/feed": [blog(f"b{i}") for i in range(5)]}, delay=0.02)
    coordinator = DiscoveryCoordinator(db, service)

    await coordinator.start_single(feed_a)
    observed = []
    while True:
        state = coordinator.get_single_state()
        observed.append((state.progress.current, state.progress.total))
        if not state.running:
            break
        await asyncio.sleep(0.005)

    currents = [current for current, _ in observed]
    totals = [total for _, total in observed]
    assert currents == sorted(currents)
    assert totals == sorted(totals)
    assert all(current <= total for current, total in observed)
    assert observed[-1] == (5, 5)


@pytest.mark.asyncio
async def test_timeout_keeps_partial_results(db, feeds):
    feed_a, _ = feeds
    service = FakeService({"https://a.example/feed": [blog(f"b{i}") for i in range(50)]}, delay=0.05)
    coordinator = DiscoveryCoordinator(db, service, single_timeout=0.2)

    await coordinator.start_single(feed_a)
    state = await wait_until_stopped(coordinator.get_single_state)

    assert state.error == "Discovery timeout"
    assert not state.complete
    assert 0 < len(state.feeds) < 50


@pytest.mark.asyncio
async def test_clear_state(db, feeds):
    feed_a, _ = feeds
    service = FakeService({"https://a.example/feed": [blog("x")]})
    service.block = True
    coordinator = DiscoveryCoordinator(db, service)

    await coordinator.start_single(feed_a)
    assert coordinator.clear_single() is False

    service.release.set()
    await wait_until_stopped(coordinator.get_single_state)
    assert coordinator.clear_single() is True
    state = coordinator.get_single_state()
    assert not state.running and not state.complete and state.feeds == []


@pytest.mark.asyncio
async def test_returned_state_is_a_copy(db, feeds):
    feed_a, _ = feeds
    coordinator = DiscoveryCoordinator(db, FakeService({"https://a.example/feed": [blog("x")]}))
    await coordinator.start_single(feed_a)
    state = await wait_until_stopped(coordinator.get_single_state)

    state.feeds.clear()
    state.progress.current = -1

    fresh = coordinator.get_single_state()
    assert len(fresh.feeds) == 1
    assert fresh.progress.current == 1


@pytest.mark.asyncio
async def test_close_cancels_running_discovery(db, feeds):
    feed_a, _ = feeds
    service = FakeService()
    service.block = True
    coordinator = DiscoveryCoordinator(db, service)

    await coordinator.start_single(feed_a)
    await asyncio.sleep(0.05)
    await coordinator.close()

    state = coordinator.get_single_state()
    assert not state.running
    assert state.error == "Discovery cancelled"


def test_blocked_domains():
    assert not is_valid_blog_domain("github.com")
    assert not is_valid_blog_domain("www.twitter.com")
    assert not is_valid_blog_domain("gist.github.com")
    assert is_valid_blog_domain("someone.blog")
    assert not is_valid_blog_domain("")


def test_find_feed_link_prefers_atom():
    html = (
        '<html><head>'
        '<link rel="alternate" type="application/rss+xml" href="/rss.xml">'
        '<link rel="alternate" type="application/atom+xml" href="/atom.xml">'
        '</head></html>'
    )
    assert find_feed_link(html, "https://blog.example/") == "https://blog.example/atom.xml"
    assert find_feed_link("<html></html>", "https://blog.example/") is None


def test_extract_candidates_prefers_blogroll():
    html = """
    <html><body>
      <nav><a href="https://elsewhere.example/">Elsewhere</a></nav>
      <div class="blogroll">
        <a href="https://friend.example/post/1">Friend</a>
        <a href="https://friend.example/about">Friend again</a>
        <a href="https://github.com/someone">Code</a>
        <a href="/local">Local</a>
        <a href="https://pal.example">Pal</a>
      </div>
    </body></html>
    """
    candidates = extract_candidate_links(html, "https://me.example/", limit=10)
    assert candidates == ["https://friend.example/", "https://pal.example/"]


def test_extract_candidates_falls_back_to_all_links():
    html = '<a href="https://one.example/x">1</a><a href="https://two.example/">2</a><a href="mailto:a@b">m</a>'
    assert extract_candidate_links(html, "https://me.example/", limit=1) == ["https://one.example/"]


@pytest.mark.asyncio
async def test_discovery_service_crawls_linked_site(db, feed_server, make_rss):
    port = feed_server.server.port
    home = f"http://127.0.0.1:{port}/home.html"
    seed_url = feed_server.add("/seed.xml", make_rss("Seed", [("Hello", "http://127.0.0.1/hello")], link=home))
    feed_server.add(
        "/home.html",
        f'<html><body><ul id="friends"><li><a href="http://localhost:{port}/">Friend</a></li>'
        '<li><a href="https://twitter.com/me">me</a></li></ul></body></html>',
        content_type="text/html",
    )
    feed_server.add(
        "/",
        '<html><head><link rel="alternate" type="application/rss+xml" href="/friend.xml"></head></html>',
        content_type="text/html",
    )
    feed_server.add("/friend.xml", make_rss("Friend Blog", [("F1", "http://localhost/f1"), ("F2", "http://localhost/f2")]))

    fetcher = FeedFetcher(db)
    service = DiscoveryService(fetcher)
    progress = []
    found = []
    try:
        result = await service.discover_from_feed(seed_url, on_progress=progress.append, on_found=found.append)
    finally:
        await fetcher.close()

    assert [b.rss_feed for b in result] == [f"http://localhost:{port}/friend.xml"]
    assert result[0].name == "Friend Blog"
    assert result[0].source_feed == "Seed"
    assert result[0].recent_articles == ["F1", "F2"]
    assert found == result
    assert progress[-1].current == progress[-1].total == 1


@pytest.mark.asyncio
async def test_discovery_service_unreadable_seed(db, unreachable_url):
    fetcher = FeedFetcher(db)
    try:
        with pytest.raises(DiscoveryError):
            await DiscoveryService(fetcher).discover_from_feed(unreachable_url)
    finally:
        await fetcher.close()
