import asyncio
import os

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import config
from models import DatabaseQueue

os.environ.setdefault("DISABLE_TELEMETRY", "true")

UNREACHABLE_URL = "http://127.0.0.1:1/feed.xml"


def rss(title, items, link="https://blog.example.com/"):
    """Build a small RSS 2.0 document from (title, link) pairs."""
    entries = "".join(
        f"<item><title>{item_title}</title><link>{item_link}</link>"
        f"<description>Body of {item_title}</description>"
        f"<pubDate>Mon, 17 Nov 2025 10:00:00 +0000</pubDate></item>"
        for item_title, item_link in items
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<rss version="2.0"><channel><title>{title}</title><link>{link}</link>'
        f"<description>{title} feed</description>{entries}</channel></rss>"
    )


@pytest.fixture
def make_rss():
    return rss


@pytest.fixture
def unreachable_url():
    return UNREACHABLE_URL


class FeedServer:
    """Serves registered documents from a local aiohttp server."""

    def __init__(self):
        self.pages = {}
        self.delay = 0.0
        self.active = 0
        self.peak = 0
        self.server = None

    def add(self, path, body, content_type="application/rss+xml", status=200):
        self.pages[path] = (body, content_type, status)
        return self.url(path)

    def url(self, path):
        return str(self.server.make_url(path))

    async def handle(self, request):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            page = self.pages.get(request.path)
            if page is None:
                return web.Response(status=404, text="not found")
            body, content_type, status = page
            return web.Response(status=status, text=body, content_type=content_type)
        finally:
            self.active -= 1


@pytest_asyncio.fixture
async def feed_server():
    feeds = FeedServer()
    app = web.Application()
    app.router.add_route("GET", "/{tail:.*}", feeds.handle)
    feeds.server = TestServer(app)
    await feeds.server.start_server()
    try:
        yield feeds
    finally:
        await feeds.server.close()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "test.db"
    monkeypatch.setattr(config, "DATABASE_PATH", str(path))
    return str(path)


@pytest_asyncio.fixture
async def db(db_path):
    queue = DatabaseQueue(db_path)
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest.fixture
def scripts_dir(tmp_path, monkeypatch):
    path = tmp_path / "scripts"
    path.mkdir()
    monkeypatch.setattr(config, "SCRIPTS_DIR", str(path))
    return path
