import asyncio

import pytest
import pytest_asyncio

from config import config
from errors import ScriptExecutionError, ValidationError
from fetcher import FeedFetcher
from sources import ScriptSource, resolve_script_path

FEED_SCRIPT = """#!/bin/sh
cat <<'XML'
<?xml version="1.0"?>
<rss version="2.0"><channel><title>Script Feed</title><link>https://local.example/</link>
<item><title>Generated</title><link>https://local.example/generated?ref=script</link></item>
</channel></rss>
XML
"""


@pytest_asyncio.fixture
async def fetcher(db):
    instance = FeedFetcher(db)
    await instance.initialize()
    try:
        yield instance
    finally:
        await instance.close()


@pytest.mark.asyncio
async def test_script_feed_is_fetched_and_stored(fetcher, scripts_dir):
    (scripts_dir / "local.sh").write_text(FEED_SCRIPT)

    feed_id = await fetcher.add_script_subscription("local.sh", category="local")
    count = await fetcher.fetch_single_feed(feed_id)

    assert count == 1
    feed = await fetcher.db.execute('get_feed_by_id', feed_id=feed_id)
    assert feed.is_script
    assert feed.script_path == "local.sh"
    assert feed.title == "Script Feed"
    articles = await fetcher.db.execute('get_articles', feed_id=feed_id)
    assert articles[0]['canonical_url'] == "https://local.example/generated"


@pytest.mark.asyncio
async def test_python_script_feed(fetcher, scripts_dir):
    (scripts_dir / "gen.py").write_text(
        "print('<rss version=\"2.0\"><channel><title>Py</title>"
        "<item><title>A</title><link>https://py.example/a</link></item>"
        "</channel></rss>')\n"
    )

    feed_id = await fetcher.add_script_subscription("gen.py")

    assert await fetcher.fetch_single_feed(feed_id) == 1


@pytest.mark.asyncio
async def test_failing_script_records_error(fetcher, scripts_dir):
    (scripts_dir / "broken.sh").write_text("echo 'went wrong' >&2\nexit 3\n")
    feed_id = await fetcher.add_script_subscription("broken.sh")

    with pytest.raises(ScriptExecutionError) as excinfo:
        await fetcher.fetch_single_feed(feed_id)

    assert "status 3" in str(excinfo.value)
    feed = await fetcher.db.execute('get_feed_by_id', feed_id=feed_id)
    assert "went wrong" in feed.last_error
    assert feed.last_fetched_at is None


@pytest.mark.asyncio
async def test_script_without_output(scripts_dir):
    (scripts_dir / "quiet.sh").write_text("exit 0\n")

    with pytest.raises(ScriptExecutionError, match="no output"):
        await ScriptSource("quiet.sh").retrieve()


@pytest.mark.asyncio
async def test_script_timeout_kills_process(scripts_dir, monkeypatch):
    (scripts_dir / "slow.sh").write_text("sleep 30\n")
    monkeypatch.setattr(config, "SCRIPT_TIMEOUT", 0.2)

    with pytest.raises(ScriptExecutionError, match="timed out"):
        await asyncio.wait_for(ScriptSource("slow.sh").retrieve(), timeout=5)


@pytest.mark.asyncio
async def test_script_cancellation_propagates(scripts_dir):
    (scripts_dir / "slow.sh").write_text("sleep 30\n")

    task = asyncio.create_task(ScriptSource("slow.sh").retrieve())
    await asyncio.sleep(0.2)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=5)


@pytest.mark.parametrize("script_path", ["", "../outside.sh", "/etc/passwd", "missing.sh"])
def test_resolve_script_path_rejects(scripts_dir, script_path):
    with pytest.raises(ValidationError):
        resolve_script_path(script_path)


def test_resolve_script_path_rejects_unsupported_extension(scripts_dir):
    (scripts_dir / "feed.txt").write_text("hello")

    with pytest.raises(ValidationError, match="Unsupported"):
        resolve_script_path("feed.txt")


def test_resolve_script_path_accepts_nested(scripts_dir):
    nested = scripts_dir / "sub"
    nested.mkdir()
    (nested / "feed.sh").write_text(FEED_SCRIPT)

    assert resolve_script_path("sub/feed.sh") == str((nested / "feed.sh").resolve())


@pytest.mark.asyncio
async def test_add_script_subscription_rejects_escape(fetcher, scripts_dir):
    with pytest.raises(ValidationError):
        await fetcher.add_script_subscription("../../etc/passwd.sh")
    assert await fetcher.db.execute('get_feeds') == []
