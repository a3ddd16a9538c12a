import asyncio

import pytest

from config import config
from scheduler import FeedScheduler, create_scheduler, parse_interval_minutes


class FakeFetcher:
    def __init__(self, db, fail_first=False):
        self.db = db
        self.calls = 0
        self.fail_first = fail_first
        self.on_fetch = None

    async def fetch_all(self):
        self.calls += 1
        if self.on_fetch:
            await self.on_fetch(self.calls)
        if self.fail_first and self.calls == 1:
            raise RuntimeError("database went away")
        return {1: None, 2: "HTTP 500"}

    def get_progress(self):
        return {'running': False, 'current': 0, 'total': 0}


def record_waits(scheduler, stop_after):
    """Replace the interval wait with one that records its length."""
    waits = []

    async def fake_wait(seconds):
        waits.append(seconds)
        await asyncio.sleep(0)
        return len(waits) > stop_after

    scheduler._wait = fake_wait
    return waits


@pytest.mark.parametrize("value, expected", [("15", 15), (" 3 ", 3), ("0", 10), ("-2", 10), ("abc", 10), (None, 10)])
def test_parse_interval_minutes(value, expected, monkeypatch):
    monkeypatch.setattr(config, "DEFAULT_UPDATE_INTERVAL", 10)
    assert parse_interval_minutes(value) == expected


@pytest.mark.asyncio
async def test_interval_change_applies_on_next_cycle(db):
    await db.execute('set_setting', key='update_interval', value='1')
    fetcher = FakeFetcher(db)

    async def change_interval(call):
        await db.execute('set_setting', key='update_interval', value='3')

    fetcher.on_fetch = change_interval
    scheduler = FeedScheduler(fetcher, db, minute_seconds=60.0)
    waits = record_waits(scheduler, stop_after=2)

    scheduler.start()
    await asyncio.wait_for(scheduler.wait_closed(), timeout=5)
    await scheduler.stop()

    assert waits == [60.0, 180.0, 180.0]
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_interval_change_during_wait_keeps_current_wait(db):
    await db.execute('set_setting', key='update_interval', value='2')
    fetcher = FakeFetcher(db)
    scheduler = FeedScheduler(fetcher, db, minute_seconds=0.1)
    loop = asyncio.get_running_loop()
    real_wait = scheduler._wait
    requested, elapsed = [], []

    async def timed_wait(seconds):
        requested.append(seconds)
        started = loop.time()
        stopped = await real_wait(seconds)
        elapsed.append(loop.time() - started)
        return stopped

    scheduler._wait = timed_wait
    scheduler.start()
    while not requested:
        await asyncio.sleep(0.005)
    await db.execute('set_setting', key='update_interval', value='5')
    assert not elapsed

    for _ in range(200):
        if len(requested) >= 2:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert fetcher.calls == 1
    assert requested[0] == pytest.approx(0.2)
    assert elapsed[0] < 0.4
    assert requested[1] == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_request_stop_before_start_is_honoured(db):
    fetcher = FakeFetcher(db)
    scheduler = FeedScheduler(fetcher, db, minute_seconds=0.01)

    scheduler.request_stop()
    scheduler.start()
    await asyncio.wait_for(scheduler.wait_closed(), timeout=2)

    assert fetcher.calls == 0
    assert not scheduler.running

    await scheduler.stop()
    scheduler.start()
    assert scheduler.running
    await scheduler.stop()


@pytest.mark.asyncio
async def test_invalid_interval_uses_default(db, monkeypatch):
    monkeypatch.setattr(config, "DEFAULT_UPDATE_INTERVAL", 10)
    await db.execute('set_setting', key='update_interval', value='soon')
    scheduler = FeedScheduler(FakeFetcher(db), db, minute_seconds=1.0)
    waits = record_waits(scheduler, stop_after=0)

    scheduler.start()
    await asyncio.wait_for(scheduler.wait_closed(), timeout=5)
    await scheduler.stop()

    assert waits == [10.0]


@pytest.mark.asyncio
async def test_runs_fetch_every_interval(db):
    await db.execute('set_setting', key='update_interval', value='1')
    fetcher = FakeFetcher(db)
    scheduler = create_scheduler(fetcher, db, minute_seconds=0.02)

    scheduler.start()
    await asyncio.sleep(0.3)
    await scheduler.stop()

    assert fetcher.calls >= 3
    assert scheduler.cycles == fetcher.calls
    assert not scheduler.running


@pytest.mark.asyncio
async def test_stop_exits_without_final_fetch(db):
    fetcher = FakeFetcher(db)
    scheduler = FeedScheduler(fetcher, db, minute_seconds=60.0)

    scheduler.start()
    await asyncio.sleep(0.05)
    await asyncio.wait_for(scheduler.stop(), timeout=2)

    assert fetcher.calls == 0
    assert not scheduler.running


@pytest.mark.asyncio
async def test_request_stop_ends_wait_early(db):
    scheduler = FeedScheduler(FakeFetcher(db), db, minute_seconds=60.0)

    scheduler.start()
    await asyncio.sleep(0.05)
    scheduler.request_stop()
    await asyncio.wait_for(scheduler.wait_closed(), timeout=2)

    assert not scheduler.running


@pytest.mark.asyncio
async def test_start_is_idempotent(db):
    scheduler = FeedScheduler(FakeFetcher(db), db, minute_seconds=60.0)

    scheduler.start()
    task = scheduler._task
    scheduler.start()

    assert scheduler._task is task
    await scheduler.stop()


@pytest.mark.asyncio
async def test_cycle_error_does_not_stop_loop(db):
    await db.execute('set_setting', key='update_interval', value='1')
    fetcher = FakeFetcher(db, fail_first=True)
    scheduler = FeedScheduler(fetcher, db, minute_seconds=60.0)
    record_waits(scheduler, stop_after=2)

    scheduler.start()
    await asyncio.wait_for(scheduler.wait_closed(), timeout=5)
    await scheduler.stop()

    assert fetcher.calls == 2
    assert scheduler.cycles == 1


async def store_old_article(db):
    feed_id = await db.execute('add_feed', url="https://example.com/feed")
    await db.execute('save_articles', feed_id=feed_id, articles=[{
        'title': 'Old',
        'url': 'https://example.com/old',
        'canonical_url': 'https://example.com/old',
        'content': '',
        'published_at': 0,
    }])


@pytest.mark.asyncio
async def test_cleanup_disabled_keeps_articles(db):
    await store_old_article(db)
    scheduler = FeedScheduler(FakeFetcher(db), db)

    assert await scheduler._maybe_cleanup() is None
    assert await db.execute('count_articles') == 1


@pytest.mark.asyncio
async def test_cleanup_enabled_removes_old_articles(db):
    await store_old_article(db)
    await db.execute('set_setting', key='auto_cleanup_enabled', value='true')
    await db.execute('set_setting', key='max_article_age_days', value='7')
    scheduler = FeedScheduler(FakeFetcher(db), db)

    assert await scheduler._maybe_cleanup() == 1
    assert await db.execute('count_articles') == 0


@pytest.mark.asyncio
async def test_cleanup_runs_at_start(db):
    await store_old_article(db)
    await db.execute('set_setting', key='auto_cleanup_enabled', value='true')
    scheduler = FeedScheduler(FakeFetcher(db), db, minute_seconds=60.0)

    scheduler.start()
    for _ in range(100):
        if await db.execute('count_articles') == 0:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert await db.execute('count_articles') == 0
