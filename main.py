#!/usr/bin/env python3
"""
Feed Sync Orchestrator

Wires the database queue, fetcher, subscription manager, discovery coordinator
and scheduler together and exposes them as one caller surface plus a command
line interface:

1. run          - refresh feeds forever on the configured interval
2. fetch        - refresh every due feed once
3. add / add-script / remove / list / refresh - manage subscriptions
4. discover / discover-all - find new blogs from subscribed feeds
5. import       - subscribe to the feeds declared in feeds.yaml
6. status       - show database and configuration status
"""

import asyncio
import argparse
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from config import config, get_logger
from discovery import DiscoveryCoordinator, DiscoveryService, DiscoveryState
from errors import FeedSyncError
from fetcher import FeedFetcher
from models import DatabaseQueue, Feed
from scheduler import create_scheduler
from subscriptions import SubscriptionManager
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("orchestrator")

DISCOVERY_POLL_SECONDS = 1.0


class FeedSyncOrchestrator:
    """Owns every component and their lifecycle."""

    def __init__(self, db_path: Optional[str] = None, minute_seconds: float = 60.0) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = FeedFetcher(self.db)
        self.subscriptions = SubscriptionManager(self.fetcher)
        self.discovery = DiscoveryCoordinator(self.db, DiscoveryService(self.fetcher))
        self.scheduler = create_scheduler(self.fetcher, self.db, minute_seconds=minute_seconds)

    async def initialize(self) -> None:
        await self.db.start()
        await self.fetcher.initialize()

    async def close(self) -> None:
        """Stop background work first, then release the database."""
        await self.scheduler.stop()
        await self.discovery.close()
        await self.subscriptions.close()
        await self.fetcher.close()
        await self.db.stop()

    async def __aenter__(self) -> "FeedSyncOrchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # Feed management
    async def add_feed(self, url: str, category: str = "", title: str = "", **options) -> int:
        return await self.subscriptions.subscribe(url=url, category=category, title=title, **options)

    async def add_script_feed(self, script_path: str, category: str = "", title: str = "", **options) -> int:
        return await self.subscriptions.subscribe(script_path=script_path, category=category, title=title, **options)

    async def update_feed(self, feed_id: int, **fields) -> Feed:
        return await self.subscriptions.update_feed(feed_id, **fields)

    async def delete_feed(self, feed_id: int) -> None:
        await self.subscriptions.remove_feed(feed_id)

    async def refresh_feed(self, feed_id: int) -> int:
        return await self.subscriptions.refresh_feed(feed_id)

    async def list_feeds(self):
        return await self.subscriptions.list_feeds()

    @trace_span("run_fetcher", tracer_name="orchestrator")
    async def refresh_all(self) -> Dict[int, Optional[str]]:
        return await self.fetcher.fetch_all()

    async def import_feeds(self) -> Dict[str, Optional[int]]:
        # Pick up edits made to feeds.yaml since startup
        config.reload_feed_sources()
        return await self.subscriptions.import_from_config()

    # Discovery
    async def start_discovery(self, feed_id: int) -> DiscoveryState:
        return await self.discovery.start_single(feed_id)

    async def start_batch_discovery(self) -> DiscoveryState:
        return await self.discovery.start_batch()

    def discovery_state(self) -> DiscoveryState:
        return self.discovery.get_single_state()

    def batch_discovery_state(self) -> DiscoveryState:
        return self.discovery.get_batch_state()

    def clear_discovery(self) -> bool:
        return self.discovery.clear_single()

    def clear_batch_discovery(self) -> bool:
        return self.discovery.clear_batch()

    async def wait_for_discovery(self, batch: bool = False, poll_seconds: float = DISCOVERY_POLL_SECONDS) -> DiscoveryState:
        """Poll a discovery run until it stops, logging progress as it changes."""
        read_state = self.batch_discovery_state if batch else self.discovery_state
        last_line = None
        while True:
            state = read_state()
            progress = state.progress
            line = f"[{progress.current}/{progress.total}] {progress.message} {progress.detail}".strip()
            if line != last_line:
                logger.info(f"🔎 {line} ({len(state.feeds)} found)")
                last_line = line
            if not state.running:
                return state
            await asyncio.sleep(poll_seconds)

    # Scheduling
    async def run_scheduled(self) -> None:
        """Run the scheduler until cancelled or interrupted."""
        logger.info("🕐 Starting scheduled mode")
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.scheduler.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not available on every platform
                pass
        self.scheduler.start()
        await self.scheduler.wait_closed()

    # Status
    async def check_status(self) -> dict:
        """Check the current status of the feed sync system.

        Returns:
            Dictionary with status information
        """
        logger.info("📊 Checking system status")
        status: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'checks': {},
        }
        try:
            stats = await self.db.execute('get_stats')
            settings = await self.db.execute(
                'get_settings',
                keys=['update_interval', 'max_concurrent_refreshes', 'auto_cleanup_enabled', 'last_article_update'],
            )
            status['checks']['database'] = {'status': 'ok', **stats, 'settings': settings}
        except FeedSyncError as e:
            status['checks']['database'] = {'status': 'error', 'message': str(e)}

        scripts_dir = Path(config.SCRIPTS_DIR)
        status['checks']['scripts'] = {
            'scripts_dir_exists': scripts_dir.is_dir(),
            'scripts': len([p for p in scripts_dir.iterdir() if p.is_file()]) if scripts_dir.is_dir() else 0,
        }
        status['checks']['config'] = config.get_config_summary()

        db_ok = status['checks']['database'].get('status') == 'ok'
        failing = status['checks']['database'].get('failing_feeds', 0) if db_ok else 0
        status['overall_status'] = 'healthy' if db_ok and not failing else 'issues_detected'
        return status

    def print_status(self, status: dict):
        """Print formatted status information."""
        print(f"\n📊 Feed Sync Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")

        db = status['checks']['database']
        if db['status'] == 'ok':
            print(f"\n💾 Database:")
            print(f"   📡 Feeds: {db['feeds']} ({db['failing_feeds']} failing)")
            print(f"   📰 Articles: {db['articles']} ({db['unread']} unread)")
            print(f"   ⏱️ Update interval: {db['settings'].get('update_interval')} minutes")
            print(f"   🕓 Last update: {db['settings'].get('last_article_update') or 'never'}")
        else:
            print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")

        scripts = status['checks']['scripts']
        print(f"\n📁 Scripts: {scripts['scripts']} in {config.SCRIPTS_DIR}" if scripts['scripts_dir_exists']
              else f"\n📁 Scripts: directory {config.SCRIPTS_DIR} not found")


def print_feeds(feeds) -> None:
    if not feeds:
        print("No feeds subscribed")
        return
    for feed in feeds:
        health = f"error: {feed.last_error}" if feed.last_error else (
            f"last fetched {datetime.fromtimestamp(feed.last_fetched_at, timezone.utc).isoformat()}"
            if feed.last_fetched_at else "never fetched"
        )
        category = f" [{feed.category}]" if feed.category else ""
        print(f"{feed.id:>4}  {feed.display_name}{category}\n      {feed.location}  ({health})")


def print_discovery(state: DiscoveryState) -> None:
    if state.error:
        print(f"❌ Discovery failed: {state.error}")
    else:
        print(f"✅ {state.progress.message}")
    for blog in state.feeds:
        print(f" - {blog.name}: {blog.rss_feed} (via {blog.source_feed})")


async def run_mode(args) -> int:
    """Execute one CLI mode and return the process exit code."""
    async with FeedSyncOrchestrator() as orchestrator:
        if args.mode == 'run':
            await orchestrator.run_scheduled()

        elif args.mode == 'fetch':
            results = await orchestrator.refresh_all()
            failed = {feed_id: error for feed_id, error in results.items() if error}
            for feed_id, error in failed.items():
                print(f"Feed {feed_id}: {error}")
            return 1 if failed else 0

        elif args.mode == 'add':
            feed_id = await orchestrator.add_feed(
                args.target, category=args.category, title=args.title,
                refresh_interval=args.interval, proxy_enabled=bool(args.proxy),
                proxy_url=args.proxy or "", fetch_now=False,
            )
            print(f"Subscribed feed {feed_id}")
            await orchestrator.refresh_feed(feed_id)

        elif args.mode == 'add-script':
            feed_id = await orchestrator.add_script_feed(
                args.target, category=args.category, title=args.title, refresh_interval=args.interval,
                fetch_now=False,
            )
            print(f"Subscribed script feed {feed_id}")
            await orchestrator.refresh_feed(feed_id)

        elif args.mode == 'remove':
            await orchestrator.delete_feed(int(args.target))
            print(f"Removed feed {args.target}")

        elif args.mode == 'list':
            print_feeds(await orchestrator.list_feeds())

        elif args.mode == 'refresh':
            count = await orchestrator.refresh_feed(int(args.target))
            print(f"Stored {count} new articles")

        elif args.mode == 'discover':
            await orchestrator.start_discovery(int(args.target))
            state = await orchestrator.wait_for_discovery()
            print_discovery(state)
            return 1 if state.error else 0

        elif args.mode == 'discover-all':
            await orchestrator.start_batch_discovery()
            state = await orchestrator.wait_for_discovery(batch=True)
            print_discovery(state)
            return 1 if state.error else 0

        elif args.mode == 'import':
            results = await orchestrator.import_feeds()
            for slug, feed_id in results.items():
                print(f"{slug}: {'skipped' if feed_id is None else feed_id}")

        elif args.mode == 'status':
            orchestrator.print_status(await orchestrator.check_status())

    return 0


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed Sync Orchestrator')
    parser.add_argument('mode', choices=['run', 'fetch', 'add', 'add-script', 'remove', 'list', 'refresh',
                                         'discover', 'discover-all', 'import', 'status'],
                        help='Operation mode')
    parser.add_argument('target', nargs='?',
                        help='Feed URL (add), script path (add-script) or feed id (remove, refresh, discover)')
    parser.add_argument('--category', default='', help='Category for new feeds')
    parser.add_argument('--title', default='', help='Title for new feeds (default: taken from the feed)')
    parser.add_argument('--interval', type=int, default=0,
                        help='Per-feed refresh interval in minutes (0 follows the global interval)')
    parser.add_argument('--proxy', default='', help='Proxy URL for this feed')

    args = parser.parse_args()
    if args.mode in ('add', 'add-script', 'remove', 'refresh', 'discover') and not args.target:
        parser.error(f"mode '{args.mode}' requires a target")

    init_telemetry("feed-sync")

    try:
        sys.exit(asyncio.run(run_mode(args)))
    except KeyboardInterrupt:
        logger.info("👋 Orchestrator shutting down")
    except FeedSyncError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
