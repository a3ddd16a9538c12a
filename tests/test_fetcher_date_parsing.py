from datetime import datetime, timezone

from fetcher import FeedFetcher


class DummyEntry(dict):
    """Dict that also exposes attributes like feedparser entries."""

    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as exc:  # pragma: no cover - mirrors feedparser behavior
            raise AttributeError(item) from exc


def test_parse_date_without_weekday():
    fetcher = FeedFetcher()
    entry = DummyEntry(
        pubDate="17 Nov 2025 00:00:00 +0000",
        id="https://example.com/2025/11/17/post",
    )

    timestamp = fetcher.parse_date_enhanced(entry)

    expected = int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())
    assert timestamp == expected


def test_parse_celso_style_date_with_weekday():
    fetcher = FeedFetcher()
    entry = DummyEntry(
        pubDate="Sat, 15 Nov 2025 16:00:00 +0000",
        id="https://celso.io/posts/2025/11/15/acorn-a3020/",
    )

    timestamp = fetcher.parse_date_enhanced(entry)

    expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
    assert timestamp == expected


def test_parse_iso_date_with_offset():
    fetcher = FeedFetcher()
    entry = DummyEntry(updated="2025-11-17T12:30:00+0100")

    timestamp = fetcher.parse_date_enhanced(entry)

    expected = int(datetime(2025, 11, 17, 11, 30, tzinfo=timezone.utc).timestamp())
    assert timestamp == expected


def test_parsed_struct_is_treated_as_utc():
    fetcher = FeedFetcher()
    struct = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc).timetuple()
    entry = DummyEntry(published_parsed=struct)

    expected = int(datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc).timestamp())
    assert fetcher.parse_date_enhanced(entry) == expected


def test_date_taken_from_entry_id_when_missing():
    fetcher = FeedFetcher()
    entry = DummyEntry(id="https://example.com/2024/03/09/some-post")

    expected = int(datetime(2024, 3, 9, tzinfo=timezone.utc).timestamp())
    assert fetcher.parse_date_enhanced(entry) == expected
