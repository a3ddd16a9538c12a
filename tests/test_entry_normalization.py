from fetcher import FeedFetcher


def test_normalize_entry_identity_basic():
    fetcher = FeedFetcher()
    title, url = fetcher._normalize_entry_identity(
        "  Example Title  ",
        "https://example.com/a/very/long/path" + "?" + "x" * 2050,
    )
    assert title == "Example Title"
    assert len(url) == 2048
    assert url.startswith("https://example.com/a/very/long/path?")


def test_normalize_entry_identity_defaults():
    fetcher = FeedFetcher()
    title, url = fetcher._normalize_entry_identity(None, None)
    assert title == "Untitled Article"
    assert url == ""


def test_normalize_entry_identity_blank_title_uses_content():
    fetcher = FeedFetcher()
    title, url = fetcher._normalize_entry_identity("   ", " http://example.com ", "<p>First words of the post</p>")
    assert title == "First words of the post"
    assert url == "http://example.com"


def test_normalize_entry_identity_truncates_title():
    fetcher = FeedFetcher()
    title, _ = fetcher._normalize_entry_identity("t" * 300, "http://example.com")
    assert len(title) == 255
