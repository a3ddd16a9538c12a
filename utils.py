#!/usr/bin/env python3
"""
Utility classes and functions for the feed sync engine.

This module contains shared utilities used by the fetcher, the discovery
crawler and the subscription layer: URL canonicalization, rate limiting,
validation, proxy URL helpers, HTML sanitizing and the entry media helpers
(images, YouTube embeds, Media RSS titles).
"""

from asyncio import Lock, sleep
from time import time
from typing import Dict, List, Mapping, Optional
import re
from urllib.parse import quote, urljoin, urlsplit

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

UNTITLED_ARTICLE = "Untitled Article"

YOUTUBE_ID_PATTERNS = (
    re.compile(r"youtube\.com/watch.*?[?&]v=([^&#]+)"),
    re.compile(r"youtu\.be/([^?&#/]+)"),
    re.compile(r"youtube\.com/shorts/([^?&#/]+)"),
)

CDATA_BYTES = re.compile(rb"<!\[CDATA\[(.*?)\]\]>", re.S)
CDATA_TEXT = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.S)


def canonical_url(raw: str) -> str:
    """Return the comparison key for a URL: scheme://host/path.

    Query string and fragment are dropped, so links that differ only by
    tracking parameters collapse to the same key. Input that cannot be
    parsed, or that carries no scheme, is returned unchanged.

    >>> canonical_url("https://ex.com/a?utm_source=x#top")
    'https://ex.com/a'
    >>> canonical_url("ex.com/a")
    'ex.com/a'
    """
    if not raw:
        return ""
    try:
        parts = urlsplit(raw)
    except ValueError:
        return raw
    if not parts.scheme:
        return raw
    # Userinfo is not part of the identity of a resource
    host = parts.netloc.rpartition('@')[2]
    return f"{parts.scheme}://{host}{parts.path}"


def urls_match(a: str, b: str) -> bool:
    """True when two URLs are identical or share the same canonical key."""
    if a == b:
        return True
    return canonical_url(a) == canonical_url(b)


class RateLimiter:
    """A simple rate limiter for controlling request rates.

    Ensures requests don't exceed a specified rate limit by introducing delays
    when necessary.
    """

    def __init__(self, requests_per_minute: int):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
                                If 0 or negative, no rate limiting is applied.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0
        self._lock = Lock()

    async def acquire(self):
        """Wait until the next request is allowed."""
        if self.min_interval <= 0:
            return  # No rate limiting

        async with self._lock:
            current_time = time()
            time_since_last = current_time - self.last_request_time

            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)

            self.last_request_time = time()


def validate_url(url: str) -> bool:
    """Validate that a string is an absolute http(s) URL with a host.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url or any(c.isspace() for c in url):
        return False

    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ('http', 'https') and bool(parts.hostname)


def build_proxy_url(settings: Mapping[str, str]) -> Optional[str]:
    """Build the global proxy URL from the proxy_* settings.

    Returns None unless proxy_enabled is "true" and a host is configured.
    """
    if str(settings.get('proxy_enabled', 'false')).lower() != 'true':
        return None
    host = (settings.get('proxy_host') or '').strip()
    if not host:
        return None
    scheme = (settings.get('proxy_type') or 'http').strip().lower() or 'http'
    port = (settings.get('proxy_port') or '').strip()
    username = (settings.get('proxy_username') or '').strip()
    password = settings.get('proxy_password') or ''

    auth = ''
    if username:
        auth = quote(username, safe='')
        if password:
            auth += ':' + quote(password, safe='')
        auth += '@'
    netloc = f"{host}:{port}" if port else host
    return f"{scheme}://{auth}{netloc}"


def summarize_proxy(proxy_url: Optional[str]) -> Optional[str]:
    """Provide a redacted proxy identifier for logging."""
    if not proxy_url:
        return None
    try:
        parsed = urlsplit(proxy_url)
        if parsed.scheme and parsed.hostname:
            host = parsed.hostname
            if parsed.port:
                host = f"{host}:{parsed.port}"
            return f"{parsed.scheme}://{host}"
    except ValueError:
        return "<invalid proxy>"
    return proxy_url


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images removed)
    - Converts resulting HTML to Markdown with markdownify
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup([
        "script", "style", "iframe", "form", "object", "embed", "noscript",
        "frame", "frameset", "applet", "meta", "base", "link"
    ]):
        tag.decompose()

    # Remove on* attributes and javascript: URLs
    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src') and str(tag[attr]).strip().lower().startswith('javascript:'):
                del tag[attr]

    # Tracking pixels / tiny images
    for img in soup.find_all('img'):
        src = img.get('src', '')
        if re.search(r'(pixel|tracker|counter|spacer|blank|trans)', src, re.I) or \
           (re.search(r'\.(gif|png)$', src, re.I) and (img.get('height') in ('0', '1'))):
            img.decompose()

    def _rewrite_url(value: str, attr: str) -> Optional[str]:
        if attr == 'href' and value.startswith('mailto:'):
            return value
        if value.startswith(('http://', 'https://')):
            return value
        if base_url:
            try:
                resolved = urljoin(base_url, value)
            except ValueError:
                return None
            if resolved.startswith(('http://', 'https://')):
                return resolved
        return None

    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr):
                continue
            val = str(tag[attr])
            if not val:
                continue
            rewritten = _rewrite_url(val, attr)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    # wrap_width=0 keeps long URLs on one line
    return md(str(soup), heading_style="ATX", wrap_width=0).strip()


def html_to_text(html_content: str) -> str:
    """Return the visible text of an HTML fragment with whitespace collapsed."""
    if not html_content:
        return ""
    try:
        text = BeautifulSoup(html_content, 'html.parser').get_text(" ", strip=True)
    except Exception as e:
        logger.warning(f"Could not extract text from HTML: {e}")
        return ""
    return " ".join(text.split())


def title_from_content(html_content: str, max_length: int = 100) -> str:
    """Build a title for an untitled entry from the start of its content."""
    text = html_to_text(html_content)
    if not text:
        return UNTITLED_ARTICLE
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def first_image_src(html_content: str) -> str:
    """Return the src of the first <img> in an HTML fragment, or ""."""
    if not html_content or '<img' not in html_content:
        return ""
    try:
        img = BeautifulSoup(html_content, 'html.parser').find('img', src=True)
    except Exception as e:
        logger.warning(f"Could not scan HTML for images: {e}")
        return ""
    return str(img['src']).strip() if img else ""


def resolve_relative_url(value: str, base_url: Optional[str]) -> str:
    """Make a relative URL absolute against base_url; absolute or unresolvable values pass through."""
    if not value or value.startswith(('http://', 'https://')) or not base_url:
        return value or ""
    try:
        return urljoin(base_url, value)
    except ValueError:
        return value


def youtube_embed_url(link: Optional[str], video_id: Optional[str] = None) -> str:
    """Return the YouTube embed URL for a watch, youtu.be or shorts link."""
    if not video_id and link:
        for pattern in YOUTUBE_ID_PATTERNS:
            match = pattern.search(link)
            if match:
                video_id = match.group(1)
                break
    video_id = (video_id or "").strip()
    return f"https://www.youtube.com/embed/{video_id}" if video_id else ""


def _escape_cdata(match):
    body = match.group(1)
    if isinstance(body, bytes):
        return body.replace(b'&', b'&amp;').replace(b'<', b'&lt;').replace(b'>', b'&gt;')
    return body.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')


def extract_media_fields(document) -> List[Dict[str, str]]:
    """Read media:title and media:description for every item/entry of a feed.

    feedparser folds these Media RSS elements into the plain title and
    description, where the item's own values win. Returns one dict per
    item in document order (media:group children first, then anywhere in
    the item), or an empty list when the document has no media elements.
    """
    marker = b'media:' if isinstance(document, bytes) else 'media:'
    if not document or marker not in document:
        return []
    try:
        # html.parser does not treat CDATA sections as text on every Python release
        cdata = CDATA_BYTES if isinstance(document, bytes) else CDATA_TEXT
        document = cdata.sub(_escape_cdata, document)
        soup = BeautifulSoup(document, 'html.parser')
        fields = []
        for item in soup.find_all(['item', 'entry']):
            group = item.find('media:group')
            values = {}
            for key, name in (('media_title', 'media:title'), ('media_description', 'media:description')):
                for scope in (group, item):
                    tag = scope.find(name) if scope is not None else None
                    if tag is not None and tag.get_text(strip=True):
                        values[key] = tag.get_text().strip()
                        break
            fields.append(values)
        return fields
    except Exception as e:
        logger.warning(f"Could not read Media RSS fields: {e}")
        return []
