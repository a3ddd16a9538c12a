#!/usr/bin/env python3
"""
Feed sources: where a feed's raw document comes from.

A feed is either retrieved over HTTP (NetworkSource) or produced by running a
local script whose standard output is a feed document (ScriptSource). Both
expose the same ``retrieve`` coroutine so the fetcher does not branch on the
kind of feed.
"""

import asyncio
from os import path
from typing import List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger, SCRIPT_INTERPRETERS
from errors import FeedFetchError, ScriptExecutionError, ValidationError
from models import Feed
from utils import summarize_proxy, truncate_string

logger = get_logger("sources")

HTTP_OK = 200
PROXY_TIMEOUT_MULTIPLIER = 6


def resolve_script_path(script_path: str) -> str:
    """Return the absolute path of a script inside SCRIPTS_DIR.

    Raises:
        ValidationError: if the path is empty, escapes the scripts directory,
            does not exist, or has no supported interpreter.
    """
    if not script_path or not str(script_path).strip():
        raise ValidationError("Script path is required")
    scripts_dir = path.realpath(config.SCRIPTS_DIR)
    candidate = path.realpath(path.join(scripts_dir, str(script_path).strip()))
    if path.commonpath([scripts_dir, candidate]) != scripts_dir or candidate == scripts_dir:
        raise ValidationError(f"Script path must be inside the scripts directory: {script_path}")
    if not path.isfile(candidate):
        raise ValidationError(f"Script not found: {script_path}")
    extension = path.splitext(candidate)[1].lower()
    if extension not in SCRIPT_INTERPRETERS:
        supported = ", ".join(sorted(SCRIPT_INTERPRETERS))
        raise ValidationError(f"Unsupported script type '{extension}' (supported: {supported})")
    return candidate


def format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class FeedSource:
    """Base class for anything that can produce a feed document."""

    kind = "unknown"

    async def retrieve(self, session: Optional[ClientSession] = None) -> bytes:
        raise NotImplementedError

    def describe(self) -> str:
        return self.kind


class NetworkSource(FeedSource):
    """Retrieve a feed document over HTTP(S), optionally through a proxy."""

    kind = "network"

    def __init__(self, url: str, proxy_url: Optional[str] = None):
        self.url = url
        self.proxy_url = proxy_url

    def describe(self) -> str:
        return self.url

    def compute_timeout(self) -> int:
        """Return the HTTP timeout, scaling up when routing through a proxy."""
        base_timeout = max(int(config.HTTP_TIMEOUT), 1)
        if self.proxy_url:
            return base_timeout * PROXY_TIMEOUT_MULTIPLIER
        return base_timeout

    async def retrieve(self, session: Optional[ClientSession] = None) -> bytes:
        if session is None:
            async with ClientSession() as own_session:
                return await self._get(own_session)
        return await self._get(session)

    async def _get(self, session: ClientSession) -> bytes:
        timeout_seconds = self.compute_timeout()
        request_kwargs = {
            'headers': {'User-Agent': config.USER_AGENT},
            'timeout': ClientTimeout(total=timeout_seconds),
            'max_redirects': config.MAX_REDIRECTS,
        }
        if self.proxy_url:
            request_kwargs['proxy'] = self.proxy_url
            logger.debug("Fetching %s via proxy %s", self.url, summarize_proxy(self.proxy_url))
        try:
            async with session.get(self.url, **request_kwargs) as response:
                if response.status != HTTP_OK:
                    raise FeedFetchError(f"HTTP {response.status}")
                return await response.read()
        except asyncio.TimeoutError:
            raise FeedFetchError(f"Timed out after {timeout_seconds}s")
        except ClientError as e:
            raise FeedFetchError(f"Network error: {format_client_error(e)}")


class ScriptSource(FeedSource):
    """Run a local script and use its standard output as the feed document.

    The interpreter is chosen from the file extension. The script runs with the
    scripts directory as its working directory and is killed when it exceeds
    SCRIPT_TIMEOUT or when the awaiting task is cancelled.
    """

    kind = "script"

    def __init__(self, script_path: str):
        self.script_path = script_path

    def describe(self) -> str:
        return f"script:{self.script_path}"

    def build_command(self) -> List[str]:
        try:
            absolute = resolve_script_path(self.script_path)
        except ValidationError as e:
            raise ScriptExecutionError(str(e))
        interpreter = SCRIPT_INTERPRETERS[path.splitext(absolute)[1].lower()]
        return [*interpreter, absolute]

    async def retrieve(self, session: Optional[ClientSession] = None) -> bytes:
        command = self.build_command()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=config.SCRIPTS_DIR,
            )
        except FileNotFoundError:
            raise ScriptExecutionError(f"Interpreter not found: {command[0]}")
        except OSError as e:
            raise ScriptExecutionError(f"Could not start script {self.script_path}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=config.SCRIPT_TIMEOUT)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise ScriptExecutionError(f"Script timed out after {config.SCRIPT_TIMEOUT}s")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            detail = truncate_string(stderr.decode('utf-8', errors='replace').strip(), 500)
            raise ScriptExecutionError(
                f"Script exited with status {process.returncode}" + (f": {detail}" if detail else "")
            )
        if not stdout.strip():
            raise ScriptExecutionError("Script produced no output")
        return stdout

    async def _kill(self, process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
            logger.warning(f"Killed script {self.script_path}")


def source_for_feed(feed: Feed, proxy_url: Optional[str] = None) -> FeedSource:
    """Build the source matching a feed's kind."""
    if feed.is_script:
        return ScriptSource(feed.script_path)
    return NetworkSource(feed.url, proxy_url=proxy_url)
