"""
Feed fetching through rotating relay endpoints.

All relays are raced in parallel for each source. The first relay that
returns a valid, parseable feed wins and the remaining attempts are
cancelled. Two limits bound the time spent on a source: a per-request
timeout on every relay call and an overall per-source deadline, so a hung
relay can never stall a batch.
"""

import asyncio
import logging
import re
import time
from typing import List, Optional, Sequence
from urllib.parse import quote

import aiohttp

from newspulse.models.content import ContentRecord
from newspulse.services.feed_parser import FeedParser, FeedValidationError
from newspulse.services.source_manager import SourceManager
from newspulse.utils.error_monitoring import ErrorMonitor


DEFAULT_RELAYS = [
    'https://corsproxy.io/?',
    'https://api.allorigins.win/raw?url=',
]

REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/117.0.0.0 Safari/537.36",
    "Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml, */*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

FEED_ROOT_MARKERS = ('<rss', '<feed', '<rdf:rdf', '<channel')

# & that does not start a named, decimal or hex entity
_BARE_AMPERSAND = re.compile(r'&(?!(?:[A-Za-z][A-Za-z0-9]{1,31}|#[0-9]{1,7}|#[xX][0-9A-Fa-f]{1,6});)')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
_CDATA_OPEN = '<![CDATA['
_CDATA_CLOSE = ']]>'


class TransientFetchError(Exception):
    """Network level failure: timeout, refused connection, bad status, relay error"""
    pass


def _repair_outside_cdata(text: str) -> str:
    """
    Escape bare ampersands and stray ']]>' in markup, leave CDATA sections
    untouched and close an unterminated one.
    """
    parts: List[str] = []
    pos = 0
    while True:
        start = text.find(_CDATA_OPEN, pos)
        outside = text[pos:] if start == -1 else text[pos:start]
        outside = outside.replace(_CDATA_CLOSE, ']]&gt;')
        parts.append(_BARE_AMPERSAND.sub('&amp;', outside))
        if start == -1:
            break
        end = text.find(_CDATA_CLOSE, start + len(_CDATA_OPEN))
        if end == -1:
            parts.append(text[start:] + _CDATA_CLOSE)
            break
        parts.append(text[start:end + len(_CDATA_CLOSE)])
        pos = end + len(_CDATA_CLOSE)
    return ''.join(parts)


def sanitize_feed_text(text: str) -> str:
    """
    Repair the XML mistakes real feeds commonly make so a parser accepts
    them: bare ampersands, control characters and broken CDATA endings.
    """
    text = _CONTROL_CHARS.sub('', text)
    return _repair_outside_cdata(text)


def looks_like_feed(text: Optional[str]) -> bool:
    """Cheap check that a response is a feed and not an error page."""
    if not text or not text.strip():
        return False
    head = text[:4096].lower()
    return any(marker in head for marker in FEED_ROOT_MARKERS)


def build_relay_url(relay: str, source_url: str) -> str:
    """Relays are URL prefixes; an empty relay means a direct request."""
    if not relay:
        return source_url
    return f"{relay}{quote(source_url, safe='')}"


class ProxyFetcher:
    """
    Fetches and parses one source feed. fetch() never raises: every failure
    becomes an empty list plus a failure signal to the SourceManager.
    """

    def __init__(self,
                 source_manager: SourceManager,
                 relays: Optional[Sequence[str]] = None,
                 parser: Optional[FeedParser] = None,
                 error_monitor: Optional[ErrorMonitor] = None,
                 request_timeout: float = 4.0,
                 source_timeout: float = 6.0,
                 max_records_per_source: int = 25):
        self.logger = logging.getLogger(__name__)
        self.source_manager = source_manager
        self.relays = list(DEFAULT_RELAYS if relays is None else relays)
        if not self.relays:
            raise ValueError("At least one relay endpoint is required (use '' for direct)")
        self.parser = parser or FeedParser()
        self.error_monitor = error_monitor or ErrorMonitor()
        self.request_timeout = request_timeout
        self.source_timeout = source_timeout
        self.max_records_per_source = max_records_per_source

        self.logger.info(
            f"Initialized ProxyFetcher: relays={len(self.relays)}, "
            f"request_timeout={request_timeout}s, source_timeout={source_timeout}s"
        )

    async def fetch(self, source_url: str, source_name: str) -> List[ContentRecord]:
        """Fetch one source through the relays. Returns [] on any failure."""
        start = time.monotonic()
        try:
            records = await self._race_relays(source_url, source_name)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            self.error_monitor.handle_error(e, source_name, 'fetch', {'url': source_url})
            self.logger.info(f"{source_name}: all relays failed ({type(e).__name__}: {e})")
            await self.source_manager.record_failure(source_name)
            return []

        elapsed_ms = (time.monotonic() - start) * 1000
        await self.source_manager.record_success(source_name, elapsed_ms)
        self.logger.info(f"{source_name}: {len(records)} records in {elapsed_ms:.0f}ms")
        return records

    async def _race_relays(self, source_url: str, source_name: str) -> List[ContentRecord]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.source_timeout
        attempts = [
            asyncio.ensure_future(self._attempt(relay, source_url, source_name))
            for relay in self.relays
        ]
        errors: List[BaseException] = []

        try:
            pending = set(attempts)
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                winner = None
                # Walk in relay order so simultaneous finishers resolve deterministically
                for attempt in attempts:
                    if attempt not in done:
                        continue
                    error = attempt.exception()
                    if error is None and winner is None:
                        winner = attempt.result()
                    elif error is not None:
                        errors.append(error)
                if winner is not None:
                    return winner
        finally:
            for attempt in attempts:
                if not attempt.done():
                    attempt.cancel()

        if not errors:
            raise TransientFetchError(f"No relay answered within {self.source_timeout}s")
        if len(errors) < len(attempts):
            raise TransientFetchError(
                f"Deadline of {self.source_timeout}s reached; last error: {errors[-1]}"
            )
        # Every relay failed: surface the most informative error
        for error in errors:
            if isinstance(error, FeedValidationError):
                raise error
        raise errors[-1]

    async def _attempt(self, relay: str, source_url: str, source_name: str) -> List[ContentRecord]:
        """One relay: request, validate, sanitize, parse, cap."""
        text = await self._request(build_relay_url(relay, source_url))

        if not looks_like_feed(text):
            raise FeedValidationError(f"Response from {relay or 'direct'} is not a feed")

        records = self.parser.parse(sanitize_feed_text(text), source_name)
        usable = [record for record in records if record.link]
        if not usable:
            raise FeedValidationError(f"No items with links from {relay or 'direct'}")
        return usable[:self.max_records_per_source]

    async def _request(self, url: str) -> str:
        """Single GET; retries happen across relays, not here."""
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=REQUEST_HEADERS) as resp:
                    if resp.status != 200:
                        raise TransientFetchError(f"HTTP {resp.status} for {url}")
                    return await resp.text(errors='replace')
        except asyncio.TimeoutError as e:
            raise TransientFetchError(f"Timed out after {self.request_timeout}s: {url}") from e
        except aiohttp.ClientError as e:
            raise TransientFetchError(f"{type(e).__name__}: {e}") from e
