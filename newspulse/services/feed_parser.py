import calendar
import logging
import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import feedparser
from bs4 import BeautifulSoup
from dateutil import parser as dateutil_parser

from newspulse.models.content import UNTITLED, ContentRecord, make_record_id


class FeedValidationError(Exception):
    """Response is not shaped like a feed"""
    pass


class ParseError(FeedValidationError):
    """Feed text could not be interpreted as a feed at all (no items)"""
    pass


def truncate_text(text: str, max_length: int) -> str:
    """Cut text at a sentence or word boundary, adding an ellipsis when cut."""
    if len(text) <= max_length:
        return text

    truncation_point = max_length - 3  # Leave room for ellipsis

    # Prefer the last sentence ending before the limit
    sentence_endings = [m.end() for m in re.finditer(r'[.!?]\s+', text[:truncation_point])]
    if sentence_endings and sentence_endings[-1] > truncation_point * 0.6:
        return text[:sentence_endings[-1]].rstrip()

    word_boundary = text.rfind(' ', 0, truncation_point)
    if word_boundary > truncation_point * 0.8:  # Don't cut too short
        return text[:word_boundary] + '...'
    return text[:truncation_point] + '...'


class FeedParser:
    """
    Turns sanitized RSS/Atom text into ContentRecords.

    Individual broken items degrade field by field instead of failing the
    whole feed: a missing title becomes "Untitled", a missing or unparseable
    date becomes the fetch time, and a missing link is left empty for the
    caller to drop.
    """

    def __init__(self, max_title_length: int = 300, max_body_length: int = 500):
        self.max_title_length = max_title_length
        self.max_body_length = max_body_length
        self.logger = logging.getLogger(__name__)

    def parse(self, text: str, source_name: str, category: Optional[str] = None) -> List[ContentRecord]:
        """Parse feed text. Raises ParseError when no items can be found."""
        parsed = feedparser.parse(text)
        entries = parsed.entries

        if not entries:
            reason = parsed.get('bozo_exception')
            detail = f": {reason}" if reason else ""
            raise ParseError(f"No items found in feed from {source_name}{detail}")

        fetched_at = datetime.now(timezone.utc)
        records: List[ContentRecord] = []
        for entry in entries:
            try:
                records.append(self._parse_entry(entry, source_name, category, fetched_at))
            except Exception as e:  # noqa: BLE001
                self.logger.debug(f"Skipping malformed item from {source_name}: {e}")

        if not records:
            raise ParseError(f"All {len(entries)} items from {source_name} were unusable")

        if parsed.get('bozo'):
            self.logger.debug(
                f"{source_name}: recovered {len(records)} items from malformed feed "
                f"({parsed.get('bozo_exception')})"
            )
        return records

    def _parse_entry(self, entry, source_name: str, category: Optional[str],
                     fetched_at: datetime) -> ContentRecord:
        title = self._clean_text(entry.get('title', ''))
        title = truncate_text(title, self.max_title_length) if title else UNTITLED

        link = (entry.get('link') or '').strip()
        native_id = entry.get('id') or entry.get('guid')

        markups = self._markup_candidates(entry)
        body = self._clean_text(markups[0]) if markups else ''
        body = truncate_text(body, self.max_body_length)

        return ContentRecord(
            id=make_record_id(source_name, native_id, link, title),
            title=title,
            link=link,
            published_at=self._parse_date(entry, fetched_at),
            body=body,
            source_name=source_name,
            image_url=self._resolve_image(entry, markups),
            author=(entry.get('author') or None),
            category=category,
        )

    def _markup_candidates(self, entry) -> List[str]:
        """Body candidates in preference order: full content, then summary/description."""
        candidates: List[str] = []
        for content_item in entry.get('content') or []:
            value = content_item.get('value') if hasattr(content_item, 'get') else None
            if value:
                candidates.append(value)
        for key in ('summary', 'description'):
            value = entry.get(key)
            if value and value not in candidates:
                candidates.append(value)
        return candidates

    def _resolve_image(self, entry, markups: Iterable[str]) -> Optional[str]:
        """
        Image priority: media:content, media:thumbnail, image enclosure,
        then the first <img src> in the item markup.
        """
        for media in entry.get('media_content') or []:
            url = media.get('url')
            if url:
                return url

        for thumbnail in entry.get('media_thumbnail') or []:
            url = thumbnail.get('url')
            if url:
                return url

        for enclosure in entry.get('enclosures') or []:
            mime = (enclosure.get('type') or '').lower()
            href = enclosure.get('href') or enclosure.get('url')
            if href and mime.startswith('image/'):
                return href

        # Last resort, may pick up tracking pixels or icons
        for markup in markups:
            if '<img' not in markup.lower():
                continue
            soup = BeautifulSoup(markup, 'html.parser')
            img = soup.find('img', src=True)
            if img and img['src'].strip():
                return img['src'].strip()

        return None

    def _parse_date(self, entry, fetched_at: datetime) -> datetime:
        """Normalize the item date to UTC, falling back to fetch time."""
        for key in ('published_parsed', 'updated_parsed'):
            parsed_struct = entry.get(key)
            if parsed_struct:
                try:
                    return datetime.fromtimestamp(calendar.timegm(parsed_struct), tz=timezone.utc)
                except (OverflowError, ValueError, TypeError):
                    continue

        raw = entry.get('published') or entry.get('updated')
        if raw:
            try:
                dt = dateutil_parser.parse(raw)
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return dt.astimezone(timezone.utc)
            except (ValueError, TypeError, OverflowError) as e:
                self.logger.debug(f"Failed to parse date '{raw}': {e}, using fetch time")

        return fetched_at

    def _clean_text(self, text: str) -> str:
        """Strip markup and collapse whitespace."""
        if not text:
            return ''
        if '<' in text and '>' in text:
            soup = BeautifulSoup(text, 'html.parser')
            for element in soup(['script', 'style']):
                element.decompose()
            text = soup.get_text(' ', strip=True)
        return re.sub(r'\s+', ' ', text).strip()
