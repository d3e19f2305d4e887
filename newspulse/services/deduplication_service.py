import logging
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from newspulse.models.content import UNTITLED, ContentRecord


class Deduplicator:
    """
    Merges record batches from many sources into one ordered list.

    Two keys decide whether a record is a duplicate:
    - Within a source, the normalized title. Links are not reliable because
      some sources reuse tracking-parameterized links for different stories.
      Items whose title was defaulted fall back to their link or id.
    - Across sources, the normalized title together with the published
      time. A syndicated story carried by two sources collapses, while
      unrelated stories that share a headline at different times stay.
    The first record seen wins.

    Merge state is kept between add() calls so a progressive run only
    processes each batch once. reset() starts a new run.
    """

    def __init__(self) -> None:
        self.stats: Dict[str, int] = {
            "total_processed": 0,
            "title_filtered": 0,
            "story_filtered": 0,
            "id_filtered": 0,
            "empty_filtered": 0,
        }
        self.logger = logging.getLogger(__name__)

        self._seen_keys: Set[Tuple[str, str]] = set()
        self._seen_stories: Set[Tuple[str, datetime]] = set()
        self._seen_ids: Set[str] = set()
        self._merged: List[ContentRecord] = []

    def reset(self) -> None:
        """Forget all merged records and zero the statistics."""
        self._seen_keys.clear()
        self._seen_stories.clear()
        self._seen_ids.clear()
        self._merged = []
        self.reset_statistics()

    def merge(self, batches: Iterable[Sequence[ContentRecord]]) -> List[ContentRecord]:
        """
        Combine batches from scratch, drop duplicates and sort by recency.
        Ties keep input order since list.sort is stable.
        """
        self.reset()
        return self.add(batches)

    def add(self, batches: Iterable[Sequence[ContentRecord]]) -> List[ContentRecord]:
        """Merge new batches into the running result and return a sorted copy."""
        for batch in batches:
            for record in batch:
                self.stats["total_processed"] += 1

                if not record.title.strip() and not record.link.strip():
                    self.stats["empty_filtered"] += 1
                    continue

                key = self.dedup_key(record)
                if key in self._seen_keys:
                    self.stats["title_filtered"] += 1
                    continue
                story = self.story_key(record)
                if story is not None and story in self._seen_stories:
                    self.stats["story_filtered"] += 1
                    continue
                if record.id in self._seen_ids:
                    self.stats["id_filtered"] += 1
                    continue

                self._seen_keys.add(key)
                if story is not None:
                    self._seen_stories.add(story)
                self._seen_ids.add(record.id)
                self._merged.append(record)

        self._merged.sort(key=lambda record: record.published_at, reverse=True)
        return list(self._merged)

    @classmethod
    def dedup_key(cls, record: ContentRecord) -> Tuple[str, str]:
        if cls.has_default_title(record):
            return record.link.strip() or record.id, record.source_name
        return cls.normalize_text(record.title), record.source_name

    @classmethod
    def story_key(cls, record: ContentRecord) -> Optional[Tuple[str, datetime]]:
        """Cross-source identity, None when the title carries no information."""
        if cls.has_default_title(record):
            return None
        title = cls.normalize_text(record.title)
        if not title:
            return None
        return title, record.published_at

    @staticmethod
    def has_default_title(record: ContentRecord) -> bool:
        return not record.title.strip() or record.title == UNTITLED

    @staticmethod
    def normalize_text(text: Optional[str]) -> str:
        """
        Normalize text for comparison (lowercase, remove punctuation and
        extra spaces).
        """
        if not text:
            return ""
        normalized = re.sub(r'[^\w\s]', '', text.lower())
        return ' '.join(normalized.split())

    def reset_statistics(self) -> None:
        for key in self.stats:
            self.stats[key] = 0


def filter_records(records: Sequence[ContentRecord], keyword: str) -> List[ContentRecord]:
    """Case-insensitive keyword match on title and body, order preserved."""
    needle = keyword.strip().lower()
    if not needle:
        return list(records)
    return [
        record for record in records
        if needle in record.title.lower() or needle in record.body.lower()
    ]
