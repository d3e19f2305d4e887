"""
Shared pytest fixtures for engine tests.
"""
from datetime import datetime, timedelta, timezone

import pytest

from newspulse.models.content import ContentRecord, SourceDescriptor, make_record_id
from newspulse.services.storage import MemoryKeyValueStore


BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_record(title: str, source: str = "Source A", minutes: int = 0,
                link: str = None, **kwargs) -> ContentRecord:
    """Build a record published `minutes` after BASE_TIME."""
    link = link if link is not None else f"https://example.com/{source}/{title}".replace(' ', '-')
    return ContentRecord(
        id=make_record_id(source, None, link, title),
        title=title,
        link=link,
        published_at=BASE_TIME + timedelta(minutes=minutes),
        body=kwargs.pop('body', f"Body of {title}"),
        source_name=source,
        **kwargs,
    )


def rss_document(items, channel_title: str = "Test Feed") -> str:
    """Render a small RSS 2.0 document from item dicts."""
    rendered = []
    for item in items:
        parts = []
        for tag in ('title', 'link', 'guid', 'pubDate', 'description', 'author'):
            if item.get(tag) is not None:
                parts.append(f"<{tag}>{item[tag]}</{tag}>")
        parts.extend(item.get('extra', []))
        rendered.append("<item>" + "".join(parts) + "</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/" '
        'xmlns:content="http://purl.org/rss/1.0/modules/content/">'
        f"<channel><title>{channel_title}</title><link>https://example.com</link>"
        + "".join(rendered)
        + "</channel></rss>"
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def sources():
    return [
        SourceDescriptor(name=f"Source {i}", url=f"https://feeds.example.com/{i}.xml",
                         category="Technology" if i % 2 else "Business")
        for i in range(1, 9)
    ]
