"""
Content models for the aggregation engine.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Title given to feed items that carry none
UNTITLED = "Untitled"


@dataclass(frozen=True)
class SourceDescriptor:
    """Static configuration for one upstream feed."""

    name: str
    url: str
    category: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceDescriptor":
        return cls(name=data['name'], url=data['url'], category=data.get('category'))


@dataclass(frozen=True)
class ContentRecord:
    """Represents one normalized item fetched from a feed."""

    id: str
    title: str
    link: str
    published_at: datetime
    body: str
    source_name: str
    image_url: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict for the cache."""
        return {
            'id': self.id,
            'title': self.title,
            'link': self.link,
            'published_at': self.published_at.isoformat(),
            'body': self.body,
            'source_name': self.source_name,
            'image_url': self.image_url,
            'author': self.author,
            'category': self.category,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentRecord":
        published_at = datetime.fromisoformat(data['published_at'])
        if published_at.tzinfo is None:
            published_at = published_at.replace(tzinfo=timezone.utc)
        return cls(
            id=data['id'],
            title=data.get('title', ''),
            link=data.get('link', ''),
            published_at=published_at.astimezone(timezone.utc),
            body=data.get('body', ''),
            source_name=data['source_name'],
            image_url=data.get('image_url'),
            author=data.get('author'),
            category=data.get('category'),
        )


@dataclass
class SourceStats:
    """Reliability history for one source, persisted across sessions."""

    success_rate: float = 0.5
    avg_response_time_ms: float = 5000.0
    last_success_at: Optional[float] = None
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None
    total_successes: int = 0
    total_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success_rate': self.success_rate,
            'avg_response_time_ms': self.avg_response_time_ms,
            'last_success_at': self.last_success_at,
            'consecutive_failures': self.consecutive_failures,
            'last_failure_at': self.last_failure_at,
            'total_successes': self.total_successes,
            'total_failures': self.total_failures,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceStats":
        return cls(
            success_rate=min(1.0, max(0.0, float(data.get('success_rate', 0.5)))),
            avg_response_time_ms=float(data.get('avg_response_time_ms', 5000.0)),
            last_success_at=data.get('last_success_at'),
            consecutive_failures=int(data.get('consecutive_failures', 0)),
            last_failure_at=data.get('last_failure_at'),
            total_successes=int(data.get('total_successes', 0)),
            total_failures=int(data.get('total_failures', 0)),
        )


@dataclass
class CacheEntry:
    """A cached, ordered list of records for one cache tier."""

    key: str
    records: list = field(default_factory=list)
    stored_at: float = 0.0

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_valid(self, now: float, ttl_seconds: float) -> bool:
        return self.age(now) < ttl_seconds


def make_record_id(source_name: str, native_id: Optional[str] = None,
                   link: str = "", title: str = "") -> str:
    """
    Build a stable record id.

    The native id (guid) wins when present, then link+title. Only an item
    with none of these gets a random id.
    """
    if native_id:
        basis = f"{source_name}|{native_id}"
    elif link or title:
        basis = f"{source_name}|{link}|{title}"
    else:
        return f"rec_{uuid.uuid4().hex[:16]}"
    return f"rec_{hashlib.md5(basis.encode('utf-8')).hexdigest()[:16]}"
