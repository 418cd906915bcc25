"""
Transient types produced by the fetch stage.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from apricot.config import DEFAULT_LOOKBACK_DAYS, DEFAULT_MAX_ARTICLES_PER_FEED
from apricot.models import FeedMode, FetchStrategy


@dataclass(frozen=True)
class SourceSpec:
    """Detached copy of a Source row, safe to hand to worker threads."""
    id: int
    name: str
    url: str
    strategy: FetchStrategy

    @classmethod
    def from_source(cls, source) -> "SourceSpec":
        return cls(id=source.id, name=source.name, url=source.url, strategy=source.strategy)


@dataclass
class FetchOptions:
    """Per-run feed selection policy."""
    mode: FeedMode = FeedMode.RECENT_POSTS
    max_articles: int = DEFAULT_MAX_ARTICLES_PER_FEED
    lookback_days: int = DEFAULT_LOOKBACK_DAYS


@dataclass
class CandidatePost:
    """A post extracted from a feed or listing page, not yet persisted."""
    title: str
    url: str
    source_id: int
    source_name: str
    content_hash: str
    description: str = ''
    published_at: Optional[datetime] = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    full_content: str = ''


@dataclass
class FailedFeed:
    """Failure report entry for one source."""
    source: str
    error: str

    def to_dict(self) -> dict:
        return {'source': self.source, 'error': self.error}


@dataclass
class FetchResult:
    """Merged output of fetching every active source."""
    posts: list[CandidatePost] = field(default_factory=list)
    failed: list[FailedFeed] = field(default_factory=list)
