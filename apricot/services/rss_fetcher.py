"""
RSS Feed Fetcher Service

Fetches and parses RSS/Atom feeds using feedparser and turns their entries
into candidate posts under the run's selection policy.
"""

import html
import logging
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urljoin, urlparse

import feedparser

from apricot.models import FeedMode
from apricot.services.candidates import CandidatePost, FetchOptions, SourceSpec
from apricot.services.errors import FeedParseError
from apricot.services.http_client import RateLimitedClient
from apricot.services.url_normalizer import compute_fingerprint, normalize_url

logger = logging.getLogger(__name__)

HTML_TAG_PATTERN = re.compile(r'<[^>]*>')


def strip_html(text: str) -> str:
    """Remove HTML tags and unescape entities."""
    if not text:
        return ''
    return html.unescape(HTML_TAG_PATTERN.sub('', text)).strip()


def fetch_feed(
    source: SourceSpec,
    options: FetchOptions,
    client: RateLimitedClient,
    cancel_event: Optional[threading.Event] = None,
) -> list[CandidatePost]:
    """
    Fetch and parse a single feed source.

    Args:
        source: Source to fetch
        options: Selection policy (recent posts or time range)
        client: Shared rate-limited client
        cancel_event: Optional run-wide cancel signal

    Returns:
        Candidate posts in feed order
    """
    response = client.get(source.url, cancel_event)
    return parse_feed(response.content, source, options)


def parse_feed(
    content,
    source: SourceSpec,
    options: FetchOptions,
    now: Optional[datetime] = None,
) -> list[CandidatePost]:
    """
    Parse a feed document into candidate posts.

    A malformed document is only an error when feedparser could not recover
    any entries from it; an empty but valid feed yields an empty list.

    Raises:
        FeedParseError: If the document is malformed and has no entries
    """
    now = now or datetime.now(timezone.utc)
    result = feedparser.parse(content)

    entries = result.get('entries', [])
    if result.get('bozo'):
        bozo_exc = result.get('bozo_exception')
        if not entries:
            raise FeedParseError(f"parsing feed {source.url!r}: {bozo_exc}")
        # feedparser often recovers partial data
        logger.warning(f"Feed parsing issue for {source.url}: {bozo_exc}")

    if options.mode == FeedMode.TIME_RANGE:
        return _select_time_range(entries, source, options.lookback_days, now)
    return _select_recent(entries, source, options.max_articles, now)


def _select_recent(entries, source: SourceSpec, max_articles: int, now: datetime) -> list[CandidatePost]:
    """Take the first max_articles valid entries; feeds list newest first."""
    posts = []
    for entry in entries:
        if len(posts) >= max_articles:
            break
        post = _parse_entry(entry, source, now)
        if post:
            posts.append(post)
    return posts


def _select_time_range(entries, source: SourceSpec, lookback_days: int, now: datetime) -> list[CandidatePost]:
    """Keep entries published within the lookback window; undated entries are kept."""
    cutoff = now - timedelta(days=lookback_days)
    posts = []
    for entry in entries:
        post = _parse_entry(entry, source, now)
        if not post:
            continue
        if post.published_at is not None and post.published_at < cutoff:
            continue
        posts.append(post)
    return posts


def _parse_entry(entry: dict, source: SourceSpec, now: datetime) -> Optional[CandidatePost]:
    """
    Parse a feedparser entry into a candidate post.

    Args:
        entry: feedparser entry dict
        source: Source the entry came from
        now: Fetch timestamp

    Returns:
        CandidatePost or None if title or link is missing or unresolvable
    """
    # Required fields
    title = (entry.get('title') or '').strip()
    link = (entry.get('link') or '').strip()
    if not title or not link:
        return None

    # Relative links resolve against the feed URL
    url = normalize_url(urljoin(source.url, link))
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None

    description = strip_html(entry.get('summary') or entry.get('description') or '')

    return CandidatePost(
        title=title,
        url=url,
        source_id=source.id,
        source_name=source.name,
        content_hash=compute_fingerprint(url),
        description=description,
        published_at=_entry_date(entry),
        fetched_at=now,
    )


def _entry_date(entry: dict) -> Optional[datetime]:
    """Publication date from published_parsed, falling back to updated_parsed."""
    for key in ('published_parsed', 'updated_parsed'):
        parsed = entry.get(key)
        if parsed:
            try:
                return datetime(*parsed[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue
    return None
