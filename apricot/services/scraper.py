"""
HTML Listing Scraper Service

Extracts posts from blog listing pages that do not publish a usable feed.
Each supported site has a scrape profile describing which links are posts.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from apricot.services.candidates import CandidatePost, SourceSpec
from apricot.services.errors import ScrapeError
from apricot.services.http_client import RateLimitedClient, extract_host
from apricot.services.url_normalizer import compute_fingerprint, normalize_url

logger = logging.getLogger(__name__)

# How many ancestors above a post link are searched for its date
DATE_SEARCH_DEPTH = 5

HUMAN_DATE_FORMATS = [
    '%b %d, %Y',    # Jan 29, 2026
    '%B %d, %Y',    # January 29, 2026
    '%Y-%m-%d',     # 2026-01-29
]


@dataclass(frozen=True)
class ScrapeProfile:
    """DOM pattern for one site's listing page."""
    name: str
    base_url: str
    link_classes: tuple[str, ...]


LINKEDIN_PROFILE = ScrapeProfile(
    name='linkedin',
    base_url='https://www.linkedin.com',
    # li.post-list__item > a.grid-post__link, plus the featured post headline
    link_classes=('grid-post__link', 'featured-post__headline'),
)

SCRAPE_PROFILES = {
    'www.linkedin.com': LINKEDIN_PROFILE,
    'linkedin.com': LINKEDIN_PROFILE,
}


def get_profile(url: str) -> ScrapeProfile:
    """
    Look up the scrape profile for a listing URL.

    Raises:
        ScrapeError: If the host has no profile
    """
    host = extract_host(url).lower()
    profile = SCRAPE_PROFILES.get(host)
    if profile is None:
        raise ScrapeError(f"no scrape profile for host {host!r}")
    return profile


def scrape_source(
    source: SourceSpec,
    max_articles: int,
    client: RateLimitedClient,
    cancel_event: Optional[threading.Event] = None,
) -> list[CandidatePost]:
    """
    Fetch a listing page and extract up to max_articles posts.

    Args:
        source: Scrape source
        max_articles: Maximum number of posts to return
        client: Shared rate-limited client
        cancel_event: Optional run-wide cancel signal

    Returns:
        Candidate posts in document order
    """
    profile = get_profile(source.url)
    response = client.get(source.url, cancel_event)
    return parse_listing(response.text, source, profile, max_articles)


def parse_listing(
    body: str,
    source: SourceSpec,
    profile: ScrapeProfile,
    max_articles: int,
    now: Optional[datetime] = None,
) -> list[CandidatePost]:
    """
    Extract post links from listing HTML.

    Raises:
        ScrapeError: If the HTML cannot be parsed
    """
    now = now or datetime.now(timezone.utc)
    try:
        soup = BeautifulSoup(body, 'html.parser')
    except Exception as e:
        raise ScrapeError(f"parsing HTML from {source.url!r}: {e}") from e

    posts = []
    for link in soup.find_all('a', href=True):
        if len(posts) >= max_articles:
            break

        if not _has_class(link, profile.link_classes):
            continue

        title = ' '.join(link.get_text(' ').split())
        href = link['href'].strip()
        if not title or not href:
            continue

        url = normalize_url(urljoin(profile.base_url, href))
        posts.append(CandidatePost(
            title=title,
            url=url,
            source_id=source.id,
            source_name=source.name,
            content_hash=compute_fingerprint(url),
            published_at=find_nearby_date(link),
            fetched_at=now,
        ))

    logger.info(f"Scraped {len(posts)} posts from {source.url}")
    return posts


def _has_class(element, fragments) -> bool:
    classes = ' '.join(element.get('class') or [])
    return any(fragment in classes for fragment in fragments)


def find_nearby_date(element) -> Optional[datetime]:
    """Search the element's ancestors for a child whose class mentions 'date'."""
    parent = element.parent
    for _ in range(DATE_SEARCH_DEPTH):
        if parent is None:
            break
        for candidate in [parent, *parent.find_all(True)]:
            if not _has_class(candidate, ('date',)):
                continue
            parsed = parse_human_date(candidate.get_text(strip=True))
            if parsed:
                return parsed
        parent = parent.parent
    return None


def parse_human_date(text: str) -> Optional[datetime]:
    """Parse dates like 'Jan 29, 2026', 'February 5, 2026' or '2026-02-05' as UTC."""
    text = (text or '').strip()
    for fmt in HUMAN_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None
