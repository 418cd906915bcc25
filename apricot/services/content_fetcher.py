"""
Content Fetcher Service

Fetches a single article page and extracts its readable text and metadata
with readability-lxml, for ranking-selected posts that have no full text yet.
"""

import logging
import math
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from bs4 import BeautifulSoup
from readability import Document

from apricot.services.errors import ExtractionError, FetchError
from apricot.services.http_client import RateLimitedClient

logger = logging.getLogger(__name__)

# Upper bound on extracted text passed on to the summarizer
MAX_WORDS = 5000

# Average reading speed for technical content
WPM_TECHNICAL = 238

# Whitespace and punctuation both end a word when estimating reading time
WORD_SEPARATORS = re.compile(r"[\s.,;:!?\"'()\[\]{}—–-]+")


@dataclass
class ArticleMetadata:
    """Readable content and metadata of one article page."""
    title: str = ''
    site_name: str = ''
    excerpt: str = ''
    text_content: str = ''
    published_at: Optional[datetime] = None

    @property
    def reading_time_minutes(self) -> int:
        return calculate_reading_time(self.text_content)


def extract_article(
    url: str,
    client: RateLimitedClient,
    cancel_event: Optional[threading.Event] = None,
) -> str:
    """
    Fetch an article and return its main text, truncated to MAX_WORDS words.

    Raises:
        ExtractionError: If the page cannot be fetched or has no readable text
    """
    metadata = extract_article_metadata(url, client, cancel_event)
    if not metadata.text_content:
        raise ExtractionError(f"no readable content at {url!r}")
    return metadata.text_content


def extract_article_metadata(
    url: str,
    client: RateLimitedClient,
    cancel_event: Optional[threading.Event] = None,
) -> ArticleMetadata:
    """
    Fetch an article page and extract title, site name, excerpt and text.

    Args:
        url: The article URL to fetch
        client: Shared rate-limited client
        cancel_event: Optional run-wide cancel signal

    Returns:
        ArticleMetadata with text truncated to MAX_WORDS words

    Raises:
        ExtractionError: On fetch or parse failure
    """
    try:
        response = client.get(url, cancel_event)
    except FetchError as e:
        raise ExtractionError(f"readability extraction: {e}") from e

    metadata = parse_article(response.text, url)
    logger.info(f"Extracted {len(metadata.text_content)} chars from {url}")
    return metadata


def parse_article(html: str, url: str) -> ArticleMetadata:
    """
    Run readability over an HTML document.

    Raises:
        ExtractionError: If the document cannot be parsed
    """
    try:
        doc = Document(html, url=url)
        summary_html = doc.summary(html_partial=True)
        title = doc.short_title() or doc.title()
        page = BeautifulSoup(html, 'html.parser')
    except Exception as e:
        raise ExtractionError(f"readability extraction for {url!r}: {e}") from e

    text = html_to_text(summary_html)

    return ArticleMetadata(
        title=(title or '').strip(),
        site_name=_meta_content(page, 'og:site_name'),
        excerpt=_meta_content(page, 'og:description') or _meta_content(page, 'description'),
        text_content=truncate_words(text, MAX_WORDS),
        published_at=_parse_iso_datetime(_meta_content(page, 'article:published_time')),
    )


def html_to_text(html: str) -> str:
    """Extract paragraph-separated text from an HTML fragment."""
    soup = BeautifulSoup(html or '', 'html.parser')

    # Remove unwanted elements
    for tag in soup(['script', 'style', 'nav', 'header', 'footer', 'aside', 'form', 'iframe']):
        tag.decompose()

    lines = [line.strip() for line in soup.get_text(separator='\n').splitlines()]
    return '\n'.join(line for line in lines if line)


def truncate_words(text: str, max_words: int) -> str:
    """Return the first max_words whitespace-delimited words of text."""
    words = text.split()
    if len(words) <= max_words:
        return text
    return ' '.join(words[:max_words])


def calculate_reading_time(text: str) -> int:
    """
    Estimate reading time in minutes at WPM_TECHNICAL.

    Returns 0 for empty text and at least 1 otherwise.
    """
    words = sum(1 for word in WORD_SEPARATORS.split(text or '') if word)
    if words == 0:
        return 0
    return max(1, math.ceil(words / WPM_TECHNICAL))


def _meta_content(page: BeautifulSoup, name: str) -> str:
    tag = page.find('meta', attrs={'property': name}) or page.find('meta', attrs={'name': name})
    if tag and tag.get('content'):
        return tag['content'].strip()
    return ''


def _parse_iso_datetime(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
