"""
Manual Post Service

Adds a single article to the post store from a user-supplied URL. The page is
fetched and run through readability for its title, site name, excerpt and
text; the post is filed under a manual source named after the site.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from apricot.models import Post
from apricot.services import store
from apricot.services.candidates import CandidatePost
from apricot.services.content_fetcher import extract_article_metadata
from apricot.services.errors import NotFoundError, PreconditionError
from apricot.services.http_client import RateLimitedClient
from apricot.services.url_normalizer import compute_fingerprint, normalize_url

logger = logging.getLogger(__name__)


def add_post_by_url(
    session: Session,
    url: str,
    source_name: Optional[str] = None,
    client: Optional[RateLimitedClient] = None,
    cancel_event: Optional[threading.Event] = None,
) -> tuple[Post, bool]:
    """
    Store the article at url as a post, or return the one already stored.

    Args:
        session: Database session
        url: Absolute http(s) article URL
        source_name: Display name for the source; defaults to the page's
            og:site_name, then the host name
        client: Shared rate-limited client (one is created if omitted)
        cancel_event: Optional cancel signal for the page fetch

    Returns:
        (post, created) where created is False for an already stored URL

    Raises:
        PreconditionError: If url is missing or not an http(s) URL
        ExtractionError: If the page cannot be fetched or parsed
        StorageError: If the post cannot be saved
    """
    url = (url or '').strip()
    if not url:
        raise PreconditionError("url is required")

    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        raise PreconditionError("url must be a valid HTTP or HTTPS URL")

    canonical = normalize_url(url)
    try:
        return store.get_post_by_url(session, canonical), False
    except NotFoundError:
        pass

    owns_client = client is None
    if owns_client:
        client = RateLimitedClient()
    try:
        metadata = extract_article_metadata(url, client, cancel_event)
    finally:
        if owns_client:
            client.close()

    name = (source_name or '').strip() or metadata.site_name or parsed.hostname
    source = store.get_or_create_manual_source(
        session, name, f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
    )

    candidate = CandidatePost(
        title=metadata.title or url,
        url=canonical,
        source_id=source.id,
        source_name=source.name,
        content_hash=compute_fingerprint(canonical),
        description=metadata.excerpt,
        published_at=metadata.published_at,
        fetched_at=datetime.now(timezone.utc),
        full_content=metadata.text_content,
    )
    ids = store.save_posts(session, [candidate])
    post = store.get_post(session, ids[canonical])

    logger.info(
        f"Added post {post.id} '{post.title}' from {source.name} "
        f"({metadata.reading_time_minutes} min read)"
    )
    return post, True
