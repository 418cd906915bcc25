"""
Persistence helpers for the discovery pipeline

Idempotent post upserts keyed by canonical URL, the summary cache, user
preferences, sources and the audit trail. Every function takes the caller's
session; write helpers commit before returning.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apricot.models import (
    DiscoverySession, FetchStrategy, Post, PostSummary, Preference, Source
)
from apricot.services.candidates import CandidatePost
from apricot.services.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

DEFAULT_SOURCES = [
    {'name': 'Netflix Tech Blog', 'company': 'Netflix', 'url': 'https://netflixtechblog.com/feed', 'site_url': 'https://netflixtechblog.com'},
    {'name': 'Engineering at Meta', 'company': 'Meta', 'url': 'https://engineering.fb.com/feed/', 'site_url': 'https://engineering.fb.com'},
    {'name': 'Uber Engineering', 'company': 'Uber', 'url': 'https://www.uber.com/blog/engineering/rss/', 'site_url': 'https://www.uber.com/blog/engineering'},
    {'name': 'AWS Architecture Blog', 'company': 'AWS', 'url': 'https://aws.amazon.com/blogs/architecture/feed/', 'site_url': 'https://aws.amazon.com/blogs/architecture'},
    {'name': 'Google Research Blog', 'company': 'Google', 'url': 'https://blog.research.google/feeds/posts/default?alt=rss', 'site_url': 'https://blog.research.google'},
    {'name': 'Google Cloud Blog', 'company': 'Google', 'url': 'https://cloudblog.withgoogle.com/rss/', 'site_url': 'https://cloud.google.com/blog'},
    {'name': 'Spotify Engineering', 'company': 'Spotify', 'url': 'https://engineering.atspotify.com/feed/', 'site_url': 'https://engineering.atspotify.com'},
    {'name': 'Figma Blog', 'company': 'Figma', 'url': 'https://www.figma.com/blog/feed/atom.xml', 'site_url': 'https://www.figma.com/blog'},
    {'name': 'Datadog Engineering', 'company': 'Datadog', 'url': 'https://www.datadoghq.com/blog/engineering/index.xml', 'site_url': 'https://www.datadoghq.com/blog/engineering'},
    {'name': 'Stripe Engineering', 'company': 'Stripe', 'url': 'https://stripe.com/blog/feed.rss', 'site_url': 'https://stripe.com/blog'},
    {'name': 'Airbnb Tech Blog', 'company': 'Airbnb', 'url': 'https://medium.com/feed/airbnb-engineering', 'site_url': 'https://medium.com/airbnb-engineering'},
    {'name': 'Grab Engineering', 'company': 'Grab', 'url': 'https://engineering.grab.com/feed.xml', 'site_url': 'https://engineering.grab.com'},
    {'name': 'Cloudflare Blog', 'company': 'Cloudflare', 'url': 'https://blog.cloudflare.com/rss/', 'site_url': 'https://blog.cloudflare.com'},
    {'name': 'Slack Engineering', 'company': 'Slack', 'url': 'https://slack.engineering/feed/', 'site_url': 'https://slack.engineering'},
    {'name': 'GitHub Engineering', 'company': 'GitHub', 'url': 'https://github.blog/engineering/feed/', 'site_url': 'https://github.blog/engineering'},
    {'name': 'Vercel Blog', 'company': 'Vercel', 'url': 'https://vercel.com/atom', 'site_url': 'https://vercel.com/blog'},
    {'name': 'Dropbox Tech Blog', 'company': 'Dropbox', 'url': 'https://dropbox.tech/feed', 'site_url': 'https://dropbox.tech'},
    {'name': 'Instacart Tech', 'company': 'Instacart', 'url': 'https://tech.instacart.com/feed', 'site_url': 'https://tech.instacart.com'},
    {'name': 'Pinterest Engineering', 'company': 'Pinterest', 'url': 'https://medium.com/feed/pinterest-engineering', 'site_url': 'https://medium.com/pinterest-engineering'},
    {'name': 'Lyft Engineering', 'company': 'Lyft', 'url': 'https://eng.lyft.com/feed', 'site_url': 'https://eng.lyft.com'},
    {'name': 'LinkedIn Engineering', 'company': 'LinkedIn', 'url': 'https://www.linkedin.com/blog/engineering',
     'site_url': 'https://www.linkedin.com/blog/engineering', 'strategy': FetchStrategy.SCRAPE, 'is_active': False},
]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """Format a timestamp as 2006-01-02T15:04:05Z."""
    value = as_utc(value)
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def _insert(session: Session, model):
    """Dialect-specific INSERT that supports ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == 'postgresql':
        return pg_insert(model)
    if dialect == 'sqlite':
        return sqlite_insert(model)
    raise StorageError(f"upsert not supported for dialect {dialect!r}")


# ============================================================================
# Sources
# ============================================================================

def get_active_sources(session: Session) -> list[Source]:
    """Active sources ordered by name."""
    return list(session.scalars(
        select(Source).where(Source.is_active.is_(True)).order_by(Source.name)
    ))


def get_all_sources(session: Session) -> list[Source]:
    """All sources ordered by name."""
    return list(session.scalars(select(Source).order_by(Source.name)))


def set_source_active(session: Session, source_id: int, active: bool) -> Source:
    """
    Enable or disable a source.

    Raises:
        NotFoundError: If no source has this id
    """
    source = session.get(Source, source_id)
    if source is None:
        raise NotFoundError(f"source {source_id} not found")
    source.is_active = active
    session.commit()
    logger.info(f"Source '{source.name}' is_active={active}")
    return source


def get_or_create_manual_source(session: Session, name: str, site_url: str) -> Source:
    """
    Source that owns posts added by URL.

    An existing source with the same name or site is reused. New ones are
    created inactive since there is nothing for a discovery run to fetch.
    """
    source = session.scalar(select(Source).where(Source.name == name))
    if source is None:
        source = session.scalar(
            select(Source).where(or_(Source.url == site_url, Source.site_url == site_url))
        )
    if source is not None:
        return source

    source = Source(
        name=name[:200],
        company=name[:200],
        url=site_url,
        site_url=site_url,
        strategy=FetchStrategy.MANUAL,
        is_active=False,
    )
    session.add(source)
    session.commit()
    logger.info(f"Created manual source '{source.name}' for {site_url}")
    return source


def seed_default_sources(session: Session) -> int:
    """
    Insert DEFAULT_SOURCES when the sources table is empty.

    Idempotent: a table that already holds fetchable sources is left alone.

    Returns:
        Number of sources created
    """
    count = session.scalar(
        select(func.count()).select_from(Source).where(Source.strategy != FetchStrategy.MANUAL)
    )
    if count:
        return 0

    for data in DEFAULT_SOURCES:
        session.add(Source(
            name=data['name'],
            company=data['company'],
            url=data['url'],
            site_url=data['site_url'],
            strategy=data.get('strategy', FetchStrategy.FEED),
            is_active=data.get('is_active', True),
        ))
    session.commit()
    logger.info(f"Seeded {len(DEFAULT_SOURCES)} default sources")
    return len(DEFAULT_SOURCES)


# ============================================================================
# Preferences
# ============================================================================

def get_preference(session: Session, key: str, default: Any = None) -> Any:
    """
    Read a JSON-encoded preference.

    Returns:
        Decoded value, or default when missing or not valid JSON
    """
    row = session.scalar(select(Preference).where(Preference.key == key))
    if row is None:
        return default
    try:
        return json.loads(row.value)
    except json.JSONDecodeError as e:
        logger.warning(f"Preference '{key}' holds invalid JSON, using default: {e}")
        return default


def set_preference(session: Session, key: str, value: Any):
    """Store a preference as JSON, replacing any previous value."""
    encoded = json.dumps(value)
    stmt = _insert(session, Preference).values(
        key=key, value=encoded, updated_at=datetime.now(timezone.utc)
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=['key'],
        set_={'value': stmt.excluded.value, 'updated_at': stmt.excluded.updated_at},
    )
    session.execute(stmt)
    session.commit()
    session.expire_all()


def get_all_preferences(session: Session) -> dict:
    """Every preference decoded, keyed by name."""
    prefs = {}
    for row in session.scalars(select(Preference)):
        try:
            prefs[row.key] = json.loads(row.value)
        except json.JSONDecodeError:
            logger.warning(f"Skipping preference '{row.key}' with invalid JSON")
    return prefs


# ============================================================================
# Posts
# ============================================================================

def _post_upsert(session: Session, candidate: CandidatePost):
    stmt = _insert(session, Post).values(
        source_id=candidate.source_id,
        title=candidate.title[:500],
        url=candidate.url,
        description=candidate.description or None,
        full_content=candidate.full_content or None,
        published_at=candidate.published_at,
        fetched_at=candidate.fetched_at,
        content_hash=candidate.content_hash,
    )
    excluded = stmt.excluded
    return stmt.on_conflict_do_update(
        index_elements=['url'],
        set_={
            # Empty values never overwrite what is already stored
            'description': func.coalesce(func.nullif(excluded.description, ''), Post.description),
            'full_content': func.coalesce(func.nullif(excluded.full_content, ''), Post.full_content),
            'content_hash': excluded.content_hash,
            'fetched_at': excluded.fetched_at,
        },
    )


def save_posts(session: Session, candidates: list[CandidatePost]) -> dict[str, int]:
    """
    Upsert candidates in a single transaction.

    Args:
        session: Database session
        candidates: Candidates with canonical URLs

    Returns:
        Mapping of canonical URL to persisted post id

    Raises:
        StorageError: If any upsert fails (the whole batch is rolled back)
    """
    if not candidates:
        return {}

    try:
        for candidate in candidates:
            session.execute(_post_upsert(session, candidate))
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Error saving posts: {e}")
        raise StorageError(f"saving posts: {e}") from e

    # Core upserts bypass the identity map
    session.expire_all()

    urls = {candidate.url for candidate in candidates}
    rows = session.execute(select(Post.url, Post.id).where(Post.url.in_(urls)))
    ids = {url: post_id for url, post_id in rows}
    logger.info(f"Saved {len(candidates)} posts ({len(ids)} resolved)")
    return ids


def get_post(session: Session, post_id: int) -> Post:
    """
    Raises:
        NotFoundError: If no post has this id
    """
    post = session.get(Post, post_id)
    if post is None:
        raise NotFoundError(f"post {post_id} not found")
    return post


def get_post_by_url(session: Session, url: str) -> Post:
    """
    Raises:
        NotFoundError: If no post has this canonical URL
    """
    post = session.scalar(select(Post).where(Post.url == url))
    if post is None:
        raise NotFoundError(f"post {url!r} not found")
    return post


def update_post_content(session: Session, post: Post, full_content: str):
    """Persist newly extracted full text for a post."""
    if not full_content:
        return
    post.full_content = full_content
    post.fetched_at = datetime.now(timezone.utc)
    session.commit()


# ============================================================================
# Summaries
# ============================================================================

def get_summary(session: Session, post_id: int) -> Optional[PostSummary]:
    """Cached summary for a post, if any."""
    return session.scalar(select(PostSummary).where(PostSummary.post_id == post_id))


def save_summary(session: Session, post_id: int, summary: str, model_used: str):
    """Insert or fully replace the cached summary for a post."""
    stmt = _insert(session, PostSummary).values(
        post_id=post_id,
        summary=summary,
        model_used=model_used,
        created_at=datetime.now(timezone.utc),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=['post_id'],
        set_={
            'summary': stmt.excluded.summary,
            'model_used': stmt.excluded.model_used,
            'created_at': stmt.excluded.created_at,
        },
    )
    session.execute(stmt)
    session.commit()
    session.expire_all()


# ============================================================================
# Discovery sessions (audit trail)
# ============================================================================

def create_discovery_session(
    session: Session,
    preferences_snapshot: str,
    posts_considered: int,
    posts_selected: list[int],
    model_used: str,
    results: list[dict],
    failed_feeds: list[dict],
    input_tokens: Optional[int] = None,
    output_tokens: Optional[int] = None,
) -> DiscoverySession:
    """Write one audit record; records are never updated afterwards."""
    record = DiscoverySession(
        preferences_snapshot=preferences_snapshot,
        posts_considered=posts_considered,
        posts_selected=list(posts_selected),
        model_used=model_used,
        results=results,
        failed_feeds=failed_feeds,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        created_at=datetime.now(timezone.utc),
    )
    session.add(record)
    session.commit()
    return record


def get_latest_discovery_session(session: Session) -> DiscoverySession:
    """
    Raises:
        NotFoundError: If no discovery has been recorded yet
    """
    record = session.scalar(
        select(DiscoverySession)
        .order_by(DiscoverySession.created_at.desc(), DiscoverySession.id.desc())
        .limit(1)
    )
    if record is None:
        raise NotFoundError("no discovery sessions recorded")
    return record


def get_recent_discovery_sessions(session: Session, limit: int = 10) -> list[DiscoverySession]:
    """Most recent audit records first."""
    return list(session.scalars(
        select(DiscoverySession)
        .order_by(DiscoverySession.created_at.desc(), DiscoverySession.id.desc())
        .limit(limit)
    ))
