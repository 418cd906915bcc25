"""
Discovery Service - Enrichment Pipeline

Runs one discovery batch for the user:

1. Check preconditions (oracle, topics, active sources)
2. Fetch all active sources concurrently
3. Deduplicate by canonical URL and upsert in one transaction
4. Rank candidates with the oracle
5. Extract full text and summarize each selected post (cached)
6. Write the audit record and return the results
"""

import json
import logging
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apricot.config import Settings
from apricot.models import FeedMode, Post
from apricot.services import store
from apricot.services.candidates import FetchOptions, SourceSpec
from apricot.services.content_fetcher import calculate_reading_time, extract_article
from apricot.services.errors import (
    DiscoveryCancelled, ExtractionError, NotFoundError, OracleError, PreconditionError
)
from apricot.services.http_client import RateLimitedClient
from apricot.services.oracle import Oracle, OracleEntry
from apricot.services.source_fetcher import fetch_all_sources, fetch_source
from apricot.services.url_normalizer import deduplicate_candidates

logger = logging.getLogger(__name__)

# Preference bounds; out-of-range values fall back to defaults
DEFAULT_MAX_RESULTS = 10
MAX_RESULTS_RANGE = (5, 20)
MAX_ARTICLES_RANGE = (5, 20)
LOOKBACK_DAYS_RANGE = (1, 30)


def _log_progress(msg: str, start_time: float = None):
    """Log with elapsed time, flush immediately."""
    elapsed = f"[{time.time() - start_time:.1f}s]" if start_time else ""
    full_msg = f"{elapsed} DISCOVERY: {msg}"
    logger.info(full_msg)
    print(full_msg, file=sys.stdout, flush=True)


@dataclass
class ExtractionOutcome:
    """Full text available for a selected post."""
    text: str = ''
    degraded: bool = False


@dataclass
class SummaryOutcome:
    """Summary shown for a selected post."""
    text: str = ''
    cached: bool = False
    degraded: bool = False


@dataclass
class DiscoveryResult:
    """Response of a discovery run, or of the latest-discovery replay."""
    results: list[dict] = field(default_factory=list)
    failed_feeds: list[dict] = field(default_factory=list)
    session_id: Optional[int] = None
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {
            'results': self.results,
            'failed_feeds': self.failed_feeds,
        }
        if self.session_id is not None:
            payload['session_id'] = self.session_id
        if self.created_at is not None:
            payload['created_at'] = self.created_at
        return payload


@dataclass
class _Usage:
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    def add(self, usage: Optional[tuple[int, int]]):
        if usage is None:
            return
        self.input_tokens = (self.input_tokens or 0) + usage[0]
        self.output_tokens = (self.output_tokens or 0) + usage[1]


# ============================================================================
# Preferences
# ============================================================================

def _bounded_int(value, bounds: tuple[int, int], default: int) -> int:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    if low <= value <= high:
        return value
    return default


def get_topics(session: Session) -> str:
    """
    User interests as free text.

    Raises:
        PreconditionError: If no topics are set
    """
    topics = store.get_preference(session, 'topics')
    if isinstance(topics, list):
        topics = ', '.join(str(topic).strip() for topic in topics if str(topic).strip())
    if not isinstance(topics, str) or not topics.strip():
        raise PreconditionError("No preferences set. Please set your interests first.")
    return topics.strip()


def get_max_results(session: Session) -> int:
    return _bounded_int(store.get_preference(session, 'max_results'), MAX_RESULTS_RANGE, DEFAULT_MAX_RESULTS)


def build_fetch_options(session: Session, settings: Settings) -> FetchOptions:
    """Read feed preferences, falling back to configured defaults."""
    mode = FeedMode.RECENT_POSTS
    feed_mode = store.get_preference(session, 'feed_mode')
    if feed_mode in {m.value for m in FeedMode}:
        mode = FeedMode(feed_mode)

    return FetchOptions(
        mode=mode,
        max_articles=_bounded_int(
            store.get_preference(session, 'max_articles_per_feed'),
            MAX_ARTICLES_RANGE,
            settings.max_articles_per_feed,
        ),
        lookback_days=_bounded_int(
            store.get_preference(session, 'lookback_days'),
            LOOKBACK_DAYS_RANGE,
            settings.lookback_days,
        ),
    )


# ============================================================================
# Pipeline
# ============================================================================

def run_discovery(
    session: Session,
    oracle: Optional[Oracle],
    settings: Settings,
    client: Optional[RateLimitedClient] = None,
    cancel_event: Optional[threading.Event] = None,
    fetch_fn=fetch_source,
) -> DiscoveryResult:
    """
    Run one discovery batch.

    Args:
        session: Database session used for the whole run
        oracle: Ranking and summarization oracle (None when unconfigured)
        settings: Runtime settings
        client: Shared rate-limited client (one is created and closed if omitted)
        cancel_event: Optional run-wide cancel signal
        fetch_fn: Per-source fetch function

    Returns:
        DiscoveryResult with ordered results and the failure report

    Raises:
        PreconditionError: Oracle unconfigured, no topics, or no active sources
        StorageError: If the bulk upsert fails
        OracleError: If ranking fails
        DiscoveryCancelled: If cancelled before ranking
    """
    job_start = time.time()

    # Step 1: Preconditions, no network I/O before these pass
    if oracle is None:
        raise PreconditionError("AI provider not configured. Set AI_API_KEY", status_code=503)
    topics = get_topics(session)
    max_results = get_max_results(session)
    options = build_fetch_options(session, settings)
    sources = [SourceSpec.from_source(s) for s in store.get_active_sources(session)]
    if not sources:
        raise PreconditionError("No active sources configured")

    logger.info(json.dumps({
        "event": "job_start",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sources": len(sources),
        "mode": options.mode.value,
        "max_results": max_results,
    }))

    owns_client = client is None
    if owns_client:
        client = RateLimitedClient()

    try:
        result = _run(session, oracle, topics, max_results, options, sources,
                      client, cancel_event, fetch_fn, job_start)
    finally:
        if owns_client:
            client.close()

    logger.info(json.dumps({
        "event": "job_complete",
        "session_id": result.session_id,
        "results": len(result.results),
        "failed_feeds": len(result.failed_feeds),
        "duration_seconds": round(time.time() - job_start, 1),
    }))
    return result


def _run(session, oracle, topics, max_results, options, sources, client, cancel_event, fetch_fn, job_start):
    # Step 2: Fetch
    _log_progress(f"Step 2: Fetching {len(sources)} sources...", job_start)
    fetched = fetch_all_sources(sources, options, client=client, cancel_event=cancel_event, fetch_fn=fetch_fn)
    failed_feeds = [failure.to_dict() for failure in fetched.failed]
    _check_cancelled(cancel_event, "during fetch")
    _log_progress(f"Step 2: Fetch complete - {len(fetched.posts)} posts, {len(failed_feeds)} failed", job_start)

    # Step 3: Nothing to rank
    if not fetched.posts:
        _log_progress("Step 3: No posts fetched - skipping ranking", job_start)
        return _write_audit(session, topics, 0, oracle.model, [], failed_feeds, _Usage())

    # Step 4: Deduplicate and persist
    unique, duplicates = deduplicate_candidates(fetched.posts)
    _log_progress(f"Step 4: Saving {len(unique)} posts ({duplicates} duplicates removed)...", job_start)
    ids = store.save_posts(session, unique)
    _check_cancelled(cancel_event, "before ranking")

    entries = []
    for candidate in unique:
        post_id = ids.get(candidate.url)
        if post_id is None:
            logger.warning(f"Saved post not found by URL: {candidate.url}")
            continue
        entries.append(OracleEntry(
            id=post_id,
            title=candidate.title,
            source=candidate.source_name,
            published_at=candidate.published_at.strftime('%Y-%m-%d') if candidate.published_at else '',
            description=candidate.description,
            full_content=candidate.full_content,
        ))

    # Step 5: Rank
    usage = _Usage()
    _log_progress(f"Step 5: Ranking {len(entries)} posts...", job_start)
    decisions = oracle.rank(topics, entries, max_results)
    usage.add(oracle.last_usage)
    decisions = decisions[:max_results]
    _log_progress(f"Step 5: Ranking complete - {len(decisions)} selected", job_start)

    # Steps 6-8: Enrich in oracle order
    results = []
    selected_ids = []
    for decision in decisions:
        if cancel_event is not None and cancel_event.is_set():
            _log_progress(f"Cancel requested - stopping enrichment after {len(results)} posts", job_start)
            break

        try:
            post = store.get_post(session, decision.post_id)
        except NotFoundError:
            logger.warning(f"Ranked post {decision.post_id} not found, skipping")
            continue

        try:
            extraction = ensure_full_content(session, post, client, cancel_event)
        except DiscoveryCancelled:
            _log_progress(f"Cancelled while extracting {post.url} - stopping enrichment", job_start)
            break

        summary = summarize_post(session, post, oracle, extraction.text)
        if not summary.cached and not summary.degraded:
            usage.add(oracle.last_usage)

        results.append(build_result(post, decision.reason, summary, extraction))
        selected_ids.append(post.id)

    # Steps 9-10: Audit and respond
    return _write_audit(session, topics, len(entries), oracle.model, results, failed_feeds, usage, selected_ids)


def _check_cancelled(cancel_event: Optional[threading.Event], stage: str):
    if cancel_event is not None and cancel_event.is_set():
        _log_progress(f"Cancelled {stage}")
        raise DiscoveryCancelled(f"discovery cancelled {stage}")


def ensure_full_content(
    session: Session,
    post: Post,
    client: RateLimitedClient,
    cancel_event: Optional[threading.Event] = None,
) -> ExtractionOutcome:
    """
    Extract and persist full text for a post that has none.

    Extraction failures are logged and leave the post without full text.

    Raises:
        DiscoveryCancelled: If the cancel signal fires while waiting to fetch
    """
    if post.full_content:
        return ExtractionOutcome(text=post.full_content)

    try:
        text = extract_article(post.url, client, cancel_event)
    except ExtractionError as e:
        logger.warning(f"Failed to extract article {post.url}: {e}")
        return ExtractionOutcome(degraded=True)

    try:
        store.update_post_content(session, post, text)
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning(f"Failed to save content for post {post.id}: {e}")
    return ExtractionOutcome(text=text)


def summarize_post(session: Session, post: Post, oracle: Oracle, full_content: str = '') -> SummaryOutcome:
    """
    Return the cached summary, or summarize and cache.

    full_content is the text from ensure_full_content, which may not have
    been persisted.

    A failed summarization falls back to the description and is not cached.
    """
    cached = store.get_summary(session, post.id)
    if cached is not None:
        return SummaryOutcome(text=cached.summary, cached=True)

    entry = OracleEntry(
        id=post.id,
        title=post.title,
        source=post.source.name,
        published_at=post.published_at.strftime('%Y-%m-%d') if post.published_at else '',
        description=post.description or '',
        full_content=full_content or post.full_content or '',
    )
    try:
        text = oracle.summarize(entry)
    except OracleError as e:
        logger.warning(f"Failed to summarize post {post.id}: {e}")
        return SummaryOutcome(text=post.description or '', degraded=True)

    try:
        store.save_summary(session, post.id, text, oracle.model)
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning(f"Failed to cache summary for post {post.id}: {e}")
    return SummaryOutcome(text=text)


def build_result(post: Post, reason: str, summary: SummaryOutcome, extraction: ExtractionOutcome) -> dict:
    """Result entry as returned to clients and stored in the audit record."""
    degraded = []
    if extraction.degraded:
        degraded.append('extraction')
    if summary.degraded:
        degraded.append('summary')

    return {
        'id': post.id,
        'title': post.title,
        'url': post.url,
        'source': post.source.name,
        'published_at': store.isoformat_utc(post.published_at),
        'summary': summary.text,
        'reason': reason,
        'reading_time_minutes': calculate_reading_time(extraction.text or post.description or ''),
        'degraded': degraded,
    }


def _write_audit(session, topics, considered, model, results, failed_feeds, usage, selected_ids=()):
    """Write the audit record; a failed write is logged and the run still succeeds."""
    try:
        record = store.create_discovery_session(
            session,
            preferences_snapshot=topics,
            posts_considered=considered,
            posts_selected=list(selected_ids),
            model_used=model,
            results=results,
            failed_feeds=failed_feeds,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Failed to write discovery session: {e}")
        return DiscoveryResult(
            results=results,
            failed_feeds=failed_feeds,
            created_at=store.isoformat_utc(datetime.now(timezone.utc)),
        )

    _log_progress(f"Audit record {record.id} written: {len(results)} results")
    return DiscoveryResult(
        results=results,
        failed_feeds=failed_feeds,
        session_id=record.id,
        created_at=store.isoformat_utc(record.created_at),
    )


def get_latest_discovery(session: Session) -> DiscoveryResult:
    """
    Replay the most recent audit record without fetching or ranking.

    Returns an empty result when no discovery has run yet.
    """
    try:
        record = store.get_latest_discovery_session(session)
    except NotFoundError:
        return DiscoveryResult()

    return DiscoveryResult(
        results=list(record.results or []),
        failed_feeds=list(record.failed_feeds or []),
        session_id=record.id,
        created_at=store.isoformat_utc(record.created_at),
    )
