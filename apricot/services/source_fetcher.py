"""
Concurrent Fetch Orchestrator

Fetches every active source on a bounded thread pool. A failing source becomes
a failure report entry and never fails the batch.
"""

import logging
import sys
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Optional

from apricot.models import FetchStrategy
from apricot.services.candidates import CandidatePost, FailedFeed, FetchOptions, FetchResult, SourceSpec
from apricot.services.errors import SourceFetchError
from apricot.services.http_client import RateLimitedClient
from apricot.services.rss_fetcher import fetch_feed
from apricot.services.scraper import scrape_source

logger = logging.getLogger(__name__)

# Configuration
MAX_CONCURRENT_FETCHES = 10
CANCEL_POLL_INTERVAL = 0.1  # seconds between cancel checks while joining

FetchFn = Callable[[SourceSpec, FetchOptions, RateLimitedClient, Optional[threading.Event]], list[CandidatePost]]


def _log_fetch(msg: str):
    """Log fetch progress with immediate flush."""
    full_msg = f"FETCH: {msg}"
    logger.info(full_msg)
    print(full_msg, file=sys.stdout, flush=True)


def _fetch_feed_source(source, options, client, cancel_event):
    return fetch_feed(source, options, client, cancel_event)


def _fetch_scrape_source(source, options, client, cancel_event):
    return scrape_source(source, options.max_articles, client, cancel_event)


def _fetch_manual_source(source, options, client, cancel_event):
    # Posts arrive through add_post_by_url; there is no listing to fetch
    return []


# Every FetchStrategy member needs an entry here
STRATEGY_HANDLERS = {
    FetchStrategy.FEED: _fetch_feed_source,
    FetchStrategy.SCRAPE: _fetch_scrape_source,
    FetchStrategy.MANUAL: _fetch_manual_source,
}


def fetch_source(
    source: SourceSpec,
    options: FetchOptions,
    client: RateLimitedClient,
    cancel_event: Optional[threading.Event] = None,
) -> list[CandidatePost]:
    """
    Fetch one source with the handler for its declared strategy.

    Raises:
        SourceFetchError: For an unsupported strategy, or any fetch/parse failure
    """
    handler = STRATEGY_HANDLERS.get(source.strategy)
    if handler is None:
        raise SourceFetchError(f"unsupported fetch strategy {source.strategy!r} for {source.name!r}")
    return handler(source, options, client, cancel_event)


def fetch_all_sources(
    sources: list[SourceSpec],
    options: FetchOptions,
    client: Optional[RateLimitedClient] = None,
    max_workers: int = MAX_CONCURRENT_FETCHES,
    cancel_event: Optional[threading.Event] = None,
    fetch_fn: FetchFn = fetch_source,
) -> FetchResult:
    """
    Fetch all sources concurrently.

    At most max_workers fetches are in flight at once. Every dispatched fetch
    is joined before returning, including after cancellation; sources that had
    not started when the cancel signal fired are reported as cancelled.

    Args:
        sources: Sources to fetch
        options: Selection policy shared by all sources
        client: Shared rate-limited client (one is created and closed if omitted)
        max_workers: Concurrency cap
        cancel_event: Optional run-wide cancel signal
        fetch_fn: Per-source fetch function

    Returns:
        FetchResult with merged posts (order undefined) and failures
    """
    result = FetchResult()
    if not sources:
        return result

    owns_client = client is None
    if owns_client:
        client = RateLimitedClient()

    workers = max(1, min(max_workers, len(sources)))
    _log_fetch(f"Fetching {len(sources)} sources with {workers} workers (mode={options.mode.value})")
    start = time.time()

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='apricot-fetch')
    try:
        futures = {
            executor.submit(fetch_fn, source, options, client, cancel_event): source
            for source in sources
        }
        poll = CANCEL_POLL_INTERVAL if cancel_event is not None else None
        pending = set(futures)

        while pending:
            done, pending = wait(pending, timeout=poll, return_when=FIRST_COMPLETED)
            for future in done:
                _collect(future, futures[future], result)

            if pending and cancel_event is not None and cancel_event.is_set():
                _log_fetch(f"Cancel requested, {len(pending)} sources outstanding")
                for future in pending:
                    future.cancel()
                done, pending = wait(pending)
                for future in done:
                    _collect(future, futures[future], result)
    finally:
        executor.shutdown(wait=True)
        if owns_client:
            client.close()

    _log_fetch(
        f"Fetch complete in {time.time() - start:.1f}s: {len(result.posts)} posts, "
        f"{len(result.failed)} failed sources"
    )
    return result


def _collect(future: Future, source: SourceSpec, result: FetchResult):
    """Fold one finished fetch into the result."""
    if future.cancelled():
        result.failed.append(FailedFeed(source=source.name, error='cancelled before fetch started'))
        return

    error = future.exception()
    if error is not None:
        logger.warning(f"Failed to fetch source '{source.name}' ({source.url}): {error}")
        result.failed.append(FailedFeed(source=source.name, error=str(error)))
        return

    posts = future.result()
    result.posts.extend(posts)
    logger.info(f"Source '{source.name}': {len(posts)} posts")
