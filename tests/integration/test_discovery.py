"""
Integration tests for the discovery enrichment pipeline.

Runs run_discovery against in-memory SQLite with fake per-source fetches, a
scripted oracle and a mocked article extractor, verifying:
- Preconditions are checked before any network I/O
- Partial fetch failures are reported, not fatal
- Rank order, truncation and the summary cache
- Degraded extraction/summarization and the audit trail
"""

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from apricot.models import DiscoverySession, FeedMode, Post
from apricot.services import store
from apricot.services.candidates import CandidatePost
from apricot.services.discovery import build_fetch_options, get_latest_discovery, run_discovery
from apricot.services.errors import (
    DiscoveryCancelled, ExtractionError, FetchError, OracleError, PreconditionError
)
from apricot.services.url_normalizer import compute_fingerprint
from tests.fixtures.sample_data import FakeOracle, add_sources, create_candidate

PUBLISHED = datetime(2026, 10, 5, 10, 0, tzinfo=timezone.utc)


def plan_fetch(plan):
    """Fetch function returning scripted posts (or raising) per source name."""
    def fetch_fn(source, options, client, cancel_event):
        outcome = plan[source.name]
        if isinstance(outcome, Exception):
            raise outcome
        return [create_candidate(source, slug, published_at=PUBLISHED) for slug in outcome]
    return fetch_fn


@pytest.fixture
def sources(db_session):
    """Three active sources and a topics preference."""
    created = add_sources(db_session, "Alpha Eng", "Beta Eng", "Gamma Eng")
    store.set_preference(db_session, "topics", "distributed systems, databases")
    return created


@pytest.fixture
def three_source_plan():
    """Alpha: 5 posts, Beta: 2 posts, Gamma: times out."""
    return plan_fetch({
        "Alpha Eng": [f"a{i}" for i in range(5)],
        "Beta Eng": ["b0", "b1"],
        "Gamma Eng": FetchError("fetching 'https://gamma-eng.example.com/feed': timed out"),
    })


@pytest.fixture
def extractor():
    with patch('apricot.services.discovery.extract_article', return_value="Full article text here") as mock:
        yield mock


def _run(db_session, settings, oracle, fetch_fn, **kwargs):
    return run_discovery(db_session, oracle, settings, client=MagicMock(), fetch_fn=fetch_fn, **kwargs)


class TestPreconditions:
    """Preconditions fail before any fetch is attempted."""

    def test_zero_active_sources(self, db_session, settings):
        store.set_preference(db_session, "topics", "databases")
        fetch_fn = MagicMock()
        client = MagicMock()

        with pytest.raises(PreconditionError) as exc:
            run_discovery(db_session, FakeOracle(), settings, client=client, fetch_fn=fetch_fn)

        assert exc.value.status_code == 400
        assert "No active sources" in str(exc.value)
        fetch_fn.assert_not_called()
        client.get.assert_not_called()

    def test_oracle_not_configured(self, db_session, settings, sources):
        fetch_fn = MagicMock()
        with pytest.raises(PreconditionError) as exc:
            _run(db_session, settings, None, fetch_fn)
        assert exc.value.status_code == 503
        fetch_fn.assert_not_called()

    def test_topics_missing(self, db_session, settings):
        add_sources(db_session, "Alpha Eng")
        with pytest.raises(PreconditionError, match="No preferences set"):
            _run(db_session, settings, FakeOracle(), MagicMock())

    def test_blank_topics(self, db_session, settings):
        add_sources(db_session, "Alpha Eng")
        store.set_preference(db_session, "topics", "   ")
        with pytest.raises(PreconditionError):
            _run(db_session, settings, FakeOracle(), MagicMock())


class TestDiscoveryRun:

    def test_partial_failure_reported(self, db_session, settings, sources, three_source_plan, extractor):
        """5 + 2 posts and one timed-out source: 7 considered, one failure entry."""
        oracle = FakeOracle()

        result = _run(db_session, settings, oracle, three_source_plan)

        _, entries, max_results = oracle.rank_calls[0]
        assert len(entries) == 7
        assert max_results == 10
        assert len(result.results) == 7
        assert result.failed_feeds == [
            {"source": "Gamma Eng", "error": "fetching 'https://gamma-eng.example.com/feed': timed out"}
        ]
        assert result.session_id is not None
        assert result.created_at.endswith("Z")

    def test_result_fields(self, db_session, settings, sources, three_source_plan, extractor):
        oracle = FakeOracle()
        result = _run(db_session, settings, oracle, three_source_plan)

        first = result.results[0]
        post = store.get_post(db_session, first["id"])
        assert first["title"] == post.title
        assert first["url"] == post.url
        assert first["source"] == post.source.name
        assert first["published_at"] == "2026-10-05T10:00:00Z"
        assert first["summary"] == f"Summary of {post.title}"
        assert first["reason"] == f"Reason {post.id}"
        assert first["reading_time_minutes"] == 1
        assert first["degraded"] == []

    def test_truncated_to_max_results_in_rank_order(self, db_session, settings, sources, three_source_plan, extractor):
        store.set_preference(db_session, "max_results", 5)
        oracle = FakeOracle()
        # Rank everything in reverse id order
        oracle.rank = _reverse_ranker(oracle)

        result = _run(db_session, settings, oracle, three_source_plan)

        ids = [r["id"] for r in result.results]
        assert len(ids) == 5
        assert ids == sorted(ids, reverse=True)

    def test_same_url_from_two_sources_persisted_once(self, db_session, settings, sources, extractor):
        def fetch_fn(source, options, client, cancel_event):
            url = "https://shared.example.com/post"
            return [CandidatePost(title="Shared", url=url, source_id=source.id, source_name=source.name,
                                  content_hash=compute_fingerprint(url), description="Cross-posted")]

        oracle = FakeOracle()
        result = _run(db_session, settings, oracle, fetch_fn)

        assert db_session.scalar(select(func.count()).select_from(Post)) == 1
        assert len(oracle.rank_calls[0][1]) == 1
        assert len(result.results) == 1

    def test_unknown_ranked_id_skipped(self, db_session, settings, sources, three_source_plan, extractor):
        oracle = FakeOracle(rank_ids=[])
        oracle.rank = _prepend_unknown_id(oracle)

        result = _run(db_session, settings, oracle, three_source_plan)

        assert [r["id"] for r in result.results] == [oracle.known_id]

    def test_full_text_extracted_and_persisted(self, db_session, settings, sources, three_source_plan, extractor):
        result = _run(db_session, settings, FakeOracle(), three_source_plan)

        assert extractor.call_count == 7
        post = store.get_post(db_session, result.results[0]["id"])
        assert post.full_content == "Full article text here"

    def test_summaries_cached_across_runs(self, db_session, settings, sources, three_source_plan, extractor):
        oracle = FakeOracle()
        first = _run(db_session, settings, oracle, three_source_plan)
        summarize_calls = len(oracle.summarize_calls)
        extract_calls = extractor.call_count

        second = _run(db_session, settings, oracle, three_source_plan)

        assert summarize_calls == 7
        assert len(oracle.summarize_calls) == summarize_calls
        assert extractor.call_count == extract_calls
        assert [r["summary"] for r in second.results] == [r["summary"] for r in first.results]

    def test_token_usage_recorded(self, db_session, settings, sources, three_source_plan, extractor):
        result = _run(db_session, settings, FakeOracle(), three_source_plan)

        record = db_session.get(DiscoverySession, result.session_id)
        assert record.input_tokens == 100 + 7 * 50
        assert record.output_tokens == 20 + 7 * 10
        assert record.model_used == "fake-model"
        assert record.posts_considered == 7
        assert record.posts_selected == [r["id"] for r in result.results]
        assert record.preferences_snapshot == "distributed systems, databases"


class TestDegradedEnrichment:

    def test_extraction_failure_is_not_fatal(self, db_session, settings, sources, three_source_plan):
        oracle = FakeOracle()
        with patch('apricot.services.discovery.extract_article', side_effect=ExtractionError("no readable content")):
            result = _run(db_session, settings, oracle, three_source_plan)

        assert len(result.results) == 7
        assert all(r["degraded"] == ["extraction"] for r in result.results)
        # Summarizer falls back to the description
        assert all(entry.full_content == "" for entry in oracle.summarize_calls)
        assert all(entry.description for entry in oracle.summarize_calls)

    def test_content_save_failure_still_summarizes_extracted_text(
        self, db_session, settings, sources, three_source_plan, extractor
    ):
        """A failed content write is not retried by the later summary commit."""
        oracle = FakeOracle()
        save_error = OperationalError("UPDATE posts", {}, Exception("database is locked"))
        with patch('apricot.services.store.update_post_content', side_effect=save_error):
            result = _run(db_session, settings, oracle, three_source_plan)

        assert len(result.results) == 7
        assert all(r["degraded"] == [] for r in result.results)
        assert all(entry.full_content == "Full article text here" for entry in oracle.summarize_calls)

        db_session.expire_all()
        stored = db_session.scalars(select(Post.full_content)).all()
        assert stored == [None] * 7
        assert store.get_summary(db_session, result.results[0]["id"]) is not None

    def test_summarizer_failure_uses_description_and_is_not_cached(
        self, db_session, settings, sources, three_source_plan, extractor
    ):
        oracle = FakeOracle(summarize_error=OracleError("overloaded"))

        result = _run(db_session, settings, oracle, three_source_plan)

        first = result.results[0]
        post = store.get_post(db_session, first["id"])
        assert first["summary"] == post.description
        assert first["degraded"] == ["summary"]
        assert store.get_summary(db_session, post.id) is None


class TestRunFailures:

    def test_no_candidates_skips_ranking_and_audits(self, db_session, settings, sources):
        plan = plan_fetch({"Alpha Eng": [], "Beta Eng": [], "Gamma Eng": FetchError("HTTP 503")})
        oracle = FakeOracle()

        result = _run(db_session, settings, oracle, plan)

        assert oracle.rank_calls == []
        assert result.results == []
        assert result.failed_feeds == [{"source": "Gamma Eng", "error": "HTTP 503"}]
        record = db_session.get(DiscoverySession, result.session_id)
        assert record.posts_considered == 0

    def test_ranking_failure_aborts_but_keeps_posts(self, db_session, settings, sources, three_source_plan):
        oracle = FakeOracle(rank_error=OracleError("anthropic rank: timeout"))

        with pytest.raises(OracleError):
            _run(db_session, settings, oracle, three_source_plan)

        assert db_session.scalar(select(func.count()).select_from(Post)) == 7
        assert db_session.scalar(select(func.count()).select_from(DiscoverySession)) == 0


class TestCancellation:

    def test_cancel_during_fetch_raises(self, db_session, settings, sources):
        cancel = threading.Event()

        def fetch_fn(source, options, client, cancel_event):
            cancel_event.set()
            return []

        oracle = FakeOracle()
        with pytest.raises(DiscoveryCancelled):
            _run(db_session, settings, oracle, fetch_fn, cancel_event=cancel)
        assert oracle.rank_calls == []

    def test_cancel_during_enrichment_returns_partial(self, db_session, settings, sources, three_source_plan, extractor):
        cancel = threading.Event()
        oracle = FakeOracle()
        oracle.on_summarize = lambda entry: cancel.set()

        result = _run(db_session, settings, oracle, three_source_plan, cancel_event=cancel)

        assert len(result.results) == 1
        record = db_session.get(DiscoverySession, result.session_id)
        assert len(record.results) == 1


class TestLatestDiscovery:

    def test_empty_when_never_run(self, db_session):
        assert get_latest_discovery(db_session).to_dict() == {"results": [], "failed_feeds": []}

    def test_replays_latest_run(self, db_session, settings, sources, three_source_plan, extractor):
        result = _run(db_session, settings, FakeOracle(), three_source_plan)

        latest = get_latest_discovery(db_session)

        assert latest.to_dict() == result.to_dict()


class TestFetchOptions:

    def test_defaults_from_settings(self, db_session, settings):
        options = build_fetch_options(db_session, settings)
        assert options.mode == FeedMode.RECENT_POSTS
        assert options.max_articles == settings.max_articles_per_feed
        assert options.lookback_days == settings.lookback_days

    def test_valid_preferences_used(self, db_session, settings):
        store.set_preference(db_session, "feed_mode", "time_range")
        store.set_preference(db_session, "max_articles_per_feed", 8)
        store.set_preference(db_session, "lookback_days", 14)

        options = build_fetch_options(db_session, settings)

        assert options.mode == FeedMode.TIME_RANGE
        assert options.max_articles == 8
        assert options.lookback_days == 14

    def test_out_of_range_preferences_ignored(self, db_session, settings):
        store.set_preference(db_session, "feed_mode", "everything")
        store.set_preference(db_session, "max_articles_per_feed", 50)
        store.set_preference(db_session, "lookback_days", 0)

        options = build_fetch_options(db_session, settings)

        assert options.mode == FeedMode.RECENT_POSTS
        assert options.max_articles == settings.max_articles_per_feed
        assert options.lookback_days == settings.lookback_days


def _reverse_ranker(oracle):
    original = oracle.rank

    def rank(preferences, entries, max_results):
        decisions = original(preferences, entries, max_results)
        return sorted(decisions, key=lambda d: d.post_id, reverse=True)
    return rank


def _prepend_unknown_id(oracle):
    def rank(preferences, entries, max_results):
        oracle.known_id = entries[0].id
        oracle.rank_ids = [99999, entries[0].id]
        return FakeOracle.rank(oracle, preferences, entries, max_results)
    return rank
