"""
Integration tests for the Flask JSON API.

Uses the Flask test client with in-memory SQLite; discovery runs are mocked
where they would otherwise reach the network.
"""

from unittest.mock import patch

import pytest
from sqlalchemy import select

from apricot import create_app
from apricot import routes
from apricot.models import Post
from apricot.services import store
from apricot.services.discovery import DiscoveryResult
from apricot.services.errors import ExtractionError, OracleError, PreconditionError
from tests.fixtures.sample_data import FakeOracle, add_sources, create_candidate


@pytest.fixture
def app(db_session, settings):
    return create_app({'TESTING': True, 'SETTINGS': settings, 'ORACLE': FakeOracle()})


@pytest.fixture
def client(app):
    return app.test_client()


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'healthy'


class TestDiscoverRoute:

    def test_success(self, client):
        result = DiscoveryResult(
            results=[{"id": 1, "title": "Scaling Kafka"}],
            failed_feeds=[{"source": "Down Blog", "error": "HTTP 503"}],
            session_id=4,
            created_at="2026-10-10T12:00:00Z",
        )
        with patch('apricot.routes.run_discovery', return_value=result):
            response = client.post('/api/discover')

        assert response.status_code == 200
        assert response.get_json() == result.to_dict()

    def test_unconfigured_oracle_is_503(self, db_session, settings):
        app = create_app({'TESTING': True, 'SETTINGS': settings, 'ORACLE': None})
        response = app.test_client().post('/api/discover')
        assert response.status_code == 503
        assert "not configured" in response.get_json()['error']

    def test_precondition_status_passed_through(self, client):
        with patch('apricot.routes.run_discovery', side_effect=PreconditionError("No active sources configured")):
            response = client.post('/api/discover')
        assert response.status_code == 400
        assert response.get_json() == {'error': 'No active sources configured'}

    def test_oracle_failure_is_500(self, client):
        with patch('apricot.routes.run_discovery', side_effect=OracleError("timeout")):
            response = client.post('/api/discover')
        assert response.status_code == 500
        assert "timeout" in response.get_json()['error']

    def test_concurrent_run_rejected(self, client):
        routes._discovery_lock.acquire()
        try:
            with patch('apricot.routes.run_discovery') as run:
                response = client.post('/api/discover')
            run.assert_not_called()
        finally:
            routes._discovery_lock.release()
        assert response.status_code == 409

    def test_latest_empty(self, client):
        response = client.get('/api/discover/latest')
        assert response.get_json() == {'results': [], 'failed_feeds': []}

    def test_latest_replays_audit(self, client, db_session):
        record = store.create_discovery_session(
            db_session,
            preferences_snapshot="databases",
            posts_considered=1,
            posts_selected=[1],
            model_used="fake-model",
            results=[{"id": 1, "title": "Query Planner"}],
            failed_feeds=[],
        )

        body = client.get('/api/discover/latest').get_json()

        assert body['session_id'] == record.id
        assert body['results'] == [{"id": 1, "title": "Query Planner"}]
        assert body['created_at'].endswith('Z')


class TestSourceRoutes:

    def test_list(self, client, db_session):
        add_sources(db_session, "Beta Eng", "Alpha Eng")
        body = client.get('/api/sources').get_json()
        assert [s['name'] for s in body] == ["Alpha Eng", "Beta Eng"]
        assert body[0]['strategy'] == 'feed'
        assert body[0]['is_active'] is True

    def test_toggle(self, client, db_session):
        source, = add_sources(db_session, "Alpha Eng")
        response = client.put(f'/api/sources/{source.id}', json={'is_active': False})
        assert response.status_code == 200
        assert response.get_json()['is_active'] is False

    def test_toggle_requires_boolean(self, client, db_session):
        source, = add_sources(db_session, "Alpha Eng")
        response = client.put(f'/api/sources/{source.id}', json={'is_active': 'no'})
        assert response.status_code == 400

    def test_toggle_missing_source(self, client):
        response = client.put('/api/sources/999', json={'is_active': True})
        assert response.status_code == 404


class TestPreferenceRoutes:

    def test_update_and_read(self, client):
        response = client.put('/api/preferences', json={'topics': 'databases', 'max_results': 5})
        assert response.status_code == 200
        assert response.get_json() == {'topics': 'databases', 'max_results': 5}
        assert client.get('/api/preferences').get_json() == {'topics': 'databases', 'max_results': 5}

    def test_rejects_non_object(self, client):
        response = client.put('/api/preferences', json=['databases'])
        assert response.status_code == 400


class TestDiscoverySessionRoutes:

    def _record(self, db_session, topics):
        return store.create_discovery_session(
            db_session,
            preferences_snapshot=topics,
            posts_considered=3,
            posts_selected=[1, 2],
            model_used="fake-model",
            results=[],
            failed_feeds=[{"source": "Down Blog", "error": "HTTP 503"}],
            input_tokens=120,
            output_tokens=30,
        )

    def test_newest_first(self, client, db_session):
        self._record(db_session, "databases")
        newest = self._record(db_session, "compilers")

        body = client.get('/api/discover/sessions').get_json()

        assert [s['preferences_snapshot'] for s in body] == ["compilers", "databases"]
        assert body[0]['id'] == newest.id
        assert body[0]['posts_selected'] == [1, 2]
        assert body[0]['input_tokens'] == 120
        assert body[0]['failed_feeds'] == [{"source": "Down Blog", "error": "HTTP 503"}]

    def test_limit(self, client, db_session):
        for topics in ("a", "b", "c"):
            self._record(db_session, topics)
        assert len(client.get('/api/discover/sessions?limit=2').get_json()) == 2

    def test_limit_out_of_range(self, client):
        assert client.get('/api/discover/sessions?limit=0').status_code == 400


class TestAddPostRoute:

    def test_created(self, client, db_session):
        source, = add_sources(db_session, "Alpha Eng")
        store.save_posts(db_session, [create_candidate(source, "cache", full_content="word " * 300)])
        post = db_session.scalars(select(Post)).one()

        with patch('apricot.routes.add_post_by_url', return_value=(post, True)) as add:
            response = client.post('/api/posts', json={'url': post.url, 'source': 'Cache Team'})

        assert response.status_code == 201
        add.assert_called_once()
        assert add.call_args.kwargs['source_name'] == 'Cache Team'
        body = response.get_json()
        assert body['id'] == post.id
        assert body['source'] == "Alpha Eng"
        assert body['reading_time_minutes'] == 2

    def test_existing_is_200(self, client, db_session):
        source, = add_sources(db_session, "Alpha Eng")
        store.save_posts(db_session, [create_candidate(source, "cache")])
        post = db_session.scalars(select(Post)).one()

        with patch('apricot.routes.add_post_by_url', return_value=(post, False)):
            response = client.post('/api/posts', json={'url': post.url})

        assert response.status_code == 200

    def test_missing_url_is_400(self, client):
        response = client.post('/api/posts', json={})
        assert response.status_code == 400
        assert response.get_json() == {'error': 'url is required'}

    def test_non_http_url_is_400(self, client):
        response = client.post('/api/posts', json={'url': 'ftp://example.com/file'})
        assert response.status_code == 400

    def test_unfetchable_is_422(self, client):
        with patch('apricot.routes.add_post_by_url', side_effect=ExtractionError("HTTP 404")):
            response = client.post('/api/posts', json={'url': 'https://eng.example.com/missing'})
        assert response.status_code == 422
        assert response.get_json() == {'error': 'Could not fetch article from URL'}
