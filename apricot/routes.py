"""
Flask Routes for Apricot

Includes:
- Health check endpoint
- Discovery run, latest-discovery replay and recent run history
- Adding a single post by URL
- Source listing and enable/disable
- Preference read/update
"""

import logging
import threading
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from apricot.database import SessionLocal
from apricot.services import store
from apricot.services.content_fetcher import calculate_reading_time
from apricot.services.discovery import get_latest_discovery, run_discovery
from apricot.services.errors import (
    ExtractionError, NotFoundError, OracleError, PreconditionError, StorageError
)
from apricot.services.manual_posts import add_post_by_url

logger = logging.getLogger(__name__)

# Create blueprint
main = Blueprint('main', __name__)

# One discovery run at a time per process
_discovery_lock = threading.Lock()


def _source_to_dict(source) -> dict:
    return {
        'id': source.id,
        'name': source.name,
        'company': source.company,
        'url': source.url,
        'site_url': source.site_url,
        'strategy': source.strategy.value,
        'is_active': source.is_active,
        'created_at': store.isoformat_utc(source.created_at),
    }


def _post_to_dict(post) -> dict:
    return {
        'id': post.id,
        'title': post.title,
        'url': post.url,
        'source': post.source.name,
        'description': post.description or '',
        'published_at': store.isoformat_utc(post.published_at),
        'reading_time_minutes': calculate_reading_time(post.full_content or post.description or ''),
    }


def _session_to_dict(record) -> dict:
    return {
        'id': record.id,
        'created_at': store.isoformat_utc(record.created_at),
        'preferences_snapshot': record.preferences_snapshot,
        'posts_considered': record.posts_considered,
        'posts_selected': list(record.posts_selected or []),
        'model_used': record.model_used,
        'input_tokens': record.input_tokens,
        'output_tokens': record.output_tokens,
        'failed_feeds': list(record.failed_feeds or []),
    }


@main.route('/health')
def health_check():
    """Health check endpoint."""
    return {'status': 'healthy', 'timestamp': datetime.now(timezone.utc).isoformat()}


@main.route('/api/discover', methods=['POST'])
def discover():
    """
    Run one discovery batch and return ranked, summarized posts.

    Returns 409 while another run is in progress.
    """
    if not _discovery_lock.acquire(blocking=False):
        return jsonify({'error': 'A discovery run is already in progress'}), 409

    session = SessionLocal()
    try:
        result = run_discovery(
            session,
            oracle=current_app.config['ORACLE'],
            settings=current_app.config['SETTINGS'],
        )
        return jsonify(result.to_dict())
    except PreconditionError as e:
        return jsonify({'error': str(e)}), e.status_code
    except OracleError as e:
        logger.error(f"Discovery ranking failed: {e}")
        return jsonify({'error': f'Failed to rank posts with AI: {e}'}), 500
    except StorageError as e:
        logger.error(f"Discovery storage failed: {e}")
        return jsonify({'error': f'Failed to save posts: {e}'}), 500
    finally:
        session.close()
        _discovery_lock.release()


@main.route('/api/discover/latest')
def discover_latest():
    """Most recent discovery results, without fetching or ranking."""
    session = SessionLocal()
    try:
        return jsonify(get_latest_discovery(session).to_dict())
    finally:
        session.close()


@main.route('/api/discover/sessions')
def discover_sessions():
    """Recent discovery runs, newest first. Query: ?limit=N (1-50, default 10)."""
    limit = request.args.get('limit', default=10, type=int)
    if limit is None or not 1 <= limit <= 50:
        return jsonify({'error': 'limit must be between 1 and 50'}), 400

    session = SessionLocal()
    try:
        records = store.get_recent_discovery_sessions(session, limit=limit)
        return jsonify([_session_to_dict(r) for r in records])
    finally:
        session.close()


@main.route('/api/posts', methods=['POST'])
def add_post():
    """
    Add one article by URL. Body: {"url": str, "source": optional str}.

    Returns 201 for a new post and 200 when the URL is already stored.
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({'error': 'Invalid JSON body'}), 400
    url, source_name = body.get('url', ''), body.get('source')
    if not isinstance(url, str) or not isinstance(source_name, (str, type(None))):
        return jsonify({'error': 'url and source must be strings'}), 400

    session = SessionLocal()
    try:
        post, created = add_post_by_url(session, url, source_name=source_name)
        return jsonify(_post_to_dict(post)), 201 if created else 200
    except PreconditionError as e:
        return jsonify({'error': str(e)}), e.status_code
    except ExtractionError as e:
        logger.warning(f"Could not add post: {e}")
        return jsonify({'error': 'Could not fetch article from URL'}), 422
    except StorageError as e:
        logger.error(f"Saving added post failed: {e}")
        return jsonify({'error': f'Failed to save post: {e}'}), 500
    finally:
        session.close()


@main.route('/api/sources')
def list_sources():
    """All sources, active or not."""
    session = SessionLocal()
    try:
        return jsonify([_source_to_dict(s) for s in store.get_all_sources(session)])
    finally:
        session.close()


@main.route('/api/sources/<int:source_id>', methods=['PUT'])
def update_source(source_id: int):
    """Enable or disable a source. Body: {"is_active": bool}."""
    body = request.get_json(silent=True)
    if not isinstance(body, dict) or not isinstance(body.get('is_active'), bool):
        return jsonify({'error': 'Body must be {"is_active": true|false}'}), 400

    session = SessionLocal()
    try:
        source = store.set_source_active(session, source_id, body['is_active'])
        return jsonify(_source_to_dict(source))
    except NotFoundError as e:
        return jsonify({'error': str(e)}), 404
    finally:
        session.close()


@main.route('/api/preferences')
def get_preferences():
    """All preferences as one JSON object."""
    session = SessionLocal()
    try:
        return jsonify(store.get_all_preferences(session))
    finally:
        session.close()


@main.route('/api/preferences', methods=['PUT'])
def update_preferences():
    """Save each key of a JSON object as a preference and return them all."""
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({'error': 'Invalid JSON body'}), 400

    session = SessionLocal()
    try:
        for key, value in body.items():
            store.set_preference(session, key, value)
        logger.info(f"Updated preferences: {', '.join(sorted(body))}")
        return jsonify(store.get_all_preferences(session))
    finally:
        session.close()
