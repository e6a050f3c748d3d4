"""
================================================================================
Pagewise - Sources API Routes
================================================================================
  GET /api/sources                          - Registered connectors
  GET /api/sources/behavior                 - Learned rate state of every source
  GET /api/sources/<id>/throttle            - Backoff state and next request delay
  GET /api/sources/<id>/chapters?manga_id=  - Chapter list from the connector
================================================================================
"""

from flask import Blueprint, jsonify, request

from pagewise_app.log import log
from pagewise_app.prefetch.errors import status_code_for
from sources.base import FetchError
from . import get_service
from .validators import validate_source_id

sources_bp = Blueprint('sources_api', __name__, url_prefix='/api/sources')


@sources_bp.route('', methods=['GET'])
def list_sources():
    return jsonify({'sources': get_service().sources.get_available_sources()})


@sources_bp.route('/behavior', methods=['GET'])
def behavior_status():
    return jsonify({'sources': get_service().behavior.get_status()})


@sources_bp.route('/<source_id>/throttle', methods=['GET'])
def throttle_status(source_id):
    error = validate_source_id(source_id)
    if error:
        return jsonify({'error': error}), 400

    behavior = get_service().behavior
    return jsonify({
        'source_id': source_id,
        'throttled': behavior.should_throttle(source_id),
        'delay_ms': round(behavior.get_request_delay(source_id)),
        'consecutive_failures': behavior.get_consecutive_failures(source_id),
    })


@sources_bp.route('/<source_id>/chapters', methods=['GET'])
def source_chapters(source_id):
    error = validate_source_id(source_id)
    if error:
        return jsonify({'error': error}), 400
    manga_id = (request.args.get('manga_id') or '').strip()
    if not manga_id:
        return jsonify({'error': 'Missing manga_id'}), 400

    service = get_service()
    source = service.sources.get_source(source_id)
    if source is None:
        return jsonify({'error': f'Unknown source: {source_id}'}), 404

    try:
        chapters = service.run(source.get_chapters(manga_id, request.args.get('language', 'en')))
    except FetchError as e:
        service.behavior.record_failure(source_id, status_code_for(e))
        log(f"⚠️ Chapter list failed for {source_id}/{manga_id}: {e}")
        return jsonify({'error': str(e)}), 502

    return jsonify({'chapters': [c.to_dict() for c in chapters]})
