"""
================================================================================
Pagewise - Reader API Routes
================================================================================
Reading-session events from the reader UI. They drive the velocity tracker
and trigger passive prefetch.

  POST /api/reader/session/start  - Chapter opened
  POST /api/reader/page           - Page shown
  POST /api/reader/session/end    - Chapter closed (flushes reading stats)
  POST /api/reader/navigate       - Chapter navigation: schedule passive prefetch
  GET  /api/reader/buffer         - Adaptive buffer, direction, velocity
  GET  /api/reader/stats          - Recent reading sessions
================================================================================
"""

from flask import Blueprint, jsonify, request

from . import get_service
from .validators import (
    validate_fields, validate_source_id, validate_chapters, validate_limit, MAX_CHAPTERS
)

reader_bp = Blueprint('reader_api', __name__, url_prefix='/api/reader')


@reader_bp.route('/session/start', methods=['POST'])
def start_session():
    data = request.get_json(silent=True) or {}
    error = validate_fields(data, [
        ('source_id', str, 100),
        ('manga_id', str, 255),
        ('chapter_id', str, 255),
    ])
    if error:
        return jsonify({'error': error}), 400

    session = get_service().velocity.start_session(data['source_id'], data['manga_id'], data['chapter_id'])
    return jsonify({'started': True, 'chapter_id': session.chapter_id})


@reader_bp.route('/page', methods=['POST'])
def page_view():
    data = request.get_json(silent=True) or {}
    error = validate_fields(data, [('page_index', int, None)])
    if error:
        return jsonify({'error': error}), 400
    if data['page_index'] < 0:
        return jsonify({'error': 'page_index must be >= 0'}), 400

    velocity = get_service().velocity
    return jsonify({
        'reading_velocity': round(velocity.record_page_view(data['page_index']), 2),
        'direction': velocity.get_navigation_direction(),
    })


@reader_bp.route('/session/end', methods=['POST'])
def end_session():
    data = request.get_json(silent=True) or {}
    record = get_service().velocity.end_session(bool(data.get('completed', False)))
    if record is None:
        return jsonify({'error': 'No open reading session'}), 404
    return jsonify({'session': record.to_dict()})


@reader_bp.route('/navigate', methods=['POST'])
def navigate():
    data = request.get_json(silent=True) or {}
    error = validate_fields(data, [
        ('source_id', str, 100),
        ('manga_id', str, 255),
        ('chapters', list, MAX_CHAPTERS),
        ('current_index', int, None),
    ])
    if error:
        return jsonify({'error': error}), 400
    error = validate_source_id(data['source_id']) or validate_chapters(data['chapters'])
    if error:
        return jsonify({'error': error}), 400

    chapters = [c['id'] if isinstance(c, dict) else c for c in data['chapters']]
    service = get_service()
    targets = service.call(
        service.orchestrator.on_chapter_navigation,
        data['source_id'], data['manga_id'], chapters, data['current_index'],
    )
    return jsonify({
        'scheduled': targets,
        'throttled': service.behavior.should_throttle(data['source_id']),
    })


@reader_bp.route('/buffer', methods=['GET'])
def adaptive_buffer():
    return jsonify(get_service().velocity.get_status())


@reader_bp.route('/stats', methods=['GET'])
def reading_stats():
    limit, error = validate_limit(request.args.get('limit'), default=50)
    if error:
        return jsonify({'error': error}), 400
    service = get_service()
    return jsonify({'stats': service.run(service.storage.get_reading_stats(limit))})
