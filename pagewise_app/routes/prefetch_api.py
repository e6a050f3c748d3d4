"""
================================================================================
Pagewise - Prefetch API Routes
================================================================================
Bulk prefetch control and passive page-list cache access.

  POST /api/prefetch/start            - Start a bulk job (409 if one is running)
  POST /api/prefetch/cancel           - Cancel the running job
  POST /api/prefetch/resolve          - Answer a paused job: retry / skip / cancel
  GET  /api/prefetch/status           - Progress, pause state, last summary
  GET  /api/prefetch/summary          - Last terminal summary
  POST /api/prefetch/summary/ack      - Dismiss the summary
  GET  /api/prefetch/history          - Past jobs
  GET  /api/prefetch/pages/<chapter>  - Prefetched page URLs for a chapter
  POST /api/prefetch/cache/clear      - Forget passively prefetched page lists
================================================================================
"""

from flask import Blueprint, jsonify, request

from pagewise_app.log import log
from . import get_service
from .validators import (
    validate_fields, validate_source_id, validate_chapters, validate_limit, MAX_CHAPTERS
)

prefetch_bp = Blueprint('prefetch_api', __name__, url_prefix='/api/prefetch')


@prefetch_bp.route('/start', methods=['POST'])
def start_prefetch():
    data = request.get_json(silent=True) or {}
    error = validate_fields(data, [
        ('chapters', list, MAX_CHAPTERS),
        ('extension_id', str, 100),
        ('manga_id', str, 255),
    ])
    if error:
        return jsonify({'error': error}), 400
    error = validate_source_id(data['extension_id']) or validate_chapters(data['chapters'])
    if error:
        return jsonify({'error': error}), 400

    service = get_service()
    started = service.call(
        service.orchestrator.start_bulk_prefetch,
        data['chapters'],
        data['extension_id'],
        data['manga_id'],
        str(data.get('manga_title') or '')[:500],
    )
    if not started:
        return jsonify({'error': 'Prefetch already in progress',
                        'prefetch_manga_id': service.orchestrator.prefetch_manga_id}), 409

    log(f"📥 Prefetch started: {len(data['chapters'])} chapters of {data['manga_id']}")
    return jsonify({'started': True, 'total': len(data['chapters'])}), 202


@prefetch_bp.route('/cancel', methods=['POST'])
def cancel_prefetch():
    service = get_service()
    cancelled = service.call(service.orchestrator.cancel)
    return jsonify({'cancelled': cancelled})


@prefetch_bp.route('/resolve', methods=['POST'])
def resolve_prefetch_error():
    data = request.get_json(silent=True) or {}
    error = validate_fields(data, [('action', str, 10)])
    if error:
        return jsonify({'error': error}), 400
    if data['action'] not in ('retry', 'skip', 'cancel'):
        return jsonify({'error': "Action must be 'retry', 'skip' or 'cancel'"}), 400

    service = get_service()
    resolved = service.call(service.orchestrator.resolve_error, data['action'])
    if not resolved:
        return jsonify({'error': 'No paused prefetch job'}), 409
    return jsonify({'resolved': data['action']})


@prefetch_bp.route('/status', methods=['GET'])
def prefetch_status():
    return jsonify(get_service().orchestrator.get_status())


@prefetch_bp.route('/summary', methods=['GET'])
def prefetch_summary():
    summary = get_service().orchestrator.summary
    return jsonify({'summary': summary.to_dict() if summary else None})


@prefetch_bp.route('/summary/ack', methods=['POST'])
def acknowledge_summary():
    service = get_service()
    service.call(service.orchestrator.acknowledge_summary)
    return jsonify({'acknowledged': True})


@prefetch_bp.route('/history', methods=['GET'])
def prefetch_history():
    limit, error = validate_limit(request.args.get('limit'), default=20)
    if error:
        return jsonify({'error': error}), 400
    service = get_service()
    return jsonify({'history': service.run(service.storage.get_prefetch_history(limit))})


@prefetch_bp.route('/pages/<chapter_id>', methods=['GET'])
def prefetched_pages(chapter_id):
    service = get_service()
    pages = service.orchestrator.get_prefetched_pages(chapter_id)
    origin = 'memory'
    if pages is None:
        pages = service.run(service.storage.get_chapter_pages(chapter_id))
        origin = 'database'
    if pages is None:
        return jsonify({'error': 'Chapter not prefetched'}), 404
    return jsonify({'chapter_id': chapter_id, 'pages': pages, 'origin': origin})


@prefetch_bp.route('/cache/clear', methods=['POST'])
def clear_prefetch_cache():
    service = get_service()
    service.call(service.orchestrator.clear_prefetch_cache)
    return jsonify({'cleared': True})
