from flask import Blueprint, jsonify, request

from pagewise_app.log import drain_messages
from pagewise_app.database import check_database_connection
from . import get_service

main_bp = Blueprint('main_api', __name__)


@main_bp.route('/api/logs')
def get_logs():
    """Get pending log messages."""
    try:
        limit = int(request.args.get('limit', 500))
    except ValueError:
        limit = 500
    return jsonify({'logs': drain_messages(max(1, limit))})


@main_bp.route('/api/health')
def health():
    service = get_service()
    orchestrator = service.orchestrator
    return jsonify({
        'database': check_database_connection(),
        'sources': len(service.sources.sources),
        'is_prefetching': orchestrator.is_prefetching if orchestrator else False,
        'cache_bytes': service.image_cache.get_cache_size() if service.image_cache else 0,
    })
