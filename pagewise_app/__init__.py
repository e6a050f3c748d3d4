# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import os
import time
import uuid
from flask import Flask, request, g


def create_app(service=None, init_db: bool = True):
    """
    Create and configure an instance of the Flask application.

    Args:
        service: PrefetchService to serve. Defaults to the process-wide one,
                 started on first use.
        init_db: Create missing tables before serving.
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        JSON_SORT_KEYS=False,
        SECRET_KEY=os.environ.get('SECRET_KEY', 'pagewise-dev'),
    )

    # Ensure instance folder exists
    try:
        os.makedirs(app.instance_path)
    except OSError:
        pass

    # =============================================================================
    # LOGGING
    # =============================================================================
    from .log import log, debug_log_event

    @app.before_request
    def assign_request_id():
        g.request_id = uuid.uuid4().hex[:12]
        g.request_start = time.time()

    @app.after_request
    def debug_request_log(response):
        duration_ms = None
        start_time = getattr(g, 'request_start', None)
        if start_time:
            duration_ms = int((time.time() - start_time) * 1000)
        debug_log_event({
            'event': 'request',
            'request_id': getattr(g, 'request_id', None),
            'method': request.method,
            'path': request.path,
            'query': request.query_string.decode('utf-8', errors='ignore'),
            'status': response.status_code,
            'duration_ms': duration_ms,
        })
        return response

    @app.teardown_request
    def debug_exception_log(error=None):
        if not error:
            return
        debug_log_event({
            'event': 'exception',
            'request_id': getattr(g, 'request_id', None),
            'method': request.method if request else None,
            'path': request.path if request else None,
            'error_type': error.__class__.__name__,
            'error': str(error)
        })

    # =============================================================================
    # DATABASE & PREFETCH SERVICE
    # =============================================================================
    from sources.base import set_log_callback
    from .database import init_database
    from .service import get_prefetch_service, set_prefetch_service
    from .routes.validators import set_allowed_sources

    # Register logging callback for sources
    set_log_callback(log)

    if init_db:
        init_database()

    if service is None:
        service = get_prefetch_service()
    else:
        set_prefetch_service(service.start())
    app.extensions['pagewise'] = service
    set_allowed_sources(list(service.sources.sources.keys()))

    # =============================================================================
    # BLUEPRINTS & ROUTES
    # =============================================================================
    from .routes.main_api import main_bp
    from .routes.prefetch_api import prefetch_bp
    from .routes.reader_api import reader_bp
    from .routes.sources_api import sources_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(prefetch_bp)
    app.register_blueprint(reader_bp)
    app.register_blueprint(sources_bp)

    app.config['HOST'] = os.environ.get('FLASK_HOST', '127.0.0.1')
    app.config['PORT'] = int(os.environ.get('FLASK_PORT', '5000'))
    app.config['DEBUG'] = os.environ.get('FLASK_DEBUG', 'false').lower() in ('true', '1', 'yes')

    log(f"📚 Loaded {len(service.sources.sources)} sources: {', '.join(service.sources.sources) or 'none'}")
    return app

# App instance should be created by the caller (run.py or WSGI entrypoint)
