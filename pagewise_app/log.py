import os
import sys
import time
import queue
import json
import logging
from logging.handlers import RotatingFileHandler

# Thread-safe message queue drained by the UI (/api/logs)
msg_queue: queue.Queue = queue.Queue()

# Configure logging
logger = logging.getLogger("pagewise")
logger.setLevel(logging.INFO)

# Determine log file path
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOG_DIR = os.environ.get('PAGEWISE_LOG_DIR', os.path.join(BASE_DIR, 'instance'))
os.makedirs(LOG_DIR, exist_ok=True)
LOG_FILE = os.path.join(LOG_DIR, 'pagewise.log')

# File Handler
if not any(getattr(h, "baseFilename", None) == LOG_FILE for h in logger.handlers):
    file_handler = RotatingFileHandler(LOG_FILE, maxBytes=10*1024*1024, backupCount=5)
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logger.addHandler(file_handler)

    # Stream Handler (stdout)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter('%(message)s'))  # Keep stdout clean
    logger.addHandler(stream_handler)

# Debug logging (local-only file)
DEBUG_LOGGING = os.environ.get('DEBUG_LOGGING', 'true').lower() in ('1', 'true', 'yes', 'on')
DEBUG_LOG_DIR = os.path.join(LOG_DIR, 'debugging')
os.makedirs(DEBUG_LOG_DIR, exist_ok=True)
DEBUG_LOG_FILE = os.path.join(DEBUG_LOG_DIR, 'debug.log')

debug_logger = logging.getLogger("pagewise.debug")
debug_logger.setLevel(logging.INFO)
debug_logger.propagate = False
if not any(getattr(h, "baseFilename", None) == DEBUG_LOG_FILE for h in debug_logger.handlers):
    debug_handler = RotatingFileHandler(DEBUG_LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=10)
    debug_handler.setFormatter(logging.Formatter('%(message)s'))
    debug_logger.addHandler(debug_handler)
if not DEBUG_LOGGING:
    debug_logger.disabled = True


def log(msg: str) -> None:
    """Log a message to console, file, and message queue."""
    logger.info(msg)

    # Add to queue for frontend
    timestamp = time.strftime("[%H:%M:%S]")
    msg_queue.put(f"{timestamp} {msg}")


def drain_messages(limit: int = 500) -> list:
    """Pop up to `limit` queued UI messages."""
    messages = []
    while len(messages) < limit:
        try:
            messages.append(msg_queue.get_nowait())
        except queue.Empty:
            break
    return messages


def debug_log_event(event: dict) -> None:
    """Write structured debug events to a local file."""
    if debug_logger.disabled:
        return
    try:
        debug_logger.info(json.dumps(event, ensure_ascii=True, separators=(',', ':')))
    except (TypeError, ValueError) as exc:
        logger.info(f"⚠️ Debug log failure: {exc}")
