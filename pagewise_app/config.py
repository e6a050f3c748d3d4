"""
================================================================================
Pagewise - Configuration
================================================================================
Environment-driven settings for the prefetch engine and the image cache.

Every value can be set in the environment (or a .env file loaded by
create_app). Defaults match the desktop reader's shipped behavior.
================================================================================
"""

import os
from dataclasses import dataclass

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass
class PrefetchConfig:
    """Tuning knobs for passive and bulk prefetch."""
    prefetch_chapters: int = 2          # Static look-ahead (0 disables static mode)
    adaptive_prefetch: bool = True      # Velocity-driven buffer + direction bias
    concurrency: int = 8                # Bulk in-flight page saves
    max_attempts: int = 25              # Per-page attempts before giving up
    page_timeout: float = 15.0          # Seconds per attempt
    retry_backoff: float = 0.5          # Seconds, multiplied by min(attempt, retry_backoff_cap)
    retry_backoff_cap: int = 5
    stream_timeout: float = 300.0       # Seconds for a whole page-list stream
    min_stagger_ms: float = 1000.0      # Passive stagger floor between chapters
    passive_concurrency: int = 2        # Passive page saves per batch
    passive_batch_delay: float = 1.0    # Seconds between passive batches
    page_list_cache_size: int = 10      # Chapters kept in the shared page-list cache
    pause_on_error: bool = True         # Pause bulk job on chapter-level errors
    history_interval: int = 5           # Chapters between history updates
    summary_failed_pages: int = 20      # Failed pages shown in the summary
    history_failed_pages: int = 100     # Failed pages stored in history

    @classmethod
    def from_env(cls) -> "PrefetchConfig":
        return cls(
            prefetch_chapters=_env_int('PREFETCH_CHAPTERS', cls.prefetch_chapters),
            adaptive_prefetch=_env_bool('ADAPTIVE_PREFETCH', cls.adaptive_prefetch),
            concurrency=_env_int('PREFETCH_CONCURRENCY', cls.concurrency),
            max_attempts=_env_int('PREFETCH_MAX_ATTEMPTS', cls.max_attempts),
            page_timeout=_env_float('PREFETCH_PAGE_TIMEOUT', cls.page_timeout),
            retry_backoff=_env_float('PREFETCH_RETRY_BACKOFF', cls.retry_backoff),
            stream_timeout=_env_float('PREFETCH_STREAM_TIMEOUT', cls.stream_timeout),
            min_stagger_ms=_env_float('PREFETCH_MIN_STAGGER_MS', cls.min_stagger_ms),
            passive_concurrency=_env_int('PREFETCH_PASSIVE_CONCURRENCY', cls.passive_concurrency),
            passive_batch_delay=_env_float('PREFETCH_PASSIVE_BATCH_DELAY', cls.passive_batch_delay),
            page_list_cache_size=_env_int('PREFETCH_PAGE_LIST_CACHE', cls.page_list_cache_size),
            pause_on_error=_env_bool('PREFETCH_PAUSE_ON_ERROR', cls.pause_on_error),
            history_interval=_env_int('PREFETCH_HISTORY_INTERVAL', cls.history_interval),
        )


@dataclass
class CacheConfig:
    """Disk image cache settings."""
    cache_dir: str = os.path.join(BASE_DIR, 'instance', 'image_cache')
    max_bytes: int = 1024 * 1024 * 1024
    ignore_limit_for_prefetch: bool = False

    @classmethod
    def from_env(cls) -> "CacheConfig":
        return cls(
            cache_dir=os.environ.get('IMAGE_CACHE_DIR', cls.cache_dir),
            max_bytes=_env_int('IMAGE_CACHE_MAX_MB', cls.max_bytes // (1024 * 1024)) * 1024 * 1024,
            ignore_limit_for_prefetch=_env_bool('IGNORE_CACHE_LIMIT_FOR_PREFETCH', cls.ignore_limit_for_prefetch),
        )
