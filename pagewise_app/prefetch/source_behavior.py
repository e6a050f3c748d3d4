"""
================================================================================
Pagewise - Source Behavior Tracker
================================================================================
Learns how hard each content source can be pushed, AIMD style:

  - every success adds 0.1 req/s (up to the source's max_rate)
  - every failure multiplies the rate down, harder for worse signals
  - rate limits and blocks open a backoff window during which the source is
    left alone entirely

    status        rate x   backoff window
    429           0.5      5 s x multiplier (multiplier doubles, max 64)
    403           0.3      30 s
    other 4xx     0.7      2 s
    502 / 503     0.7      5 s
    -1 / 0        0.9      none   (network error, timeout)

The tracker does no I/O. Each mutation hands a snapshot to the `persist`
callback, which the service turns into a background storage write.

Usage:
    tracker = SourceBehaviorTracker(persist=save_row)
    if not tracker.should_throttle("mangadex"):
        await asyncio.sleep(tracker.get_request_delay("mangadex") / 1000)
        ...
        tracker.record_success("mangadex", elapsed_ms)
================================================================================
"""

import time
import random
import logging
import threading
from dataclasses import dataclass, asdict, replace
from typing import Dict, Optional, Any, Callable, List

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_RATE = 2.0
DEFAULT_MAX_RATE = 10.0
MIN_RATE = 0.1
RATE_STEP = 0.1
LATENCY_ALPHA = 0.3
DEFAULT_LATENCY_MS = 500.0
MAX_BACKOFF_MULTIPLIER = 64
MIN_DELAY_MS = 50
UNKNOWN_SOURCE_DELAY_MS = 500
JITTER = 0.2


def now_ms() -> float:
    return time.time() * 1000


@dataclass
class SourceBehavior:
    """Learned request-rate state for one source. Rates are in req/s, times in epoch ms."""
    source_id: str
    current_rate: float = DEFAULT_INITIAL_RATE
    max_observed_rate: float = DEFAULT_INITIAL_RATE
    initial_rate: float = DEFAULT_INITIAL_RATE
    max_rate: float = DEFAULT_MAX_RATE
    consecutive_failures: int = 0
    total_requests: int = 0
    failed_requests: int = 0
    last_rate_limit_at: Optional[float] = None
    avg_response_time_ms: float = DEFAULT_LATENCY_MS
    backoff_until: Optional[float] = None
    backoff_multiplier: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceBehavior":
        fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        behavior = cls(**fields)
        # Rows written by older builds may hold nulls
        behavior.consecutive_failures = behavior.consecutive_failures or 0
        behavior.total_requests = behavior.total_requests or 0
        behavior.failed_requests = behavior.failed_requests or 0
        behavior.backoff_multiplier = behavior.backoff_multiplier or 1
        if behavior.avg_response_time_ms is None:
            behavior.avg_response_time_ms = DEFAULT_LATENCY_MS
        behavior.current_rate = min(max(behavior.current_rate, MIN_RATE), behavior.max_rate)
        return behavior


def _failure_policy(status_code: int):
    """(label, rate factor, fixed backoff ms) for a failure status. None factor = no rate change."""
    if status_code == 429:
        return "RATE_LIMIT_429", 0.5, None
    if status_code == 403:
        return "FORBIDDEN_403", 0.3, 30000
    if 400 <= status_code < 500:
        return f"CLIENT_{status_code}", 0.7, 2000
    if status_code in (502, 503):
        return f"SERVER_{status_code}", 0.7, 5000
    if status_code in (-1, 0):
        return "NETWORK", 0.9, None
    return f"STATUS_{status_code}", None, None


class SourceBehaviorTracker:
    """
    Registry of SourceBehavior records, one per source id.

    All reads and writes go through the registry lock; callers only ever see
    copies, so Flask threads can query while the event loop mutates.
    """

    def __init__(
        self,
        persist: Optional[Callable[[Dict[str, Any]], None]] = None,
        clock: Callable[[], float] = now_ms,
        rng: Callable[[], float] = random.random,
    ):
        self._behaviors: Dict[str, SourceBehavior] = {}
        self._lock = threading.Lock()
        self._persist = persist
        self._clock = clock
        self._rng = rng
        self._initialized = False

    # =========================================================================
    # LOADING & PERSISTENCE
    # =========================================================================

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, storage) -> int:
        """Load saved behaviors once. Returns how many were loaded."""
        if self._initialized:
            return 0
        self._initialized = True

        try:
            rows = await storage.load_source_behaviors()
        except Exception as e:
            logger.warning(f"[SourceBehavior] Failed to load saved behaviors: {e}")
            return 0

        loaded = 0
        with self._lock:
            for row in rows or []:
                source_id = row.get('source_id')
                if not source_id or source_id in self._behaviors:
                    continue
                self._behaviors[source_id] = SourceBehavior.from_dict(row)
                loaded += 1
        logger.info(f"[SourceBehavior] Loaded {loaded} source behaviors")
        return loaded

    def _save(self, snapshot: SourceBehavior) -> None:
        if self._persist is None:
            return
        try:
            self._persist(snapshot.to_dict())
        except Exception as e:
            logger.warning(f"[SourceBehavior] Failed to schedule save for {snapshot.source_id}: {e}")

    # =========================================================================
    # REGISTRY
    # =========================================================================

    def _create(self, source_id: str, manifest_hints: Optional[Dict[str, float]]) -> SourceBehavior:
        hints = manifest_hints or {}
        max_rate = float(hints.get('max_rate') or DEFAULT_MAX_RATE)
        initial = float(hints.get('initial_rate') or hints.get('rate_limit') or DEFAULT_INITIAL_RATE)
        initial = min(max(initial, MIN_RATE), max_rate)
        return SourceBehavior(
            source_id=source_id,
            current_rate=initial,
            max_observed_rate=initial,
            initial_rate=initial,
            max_rate=max_rate,
        )

    def _get_or_create_locked(self, source_id: str, manifest_hints=None):
        behavior = self._behaviors.get(source_id)
        if behavior is not None:
            return behavior, False
        behavior = self._create(source_id, manifest_hints)
        self._behaviors[source_id] = behavior
        return behavior, True

    def get_or_create(self, source_id: str, manifest_hints: Optional[Dict[str, float]] = None) -> SourceBehavior:
        with self._lock:
            behavior, created = self._get_or_create_locked(source_id, manifest_hints)
            snapshot = replace(behavior)
        if created:
            logger.debug(f"[SourceBehavior] {source_id}: new source at {snapshot.current_rate:.2f} req/s")
            self._save(snapshot)
        return snapshot

    def get(self, source_id: str) -> Optional[SourceBehavior]:
        with self._lock:
            behavior = self._behaviors.get(source_id)
            return replace(behavior) if behavior else None

    # =========================================================================
    # FEEDBACK
    # =========================================================================

    def record_success(self, source_id: str, response_time_ms: float) -> SourceBehavior:
        with self._lock:
            b, _ = self._get_or_create_locked(source_id)
            old_rate = b.current_rate

            b.current_rate = min(b.current_rate + RATE_STEP, b.max_rate)
            b.max_observed_rate = max(b.max_observed_rate, b.current_rate)
            b.consecutive_failures = 0
            b.backoff_multiplier = 1
            b.backoff_until = None
            b.avg_response_time_ms = (
                LATENCY_ALPHA * response_time_ms + (1 - LATENCY_ALPHA) * b.avg_response_time_ms
            )
            b.total_requests += 1
            snapshot = replace(b)

        logger.debug(
            f"[SourceBehavior] {source_id} SUCCESS: rate {old_rate:.2f} → {snapshot.current_rate:.2f} req/s "
            f"(latency {snapshot.avg_response_time_ms:.0f}ms)"
        )
        self._save(snapshot)
        return snapshot

    def record_failure(self, source_id: str, status_code: int) -> SourceBehavior:
        label, factor, backoff_ms = _failure_policy(status_code)

        with self._lock:
            b, _ = self._get_or_create_locked(source_id)
            now = self._clock()
            old_rate = b.current_rate

            if factor is not None:
                b.current_rate = max(b.current_rate * factor, MIN_RATE)

            if status_code == 429:
                b.backoff_multiplier = min(b.backoff_multiplier * 2, MAX_BACKOFF_MULTIPLIER)
                b.backoff_until = now + 5000 * b.backoff_multiplier
                b.last_rate_limit_at = now
            elif backoff_ms is not None:
                b.backoff_until = now + backoff_ms

            b.consecutive_failures += 1
            b.failed_requests += 1
            b.total_requests += 1
            snapshot = replace(b)

        backoff = ""
        if snapshot.backoff_until is not None and snapshot.backoff_until > now:
            backoff = f", backoff {(snapshot.backoff_until - now) / 1000:.0f}s"
        logger.debug(
            f"[SourceBehavior] {source_id} FAILURE ({label}): rate {old_rate:.2f} → "
            f"{snapshot.current_rate:.2f} req/s{backoff}"
        )
        self._save(snapshot)
        return snapshot

    # =========================================================================
    # QUERIES
    # =========================================================================

    def should_throttle(self, source_id: str) -> bool:
        with self._lock:
            b = self._behaviors.get(source_id)
            return bool(b and b.backoff_until is not None and b.backoff_until > self._clock())

    def get_request_delay(self, source_id: str) -> float:
        """Milliseconds to wait before the next request to `source_id`."""
        with self._lock:
            b = self._behaviors.get(source_id)
            if b is None:
                return UNKNOWN_SOURCE_DELAY_MS
            now = self._clock()
            if b.backoff_until is not None and b.backoff_until > now:
                return b.backoff_until - now
            base = 1000.0 / b.current_rate

        jitter = 1 + (self._rng() * 2 - 1) * JITTER
        return max(MIN_DELAY_MS, base * jitter)

    def get_consecutive_failures(self, source_id: str) -> int:
        with self._lock:
            b = self._behaviors.get(source_id)
            return b.consecutive_failures if b else 0

    def get_status(self) -> List[Dict[str, Any]]:
        """Snapshot of every known source, for display."""
        with self._lock:
            now = self._clock()
            rows = []
            for b in self._behaviors.values():
                row = b.to_dict()
                throttled = b.backoff_until is not None and b.backoff_until > now
                row['throttled'] = throttled
                row['backoff_remaining_ms'] = (b.backoff_until - now) if throttled else 0
                rows.append(row)
        return sorted(rows, key=lambda r: r['source_id'])
