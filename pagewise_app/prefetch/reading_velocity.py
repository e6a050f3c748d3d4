"""
================================================================================
Pagewise - Reading Velocity Tracker
================================================================================
Estimates how fast the reader is turning pages and which way they are going,
so passive prefetch can size and bias its look-ahead buffer.

  velocity (pages/min)   buffer (chapters)
  <= 2                   1
  <= 5                   2
  <= 15                  3
  faster                 4

Velocity is an EWMA (alpha 0.3, seeded at 5 pages/min) carried across
sessions. Page flips less than 500 ms apart still count for direction but
are ignored for velocity.
================================================================================
"""

import math
import time
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Any, Callable

logger = logging.getLogger(__name__)

EWMA_ALPHA = 0.3
DEFAULT_VELOCITY = 5.0
MIN_PAGE_DURATION_MS = 500

BUFFER_THRESHOLDS = (
    (2, 1),    # Slow reader
    (5, 2),    # Normal reader
    (15, 3),   # Fast reader
)
MAX_BUFFER = 4

FORWARD = "forward"
BACKWARD = "backward"
MIXED = "mixed"

AHEAD_RATIO = {FORWARD: 0.8, BACKWARD: 0.2, MIXED: 0.5}

DAY_SECONDS = 86400


@dataclass
class ReadingSession:
    source_id: str
    manga_id: str
    chapter_id: str
    start_time: float        # epoch ms
    pages_viewed: int = 0
    completed: bool = False


@dataclass(frozen=True)
class ReadingSessionRecord:
    """A closed session, ready for the reading_stats table."""
    session_date: int
    source_id: str
    manga_id: str
    chapter_id: str
    pages_viewed: int
    reading_time_seconds: int
    chapters_completed: int
    avg_velocity: float
    forward_navigations: int
    backward_navigations: int
    started_at: int
    ended_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now_ms() -> float:
    return time.time() * 1000


class ReadingVelocityTracker:
    """Per-session reading-speed estimator and navigation-direction classifier."""

    def __init__(
        self,
        flush: Optional[Callable[[Dict[str, Any]], None]] = None,
        clock: Callable[[], float] = _now_ms,
    ):
        self._flush = flush
        self._clock = clock
        self._lock = threading.Lock()

        self.reading_velocity = DEFAULT_VELOCITY
        self.last_page_index: Optional[int] = None
        self.last_page_change_time: Optional[float] = None
        self.forward_count = 0
        self.backward_count = 0
        self.current_session: Optional[ReadingSession] = None

    def _clear_markers(self) -> None:
        self.forward_count = 0
        self.backward_count = 0
        self.last_page_index = None
        self.last_page_change_time = None

    def start_session(self, source_id: str, manga_id: str, chapter_id: str) -> ReadingSession:
        with self._lock:
            self.current_session = ReadingSession(
                source_id=source_id,
                manga_id=manga_id,
                chapter_id=chapter_id,
                start_time=self._clock(),
            )
            self._clear_markers()
            return self.current_session

    def record_page_view(self, page_index: int) -> float:
        """Register that `page_index` is now on screen. Returns the current velocity."""
        with self._lock:
            now = self._clock()

            if self.current_session is not None:
                self.current_session.pages_viewed += 1

            if self.last_page_index is None or self.last_page_change_time is None:
                self.last_page_index = page_index
                self.last_page_change_time = now
                return self.reading_velocity

            time_delta = now - self.last_page_change_time
            page_delta = page_index - self.last_page_index

            if page_delta > 0:
                self.forward_count += 1
            elif page_delta < 0:
                self.backward_count += 1

            if time_delta >= MIN_PAGE_DURATION_MS and page_delta != 0:
                instant = abs(page_delta) / (time_delta / 60000)
                self.reading_velocity = EWMA_ALPHA * instant + (1 - EWMA_ALPHA) * self.reading_velocity

            self.last_page_index = page_index
            self.last_page_change_time = now
            return self.reading_velocity

    def calculate_adaptive_buffer(self) -> int:
        return _buffer_for(self.reading_velocity)

    def get_navigation_direction(self) -> str:
        with self._lock:
            return _direction_for(self.forward_count, self.backward_count)

    def end_session(self, completed: bool = False) -> Optional[ReadingSessionRecord]:
        """Close the open session and hand its summary to the flush callback."""
        with self._lock:
            session = self.current_session
            if session is None:
                return None

            now = self._clock()
            session.completed = completed
            record = ReadingSessionRecord(
                session_date=int(now // (DAY_SECONDS * 1000)) * DAY_SECONDS,
                source_id=session.source_id,
                manga_id=session.manga_id,
                chapter_id=session.chapter_id,
                pages_viewed=session.pages_viewed,
                reading_time_seconds=int((now - session.start_time) // 1000),
                chapters_completed=1 if completed else 0,
                avg_velocity=self.reading_velocity,
                forward_navigations=self.forward_count,
                backward_navigations=self.backward_count,
                started_at=int(session.start_time // 1000),
                ended_at=int(now // 1000),
            )
            self.current_session = None
            self._clear_markers()

        if self._flush is not None:
            try:
                self._flush(record.to_dict())
            except Exception as e:
                logger.warning(f"[ReaderBehavior] Failed to schedule stats flush: {e}")
        return record

    def reset(self) -> None:
        """Forget everything, including the carried-over velocity."""
        with self._lock:
            self.reading_velocity = DEFAULT_VELOCITY
            self.current_session = None
            self._clear_markers()

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            velocity = self.reading_velocity
            forward, backward = self.forward_count, self.backward_count
            session = asdict(self.current_session) if self.current_session else None
        return {
            "reading_velocity": round(velocity, 2),
            "buffer": _buffer_for(velocity),
            "direction": _direction_for(forward, backward),
            "forward_count": forward,
            "backward_count": backward,
            "session": session,
        }


def _buffer_for(velocity: float) -> int:
    for max_velocity, buffer_size in BUFFER_THRESHOLDS:
        if velocity <= max_velocity:
            return buffer_size
    return MAX_BUFFER


def _direction_for(forward: int, backward: int) -> str:
    total = forward + backward
    if total < 3:
        return MIXED
    forward_ratio = forward / total
    if forward_ratio >= 0.8:
        return FORWARD
    if forward_ratio <= 0.2:
        return BACKWARD
    return MIXED


def split_buffer(buffer_size: int, direction: str):
    """(ahead, behind) chapter counts for a buffer and navigation direction."""
    ratio = AHEAD_RATIO.get(direction, AHEAD_RATIO[MIXED])
    ahead = min(buffer_size, math.ceil(round(buffer_size * ratio, 6)))
    return ahead, buffer_size - ahead
