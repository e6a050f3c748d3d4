"""
================================================================================
Pagewise - Database Models
================================================================================
SQLAlchemy models for everything the prefetch engine persists.

TABLES:
  - SourceBehaviorRecord: Learned AIMD state per content source.
  - ReadingStat: One row per closed reading session.
  - PrefetchHistory: One row per bulk prefetch job.
  - ChapterPages: Page URL list per chapter (overwritten wholesale).
  - ImageCacheEntry: Registry of images saved to the disk cache.
================================================================================
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, DateTime, Float, Text, JSON, BigInteger,
    UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, declared_attr

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


# =============================================================================
# MIXINS
# =============================================================================

class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""
    @declared_attr
    def created_at(cls):
        return Column(DateTime, default=_utcnow, nullable=False)

    @declared_attr
    def updated_at(cls):
        return Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


# =============================================================================
# ADAPTIVE RATE CONTROL
# =============================================================================

class SourceBehaviorRecord(Base, TimestampMixin):
    """Persisted snapshot of a source's learned request rate."""
    __tablename__ = 'source_behavior'

    source_id = Column(String(100), primary_key=True)
    current_rate = Column(Float, nullable=False, default=2.0)
    max_observed_rate = Column(Float, nullable=False, default=2.0)
    initial_rate = Column(Float, nullable=False, default=2.0)
    max_rate = Column(Float, nullable=False, default=10.0)
    consecutive_failures = Column(Integer, default=0)
    total_requests = Column(Integer, default=0)
    failed_requests = Column(Integer, default=0)
    last_rate_limit_at = Column(BigInteger, nullable=True)   # epoch ms
    avg_response_time_ms = Column(Float, default=500.0)
    backoff_until = Column(BigInteger, nullable=True)        # epoch ms
    backoff_multiplier = Column(Integer, default=1)

    def to_dict(self):
        return {
            'source_id': self.source_id,
            'current_rate': self.current_rate,
            'max_observed_rate': self.max_observed_rate,
            'initial_rate': self.initial_rate,
            'max_rate': self.max_rate,
            'consecutive_failures': self.consecutive_failures,
            'total_requests': self.total_requests,
            'failed_requests': self.failed_requests,
            'last_rate_limit_at': self.last_rate_limit_at,
            'avg_response_time_ms': self.avg_response_time_ms,
            'backoff_until': self.backoff_until,
            'backoff_multiplier': self.backoff_multiplier,
        }


# =============================================================================
# READING STATS
# =============================================================================

class ReadingStat(Base):
    """Summary of one reading session (one chapter open/close)."""
    __tablename__ = 'reading_stats'
    __table_args__ = (
        UniqueConstraint('session_date', 'manga_id', 'chapter_id', name='uq_reading_stats_session'),
        Index('idx_reading_stats_date', 'session_date'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_date = Column(Integer, nullable=False)   # epoch seconds at UTC midnight
    source_id = Column(String(100))
    manga_id = Column(String(255))
    chapter_id = Column(String(255))
    pages_viewed = Column(Integer, default=0)
    reading_time_seconds = Column(Integer, default=0)
    chapters_completed = Column(Integer, default=0)
    avg_velocity = Column(Float)
    forward_navigations = Column(Integer, default=0)
    backward_navigations = Column(Integer, default=0)
    started_at = Column(Integer)
    ended_at = Column(Integer)

    def to_dict(self):
        return {
            'id': self.id,
            'session_date': self.session_date,
            'source_id': self.source_id,
            'manga_id': self.manga_id,
            'chapter_id': self.chapter_id,
            'pages_viewed': self.pages_viewed,
            'reading_time_seconds': self.reading_time_seconds,
            'chapters_completed': self.chapters_completed,
            'avg_velocity': self.avg_velocity,
            'forward_navigations': self.forward_navigations,
            'backward_navigations': self.backward_navigations,
            'started_at': self.started_at,
            'ended_at': self.ended_at,
        }


# =============================================================================
# PREFETCH JOBS
# =============================================================================

class PrefetchHistory(Base):
    """Bulk prefetch job record: created at start, finalized at terminal state."""
    __tablename__ = 'prefetch_history'
    __table_args__ = (
        Index('idx_prefetch_manga', 'manga_id'),
        Index('idx_prefetch_started', 'started_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    manga_id = Column(String(255), nullable=False)
    manga_title = Column(String(500))
    extension_id = Column(String(100))
    status = Column(String(20), nullable=False, default='running')  # running, completed, cancelled, failed
    started_at = Column(DateTime, default=_utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    total_chapters = Column(Integer, default=0)
    completed_chapters = Column(Integer, default=0)
    total_pages = Column(Integer, default=0)
    success_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    failed_pages = Column(JSON, default=list)  # [{url, chapter, error}]

    def to_dict(self):
        return {
            'id': self.id,
            'manga_id': self.manga_id,
            'manga_title': self.manga_title,
            'extension_id': self.extension_id,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'total_chapters': self.total_chapters,
            'completed_chapters': self.completed_chapters,
            'total_pages': self.total_pages,
            'success_count': self.success_count,
            'failed_count': self.failed_count,
            'skipped_count': self.skipped_count,
            'failed_pages': self.failed_pages or [],
        }


class ChapterPages(Base):
    """Resolved page URLs for a chapter, keyed by chapter id."""
    __tablename__ = 'chapter_pages'

    chapter_id = Column(String(255), primary_key=True)
    extension_id = Column(String(100), nullable=False)
    pages = Column(JSON, nullable=False, default=list)
    cached_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


class ImageCacheEntry(Base):
    """Registry row for an image stored in the disk cache."""
    __tablename__ = 'image_cache'
    __table_args__ = (
        Index('idx_image_cache_manga', 'manga_id'),
    )

    url = Column(Text, primary_key=True)
    hash = Column(String(32), nullable=False)
    manga_id = Column(String(255))
    chapter_id = Column(String(255))
    size = Column(Integer, default=0)
    cached_at = Column(DateTime, default=_utcnow, nullable=False)
