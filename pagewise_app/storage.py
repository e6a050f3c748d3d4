"""
================================================================================
Pagewise - Storage
================================================================================
Async, best-effort persistence for the prefetch engine.

Every public coroutine runs its SQLAlchemy work in a worker thread and never
raises: database errors are logged and turned into a None / empty result.
Callers treat persistence as fire-and-forget.
================================================================================
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .database import get_db_session
from .models import (
    SourceBehaviorRecord, ReadingStat, PrefetchHistory, ChapterPages, ImageCacheEntry
)

logger = logging.getLogger(__name__)

_BEHAVIOR_FIELDS = (
    'current_rate', 'max_observed_rate', 'initial_rate', 'max_rate',
    'consecutive_failures', 'total_requests', 'failed_requests',
    'last_rate_limit_at', 'avg_response_time_ms', 'backoff_until', 'backoff_multiplier',
)

_HISTORY_FIELDS = (
    'status', 'completed_chapters', 'total_pages', 'success_count',
    'failed_count', 'skipped_count', 'failed_pages', 'completed_at',
)


class Storage:
    """Keyed record storage backed by SQLAlchemy."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    async def _run(self, label: str, fn: Callable, *args, default=None):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            logger.warning(f"[Storage] {label} failed: {e}")
            return default

    # =========================================================================
    # SOURCE BEHAVIOR
    # =========================================================================

    async def load_source_behaviors(self) -> List[Dict[str, Any]]:
        return await self._run('load_source_behaviors', self._load_source_behaviors, default=[])

    def _load_source_behaviors(self) -> List[Dict[str, Any]]:
        with get_db_session(self._session_factory) as session:
            return [row.to_dict() for row in session.query(SourceBehaviorRecord).all()]

    async def save_source_behavior(self, row: Dict[str, Any]) -> None:
        await self._run('save_source_behavior', self._save_source_behavior, row)

    def _save_source_behavior(self, row: Dict[str, Any]) -> None:
        with get_db_session(self._session_factory) as session:
            record = session.get(SourceBehaviorRecord, row['source_id'])
            if record is None:
                record = SourceBehaviorRecord(source_id=row['source_id'])
                session.add(record)
            for field in _BEHAVIOR_FIELDS:
                if field in row:
                    value = row[field]
                    if field in ('last_rate_limit_at', 'backoff_until') and value is not None:
                        value = int(value)
                    setattr(record, field, value)

    # =========================================================================
    # READING STATS
    # =========================================================================

    async def record_reading_stats(self, row: Dict[str, Any]) -> None:
        await self._run('record_reading_stats', self._record_reading_stats, row)

    def _record_reading_stats(self, row: Dict[str, Any]) -> None:
        with get_db_session(self._session_factory) as session:
            record = session.query(ReadingStat).filter_by(
                session_date=row['session_date'],
                manga_id=row['manga_id'],
                chapter_id=row['chapter_id'],
            ).first()
            if record is None:
                session.add(ReadingStat(**row))
                return
            # Re-opening the same chapter on the same day accumulates
            record.pages_viewed = (record.pages_viewed or 0) + row['pages_viewed']
            record.reading_time_seconds = (record.reading_time_seconds or 0) + row['reading_time_seconds']
            record.chapters_completed = max(record.chapters_completed or 0, row['chapters_completed'])
            record.forward_navigations = (record.forward_navigations or 0) + row['forward_navigations']
            record.backward_navigations = (record.backward_navigations or 0) + row['backward_navigations']
            record.avg_velocity = row['avg_velocity']
            record.ended_at = row['ended_at']

    async def get_reading_stats(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self._run('get_reading_stats', self._get_reading_stats, limit, default=[])

    def _get_reading_stats(self, limit: int) -> List[Dict[str, Any]]:
        with get_db_session(self._session_factory) as session:
            rows = session.query(ReadingStat).order_by(ReadingStat.ended_at.desc()).limit(limit).all()
            return [row.to_dict() for row in rows]

    # =========================================================================
    # PREFETCH HISTORY
    # =========================================================================

    async def create_prefetch_history(
        self,
        manga_id: str,
        manga_title: str,
        extension_id: str,
        total_chapters: int
    ) -> Optional[int]:
        return await self._run(
            'create_prefetch_history', self._create_prefetch_history,
            manga_id, manga_title, extension_id, total_chapters,
        )

    def _create_prefetch_history(self, manga_id, manga_title, extension_id, total_chapters) -> int:
        with get_db_session(self._session_factory) as session:
            record = PrefetchHistory(
                manga_id=manga_id,
                manga_title=manga_title,
                extension_id=extension_id,
                total_chapters=total_chapters,
                status='running',
                failed_pages=[],
            )
            session.add(record)
            session.flush()
            return record.id

    async def update_prefetch_history(self, history_id: int, **fields) -> None:
        await self._run('update_prefetch_history', self._update_prefetch_history, history_id, fields)

    def _update_prefetch_history(self, history_id: int, fields: Dict[str, Any]) -> None:
        with get_db_session(self._session_factory) as session:
            record = session.get(PrefetchHistory, history_id)
            if record is None:
                logger.warning(f"[Storage] prefetch history {history_id} not found")
                return
            for field in _HISTORY_FIELDS:
                if field in fields:
                    setattr(record, field, fields[field])
            if fields.get('status') in ('completed', 'cancelled', 'failed') and 'completed_at' not in fields:
                record.completed_at = datetime.now(timezone.utc)

    async def get_prefetch_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return await self._run('get_prefetch_history', self._get_prefetch_history, limit, default=[])

    def _get_prefetch_history(self, limit: int) -> List[Dict[str, Any]]:
        with get_db_session(self._session_factory) as session:
            rows = (
                session.query(PrefetchHistory)
                .order_by(PrefetchHistory.started_at.desc(), PrefetchHistory.id.desc())
                .limit(limit)
                .all()
            )
            return [row.to_dict() for row in rows]

    # =========================================================================
    # CHAPTER PAGES
    # =========================================================================

    async def cache_chapter_pages(self, chapter_id: str, extension_id: str, pages: List[str]) -> None:
        await self._run('cache_chapter_pages', self._cache_chapter_pages, chapter_id, extension_id, list(pages))

    def _cache_chapter_pages(self, chapter_id: str, extension_id: str, pages: List[str]) -> None:
        with get_db_session(self._session_factory) as session:
            record = session.get(ChapterPages, chapter_id)
            if record is None:
                session.add(ChapterPages(chapter_id=chapter_id, extension_id=extension_id, pages=pages))
            else:
                record.extension_id = extension_id
                record.pages = pages
                record.cached_at = datetime.now(timezone.utc)

    async def get_chapter_pages(self, chapter_id: str) -> Optional[List[str]]:
        return await self._run('get_chapter_pages', self._get_chapter_pages, chapter_id)

    def _get_chapter_pages(self, chapter_id: str) -> Optional[List[str]]:
        with get_db_session(self._session_factory) as session:
            record = session.get(ChapterPages, chapter_id)
            return list(record.pages) if record else None

    # =========================================================================
    # IMAGE CACHE REGISTRY
    # =========================================================================

    async def register_image(self, url: str, hash_: str, manga_id: str, chapter_id: str, size: int) -> None:
        await self._run('register_image', self._register_image, url, hash_, manga_id, chapter_id, size)

    def _register_image(self, url, hash_, manga_id, chapter_id, size) -> None:
        with get_db_session(self._session_factory) as session:
            record = session.get(ImageCacheEntry, url)
            if record is None:
                session.add(ImageCacheEntry(
                    url=url, hash=hash_, manga_id=manga_id, chapter_id=chapter_id, size=size
                ))
            else:
                record.size = size
                record.cached_at = datetime.now(timezone.utc)

    async def forget_images(self, hashes: List[str]) -> None:
        await self._run('forget_images', self._forget_images, list(hashes))

    def _forget_images(self, hashes: List[str]) -> None:
        with get_db_session(self._session_factory) as session:
            session.query(ImageCacheEntry).filter(ImageCacheEntry.hash.in_(hashes)).delete(synchronize_session=False)
