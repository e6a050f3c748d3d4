"""
================================================================================
Pagewise - Prefetch Job State
================================================================================
Plain data carried by a bulk prefetch job: the cancellation token, the job's
running counters, and the progress / summary events sent to the UI.
================================================================================
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any

from sources.base import ChapterResult


class JobStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CancelToken:
    """Cooperative cancellation flag shared by everything a job spawns."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled first. Returns True when cancelled."""
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


@dataclass
class FailedPage:
    url: str
    chapter: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "chapter": self.chapter, "error": self.error}


@dataclass
class PrefetchProgress:
    current: int = 0
    total: int = 0
    chapter_label: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"current": self.current, "total": self.total, "chapter_label": self.chapter_label}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class PrefetchSummary:
    manga_title: str
    status: JobStatus
    success_count: int
    failed_count: int
    skipped_count: int
    failed_pages: List[FailedPage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "manga_title": self.manga_title,
            "status": self.status.value,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "failed_pages": [p.to_dict() for p in self.failed_pages],
        }


@dataclass
class PrefetchJob:
    """One bulk prefetch request and its running totals."""
    manga_id: str
    extension_id: str
    chapters: List[ChapterResult]
    manga_title: str = ""
    history_id: Optional[int] = None
    completed_chapters: int = 0
    total_pages: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    failed_pages: List[FailedPage] = field(default_factory=list)
    token: CancelToken = field(default_factory=CancelToken)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def final_status(self) -> JobStatus:
        if self.cancelled:
            return JobStatus.CANCELLED
        if self.failed_count > 0 and self.success_count == 0:
            return JobStatus.FAILED
        return JobStatus.COMPLETED

    def history_fields(self) -> Dict[str, Any]:
        return {
            "completed_chapters": self.completed_chapters,
            "total_pages": self.total_pages,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
        }
