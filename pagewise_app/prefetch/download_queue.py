"""
================================================================================
Pagewise - Download Queue
================================================================================
Bounded, retrying page downloader for one chapter of a bulk prefetch job.

URLs are fed in while the page list is still streaming; a fixed pool of
workers pulls them off an asyncio.Queue, so at most `concurrency` saves are
ever in flight. Each page gets up to `max_attempts` tries with a per-attempt
timeout and a linear backoff between tries.

    queue = DownloadQueue(save, token, concurrency=8)
    queue.start()
    queue.put(url) ...
    await queue.close()   # no more URLs; wait for workers to drain
================================================================================
"""

import time
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from ..image_cache import CACHE_FULL
from .errors import status_code_for
from .jobs import CancelToken, FailedPage

logger = logging.getLogger(__name__)

_STOP = object()


class PageOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    LIMIT = "limit"
    CANCELLED = "cancelled"


class DownloadQueue:
    """Fixed worker pool over an asyncio.Queue of page URLs."""

    def __init__(
        self,
        save: Callable[[str], Awaitable],
        token: CancelToken,
        chapter_label: str = "",
        concurrency: int = 8,
        max_attempts: int = 25,
        page_timeout: float = 15.0,
        retry_backoff: float = 0.5,
        retry_backoff_cap: int = 5,
        on_success: Optional[Callable[[str, float], None]] = None,
        on_failure: Optional[Callable[[str, int], None]] = None,
        backoff_delay: Optional[Callable[[], float]] = None,
    ):
        self._save = save
        self.token = token
        self.chapter_label = chapter_label
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.page_timeout = page_timeout
        self.retry_backoff = retry_backoff
        self.retry_backoff_cap = retry_backoff_cap
        self._on_success = on_success
        self._on_failure = on_failure
        self._backoff_delay = backoff_delay

        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._closed = False

        self.success_count = 0
        self.failed_count = 0
        self.cache_full = False
        self.failed_pages: List[FailedPage] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.ensure_future(self._worker()) for _ in range(self.concurrency)
        ]

    def put(self, url: str) -> bool:
        """Queue a URL. False once the queue is closed or the cache is full."""
        if self._closed or self.cache_full:
            return False
        self._queue.put_nowait(url)
        return True

    async def close(self) -> None:
        """Stop accepting URLs and wait until every worker has finished."""
        if not self._closed:
            self._closed = True
            for _ in self._workers:
                self._queue.put_nowait(_STOP)
        if self._workers:
            await asyncio.gather(*self._workers)

    async def abort(self) -> None:
        """Cancel workers outright (used when the job itself is torn down)."""
        self._closed = True
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

    # =========================================================================
    # WORKERS
    # =========================================================================

    async def _worker(self) -> None:
        while True:
            url = await self._queue.get()
            if url is _STOP:
                return
            # Drain without downloading once cancelled or out of space
            if self.token.cancelled or self.cache_full:
                continue

            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                outcome = await self._download(url)
            finally:
                self.in_flight -= 1

            if outcome is PageOutcome.SUCCESS:
                self.success_count += 1
            elif outcome is PageOutcome.FAILED:
                self.failed_count += 1
            elif outcome is PageOutcome.LIMIT:
                if not self.cache_full:
                    logger.info(f"[Prefetch] Cache limit reached, abandoning {self.chapter_label}")
                self.cache_full = True

    async def _download(self, url: str) -> PageOutcome:
        last_error = ""

        for attempt in range(1, self.max_attempts + 1):
            if self.token.cancelled:
                return PageOutcome.CANCELLED

            started = time.monotonic()
            try:
                result = await asyncio.wait_for(self._save(url), timeout=self.page_timeout)
            except asyncio.TimeoutError as e:
                last_error = "Save timeout"
                self._failed_attempt(url, status_code_for(e))
            except Exception as e:
                last_error = str(e) or type(e).__name__
                self._failed_attempt(url, status_code_for(e))
            else:
                if result is CACHE_FULL:
                    return PageOutcome.LIMIT
                # Files already on disk never reached the source
                if self._on_success is not None and getattr(result, "fetched", True):
                    self._on_success(url, (time.monotonic() - started) * 1000)
                return PageOutcome.SUCCESS

            if attempt < self.max_attempts:
                delay = self.retry_backoff * min(attempt, self.retry_backoff_cap)
                if self._backoff_delay is not None:
                    delay = max(delay, self._backoff_delay() / 1000)
                if await self.token.sleep(delay):
                    return PageOutcome.CANCELLED

        logger.debug(f"[Prefetch] Giving up on {url} after {self.max_attempts} attempts: {last_error}")
        self.failed_pages.append(FailedPage(url=url, chapter=self.chapter_label, error=last_error))
        return PageOutcome.FAILED

    def _failed_attempt(self, url: str, status: int) -> None:
        if self._on_failure is not None:
            self._on_failure(url, status)
