"""
================================================================================
Pagewise - Prefetch Orchestrator
================================================================================
Runs the two kinds of prefetch against a content source:

PASSIVE (reader navigation):
  1. Size the look-ahead buffer (static setting or reading velocity)
  2. Split it ahead / behind by navigation direction
  3. Skip everything if the source is in a backoff window
  4. Stagger chapter starts by max(request delay, 1 s), re-checking the
     backoff window before each one
  5. Per chapter: one page-list fetch, then low-priority image saves

BULK (download a whole manga):
  - Chapters strictly one after another; pages within a chapter in
    parallel through a bounded DownloadQueue
  - Page lists are streamed; new URLs start downloading immediately
  - A chapter whose page list fails pauses the job until the UI says
    retry / skip / cancel
  - One job at a time; a second request while one runs is ignored

Every remote outcome is fed back into the SourceBehaviorTracker.
================================================================================
"""

import time
import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from sources.base import ChapterResult
from ..cache import PageListCache
from ..config import PrefetchConfig
from ..image_cache import CACHE_FULL
from .download_queue import DownloadQueue
from .errors import ChapterFetchError, status_code_for
from .jobs import (
    JobStatus, PrefetchJob, PrefetchProgress, PrefetchSummary
)
from .reading_velocity import MIXED, ReadingVelocityTracker, split_buffer
from .source_behavior import SourceBehaviorTracker

logger = logging.getLogger(__name__)

RETRY = "retry"
SKIP = "skip"
CANCEL = "cancel"


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000


def _as_chapter(chapter) -> ChapterResult:
    if isinstance(chapter, ChapterResult):
        return chapter
    if isinstance(chapter, dict):
        return ChapterResult.from_dict(chapter)
    return ChapterResult(id=str(chapter))


class PrefetchOrchestrator:
    """
    Args:
        sources: SourceManager-like object (get_pages, fetch_page_list, manifest_hints)
        image_cache: ImageCache-like object (save -> path | CACHE_FULL)
        storage: Storage-like object (page lists, prefetch history)
        behavior: SourceBehaviorTracker
        velocity: ReadingVelocityTracker
    """

    def __init__(
        self,
        sources,
        image_cache,
        storage,
        behavior: SourceBehaviorTracker,
        velocity: ReadingVelocityTracker,
        config: Optional[PrefetchConfig] = None,
        page_cache: Optional[PageListCache] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.sources = sources
        self.image_cache = image_cache
        self.storage = storage
        self.behavior = behavior
        self.velocity = velocity
        self.config = config or PrefetchConfig()
        self.page_cache = page_cache or PageListCache(self.config.page_list_cache_size)
        self._sleep = sleep

        self._background: Set[asyncio.Task] = set()

        # Bulk job state
        self._job: Optional[PrefetchJob] = None
        self._progress = PrefetchProgress()
        self._summary: Optional[PrefetchSummary] = None
        self._resolution: Optional[asyncio.Future] = None
        self._progress_listeners: List[Callable[[PrefetchProgress], None]] = []
        self._summary_listeners: List[Callable[[PrefetchSummary], None]] = []

    # =========================================================================
    # BACKGROUND TASKS
    # =========================================================================

    def _spawn(self, coro, label: str = "task") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(label)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[Prefetch] Background {task.get_name()} failed: {exc!r}")

    async def wait_background(self) -> None:
        """Wait until every fire-and-forget task (including ones they spawn) is done."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        if self._job is not None:
            self._job.token.cancel()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)

    def _hints(self, source_id: str) -> Optional[Dict[str, float]]:
        manifest_hints = getattr(self.sources, 'manifest_hints', None)
        return manifest_hints(source_id) if manifest_hints else None

    # =========================================================================
    # PASSIVE PREFETCH
    # =========================================================================

    def plan_passive(self, chapters: Sequence[Union[ChapterResult, str]], current_index: int) -> List[str]:
        """
        Chapter ids to prefetch around `current_index`.

        `chapters` is in reading order: index + 1 is the next chapter.
        """
        if self.config.adaptive_prefetch:
            buffer_size = self.velocity.calculate_adaptive_buffer()
            direction = self.velocity.get_navigation_direction()
        else:
            buffer_size = self.config.prefetch_chapters
            direction = MIXED

        ahead, behind = split_buffer(buffer_size, direction)
        ids = [c.id if isinstance(c, ChapterResult) else str(c) for c in chapters]

        targets = []
        for i in range(1, ahead + 1):
            idx = current_index + i
            if 0 <= idx < len(ids):
                targets.append(ids[idx])
        for i in range(1, behind + 1):
            idx = current_index - i
            if 0 <= idx < len(ids):
                targets.append(ids[idx])
        return targets

    def on_chapter_navigation(
        self,
        source_id: str,
        manga_id: str,
        chapters: Sequence[Union[ChapterResult, str]],
        current_index: int,
    ) -> List[str]:
        """Schedule passive prefetch for the chapters around the one just opened."""
        if self.config.prefetch_chapters <= 0 and not self.config.adaptive_prefetch:
            return []

        targets = self.plan_passive(chapters, current_index)
        if not targets:
            return []

        self.behavior.get_or_create(source_id, self._hints(source_id))
        if self.behavior.should_throttle(source_id):
            logger.info(f"[Prefetch] {source_id} is throttled, skipping prefetch")
            return []

        stagger_ms = max(self.behavior.get_request_delay(source_id), self.config.min_stagger_ms)
        self._spawn(self._staggered_prefetch(source_id, manga_id, targets, stagger_ms), "passive schedule")
        return targets

    async def _staggered_prefetch(self, source_id: str, manga_id: str, targets: List[str], stagger_ms: float):
        for i, chapter_id in enumerate(targets):
            if i:
                await self._sleep(stagger_ms / 1000)
            if self.behavior.should_throttle(source_id):
                logger.info(f"[Prefetch] {source_id} throttled, dropping {chapter_id}")
                continue
            self.prefetch_chapter(source_id, manga_id, chapter_id)

    def prefetch_chapter(self, source_id: str, manga_id: str, chapter_id: str) -> bool:
        """Fetch one chapter's page list in the background. False if already cached or running."""
        if not self.page_cache.begin(chapter_id):
            return False
        self._spawn(self._prefetch_chapter(source_id, manga_id, chapter_id), f"prefetch {chapter_id}")
        return True

    async def _prefetch_chapter(self, source_id: str, manga_id: str, chapter_id: str) -> None:
        self.behavior.get_or_create(source_id, self._hints(source_id))
        started = time.monotonic()

        try:
            try:
                pages = await self.sources.get_pages(source_id, chapter_id)
            except Exception as e:
                status = status_code_for(e)
                self.behavior.record_failure(source_id, status)
                logger.warning(f"[Prefetch] Failed to prefetch chapter {chapter_id} ({status}): {e}")
                return

            self.behavior.record_success(source_id, _elapsed_ms(started))
            self.page_cache.put(chapter_id, pages)
        finally:
            self.page_cache.finish(chapter_id)

        logger.info(f"[Prefetch] Caching {len(pages)} page URLs for {chapter_id}")
        self._spawn(self.storage.cache_chapter_pages(chapter_id, source_id, pages), "cache pages")
        await self._passive_saves(source_id, manga_id, chapter_id, pages)

    async def _passive_saves(self, source_id: str, manga_id: str, chapter_id: str, pages: List[str]) -> None:
        batch_size = max(1, self.config.passive_concurrency)

        for i in range(0, len(pages), batch_size):
            batch = pages[i:i + batch_size]
            results = await asyncio.gather(*(
                self._passive_save(url, source_id, manga_id, chapter_id) for url in batch
            ))
            if any(r is CACHE_FULL for r in results):
                logger.info(f"[Prefetch] Cache limit reached, stopping prefetch for chapter {chapter_id}")
                return
            if i + batch_size < len(pages):
                await self._sleep(self.config.passive_batch_delay)

    async def _passive_save(self, url, source_id, manga_id, chapter_id):
        try:
            return await self.image_cache.save(url, source_id, manga_id, chapter_id, True)
        except Exception as e:
            logger.warning(f"[Prefetch] Failed to cache page {url}: {e}")
            return None

    def get_prefetched_pages(self, chapter_id: str) -> Optional[List[str]]:
        return self.page_cache.get(chapter_id)

    def clear_prefetch_cache(self) -> None:
        self.page_cache.clear()

    # =========================================================================
    # BULK PREFETCH - STATE
    # =========================================================================

    @property
    def is_prefetching(self) -> bool:
        return self._job is not None

    @property
    def prefetch_manga_id(self) -> Optional[str]:
        return self._job.manga_id if self._job else None

    @property
    def progress(self) -> PrefetchProgress:
        return self._progress

    @property
    def summary(self) -> Optional[PrefetchSummary]:
        return self._summary

    @property
    def is_paused(self) -> bool:
        return self._resolution is not None and not self._resolution.done()

    def add_progress_listener(self, callback: Callable[[PrefetchProgress], None]) -> None:
        self._progress_listeners.append(callback)

    def add_summary_listener(self, callback: Callable[[PrefetchSummary], None]) -> None:
        self._summary_listeners.append(callback)

    def _set_progress(self, progress: PrefetchProgress) -> None:
        self._progress = progress
        for callback in self._progress_listeners:
            try:
                callback(progress)
            except Exception as e:
                logger.warning(f"[Prefetch] Progress listener failed: {e}")

    def _publish_summary(self, summary: PrefetchSummary) -> None:
        self._summary = summary
        for callback in self._summary_listeners:
            try:
                callback(summary)
            except Exception as e:
                logger.warning(f"[Prefetch] Summary listener failed: {e}")

    def acknowledge_summary(self) -> None:
        self._summary = None

    def cancel(self) -> bool:
        if self._job is None:
            return False
        logger.info("[Prefetch] Prefetch cancelled by user")
        self._job.token.cancel()
        return True

    def resolve_error(self, action: str) -> bool:
        """Answer a paused job: 'retry' the failed chapter, 'skip' it, or 'cancel' the job."""
        if action not in (RETRY, SKIP, CANCEL):
            raise ValueError(f"Unknown action: {action}")
        if not self.is_paused:
            return False
        if action == CANCEL:
            return self.cancel()
        self._resolution.set_result(action)
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_prefetching": self.is_prefetching,
            "prefetch_manga_id": self.prefetch_manga_id,
            "paused": self.is_paused,
            "progress": self._progress.to_dict(),
            "summary": self._summary.to_dict() if self._summary else None,
        }

    # =========================================================================
    # BULK PREFETCH - JOB
    # =========================================================================

    def _claim_job(self, chapters, extension_id, manga_id, manga_title) -> Optional[PrefetchJob]:
        if self._job is not None:
            logger.info("[Prefetch] Prefetch already in progress, skipping")
            return None
        self._job = PrefetchJob(
            manga_id=manga_id,
            extension_id=extension_id,
            chapters=[_as_chapter(c) for c in chapters],
            manga_title=manga_title,
        )
        return self._job

    def start_bulk_prefetch(
        self,
        chapters: Sequence[Union[ChapterResult, Dict[str, Any]]],
        extension_id: str,
        manga_id: str,
        manga_title: str = "",
    ) -> bool:
        """Start a bulk job in the background. False if one is already running."""
        job = self._claim_job(chapters, extension_id, manga_id, manga_title)
        if job is None:
            return False
        self._spawn(self._run_job(job), f"bulk {manga_id}")
        return True

    async def run_bulk_prefetch(
        self,
        chapters: Sequence[Union[ChapterResult, Dict[str, Any]]],
        extension_id: str,
        manga_id: str,
        manga_title: str = "",
    ) -> Optional[PrefetchSummary]:
        """Run a bulk job to completion. None if one is already running."""
        job = self._claim_job(chapters, extension_id, manga_id, manga_title)
        if job is None:
            return None
        return await self._run_job(job)

    async def _run_job(self, job: PrefetchJob) -> PrefetchSummary:
        logger.info(f"[Prefetch] Starting prefetch for {len(job.chapters)} chapters")
        self._summary = None

        # The slot stays claimed until the summary is out, so a new job
        # cannot start while this one is still being recorded
        try:
            try:
                status = await self._run_chapters(job)
            except Exception as e:
                logger.error(f"[Prefetch] Error during prefetch: {e!r}")
                status = JobStatus.FAILED
            return await self._finish_job(job, status)
        finally:
            self._job = None
            self._set_progress(PrefetchProgress())

    async def _run_chapters(self, job: PrefetchJob) -> JobStatus:
        total = len(job.chapters)
        job.history_id = await self.storage.create_prefetch_history(
            job.manga_id, job.manga_title, job.extension_id, total
        )
        self._set_progress(PrefetchProgress(current=0, total=total, chapter_label="Starting..."))
        self.behavior.get_or_create(job.extension_id, self._hints(job.extension_id))

        for index, chapter in enumerate(job.chapters):
            if job.cancelled:
                break
            if await self._wait_out_backoff(job):
                break

            self._set_progress(PrefetchProgress(current=index + 1, total=total, chapter_label=chapter.label))
            await self._process_chapter(job, chapter)
            if job.cancelled:
                break

            job.completed_chapters += 1
            interval = self.config.history_interval
            if job.history_id is not None and interval and job.completed_chapters % interval == 0:
                self._spawn(
                    self.storage.update_prefetch_history(job.history_id, **job.history_fields()),
                    "history update",
                )

        return job.final_status()

    async def _finish_job(self, job: PrefetchJob, status: JobStatus) -> PrefetchSummary:
        if job.history_id is not None:
            fields = job.history_fields()
            fields["failed_pages"] = [p.to_dict() for p in job.failed_pages[:self.config.history_failed_pages]]
            await self.storage.update_prefetch_history(job.history_id, status=status.value, **fields)

        summary = PrefetchSummary(
            manga_title=job.manga_title,
            status=status,
            success_count=job.success_count,
            failed_count=job.failed_count,
            skipped_count=job.skipped_count,
            failed_pages=job.failed_pages[:self.config.summary_failed_pages],
        )
        logger.info(
            f"[Prefetch] Finished ({status.value}): {job.success_count} saved, "
            f"{job.failed_count} failed, {job.skipped_count} skipped"
        )
        self._publish_summary(summary)
        return summary

    async def _wait_out_backoff(self, job: PrefetchJob) -> bool:
        """Sleep through an active backoff window. True if the job was cancelled meanwhile."""
        if not self.behavior.should_throttle(job.extension_id):
            return job.cancelled
        delay_ms = self.behavior.get_request_delay(job.extension_id)
        logger.info(f"[Prefetch] {job.extension_id} in backoff, waiting {delay_ms / 1000:.1f}s")
        return await job.token.sleep(delay_ms / 1000)

    def _backoff_ms(self, source_id: str) -> float:
        """Remaining backoff window for `source_id`, 0 when it is not throttled."""
        if not self.behavior.should_throttle(source_id):
            return 0.0
        return self.behavior.get_request_delay(source_id)

    async def _process_chapter(self, job: PrefetchJob, chapter: ChapterResult) -> None:
        while True:
            try:
                await self._prefetch_bulk_chapter(job, chapter)
                return
            except ChapterFetchError as e:
                action = await self._pause_on_error(job, chapter, e)
                if action == RETRY and not job.cancelled:
                    logger.info(f"[Prefetch] Retrying {chapter.label}")
                    continue
                if not job.cancelled:
                    job.skipped_count += 1
                return
            except Exception as e:
                logger.error(f"[Prefetch] Unexpected error processing chapter {chapter.id}: {e!r}")
                job.skipped_count += 1
                return

    async def _pause_on_error(self, job: PrefetchJob, chapter: ChapterResult, error: Exception) -> str:
        message = f"{chapter.label}: {error}"
        logger.warning(f"[Prefetch] Page list failed for {message}")
        self._set_progress(replace(self._progress, error=message))

        if not self.config.pause_on_error:
            return SKIP

        self._resolution = asyncio.get_running_loop().create_future()
        cancelled = asyncio.ensure_future(job.token.wait())
        try:
            await asyncio.wait({self._resolution, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()

        action = self._resolution.result() if self._resolution.done() else CANCEL
        self._resolution = None
        self._set_progress(replace(self._progress, error=None))
        return action

    async def _prefetch_bulk_chapter(self, job: PrefetchJob, chapter: ChapterResult) -> None:
        ext = job.extension_id
        pages: List[str] = []

        queue = DownloadQueue(
            save=lambda url: self.image_cache.save(url, ext, job.manga_id, chapter.id, True),
            token=job.token,
            chapter_label=chapter.chapter or chapter.id,
            concurrency=self.config.concurrency,
            max_attempts=self.config.max_attempts,
            page_timeout=self.config.page_timeout,
            retry_backoff=self.config.retry_backoff,
            retry_backoff_cap=self.config.retry_backoff_cap,
            on_success=lambda url, ms: self.behavior.record_success(ext, ms),
            on_failure=lambda url, status: self.behavior.record_failure(ext, status),
            backoff_delay=lambda: self._backoff_ms(ext),
        )
        queue.start()

        try:
            await self._stream_pages(job, chapter, pages, queue)
        except BaseException:
            await queue.abort()
            raise

        await queue.close()

        if not pages:
            logger.info(f"[Prefetch] {chapter.label} has no pages, skipping")
            job.skipped_count += 1
            return

        job.total_pages += len(pages)
        job.success_count += queue.success_count
        job.failed_count += queue.failed_count
        job.failed_pages.extend(queue.failed_pages)

    async def _stream_pages(self, job: PrefetchJob, chapter: ChapterResult, pages: List[str], queue: DownloadQueue):
        """Feed streamed URLs to `queue`. Returns when the stream is done or the job is cancelled."""
        ext = job.extension_id
        started = time.monotonic()

        consumer = asyncio.ensure_future(self._consume_stream(job, chapter, pages, queue))
        cancelled = asyncio.ensure_future(job.token.wait())
        try:
            done, _ = await asyncio.wait(
                {consumer, cancelled},
                timeout=self.config.stream_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()

        if consumer in done:
            try:
                consumer.result()
            except ChapterFetchError as e:
                self.behavior.record_failure(ext, status_code_for(e))
                raise
            if not job.cancelled:
                self.behavior.record_success(ext, _elapsed_ms(started))
                return

        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

        if job.cancelled:
            # Keep whatever the stream had already produced
            if pages:
                self._spawn(self.storage.cache_chapter_pages(chapter.id, ext, list(pages)), "cache pages")
            return

        self.behavior.record_failure(ext, -1)
        raise ChapterFetchError("Timeout waiting for streaming pages", status_code=-1)

    async def _consume_stream(self, job: PrefetchJob, chapter: ChapterResult, pages: List[str], queue: DownloadQueue):
        seen = set(pages)
        try:
            async for batch in self.sources.fetch_page_list(job.extension_id, chapter.id):
                if job.cancelled:
                    return
                if batch.error:
                    raise ChapterFetchError(batch.error, batch.status_code)

                for url in batch.pages:
                    if url not in seen:
                        seen.add(url)
                        pages.append(url)
                        queue.put(url)

                if batch.done:
                    break
        except ChapterFetchError:
            raise
        except Exception as e:
            raise ChapterFetchError(str(e) or type(e).__name__, status_code_for(e)) from e

        if pages and not job.cancelled:
            # Saved before downloads finish so an interrupted job still leaves the list behind
            self._spawn(self.storage.cache_chapter_pages(chapter.id, job.extension_id, list(pages)), "cache pages")
