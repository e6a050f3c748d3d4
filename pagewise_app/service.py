"""
================================================================================
Pagewise - Prefetch Service
================================================================================
Owns the asyncio event loop the prefetch engine runs on and wires the pieces
together (storage, sources, image cache, trackers, orchestrator).

Flask routes are sync and run on worker threads, so the loop lives in its own
daemon thread. Routes hand work over with run() / call(); tracker queries
that are lock-protected may be called directly.
================================================================================
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from sources import SourceManager
from .cache import PageListCache
from .config import PrefetchConfig, CacheConfig
from .image_cache import ImageCache
from .log import log
from .prefetch import PrefetchOrchestrator, ReadingVelocityTracker, SourceBehaviorTracker
from .storage import Storage

logger = logging.getLogger(__name__)


class PrefetchService:
    """Event-loop thread plus everything the prefetch engine needs."""

    def __init__(
        self,
        prefetch_config: Optional[PrefetchConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        storage: Optional[Storage] = None,
        sources: Optional[SourceManager] = None,
        image_cache: Optional[ImageCache] = None,
        page_cache: Optional[PageListCache] = None,
    ):
        self.prefetch_config = prefetch_config or PrefetchConfig.from_env()
        self.cache_config = cache_config or CacheConfig.from_env()
        self.storage = storage or Storage()
        self.sources = sources or SourceManager()
        self.page_cache = page_cache or PageListCache(self.prefetch_config.page_list_cache_size)
        self.image_cache = image_cache

        self.behavior = SourceBehaviorTracker(persist=self._persist_behavior)
        self.velocity = ReadingVelocityTracker(flush=self._flush_reading_stats)
        self.orchestrator: Optional[PrefetchOrchestrator] = None

        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="pagewise-prefetch", daemon=True)
        self._started = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> "PrefetchService":
        if self._started:
            return self
        self._started = True
        self._thread.start()
        self.run(self._setup())
        log("⚡ Prefetch service started")
        return self

    async def _setup(self) -> None:
        if self.image_cache is None:
            self.image_cache = ImageCache(
                self.cache_config,
                storage=self.storage,
                headers_for=self.sources.image_headers,
            )
        self.orchestrator = PrefetchOrchestrator(
            sources=self.sources,
            image_cache=self.image_cache,
            storage=self.storage,
            behavior=self.behavior,
            velocity=self.velocity,
            config=self.prefetch_config,
            page_cache=self.page_cache,
        )
        self.orchestrator.add_summary_listener(
            lambda s: log(f"📦 Prefetch {s.status.value}: {s.success_count} saved, "
                          f"{s.failed_count} failed, {s.skipped_count} skipped")
        )
        await self.behavior.initialize(self.storage)

    def stop(self, timeout: float = 10.0) -> None:
        if not self._started:
            return
        try:
            self.run(self._teardown(), timeout=timeout)
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout)
            self._started = False

    async def _teardown(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.shutdown()
        if self.image_cache is not None:
            await self.image_cache.close()
        await self.sources.close()

    # =========================================================================
    # THREAD BRIDGE
    # =========================================================================

    def run(self, coro, timeout: Optional[float] = 30.0) -> Any:
        """Run a coroutine on the service loop and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call(self, fn: Callable, *args, timeout: Optional[float] = 30.0, **kwargs) -> Any:
        """Run a plain callable on the service loop (for code that touches asyncio state)."""
        async def _call():
            return fn(*args, **kwargs)
        return self.run(_call(), timeout=timeout)

    def spawn(self, coro) -> Future:
        """Fire-and-forget a coroutine on the service loop."""
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(f"[PrefetchService] Background task failed: {exc!r}")

    def _persist_behavior(self, row: Dict[str, Any]) -> None:
        self.spawn(self.storage.save_source_behavior(row))

    def _flush_reading_stats(self, row: Dict[str, Any]) -> None:
        self.spawn(self.storage.record_reading_stats(row))


# Singleton used by the Flask routes
_service: Optional[PrefetchService] = None
_service_lock = threading.Lock()


def get_prefetch_service() -> PrefetchService:
    global _service
    with _service_lock:
        if _service is None:
            _service = PrefetchService().start()
        return _service


def set_prefetch_service(service: Optional[PrefetchService]) -> None:
    """Install (or clear) the process-wide service. Used by create_app and tests."""
    global _service
    with _service_lock:
        _service = service
