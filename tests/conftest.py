import asyncio
from typing import Dict, List, Optional

import pytest

from pagewise_app.cache import MemoryBackend, PageListCache
from pagewise_app.config import PrefetchConfig
from pagewise_app.image_cache import CACHE_FULL, CachedPath
from pagewise_app.prefetch import (
    PrefetchOrchestrator, ReadingVelocityTracker, SourceBehaviorTracker
)
from sources.base import FetchError, PageListBatch


class ManualClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeSources:
    """
    Stand-in for SourceManager.

    pages[chapter_id]   -> list of URLs, or an exception for get_pages to raise
    streams[chapter_id] -> list of PageListBatch to yield (defaults to one batch of pages)
    gates[chapter_id]   -> asyncio.Event the stream waits on after its first batch
    """

    def __init__(self):
        self.pages: Dict[str, object] = {}
        self.streams: Dict[str, List[PageListBatch]] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.get_pages_calls: List[str] = []
        self.stream_calls: List[str] = []
        self.hints = None

    def manifest_hints(self, source_id):
        return self.hints

    def image_headers(self, source_id):
        return {}

    async def get_pages(self, source_id, chapter_id):
        self.get_pages_calls.append(chapter_id)
        await asyncio.sleep(0)
        result = self.pages.get(chapter_id, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def fetch_page_list(self, source_id, chapter_id):
        self.stream_calls.append(chapter_id)
        batches = self.streams.get(chapter_id)
        if batches is None:
            result = self.pages.get(chapter_id, [])
            if isinstance(result, FetchError):
                batches = [PageListBatch(done=True, error=str(result), status_code=result.status_code)]
            else:
                batches = [PageListBatch(pages=list(result), done=True, total=len(result))]
        for i, batch in enumerate(batches):
            await asyncio.sleep(0)
            yield batch
            gate = self.gates.get(chapter_id)
            if i == 0 and gate is not None:
                await gate.wait()


class FakeImageCache:
    """
    Records saves and returns fake paths.

    fail_times[url] -> number of attempts that raise before success (-1 = always)
    full            -> every save returns CACHE_FULL
    full_after      -> saves after this many successes return CACHE_FULL
    on_disk         -> URLs answered from disk without a fetch
    """

    def __init__(self):
        self.saves: List[str] = []
        self.saved: List[str] = []
        self.fail_times: Dict[str, int] = {}
        self.fail_error: Exception = FetchError("HTTP 500", status_code=500)
        self.full = False
        self.full_after: Optional[int] = None
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_disk = set()

    async def save(self, url, source_id, manga_id, chapter_id, is_prefetch=False, headers=None):
        self.saves.append(url)
        if self.full or (self.full_after is not None and len(self.saved) >= self.full_after):
            return CACHE_FULL
        if url in self.on_disk:
            return CachedPath(f"/cache/{url}", fetched=False)

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        remaining = self.fail_times.get(url, 0)
        if remaining != 0:
            if remaining > 0:
                self.fail_times[url] = remaining - 1
            raise self.fail_error
        self.saved.append(url)
        return f"/cache/{len(self.saved)}"

    def get_cache_size(self):
        return 0

    async def close(self):
        pass


class RecordingStorage:
    """Async storage double that records every write."""

    def __init__(self):
        self.behaviors: List[dict] = []
        self.reading_stats: List[dict] = []
        self.chapter_pages: List[tuple] = []
        self.history_created: List[tuple] = []
        self.history_updates: List[dict] = []
        self.saved_behaviors: List[dict] = []

    async def load_source_behaviors(self):
        return list(self.saved_behaviors)

    async def save_source_behavior(self, row):
        self.behaviors.append(row)

    async def record_reading_stats(self, row):
        self.reading_stats.append(row)

    async def cache_chapter_pages(self, chapter_id, extension_id, pages):
        self.chapter_pages.append((chapter_id, extension_id, list(pages)))

    async def get_chapter_pages(self, chapter_id):
        for cid, _, pages in reversed(self.chapter_pages):
            if cid == chapter_id:
                return pages
        return None

    async def create_prefetch_history(self, manga_id, manga_title, extension_id, total_chapters):
        self.history_created.append((manga_id, manga_title, extension_id, total_chapters))
        return len(self.history_created)

    async def update_prefetch_history(self, history_id, **fields):
        self.history_updates.append(dict(fields, history_id=history_id))

    async def get_prefetch_history(self, limit=20):
        return []

    async def get_reading_stats(self, limit=50):
        return list(self.reading_stats)

    async def register_image(self, url, hash_, manga_id, chapter_id, size):
        pass

    async def forget_images(self, hashes):
        pass


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fake_sources():
    return FakeSources()


@pytest.fixture
def fake_cache():
    return FakeImageCache()


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
def fast_config():
    return PrefetchConfig(
        max_attempts=3,
        page_timeout=1.0,
        retry_backoff=0.0,
        stream_timeout=5.0,
        passive_batch_delay=0.0,
        history_interval=2,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(fake_sources, fake_cache, storage, fast_config, clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)
        await asyncio.sleep(0.001)

    behavior = SourceBehaviorTracker(clock=clock, rng=lambda: 0.5)
    velocity = ReadingVelocityTracker(clock=clock)
    return PrefetchOrchestrator(
        sources=fake_sources,
        image_cache=fake_cache,
        storage=storage,
        behavior=behavior,
        velocity=velocity,
        config=fast_config,
        page_cache=PageListCache(10, backend=MemoryBackend(10)),
        sleep=fake_sleep,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)
