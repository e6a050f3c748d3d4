"""
================================================================================
Pagewise - Image Cache
================================================================================
Disk cache for downloaded page images.

  - Files are named md5(url) inside IMAGE_CACHE_DIR
  - Concurrent saves of the same URL share one download, whoever asks
    (passive prefetch, bulk prefetch, the reader)
  - Prefetch saves are refused with CACHE_FULL once the size budget is used
    up (unless IGNORE_CACHE_LIMIT_FOR_PREFETCH); reader saves always go
    through and schedule an oldest-first prune instead
================================================================================
"""

import os
import asyncio
import hashlib
import logging
from typing import Callable, Dict, Optional, Union

import aiofiles
from curl_cffi.requests import AsyncSession

from sources.base import FetchError
from .config import CacheConfig

logger = logging.getLogger(__name__)


class _CacheFull:
    """Returned by ImageCache.save when a prefetch save would exceed the budget."""

    def __repr__(self):
        return "CACHE_FULL"

    def __bool__(self):
        return False


CACHE_FULL = _CacheFull()


class CachedPath(str):
    """Path returned by ImageCache.save; `fetched` is False when the file was already on disk."""

    fetched = True

    def __new__(cls, path: str, fetched: bool = True):
        obj = super().__new__(cls, path)
        obj.fetched = fetched
        return obj


def url_hash(url: str) -> str:
    return hashlib.md5(url.encode()).hexdigest()


class ImageFetcher:
    """Downloads image bytes with curl_cffi browser impersonation."""

    def __init__(self, impersonate: str = "chrome120", timeout: float = 30.0):
        self.impersonate = impersonate
        self.timeout = timeout
        self._session: Optional[AsyncSession] = None

    async def _get_session(self) -> AsyncSession:
        if self._session is None:
            self._session = AsyncSession(impersonate=self.impersonate)
        return self._session

    async def fetch(self, url: str, headers: Optional[Dict[str, str]] = None) -> bytes:
        session = await self._get_session()
        request_headers = {"Accept": "image/webp,image/png,image/jpeg,*/*"}
        if headers:
            request_headers.update(headers)

        try:
            response = await session.get(url, headers=request_headers, timeout=self.timeout)
        except Exception as e:
            raise FetchError(f"Failed to fetch {url}: {e}") from e

        if response.status_code != 200:
            raise FetchError(f"Failed to fetch {url}: {response.status_code}", status_code=response.status_code)
        return response.content

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None


class ImageCache:
    """On-disk image cache keyed by URL."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        storage=None,
        fetcher: Optional[ImageFetcher] = None,
        headers_for: Optional[Callable[[str], Dict[str, str]]] = None,
        prune_delay: float = 5.0,
    ):
        self.config = config or CacheConfig.from_env()
        self.cache_dir = self.config.cache_dir
        self.max_bytes = self.config.max_bytes
        self.storage = storage
        self.fetcher = fetcher or ImageFetcher()
        self.headers_for = headers_for
        self.prune_delay = prune_delay

        self._pending: Dict[str, asyncio.Task] = {}
        self._prune_task: Optional[asyncio.Task] = None

        os.makedirs(self.cache_dir, exist_ok=True)
        self._size = self._scan_size()

    def _scan_size(self) -> int:
        total = 0
        with os.scandir(self.cache_dir) as entries:
            for entry in entries:
                if entry.is_file() and not entry.name.endswith('.tmp'):
                    total += entry.stat().st_size
        return total

    # =========================================================================
    # QUERIES
    # =========================================================================

    def path_for(self, url: str) -> str:
        return os.path.join(self.cache_dir, url_hash(url))

    def get_cached_path(self, url: str) -> Optional[str]:
        path = self.path_for(url)
        return path if os.path.exists(path) else None

    def get_cache_size(self) -> int:
        return self._size

    def is_full(self) -> bool:
        return self._size >= self.max_bytes

    # =========================================================================
    # SAVE
    # =========================================================================

    async def save(
        self,
        url: str,
        source_id: str,
        manga_id: str,
        chapter_id: str,
        is_prefetch: bool = False,
        headers: Optional[Dict[str, str]] = None,
    ) -> Union[CachedPath, _CacheFull]:
        """
        Make sure `url` is on disk and return its path.

        The returned CachedPath has `fetched=False` when no network request
        was made for it.

        Raises FetchError (or whatever the fetcher raised) when the download
        fails; waiters sharing that download all see the same error.
        """
        if is_prefetch and self.is_full():
            if not self.config.ignore_limit_for_prefetch:
                logger.debug("Prefetch skipped - cache limit reached")
                return CACHE_FULL

        task = self._pending.get(url)
        if task is None:
            if headers is None and self.headers_for is not None:
                headers = self.headers_for(source_id)
            task = asyncio.ensure_future(
                self._download(url, manga_id, chapter_id, is_prefetch, headers)
            )
            self._pending[url] = task
            task.add_done_callback(lambda t, u=url: self._settle(u, t))

        # A timed-out waiter must not kill the download other callers share
        return await asyncio.shield(task)

    def _settle(self, url: str, task: asyncio.Task) -> None:
        if self._pending.get(url) is task:
            del self._pending[url]
        if not task.cancelled():
            task.exception()  # mark retrieved; waiters already got it

    async def _download(self, url, manga_id, chapter_id, is_prefetch, headers) -> CachedPath:
        hash_ = url_hash(url)
        path = os.path.join(self.cache_dir, hash_)

        if os.path.exists(path):
            await self._register(url, hash_, manga_id, chapter_id, os.path.getsize(path))
            return CachedPath(path, fetched=False)

        data = await self.fetcher.fetch(url, headers)

        tmp_path = f"{path}.tmp"
        try:
            async with aiofiles.open(tmp_path, 'wb') as f:
                await f.write(data)
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.remove(tmp_path)
            except FileNotFoundError:
                pass
            raise
        self._size += len(data)

        await self._register(url, hash_, manga_id, chapter_id, len(data))

        if not is_prefetch:
            self._schedule_prune()
        return CachedPath(path)

    async def _register(self, url, hash_, manga_id, chapter_id, size) -> None:
        if self.storage is not None:
            await self.storage.register_image(url, hash_, manga_id, chapter_id, size)

    # =========================================================================
    # PRUNE
    # =========================================================================

    def _schedule_prune(self) -> None:
        if self._size <= self.max_bytes:
            return
        if self._prune_task is not None and not self._prune_task.done():
            return
        self._prune_task = asyncio.ensure_future(self._delayed_prune())

    async def _delayed_prune(self) -> None:
        await asyncio.sleep(self.prune_delay)
        try:
            await self.prune()
        except OSError as e:
            logger.error(f"[Cache] Prune failed: {e}")

    async def prune(self) -> int:
        """Delete oldest files until the cache fits its budget. Returns files removed."""
        if self._size <= self.max_bytes:
            return 0

        logger.info(
            f"Pruning cache: Current {self._size // (1024 * 1024)}MB > "
            f"Limit {self.max_bytes // (1024 * 1024)}MB"
        )
        removed, freed = await asyncio.to_thread(self._prune_files)
        self._size = max(0, self._size - freed)

        if removed and self.storage is not None:
            await self.storage.forget_images(removed)
        return len(removed)

    def _prune_files(self):
        entries = []
        with os.scandir(self.cache_dir) as it:
            for entry in it:
                if entry.is_file() and not entry.name.endswith('.tmp'):
                    stat = entry.stat()
                    entries.append((stat.st_mtime, entry.name, stat.st_size))
        entries.sort()

        busy = {url_hash(url) for url in list(self._pending)}
        removed, freed = [], 0
        remaining = self._size
        for _, name, size in entries:
            if remaining <= self.max_bytes:
                break
            if name in busy:
                continue
            try:
                os.remove(os.path.join(self.cache_dir, name))
            except FileNotFoundError:
                pass
            removed.append(name)
            freed += size
            remaining -= size
        return removed, freed

    async def close(self) -> None:
        if self._prune_task is not None:
            self._prune_task.cancel()
        await self.fetcher.close()
