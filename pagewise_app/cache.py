"""
================================================================================
Pagewise - Page-List Cache
================================================================================
Remembers the page URLs of recently prefetched chapters so the reader can open
them without another trip to the source.

Backed by Redis when REDIS_URL is set (shared across worker processes), else by
an in-process LRU. Either way only the newest `max_size` chapters are kept.
The in-progress set is always process-local: it only has to stop this process
from fetching the same chapter twice at once.
================================================================================
"""

import os
import json
import logging
import threading
from collections import OrderedDict
from typing import List, Optional

import redis

logger = logging.getLogger(__name__)

DEFAULT_TTL = 6 * 3600


class RedisBackend:
    """Redis-based storage for shared page lists."""
    def __init__(self, url: str):
        self.client = redis.from_url(url, decode_responses=True)
        self.url = url

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            logger.error(f"Redis GET failed: {e}")
            return None

    def set(self, key: str, value: str, ttl: Optional[int] = None):
        try:
            self.client.set(key, value, ex=ttl)
        except redis.RedisError as e:
            logger.error(f"Redis SET failed: {e}")

    def delete(self, key: str):
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.error(f"Redis DELETE failed: {e}")


class MemoryBackend:
    """In-memory storage with LRU eviction."""
    def __init__(self, max_size: int = 10):
        self._data: OrderedDict = OrderedDict()
        self._lock = threading.Lock()
        self.max_size = max_size

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            if key not in self._data:
                return None
            self._data.move_to_end(key)
            return self._data[key]

    def set(self, key: str, value: str, ttl: Optional[int] = None):
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def delete(self, key: str):
        with self._lock:
            self._data.pop(key, None)


class PageListCache:
    """LRU of chapter id -> page URLs, plus the set of chapters being fetched."""

    def __init__(self, max_size: int = 10, backend=None, prefix: str = "pagewise:pages:"):
        self.prefix = prefix
        self.max_size = max_size
        self._order: OrderedDict = OrderedDict()
        self._in_progress = set()
        self._lock = threading.Lock()
        self.is_redis = False

        if backend is not None:
            self.backend = backend
            self.is_redis = isinstance(backend, RedisBackend)
            return

        redis_url = os.environ.get('REDIS_URL')
        if redis_url:
            try:
                self.backend = RedisBackend(redis_url)
                self.backend.client.ping()
                self.is_redis = True
                logger.info(f"🚀 PageListCache initialized with Redis: {redis_url}")
            except redis.RedisError as e:
                logger.warning(f"⚠️ Redis connection failed, falling back to memory: {e}")
                self.backend = MemoryBackend(max_size)
        else:
            self.backend = MemoryBackend(max_size)
            logger.info("ℹ️ PageListCache initialized with MemoryBackend")

    def _k(self, chapter_id: str) -> str:
        return f"{self.prefix}{chapter_id}"

    def get(self, chapter_id: str) -> Optional[List[str]]:
        data = self.backend.get(self._k(chapter_id))
        if not data:
            return None
        try:
            pages = json.loads(data)
        except ValueError:
            return None
        with self._lock:
            if chapter_id in self._order:
                self._order.move_to_end(chapter_id)
        return pages

    def put(self, chapter_id: str, pages: List[str]):
        self.backend.set(self._k(chapter_id), json.dumps(list(pages)), DEFAULT_TTL)
        evicted = []
        with self._lock:
            self._order[chapter_id] = True
            self._order.move_to_end(chapter_id)
            while len(self._order) > self.max_size:
                old, _ = self._order.popitem(last=False)
                evicted.append(old)
        for old in evicted:
            self.backend.delete(self._k(old))

    def __contains__(self, chapter_id: str) -> bool:
        with self._lock:
            return chapter_id in self._order

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)

    def begin(self, chapter_id: str) -> bool:
        """Claim a chapter for fetching. False if it is cached or already claimed."""
        with self._lock:
            if chapter_id in self._order or chapter_id in self._in_progress:
                return False
            self._in_progress.add(chapter_id)
            return True

    def finish(self, chapter_id: str):
        with self._lock:
            self._in_progress.discard(chapter_id)

    def is_in_progress(self, chapter_id: str) -> bool:
        with self._lock:
            return chapter_id in self._in_progress

    def clear(self):
        """Forget every cached page list. In-progress claims are left alone."""
        with self._lock:
            keys = list(self._order)
            self._order.clear()
        for chapter_id in keys:
            self.backend.delete(self._k(chapter_id))
