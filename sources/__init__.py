"""
================================================================================
Pagewise - Source Manager
================================================================================
Registry of content-source connectors.

  - Auto-discovers connectors in the sources/ directory
  - Lets the app (and tests) register extra connectors by hand
  - Exposes the two calls the prefetch engine makes against a source:
      get_pages(source_id, chapter_id)         one-shot page list
      fetch_page_list(source_id, chapter_id)   streamed page list
================================================================================
"""

import os
import importlib
import pkgutil
import threading
from typing import List, Dict, Optional, Any, AsyncIterator

from .base import BaseConnector, FetchError, PageListBatch, source_log


class SourceManager:
    """
    Central manager for source connectors.

    Usage:
        manager = SourceManager()
        pages = await manager.get_pages("mangadex", chapter_id)
        async for batch in manager.fetch_page_list("mangadex", chapter_id):
            ...
    """

    def __init__(self, discover: bool = True):
        self._sources: Dict[str, BaseConnector] = {}
        self._lock = threading.Lock()
        if discover:
            self._discover_sources()

    def _discover_sources(self) -> None:
        """
        Scan the sources/ directory and instantiate any class that inherits
        from BaseConnector.
        """
        sources_dir = os.path.dirname(__file__)

        for _, module_name, _ in pkgutil.iter_modules([sources_dir]):
            if module_name in ('base', '__init__'):
                continue

            try:
                module = importlib.import_module(f'.{module_name}', 'sources')
            except ImportError as e:
                source_log(f"⚠️ Failed to load source '{module_name}': {e}")
                continue

            for attr_name in dir(module):
                attr = getattr(module, attr_name)
                if (isinstance(attr, type) and
                        issubclass(attr, BaseConnector) and
                        attr is not BaseConnector and
                        attr.__module__ == module.__name__):
                    self.register(attr())

    # =========================================================================
    # SOURCE ACCESS
    # =========================================================================

    def register(self, connector: BaseConnector) -> None:
        with self._lock:
            self._sources[connector.id] = connector

    @property
    def sources(self) -> Dict[str, BaseConnector]:
        return self._sources

    def get_source(self, source_id: str) -> Optional[BaseConnector]:
        return self._sources.get(source_id)

    def get_available_sources(self) -> List[Dict[str, Any]]:
        return [source.to_dict() for source in self._sources.values()]

    def manifest_hints(self, source_id: str) -> Optional[Dict[str, float]]:
        source = self.get_source(source_id)
        return source.manifest_hints() if source else None

    def image_headers(self, source_id: str) -> Dict[str, str]:
        source = self.get_source(source_id)
        return source.image_headers() if source else {}

    def _require(self, source_id: str) -> BaseConnector:
        source = self.get_source(source_id)
        if source is None:
            raise FetchError(f"Unknown source: {source_id}", status_code=404)
        return source

    # =========================================================================
    # PAGE LISTS
    # =========================================================================

    async def get_pages(self, source_id: str, chapter_id: str) -> List[str]:
        return await self._require(source_id).get_pages(chapter_id)

    async def fetch_page_list(self, source_id: str, chapter_id: str) -> AsyncIterator[PageListBatch]:
        source = self.get_source(source_id)
        if source is None:
            yield PageListBatch(done=True, error=f"Unknown source: {source_id}", status_code=404)
            return
        async for batch in source.stream_pages(chapter_id):
            yield batch
            if batch.done or batch.error:
                return

    async def close(self) -> None:
        for source in list(self._sources.values()):
            await source.close()
