from typing import List

import pytest

from sources import SourceManager
from sources.base import BaseConnector, ChapterResult, FetchError, PageListBatch
from sources.mangadex import MangaDexConnector


class StaticConnector(BaseConnector):
    id = "static"
    name = "Static"
    base_url = "https://static.example/"
    rate_limit = 1.5
    max_rate = 4.0

    def __init__(self, pages=None, error=None):
        super().__init__()
        self.pages = pages or []
        self.error = error

    async def get_pages(self, chapter_id: str) -> List[str]:
        if self.error is not None:
            raise self.error
        return list(self.pages)


class PagedConnector(StaticConnector):
    id = "paged"

    async def stream_pages(self, chapter_id):
        yield PageListBatch(pages=["a"], total=3)
        yield PageListBatch(pages=["a", "b"], total=3)
        yield PageListBatch(pages=["a", "b", "c"], done=True, total=3)
        yield PageListBatch(pages=["never"], done=True)


async def collect(stream):
    return [batch async for batch in stream]


@pytest.fixture
def manager():
    manager = SourceManager(discover=False)
    manager.register(StaticConnector(pages=["p1", "p2"]))
    manager.register(PagedConnector())
    return manager


class TestSourceManager:

    def test_discovery_finds_mangadex(self):
        manager = SourceManager()
        assert isinstance(manager.get_source("mangadex"), MangaDexConnector)

    def test_manifest_hints(self, manager):
        assert manager.manifest_hints("static") == {"initial_rate": 1.5, "max_rate": 4.0}
        assert manager.manifest_hints("missing") is None

    def test_image_headers_carry_referer(self, manager):
        assert manager.image_headers("static")["Referer"] == "https://static.example/"
        assert manager.image_headers("missing") == {}

    def test_available_sources(self, manager):
        ids = {s["id"] for s in manager.get_available_sources()}
        assert ids == {"static", "paged"}

    def test_mangadex_declares_its_limits(self):
        hints = MangaDexConnector().manifest_hints()
        assert hints == {"initial_rate": 2.0, "max_rate": 5.0}


@pytest.mark.asyncio
class TestPageLists:

    async def test_get_pages(self, manager):
        assert await manager.get_pages("static", "c1") == ["p1", "p2"]

    async def test_get_pages_unknown_source(self, manager):
        with pytest.raises(FetchError) as info:
            await manager.get_pages("missing", "c1")
        assert info.value.status_code == 404

    async def test_default_stream_is_one_terminal_batch(self, manager):
        [batch] = await collect(manager.fetch_page_list("static", "c1"))
        assert batch.done
        assert batch.pages == ["p1", "p2"]
        assert batch.total == 2

    async def test_stream_stops_at_done(self, manager):
        batches = await collect(manager.fetch_page_list("paged", "c1"))
        assert [b.pages for b in batches] == [["a"], ["a", "b"], ["a", "b", "c"]]

    async def test_stream_error_is_a_terminal_batch(self):
        manager = SourceManager(discover=False)
        manager.register(StaticConnector(error=FetchError("HTTP 429", status_code=429)))

        [batch] = await collect(manager.fetch_page_list("static", "c1"))

        assert batch.done
        assert batch.error == "HTTP 429"
        assert batch.status_code == 429

    async def test_unknown_source_stream(self, manager):
        [batch] = await collect(manager.fetch_page_list("missing", "c1"))
        assert batch.status_code == 404
        assert "missing" in batch.error


class TestChapterResult:

    def test_label(self):
        assert ChapterResult(id="x", chapter="12", title="The Storm").label == "Ch. 12 - The Storm"
        assert ChapterResult(id="x", chapter="3").label == "Ch. 3"
        assert ChapterResult(id="abc").label == "Ch. abc"

    def test_from_dict_accepts_chapter_number(self):
        chapter = ChapterResult.from_dict({"id": 7, "chapter_number": 10.5})
        assert chapter.id == "7"
        assert chapter.chapter == "10.5"
        assert chapter.to_dict()["language"] == "en"
