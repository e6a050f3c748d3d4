import time
from typing import List

import pytest

from pagewise_app import create_app
from pagewise_app.cache import MemoryBackend, PageListCache
from pagewise_app.config import CacheConfig, PrefetchConfig
from pagewise_app.database import configure_database
from pagewise_app.service import PrefetchService, set_prefetch_service
from pagewise_app.storage import Storage
from sources import SourceManager
from sources.base import BaseConnector
from tests.conftest import FakeImageCache


class StaticConnector(BaseConnector):
    id = "static"
    name = "Static"

    async def get_pages(self, chapter_id: str) -> List[str]:
        return [f"https://img/{chapter_id}/{i}.jpg" for i in range(3)]


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


@pytest.fixture(scope="module")
def service(tmp_path_factory):
    configure_database(f"sqlite:///{tmp_path_factory.mktemp('db') / 'smoke.db'}")
    sources = SourceManager(discover=False)
    sources.register(StaticConnector())
    service = PrefetchService(
        prefetch_config=PrefetchConfig(passive_batch_delay=0.0, min_stagger_ms=0.0, stream_timeout=5.0),
        cache_config=CacheConfig(cache_dir=str(tmp_path_factory.mktemp("images"))),
        storage=Storage(),
        sources=sources,
        image_cache=FakeImageCache(),
        page_cache=PageListCache(10, backend=MemoryBackend(10)),
    )
    yield service
    service.stop()
    set_prefetch_service(None)


@pytest.fixture(scope="module")
def client(service):
    app = create_app(service=service)
    with app.test_client() as client:
        yield client


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["database"] is True
    assert data["sources"] == 1
    assert data["is_prefetching"] is False


def test_logs(client):
    resp = client.get("/api/logs?limit=10")
    assert resp.status_code == 200
    assert isinstance(resp.get_json()["logs"], list)


def test_sources_list(client):
    data = client.get("/api/sources").get_json()
    assert [s["id"] for s in data["sources"]] == ["static"]


def test_start_prefetch_validation(client):
    assert client.post("/api/prefetch/start", json={}).status_code == 400
    resp = client.post("/api/prefetch/start", json={
        "chapters": ["c1"], "extension_id": "nope", "manga_id": "m1",
    })
    assert resp.status_code == 400
    resp = client.post("/api/prefetch/start", json={
        "chapters": [{"title": "no id"}], "extension_id": "static", "manga_id": "m1",
    })
    assert resp.status_code == 400


def test_bulk_prefetch_round_trip(client, service):
    resp = client.post("/api/prefetch/start", json={
        "chapters": [{"id": "c1", "chapter": "1"}, "c2"],
        "extension_id": "static",
        "manga_id": "m1",
        "manga_title": "Smoke Test",
    })
    assert resp.status_code == 202
    assert resp.get_json()["total"] == 2

    assert wait_for(lambda: client.get("/api/prefetch/summary").get_json()["summary"] is not None)
    summary = client.get("/api/prefetch/summary").get_json()["summary"]
    assert summary["status"] == "completed"
    assert summary["success_count"] == 6
    assert summary["manga_title"] == "Smoke Test"

    assert wait_for(lambda: client.get("/api/prefetch/status").get_json()["is_prefetching"] is False)

    assert wait_for(lambda: client.get("/api/prefetch/pages/c1").status_code == 200)
    pages = client.get("/api/prefetch/pages/c1").get_json()
    assert pages["origin"] == "database"
    assert len(pages["pages"]) == 3

    history = client.get("/api/prefetch/history").get_json()["history"]
    assert history[0]["manga_id"] == "m1"
    assert history[0]["status"] == "completed"

    assert client.post("/api/prefetch/summary/ack").status_code == 200
    assert client.get("/api/prefetch/summary").get_json()["summary"] is None


def test_resolve_and_cancel_without_job(client):
    assert client.post("/api/prefetch/resolve", json={"action": "later"}).status_code == 400
    assert client.post("/api/prefetch/resolve", json={"action": "retry"}).status_code == 409
    assert client.post("/api/prefetch/cancel").get_json() == {"cancelled": False}


def test_unknown_chapter_pages(client):
    assert client.get("/api/prefetch/pages/never-seen").status_code == 404


def test_reading_session(client):
    resp = client.post("/api/reader/session/start", json={
        "source_id": "static", "manga_id": "m1", "chapter_id": "c9",
    })
    assert resp.status_code == 200
    assert client.post("/api/reader/page", json={"page_index": True}).status_code == 400
    assert client.post("/api/reader/page", json={"page_index": -1}).status_code == 400
    for page in range(3):
        assert client.post("/api/reader/page", json={"page_index": page}).status_code == 200

    buffer = client.get("/api/reader/buffer").get_json()
    assert buffer["buffer"] in (1, 2, 3, 4)
    assert buffer["session"]["chapter_id"] == "c9"

    resp = client.post("/api/reader/session/end", json={"completed": True})
    assert resp.status_code == 200
    assert resp.get_json()["session"]["pages_viewed"] == 3
    assert client.post("/api/reader/session/end", json={}).status_code == 404

    assert wait_for(lambda: client.get("/api/reader/stats").get_json()["stats"])
    [stat] = client.get("/api/reader/stats").get_json()["stats"]
    assert stat["chapter_id"] == "c9"


def test_navigation_schedules_passive_prefetch(client):
    resp = client.post("/api/reader/navigate", json={
        "source_id": "static", "manga_id": "m2",
        "chapters": ["n0", "n1", "n2"], "current_index": 1,
    })
    assert resp.status_code == 200
    data = resp.get_json()
    assert "n2" in data["scheduled"]
    assert data["throttled"] is False

    assert wait_for(lambda: client.get("/api/prefetch/pages/n2").status_code == 200)
    assert client.get("/api/prefetch/pages/n2").get_json()["origin"] == "memory"

    assert client.post("/api/prefetch/cache/clear").status_code == 200


def test_source_behavior_endpoints(client):
    rows = client.get("/api/sources/behavior").get_json()["sources"]
    static = next(r for r in rows if r["source_id"] == "static")
    assert static["total_requests"] > 0

    throttle = client.get("/api/sources/static/throttle").get_json()
    assert throttle["throttled"] is False
    assert throttle["delay_ms"] >= 50

    assert client.get("/api/sources/bad.id/throttle").status_code == 400


def test_source_chapters(client):
    assert client.get("/api/sources/static/chapters").status_code == 400
    resp = client.get("/api/sources/static/chapters?manga_id=m1")
    assert resp.status_code == 200
    assert resp.get_json() == {"chapters": []}
