import asyncio
from dataclasses import replace

import pytest

from pagewise_app.prefetch import JobStatus, PrefetchProgress
from sources.base import ChapterResult, FetchError, PageListBatch
from tests.conftest import wait_until

SOURCE = "src"


def chapters(n):
    return [ChapterResult(id=f"c{i}", chapter=str(i)) for i in range(1, n + 1)]


def give_pages(fake_sources, chapter_id, count):
    urls = [f"https://img/{chapter_id}/{i}.jpg" for i in range(count)]
    fake_sources.pages[chapter_id] = urls
    return urls


@pytest.mark.asyncio
class TestBulkPrefetch:

    async def test_empty_chapter_is_skipped(self, orchestrator, fake_sources, fake_cache):
        for i in (1, 2, 4, 5):
            give_pages(fake_sources, f"c{i}", 3)
        fake_sources.pages["c3"] = []

        summary = await orchestrator.run_bulk_prefetch(chapters(5), SOURCE, "manga-1", "Test Manga")

        assert summary.status is JobStatus.COMPLETED
        assert summary.success_count == 12
        assert summary.failed_count == 0
        assert summary.skipped_count == 1
        assert summary.manga_title == "Test Manga"
        assert len(fake_cache.saved) == 12
        assert fake_sources.stream_calls == ["c1", "c2", "c3", "c4", "c5"]
        assert not orchestrator.is_prefetching

    async def test_chapters_may_be_dicts(self, orchestrator, fake_sources):
        give_pages(fake_sources, "a", 2)
        summary = await orchestrator.run_bulk_prefetch(
            [{"id": "a", "chapter": "1", "title": "Start"}], SOURCE, "m"
        )
        assert summary.success_count == 2

    async def test_streamed_batches_are_deduplicated(self, orchestrator, fake_sources, fake_cache, storage):
        fake_sources.streams["c1"] = [
            PageListBatch(pages=["u1", "u2"]),
            PageListBatch(pages=["u1", "u2", "u3"], done=True, total=3),
        ]

        summary = await orchestrator.run_bulk_prefetch(chapters(1), SOURCE, "m")
        await orchestrator.wait_background()

        assert summary.success_count == 3
        assert sorted(fake_cache.saves) == ["u1", "u2", "u3"]
        assert storage.chapter_pages == [("c1", SOURCE, ["u1", "u2", "u3"])]

    async def test_all_pages_failing_marks_job_failed(self, orchestrator, fake_sources, fake_cache):
        urls = give_pages(fake_sources, "c1", 2)
        for url in urls:
            fake_cache.fail_times[url] = -1

        summary = await orchestrator.run_bulk_prefetch(chapters(1), SOURCE, "m")

        assert summary.status is JobStatus.FAILED
        assert summary.failed_count == 2
        assert summary.success_count == 0
        assert {p.url for p in summary.failed_pages} == set(urls)
        # 2 pages x 3 attempts
        assert orchestrator.behavior.get(SOURCE).failed_requests == 6

    async def test_partial_failure_still_completes(self, orchestrator, fake_sources, fake_cache):
        urls = give_pages(fake_sources, "c1", 3)
        fake_cache.fail_times[urls[0]] = -1

        summary = await orchestrator.run_bulk_prefetch(chapters(1), SOURCE, "m")

        assert summary.status is JobStatus.COMPLETED
        assert summary.success_count == 2
        assert summary.failed_count == 1

    async def test_failed_pages_are_capped(self, orchestrator, fake_sources, fake_cache, storage):
        urls = give_pages(fake_sources, "c1", 25)
        for url in urls:
            fake_cache.fail_times[url] = -1

        summary = await orchestrator.run_bulk_prefetch(chapters(1), SOURCE, "m")

        assert summary.failed_count == 25
        assert len(summary.failed_pages) == 20
        final = storage.history_updates[-1]
        assert final["status"] == "failed"
        assert len(final["failed_pages"]) == 25

    async def test_second_start_is_ignored(self, orchestrator, fake_sources):
        give_pages(fake_sources, "c1", 2)
        gate = asyncio.Event()
        fake_sources.streams["c1"] = [PageListBatch(pages=["u1"]), PageListBatch(pages=["u1", "u2"], done=True)]
        fake_sources.gates["c1"] = gate

        assert orchestrator.start_bulk_prefetch(chapters(1), SOURCE, "first")
        assert not orchestrator.start_bulk_prefetch(chapters(2), SOURCE, "second")
        assert await orchestrator.run_bulk_prefetch(chapters(2), SOURCE, "third") is None
        assert orchestrator.prefetch_manga_id == "first"

        gate.set()
        await orchestrator.wait_background()
        assert orchestrator.summary.status is JobStatus.COMPLETED
        assert not orchestrator.is_prefetching

    async def test_cancel_mid_chapter_keeps_seen_pages(self, orchestrator, fake_sources, storage):
        fake_sources.streams["c1"] = [
            PageListBatch(pages=["u1", "u2"]),
            PageListBatch(pages=["u1", "u2", "u3"], done=True),
        ]
        fake_sources.gates["c1"] = asyncio.Event()

        orchestrator.start_bulk_prefetch(chapters(3), SOURCE, "m")
        await wait_until(lambda: fake_sources.stream_calls)
        await wait_until(lambda: orchestrator.progress.chapter_label == "Ch. 1")
        await asyncio.sleep(0.01)

        assert orchestrator.cancel()
        await orchestrator.wait_background()

        assert orchestrator.summary.status is JobStatus.CANCELLED
        assert fake_sources.stream_calls == ["c1"]
        assert storage.chapter_pages == [("c1", SOURCE, ["u1", "u2"])]
        assert storage.history_updates[-1]["status"] == "cancelled"
        assert not orchestrator.cancel()

    async def test_stream_timeout_counts_as_network_failure(self, orchestrator, fake_sources):
        orchestrator.config = replace(orchestrator.config, stream_timeout=0.05, pause_on_error=False)
        fake_sources.streams["c1"] = [PageListBatch(pages=["u1"]), PageListBatch(pages=["u1"], done=True)]
        fake_sources.gates["c1"] = asyncio.Event()

        summary = await orchestrator.run_bulk_prefetch(chapters(1), SOURCE, "m")

        assert summary.skipped_count == 1
        assert orchestrator.behavior.get_consecutive_failures(SOURCE) >= 1

    async def test_chapter_error_skipped_when_pausing_disabled(self, orchestrator, fake_sources):
        orchestrator.config = replace(orchestrator.config, pause_on_error=False)
        fake_sources.pages["c1"] = FetchError("HTTP 500", status_code=500)
        give_pages(fake_sources, "c2", 2)

        summary = await orchestrator.run_bulk_prefetch(chapters(2), SOURCE, "m")

        assert summary.status is JobStatus.COMPLETED
        assert summary.skipped_count == 1
        assert summary.success_count == 2

    async def test_pause_then_retry(self, orchestrator, fake_sources):
        fake_sources.pages["c1"] = FetchError("HTTP 500", status_code=500)
        orchestrator.start_bulk_prefetch(chapters(1), SOURCE, "m")

        await wait_until(lambda: orchestrator.is_paused)
        assert "Ch. 1" in orchestrator.progress.error
        assert orchestrator.get_status()["paused"] is True

        give_pages(fake_sources, "c1", 2)
        assert orchestrator.resolve_error("retry")
        await orchestrator.wait_background()

        assert fake_sources.stream_calls == ["c1", "c1"]
        assert orchestrator.summary.success_count == 2
        assert orchestrator.summary.skipped_count == 0

    async def test_pause_then_skip(self, orchestrator, fake_sources):
        fake_sources.pages["c1"] = FetchError("HTTP 500", status_code=500)
        give_pages(fake_sources, "c2", 1)
        orchestrator.start_bulk_prefetch(chapters(2), SOURCE, "m")

        await wait_until(lambda: orchestrator.is_paused)
        assert orchestrator.resolve_error("skip")
        await orchestrator.wait_background()

        assert orchestrator.summary.skipped_count == 1
        assert orchestrator.summary.success_count == 1

    async def test_pause_then_cancel(self, orchestrator, fake_sources):
        fake_sources.pages["c1"] = FetchError("HTTP 500", status_code=500)
        give_pages(fake_sources, "c2", 1)
        orchestrator.start_bulk_prefetch(chapters(2), SOURCE, "m")

        await wait_until(lambda: orchestrator.is_paused)
        assert orchestrator.resolve_error("cancel")
        await orchestrator.wait_background()

        assert orchestrator.summary.status is JobStatus.CANCELLED
        assert orchestrator.summary.skipped_count == 0
        assert fake_sources.stream_calls == ["c1"]

    async def test_resolve_without_pause(self, orchestrator):
        assert orchestrator.resolve_error("retry") is False
        with pytest.raises(ValueError):
            orchestrator.resolve_error("ignore")

    async def test_backoff_wait_is_cancellable(self, orchestrator, fake_sources):
        give_pages(fake_sources, "c1", 1)
        orchestrator.behavior.record_failure(SOURCE, 429)

        orchestrator.start_bulk_prefetch(chapters(1), SOURCE, "m")
        await asyncio.sleep(0.01)
        orchestrator.cancel()
        await asyncio.wait_for(orchestrator.wait_background(), timeout=1.0)

        assert fake_sources.stream_calls == []
        assert orchestrator.summary.status is JobStatus.CANCELLED

    async def test_history_and_progress(self, orchestrator, fake_sources, storage):
        for i in range(1, 6):
            give_pages(fake_sources, f"c{i}", 1)
        events = []
        summaries = []
        orchestrator.add_progress_listener(events.append)
        orchestrator.add_summary_listener(summaries.append)

        await orchestrator.run_bulk_prefetch(chapters(5), SOURCE, "manga-1", "Title")
        await orchestrator.wait_background()

        assert storage.history_created == [("manga-1", "Title", SOURCE, 5)]
        periodic = [u for u in storage.history_updates if "status" not in u]
        assert [u["completed_chapters"] for u in periodic] == [2, 4]
        final = [u for u in storage.history_updates if "status" in u]
        assert len(final) == 1
        assert final[0]["status"] == "completed"
        assert final[0]["completed_chapters"] == 5
        assert final[0]["total_pages"] == 5

        labels = [e.chapter_label for e in events]
        assert labels[0] == "Starting..."
        assert ["Ch. 1", "Ch. 2", "Ch. 3", "Ch. 4", "Ch. 5"] == [label for label in labels if label.startswith("Ch.")]
        assert events[-1] == PrefetchProgress()
        assert summaries == [orchestrator.summary]

        orchestrator.acknowledge_summary()
        assert orchestrator.summary is None

    async def test_successes_feed_rate_tracker(self, orchestrator, fake_sources):
        give_pages(fake_sources, "c1", 4)
        await orchestrator.run_bulk_prefetch(chapters(1), SOURCE, "m")

        behavior = orchestrator.behavior.get(SOURCE)
        # 4 page saves plus the page-list stream
        assert behavior.total_requests == 5
        assert behavior.failed_requests == 0
        assert behavior.current_rate == pytest.approx(2.5)

    async def test_pages_on_disk_do_not_feed_rate_tracker(self, orchestrator, fake_sources, fake_cache):
        fake_cache.on_disk.update(give_pages(fake_sources, "c1", 4))

        summary = await orchestrator.run_bulk_prefetch(chapters(1), SOURCE, "m")

        assert summary.success_count == 4
        behavior = orchestrator.behavior.get(SOURCE)
        # Only the page-list stream reached the source
        assert behavior.total_requests == 1
        assert behavior.current_rate == pytest.approx(2.1)

    async def test_job_slot_held_until_summary_is_published(self, orchestrator, fake_sources, storage):
        give_pages(fake_sources, "c1", 1)
        give_pages(fake_sources, "c2", 1)
        release = asyncio.Event()
        finishing = asyncio.Event()

        class SlowFinalStorage(type(storage)):
            async def update_prefetch_history(self, history_id, **fields):
                if "status" in fields:
                    finishing.set()
                    await release.wait()
                await super().update_prefetch_history(history_id, **fields)

        orchestrator.storage = SlowFinalStorage()
        assert orchestrator.start_bulk_prefetch(chapters(1), SOURCE, "first")
        await asyncio.wait_for(finishing.wait(), timeout=1.0)

        status = orchestrator.get_status()
        assert status["is_prefetching"] is True
        assert status["summary"] is None
        assert not orchestrator.start_bulk_prefetch(chapters(2), SOURCE, "second")

        release.set()
        await orchestrator.wait_background()

        status = orchestrator.get_status()
        assert status["is_prefetching"] is False
        assert status["summary"]["status"] == "completed"
        assert orchestrator.storage.history_updates[-1]["status"] == "completed"
