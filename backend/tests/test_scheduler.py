"""Tests for the periodic ingestion scheduler."""

import asyncio

from conftest import RecordingStore, StubAdapter, configured_limiter
from listing_ingest.ingestion.batch import BatchFetcher
from listing_ingest.ingestion.orchestrator import MetadataOrchestrator
from listing_ingest.ingestion.scheduler import JOB_ID, IngestionScheduler


def batch_fetcher() -> BatchFetcher:
    adapter = StubAdapter("stub-api", 10)
    orchestrator = MetadataOrchestrator(
        [adapter], rate_limiter=configured_limiter([adapter]), store=RecordingStore()
    )
    return BatchFetcher(orchestrator, inter_batch_delay_ms=0)


class TestRunCycle:
    async def test_sync_provider(self):
        scheduler = IngestionScheduler(batch_fetcher(), lambda: ["111111111", "not-an-app"])

        stats = await scheduler.run_cycle()

        assert stats["identifiers"] == 2
        assert stats["succeeded"] == 1
        assert stats["failed"] == 1
        assert stats["failed_identifiers"] == ["not-an-app"]
        assert scheduler.last_cycle_stats == stats

    async def test_async_provider(self):
        async def provider():
            return ["111111111", "222222222"]

        stats = await IngestionScheduler(batch_fetcher(), provider).run_cycle()

        assert stats["succeeded"] == 2

    async def test_wrapper_swallows_errors(self):
        def provider():
            raise RuntimeError("id source unavailable")

        scheduler = IngestionScheduler(batch_fetcher(), provider)

        await scheduler._run_cycle_wrapper()

        assert scheduler.last_cycle_stats is None


class TestLifecycle:
    async def test_start_and_stop(self):
        scheduler = IngestionScheduler(batch_fetcher(), lambda: [], interval_minutes=30)

        scheduler.start()
        try:
            assert scheduler.is_running()
            status = scheduler.get_job_status()
            assert status["job_id"] == JOB_ID
            assert "0:30:00" in status["trigger"]
        finally:
            scheduler.stop()

        # AsyncIOScheduler applies shutdown on the next loop iteration
        await asyncio.sleep(0)
        assert not scheduler.is_running()

    def test_status_without_job(self):
        scheduler = IngestionScheduler(batch_fetcher(), lambda: [])

        assert scheduler.get_job_status() is None
        assert not scheduler.is_running()
