"""APScheduler-based ingestion scheduler.

Runs a batch ingestion cycle at a fixed interval over whatever identifiers
the provider returns at that moment. Identifiers that could not be resolved
in one cycle are simply tried again in the next; the orchestrator itself
never retries.
"""

import inspect
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, Optional, Union

import structlog
from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from listing_ingest.ingestion.batch import BatchFetcher


logger = structlog.get_logger(__name__)

IdentifierProvider = Callable[[], Union[Iterable[str], Awaitable[Iterable[str]]]]

JOB_ID = "ingestion_cycle"


class IngestionScheduler:
    """Manages the periodic ingestion job using APScheduler.

    This scheduler:
    - Starts and stops the background ingestion job
    - Pulls the identifier list from a provider on every cycle
    - Handles errors without stopping the scheduler
    """

    def __init__(
        self,
        batch_fetcher: BatchFetcher,
        identifier_provider: IdentifierProvider,
        interval_minutes: int = 60,
    ):
        """Initialize ingestion scheduler.

        Args:
            batch_fetcher: Fetcher used for each cycle
            identifier_provider: Sync or async callable returning identifiers
            interval_minutes: How often to run a cycle
        """
        self.batch_fetcher = batch_fetcher
        self.identifier_provider = identifier_provider
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(service="ingestion_scheduler")
        self.last_cycle_stats: Optional[Dict[str, object]] = None

    def start(self) -> Job:
        """Register the interval job and start the scheduler.

        Must be called from a running event loop.
        """
        trigger = IntervalTrigger(
            minutes=self.interval_minutes,
            start_date=datetime.now(timezone.utc),
            timezone="UTC",
        )
        job = self.scheduler.add_job(
            func=self._run_cycle_wrapper,
            trigger=trigger,
            id=JOB_ID,
            name="Listing ingestion cycle",
            replace_existing=True,
            max_instances=1,  # A slow cycle must not overlap the next one
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        self.logger.info(
            "scheduler_started",
            interval_minutes=self.interval_minutes,
        )
        return job

    def stop(self) -> None:
        """Stop the scheduler; waits for a running cycle to finish.

        AsyncIOScheduler applies the shutdown on the next event loop iteration,
        so is_running() turns False only after the caller yields.
        """
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            self.logger.info("scheduler_stopped")
        else:
            self.logger.warning("scheduler_not_running")

    async def _run_cycle_wrapper(self) -> None:
        """Called by APScheduler; exceptions never reach the scheduler."""
        try:
            await self.run_cycle()
        except Exception as e:
            self.logger.error("ingestion_cycle_failed", error=str(e), exc_info=True)

    async def run_cycle(self) -> Dict[str, object]:
        """Run one ingestion cycle.

        Returns:
            Cycle statistics (identifiers, succeeded, failed, duration_seconds)
        """
        started = datetime.now(timezone.utc)

        identifiers = self.identifier_provider()
        if inspect.isawaitable(identifiers):
            identifiers = await identifiers
        identifiers = list(identifiers)

        self.logger.info("ingestion_cycle_started", identifiers=len(identifiers))
        results = await self.batch_fetcher.fetch_batch(identifiers)

        succeeded = sum(1 for result in results.values() if result.succeeded)
        duration = (datetime.now(timezone.utc) - started).total_seconds()
        stats = {
            "identifiers": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "failed_identifiers": sorted(i for i, r in results.items() if not r.succeeded),
            "duration_seconds": round(duration, 2),
        }
        self.last_cycle_stats = stats

        self.logger.info(
            "ingestion_cycle_completed",
            identifiers=stats["identifiers"],
            succeeded=stats["succeeded"],
            failed=stats["failed"],
            duration_seconds=stats["duration_seconds"],
        )
        return stats

    def get_job_status(self) -> Optional[dict]:
        job = self.scheduler.get_job(JOB_ID)
        if job is None:
            return None
        return {
            "job_id": job.id,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger),
        }

    def is_running(self) -> bool:
        return self.scheduler.running
