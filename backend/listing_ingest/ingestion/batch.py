"""Batch fetching with bounded concurrency and inter-batch pacing."""

import asyncio
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import structlog

from listing_ingest.ingestion.base import FetchOptions
from listing_ingest.ingestion.orchestrator import (
    MetadataOrchestrator,
    ResolutionResult,
    ResolutionState,
)


logger = structlog.get_logger(__name__)


class BatchFetcher:
    """Fan identifiers out to the orchestrator.

    Identifiers are split into fixed-size groups. Inside a group, up to
    ``max_concurrency`` resolutions run at once; each still goes through the
    shared per-source rate limiter. Between groups the fetcher waits
    ``inter_batch_delay_ms``. One identifier's failure never aborts the batch.

    Args:
        orchestrator: Resolves a single identifier
        batch_size: Identifiers per group
        max_concurrency: Concurrent resolutions inside a group
        inter_batch_delay_ms: Pause between groups
        sleep: Awaitable sleep (injectable for tests)
    """

    def __init__(
        self,
        orchestrator: MetadataOrchestrator,
        batch_size: int = 10,
        max_concurrency: int = 10,
        inter_batch_delay_ms: int = 2000,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if batch_size <= 0 or max_concurrency <= 0:
            raise ValueError("batch_size and max_concurrency must be positive")
        self.orchestrator = orchestrator
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.inter_batch_delay_ms = inter_batch_delay_ms
        self._sleep = sleep or asyncio.sleep
        self.logger = logger.bind(service="batch_fetcher")

    @staticmethod
    def _dedupe(identifiers: Iterable[str]) -> List[str]:
        seen = set()
        unique = []
        for identifier in identifiers:
            if identifier in seen:
                continue
            seen.add(identifier)
            unique.append(identifier)
        return unique

    async def fetch_batch(
        self,
        identifiers: Iterable[str],
        options: Optional[FetchOptions] = None,
    ) -> Dict[str, ResolutionResult]:
        """Resolve every identifier.

        Args:
            identifiers: Identifiers to resolve; duplicates are resolved once
            options: Fetch options applied to every identifier

        Returns:
            Dict mapping each identifier to its ResolutionResult
        """
        unique = self._dedupe(identifiers)
        groups = [unique[i:i + self.batch_size] for i in range(0, len(unique), self.batch_size)]
        results: Dict[str, ResolutionResult] = {}
        semaphore = asyncio.Semaphore(self.max_concurrency)

        self.logger.info(
            "batch_started",
            identifiers=len(unique),
            groups=len(groups),
            batch_size=self.batch_size,
        )

        async def run_one(identifier: str) -> ResolutionResult:
            async with semaphore:
                return await self.orchestrator.resolve(identifier, options)

        for group_index, group in enumerate(groups):
            if group_index > 0 and self.inter_batch_delay_ms > 0:
                await self._sleep(self.inter_batch_delay_ms / 1000.0)

            outcomes = await asyncio.gather(
                *(run_one(identifier) for identifier in group),
                return_exceptions=True,
            )
            for identifier, outcome in zip(group, outcomes):
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, Exception):
                    self.logger.error(
                        "identifier_resolution_crashed",
                        identifier=identifier,
                        error=str(outcome),
                        error_type=type(outcome).__name__,
                    )
                    outcome = ResolutionResult(
                        identifier=identifier,
                        state=ResolutionState.EXHAUSTED,
                        error=f"{type(outcome).__name__}: {outcome}",
                    )
                results[identifier] = outcome

            self.logger.info(
                "batch_group_complete",
                group=group_index + 1,
                of=len(groups),
                succeeded=sum(1 for i in group if results[i].succeeded),
            )

        succeeded = sum(1 for result in results.values() if result.succeeded)
        self.logger.info(
            "batch_complete",
            identifiers=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
        )
        return results
