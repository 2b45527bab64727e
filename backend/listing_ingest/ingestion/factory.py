"""Factory for creating and wiring adapters, limiter, store and orchestrator."""

from dataclasses import dataclass
from typing import Dict, List, Optional, Type

import httpx
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from listing_ingest.config import Settings, settings as default_settings
from listing_ingest.core.exceptions import ConfigurationError
from listing_ingest.ingestion.adapters import (
    AppStoreWebAdapter,
    ItunesLookupAdapter,
    ItunesSearchAdapter,
)
from listing_ingest.ingestion.base import BaseSourceAdapter
from listing_ingest.ingestion.batch import BatchFetcher
from listing_ingest.ingestion.drift import SchemaDriftDetector
from listing_ingest.ingestion.metrics import MetricsSink
from listing_ingest.ingestion.orchestrator import MetadataOrchestrator
from listing_ingest.ingestion.snapshot_store import SnapshotStore
from listing_ingest.ingestion.utils.rate_limiter import Clock, Sleeper, SourceRateLimiter


logger = structlog.get_logger(__name__)


DEFAULT_ADAPTER_CLASSES: Dict[str, Type[BaseSourceAdapter]] = {
    AppStoreWebAdapter.adapter_name: AppStoreWebAdapter,
    ItunesLookupAdapter.adapter_name: ItunesLookupAdapter,
    ItunesSearchAdapter.adapter_name: ItunesSearchAdapter,
}


@dataclass
class Pipeline:
    """Fully wired ingestion pipeline."""

    adapters: List[BaseSourceAdapter]
    rate_limiter: SourceRateLimiter
    store: SnapshotStore
    orchestrator: MetadataOrchestrator
    batch_fetcher: BatchFetcher


class AdapterFactory:
    """Factory for creating and configuring adapter instances.

    Provides dependency injection for the shared rate limiter and HTTP
    client. Adapter priority, enabled flag and limits come from settings.

    Args:
        app_settings: Settings to build from (defaults to the module settings)
        http_client: Shared httpx.AsyncClient handed to every adapter
        clock: Clock for the rate limiter (injectable for tests)
        sleep: Sleep for the rate limiter and batch pacing (injectable for tests)
    """

    def __init__(
        self,
        app_settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.settings = app_settings or default_settings
        self.http_client = http_client
        self._sleep = sleep
        # Shared rate limiter for all adapters
        self.rate_limiter = SourceRateLimiter(clock=clock, sleep=sleep)
        # Registry of adapter classes
        self._adapter_registry: Dict[str, Type[BaseSourceAdapter]] = dict(DEFAULT_ADAPTER_CLASSES)

    def register_adapter(self, name: str, adapter_class: Type[BaseSourceAdapter]) -> None:
        """Register an adapter class under a source name.

        Args:
            name: Source name (must match adapter_class.adapter_name)
            adapter_class: Adapter class (must inherit from BaseSourceAdapter)
        """
        if not issubclass(adapter_class, BaseSourceAdapter):
            raise ValueError(f"Adapter class must inherit from BaseSourceAdapter: {adapter_class}")
        if adapter_class.adapter_name != name:
            raise ValueError(f"Adapter class name '{adapter_class.adapter_name}' != '{name}'")

        self._adapter_registry[name] = adapter_class
        logger.info("adapter_registered", source=name)

    def create_adapter(self, name: str) -> BaseSourceAdapter:
        """Create an adapter from its settings and configure its rate limit.

        Raises:
            ConfigurationError: If the adapter is unknown or not configured
        """
        adapter_class = self._adapter_registry.get(name)
        if adapter_class is None:
            raise ConfigurationError(f"No adapter class registered for source: {name}")

        config = self.settings.get_adapter_settings(name)
        if config is None:
            raise ConfigurationError(f"No settings configured for source: {name}")

        adapter = adapter_class(
            config=config,
            http_client=self.http_client,
            health_window=self.settings.HEALTH_WINDOW_SIZE,
        )
        self.rate_limiter.configure(name, config.rate_limit)

        logger.info(
            "adapter_created",
            source=name,
            priority=config.priority,
            enabled=config.enabled,
        )
        return adapter

    def create_adapters(self) -> List[BaseSourceAdapter]:
        """Create every adapter listed in settings.ADAPTERS."""
        return [self.create_adapter(config.name) for config in self.settings.ADAPTERS]

    def get_registered_sources(self) -> List[str]:
        return list(self._adapter_registry.keys())

    def build_pipeline(
        self,
        session_factory: async_sessionmaker,
        metrics: Optional[MetricsSink] = None,
    ) -> Pipeline:
        """Wire adapters, store, orchestrator and batch fetcher from settings."""
        adapters = self.create_adapters()
        store = SnapshotStore(session_factory, adapters)
        drift_detector = SchemaDriftDetector(
            window_size=self.settings.DRIFT_WINDOW_SIZE,
            threshold=self.settings.DRIFT_THRESHOLD,
            min_observations=self.settings.DRIFT_MIN_OBSERVATIONS,
        )
        orchestrator = MetadataOrchestrator(
            adapters,
            rate_limiter=self.rate_limiter,
            store=store,
            drift_detector=drift_detector,
            metrics=metrics,
            default_country=self.settings.DEFAULT_COUNTRY,
        )
        batch_fetcher = BatchFetcher(
            orchestrator,
            batch_size=self.settings.BATCH_SIZE,
            max_concurrency=self.settings.MAX_CONCURRENCY,
            inter_batch_delay_ms=self.settings.INTER_BATCH_DELAY_MS,
            sleep=self._sleep,
        )
        return Pipeline(
            adapters=adapters,
            rate_limiter=self.rate_limiter,
            store=store,
            orchestrator=orchestrator,
            batch_fetcher=batch_fetcher,
        )
