"""Tests for settings and the adapter factory."""

import pytest
from pydantic import ValidationError

from conftest import adapter_settings
from listing_ingest.config import AdapterSettings, RateLimitSettings, Settings
from listing_ingest.core.exceptions import ConfigurationError
from listing_ingest.db.session import engine_options
from listing_ingest.ingestion.adapters import AppStoreWebAdapter, ItunesLookupAdapter
from listing_ingest.ingestion.factory import AdapterFactory


def make_settings(**overrides) -> Settings:
    overrides.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    return Settings(**overrides)


# ============================================================================
# SETTINGS
# ============================================================================

class TestSettings:
    def test_default_adapters_in_priority_order(self):
        config = make_settings()

        names = [a.name for a in sorted(config.ADAPTERS, key=lambda a: a.priority)]

        assert names == ["appstore-web", "itunes-lookup", "itunes-search"]
        assert config.get_adapter_settings("appstore-web").min_response_bytes == 50_000
        assert config.get_adapter_settings("missing") is None

    @pytest.mark.parametrize(
        "url",
        ["postgresql://user:pw@db:5432/listings", "postgres://user:pw@db:5432/listings"],
    )
    def test_database_url_uses_asyncpg(self, url):
        config = make_settings(DATABASE_URL=url)

        assert config.DATABASE_URL == "postgresql+asyncpg://user:pw@db:5432/listings"

    def test_duplicate_adapter_names_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(
                ADAPTERS=[
                    AdapterSettings(name="itunes-lookup", priority=1),
                    AdapterSettings(name="itunes-lookup", priority=2),
                ]
            )

    def test_rate_limit_must_be_positive(self):
        with pytest.raises(ValidationError):
            RateLimitSettings(capacity=0, refill_per_second=1)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("BATCH_SIZE", "5")
        monkeypatch.setenv("ADAPTERS", '[{"name": "itunes-lookup", "priority": 1, "enabled": false}]')

        config = make_settings()

        assert config.BATCH_SIZE == 5
        assert len(config.ADAPTERS) == 1
        assert config.ADAPTERS[0].enabled is False

    def test_engine_options_for_server_database(self):
        config = make_settings(
            DATABASE_URL="postgresql://user:pw@db:5432/listings",
            DB_POOL_SIZE=5,
            DB_MAX_OVERFLOW=0,
            DEBUG=True,
            LOG_LEVEL="debug",
        )

        options = engine_options(config)

        assert options == {"echo": True, "pool_size": 5, "max_overflow": 0, "pool_pre_ping": True}

    def test_engine_options_for_sqlite(self):
        config = make_settings(DEBUG=True, LOG_LEVEL="INFO")

        assert engine_options(config) == {"echo": False}

    def test_pool_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            make_settings(DB_POOL_SIZE=0)


# ============================================================================
# FACTORY
# ============================================================================

class TestAdapterFactory:
    def test_creates_configured_adapters(self):
        factory = AdapterFactory(app_settings=make_settings())

        adapters = factory.create_adapters()

        assert [a.name for a in adapters] == ["appstore-web", "itunes-lookup", "itunes-search"]
        assert isinstance(adapters[0], AppStoreWebAdapter)
        assert factory.rate_limiter.get_current_rate("appstore-web") == pytest.approx(10.0)
        assert factory.rate_limiter.available_tokens("itunes-lookup") == pytest.approx(100.0)

    def test_disabled_adapter_keeps_its_config(self):
        config = make_settings(ADAPTERS=[adapter_settings("itunes-lookup", 5, enabled=False)])

        adapter = AdapterFactory(app_settings=config).create_adapter("itunes-lookup")

        assert isinstance(adapter, ItunesLookupAdapter)
        assert adapter.enabled is False
        assert adapter.priority == 5

    def test_unknown_adapter_raises(self):
        factory = AdapterFactory(app_settings=make_settings())

        with pytest.raises(ConfigurationError):
            factory.create_adapter("play-store")

    def test_unconfigured_adapter_raises(self):
        config = make_settings(ADAPTERS=[adapter_settings("itunes-lookup", 1)])

        with pytest.raises(ConfigurationError):
            AdapterFactory(app_settings=config).create_adapter("appstore-web")

    def test_register_adapter_checks_name(self):
        factory = AdapterFactory(app_settings=make_settings())

        with pytest.raises(ValueError):
            factory.register_adapter("other-name", ItunesLookupAdapter)
        assert factory.get_registered_sources() == ["appstore-web", "itunes-lookup", "itunes-search"]

    async def test_build_pipeline_wires_everything(self, session_factory):
        config = make_settings(BATCH_SIZE=7, DRIFT_WINDOW_SIZE=30)

        pipeline = AdapterFactory(app_settings=config).build_pipeline(session_factory)

        assert len(pipeline.adapters) == 3
        assert pipeline.batch_fetcher.batch_size == 7
        assert pipeline.orchestrator.drift_detector.window_size == 30
        assert pipeline.orchestrator.store is pipeline.store
        assert pipeline.orchestrator.rate_limiter is pipeline.rate_limiter
        report = await pipeline.store.reprocess("itunes-search", None, "1.1")
        assert report.scanned == 0
