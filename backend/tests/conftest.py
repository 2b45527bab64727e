"""Pytest configuration and shared fixtures."""

import asyncio
import json
import os
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

# Keep a developer's .env from pointing tests at a real database
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from listing_ingest.config import AdapterSettings, RateLimitSettings
from listing_ingest.ingestion.base import BaseSourceAdapter, NormalizedRecord, RawPayload, canonical_app_id
from listing_ingest.ingestion.metrics import MetricsSink
from listing_ingest.ingestion.results import Ok
from listing_ingest.ingestion.snapshot_store import SnapshotStore
from listing_ingest.ingestion.utils.rate_limiter import SourceRateLimiter
from listing_ingest.models import Base


APP_ID = "389801252"


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


# ============================================================================
# CLOCK
# ============================================================================

class FakeClock:
    """Monotonic clock + sleep pair that advances simulated time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.start = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    @property
    def elapsed(self) -> float:
        return self.now - self.start

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        # Let other tasks run, as a real sleep would
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# PAYLOAD BUILDERS
# ============================================================================

def _filler(size: int) -> str:
    """Inert markup to push a page past the minimum size check."""
    chunk = '<div class="l-row filler"><p>Lorem ipsum dolor sit amet, consectetur.</p></div>\n'
    return chunk * (size // len(chunk) + 1)


def make_listing_html(
    app_id: str = APP_ID,
    title: str = "Instagram",
    subtitle: str = "Share &amp; Connect",
    developer: str = "Instagram, Inc.",
    genre: str = "Photo &amp; Video",
    rating_display: str = "4.7",
    rating_count_text: str = "25.3M Ratings",
    screenshots: Sequence[str] = (
        "https://is1-ssl.mzstatic.com/image/thumb/shot1.jpg",
        "https://is1-ssl.mzstatic.com/image/thumb/shot2.jpg",
    ),
    json_ld: Optional[dict] = None,
    include_json_ld: bool = True,
    pad_to: int = 60_000,
) -> str:
    """A storefront listing page shaped like apps.apple.com."""
    if json_ld is None:
        json_ld = {
            "@context": "http://schema.org",
            "@type": "SoftwareApplication",
            "name": title,
            "description": "Bringing you closer to the people and things you love.",
            "applicationCategory": genre.replace("&amp;", "&"),
            "author": {"@type": "Person", "name": developer},
            "aggregateRating": {"@type": "AggregateRating", "ratingValue": 4.68, "reviewCount": 25300000},
            "offers": {"@type": "Offer", "price": 0, "priceCurrency": "USD"},
            "operatingSystem": "iOS",
            "screenshot": screenshots[0] if screenshots else None,
        }
    json_ld_block = (
        f'<script type="application/ld+json">{json.dumps(json_ld)}</script>' if include_json_ld else ""
    )
    shots = "\n".join(
        f'<picture class="we-artwork we-artwork--screenshot-platform-iphone">'
        f'<source srcset="{url} 1x, {url.replace(".jpg", "@2x.jpg")} 2x" type="image/jpeg"></picture>'
        for url in screenshots
    )
    page = f"""<!DOCTYPE html>
<html lang="en-us">
<head>
  <title>{title} on the App Store</title>
  <link rel="canonical" href="https://apps.apple.com/us/app/instagram/id{app_id}">
  <meta property="og:url" content="https://apps.apple.com/us/app/instagram/id{app_id}">
  {json_ld_block}
</head>
<body>
  <header class="product-header app-header product-header--padded-start">
    <picture class="product-header__icon we-artwork">
      <source srcset="https://is1-ssl.mzstatic.com/image/thumb/icon230x0w.webp 230w, https://is1-ssl.mzstatic.com/image/thumb/icon460x0w.webp 460w" type="image/webp">
    </picture>
    <h1 class="product-header__title app-header__title">
      {title}
      <span class="badge badge--product-title">12+</span>
    </h1>
    <h2 class="product-header__subtitle app-header__subtitle">{subtitle}</h2>
    <h2 class="product-header__identity app-header__identity">
      <a class="link" href="https://apps.apple.com/us/developer/instagram-inc/id389801255">{developer}</a>
    </h2>
    <ul class="product-header__list app-header__list">
      <li class="product-header__list__item"><a class="inline-list__item" href="https://apps.apple.com/us/genre/ios-photo-video/id6008">{genre}</a></li>
      <li class="product-header__list__item">
        <figure class="we-star-rating">
          <span class="we-customer-ratings__averages__display">{rating_display}</span>
          <figcaption class="we-customer-ratings__count">{rating_count_text}</figcaption>
        </figure>
      </li>
    </ul>
  </header>
  <section class="l-content-width section section--bordered">
    <div class="section__description"><div class="we-truncate"><p>Bringing you closer to the people and things you love.</p></div></div>
  </section>
  <section class="product-media">{shots}</section>
  {_filler(pad_to)}
</body>
</html>"""
    return page


def make_review_fragment_html(pad_to: int = 60_000) -> str:
    """A reviews modal: plenty of review markup, no product header pair."""
    reviews = "\n".join(
        f'<div class="we-customer-review lockup"><h3 class="we-customer-review__title">Review {i}</h3>'
        f'<blockquote class="we-customer-review__body review-body"><p>Great app, {i} stars.</p></blockquote></div>'
        for i in range(5)
    )
    return f"""<!DOCTYPE html>
<html><head><title>Ratings and Reviews</title></head>
<body><div class="modal-content">{reviews}</div>{_filler(pad_to)}</body></html>"""


def make_unknown_html(pad_to: int = 60_000) -> str:
    return f"""<!DOCTYPE html>
<html><head><title>Apple</title></head><body><main>{_filler(pad_to)}</main></body></html>"""


def make_block_html() -> str:
    return """<!DOCTYPE html>
<html><head><title>403 Forbidden</title></head>
<body><h1>Access Denied</h1><p>You don't have permission to access this server.</p></body></html>"""


def make_itunes_result(app_id: str = APP_ID, track_name: str = "Instagram", **overrides) -> dict:
    result = {
        "wrapperType": "software",
        "kind": "software",
        "trackId": int(app_id),
        "trackName": track_name,
        "trackCensoredName": track_name,
        "bundleId": "com.burbn.instagram",
        "artistId": 389801255,
        "artistName": "Instagram, Inc.",
        "sellerName": "Instagram, Inc.",
        "primaryGenreName": "Photo & Video",
        "primaryGenreId": 6008,
        "genres": ["Photo & Video", "Social Networking"],
        "averageUserRating": 4.68,
        "userRatingCount": 25300000,
        "artworkUrl100": "https://is1-ssl.mzstatic.com/image/thumb/icon100x100.jpg",
        "artworkUrl512": "https://is1-ssl.mzstatic.com/image/thumb/icon512x512.jpg",
        "screenshotUrls": [
            "https://is1-ssl.mzstatic.com/image/thumb/shot1.jpg",
            "https://is1-ssl.mzstatic.com/image/thumb/shot2.jpg",
        ],
        "ipadScreenshotUrls": [],
        "description": (
            "Bringing you closer to the people and things you love. Connect with friends, "
            "share what you're up to, or see what's new from others all over the world."
        ),
        "trackViewUrl": f"https://apps.apple.com/us/app/instagram/id{app_id}",
        "price": 0.0,
        "currency": "USD",
        "version": "300.0",
    }
    result.update(overrides)
    return result


def make_itunes_json(results: Sequence[dict]) -> bytes:
    return json.dumps({"resultCount": len(results), "results": list(results)}).encode("utf-8")


def make_raw(
    body,
    source_name: str = "appstore-web",
    identifier: str = APP_ID,
    http_status: int = 200,
    content_type: str = "text/html; charset=utf-8",
) -> RawPayload:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return RawPayload(
        source_name=source_name,
        identifier=identifier,
        fetched_at=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
        http_status=http_status,
        content_type=content_type,
        body=body,
        url="https://example.test/",
    )


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """httpx client that routes every request to ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def html_response(body: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=body.encode("utf-8"), headers={"content-type": "text/html; charset=utf-8"})


def json_response(body: bytes, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code, content=body, headers={"content-type": "text/javascript; charset=utf-8"}
    )


# ============================================================================
# ADAPTER SETTINGS
# ============================================================================

def adapter_settings(name: str, priority: int, **overrides) -> AdapterSettings:
    defaults = {
        "appstore-web": dict(min_response_bytes=50_000),
        "itunes-lookup": dict(min_response_bytes=500),
        "itunes-search": dict(min_response_bytes=500),
    }.get(name, {})
    values = dict(
        name=name,
        priority=priority,
        rate_limit=RateLimitSettings(capacity=100, refill_per_second=100),
        timeout_ms=5_000,
    )
    values.update(defaults)
    values.update(overrides)
    return AdapterSettings(**values)


# ============================================================================
# DATABASE
# ============================================================================

@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with the snapshot tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory) -> SnapshotStore:
    return SnapshotStore(session_factory)


# ============================================================================
# STUB ADAPTER AND STORE
# ============================================================================

class StubAdapter(BaseSourceAdapter):
    """In-process adapter: ``respond(identifier)`` supplies the payload.

    ``respond`` may return a RawPayload, return an awaitable of one, or
    raise. Transform builds a complete record unless ``record_overrides``
    says otherwise, or raises ``transform_error`` when set.
    """

    expected_content_types = ("text/html",)

    def __init__(
        self,
        name: str,
        priority: int,
        respond: Optional[Callable] = None,
        record_overrides: Optional[dict] = None,
        transform_error: Optional[Exception] = None,
        **settings_overrides,
    ):
        self.adapter_name = name
        super().__init__(config=adapter_settings(name, priority, **settings_overrides))
        self.respond = respond or (lambda identifier: listing_raw(identifier, name))
        self.record_overrides = record_overrides or {}
        self.transform_error = transform_error
        self.fetch_calls = 0
        self.transform_calls = 0

    async def fetch(self, identifier: str, options=None) -> RawPayload:
        self.fetch_calls += 1
        result = self.respond(identifier)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def transform(self, raw: RawPayload):
        self.transform_calls += 1
        if self.transform_error is not None:
            raise self.transform_error
        values = dict(
            identifier=canonical_app_id(raw.identifier) or raw.identifier,
            title=f"App {raw.identifier}",
            subtitle="Tagline",
            description="Description",
            developer="Developer",
            category="Games",
            rating=4.5,
            rating_count=100,
            icon_url="https://cdn.test/icon.png",
            screenshot_urls=["https://cdn.test/shot.png"],
            source_name=self.name,
        )
        values.update(self.record_overrides)
        return Ok(NormalizedRecord(**values))


def listing_raw(identifier: str, source_name: str) -> RawPayload:
    app_id = canonical_app_id(identifier) or identifier
    return make_raw(make_listing_html(app_id=app_id, pad_to=0), source_name=source_name, identifier=identifier)


class RecordingStore:
    """Snapshot store stand-in that keeps snapshots in a list."""

    def __init__(self):
        self.snapshots = []

    async def save(self, snapshot) -> uuid.UUID:
        self.snapshots.append(snapshot)
        return uuid.uuid4()

    def for_source(self, source_name: str):
        return [s for s in self.snapshots if s.raw.source_name == source_name]


class RecordingMetrics(MetricsSink):
    def __init__(self):
        self.health = []
        self.drift = []

    async def emit_health(self, source, health) -> None:
        self.health.append((source, health))

    async def emit_drift(self, signal) -> None:
        self.drift.append(signal)


def configured_limiter(adapters, clock=None, sleep=None) -> SourceRateLimiter:
    """Rate limiter with every adapter's configured bucket installed."""
    limiter = SourceRateLimiter(clock=clock, sleep=sleep)
    for adapter in adapters:
        limiter.configure(adapter.name, adapter.config.rate_limit)
    return limiter
