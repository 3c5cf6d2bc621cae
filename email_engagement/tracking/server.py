"""Web server for tracking email engagement events.

This module exposes the beacon endpoints and the analytics API using FastAPI.
Opens arrive as image, stylesheet or DNS-style requests and clicks through the
redirect endpoint; every hit is appended to the event store and folded into
the aggregates after the response has been sent.  The server can be run
standalone::

    uvicorn email_engagement.tracking.server:create_app --factory

Beacon endpoints never report errors to the mail client: a malformed or
unknown hit still receives the 1×1 GIF, only a malformed redirect (which has
no safe destination) answers ``400``.  Beacon routes share a per-IP rate
limit enforced with ``slowapi``; hits over the limit are answered the same
way but not recorded.
"""

# No postponed annotations here: FastAPI resolves the signatures of the
# slowapi-wrapped endpoints against slowapi's globals.
import base64
import datetime as dt
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic.alias_generators import to_camel
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from email_engagement.analytics.api import build_analytics_router
from email_engagement.analytics.service import AnalyticsService
from email_engagement.config import TrackingSettings
from email_engagement.tracking.beacon import (
    BACKGROUND_PATH,
    CSS_PATH,
    DNS_PATH,
    PIXEL_PATH,
    REDIRECT_PATH,
    BeaconRequest,
    tracking_snippets,
)
from email_engagement.tracking.catalog import FlowCatalog, OpenFlowCatalog
from email_engagement.tracking.dedup import DedupEngine
from email_engagement.tracking.enrichment import Enricher, GeoIPLocations
from email_engagement.tracking.events import EventFilter, utcnow
from email_engagement.tracking.ingest import Ingestor, IngestResult
from email_engagement.tracking.store import EventStore

LOGGER = logging.getLogger(__name__)

# 1×1 transparent GIF
PIXEL_BYTES = base64.b64decode(
    "R0lGODlhAQABAPAAAP///wAAACH5BAEAAAAALAAAAAABAAEAAAICRAEAOw=="
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

_IMAGE_PATHS = (PIXEL_PATH, BACKGROUND_PATH, CSS_PATH, CSS_PATH + "/{rest:path}", DNS_PATH)


def _pixel_response() -> Response:
    return Response(content=PIXEL_BYTES, media_type="image/gif", headers=NO_CACHE_HEADERS)


def _pixel_head() -> Response:
    headers = dict(NO_CACHE_HEADERS)
    headers["Content-Type"] = "image/gif"
    return Response(status_code=200, headers=headers)


def _client_ip(request: Request, trust_forwarded: bool) -> Optional[str]:
    if trust_forwarded:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def _beacon_request(request: Request) -> BeaconRequest:
    return BeaconRequest(
        path=request.url.path,
        query=request.url.query,
        host=request.headers.get("host", ""),
    )


def create_app(
    settings: Optional[TrackingSettings] = None,
    *,
    store: Optional[EventStore] = None,
    catalog: Optional[FlowCatalog] = None,
    dedup: Optional[DedupEngine] = None,
    enricher: Optional[Enricher] = None,
) -> FastAPI:
    """Build the tracking application.

    Components not supplied are created from ``settings`` (read from the
    environment when omitted).  Dedup state and the incremental aggregates
    are rebuilt from the store before the app is returned, so a restart does
    not count a recent open a second time.
    """
    settings = settings or TrackingSettings.from_env()
    store = store or EventStore.from_url(settings.database_url, settings.ingest_timeout_ms)
    catalog = catalog or OpenFlowCatalog()
    dedup = dedup or DedupEngine(
        dt.timedelta(seconds=settings.dedup_window_seconds),
        lock_timeout=settings.ingest_timeout_ms / 1000,
        prune_every=settings.dedup_prune_every,
    )
    locations: Optional[GeoIPLocations] = None
    if enricher is None and settings.geoip_db:
        locations = GeoIPLocations.open(settings.geoip_db)
        enricher = Enricher(locations)
    ingestor = Ingestor(
        store,
        dedup,
        catalog=catalog,
        enricher=enricher,
        dns_host=settings.dns_host,
        retry_backoff=settings.storage_retry_backoff_ms / 1000,
        deadline=settings.ingest_timeout_ms / 1000,
        redirect_hosts=settings.redirect_hosts,
    )
    analytics = AnalyticsService(
        store,
        catalog=catalog,
        strategy=settings.aggregation,
        timeout=settings.analytics_timeout_seconds,
    )

    window_start = utcnow() - dt.timedelta(seconds=settings.dedup_window_seconds)
    dedup.warm(store.iter_events(EventFilter(start_time=window_start)))
    analytics.rebuild()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        analytics.close()
        store.dispose()
        if locations is not None:
            locations.close()

    app = FastAPI(title="Email Engagement Tracking API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.dedup = dedup
    app.state.ingestor = ingestor
    app.state.analytics = analytics

    def _rate_key(request: Request) -> str:
        return _client_ip(request, settings.trust_forwarded) or "unknown"

    limiter = Limiter(key_func=_rate_key, enabled=bool(settings.rate_limit))
    app.state.limiter = limiter
    beacon_limit = limiter.shared_limit(settings.rate_limit or "200/minute", scope="beacons")

    def _rate_limited(request: Request, exc: RateLimitExceeded) -> Response:
        LOGGER.debug(
            "Rate limit %s exceeded by %s on %s",
            exc.detail,
            _rate_key(request),
            request.url.path,
        )
        if request.url.path != REDIRECT_PATH:
            return _pixel_response()
        destination = ingestor.redirect_target(_beacon_request(request))
        if destination is None:
            return PlainTextResponse(
                "Too Many Requests", status_code=429, headers=NO_CACHE_HEADERS
            )
        return RedirectResponse(destination, status_code=302, headers=NO_CACHE_HEADERS)

    app.add_exception_handler(RateLimitExceeded, _rate_limited)

    def _track(request: Request, background: BackgroundTasks) -> IngestResult:
        try:
            result = ingestor.ingest(
                _beacon_request(request),
                client_ip=_client_ip(request, settings.trust_forwarded),
                user_agent=request.headers.get("User-Agent"),
            )
        except Exception:
            # The mail client must never see a tracking failure.
            LOGGER.exception("Unexpected failure ingesting %s", request.url.path)
            return IngestResult("dropped")
        if result.event is not None:
            background.add_task(analytics.record, result.event)
        return result

    # HEAD is registered first so proxies validating the image do not
    # record an open.
    for path in _IMAGE_PATHS:
        app.add_api_route(
            path, _pixel_head, methods=["HEAD"], include_in_schema=False
        )

    @app.get(PIXEL_PATH, response_class=Response, summary="Tracking pixel")
    @beacon_limit
    def pixel(request: Request, background: BackgroundTasks) -> Response:
        """Return a 1×1 GIF and record an 'open'."""
        _track(request, background)
        return _pixel_response()

    @app.get(BACKGROUND_PATH, response_class=Response, summary="Background image beacon")
    @beacon_limit
    def background_image(request: Request, background: BackgroundTasks) -> Response:
        _track(request, background)
        return _pixel_response()

    @app.get(CSS_PATH, response_class=Response, summary="Stylesheet beacon")
    @beacon_limit
    def css(request: Request, background: BackgroundTasks) -> Response:
        _track(request, background)
        return _pixel_response()

    @app.get(CSS_PATH + "/{rest:path}", response_class=Response, include_in_schema=False)
    @beacon_limit
    def css_path(rest: str, request: Request, background: BackgroundTasks) -> Response:
        _track(request, background)
        return _pixel_response()

    @app.get(DNS_PATH, response_class=Response, summary="DNS-style beacon")
    @beacon_limit
    def dns_open(request: Request, background: BackgroundTasks) -> Response:
        """Open beacon whose contact id is the leftmost label of the Host."""
        _track(request, background)
        return _pixel_response()

    @app.get(REDIRECT_PATH, summary="Record click and redirect")
    @beacon_limit
    def redirect(request: Request, background: BackgroundTasks) -> Response:
        """Record a click and redirect to the decoded destination."""
        result = _track(request, background)
        destination = result.redirect_url
        if destination is None:
            return PlainTextResponse(
                "Bad Request", status_code=400, headers=NO_CACHE_HEADERS
            )
        return RedirectResponse(destination, status_code=302, headers=NO_CACHE_HEADERS)

    @app.get("/tracking/snippets/{flow_id}/{step_id}", summary="Tracking template snippets")
    def snippets(flow_id: str, step_id: str) -> dict:
        """Return HTML and URL templates to paste into an email step."""
        try:
            raw = tracking_snippets(
                flow_id, step_id, base_url=settings.base_url, dns_host=settings.dns_host
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {to_camel(key): value for key, value in raw.items()}

    @app.get("/health", summary="Liveness check")
    def health() -> dict:
        return {"status": "ok"}

    app.include_router(build_analytics_router(analytics, store))
    LOGGER.info(
        "Tracking app ready (aggregation=%s, dedup window=%ss)",
        settings.aggregation,
        settings.dedup_window_seconds,
    )
    return app


__all__ = ["create_app", "PIXEL_BYTES", "NO_CACHE_HEADERS"]
