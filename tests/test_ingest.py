import datetime as dt
import sys
import threading
from types import SimpleNamespace
from pathlib import Path

import geoip2.errors
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from email_engagement.analytics.service import AnalyticsService
from email_engagement.tracking.beacon import BeaconRequest
from email_engagement.tracking.catalog import InMemoryFlowCatalog
from email_engagement.tracking.dedup import DedupEngine
from email_engagement.tracking.enrichment import (
    Enricher,
    GeoIPLocations,
    Location,
    detect_client,
)
from email_engagement.tracking.errors import StorageUnavailable
from email_engagement.tracking.events import EventFilter, TrackingEvent
from email_engagement.tracking.ingest import Ingestor
from email_engagement.tracking.store import EventStore

T0 = dt.datetime(2025, 1, 6, 9, 0, tzinfo=dt.timezone.utc)
PIXEL = BeaconRequest(path="/tracking/pixel.gif", query="flowId=F1&stepId=S1&contactId=C1&t=1")


class FlakyStore(EventStore):
    """Event store whose first ``failures`` appends raise."""

    def __init__(self, engine, failures: int) -> None:
        super().__init__(engine)
        self.failures = failures

    def append(self, tracking_event: TrackingEvent) -> str:
        if self.failures > 0:
            self.failures -= 1
            raise StorageUnavailable("disk full")
        return super().append(tracking_event)


class StaticLocations:
    def lookup(self, ip: str):
        return Location(country="ES", city="Madrid")


class FakeCityReader:
    """Stand-in for :class:`geoip2.database.Reader` with one known address."""

    def __init__(self) -> None:
        self.closed = False

    def city(self, ip: str):
        if ip != "81.2.69.142":
            raise geoip2.errors.AddressNotFoundError(f"{ip} not in database")
        return SimpleNamespace(
            country=SimpleNamespace(iso_code="GB"),
            subdivisions=SimpleNamespace(most_specific=SimpleNamespace(name="England")),
            city=SimpleNamespace(name="London"),
        )

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'events.db'}"


def make_ingestor(store: EventStore, **kwargs) -> Ingestor:
    return Ingestor(store, DedupEngine(dt.timedelta(minutes=30)), retry_backoff=0, **kwargs)


def test_records_unique_then_duplicate(db_url: str) -> None:
    store = EventStore.from_url(db_url, timeout_ms=5000)
    ingestor = make_ingestor(store)

    first = ingestor.ingest(PIXEL, "203.0.113.9", "Mozilla/5.0 (iPhone)", now=T0)
    second = ingestor.ingest(PIXEL, now=T0 + dt.timedelta(seconds=3))

    assert first.outcome == "recorded" and first.event.is_unique_for_metric
    assert second.outcome == "recorded" and not second.event.is_unique_for_metric
    assert first.event.device == "mobile"
    assert first.event.client_ip == "203.0.113.9"
    assert store.query(EventFilter(flow_id="F1")).total == 2


def test_malformed_hit_is_not_stored(db_url: str) -> None:
    store = EventStore.from_url(db_url)
    result = make_ingestor(store).ingest(
        BeaconRequest(path="/tracking/pixel.gif", query="flowId=F1&stepId=S1")
    )
    assert result.outcome == "malformed"
    assert result.redirect_url is None
    assert store.latest_seq() == 0


def test_unknown_flow_is_a_no_op(db_url: str) -> None:
    store = EventStore.from_url(db_url)
    catalog = InMemoryFlowCatalog()
    catalog.register("F2", steps=["S1"])
    click = BeaconRequest(
        path="/tracking/redirect",
        query="flowId=F1&stepId=S1&contactId=C1&url=https%3A%2F%2Fexample.com%2Fa",
    )

    result = make_ingestor(store, catalog=catalog).ingest(click)

    assert result.outcome == "unknown"
    assert result.redirect_url == "https://example.com/a"
    assert store.latest_seq() == 0


def test_single_storage_failure_is_retried(db_url: str) -> None:
    store = FlakyStore(EventStore.from_url(db_url).engine, failures=1)
    result = make_ingestor(store).ingest(PIXEL, now=T0)
    assert result.outcome == "recorded"
    assert store.latest_seq() == 1


def test_dropped_event_does_not_consume_unique(db_url: str) -> None:
    store = FlakyStore(EventStore.from_url(db_url).engine, failures=2)
    ingestor = make_ingestor(store)

    dropped = ingestor.ingest(PIXEL, now=T0)
    retried = ingestor.ingest(PIXEL, now=T0 + dt.timedelta(seconds=1))

    assert dropped.outcome == "dropped"
    assert retried.outcome == "recorded"
    assert retried.event.is_unique_for_metric is True
    assert store.latest_seq() == 1


def test_location_enrichment_only_for_public_ips(db_url: str) -> None:
    store = EventStore.from_url(db_url)
    ingestor = make_ingestor(store, enricher=Enricher(StaticLocations()))
    public = ingestor.ingest(PIXEL, "8.8.8.8", now=T0)
    private = ingestor.ingest(PIXEL, "10.0.0.1", now=T0)
    assert public.event.country == "ES"
    assert private.event.country is None


def test_geoip_locations_fill_country_region_and_city(db_url: str) -> None:
    reader = FakeCityReader()
    locations = GeoIPLocations(reader)
    store = EventStore.from_url(db_url)
    ingestor = make_ingestor(store, enricher=Enricher(locations))

    known = ingestor.ingest(PIXEL, "81.2.69.142", now=T0)
    unknown = ingestor.ingest(PIXEL, "8.8.4.4", now=T0)

    assert (known.event.country, known.event.region, known.event.city) == (
        "GB",
        "England",
        "London",
    )
    assert unknown.outcome == "recorded"
    assert (unknown.event.country, unknown.event.region, unknown.event.city) == (None, None, None)
    stored = store.query(EventFilter(flow_id="F1")).events
    assert {e.region for e in stored} == {"England", None}
    locations.close()
    assert reader.closed is True


def test_redirect_hosts_restrict_click_destinations(db_url: str) -> None:
    store = EventStore.from_url(db_url)
    ingestor = make_ingestor(store, redirect_hosts=["example.com"])

    def click(url: str) -> BeaconRequest:
        return BeaconRequest(
            path="/tracking/redirect",
            query=f"flowId=F1&stepId=S1&contactId=C1&url={url}",
        )

    allowed = ingestor.ingest(click("https%3A%2F%2Fshop.example.com%2Fsale"), now=T0)
    refused = ingestor.ingest(click("https%3A%2F%2Fevil.test%2F"), now=T0)
    lookalike = ingestor.ingest(click("https%3A%2F%2Fnotexample.com%2F"), now=T0)

    assert allowed.outcome == "recorded"
    assert allowed.redirect_url == "https://shop.example.com/sale"
    assert refused.outcome == "malformed" and refused.redirect_url is None
    assert lookalike.outcome == "malformed"
    assert store.latest_seq() == 1
    assert ingestor.redirect_target(click("https%3A%2F%2Fevil.test%2F")) is None


def test_proxy_user_agents_map_to_client() -> None:
    assert detect_client("Mozilla/5.0 (via ggpht.com GoogleImageProxy)") == ("unknown", "Gmail")
    assert detect_client(None) == ("unknown", None)
    assert detect_client("Mozilla/5.0 (Windows NT 10.0) Thunderbird/115")[0] == "desktop"


def test_concurrent_opens_count_once(db_url: str) -> None:
    store = EventStore.from_url(db_url, timeout_ms=5000)
    ingestor = make_ingestor(store)
    n = 16
    barrier = threading.Barrier(n)
    outcomes = []
    lock = threading.Lock()

    def hit() -> None:
        barrier.wait()
        result = ingestor.ingest(PIXEL, now=T0)
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=hit) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(r.outcome == "recorded" for r in outcomes)
    assert sum(r.event.is_unique_for_metric for r in outcomes) == 1
    assert store.query(EventFilter(flow_id="F1")).total == n


def test_open_scenario_with_duplicate_and_late_hit(db_url: str) -> None:
    store = EventStore.from_url(db_url, timeout_ms=5000)
    ingestor = make_ingestor(store)
    analytics = AnalyticsService(store)

    for minutes in (0, 5):
        result = ingestor.ingest(PIXEL, now=T0 + dt.timedelta(minutes=minutes))
        analytics.record(result.event)
    summary = analytics.summarize("F1")
    assert store.query(EventFilter(flow_id="F1")).total == 2
    assert (summary.unique_opens, summary.total_opens) == (1, 2)

    result = ingestor.ingest(PIXEL, now=T0 + dt.timedelta(minutes=31))
    analytics.record(result.event)
    summary = analytics.summarize("F1")
    assert (summary.unique_opens, summary.total_opens) == (2, 3)
    analytics.verify("F1")
    analytics.close()


def test_catalog_tracks_steps_and_recipients() -> None:
    catalog = InMemoryFlowCatalog()
    catalog.register("F1", steps=["S1"], recipients={"S2": 3})
    catalog.record_sent("F1", "S1", 2)

    assert catalog.exists("F1") is True
    assert catalog.exists("F1", "S3") is False
    assert catalog.recipients_sent("F1") == 5

    catalog.remove("F1", "S2")
    assert catalog.recipients_sent("F1") == 2
    catalog.remove("F1")
    assert catalog.exists("F1") is False
