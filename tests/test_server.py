import datetime as dt
import sys
from dataclasses import replace
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from email_engagement.config import TrackingSettings
from email_engagement.tracking.beacon import BeaconRequest
from email_engagement.tracking.catalog import InMemoryFlowCatalog
from email_engagement.tracking.server import PIXEL_BYTES, create_app
from email_engagement.tracking.events import utcnow
from email_engagement.tracking.store import EventStore

IDS = "flowId=F1&stepId=S1&contactId=C1"


@pytest.fixture()
def settings(tmp_path: Path) -> TrackingSettings:
    return TrackingSettings(
        database_url=f"sqlite:///{tmp_path / 'events.db'}",
        base_url="https://track.example.com",
        dns_host="t.example.com",
        storage_retry_backoff_ms=0,
    )


@pytest.fixture()
def catalog() -> InMemoryFlowCatalog:
    c = InMemoryFlowCatalog()
    c.register("F1", recipients={"S1": 4, "S2": 2})
    return c


@pytest.fixture()
def store(settings: TrackingSettings) -> EventStore:
    s = EventStore.from_url(settings.database_url, timeout_ms=5000)
    yield s
    s.dispose()


@pytest.fixture()
def client(settings: TrackingSettings, store: EventStore, catalog: InMemoryFlowCatalog) -> TestClient:
    return TestClient(create_app(settings, store=store, catalog=catalog))


def test_pixel_returns_gif_and_records_open(client: TestClient, store: EventStore) -> None:
    resp = client.get(f"/tracking/pixel.gif?{IDS}&t=123", headers={"User-Agent": "Mozilla/5.0 (iPhone)"})

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/gif"
    assert "no-store" in resp.headers["cache-control"]
    assert resp.content == PIXEL_BYTES
    page = store.query()
    assert page.total == 1
    assert page.events[0].transport == "pixel"
    assert page.events[0].device == "mobile"


def test_malformed_pixel_still_gets_gif(client: TestClient, store: EventStore) -> None:
    resp = client.get("/tracking/pixel.gif?flowId=F1&stepId=S1")
    assert resp.status_code == 200
    assert resp.content == PIXEL_BYTES
    assert store.latest_seq() == 0


def test_unknown_flow_gets_gif_without_record(client: TestClient, store: EventStore) -> None:
    resp = client.get("/tracking/pixel.gif?flowId=NOPE&stepId=S1&contactId=C1")
    assert resp.status_code == 200
    assert store.latest_seq() == 0


def test_head_records_nothing(client: TestClient, store: EventStore) -> None:
    resp = client.head(f"/tracking/pixel.gif?{IDS}")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/gif"
    assert store.latest_seq() == 0


@pytest.mark.parametrize(
    "path",
    ["/tracking/background.gif", "/tracking/css", "/tracking/css/theme.css"],
)
def test_other_open_transports(client: TestClient, store: EventStore, path: str) -> None:
    resp = client.get(f"{path}?{IDS}")
    assert resp.status_code == 200
    assert resp.content == PIXEL_BYTES
    assert store.query().events[0].type == "open"


def test_dns_beacon_reads_contact_from_host(client: TestClient, store: EventStore) -> None:
    resp = client.get("/open.gif?flowId=F1&stepId=S1&t=1", headers={"Host": "c7.t.example.com"})
    assert resp.status_code == 200
    event = store.query().events[0]
    assert (event.contact_id, event.transport) == ("c7", "dns")


def test_redirect_records_click(client: TestClient, store: EventStore) -> None:
    resp = client.get(
        f"/tracking/redirect?{IDS}&url=https%3A%2F%2Fexample.com%2Fpage",
        follow_redirects=False,
    )
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://example.com/page"
    event = store.query().events[0]
    assert event.type == "click"
    assert event.click_url == "https://example.com/page"


def test_malformed_redirect_is_bad_request(client: TestClient, store: EventStore) -> None:
    resp = client.get(
        f"/tracking/redirect?{IDS}&url=https%253A%252F%252Fexample.com",
        follow_redirects=False,
    )
    assert resp.status_code == 400
    assert store.latest_seq() == 0


def test_redirect_for_unknown_flow_still_redirects(client: TestClient, store: EventStore) -> None:
    resp = client.get(
        "/tracking/redirect?flowId=X&stepId=S1&contactId=C1&url=https%3A%2F%2Fexample.com",
        follow_redirects=False,
    )
    assert resp.status_code == 302
    assert store.latest_seq() == 0


def test_analytics_unknown_flow_is_404(client: TestClient) -> None:
    assert client.get("/analytics/NOPE").status_code == 404


def test_analytics_report(client: TestClient) -> None:
    client.get(f"/tracking/pixel.gif?{IDS}")
    client.get(f"/tracking/css?{IDS}")
    client.get("/tracking/pixel.gif?flowId=F1&stepId=S2&contactId=C2")
    client.get(f"/tracking/redirect?{IDS}&url=https%3A%2F%2Fexample.com", follow_redirects=False)

    resp = client.get("/analytics/F1", params={"granularity": "hour"})

    assert resp.status_code == 200
    body = resp.json()
    summary = body["summary"]
    assert summary["flowId"] == "F1"
    assert (summary["uniqueOpens"], summary["totalOpens"]) == (2, 3)
    assert (summary["uniqueClicks"], summary["totalClicks"]) == (1, 1)
    assert summary["openRate"] == pytest.approx(2 / 6)
    assert summary["clickRate"] == pytest.approx(0.5)
    assert [s["stepId"] for s in body["steps"]] == ["S1", "S2"]
    assert body["steps"][0]["openRate"] == pytest.approx(1 / 4)
    assert sum(b["opens"] for b in body["series"]) == 2
    assert body["series"][0]["granularity"] == "hour"
    assert body["breakdown"]["devices"] == {"unknown": 2}


def test_analytics_rejects_bad_parameters(client: TestClient) -> None:
    client.get(f"/tracking/pixel.gif?{IDS}")
    assert client.get("/analytics/F1", params={"granularity": "minute"}).status_code == 422
    bad_range = {"start": "2025-02-01T00:00:00Z", "end": "2025-01-01T00:00:00Z"}
    assert client.get("/analytics/F1", params=bad_range).status_code == 422


def test_analytics_rejects_oversized_series(client: TestClient) -> None:
    client.get(f"/tracking/pixel.gif?{IDS}")
    two_centuries = {
        "granularity": "hour",
        "start": "1900-01-01T00:00:00",
        "end": "2100-01-01T00:00:00",
    }
    assert client.get("/analytics/F1", params=two_centuries).status_code == 422
    # An open end is bounded by the flow's last event.
    open_ended = {"granularity": "hour", "start": "1900-01-01T00:00:00"}
    assert client.get("/analytics/F1", params=open_ended).status_code == 422
    by_month = dict(two_centuries, granularity="month")
    resp = client.get("/analytics/F1", params=by_month)
    assert resp.status_code == 200
    assert len(resp.json()["series"]) == 200 * 12 + 1


def test_step_analytics(client: TestClient) -> None:
    client.get(f"/tracking/pixel.gif?{IDS}")
    body = client.get("/analytics/F1/steps/S1").json()
    assert body["stepId"] == "S1"
    assert body["uniqueOpens"] == 1


def test_events_endpoint_pages_newest_first(client: TestClient) -> None:
    for contact in ("C1", "C2", "C3"):
        client.get(f"/tracking/pixel.gif?flowId=F1&stepId=S1&contactId={contact}")

    first = client.get("/analytics/F1/events", params={"limit": 2}).json()
    assert first["total"] == 3 and first["pages"] == 2
    client.get("/tracking/pixel.gif?flowId=F1&stepId=S1&contactId=C4")
    second = client.get(
        "/analytics/F1/events", params={"limit": 2, "page": 2, "asOf": first["asOf"]}
    ).json()

    contacts = [e["contactId"] for e in first["events"] + second["events"]]
    assert sorted(contacts) == ["C1", "C2", "C3"]
    assert first["events"][0]["isUniqueForMetric"] is True

    filtered = client.get("/analytics/F1/events", params={"contactId": "C2"}).json()
    assert filtered["total"] == 1
    assert client.get("/analytics/F1/events", params={"limit": 0}).status_code == 422


def test_snippets(client: TestClient) -> None:
    body = client.get("/tracking/snippets/F1/S1").json()
    assert body["trackingPixelUrl"].startswith("https://track.example.com/tracking/pixel.gif?")
    assert "{{contactId}}.t.example.com" in body["dnsTrackingHtml"]


def test_restart_keeps_dedup_state(settings: TrackingSettings, store: EventStore, catalog: InMemoryFlowCatalog) -> None:
    first = TestClient(create_app(settings, store=store, catalog=catalog))
    first.get(f"/tracking/pixel.gif?{IDS}")

    restarted = TestClient(create_app(settings, store=store, catalog=catalog))
    restarted.get(f"/tracking/pixel.gif?{IDS}")

    assert [e.is_unique_for_metric for e in store.query().events] == [False, True]
    summary = restarted.get("/analytics/F1").json()["summary"]
    assert (summary["uniqueOpens"], summary["totalOpens"]) == (1, 2)


def test_rate_limited_hits_still_get_inert_responses(
    settings: TrackingSettings, store: EventStore, catalog: InMemoryFlowCatalog
) -> None:
    client = TestClient(create_app(replace(settings, rate_limit="3/minute"), store=store, catalog=catalog))
    for contact in ("C1", "C2", "C3", "C4", "C5"):
        resp = client.get(f"/tracking/pixel.gif?flowId=F1&stepId=S1&contactId={contact}")
        assert resp.status_code == 200
        assert resp.content == PIXEL_BYTES

    # The limit is shared by every beacon route of one client.
    throttled = client.get(
        f"/tracking/redirect?{IDS}&url=https%3A%2F%2Fexample.com%2Fa", follow_redirects=False
    )
    assert throttled.status_code == 302
    assert throttled.headers["location"] == "https://example.com/a"
    assert client.get("/tracking/redirect?flowId=F1", follow_redirects=False).status_code == 429
    assert store.latest_seq() == 3
    assert client.get("/analytics/F1").status_code == 200


def test_rate_limit_is_per_forwarded_client(
    settings: TrackingSettings, store: EventStore, catalog: InMemoryFlowCatalog
) -> None:
    limited = replace(settings, rate_limit="1/minute", trust_forwarded=True)
    client = TestClient(create_app(limited, store=store, catalog=catalog))
    for ip in ("203.0.113.1", "203.0.113.2", "203.0.113.1"):
        client.get(f"/tracking/pixel.gif?{IDS}", headers={"X-Forwarded-For": ip})
    assert sorted(e.client_ip for e in store.query().events) == ["203.0.113.1", "203.0.113.2"]


def test_expired_dedup_keys_are_dropped_while_serving(
    settings: TrackingSettings, store: EventStore, catalog: InMemoryFlowCatalog
) -> None:
    app = create_app(
        replace(settings, dedup_window_seconds=60, dedup_prune_every=3),
        store=store,
        catalog=catalog,
    )
    stale = utcnow() - dt.timedelta(minutes=5)
    for contact in ("C1", "C2"):
        app.state.ingestor.ingest(
            BeaconRequest(
                path="/tracking/pixel.gif",
                query=f"flowId=F1&stepId=S1&contactId={contact}",
            ),
            now=stale,
        )
    assert len(app.state.dedup) == 2

    TestClient(app).get("/tracking/pixel.gif?flowId=F1&stepId=S1&contactId=C3")

    assert len(app.state.dedup) == 1


def test_redirect_hosts_block_open_redirects(
    settings: TrackingSettings, store: EventStore, catalog: InMemoryFlowCatalog
) -> None:
    client = TestClient(
        create_app(replace(settings, redirect_hosts=("example.com",)), store=store, catalog=catalog)
    )
    ok = client.get(f"/tracking/redirect?{IDS}&url=https%3A%2F%2Fexample.com%2Fa", follow_redirects=False)
    blocked = client.get(f"/tracking/redirect?{IDS}&url=https%3A%2F%2Fevil.test%2F", follow_redirects=False)
    assert ok.status_code == 302
    assert blocked.status_code == 400
    assert store.latest_seq() == 1


def test_empty_rate_limit_disables_throttling(
    settings: TrackingSettings, store: EventStore, catalog: InMemoryFlowCatalog
) -> None:
    client = TestClient(create_app(replace(settings, rate_limit=""), store=store, catalog=catalog))
    for contact in ("C1", "C2", "C3", "C4"):
        client.get(f"/tracking/pixel.gif?flowId=F1&stepId=S1&contactId={contact}")
    assert store.latest_seq() == 4
