"""Read-only analytics API consumed by the dashboard.

Unlike the beacon endpoints, this surface reports failures: an unknown flow
is a ``404``, an aggregation timeout a ``504``, an unreachable store a
``503`` and a time series wider than ``MAX_BUCKETS`` buckets a ``422``.
"""

from __future__ import annotations

import concurrent.futures
import datetime as dt
from dataclasses import asdict
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from email_engagement.analytics.service import AnalyticsService
from email_engagement.analytics.timeseries import MAX_BUCKETS, SeriesTooLong, bucket_count
from email_engagement.tracking.errors import StorageUnavailable
from email_engagement.tracking.events import EventFilter, as_utc
from email_engagement.tracking.store import MAX_PAGE_SIZE, EventStore


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SnapshotOut(CamelModel):
    flow_id: str
    unique_opens: int
    total_opens: int
    unique_clicks: int
    total_clicks: int
    open_rate: float
    click_rate: float


class StepOut(SnapshotOut):
    step_id: str


class BucketOut(CamelModel):
    bucket_start: dt.datetime
    granularity: str
    opens: int
    clicks: int


class BreakdownOut(CamelModel):
    devices: Dict[str, int]
    countries: Dict[str, int]


class FlowAnalyticsOut(CamelModel):
    flow_id: str
    summary: SnapshotOut
    steps: List[StepOut]
    series: List[BucketOut]
    breakdown: BreakdownOut


class EventOut(CamelModel):
    id: str
    flow_id: str
    step_id: str
    contact_id: str
    type: str
    timestamp: dt.datetime
    transport: str
    click_url: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    is_unique_for_metric: bool
    device: str
    email_client: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None


class EventPageOut(CamelModel):
    events: List[EventOut]
    total: int
    page: int
    limit: int
    pages: int
    as_of: int


def _check_range(start: Optional[dt.datetime], end: Optional[dt.datetime]) -> None:
    if start is not None and end is not None and as_utc(start) > as_utc(end):
        raise HTTPException(status_code=422, detail="start must not be after end")


def _check_span(
    store: EventStore,
    flow_id: str,
    start: Optional[dt.datetime],
    end: Optional[dt.datetime],
    granularity: str,
) -> None:
    # An open end is bounded by the flow's own events.
    if start is None and end is None:
        return
    if start is None or end is None:
        bounds = store.time_bounds(flow_id)
        if bounds is None:
            return
        start = start if start is not None else bounds[0]
        end = end if end is not None else bounds[1]
    if bucket_count(start, end, granularity) > MAX_BUCKETS:  # type: ignore[arg-type]
        raise HTTPException(
            status_code=422,
            detail=f"range spans more than {MAX_BUCKETS} {granularity} buckets",
        )


def build_analytics_router(service: AnalyticsService, store: EventStore) -> APIRouter:
    """Return the ``/analytics`` router bound to ``service`` and ``store``."""
    router = APIRouter(prefix="/analytics", tags=["analytics"])

    def _require_flow(flow_id: str) -> None:
        try:
            known = service.flow_known(flow_id)
        except StorageUnavailable as exc:
            raise HTTPException(status_code=503, detail="Event store unavailable") from exc
        if not known:
            raise HTTPException(status_code=404, detail=f"Unknown flow: {flow_id}")

    @router.get(
        "/{flow_id}",
        response_model=FlowAnalyticsOut,
        summary="Flow summary, per-step metrics and time series",
    )
    def flow_analytics(
        flow_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
        granularity: Literal["hour", "day", "week", "month"] = "day",
    ) -> FlowAnalyticsOut:
        _check_range(start, end)
        _require_flow(flow_id)
        try:
            _check_span(store, flow_id, start, end, granularity)
            report = service.report(flow_id, granularity, start, end)
        except SeriesTooLong as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except concurrent.futures.TimeoutError as exc:
            raise HTTPException(status_code=504, detail="Aggregation timed out") from exc
        except StorageUnavailable as exc:
            raise HTTPException(status_code=503, detail="Event store unavailable") from exc
        return FlowAnalyticsOut(
            flow_id=flow_id,
            summary=SnapshotOut.model_validate(asdict(report.summary)),
            steps=[StepOut.model_validate(asdict(s)) for s in report.steps],
            series=[BucketOut.model_validate(asdict(b)) for b in report.series],
            breakdown=BreakdownOut.model_validate(asdict(report.breakdown)),
        )

    @router.get(
        "/{flow_id}/steps/{step_id}",
        response_model=StepOut,
        summary="Metrics of a single step",
    )
    def step_analytics(
        flow_id: str,
        step_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> StepOut:
        _check_range(start, end)
        _require_flow(flow_id)
        try:
            metrics = service.run_bounded(
                lambda: service.summarize_step(flow_id, step_id, start, end)
            )
        except concurrent.futures.TimeoutError as exc:
            raise HTTPException(status_code=504, detail="Aggregation timed out") from exc
        except StorageUnavailable as exc:
            raise HTTPException(status_code=503, detail="Event store unavailable") from exc
        return StepOut.model_validate(asdict(metrics))

    @router.get(
        "/{flow_id}/events",
        response_model=EventPageOut,
        summary="Raw tracking events, most recent first",
    )
    def flow_events(
        flow_id: str,
        type: Optional[Literal["open", "click"]] = None,
        step_id: Optional[str] = Query(None, alias="stepId"),
        contact_id: Optional[str] = Query(None, alias="contactId"),
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
        as_of: Optional[int] = Query(None, alias="asOf", ge=0),
    ) -> EventPageOut:
        _check_range(start, end)
        _require_flow(flow_id)
        flt = EventFilter(
            flow_id=flow_id,
            step_id=step_id,
            contact_id=contact_id,
            type=type,
            start_time=start,
            end_time=end,
        )
        try:
            result = store.query(flt, page=page, limit=limit, as_of=as_of)
        except StorageUnavailable as exc:
            raise HTTPException(status_code=503, detail="Event store unavailable") from exc
        return EventPageOut(
            events=[EventOut.model_validate(asdict(e)) for e in result.events],
            total=result.total,
            page=result.page,
            limit=result.limit,
            pages=result.pages,
            as_of=result.as_of,
        )

    return router


__all__ = ["build_analytics_router", "FlowAnalyticsOut", "EventPageOut"]
