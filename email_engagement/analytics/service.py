"""Aggregation engine facade used by the analytics API.

Two strategies produce the same numbers:

* ``full`` – load the flow's events up to the store's latest sequence number
  at query start and fold them with Polars;
* ``incremental`` – read counters maintained by
  :class:`~email_engagement.analytics.incremental.IncrementalAggregator`.

Date-ranged queries always use the full strategy because counters are not
kept per instant.  Full-strategy snapshots are cached per flow; any event
recorded for the flow invalidates its entry.
"""

from __future__ import annotations

import concurrent.futures
import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

import polars as pl

from email_engagement.analytics.db import load_events_frame
from email_engagement.analytics.incremental import IncrementalAggregator
from email_engagement.analytics.metrics import (
    Breakdown,
    FlowMetricsSnapshot,
    StepMetrics,
    compute_breakdown,
    compute_flow_metrics,
    compute_step_metrics,
    count_engagement,
    step_snapshot,
)
from email_engagement.analytics.timeseries import (
    GRANULARITIES,
    Granularity,
    TimeSeries,
    TimeSeriesBucket,
    bucket_counts,
    check_granularity,
)
from email_engagement.config import Strategy
from email_engagement.tracking.catalog import FlowCatalog, OpenFlowCatalog
from email_engagement.tracking.errors import AggregationInconsistency
from email_engagement.tracking.events import EventFilter, TrackingEvent
from email_engagement.tracking.store import EventStore

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FlowReport:
    summary: FlowMetricsSnapshot
    steps: List[StepMetrics]
    series: List[TimeSeriesBucket]
    breakdown: Breakdown


class AnalyticsService:
    """Serve flow metrics with either aggregation strategy."""

    def __init__(
        self,
        store: EventStore,
        *,
        catalog: Optional[FlowCatalog] = None,
        strategy: Strategy = "incremental",
        timeout: float = 10.0,
        incremental: Optional[IncrementalAggregator] = None,
        max_workers: int = 4,
    ) -> None:
        if strategy not in ("incremental", "full"):
            raise ValueError(f"Unknown aggregation strategy: {strategy!r}")
        self._store = store
        self._catalog: FlowCatalog = catalog or OpenFlowCatalog()
        self._strategy: Strategy = strategy
        self._timeout = timeout
        self._incremental = incremental or IncrementalAggregator()
        self._cache: Dict[str, Tuple[int, FlowMetricsSnapshot]] = {}
        self._generation: Dict[str, int] = {}
        self._cache_lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="analytics"
        )

    @property
    def strategy(self) -> Strategy:
        return self._strategy

    # ------------------------------------------------------------------ writes
    def record(self, event: TrackingEvent) -> None:
        """Fold a freshly appended event into the derived views."""
        if self._strategy == "incremental":
            self._incremental.apply(event)
        with self._cache_lock:
            self._generation[event.flow_id] = self._generation.get(event.flow_id, 0) + 1
            self._cache.pop(event.flow_id, None)

    def rebuild(self) -> int:
        """Rebuild incremental state from the store (service start-up)."""
        self._incremental.reset()
        with self._cache_lock:
            self._cache.clear()
        if self._strategy != "incremental":
            return 0
        return self._incremental.load(self._store.iter_events())

    # ------------------------------------------------------------------ helpers
    def flow_known(self, flow_id: str) -> bool:
        known = self._catalog.exists(flow_id)
        if known is not None:
            return known
        return self._store.has_flow(flow_id)

    def _frame(
        self,
        flow_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
        step_id: Optional[str] = None,
    ) -> pl.DataFrame:
        as_of = self._store.latest_seq()
        return load_events_frame(
            self._store.engine, flow_id, as_of, start=start, end=end, step_id=step_id
        )

    def _use_full(self, start: Optional[dt.datetime], end: Optional[dt.datetime]) -> bool:
        return self._strategy == "full" or start is not None or end is not None

    def _recipients_for(self, flow_id: str) -> Callable[[str], int]:
        return lambda step_id: self._catalog.recipients_sent(flow_id, step_id)

    # ------------------------------------------------------------------ full
    def summarize_full(
        self,
        flow_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> FlowMetricsSnapshot:
        recipients = self._catalog.recipients_sent(flow_id)
        if start is not None or end is not None:
            return compute_flow_metrics(self._frame(flow_id, start, end), flow_id, recipients)

        with self._cache_lock:
            cached = self._cache.get(flow_id)
            generation = self._generation.get(flow_id, 0)
        if cached is not None and cached[0] == recipients:
            return cached[1]
        snapshot = compute_flow_metrics(self._frame(flow_id), flow_id, recipients)
        with self._cache_lock:
            if self._generation.get(flow_id, 0) == generation:
                self._cache[flow_id] = (recipients, snapshot)
        return snapshot

    def steps_full(
        self,
        flow_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> List[StepMetrics]:
        return compute_step_metrics(
            self._frame(flow_id, start, end), flow_id, self._recipients_for(flow_id)
        )

    def time_series_full(
        self,
        flow_id: str,
        granularity: Granularity,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> TimeSeries:
        counts = bucket_counts(self._frame(flow_id, start, end), granularity)
        return TimeSeries(granularity, counts, start, end)

    # ------------------------------------------------------------------ public
    def summarize(
        self,
        flow_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> FlowMetricsSnapshot:
        if self._use_full(start, end):
            return self.summarize_full(flow_id, start, end)
        return self._incremental.summarize(
            flow_id, self._catalog.recipients_sent(flow_id)
        )

    def summarize_step(
        self,
        flow_id: str,
        step_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> StepMetrics:
        recipients = self._catalog.recipients_sent(flow_id, step_id)
        if self._use_full(start, end):
            frame = self._frame(flow_id, start, end, step_id=step_id)
            return step_snapshot(flow_id, step_id, count_engagement(frame), recipients)
        return self._incremental.summarize_step(flow_id, step_id, recipients)

    def steps(
        self,
        flow_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> List[StepMetrics]:
        if self._use_full(start, end):
            return self.steps_full(flow_id, start, end)
        return self._incremental.steps(flow_id, self._recipients_for(flow_id))

    def time_series(
        self,
        flow_id: str,
        granularity: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> TimeSeries:
        gran = check_granularity(granularity)
        if self._use_full(start, end):
            return self.time_series_full(flow_id, gran, start, end)
        return self._incremental.time_series(flow_id, gran)

    def breakdown(
        self,
        flow_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> Breakdown:
        return compute_breakdown(self._frame(flow_id, start, end))

    def report(
        self,
        flow_id: str,
        granularity: str = "day",
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> FlowReport:
        """Build the dashboard payload within the configured timeout.

        Raises:
            concurrent.futures.TimeoutError: when aggregation is too slow.
        """
        gran = check_granularity(granularity)

        def _build() -> FlowReport:
            return FlowReport(
                summary=self.summarize(flow_id, start, end),
                steps=self.steps(flow_id, start, end),
                series=list(self.time_series(flow_id, gran, start, end)),
                breakdown=self.breakdown(flow_id, start, end),
            )

        return self.run_bounded(_build)

    def run_bounded(self, fn: Callable[[], T]) -> T:
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            LOGGER.warning("Aggregation exceeded %.1fs timeout", self._timeout)
            raise

    # ------------------------------------------------------------------ checks
    def verify(self, flow_id: str) -> None:
        """Compare both strategies for ``flow_id``.

        Raises:
            AggregationInconsistency: when they disagree.
        """
        recipients = self._catalog.recipients_sent(flow_id)
        incremental = self._incremental
        if self._strategy != "incremental":
            incremental = IncrementalAggregator()
            incremental.load(self._store.iter_events(EventFilter(flow_id=flow_id)))
        checks: List[Tuple[str, object, object]] = [
            (
                "summary",
                compute_flow_metrics(self._frame(flow_id), flow_id, recipients),
                incremental.summarize(flow_id, recipients),
            ),
            (
                "steps",
                self.steps_full(flow_id),
                incremental.steps(flow_id, self._recipients_for(flow_id)),
            ),
        ]
        for gran in GRANULARITIES:
            checks.append(
                (
                    f"series[{gran}]",
                    list(self.time_series_full(flow_id, gran)),
                    list(incremental.time_series(flow_id, gran)),
                )
            )
        for name, full_value, incremental_value in checks:
            if full_value != incremental_value:
                raise AggregationInconsistency(
                    f"{name} differs for flow {flow_id}: full={full_value!r} "
                    f"incremental={incremental_value!r}"
                )

    def close(self) -> None:
        self._executor.shutdown(wait=False)


__all__ = ["AnalyticsService", "FlowReport"]
