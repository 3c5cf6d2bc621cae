"""Incremental aggregation: counters and buckets maintained in place.

Each appended event bumps its flow and step counters and, when it is unique,
the matching bucket of every granularity.  Addition commutes, so the result
is independent of the order in which events are applied and equals a full
recompute over the same event set.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Tuple

from email_engagement.analytics.metrics import (
    EngagementCounts,
    FlowMetricsSnapshot,
    StepMetrics,
    flow_snapshot,
    step_snapshot,
)
from email_engagement.analytics.timeseries import (
    GRANULARITIES,
    Granularity,
    TimeSeries,
    floor_to,
)
from email_engagement.tracking.events import TrackingEvent

LOGGER = logging.getLogger(__name__)


class IncrementalAggregator:
    """Thread-safe in-memory metrics updated per appended event."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._flows: Dict[str, EngagementCounts] = {}
        self._steps: Dict[str, Dict[str, EngagementCounts]] = {}
        self._buckets: Dict[Tuple[str, Granularity], Dict[dt.datetime, List[int]]] = (
            defaultdict(dict)
        )

    def apply(self, event: TrackingEvent) -> None:
        with self._lock:
            self._flows.setdefault(event.flow_id, EngagementCounts()).add(event)
            steps = self._steps.setdefault(event.flow_id, {})
            steps.setdefault(event.step_id, EngagementCounts()).add(event)
            if not event.is_unique_for_metric:
                return
            slot = 0 if event.type == "open" else 1
            for granularity in GRANULARITIES:
                buckets = self._buckets[(event.flow_id, granularity)]
                start = floor_to(event.timestamp, granularity)
                buckets.setdefault(start, [0, 0])[slot] += 1

    def load(self, events: Iterable[TrackingEvent]) -> int:
        """Apply a batch of stored events; returns how many were applied."""
        applied = 0
        for event in events:
            self.apply(event)
            applied += 1
        LOGGER.info("Incremental aggregates loaded from %d events", applied)
        return applied

    def reset(self) -> None:
        with self._lock:
            self._flows.clear()
            self._steps.clear()
            self._buckets.clear()

    def summarize(self, flow_id: str, recipients_sent: int) -> FlowMetricsSnapshot:
        with self._lock:
            counts = self._flows.get(flow_id, EngagementCounts())
            snapshot_counts = EngagementCounts(**vars(counts))
        return flow_snapshot(flow_id, snapshot_counts, recipients_sent)

    def steps(
        self, flow_id: str, recipients_for: Callable[[str], int]
    ) -> List[StepMetrics]:
        with self._lock:
            copied = {
                step_id: EngagementCounts(**vars(counts))
                for step_id, counts in self._steps.get(flow_id, {}).items()
            }
        return [
            step_snapshot(flow_id, step_id, copied[step_id], recipients_for(step_id))
            for step_id in sorted(copied)
        ]

    def summarize_step(
        self, flow_id: str, step_id: str, recipients_sent: int
    ) -> StepMetrics:
        with self._lock:
            counts = self._steps.get(flow_id, {}).get(step_id, EngagementCounts())
            copied = EngagementCounts(**vars(counts))
        return step_snapshot(flow_id, step_id, copied, recipients_sent)

    def time_series(self, flow_id: str, granularity: Granularity) -> TimeSeries:
        with self._lock:
            buckets = {
                start: (opens, clicks)
                for start, (opens, clicks) in self._buckets.get(
                    (flow_id, granularity), {}
                ).items()
            }
        return TimeSeries(granularity, buckets)


__all__ = ["IncrementalAggregator"]
