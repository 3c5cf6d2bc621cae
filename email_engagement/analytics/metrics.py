"""Derived engagement metrics and the full-recompute strategy.

Snapshots are pure functions of a set of events plus the number of emails
sent.  Rates are guarded against empty denominators and clipped to the
``[0, 1]`` interval: ``open_rate = unique_opens / recipients_sent`` and
``click_rate = unique_clicks / unique_opens``.  A recipient whose client
blocks images can click without a recorded open, hence the clipping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List

import polars as pl

from email_engagement.analytics.frame_bridge import assert_schema
from email_engagement.tracking.events import TrackingEvent


def rate(numerator: int, denominator: int) -> float:
    if denominator <= 0 or numerator <= 0:
        return 0.0
    return min(1.0, numerator / denominator)


@dataclass
class EngagementCounts:
    unique_opens: int = 0
    total_opens: int = 0
    unique_clicks: int = 0
    total_clicks: int = 0

    def add(self, event: TrackingEvent) -> None:
        unique = 1 if event.is_unique_for_metric else 0
        if event.type == "open":
            self.total_opens += 1
            self.unique_opens += unique
        else:
            self.total_clicks += 1
            self.unique_clicks += unique


@dataclass(frozen=True)
class FlowMetricsSnapshot:
    flow_id: str
    unique_opens: int
    total_opens: int
    unique_clicks: int
    total_clicks: int
    open_rate: float
    click_rate: float


@dataclass(frozen=True)
class StepMetrics:
    flow_id: str
    step_id: str
    unique_opens: int
    total_opens: int
    unique_clicks: int
    total_clicks: int
    open_rate: float
    click_rate: float


@dataclass(frozen=True)
class Breakdown:
    """Unique opens split by device and by country."""

    devices: Dict[str, int] = field(default_factory=dict)
    countries: Dict[str, int] = field(default_factory=dict)


def flow_snapshot(
    flow_id: str, counts: EngagementCounts, recipients_sent: int
) -> FlowMetricsSnapshot:
    return FlowMetricsSnapshot(
        flow_id=flow_id,
        unique_opens=counts.unique_opens,
        total_opens=counts.total_opens,
        unique_clicks=counts.unique_clicks,
        total_clicks=counts.total_clicks,
        open_rate=rate(counts.unique_opens, recipients_sent),
        click_rate=rate(counts.unique_clicks, counts.unique_opens),
    )


def step_snapshot(
    flow_id: str, step_id: str, counts: EngagementCounts, recipients_sent: int
) -> StepMetrics:
    return StepMetrics(
        flow_id=flow_id,
        step_id=step_id,
        unique_opens=counts.unique_opens,
        total_opens=counts.total_opens,
        unique_clicks=counts.unique_clicks,
        total_clicks=counts.total_clicks,
        open_rate=rate(counts.unique_opens, recipients_sent),
        click_rate=rate(counts.unique_clicks, counts.unique_opens),
    )


def _fold(frame: pl.DataFrame, by: List[str]) -> Dict[tuple, EngagementCounts]:
    """Fold events into counts keyed by the ``by`` columns."""
    assert_schema(frame, [*by, "event_type", "is_unique"])
    if frame.is_empty():
        return {}
    agg = frame.group_by([*by, "event_type"]).agg(
        pl.len().alias("total"),
        pl.col("is_unique").cast(pl.Int64).sum().alias("unique"),
    )
    out: Dict[tuple, EngagementCounts] = {}
    for row in agg.iter_rows(named=True):
        key = tuple(row[c] for c in by)
        counts = out.setdefault(key, EngagementCounts())
        if row["event_type"] == "open":
            counts.total_opens += int(row["total"])
            counts.unique_opens += int(row["unique"])
        elif row["event_type"] == "click":
            counts.total_clicks += int(row["total"])
            counts.unique_clicks += int(row["unique"])
    return out


def count_engagement(frame: pl.DataFrame) -> EngagementCounts:
    assert_schema(frame, ["event_type", "is_unique"])
    if frame.is_empty():
        return EngagementCounts()
    is_open = pl.col("event_type") == "open"
    is_click = pl.col("event_type") == "click"
    row = frame.select(
        is_open.cast(pl.Int64).sum().alias("total_opens"),
        (is_open & pl.col("is_unique")).cast(pl.Int64).sum().alias("unique_opens"),
        is_click.cast(pl.Int64).sum().alias("total_clicks"),
        (is_click & pl.col("is_unique")).cast(pl.Int64).sum().alias("unique_clicks"),
    ).row(0, named=True)
    return EngagementCounts(
        unique_opens=int(row["unique_opens"]),
        total_opens=int(row["total_opens"]),
        unique_clicks=int(row["unique_clicks"]),
        total_clicks=int(row["total_clicks"]),
    )


def compute_flow_metrics(
    frame: pl.DataFrame, flow_id: str, recipients_sent: int
) -> FlowMetricsSnapshot:
    """Full recompute of one flow's snapshot from its event frame."""
    return flow_snapshot(flow_id, count_engagement(frame), recipients_sent)


def compute_step_metrics(
    frame: pl.DataFrame,
    flow_id: str,
    recipients_for: Callable[[str], int],
) -> List[StepMetrics]:
    """Full recompute of per-step metrics, ordered by step id."""
    folded = _fold(frame, ["step_id"])
    return [
        step_snapshot(flow_id, key[0], folded[key], recipients_for(key[0]))
        for key in sorted(folded)
    ]


def compute_breakdown(frame: pl.DataFrame) -> Breakdown:
    """Unique opens by device and by country.

    Missing enrichment shows up as ``unknown`` devices and is left out of the
    country split.
    """
    if frame.is_empty():
        return Breakdown()
    opens = frame.filter((pl.col("event_type") == "open") & pl.col("is_unique"))
    devices = (
        opens.with_columns(pl.col("device").fill_null("unknown"))
        .group_by("device")
        .agg(pl.len().alias("n"))
        .sort("device")
    )
    countries = (
        opens.filter(pl.col("country").is_not_null())
        .group_by("country")
        .agg(pl.len().alias("n"))
        .sort("country")
    )
    return Breakdown(
        devices={r["device"]: int(r["n"]) for r in devices.iter_rows(named=True)},
        countries={
            r["country"]: int(r["n"]) for r in countries.iter_rows(named=True)
        },
    )


__all__ = [
    "rate",
    "EngagementCounts",
    "FlowMetricsSnapshot",
    "StepMetrics",
    "Breakdown",
    "flow_snapshot",
    "step_snapshot",
    "count_engagement",
    "compute_flow_metrics",
    "compute_step_metrics",
    "compute_breakdown",
]
