"""UTC time bucketing of unique opens and clicks.

A bucket starts at the floor of an event timestamp to its granularity:
the top of the hour, midnight, Monday midnight (ISO weeks) or the first day
of the month, always in UTC.  :class:`TimeSeries` is a finite, restartable
iterable; every ``iter()`` walks the buckets again and zero-fills gaps.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Dict, Iterator, Literal, Mapping, Optional, Tuple

import polars as pl

from email_engagement.analytics.frame_bridge import assert_schema
from email_engagement.tracking.events import as_utc

Granularity = Literal["hour", "day", "week", "month"]
GRANULARITIES: Tuple[Granularity, ...] = ("hour", "day", "week", "month")

BucketCounts = Dict[dt.datetime, Tuple[int, int]]

# Upper bound on the buckets a single series may span.
MAX_BUCKETS = 10_000

_FIXED_STEPS = {
    "hour": dt.timedelta(hours=1),
    "day": dt.timedelta(days=1),
    "week": dt.timedelta(weeks=1),
}


class SeriesTooLong(ValueError):
    """Raised when a requested series would exceed :data:`MAX_BUCKETS`."""


@dataclass(frozen=True)
class TimeSeriesBucket:
    bucket_start: dt.datetime
    granularity: Granularity
    opens: int
    clicks: int


def check_granularity(value: str) -> Granularity:
    if value not in GRANULARITIES:
        raise ValueError(f"granularity must be one of {', '.join(GRANULARITIES)}")
    return value  # type: ignore[return-value]


def floor_to(ts: dt.datetime, granularity: Granularity) -> dt.datetime:
    ts = as_utc(ts)
    if granularity == "hour":
        return ts.replace(minute=0, second=0, microsecond=0)
    day = ts.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == "day":
        return day
    if granularity == "week":
        return day - dt.timedelta(days=day.weekday())
    return day.replace(day=1)


def next_bucket(start: dt.datetime, granularity: Granularity) -> dt.datetime:
    if granularity == "hour":
        return start + dt.timedelta(hours=1)
    if granularity == "day":
        return start + dt.timedelta(days=1)
    if granularity == "week":
        return start + dt.timedelta(weeks=1)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def bucket_count(
    start: dt.datetime, end: dt.datetime, granularity: Granularity
) -> int:
    """Number of buckets from ``start`` to ``end`` inclusive, without walking them."""
    first = floor_to(start, granularity)
    last = floor_to(end, granularity)
    if last < first:
        return 0
    if granularity == "month":
        return (last.year - first.year) * 12 + last.month - first.month + 1
    return (last - first) // _FIXED_STEPS[granularity] + 1


class TimeSeries:
    """Lazy sequence of :class:`TimeSeriesBucket` between two instants.

    ``start``/``end`` default to the first and last non-empty bucket; with no
    counts and no bounds the series is empty.  A span wider than
    :data:`MAX_BUCKETS` raises :class:`SeriesTooLong`.
    """

    def __init__(
        self,
        granularity: Granularity,
        counts: Mapping[dt.datetime, Tuple[int, int]],
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> None:
        self.granularity = check_granularity(granularity)
        self._counts: BucketCounts = {as_utc(k): v for k, v in counts.items()}
        lo = start if start is not None else min(self._counts, default=None)
        hi = end if end is not None else max(self._counts, default=None)
        self._first = floor_to(lo, granularity) if lo is not None else None
        self._last = floor_to(hi, granularity) if hi is not None else None
        if self._first is not None and self._last is not None:
            size = bucket_count(self._first, self._last, granularity)
            if size > MAX_BUCKETS:
                raise SeriesTooLong(
                    f"{size} {granularity} buckets requested, at most {MAX_BUCKETS} allowed"
                )

    def __iter__(self) -> Iterator[TimeSeriesBucket]:
        if self._first is None or self._last is None:
            return
        cursor = self._first
        while cursor <= self._last:
            opens, clicks = self._counts.get(cursor, (0, 0))
            yield TimeSeriesBucket(cursor, self.granularity, opens, clicks)
            cursor = next_bucket(cursor, self.granularity)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TimeSeries):
            return NotImplemented
        return list(self) == list(other)


def bucket_counts(frame: pl.DataFrame, granularity: Granularity) -> BucketCounts:
    """Full-recompute bucket counts of unique opens and clicks.

    ``frame`` carries naive-UTC ``event_ts`` values (see ``analytics.db``).
    """
    assert_schema(frame, ["event_ts", "event_type", "is_unique"])
    unique = frame.filter(pl.col("is_unique") & pl.col("event_ts").is_not_null())
    if unique.is_empty():
        return {}
    ts = pl.col("event_ts")
    if granularity == "hour":
        bucket = ts.dt.truncate("1h")
    elif granularity == "day":
        bucket = ts.dt.truncate("1d")
    elif granularity == "week":
        # weekday(): Monday == 1
        day = ts.dt.truncate("1d")
        bucket = day - pl.duration(days=ts.dt.weekday() - 1)
    else:
        bucket = ts.dt.truncate("1mo")
    agg = (
        unique.with_columns(bucket.alias("bucket"))
        .group_by("bucket")
        .agg(
            (pl.col("event_type") == "open").cast(pl.Int64).sum().alias("opens"),
            (pl.col("event_type") == "click").cast(pl.Int64).sum().alias("clicks"),
        )
    )
    return {
        as_utc(row["bucket"]): (int(row["opens"]), int(row["clicks"]))
        for row in agg.iter_rows(named=True)
    }


__all__ = [
    "Granularity",
    "GRANULARITIES",
    "TimeSeriesBucket",
    "TimeSeries",
    "SeriesTooLong",
    "MAX_BUCKETS",
    "bucket_count",
    "check_granularity",
    "floor_to",
    "next_bucket",
    "bucket_counts",
]
