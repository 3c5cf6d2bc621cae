"""Bridges between pandas and Polars for the event frames.

Events are read from SQL with pandas (``read_sql_query`` handles every
SQLAlchemy backend) and folded with Polars for multi-threaded execution.
Every frame handed to the aggregation code has the :data:`EVENT_SCHEMA`
columns, even when it is empty.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import pandas as pd
import polars as pl

EVENT_SCHEMA: dict[str, Any] = {
    "seq": pl.Int64,
    "flow_id": pl.Utf8,
    "step_id": pl.Utf8,
    "contact_id": pl.Utf8,
    "event_type": pl.Utf8,
    "event_ts": pl.Datetime("us"),
    "is_unique": pl.Boolean,
    "device": pl.Utf8,
    "country": pl.Utf8,
}


def empty_events() -> pl.DataFrame:
    return pl.DataFrame(schema=EVENT_SCHEMA)


def to_pl(df_pd: pd.DataFrame | None) -> pl.DataFrame:
    """Convert a pandas event frame to Polars with the canonical schema."""
    if isinstance(df_pd, pl.DataFrame):
        return df_pd
    if df_pd is None or df_pd.empty:
        return empty_events()
    df = pl.from_pandas(df_pd, include_index=False)
    missing = [c for c in EVENT_SCHEMA if c not in df.columns]
    if missing:
        df = df.with_columns(
            [pl.lit(None, dtype=EVENT_SCHEMA[c]).alias(c) for c in missing]
        )
    return df.select(
        [pl.col(c).cast(t, strict=False) for c, t in EVENT_SCHEMA.items()]
    )


def assert_schema(df: pl.DataFrame | pd.DataFrame, cols: Iterable[str]) -> None:
    """Validate that every expected column is present."""
    present = set(df.columns)
    missing = [c for c in cols if c not in present]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")


__all__ = [
    "EVENT_SCHEMA",
    "empty_events",
    "to_pl",
    "assert_schema",
]
