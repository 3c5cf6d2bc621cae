# db.py
"""Event-frame loading for the full-recompute strategy.

Frames are bounded by the store's sequence number captured when a query
starts, so a recompute never races with appends that arrive while it runs.
Timestamps are normalised to naive UTC (``event_ts``), which keeps Polars'
truncation free of time-zone handling.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

import pandas as pd
import polars as pl
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from email_engagement.analytics.frame_bridge import to_pl
from email_engagement.tracking.errors import StorageUnavailable
from email_engagement.tracking.events import as_utc
from email_engagement.tracking.store import tracking_events

LOGGER = logging.getLogger(__name__)


def _naive(value: dt.datetime) -> dt.datetime:
    return as_utc(value).replace(tzinfo=None)


def load_events_frame(
    engine: Engine,
    flow_id: str,
    as_of: int,
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
    step_id: Optional[str] = None,
) -> pl.DataFrame:
    """Load the events of ``flow_id`` with ``seq <= as_of`` as a Polars frame."""
    c = tracking_events.c
    stmt = select(
        c.seq,
        c.flow_id,
        c.step_id,
        c.contact_id,
        c.event_type,
        c.ts,
        c.is_unique,
        c.device,
        c.country,
    ).where(c.flow_id == flow_id, c.seq <= as_of)
    if step_id is not None:
        stmt = stmt.where(c.step_id == step_id)
    if start is not None:
        stmt = stmt.where(c.ts >= _naive(start))
    if end is not None:
        stmt = stmt.where(c.ts <= _naive(end))

    try:
        df = pd.read_sql_query(stmt, con=engine)
    except SQLAlchemyError as exc:
        LOGGER.error("Event frame query failed for flow %s: %s", flow_id, exc)
        raise StorageUnavailable(f"Cannot load events: {exc}") from exc

    if df.empty:
        return to_pl(None)
    # Normalise event_ts (strings on SQLite, timestamps elsewhere)
    df["event_ts"] = pd.to_datetime(df["ts"], errors="coerce", utc=True).dt.tz_convert(
        None
    )
    df["is_unique"] = df["is_unique"].astype(bool)
    df = df.drop(columns=["ts"])
    return to_pl(df)


__all__ = ["load_events_frame"]
