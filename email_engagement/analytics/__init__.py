"""Analytics subsystem: aggregation strategies and the query API."""

from . import db, frame_bridge, incremental, metrics, service, timeseries

__all__ = [
    "db",
    "frame_bridge",
    "incremental",
    "metrics",
    "service",
    "timeseries",
]
