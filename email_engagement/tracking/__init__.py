"""Beacon tracking: codec, ingestion, deduplication and the event store."""

from . import beacon, catalog, dedup, enrichment, errors, events, ingest, store

__all__ = [
    "beacon",
    "catalog",
    "dedup",
    "enrichment",
    "errors",
    "events",
    "ingest",
    "store",
]
