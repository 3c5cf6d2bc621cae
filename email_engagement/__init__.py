"""Top‑level package for the email engagement tracking service.

The package records opens and clicks on outbound emails through covert
beacons and rolls the raw events into per-flow, per-step and time-bucketed
metrics.  Subpackages split the concerns:

* ``tracking`` – beacon codec, ingestion, deduplication and the event store.
* ``analytics`` – aggregation strategies and the read-only query API.

The codebase is written for Python 3 with type annotations throughout.
"""

from __future__ import annotations

__all__ = [
    "app",
    "config",
    "tracking",
    "analytics",
]

# SemVer version of the package
__version__: str = "0.1.0"
