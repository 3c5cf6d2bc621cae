"""Error taxonomy of the tracking subsystem.

Only :class:`AggregationInconsistency` is ever allowed to surface loudly; the
other errors are raised internally and absorbed at the ingestion boundary,
which must stay silent towards mail clients and proxies.
"""

from __future__ import annotations


class TrackingError(Exception):
    """Base class for every tracking-related failure."""


class MalformedBeacon(TrackingError):
    """A beacon request is missing required fields or cannot be parsed."""


class UnknownFlowOrStep(TrackingError):
    """A decoded beacon references a flow or step that no longer exists."""

    def __init__(self, flow_id: str, step_id: str | None = None) -> None:
        self.flow_id = flow_id
        self.step_id = step_id
        target = flow_id if step_id is None else f"{flow_id}/{step_id}"
        super().__init__(f"Unknown flow or step: {target}")


class StorageUnavailable(TrackingError):
    """The event store could not persist or read events."""


class AggregationInconsistency(TrackingError):
    """Full recompute and incremental maintenance disagree."""


__all__ = [
    "TrackingError",
    "MalformedBeacon",
    "UnknownFlowOrStep",
    "StorageUnavailable",
    "AggregationInconsistency",
]
