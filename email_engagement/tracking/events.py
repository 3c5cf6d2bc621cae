"""Core data model for engagement tracking.

Everything in the tracking and analytics subsystems hangs off the
``(flow_id, step_id, contact_id)`` triple.  Events are immutable once
created; derived metrics live in :mod:`email_engagement.analytics`.
"""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field, replace
from typing import Literal, Optional, Tuple

EventType = Literal["open", "click"]
Transport = Literal["pixel", "css", "background", "dns", "redirect"]
Device = Literal["desktop", "mobile", "tablet", "unknown"]

EVENT_TYPES: Tuple[EventType, ...] = ("open", "click")
TRANSPORTS: Tuple[Transport, ...] = (
    "pixel",
    "css",
    "background",
    "dns",
    "redirect",
)

DedupKey = Tuple[str, str, str, str]


def utcnow() -> dt.datetime:
    """Return the current time as an aware UTC datetime."""
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime) -> dt.datetime:
    """Normalise ``value`` to an aware UTC datetime.

    Naive datetimes are assumed to already be expressed in UTC, which is how
    the event store persists them.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class TrackingIdentity:
    """The triple every tracking concept hangs off."""

    flow_id: str
    step_id: str
    contact_id: str


@dataclass(frozen=True)
class TrackingEvent:
    """One accepted beacon hit.

    ``is_unique_for_metric`` is decided by the deduplication engine before
    the event is appended; duplicates are still stored for auditing.
    """

    flow_id: str
    step_id: str
    contact_id: str
    type: EventType
    timestamp: dt.datetime
    transport: Transport
    click_url: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    is_unique_for_metric: bool = False
    device: Device = "unknown"
    email_client: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unsupported event type: {self.type!r}")
        if self.transport not in TRANSPORTS:
            raise ValueError(f"Unsupported transport: {self.transport!r}")
        if self.type == "click" and not self.click_url:
            raise ValueError("click events require a non-empty click_url")
        if self.type == "open" and self.click_url is not None:
            raise ValueError("open events cannot carry a click_url")
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))

    @property
    def identity(self) -> TrackingIdentity:
        return TrackingIdentity(self.flow_id, self.step_id, self.contact_id)

    @property
    def dedup_key(self) -> DedupKey:
        # Transport is deliberately absent: pixel, CSS, background and DNS
        # hits for the same engagement collapse into one unique open.
        return (self.flow_id, self.step_id, self.contact_id, self.type)

    def with_unique(self, is_unique: bool) -> "TrackingEvent":
        return replace(self, is_unique_for_metric=is_unique)

    def with_enrichment(
        self,
        device: Device,
        email_client: Optional[str],
        country: Optional[str],
        city: Optional[str],
        region: Optional[str] = None,
    ) -> "TrackingEvent":
        return replace(
            self,
            device=device,
            email_client=email_client,
            country=country,
            region=region,
            city=city,
        )


@dataclass(frozen=True)
class EventFilter:
    """Filter accepted by :meth:`EventStore.query`."""

    flow_id: Optional[str] = None
    step_id: Optional[str] = None
    contact_id: Optional[str] = None
    type: Optional[EventType] = None
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None


__all__ = [
    "EventType",
    "Transport",
    "Device",
    "EVENT_TYPES",
    "TRANSPORTS",
    "DedupKey",
    "TrackingIdentity",
    "TrackingEvent",
    "EventFilter",
    "utcnow",
    "as_utc",
]
