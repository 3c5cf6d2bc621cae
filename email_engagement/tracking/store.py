"""Append-only event store backed by SQLAlchemy Core.

Every accepted beacon hit is written here, duplicates included, with its
``is_unique`` flag.  The default backend is a local SQLite file; any
SQLAlchemy URL works (e.g. a Postgres/Neon URL, as the analytics loader
already supports), which is how storage is sharded behind the service.

Rows carry a monotonically increasing ``seq``.  Readers capture the highest
``seq`` when they start (``as_of``) so later appends never shift pages and
recomputes work on a consistent snapshot.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    inspect,
    select,
    text,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql.elements import ColumnElement

from email_engagement.tracking.errors import StorageUnavailable
from email_engagement.tracking.events import EventFilter, TrackingEvent, as_utc

LOGGER = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000

metadata = MetaData()

tracking_events = Table(
    "tracking_events",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(64), nullable=False, unique=True),
    Column("flow_id", String(256), nullable=False),
    Column("step_id", String(256), nullable=False),
    Column("contact_id", String(256), nullable=False),
    Column("event_type", String(8), nullable=False),
    Column("ts", DateTime, nullable=False),
    Column("transport", String(16), nullable=False),
    Column("click_url", Text),
    Column("client_ip", String(64)),
    Column("user_agent", Text),
    Column("is_unique", Boolean, nullable=False, default=False),
    Column("device", String(16), nullable=False, default="unknown"),
    Column("email_client", String(128)),
    Column("country", String(64)),
    Column("region", String(128)),
    Column("city", String(128)),
)

Index(
    "ix_tracking_events_key",
    tracking_events.c.flow_id,
    tracking_events.c.step_id,
    tracking_events.c.contact_id,
    tracking_events.c.event_type,
)
Index("ix_tracking_events_flow_ts", tracking_events.c.flow_id, tracking_events.c.ts)
Index("ix_tracking_events_ts", tracking_events.c.ts)


@dataclass(frozen=True)
class EventPage:
    events: List[TrackingEvent]
    total: int
    page: int
    limit: int
    as_of: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit


def _naive_utc(value: dt.datetime) -> dt.datetime:
    return as_utc(value).replace(tzinfo=None)


def _row_to_event(row: Any) -> TrackingEvent:
    return TrackingEvent(
        id=row.event_id,
        flow_id=row.flow_id,
        step_id=row.step_id,
        contact_id=row.contact_id,
        type=row.event_type,
        timestamp=as_utc(row.ts),
        transport=row.transport,
        click_url=row.click_url,
        client_ip=row.client_ip,
        user_agent=row.user_agent,
        is_unique_for_metric=bool(row.is_unique),
        device=row.device or "unknown",
        email_client=row.email_client,
        country=row.country,
        region=row.region,
        city=row.city,
    )


def _conditions(flt: EventFilter) -> List[ColumnElement[bool]]:
    c = tracking_events.c
    clauses: List[ColumnElement[bool]] = []
    if flt.flow_id is not None:
        clauses.append(c.flow_id == flt.flow_id)
    if flt.step_id is not None:
        clauses.append(c.step_id == flt.step_id)
    if flt.contact_id is not None:
        clauses.append(c.contact_id == flt.contact_id)
    if flt.type is not None:
        clauses.append(c.event_type == flt.type)
    if flt.start_time is not None:
        clauses.append(c.ts >= _naive_utc(flt.start_time))
    if flt.end_time is not None:
        clauses.append(c.ts <= _naive_utc(flt.end_time))
    return clauses


def _ensure_region_column(engine: Engine) -> None:
    """Add ``region`` to stores created before it existed."""
    columns = {col["name"] for col in inspect(engine).get_columns("tracking_events")}
    if "region" not in columns:
        with engine.begin() as conn:
            conn.execute(text("ALTER TABLE tracking_events ADD COLUMN region VARCHAR(128)"))
        LOGGER.info("Added region column to tracking_events")


def create_tracking_engine(url: str, timeout_ms: int = 200) -> Engine:
    """Create an engine for ``url``; SQLite files get WAL and a busy timeout."""
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    database = parsed.database
    if database in (None, "", ":memory:"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        Path(database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            url,
            connect_args={
                "timeout": max(timeout_ms, 1) / 1000.0,
                "check_same_thread": False,
            },
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn: Any, _record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


class EventStore:
    """Durable, append-only record of raw tracking events."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        try:
            metadata.create_all(engine)
            _ensure_region_column(engine)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Cannot initialise event store: {exc}") from exc

    @classmethod
    def from_url(cls, url: str, timeout_ms: int = 200) -> "EventStore":
        return cls(create_tracking_engine(url, timeout_ms))

    @property
    def engine(self) -> Engine:
        return self._engine

    def append(self, tracking_event: TrackingEvent) -> str:
        """Persist ``tracking_event`` and return its id.

        Raises:
            StorageUnavailable: when the backend rejects the write.
        """
        values = {
            "event_id": tracking_event.id,
            "flow_id": tracking_event.flow_id,
            "step_id": tracking_event.step_id,
            "contact_id": tracking_event.contact_id,
            "event_type": tracking_event.type,
            "ts": _naive_utc(tracking_event.timestamp),
            "transport": tracking_event.transport,
            "click_url": tracking_event.click_url,
            "client_ip": tracking_event.client_ip,
            "user_agent": tracking_event.user_agent,
            "is_unique": tracking_event.is_unique_for_metric,
            "device": tracking_event.device,
            "email_client": tracking_event.email_client,
            "country": tracking_event.country,
            "region": tracking_event.region,
            "city": tracking_event.city,
        }
        try:
            with self._engine.begin() as conn:
                conn.execute(tracking_events.insert().values(**values))
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Append failed: {exc}") from exc
        return tracking_event.id

    def latest_seq(self) -> int:
        """Return the highest sequence number appended so far (0 if empty)."""
        try:
            with self._engine.connect() as conn:
                value = conn.execute(
                    select(func.max(tracking_events.c.seq))
                ).scalar()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Read failed: {exc}") from exc
        return int(value or 0)

    def query(
        self,
        flt: Optional[EventFilter] = None,
        page: int = 1,
        limit: int = 100,
        as_of: Optional[int] = None,
    ) -> EventPage:
        """Return one page of events, most recent first.

        Pass the ``as_of`` of the first page back when fetching later pages;
        events appended in between are then excluded and never shift the
        positions of older ones.
        """
        if page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        flt = flt or EventFilter()
        snapshot = self.latest_seq() if as_of is None else as_of

        c = tracking_events.c
        clauses = _conditions(flt) + [c.seq <= snapshot]
        rows_q = (
            select(tracking_events)
            .where(*clauses)
            .order_by(c.ts.desc(), c.seq.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        count_q = select(func.count()).select_from(tracking_events).where(*clauses)
        try:
            with self._engine.connect() as conn:
                total = int(conn.execute(count_q).scalar() or 0)
                rows = conn.execute(rows_q).fetchall()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Query failed: {exc}") from exc
        return EventPage(
            events=[_row_to_event(r) for r in rows],
            total=total,
            page=page,
            limit=limit,
            as_of=snapshot,
        )

    def iter_events(
        self,
        flt: Optional[EventFilter] = None,
        as_of: Optional[int] = None,
        chunk_size: int = 1000,
    ) -> Iterator[TrackingEvent]:
        """Yield matching events in append order, up to ``as_of``."""
        flt = flt or EventFilter()
        snapshot = self.latest_seq() if as_of is None else as_of
        c = tracking_events.c
        cursor = 0
        while True:
            stmt = (
                select(tracking_events)
                .where(*_conditions(flt), c.seq > cursor, c.seq <= snapshot)
                .order_by(c.seq)
                .limit(chunk_size)
            )
            try:
                with self._engine.connect() as conn:
                    rows = conn.execute(stmt).fetchall()
            except SQLAlchemyError as exc:
                raise StorageUnavailable(f"Scan failed: {exc}") from exc
            if not rows:
                return
            for row in rows:
                yield _row_to_event(row)
            cursor = rows[-1].seq

    def has_flow(self, flow_id: str) -> bool:
        stmt = (
            select(tracking_events.c.seq)
            .where(tracking_events.c.flow_id == flow_id)
            .limit(1)
        )
        try:
            with self._engine.connect() as conn:
                return conn.execute(stmt).first() is not None
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Read failed: {exc}") from exc

    def time_bounds(self, flow_id: str) -> Optional[Tuple[dt.datetime, dt.datetime]]:
        """Return the first and last event timestamps of ``flow_id``."""
        c = tracking_events.c
        stmt = select(func.min(c.ts), func.max(c.ts)).where(c.flow_id == flow_id)
        try:
            with self._engine.connect() as conn:
                first, last = conn.execute(stmt).one()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Read failed: {exc}") from exc
        if first is None or last is None:
            return None
        return as_utc(first), as_utc(last)

    def dispose(self) -> None:
        self._engine.dispose()


__all__ = [
    "EventStore",
    "EventPage",
    "create_tracking_engine",
    "tracking_events",
    "MAX_PAGE_SIZE",
]
