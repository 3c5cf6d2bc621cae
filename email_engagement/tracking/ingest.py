"""Ingestion pipeline turning a beacon hit into a stored tracking event.

The pipeline is: decode → catalog check → build event with the server's
clock, IP and user agent → deduplicate → enrich → append.  It sits on the
adversarial boundary and therefore never raises for anything the remote
client caused; callers get an :class:`IngestResult` describing what happened
and always answer with the inert response.

When ``redirect_hosts`` is configured, a click whose destination is not on
one of those hosts is treated as malformed: it is neither recorded nor
redirected.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass
from typing import Iterable, Literal, Optional
from urllib.parse import urlsplit

from email_engagement.tracking.beacon import BeaconRequest, DecodedBeacon, decode
from email_engagement.tracking.catalog import FlowCatalog, OpenFlowCatalog
from email_engagement.tracking.dedup import DedupEngine
from email_engagement.tracking.enrichment import Enricher
from email_engagement.tracking.errors import (
    MalformedBeacon,
    StorageUnavailable,
    UnknownFlowOrStep,
)
from email_engagement.tracking.events import TrackingEvent, utcnow
from email_engagement.tracking.store import EventStore

LOGGER = logging.getLogger(__name__)

Outcome = Literal["recorded", "malformed", "unknown", "dropped"]


@dataclass(frozen=True)
class IngestResult:
    outcome: Outcome
    decoded: Optional[DecodedBeacon] = None
    event: Optional[TrackingEvent] = None

    @property
    def redirect_url(self) -> Optional[str]:
        """Destination to redirect to; set for every decodable click."""
        return self.decoded.click_url if self.decoded else None


class Ingestor:
    """Accept beacon hits and persist them as raw events."""

    def __init__(
        self,
        store: EventStore,
        dedup: DedupEngine,
        *,
        catalog: Optional[FlowCatalog] = None,
        enricher: Optional[Enricher] = None,
        dns_host: str = "",
        retry_backoff: float = 0.025,
        deadline: float = 0.2,
        redirect_hosts: Iterable[str] = (),
    ) -> None:
        self._store = store
        self._dedup = dedup
        self._catalog: FlowCatalog = catalog or OpenFlowCatalog()
        self._enricher = enricher or Enricher()
        self._dns_host = dns_host
        self._retry_backoff = retry_backoff
        self._deadline = deadline
        self._redirect_hosts = tuple(h.lower().lstrip(".") for h in redirect_hosts)

    def _redirect_allowed(self, url: str) -> bool:
        if not self._redirect_hosts:
            return True
        host = (urlsplit(url).hostname or "").lower()
        return any(
            host == allowed or host.endswith("." + allowed)
            for allowed in self._redirect_hosts
        )

    def redirect_target(self, request: BeaconRequest) -> Optional[str]:
        """Destination of a click beacon, resolved without recording it."""
        try:
            decoded = decode(request, self._dns_host)
        except MalformedBeacon:
            return None
        url = decoded.click_url
        return url if url is not None and self._redirect_allowed(url) else None

    def _check_catalog(self, decoded: DecodedBeacon) -> None:
        identity = decoded.identity
        if self._catalog.exists(identity.flow_id, identity.step_id) is False:
            raise UnknownFlowOrStep(identity.flow_id, identity.step_id)

    def _append(self, event: TrackingEvent) -> bool:
        try:
            self._store.append(event)
            return True
        except StorageUnavailable as exc:
            LOGGER.warning("Append failed for event %s, retrying: %s", event.id, exc)
        time.sleep(self._retry_backoff)
        try:
            self._store.append(event)
            return True
        except StorageUnavailable as exc:
            LOGGER.error("Dropping event %s after retry: %s", event.id, exc)
            return False

    def ingest(
        self,
        request: BeaconRequest,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> IngestResult:
        started = time.monotonic()
        try:
            decoded = decode(request, self._dns_host)
        except MalformedBeacon as exc:
            LOGGER.warning("Malformed beacon on %s: %s", request.path, exc)
            return IngestResult("malformed")
        if decoded.click_url is not None and not self._redirect_allowed(decoded.click_url):
            LOGGER.warning("Refusing redirect to %s on %s", decoded.click_url, request.path)
            return IngestResult("malformed")

        try:
            self._check_catalog(decoded)
        except UnknownFlowOrStep as exc:
            LOGGER.info("Ignoring beacon: %s", exc)
            return IngestResult("unknown", decoded=decoded)

        identity = decoded.identity
        event = TrackingEvent(
            flow_id=identity.flow_id,
            step_id=identity.step_id,
            contact_id=identity.contact_id,
            type=decoded.type,
            timestamp=now or utcnow(),
            transport=decoded.transport,
            click_url=decoded.click_url,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        claim = self._dedup.claim(event)
        event = self._enricher.enrich(event.with_unique(claim.is_unique))

        if not self._append(event):
            self._dedup.release(claim)
            return IngestResult("dropped", decoded=decoded)

        elapsed = time.monotonic() - started
        if elapsed > self._deadline:
            LOGGER.warning(
                "Slow ingest for %s: %.0f ms", event.id, elapsed * 1000
            )
        LOGGER.debug(
            "Recorded %s %s/%s/%s unique=%s via %s",
            event.type,
            event.flow_id,
            event.step_id,
            event.contact_id,
            event.is_unique_for_metric,
            event.transport,
        )
        return IngestResult("recorded", decoded=decoded, event=event)


__all__ = ["Ingestor", "IngestResult", "Outcome"]
