"""Optional device, client and location enrichment of raw events.

The device/client guess is a plain user-agent sniff.  Image proxies such as
``GoogleImageProxy`` fetch beacons on behalf of the recipient, so for them we
only learn the mail client, never the device.  Location lookup is delegated
to a pluggable resolver; :class:`GeoIPLocations` reads a MaxMind City
database through ``geoip2`` and is used when ``TRACKING_GEOIP_DB`` is set.
Enrichment failures are logged and never block ingestion.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

import geoip2.database
import geoip2.errors

from email_engagement.tracking.events import Device, TrackingEvent

LOGGER = logging.getLogger(__name__)

# (user-agent token, client name); first match wins.
_PROXY_CLIENTS: Tuple[Tuple[str, str], ...] = (
    ("GoogleImageProxy", "Gmail"),
    ("YahooMailProxy", "Yahoo Mail"),
    ("OutlookImageProxy", "Outlook.com"),
)
_DESKTOP_CLIENTS: Tuple[Tuple[str, str], ...] = (
    ("Thunderbird", "Thunderbird"),
    ("Microsoft Outlook", "Outlook"),
    ("ms-office", "Outlook"),
    ("Apple Mail", "Apple Mail"),
)


@dataclass(frozen=True)
class Location:
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None


class LocationResolver(Protocol):
    def lookup(self, ip: str) -> Optional[Location]:
        ...


class GeoIPLocations:
    """Resolve IPs against a MaxMind GeoLite2/GeoIP2 City database.

    ``reader`` is anything with the ``city(ip)`` method of
    :class:`geoip2.database.Reader`.
    """

    def __init__(self, reader: Any) -> None:
        self._reader = reader

    @classmethod
    def open(cls, path: str) -> "GeoIPLocations":
        LOGGER.info("Loading GeoIP database %s", path)
        return cls(geoip2.database.Reader(path))

    def lookup(self, ip: str) -> Optional[Location]:
        try:
            response = self._reader.city(ip)
        except geoip2.errors.AddressNotFoundError:
            return None
        return Location(
            country=response.country.iso_code,
            region=response.subdivisions.most_specific.name,
            city=response.city.name,
        )

    def close(self) -> None:
        self._reader.close()


def is_public_ip(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    return ip.is_global


def detect_client(user_agent: Optional[str]) -> Tuple[Device, Optional[str]]:
    """Return ``(device, email_client)`` guessed from a user agent."""
    if not user_agent:
        return "unknown", None
    for token, name in _PROXY_CLIENTS:
        if token in user_agent:
            return "unknown", name

    ua = user_agent.lower()
    if "ipad" in ua or "tablet" in ua or ("android" in ua and "mobile" not in ua):
        device: Device = "tablet"
    elif "mobi" in ua or "iphone" in ua or "android" in ua:
        device = "mobile"
    elif any(os_name in ua for os_name in ("windows", "macintosh", "x11", "linux")):
        device = "desktop"
    else:
        device = "unknown"

    client = None
    for token, name in _DESKTOP_CLIENTS:
        if token.lower() in ua:
            client = name
            break
    return device, client


class Enricher:
    """Attach device/client/location details to an event."""

    def __init__(self, locations: Optional[LocationResolver] = None) -> None:
        self._locations = locations

    def enrich(self, event: TrackingEvent) -> TrackingEvent:
        try:
            device, client = detect_client(event.user_agent)
            location = None
            if self._locations is not None and is_public_ip(event.client_ip):
                location = self._locations.lookup(event.client_ip or "")
        except Exception:
            LOGGER.exception("Enrichment failed for event %s", event.id)
            return event
        return event.with_enrichment(
            device,
            client,
            location.country if location else None,
            location.city if location else None,
            region=location.region if location else None,
        )


__all__ = [
    "Enricher",
    "GeoIPLocations",
    "Location",
    "LocationResolver",
    "detect_client",
    "is_public_ip",
]
