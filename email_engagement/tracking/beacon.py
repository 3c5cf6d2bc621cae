"""Beacon codec: build and parse the tracking identifiers embedded in emails.

Five transport shapes carry the same ``(flowId, stepId, contactId)`` triple:

* ``pixel`` – ``/tracking/pixel.gif?flowId=&stepId=&contactId=&t=``
* ``background`` – same parameters on ``/tracking/background.gif``, loaded
  through a CSS ``background-image``
* ``css`` – same parameters on ``/tracking/css`` loaded through ``@import``
* ``dns`` – ``https://{contactId}.<dns host>/open.gif?flowId=&stepId=&t=``
* ``redirect`` – ``/tracking/redirect?flowId=&stepId=&contactId=&url=``

The ``t`` parameter is a cache buster.  Decoding ignores it, so it never
reaches a deduplication key.  Redirect destinations are URL-decoded exactly
once; a value that still needs decoding afterwards is rejected.
"""

from __future__ import annotations

import datetime as dt
import html
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlsplit

from email_engagement.tracking.errors import MalformedBeacon
from email_engagement.tracking.events import (
    EventType,
    TrackingIdentity,
    Transport,
    utcnow,
)

PIXEL_PATH = "/tracking/pixel.gif"
BACKGROUND_PATH = "/tracking/background.gif"
CSS_PATH = "/tracking/css"
REDIRECT_PATH = "/tracking/redirect"
DNS_PATH = "/open.gif"

CONTACT_PLACEHOLDER = "{{contactId}}"
URL_PLACEHOLDER = "{{YOUR_URL}}"
TIMESTAMP_PLACEHOLDER = "{{timestamp}}"

_MAX_ID_LENGTH = 256
_DNS_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_CONTROL = re.compile(r"[\x00-\x20\x7f]")


@dataclass(frozen=True)
class BeaconRequest:
    """The parts of an inbound HTTP request the codec looks at.

    ``query`` is the raw, still percent-encoded query string.
    """

    path: str
    query: str = ""
    host: str = ""


@dataclass(frozen=True)
class DecodedBeacon:
    identity: TrackingIdentity
    type: EventType
    transport: Transport
    click_url: Optional[str] = None


def _transport_for_path(path: str) -> Transport:
    path = path.rstrip("/") or "/"
    if path == PIXEL_PATH:
        return "pixel"
    if path == BACKGROUND_PATH:
        return "background"
    if path == CSS_PATH or path.startswith(CSS_PATH + "/"):
        return "css"
    if path == REDIRECT_PATH:
        return "redirect"
    if path == DNS_PATH:
        return "dns"
    raise MalformedBeacon(f"Not a beacon path: {path!r}")


def _parse_query(query: str) -> Dict[str, str]:
    try:
        pairs = parse_qsl(
            query, keep_blank_values=True, encoding="utf-8", errors="strict"
        )
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedBeacon(f"Unparsable query string: {exc}") from exc
    params: Dict[str, str] = {}
    for name, value in pairs:
        if name in params:
            raise MalformedBeacon(f"Repeated parameter: {name}")
        params[name] = value
    return params


def _check_identifier(name: str, value: Optional[str]) -> str:
    if value is None or not value.strip():
        raise MalformedBeacon(f"Missing required parameter: {name}")
    if "{{" in value or "}}" in value:
        raise MalformedBeacon(f"Unresolved template token in {name}")
    if len(value) > _MAX_ID_LENGTH or _CONTROL.search(value):
        raise MalformedBeacon(f"Invalid value for {name}")
    return value


def _check_destination(value: Optional[str]) -> str:
    """Validate a redirect destination that has been decoded once."""
    if value is None or not value:
        raise MalformedBeacon("Missing required parameter: url")
    if URL_PLACEHOLDER in value or _CONTROL.search(value):
        raise MalformedBeacon("Invalid destination URL")
    parts = urlsplit(value)
    # A doubly encoded value still reads "https%3A%2F%2F..." after one
    # decode, so it has neither a scheme nor a host here.
    if parts.scheme.lower() not in {"http", "https"}:
        raise MalformedBeacon("Destination URL must be absolute http(s)")
    if not parts.netloc or "%" in parts.netloc:
        raise MalformedBeacon("Destination URL has no valid host")
    return value


def _contact_from_host(host: str, dns_host: str) -> str:
    host = host.split(":", 1)[0].rstrip(".").lower()
    suffix = "." + dns_host.strip(".").lower()
    if not host.endswith(suffix):
        raise MalformedBeacon(f"Host {host!r} is not under {dns_host!r}")
    label = host[: -len(suffix)]
    if not _DNS_LABEL.match(label):
        raise MalformedBeacon(f"Invalid contact label in host {host!r}")
    return label


def decode(request: BeaconRequest, dns_host: str = "") -> DecodedBeacon:
    """Decode an inbound beacon request.

    Raises:
        MalformedBeacon: when the path is not a beacon path, a required
            parameter is missing, repeated or unparsable, or a redirect
            destination is not a single-encoded absolute http(s) URL.
    """
    transport = _transport_for_path(request.path)
    params = _parse_query(request.query)

    flow_id = _check_identifier("flowId", params.get("flowId"))
    step_id = _check_identifier("stepId", params.get("stepId"))

    if transport == "dns":
        if not dns_host:
            raise MalformedBeacon("DNS beacon received without a DNS host")
        contact_id = _contact_from_host(request.host, dns_host)
        query_contact = params.get("contactId")
        if query_contact is not None and query_contact.lower() != contact_id:
            raise MalformedBeacon("contactId in query disagrees with host")
    else:
        contact_id = _check_identifier("contactId", params.get("contactId"))

    identity = TrackingIdentity(flow_id, step_id, contact_id)
    declared = params.get("type")

    if transport == "redirect":
        if declared not in (None, "click"):
            raise MalformedBeacon(f"Redirect beacon with type {declared!r}")
        click_url = _check_destination(params.get("url"))
        return DecodedBeacon(identity, "click", transport, click_url)

    if declared not in (None, "open"):
        raise MalformedBeacon(f"Open beacon with type {declared!r}")
    return DecodedBeacon(identity, "open", transport)


def _cache_buster(now: Optional[dt.datetime]) -> str:
    moment = now or utcnow()
    return str(int(moment.timestamp() * 1000))


def _require_identity(identity: TrackingIdentity) -> None:
    for name, value in (
        ("flowId", identity.flow_id),
        ("stepId", identity.step_id),
        ("contactId", identity.contact_id),
    ):
        try:
            _check_identifier(name, value)
        except MalformedBeacon as exc:
            raise ValueError(str(exc)) from exc


def _query(pairs: List[Tuple[str, str]]) -> str:
    return urlencode(pairs, quote_via=quote, safe="")


def encode(
    identity: TrackingIdentity,
    event_type: EventType,
    transport: Transport,
    *,
    base_url: str,
    dns_host: str = "",
    url: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> str:
    """Build the beacon URL for ``identity`` on the given transport.

    Raises:
        ValueError: for an event type the transport cannot carry, a missing
            click destination, or a contact id that is not a DNS label when
            the DNS transport is requested.
    """
    _require_identity(identity)
    base = base_url.rstrip("/")

    if transport == "redirect":
        if event_type != "click":
            raise ValueError("the redirect transport only carries clicks")
        try:
            destination = _check_destination(url)
        except MalformedBeacon as exc:
            raise ValueError(f"unusable click destination: {exc}") from exc
        return f"{base}{REDIRECT_PATH}?" + _query(
            [
                ("flowId", identity.flow_id),
                ("stepId", identity.step_id),
                ("contactId", identity.contact_id),
                ("url", destination),
            ]
        )

    if event_type != "open":
        raise ValueError(f"the {transport} transport only carries opens")
    buster = _cache_buster(now)

    if transport == "dns":
        if not dns_host:
            raise ValueError("the dns transport needs a dns_host")
        if not _DNS_LABEL.match(identity.contact_id):
            raise ValueError(
                f"contact id {identity.contact_id!r} is not a DNS label"
            )
        return f"https://{identity.contact_id}.{dns_host}{DNS_PATH}?" + _query(
            [
                ("flowId", identity.flow_id),
                ("stepId", identity.step_id),
                ("t", buster),
            ]
        )

    paths = {"pixel": PIXEL_PATH, "background": BACKGROUND_PATH, "css": CSS_PATH}
    return f"{base}{paths[transport]}?" + _query(
        [
            ("flowId", identity.flow_id),
            ("stepId", identity.step_id),
            ("contactId", identity.contact_id),
            ("t", buster),
        ]
    )


def _wrap(transport: Transport, beacon_url: str, label: str = "") -> str:
    src = html.escape(beacon_url, quote=True)
    if transport == "css":
        return f'<style>@import url("{src}");</style>'
    if transport == "background":
        return f"<div style=\"background-image:url('{src}')\"></div>"
    if transport == "redirect":
        return f'<a href="{src}">{html.escape(label)}</a>'
    return (
        f'<img src="{src}" alt="" width="1" height="1" '
        'style="display:none;" />'
    )


def encode_html(
    identity: TrackingIdentity,
    event_type: EventType,
    transport: Transport,
    *,
    base_url: str,
    dns_host: str = "",
    url: Optional[str] = None,
    label: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> str:
    """Return the HTML snippet embedding the beacon for ``transport``."""
    beacon_url = encode(
        identity,
        event_type,
        transport,
        base_url=base_url,
        dns_host=dns_host,
        url=url,
        now=now,
    )
    return _wrap(transport, beacon_url, label or url or "")


def tracking_snippets(
    flow_id: str, step_id: str, *, base_url: str, dns_host: str
) -> Dict[str, str]:
    """Return template snippets for the email composition step.

    The snippets keep the literal ``{{contactId}}``, ``{{timestamp}}`` and
    ``{{YOUR_URL}}`` tokens; they must be substituted before sending.
    """
    if not flow_id or not step_id:
        raise ValueError("flow_id and step_id are required")
    base = base_url.rstrip("/")
    ids = (
        f"flowId={quote(flow_id, safe='')}&stepId={quote(step_id, safe='')}"
    )
    params = f"{ids}&contactId={CONTACT_PLACEHOLDER}"
    buster = f"&t={TIMESTAMP_PLACEHOLDER}"

    pixel_url = f"{base}{PIXEL_PATH}?{params}{buster}"
    background_url = f"{base}{BACKGROUND_PATH}?{params}{buster}"
    css_url = f"{base}{CSS_PATH}?{params}{buster}"
    click_template = f"{base}{REDIRECT_PATH}?{params}&url={URL_PLACEHOLDER}"
    dns_url = f"https://{CONTACT_PLACEHOLDER}.{dns_host}{DNS_PATH}?{ids}{buster}"

    pixel_html = _wrap("pixel", pixel_url)
    css_html = _wrap("css", css_url)
    return {
        "tracking_pixel_url": pixel_url,
        "tracking_pixel_html": pixel_html,
        "click_tracking_template": click_template,
        "click_tracking_example": _wrap(
            "redirect",
            click_template.replace(
                URL_PLACEHOLDER, quote("https://example.com", safe="")
            ),
            "Click here",
        ),
        "css_tracking_url": css_url,
        "css_tracking_html": css_html,
        "background_tracking_html": _wrap("background", background_url),
        "dns_tracking_html": _wrap("dns", dns_url),
        "combined_tracking_html": f"{pixel_html}\n{css_html}",
    }


__all__ = [
    "BeaconRequest",
    "DecodedBeacon",
    "decode",
    "encode",
    "encode_html",
    "tracking_snippets",
    "PIXEL_PATH",
    "BACKGROUND_PATH",
    "CSS_PATH",
    "REDIRECT_PATH",
    "DNS_PATH",
    "CONTACT_PLACEHOLDER",
    "URL_PLACEHOLDER",
]
