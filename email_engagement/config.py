"""Runtime configuration read from environment variables.

Environment variables used:

* ``TRACKING_DB_URL`` – SQLAlchemy URL of the event store.  ``NEON_URL`` is
  accepted as an alias; when neither is set a local SQLite file under
  ``TRACKING_DATA_DIR`` (default ``email_engagement/data``) is used.
* ``TRACKING_BASE_URL`` – public base URL beacons point at.
* ``TRACKING_DNS_HOST`` – wildcard host of the DNS-style transport, e.g.
  ``track.example.com``.
* ``TRACKING_DEDUP_WINDOW_SECONDS`` – dedup window; defaults to 1800.
* ``TRACKING_DEDUP_PRUNE_EVERY`` – expired dedup keys are swept every this
  many hits; defaults to 10000, 0 disables the sweep.
* ``TRACKING_INGEST_TIMEOUT_MS`` – deadline of the decode/classify/append
  path; defaults to 200.
* ``TRACKING_STORAGE_RETRY_BACKOFF_MS`` – pause before the single storage
  retry; defaults to 25.
* ``ANALYTICS_TIMEOUT_SECONDS`` – aggregation query timeout; defaults to 10.
* ``TRACKING_AGGREGATION`` – ``incremental`` (default) or ``full``.
* ``TRACKING_TRUST_FORWARDED`` – when truthy, the first ``X-Forwarded-For``
  hop is recorded as the client IP.
* ``TRACKING_RATE_LIMIT`` – per-IP limit of the beacon endpoints in
  ``limits`` notation; defaults to ``200/minute``, empty disables it.
* ``TRACKING_GEOIP_DB`` – path of a MaxMind City database (``.mmdb``); when
  set, events are enriched with country, region and city.
* ``TRACKING_REDIRECT_HOSTS`` – comma separated hosts click redirects may
  point at (subdomains included); empty allows any host.
* ``TRACKING_LOG_LEVEL`` – root log level; defaults to ``INFO``.
* ``TRACKING_HOST`` / ``TRACKING_PORT`` – bind address of the server.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Mapping, Optional, Tuple

Strategy = Literal["incremental", "full"]

_TRUTHY = {"1", "true", "yes"}


def _default_data_dir() -> Path:
    # Base dir: .../email_engagement
    return Path(__file__).resolve().parent / "data"


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class TrackingSettings:
    """Immutable settings bundle shared by the tracking components."""

    database_url: str
    base_url: str = "http://localhost:8000"
    dns_host: str = "track.localhost"
    dedup_window_seconds: int = 30 * 60
    ingest_timeout_ms: int = 200
    storage_retry_backoff_ms: int = 25
    analytics_timeout_seconds: float = 10.0
    aggregation: Strategy = "incremental"
    dedup_prune_every: int = 10_000
    trust_forwarded: bool = False
    rate_limit: str = "200/minute"
    geoip_db: Optional[str] = None
    redirect_hosts: Tuple[str, ...] = ()
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(
        cls, env: Optional[Mapping[str, str]] = None
    ) -> "TrackingSettings":
        env = os.environ if env is None else env

        url = (env.get("TRACKING_DB_URL") or env.get("NEON_URL") or "").strip()
        if not url:
            data_dir = Path(
                env.get("TRACKING_DATA_DIR") or _default_data_dir()
            )
            url = f"sqlite:///{data_dir / 'tracking_events.db'}"

        aggregation = env.get("TRACKING_AGGREGATION", "incremental").lower()
        if aggregation not in {"incremental", "full"}:
            raise ValueError(
                "TRACKING_AGGREGATION must be 'incremental' or 'full', "
                f"got {aggregation!r}"
            )

        window = _int(env, "TRACKING_DEDUP_WINDOW_SECONDS", 30 * 60)
        if window < 0:
            raise ValueError("TRACKING_DEDUP_WINDOW_SECONDS cannot be negative")
        prune_every = _int(env, "TRACKING_DEDUP_PRUNE_EVERY", 10_000)
        if prune_every < 0:
            raise ValueError("TRACKING_DEDUP_PRUNE_EVERY cannot be negative")

        redirect_hosts = tuple(
            host.strip().lower().lstrip(".")
            for host in env.get("TRACKING_REDIRECT_HOSTS", "").split(",")
            if host.strip()
        )

        return cls(
            database_url=url,
            base_url=env.get(
                "TRACKING_BASE_URL", "http://localhost:8000"
            ).rstrip("/"),
            dns_host=env.get("TRACKING_DNS_HOST", "track.localhost").lower(),
            dedup_window_seconds=window,
            dedup_prune_every=prune_every,
            ingest_timeout_ms=_int(env, "TRACKING_INGEST_TIMEOUT_MS", 200),
            storage_retry_backoff_ms=_int(
                env, "TRACKING_STORAGE_RETRY_BACKOFF_MS", 25
            ),
            analytics_timeout_seconds=float(
                env.get("ANALYTICS_TIMEOUT_SECONDS", "10") or 10
            ),
            aggregation=aggregation,  # type: ignore[arg-type]
            trust_forwarded=(
                env.get("TRACKING_TRUST_FORWARDED", "false").lower()
                in _TRUTHY
            ),
            rate_limit=env.get("TRACKING_RATE_LIMIT", "200/minute").strip(),
            geoip_db=env.get("TRACKING_GEOIP_DB", "").strip() or None,
            redirect_hosts=redirect_hosts,
            log_level=env.get("TRACKING_LOG_LEVEL", "INFO").upper(),
            host=env.get("TRACKING_HOST", "0.0.0.0"),
            port=_int(env, "TRACKING_PORT", 8000),
        )


__all__ = ["TrackingSettings", "Strategy"]
