"""Flow/step catalog collaborator.

Flows and steps belong to the external messaging-flow service.  Tracking only
needs to know whether a decoded beacon still references a live flow/step and
how many recipients each step was sent to (the open-rate denominator).
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, Optional, Protocol


class FlowCatalog(Protocol):
    def exists(self, flow_id: str, step_id: Optional[str] = None) -> Optional[bool]:
        """Return whether the flow (and step) exists, or ``None`` if unknown."""
        ...

    def recipients_sent(self, flow_id: str, step_id: Optional[str] = None) -> int:
        ...


class OpenFlowCatalog:
    """Catalog used when no flow service is wired in.

    It never rejects a beacon and knows no recipient counts, so open rates
    stay at zero until a real catalog is configured.
    """

    def exists(self, flow_id: str, step_id: Optional[str] = None) -> Optional[bool]:
        return None

    def recipients_sent(self, flow_id: str, step_id: Optional[str] = None) -> int:
        return 0


class InMemoryFlowCatalog:
    """Thread-safe catalog fed by the flow service (or by tests)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sent: Dict[str, Dict[str, int]] = {}

    def register(
        self,
        flow_id: str,
        steps: Iterable[str] = (),
        recipients: Optional[Dict[str, int]] = None,
    ) -> None:
        recipients = recipients or {}
        with self._lock:
            flow = self._sent.setdefault(flow_id, {})
            for step_id in steps:
                flow.setdefault(step_id, 0)
            for step_id, count in recipients.items():
                flow[step_id] = int(count)

    def record_sent(self, flow_id: str, step_id: str, count: int = 1) -> None:
        with self._lock:
            flow = self._sent.setdefault(flow_id, {})
            flow[step_id] = flow.get(step_id, 0) + count

    def remove(self, flow_id: str, step_id: Optional[str] = None) -> None:
        with self._lock:
            if step_id is None:
                self._sent.pop(flow_id, None)
            elif flow_id in self._sent:
                self._sent[flow_id].pop(step_id, None)

    def exists(self, flow_id: str, step_id: Optional[str] = None) -> Optional[bool]:
        with self._lock:
            flow = self._sent.get(flow_id)
            if flow is None:
                return False
            return True if step_id is None else step_id in flow

    def recipients_sent(self, flow_id: str, step_id: Optional[str] = None) -> int:
        with self._lock:
            flow = self._sent.get(flow_id, {})
            if step_id is None:
                return sum(flow.values())
            return flow.get(step_id, 0)


__all__ = ["FlowCatalog", "OpenFlowCatalog", "InMemoryFlowCatalog"]
