"""In-process mirror for prefix-affinity writes.

The local prefix index is authoritative for lookups; writes are also fanned
out to a mirror so other gateway instances can learn them. This mirror keeps
events in a bounded in-memory buffer, which suits tests and single-instance
deployments.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from agentgate.prefix_service import Segment


@dataclass(frozen=True)
class MirrorStats:
    pending: int = 0
    sent: int = 0
    dropped: int = 0
    errors: int = 0


@dataclass(frozen=True)
class MirrorEvent:
    tenant_id: str
    segments: list[Segment] = field(default_factory=list)
    backend_id: str = ""
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class LocalMirror:
    """Bounded in-memory mirror; the oldest inserts are dropped when full."""

    def __init__(self, buffer_size: int = 1024) -> None:
        self._max_buffer = buffer_size if buffer_size > 0 else 1024
        self._lock = threading.Lock()
        self._inserts: deque[MirrorEvent] = deque()
        self._pins: list[MirrorEvent] = []
        self._sent = 0
        self._dropped = 0

    def mirror_insert(self, tenant_id: str, segments: list[Segment], backend_id: str) -> None:
        with self._lock:
            if len(self._inserts) >= self._max_buffer:
                self._inserts.popleft()
                self._dropped += 1
            self._inserts.append(
                MirrorEvent(tenant_id=tenant_id, segments=list(segments), backend_id=backend_id)
            )
            self._sent += 1

    def mirror_pin(self, tenant_id: str, segments: list[Segment]) -> None:
        with self._lock:
            self._pins.append(MirrorEvent(tenant_id=tenant_id, segments=list(segments)))

    @property
    def pins(self) -> list[MirrorEvent]:
        with self._lock:
            return list(self._pins)

    def stats(self) -> MirrorStats:
        with self._lock:
            return MirrorStats(
                pending=len(self._inserts), sent=self._sent, dropped=self._dropped
            )

    def drain(self) -> list[MirrorEvent]:
        """Remove and return every buffered insert event."""
        with self._lock:
            out = list(self._inserts)
            self._inserts.clear()
            return out