"""Runtime registry of per-backend capability sheets.

Every adapter publishes its capabilities at startup; the registry caches the
latest probe result so routing, caching and fallback stages read it instead of
branching on backend names.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable

from agentgate.types import Capabilities, PrefixCacheMode

_STICKY_MODES = {PrefixCacheMode.APC, PrefixCacheMode.RADIX, PrefixCacheMode.EXTERNAL_KV}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Sheet:
    """Cached capability snapshot for a single backend."""

    backend: str
    caps: Capabilities = field(default_factory=Capabilities)
    probed_at: datetime = field(default_factory=_now)
    healthy: bool = True

    def supports_prefix_sticky(self) -> bool:
        """True when the backend is healthy and declares any prefix caching."""
        if not self.healthy:
            return False
        if self.caps.prefix_cache_mode in _STICKY_MODES:
            return True
        return self.caps.supports_prefix_cache


class CapabilityRegistry:
    """One capability sheet per backend, optionally refreshed by probers.

    A prober is a callable returning fresh Capabilities; raising marks the
    backend unhealthy.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sheets: dict[str, Sheet] = {}
        self._probers: dict[str, Callable[[], Capabilities]] = {}

    def register(
        self,
        name: str,
        caps: Capabilities,
        prober: Callable[[], Capabilities] | None = None,
    ) -> None:
        with self._lock:
            self._sheets[name] = Sheet(backend=name, caps=caps, healthy=True)
            if prober is not None:
                self._probers[name] = prober

    def update(self, name: str, caps: Capabilities, healthy: bool) -> None:
        with self._lock:
            self._sheets[name] = Sheet(backend=name, caps=caps, healthy=healthy)

    def get(self, name: str) -> Sheet | None:
        with self._lock:
            return self._sheets.get(name)

    def all(self) -> list[Sheet]:
        with self._lock:
            return sorted(self._sheets.values(), key=lambda s: s.backend)

    def refresh_all(self) -> list[Sheet]:
        """Run every prober once and return the post-refresh snapshot."""
        with self._lock:
            probers = dict(self._probers)

        for name, prober in probers.items():
            try:
                caps = prober()
            except Exception:
                with self._lock:
                    existing = self._sheets.get(name)
                    if existing is not None:
                        self._sheets[name] = replace(
                            existing, healthy=False, probed_at=_now()
                        )
                continue
            self.update(name, caps, True)
        return self.all()