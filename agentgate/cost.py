"""Expected-cost scoring of backends for cost-aware routing.

The score blends the static per-token price with observed latency, so
self-hosted backends with no price still rank by speed. Prefix affinity always
wins over cost; this is only a tie-breaker.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from agentgate.types import Capabilities

_DEFAULT_TOKENS = 1024.0
_DEFAULT_LATENCY_MS = 200.0
_USD_PER_LATENCY_MS = 0.0001


@dataclass
class CostStat:
    mean_tokens: float = 0.0
    mean_latency: float = 0.0
    updated_at: datetime | None = None


def _ewma(prev: float, sample: float, alpha: float) -> float:
    return alpha * sample + (1 - alpha) * prev


class CostModel:
    """Scores backends by expected cost per request, using EWMA statistics."""

    def __init__(self, alpha: float = 0.2) -> None:
        self._lock = threading.Lock()
        self._stats: dict[str, CostStat] = {}
        self._alpha = alpha

    def score(self, backend_name: str, caps: Capabilities) -> float:
        """Expected USD-equivalent cost; lower is better."""
        with self._lock:
            stat = self._stats.get(backend_name)
            tokens = _DEFAULT_TOKENS
            latency_ms = _DEFAULT_LATENCY_MS
            if stat is not None:
                if stat.mean_tokens > 0:
                    tokens = stat.mean_tokens
                if stat.mean_latency > 0:
                    latency_ms = stat.mean_latency

        profile = caps.cost_profile
        usd = (
            (profile.input_usd_per_1k * 0.7 + profile.output_usd_per_1k * 0.3)
            * tokens
            / 1000.0
        )
        if usd == 0:
            usd = latency_ms * _USD_PER_LATENCY_MS
        return usd

    def observe(self, backend_name: str, tokens: int, latency: timedelta) -> None:
        """Record a real outcome for a backend."""
        with self._lock:
            stat = self._stats.setdefault(backend_name, CostStat())
            if tokens > 0:
                if stat.mean_tokens == 0:
                    stat.mean_tokens = float(tokens)
                else:
                    stat.mean_tokens = _ewma(stat.mean_tokens, float(tokens), self._alpha)
            ms = latency.total_seconds() * 1000
            if ms > 0:
                if stat.mean_latency == 0:
                    stat.mean_latency = ms
                else:
                    stat.mean_latency = _ewma(stat.mean_latency, ms, self._alpha)
            stat.updated_at = datetime.now(timezone.utc)

    def snapshot(self) -> dict[str, CostStat]:
        with self._lock:
            return {name: replace(stat) for name, stat in self._stats.items()}