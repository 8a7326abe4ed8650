"""Request-level response cache.

Three layers handle the ways a request can be a duplicate:

* exact match: the same tenant, model, messages and sampling settings;
* tool-result memo: the same deterministic tool result as the last turn,
  even when earlier turns differ;
* singleflight: concurrent identical computations collapse into one call.

There is no vector-similarity tier. By default only deterministic requests
(temperature 0) are cached; policy can opt other traffic in explicitly.
"""

from __future__ import annotations

import copy
import hashlib
import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from agentgate.types import Request, Response, Role

TIER_EXACT = "exact"
TIER_TOOL = "tool_result"
TIER_VECTOR = "vector"

_TIER_ALL = "all"


@dataclass
class CacheHit:
    """Result of a lookup; ``tier`` is empty on a miss."""

    tier: str = ""
    response: Response | None = None
    stored_at: datetime | None = None

    def __bool__(self) -> bool:
        return bool(self.tier)


@dataclass(frozen=True)
class SemanticOptions:
    """Non-positive values fall back to 10 000 entries, 5 min exact and 10 min tool TTL."""

    max_entries: int = 0
    ttl_exact: timedelta = timedelta(0)
    ttl_tool: timedelta = timedelta(0)


@dataclass(frozen=True)
class AccessOptions:
    """Per-request overrides coming from the policy engine.

    ``explicit_use`` opts traffic into caching even when it is not
    deterministic.
    """

    skip: bool = False
    explicit_use: bool = False
    tier: str = ""
    ttl: timedelta = timedelta(0)


@dataclass(frozen=True)
class CacheStats:
    exact_entries: int
    tool_entries: int
    hits_exact: int
    hits_tool: int
    misses: int
    stores: int
    in_flight: int


@dataclass
class _Entry:
    response: Response
    stored_clock: float
    stored_at: datetime


def clone_response(response: Response | None) -> Response | None:
    """Deep copy so concurrent cache hits cannot see each other's mutations."""
    if response is None:
        return None
    return copy.deepcopy(response)


def _sha256_json(value: dict[str, Any]) -> str:
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str) + "\n"
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _raw_json(value: Any) -> Any:
    if value is None or value == "" or value == b"":
        return None
    if isinstance(value, (bytes, str)):
        try:
            return json.loads(value)
        except ValueError:
            return value.decode("utf-8", "replace") if isinstance(value, bytes) else value
    return value


def exact_key(request: Request) -> str:
    """Hash of everything that determines response equality, scoped by tenant."""
    shape: dict[str, Any] = {"t": request.tenant_id}
    if request.routed_backend:
        shape["b"] = request.routed_backend
    shape["m"] = request.model
    shape["msg"] = [m.to_dict() for m in request.messages or []]
    if request.tools:
        shape["tools"] = [t.to_dict() for t in request.tools]
    if request.temperature is not None:
        shape["temp"] = request.temperature
    if request.top_p is not None:
        shape["tp"] = request.top_p
    if request.max_tokens is not None:
        shape["mt"] = request.max_tokens
    stops = sorted(request.stop or [])
    if stops:
        shape["stop"] = stops
    response_format = _raw_json(request.response_format)
    if response_format is not None:
        shape["rf"] = response_format
    return _sha256_json(shape)


def tool_key(request: Request | None) -> str:
    """Key for the tool-result tier, or "" when the tier does not apply.

    Applies only when the last message is a tool result and generation is
    deterministic.
    """
    if request is None or not request.messages:
        return ""
    if request.temperature is not None and request.temperature > 0:
        return ""
    last = request.messages[-1]
    if last.role != Role.TOOL:
        return ""
    digest = _sha256_json(
        {
            "t": request.tenant_id,
            "m": request.model,
            "id": last.tool_call_id,
            "c": last.content_string(),
        }
    )
    return "tool:" + digest


def _normalize_tier(tier: str) -> str:
    return tier if tier in (TIER_EXACT, TIER_TOOL) else _TIER_ALL


def _allows_exact(tier: str) -> bool:
    return tier in (_TIER_ALL, TIER_EXACT)


def _allows_tool(tier: str) -> bool:
    return tier in (_TIER_ALL, TIER_TOOL)


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.response: Response | None = None
        self.error: BaseException | None = None
        self.count = 1


class Singleflight:
    """Collapses concurrent calls that share a key into a single execution."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, _Flight] = {}

    def do(
        self, key: str, fn: Callable[[], Response | None]
    ) -> tuple[Response | None, bool]:
        """Run ``fn`` at most once per key concurrently.

        Returns ``(response, executed)``; ``executed`` is True for the caller
        that ran ``fn``. Followers receive a deep copy of the response, and
        an exception raised by ``fn`` is raised to every caller.
        """
        with self._lock:
            existing = self._calls.get(key)
            if existing is not None:
                existing.count += 1
            else:
                flight = _Flight()
                self._calls[key] = flight

        if existing is not None:
            existing.done.wait()
            if existing.error is not None:
                raise existing.error
            return clone_response(existing.response), False

        try:
            flight.response = fn()
        except BaseException as exc:
            flight.error = exc
            raise
        finally:
            flight.done.set()
            with self._lock:
                self._calls.pop(key, None)
        return flight.response, True

    def size(self) -> int:
        with self._lock:
            return len(self._calls)


class SemanticCache:
    """Layered exact and tool-result cache. Safe for concurrent use."""

    def __init__(
        self,
        options: SemanticOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        opts = options or SemanticOptions()
        zero = timedelta(0)
        self._max_entries = opts.max_entries if opts.max_entries > 0 else 10_000
        self._ttl_exact = (
            opts.ttl_exact if opts.ttl_exact > zero else timedelta(minutes=5)
        ).total_seconds()
        self._ttl_tool = (
            opts.ttl_tool if opts.ttl_tool > zero else timedelta(minutes=10)
        ).total_seconds()
        self._clock = clock

        self._lock = threading.Lock()
        self._exact: dict[str, _Entry] = {}
        self._tool: dict[str, _Entry] = {}
        self._hits_exact = 0
        self._hits_tool = 0
        self._misses = 0
        self._stores = 0
        self._flight = Singleflight()

    def cacheable(self, request: Request | None, options: AccessOptions | None = None) -> bool:
        """Whether this request may be served from or written to the cache."""
        opts = options or AccessOptions()
        if request is None or opts.skip:
            return False
        if request.cache_control is not None and request.cache_control.prefix_hint == "no_cache":
            return False
        if opts.explicit_use:
            return True
        return request.temperature is not None and request.temperature == 0

    def lookup(self, request: Request | None, options: AccessOptions | None = None) -> CacheHit:
        """Check the allowed tiers in order; a miss returns an empty CacheHit."""
        if request is None:
            return CacheHit()
        opts = options or AccessOptions()
        if not self.cacheable(request, opts):
            with self._lock:
                self._misses += 1
            return CacheHit()

        now = self._clock()
        ttl_exact, ttl_tool = self._ttl_exact, self._ttl_tool
        if opts.ttl > timedelta(0):
            ttl_exact = ttl_tool = opts.ttl.total_seconds()
        tier = _normalize_tier(opts.tier)

        with self._lock:
            if _allows_exact(tier):
                entry = self._exact.get(exact_key(request))
                if entry is not None and now - entry.stored_clock < ttl_exact:
                    self._hits_exact += 1
                    return CacheHit(TIER_EXACT, clone_response(entry.response), entry.stored_at)
            if _allows_tool(tier):
                key = tool_key(request)
                entry = self._tool.get(key) if key else None
                if entry is not None and now - entry.stored_clock < ttl_tool:
                    self._hits_tool += 1
                    return CacheHit(TIER_TOOL, clone_response(entry.response), entry.stored_at)
            self._misses += 1
        return CacheHit()

    def store(
        self,
        request: Request | None,
        response: Response | None,
        options: AccessOptions | None = None,
    ) -> None:
        """Insert a non-streaming response into every applicable tier."""
        if request is None or response is None:
            return
        opts = options or AccessOptions()
        if not self.cacheable(request, opts):
            return
        entry = _Entry(response, self._clock(), datetime.now(timezone.utc))
        ekey = exact_key(request)
        tkey = tool_key(request)
        tier = _normalize_tier(opts.tier)

        with self._lock:
            if _allows_exact(tier):
                if len(self._exact) >= self._max_entries:
                    self._evict_oldest(self._exact)
                self._exact[ekey] = entry
            if _allows_tool(tier) and tkey and response.choices is not None:
                if len(self._tool) >= self._max_entries:
                    self._evict_oldest(self._tool)
                self._tool[tkey] = entry
            self._stores += 1

    def singleflight(self) -> Singleflight:
        return self._flight

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                exact_entries=len(self._exact),
                tool_entries=len(self._tool),
                hits_exact=self._hits_exact,
                hits_tool=self._hits_tool,
                misses=self._misses,
                stores=self._stores,
                in_flight=self._flight.size(),
            )

    @staticmethod
    def _evict_oldest(entries: dict[str, _Entry]) -> None:
        if entries:
            oldest = min(entries, key=lambda k: entries[k].stored_clock)
            del entries[oldest]