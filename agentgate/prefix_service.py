"""Tenant-isolated prefix locality index.

Requests that share system prompts and tool definitions are routed back to the
backend instance that recently processed the same prefix. The index is a
radix-like tree keyed by per-segment hashes; it keeps affinity hints only,
never KV tensors, so backend-side prefix caches hit more often.
"""

from __future__ import annotations

import json
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterator, Protocol

from agentgate.types import Request, Role

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF

_TOKENS_PER_SEGMENT = 1024
_CHARS_PER_TOKEN = 4
_CHUNK_CHARS = _TOKENS_PER_SEGMENT * _CHARS_PER_TOKEN

_DEFAULT_TENANT = "default"


class SegmentType(str, Enum):
    CLIENT_HINT = "client_hint"
    SYSTEM = "system"
    TOOLS = "tools"
    HISTORY = "history"
    FEW_SHOT = "few_shot"


@dataclass(frozen=True)
class Segment:
    """One hashed slice of a request prefix."""

    type: SegmentType | str = SegmentType.SYSTEM
    hash: int = 0
    token_len: int = 0
    content: str = ""


@dataclass(frozen=True)
class CandidateBackend:
    backend_id: str
    matched_tokens: int
    hit_prob: float
    score: float
    last_seen: datetime | None


@dataclass
class PrefixMatch:
    """Outcome of a prefix lookup."""

    backend_id: str = ""
    matched_tokens: int = 0
    total_tokens: int = 0
    matched_ratio: float = 0.0
    reason: str = ""
    candidates: list[CandidateBackend] = field(default_factory=list)


@dataclass(frozen=True)
class TopKey:
    tenant_id: str
    hash: int
    hits: int
    last_hit: datetime | None
    pinned: bool


@dataclass
class PrefixStats:
    tenants: int = 0
    nodes: int = 0
    max_entries: int = 0
    lookups: int = 0
    hits: int = 0
    inserts: int = 0
    evictions: int = 0
    pinned: int = 0
    top_candidates: list[TopKey] = field(default_factory=list)


class _Mirror(Protocol):
    def mirror_insert(self, tenant_id: str, segments: list[Segment], backend_id: str) -> None: ...

    def mirror_pin(self, tenant_id: str, segments: list[Segment]) -> None: ...


@dataclass
class PrefixOptions:
    """Non-positive values fall back to 100 000 entries and a 5 minute half-life."""

    max_entries: int = 0
    half_life: timedelta = timedelta(0)
    debug_content: bool = False
    mirror: Any = None


@dataclass
class _BackendStat:
    processed_at: float
    last_seen: float = 0.0
    hit_count: int = 0


@dataclass
class _Node:
    hash: int = 0
    children: dict[int, _Node] = field(default_factory=dict)
    backends: dict[str, _BackendStat] = field(default_factory=dict)
    pinned: bool = False
    last_hit: float = 0.0
    hit_count: int = 0


def hash64(s: str) -> int:
    """64-bit FNV-1a hash of the UTF-8 encoding of ``s``."""
    h = _FNV64_OFFSET
    for byte in s.encode("utf-8"):
        h ^= byte
        h = (h * _FNV64_PRIME) & _MASK64
    return h


def estimate_tokens(s: str) -> int:
    """Rough token count: one token per four characters, at least one if non-empty."""
    if not s:
        return 0
    return max(len(s) // _CHARS_PER_TOKEN, 1)


def _type_value(typ: SegmentType | str) -> str:
    return typ.value if isinstance(typ, Enum) else typ


def _new_segment(typ: SegmentType | str, content: str, debug: bool) -> Segment:
    return Segment(
        type=typ,
        hash=hash64(_type_value(typ) + "\x00" + content),
        token_len=estimate_tokens(content),
        content=content if debug else "",
    )


def split_content(typ: SegmentType | str, content: str, debug: bool) -> list[Segment]:
    """Split content into segments of about 1024 estimated tokens each."""
    if len(content) <= _CHUNK_CHARS:
        return [_new_segment(typ, content, debug)]
    return [
        _new_segment(typ, content[start:start + _CHUNK_CHARS], debug)
        for start in range(0, len(content), _CHUNK_CHARS)
    ]


def _token_total(segments: list[Segment]) -> int:
    return sum(seg.token_len for seg in segments)


def _ratio(matched: int, total: int) -> float:
    return matched / total if total else 0.0


def _to_datetime(ts: float) -> datetime | None:
    if ts == 0:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _dedupe(candidates: list[CandidateBackend]) -> list[CandidateBackend]:
    seen: set[str] = set()
    out = []
    for c in candidates:
        if c.backend_id in seen:
            continue
        seen.add(c.backend_id)
        out.append(c)
    return out


def _walk(root: _Node) -> Iterator[_Node]:
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(node.children.values())


def _collect_leaves(parent: _Node, out: list[tuple[_Node, int, float]]) -> None:
    for h, child in parent.children.items():
        if child.pinned:
            continue
        if not child.children:
            out.append((parent, h, child.last_hit))
            continue
        _collect_leaves(child, out)


class PrefixService:
    """In-process prefix affinity index. Safe for concurrent use."""

    def __init__(
        self,
        options: PrefixOptions | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        opts = options or PrefixOptions()
        self._max_entries = opts.max_entries if opts.max_entries > 0 else 100_000
        half_life = opts.half_life if opts.half_life > timedelta(0) else timedelta(minutes=5)
        self._half_life = half_life.total_seconds()
        self._debug_content = opts.debug_content
        self._mirror: _Mirror | None = opts.mirror
        self._clock = clock

        self._lock = threading.RLock()
        self._roots: dict[str, _Node] = {}
        self._nodes = 0
        self._pinned_count = 0
        self._lookups = 0
        self._hits = 0
        self._inserts = 0
        self._evictions = 0

    def extract(self, request: Request) -> list[Segment]:
        """Derive the prefix segments of a request, skipping the current user turn."""
        segments: list[Segment] = []
        if request.prefix_hash:
            segments.append(
                Segment(
                    type=SegmentType.CLIENT_HINT,
                    hash=hash64(SegmentType.CLIENT_HINT.value + "\x00" + request.prefix_hash),
                    token_len=0,
                )
            )

        last_user = next(
            (
                i
                for i in range(len(request.messages) - 1, -1, -1)
                if request.messages[i].role == Role.USER
            ),
            -1,
        )

        for i, msg in enumerate(request.messages):
            if i == last_user:
                continue
            typ = SegmentType.SYSTEM if msg.role == Role.SYSTEM else SegmentType.HISTORY
            segments.extend(split_content(typ, msg.content_string(), self._debug_content))

        if request.tools:
            raw = json.dumps(
                [t.to_dict() for t in request.tools],
                separators=(",", ":"),
                ensure_ascii=False,
            )
            segments.append(_new_segment(SegmentType.TOOLS, raw, self._debug_content))
        return segments

    def lookup(self, tenant_id: str, segments: list[Segment]) -> PrefixMatch:
        """Find the best backend for the longest known prefix of ``segments``."""
        total = _token_total(segments)
        tenant_id = tenant_id or _DEFAULT_TENANT
        if not segments:
            return PrefixMatch(total_tokens=total, reason="empty_prefix")

        with self._lock:
            self._lookups += 1
            root = self._roots.get(tenant_id)
            if root is None:
                return PrefixMatch(total_tokens=total, reason="cold_tenant")

            now = self._clock()
            cur = root
            matched = 0
            candidates: list[tuple[CandidateBackend, float]] = []
            for seg in segments:
                nxt = cur.children.get(seg.hash)
                if nxt is None:
                    break
                cur = nxt
                matched += seg.token_len
                cur.last_hit = now
                cur.hit_count += 1
                for backend_id, stat in cur.backends.items():
                    prob = self._hit_prob(now, stat.last_seen)
                    candidates.append(
                        (
                            CandidateBackend(
                                backend_id=backend_id,
                                matched_tokens=matched,
                                hit_prob=prob,
                                score=matched * prob,
                                last_seen=_to_datetime(stat.last_seen),
                            ),
                            stat.last_seen,
                        )
                    )

            if not candidates:
                return PrefixMatch(
                    matched_tokens=matched,
                    total_tokens=total,
                    matched_ratio=_ratio(matched, total),
                    reason="prefix_miss",
                )

            ordered = [c for c, _ in sorted(candidates, key=lambda p: (-p[0].score, -p[1]))]
            self._hits += 1
            return PrefixMatch(
                backend_id=ordered[0].backend_id,
                matched_tokens=matched,
                total_tokens=total,
                matched_ratio=_ratio(matched, total),
                reason="sticky_match",
                candidates=_dedupe(ordered),
            )

    def insert(self, tenant_id: str, segments: list[Segment], backend_id: str) -> None:
        """Record that ``backend_id`` processed this segment chain."""
        tenant_id = tenant_id or _DEFAULT_TENANT
        if not segments or not backend_id:
            return

        with self._lock:
            cur = self._root(tenant_id)
            now = self._clock()
            for seg in segments:
                cur = self._child(cur, seg.hash)
                cur.last_hit = now
                cur.hit_count += 1
                stat = cur.backends.get(backend_id)
                if stat is None:
                    stat = _BackendStat(processed_at=now)
                    cur.backends[backend_id] = stat
                stat.last_seen = now
                stat.hit_count += 1
            self._inserts += 1

            if self._nodes > self._max_entries:
                self._evict_oldest()

            if self._mirror is not None:
                self._mirror.mirror_insert(tenant_id, segments, backend_id)

    def pin(self, tenant_id: str, segments: list[Segment]) -> None:
        """Mark the node at the end of this chain as never evictable."""
        tenant_id = tenant_id or _DEFAULT_TENANT
        with self._lock:
            cur = self._root(tenant_id)
            for seg in segments:
                cur = self._child(cur, seg.hash)
            if not cur.pinned:
                self._pinned_count += 1
            cur.pinned = True

            if self._mirror is not None:
                self._mirror.mirror_pin(tenant_id, segments)

    def stats(self, top_n: int = 0) -> PrefixStats:
        with self._lock:
            return PrefixStats(
                tenants=len(self._roots),
                nodes=self._nodes,
                max_entries=self._max_entries,
                lookups=self._lookups,
                hits=self._hits,
                inserts=self._inserts,
                evictions=self._evictions,
                pinned=self._pinned_count,
                top_candidates=self._top(top_n) if top_n > 0 else [],
            )

    def top_k(self, n: int) -> list[TopKey]:
        """The most-hit prefix nodes across all tenants."""
        with self._lock:
            return self._top(n)

    def _root(self, tenant_id: str) -> _Node:
        root = self._roots.get(tenant_id)
        if root is None:
            root = _Node()
            self._roots[tenant_id] = root
        return root

    def _child(self, parent: _Node, h: int) -> _Node:
        child = parent.children.get(h)
        if child is None:
            child = _Node(hash=h)
            parent.children[h] = child
            self._nodes += 1
        return child

    def _hit_prob(self, now: float, last_seen: float) -> float:
        if last_seen == 0:
            return 0.0
        return math.exp(-(now - last_seen) / self._half_life)

    def _evict_oldest(self) -> None:
        leaves: list[tuple[_Node, int, float]] = []
        for root in self._roots.values():
            _collect_leaves(root, leaves)
        if not leaves:
            return
        leaves.sort(key=lambda leaf: leaf[2])

        target = max(self._max_entries // 10, 1)
        removed = 0
        for parent, h, _ in leaves:
            if removed >= target or self._nodes <= self._max_entries:
                break
            child = parent.children.get(h)
            if child is None or child.pinned:
                continue
            del parent.children[h]
            self._nodes -= 1
            self._evictions += 1
            removed += 1

    def _top(self, n: int) -> list[TopKey]:
        if n <= 0:
            return []
        keys: list[tuple[TopKey, float]] = []
        for tenant_id, root in self._roots.items():
            for node in _walk(root):
                if node.hash == 0 or node.hit_count == 0:
                    continue
                keys.append(
                    (
                        TopKey(
                            tenant_id=tenant_id,
                            hash=node.hash,
                            hits=node.hit_count,
                            last_hit=_to_datetime(node.last_hit),
                            pinned=node.pinned,
                        ),
                        node.last_hit,
                    )
                )
        keys.sort(key=lambda p: (-p[0].hits, -p[1]))
        return [k for k, _ in keys[:n]]