"""Declarative policy engine: routing, cache and budget rules.

Rules are read from YAML and evaluated per request. Routing and cache rules
use first-match-wins semantics; budget rules cap tokens or spend per tenant
per time window. The evaluator is intentionally declarative with no
scripting, so configurations stay auditable.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import yaml

from agentgate.config import ConfigError, _expand_env, parse_duration
from agentgate.types import Request


class PolicyError(ValueError):
    """Raised when a policy document cannot be parsed or is invalid."""


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    raise PolicyError(f"expected a list, got {value!r}")


def _mapping(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PolicyError(f"{what} must be a mapping")
    return value


def _duration(value: Any) -> timedelta:
    try:
        return parse_duration(value)
    except ConfigError as exc:
        raise PolicyError(str(exc)) from exc


@dataclass
class Match:
    """Predicate shared by all rules; empty fields match everything."""

    tenant: str = ""
    tenants: list[str] = field(default_factory=list)
    model: str = ""
    models: list[str] = field(default_factory=list)
    agent: str = ""
    vendor: str = ""
    step_type: str = ""

    def matches(self, request: Request, vendor: str) -> bool:
        """Lists OR within a field; fields AND across."""
        if self.tenant and self.tenant != request.tenant_id:
            return False
        if self.tenants and request.tenant_id not in self.tenants:
            return False
        if self.model and self.model != request.model:
            return False
        if self.models and request.model not in self.models:
            return False
        if self.agent and self.agent != request.agent_id:
            return False
        if self.step_type and self.step_type != request.step_type:
            return False
        if self.vendor and self.vendor != vendor:
            return False
        return True

    @classmethod
    def _from_dict(cls, data: Any) -> Match:
        d = _mapping(data, "when")
        return cls(
            tenant=str(d.get("tenant") or ""),
            tenants=_str_list(d.get("tenants")),
            model=str(d.get("model") or ""),
            models=_str_list(d.get("models")),
            agent=str(d.get("agent") or ""),
            vendor=str(d.get("vendor") or ""),
            step_type=str(d.get("step_type") or ""),
        )


@dataclass
class RoutingRule:
    name: str = ""
    when: Match = field(default_factory=Match)
    backend: str = ""
    fallback: list[str] = field(default_factory=list)
    weight: float = 0.0


@dataclass
class CacheRule:
    name: str = ""
    when: Match = field(default_factory=Match)
    action: str = ""
    ttl: timedelta = timedelta(0)
    tier: str = ""


@dataclass
class BudgetRule:
    name: str = ""
    when: Match = field(default_factory=Match)
    window: timedelta = timedelta(0)
    max_tokens: int = 0
    max_usd: float = 0.0
    action: str = ""


@dataclass
class PolicyDocument:
    """The on-disk policy schema."""

    routing: list[RoutingRule] = field(default_factory=list)
    cache: list[CacheRule] = field(default_factory=list)
    budgets: list[BudgetRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PolicyDocument:
        d = _mapping(data, "policy")

        def items(key: str) -> list[dict[str, Any]]:
            raw = d.get(key) or []
            if not isinstance(raw, list):
                raise PolicyError(f"{key} must be a list")
            return [_mapping(item, f"{key} entry") for item in raw]

        return cls(
            routing=[
                RoutingRule(
                    name=str(r.get("name") or ""),
                    when=Match._from_dict(r.get("when")),
                    backend=str(r.get("backend") or ""),
                    fallback=_str_list(r.get("fallback")),
                    weight=float(r.get("weight") or 0.0),
                )
                for r in items("routing")
            ],
            cache=[
                CacheRule(
                    name=str(r.get("name") or ""),
                    when=Match._from_dict(r.get("when")),
                    action=str(r.get("action") or ""),
                    ttl=_duration(r.get("ttl")),
                    tier=str(r.get("tier") or ""),
                )
                for r in items("cache")
            ],
            budgets=[
                BudgetRule(
                    name=str(r.get("name") or ""),
                    when=Match._from_dict(r.get("when")),
                    window=_duration(r.get("window")),
                    max_tokens=int(r.get("max_tokens") or 0),
                    max_usd=float(r.get("max_usd") or 0.0),
                    action=str(r.get("action") or ""),
                )
                for r in items("budgets")
            ],
        )

    def validate(self) -> None:
        """Raise PolicyError for the first invalid rule."""
        for r in self.routing:
            if not r.backend:
                raise PolicyError(f'routing rule "{r.name}" missing backend')
        for c in self.cache:
            if c.action not in ("", "use", "skip"):
                raise PolicyError(f'cache rule "{c.name}" has invalid action "{c.action}"')
        for b in self.budgets:
            if b.window <= timedelta(0):
                raise PolicyError(f'budget rule "{b.name}" needs a window')
            if b.max_tokens == 0 and b.max_usd == 0:
                raise PolicyError(f'budget rule "{b.name}" needs max_tokens or max_usd')
            if b.action not in ("", "deny", "warn"):
                raise PolicyError(f'budget rule "{b.name}" has invalid action "{b.action}"')


@dataclass
class Decision:
    """The engine's verdict for a single request."""

    backend_name: str = ""
    backend_chain: list[str] = field(default_factory=list)
    cache_use: bool | None = None
    cache_tier: str = ""
    cache_ttl: timedelta = timedelta(0)
    budget_exceeded: bool = False
    budget_reason: str = ""
    budget_retry_after: timedelta = timedelta(0)
    matched_routing_rule: str = ""
    matched_cache_rule: str = ""
    matched_budget_rule: str = ""


@dataclass(frozen=True)
class BudgetSnapshot:
    rule_name: str
    window_start: datetime
    window_end: datetime
    tokens_used: int
    tokens_max: int
    usd_used: float
    usd_max: float
    reset_in: timedelta


@dataclass
class _UsageBucket:
    window_start: datetime
    tokens: int = 0
    usd: float = 0.0


def _budget_key(rule: str, tenant: str) -> str:
    return f"{rule}|{tenant}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PolicyEngine:
    """Evaluates a policy document. Safe for concurrent use."""

    def __init__(
        self,
        document: PolicyDocument | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._doc = document or PolicyDocument()
        self._clock = clock
        self._lock = threading.Lock()
        self._usage: dict[str, _UsageBucket] = {}

    def is_empty(self) -> bool:
        """True when no rules of any kind are configured."""
        return not (self._doc.routing or self._doc.cache or self._doc.budgets)

    def evaluate(self, request: Request, vendor: str) -> Decision:
        """Evaluate rules for one request; does not account usage."""
        d = Decision()

        for rule in self._doc.routing:
            if rule.when.matches(request, vendor):
                d.backend_name = rule.backend
                d.backend_chain = [rule.backend, *rule.fallback]
                d.matched_routing_rule = rule.name
                break

        for rule in self._doc.cache:
            if rule.when.matches(request, vendor):
                d.cache_use = rule.action in ("use", "")
                d.cache_tier = rule.tier
                d.cache_ttl = rule.ttl
                d.matched_cache_rule = rule.name
                break

        exceeded = self._check_budget(request, vendor)
        if exceeded is not None:
            name, retry = exceeded
            d.budget_exceeded = True
            d.budget_reason = f'budget "{name}" exceeded'
            d.budget_retry_after = retry
            d.matched_budget_rule = name
        return d

    def account_usage(self, request: Request, vendor: str, tokens: int, usd: float) -> None:
        """Record consumption against every matching budget bucket."""
        with self._lock:
            now = self._clock()
            for rule in self._doc.budgets:
                if not rule.when.matches(request, vendor):
                    continue
                key = _budget_key(rule.name, request.tenant_id)
                bucket = self._usage.get(key)
                if bucket is None or now - bucket.window_start > rule.window:
                    bucket = _UsageBucket(window_start=now)
                    self._usage[key] = bucket
                bucket.tokens += tokens
                bucket.usd += usd

    def snapshot_budgets(self) -> dict[str, BudgetSnapshot]:
        """A copy of every active budget bucket keyed by ``rule|tenant``."""
        with self._lock:
            now = self._clock()
            out: dict[str, BudgetSnapshot] = {}
            for key, bucket in self._usage.items():
                rule_name = key.split("|", 1)[0]
                rule = next((r for r in self._doc.budgets if r.name == rule_name), None)
                window = rule.window if rule else timedelta(0)
                out[key] = BudgetSnapshot(
                    rule_name=rule_name,
                    window_start=bucket.window_start,
                    window_end=bucket.window_start + window,
                    tokens_used=bucket.tokens,
                    tokens_max=rule.max_tokens if rule else 0,
                    usd_used=bucket.usd,
                    usd_max=rule.max_usd if rule else 0.0,
                    reset_in=window - (now - bucket.window_start),
                )
            return out

    def _check_budget(self, request: Request, vendor: str) -> tuple[str, timedelta] | None:
        with self._lock:
            now = self._clock()
            for rule in self._doc.budgets:
                if not rule.when.matches(request, vendor):
                    continue
                bucket = self._usage.get(_budget_key(rule.name, request.tenant_id))
                if bucket is None or now - bucket.window_start > rule.window:
                    continue
                over_tokens = rule.max_tokens > 0 and bucket.tokens >= rule.max_tokens
                over_usd = rule.max_usd > 0 and bucket.usd >= rule.max_usd
                if over_tokens or over_usd:
                    if rule.action == "warn":
                        return None
                    return rule.name, rule.window - (now - bucket.window_start)
            return None


def load_from_file(path: str | os.PathLike[str] | None) -> PolicyEngine:
    """Load a YAML policy; an empty path yields an engine with no rules."""
    if not path:
        return PolicyEngine(PolicyDocument())
    with open(path, encoding="utf-8") as fh:
        text = _expand_env(fh.read())
    try:
        data = yaml.safe_load(text)
        doc = PolicyDocument.from_dict(data)
    except (yaml.YAMLError, PolicyError) as exc:
        raise PolicyError(f"parse policy {path}: {exc}") from exc
    try:
        doc.validate()
    except PolicyError as exc:
        raise PolicyError(f"policy {path}: {exc}") from exc
    return PolicyEngine(doc)