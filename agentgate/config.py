"""Gateway configuration: YAML loading, environment expansion and defaults."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import yaml


class ConfigError(ValueError):
    """Raised when a configuration file is malformed or incomplete."""


_DURATION_UNITS_NS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")
_ENV_REF = re.compile(r"\$\{([^}]*)\}|\$([A-Za-z0-9_]+)")


def parse_duration(value: Any) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"500ms"`` or integer nanoseconds."""
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, int):
        return timedelta(microseconds=value / 1000)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration {value!r}")

    text = value.strip()
    sign = 1
    if text[:1] in "+-" and text:
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ConfigError(f"invalid duration {value!r}")

    total_ns = 0.0
    pos = 0
    while pos < len(text):
        part = _DURATION_PART.match(text, pos)
        if part is None:
            raise ConfigError(f"invalid duration {value!r}")
        total_ns += float(part.group(1)) * _DURATION_UNITS_NS[part.group(2)]
        pos = part.end()
    return timedelta(microseconds=sign * total_ns / 1000)


def _expand_env(text: str) -> str:
    """Replace ``$VAR`` and ``${VAR}`` with environment values; unset becomes empty."""

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1) if match.group(1) is not None else match.group(2)
        return os.environ.get(name, "")

    return _ENV_REF.sub(substitute, text)


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _str_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list")
    return [str(v) for v in value]


def _str_map(value: Any, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


@dataclass
class ServerConfig:
    addr: str = ""


@dataclass
class PolicyConfig:
    path: str = ""


@dataclass
class OTLPConfig:
    endpoint: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    service_name: str = ""
    batch_size: int = 0
    flush_every: timedelta = timedelta(0)


@dataclass
class TelemetryConfig:
    otlp: OTLPConfig = field(default_factory=OTLPConfig)


@dataclass
class FallbackConfig:
    failure_threshold: int = 0
    success_threshold: int = 0
    cooldown: timedelta = timedelta(0)


@dataclass
class SemanticConfig:
    enabled: bool | None = None
    max_entries: int = 0
    ttl_exact: timedelta = timedelta(0)
    ttl_tool: timedelta = timedelta(0)


@dataclass
class BackendCost:
    input_usd_per_1k: float = 0.0
    output_usd_per_1k: float = 0.0
    cached_input_discount: float = 0.0


@dataclass
class DiscoveryConfig:
    type: str = ""
    endpoints: list[str] = field(default_factory=list)


@dataclass
class BackendConfig:
    name: str = ""
    type: str = ""
    endpoint: str = ""
    endpoints: list[str] = field(default_factory=list)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    headers: dict[str, str] = field(default_factory=dict)
    api_key: str = ""
    vendor: str = ""
    models: list[str] = field(default_factory=list)
    cost: BackendCost = field(default_factory=BackendCost)

    def all_endpoints(self) -> list[str]:
        """Every non-empty endpoint, deduplicated in declaration order."""
        candidates = [self.endpoint, *self.endpoints, *self.discovery.endpoints]
        return list(dict.fromkeys(e for e in candidates if e))

    @classmethod
    def _from_dict(cls, data: dict[str, Any], index: int) -> BackendConfig:
        where = f"backends[{index}]"
        discovery = _section(data, "discovery")
        cost = _section(data, "cost")
        return cls(
            name=str(data.get("name") or ""),
            type=str(data.get("type") or ""),
            endpoint=str(data.get("endpoint") or ""),
            endpoints=_str_list(data.get("endpoints"), f"{where}.endpoints"),
            discovery=DiscoveryConfig(
                type=str(discovery.get("type") or ""),
                endpoints=_str_list(discovery.get("endpoints"), f"{where}.discovery.endpoints"),
            ),
            headers=_str_map(data.get("headers"), f"{where}.headers"),
            api_key=str(data.get("api_key") or ""),
            vendor=str(data.get("vendor") or ""),
            models=_str_list(data.get("models"), f"{where}.models"),
            cost=BackendCost(
                input_usd_per_1k=float(cost.get("input_usd_per_1k") or 0.0),
                output_usd_per_1k=float(cost.get("output_usd_per_1k") or 0.0),
                cached_input_discount=float(cost.get("cached_input_discount") or 0.0),
            ),
        )


@dataclass
class PrefixConfig:
    enabled: bool | None = None
    max_entries: int = 0
    half_life: timedelta = timedelta(0)
    debug_content: bool = False


@dataclass
class ToolParserConfig:
    enabled: bool | None = None
    aggressive_abort: bool = False
    max_buffer_bytes: int = 0


@dataclass
class TimeoutConfig:
    request: timedelta = timedelta(0)
    header: timedelta = timedelta(0)
    health_check: timedelta = timedelta(0)


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    backends: list[BackendConfig] = field(default_factory=list)
    prefix: PrefixConfig = field(default_factory=PrefixConfig)
    semantic: SemanticConfig = field(default_factory=SemanticConfig)
    tool_parser: ToolParserConfig = field(default_factory=ToolParserConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    trace_dir: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Config:
        """Build a configuration from parsed YAML and fill in defaults."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a mapping")

        backends_raw = data.get("backends") or []
        if not isinstance(backends_raw, list):
            raise ConfigError("backends must be a list")
        backends = []
        for i, item in enumerate(backends_raw):
            if not isinstance(item, dict):
                raise ConfigError(f"backends[{i}] must be a mapping")
            backends.append(BackendConfig._from_dict(item, i))

        server = _section(data, "server")
        prefix = _section(data, "prefix_cache")
        semantic = _section(data, "semantic_cache")
        tool_parser = _section(data, "tool_parser")
        timeouts = _section(data, "timeouts")
        policy = _section(data, "policy")
        otlp = _section(_section(data, "telemetry"), "otlp")
        fallback = _section(data, "fallback")

        cfg = cls(
            server=ServerConfig(addr=str(server.get("addr") or "")),
            backends=backends,
            prefix=PrefixConfig(
                enabled=prefix.get("enabled"),
                max_entries=int(prefix.get("max_entries") or 0),
                half_life=parse_duration(prefix.get("half_life")),
                debug_content=bool(prefix.get("debug_content") or False),
            ),
            semantic=SemanticConfig(
                enabled=semantic.get("enabled"),
                max_entries=int(semantic.get("max_entries") or 0),
                ttl_exact=parse_duration(semantic.get("ttl_exact")),
                ttl_tool=parse_duration(semantic.get("ttl_tool")),
            ),
            tool_parser=ToolParserConfig(
                enabled=tool_parser.get("enabled"),
                aggressive_abort=bool(tool_parser.get("aggressive_abort") or False),
                max_buffer_bytes=int(tool_parser.get("max_buffer_bytes") or 0),
            ),
            timeouts=TimeoutConfig(
                request=parse_duration(timeouts.get("request")),
                header=parse_duration(timeouts.get("header")),
                health_check=parse_duration(timeouts.get("health_check")),
            ),
            policy=PolicyConfig(path=str(policy.get("path") or "")),
            telemetry=TelemetryConfig(
                otlp=OTLPConfig(
                    endpoint=str(otlp.get("endpoint") or ""),
                    headers=_str_map(otlp.get("headers"), "telemetry.otlp.headers"),
                    service_name=str(otlp.get("service_name") or ""),
                    batch_size=int(otlp.get("batch_size") or 0),
                    flush_every=parse_duration(otlp.get("flush_every")),
                )
            ),
            fallback=FallbackConfig(
                failure_threshold=int(fallback.get("failure_threshold") or 0),
                success_threshold=int(fallback.get("success_threshold") or 0),
                cooldown=parse_duration(fallback.get("cooldown")),
            ),
            trace_dir=str(data.get("trace_dir") or ""),
        )
        cfg._apply_defaults()
        return cfg

    def _apply_defaults(self) -> None:
        zero = timedelta(0)
        if not self.server.addr:
            self.server.addr = ":9000"
        if self.prefix.enabled is None:
            self.prefix.enabled = True
        if self.prefix.max_entries == 0:
            self.prefix.max_entries = 100_000
        if self.prefix.half_life == zero:
            self.prefix.half_life = timedelta(minutes=5)
        if self.tool_parser.max_buffer_bytes == 0:
            self.tool_parser.max_buffer_bytes = 16 * 1024
        if self.tool_parser.enabled is None:
            self.tool_parser.enabled = True
        if self.timeouts.header == zero:
            self.timeouts.header = timedelta(seconds=30)
        if self.timeouts.health_check == zero:
            self.timeouts.health_check = timedelta(seconds=2)
        if not self.trace_dir:
            self.trace_dir = "traces"
        if self.semantic.enabled is None:
            self.semantic.enabled = True
        if self.semantic.max_entries == 0:
            self.semantic.max_entries = 10_000
        if self.semantic.ttl_exact == zero:
            self.semantic.ttl_exact = timedelta(minutes=5)
        if self.semantic.ttl_tool == zero:
            self.semantic.ttl_tool = timedelta(minutes=10)
        if self.fallback.failure_threshold == 0:
            self.fallback.failure_threshold = 5
        if self.fallback.success_threshold == 0:
            self.fallback.success_threshold = 2
        if self.fallback.cooldown == zero:
            self.fallback.cooldown = timedelta(seconds=10)
        otlp = self.telemetry.otlp
        if otlp.batch_size == 0:
            otlp.batch_size = 64
        if otlp.flush_every == zero:
            otlp.flush_every = timedelta(seconds=5)
        if not otlp.service_name:
            otlp.service_name = "agentgate"

    def validate(self) -> None:
        """Raise ConfigError when required backend settings are missing."""
        if not self.backends:
            raise ConfigError("at least one backend is required")
        for i, b in enumerate(self.backends):
            if not b.name:
                raise ConfigError(f"backends[{i}].name is required")
            if not b.type:
                raise ConfigError(f"backends[{i}].type is required")
            if not b.all_endpoints() and b.type not in ("mock", "openai", "anthropic"):
                raise ConfigError(f"backends[{i}] needs endpoint(s)")
            if b.type == "anthropic" and not b.api_key:
                raise ConfigError(f"backends[{i}] (anthropic) needs api_key")


def load(path: str | os.PathLike[str]) -> Config:
    """Read, environment-expand, parse, default and validate a config file."""
    with open(path, encoding="utf-8") as fh:
        text = _expand_env(fh.read())
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(str(exc)) from exc
    cfg = Config.from_dict(data)
    cfg.validate()
    return cfg