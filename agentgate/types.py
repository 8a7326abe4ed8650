"""Request, response and capability types shared across the gateway."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Chat message author role."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def _role_value(role: Role | str | None) -> str:
    if role is None:
        return ""
    return role.value if isinstance(role, Enum) else role


def _parse_role(value: str) -> Role | str:
    try:
        return Role(value)
    except ValueError:
        return value


def _compact_json(value: Any) -> str:
    """Encode JSON compactly, escaping HTML-sensitive characters."""
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return (
        text.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


@dataclass
class ToolCallFunction:
    name: str = ""
    arguments: str = ""


@dataclass
class ToolCallDelta:
    index: int = 0
    id: str = ""
    type: str = ""
    function: ToolCallFunction = field(default_factory=ToolCallFunction)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.index:
            out["index"] = self.index
        if self.id:
            out["id"] = self.id
        if self.type:
            out["type"] = self.type
        fn: dict[str, Any] = {}
        if self.function.name:
            fn["name"] = self.function.name
        if self.function.arguments:
            fn["arguments"] = self.function.arguments
        out["function"] = fn
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallDelta:
        fn = data.get("function") or {}
        return cls(
            index=data.get("index", 0),
            id=data.get("id", ""),
            type=data.get("type", ""),
            function=ToolCallFunction(
                name=fn.get("name", ""), arguments=fn.get("arguments", "")
            ),
        )


@dataclass
class Message:
    role: Role | str = ""
    content: Any = None
    name: str = ""
    tool_call_id: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)

    def content_string(self) -> str:
        """Return the content as text, JSON-encoding non-string content."""
        if isinstance(self.content, str):
            return self.content
        if self.content is None:
            return ""
        return _compact_json(self.content)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": _role_value(self.role)}
        if self.content is not None:
            out["content"] = self.content
        if self.name:
            out["name"] = self.name
        if self.tool_call_id:
            out["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            out["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=_parse_role(data.get("role", "")),
            content=data.get("content"),
            name=data.get("name", ""),
            tool_call_id=data.get("tool_call_id", ""),
            tool_calls=[ToolCallDelta.from_dict(t) for t in data.get("tool_calls") or []],
        )


@dataclass
class ToolDefinition:
    type: str = ""
    function: Any = None
    raw: Any = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type}
        if self.function is not None:
            out["function"] = self.function
        return out


@dataclass
class CachePolicy:
    prefix_hint: str = ""
    pin_segments: list[str] = field(default_factory=list)


@dataclass
class Request:
    model: str = ""
    messages: list[Message] = field(default_factory=list)
    tools: list[ToolDefinition] = field(default_factory=list)
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: list[str] = field(default_factory=list)
    stream: bool = False
    response_format: Any = None
    tool_choice: Any = None

    session_id: str = ""
    tenant_id: str = ""
    agent_id: str = ""
    trace_id: str = ""
    step_id: str = ""
    parent_step_id: str = ""
    step_type: str = ""
    prefix_hash: str = ""
    cache_control: CachePolicy = field(default_factory=CachePolicy)
    raw: Any = None

    desired_instance: str = ""
    routed_backend: str = ""


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.prompt_tokens:
            out["prompt_tokens"] = self.prompt_tokens
        if self.completion_tokens:
            out["completion_tokens"] = self.completion_tokens
        if self.total_tokens:
            out["total_tokens"] = self.total_tokens
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Usage:
        return cls(
            prompt_tokens=data.get("prompt_tokens", 0),
            completion_tokens=data.get("completion_tokens", 0),
            total_tokens=data.get("total_tokens", 0),
        )


@dataclass
class Delta:
    role: Role | str | None = None
    content: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.role:
            out["role"] = _role_value(self.role)
        if self.content:
            out["content"] = self.content
        if self.tool_calls:
            out["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Delta:
        role = data.get("role")
        return cls(
            role=_parse_role(role) if role else None,
            content=data.get("content", ""),
            tool_calls=[ToolCallDelta.from_dict(t) for t in data.get("tool_calls") or []],
        )


@dataclass
class Choice:
    index: int = 0
    message: Message = field(default_factory=Message)
    delta: Delta = field(default_factory=Delta)
    finish_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "index": self.index,
            "message": self.message.to_dict(),
            "delta": self.delta.to_dict(),
        }
        if self.finish_reason:
            out["finish_reason"] = self.finish_reason
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Choice:
        return cls(
            index=data.get("index", 0),
            message=Message.from_dict(data.get("message") or {}),
            delta=Delta.from_dict(data.get("delta") or {}),
            finish_reason=data.get("finish_reason", ""),
        )


@dataclass
class Response:
    id: str = ""
    object: str = ""
    created: int = 0
    model: str = ""
    choices: list[Choice] = field(default_factory=list)
    usage: Usage | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.id:
            out["id"] = self.id
        if self.object:
            out["object"] = self.object
        if self.created:
            out["created"] = self.created
        if self.model:
            out["model"] = self.model
        out["choices"] = [c.to_dict() for c in self.choices]
        if self.usage is not None:
            out["usage"] = self.usage.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Response:
        usage = data.get("usage")
        return cls(
            id=data.get("id", ""),
            object=data.get("object", ""),
            created=data.get("created", 0),
            model=data.get("model", ""),
            choices=[Choice.from_dict(c) for c in data.get("choices") or []],
            usage=Usage.from_dict(usage) if usage is not None else None,
        )


@dataclass
class ToolCall:
    name: str
    arguments: str
    id: str = ""


@dataclass
class Chunk:
    id: str = ""
    model: str = ""
    content: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str = ""
    usage: Usage | None = None
    raw: Any = None
    created_at: datetime | None = None


@dataclass
class InstanceStats:
    id: str = ""
    endpoint: str = ""
    healthy: bool = False
    in_flight: int = 0
    total_requests: int = 0
    failed_requests: int = 0
    last_seen: datetime | None = None
    last_error: str = ""
    prefix_hit_hints: int = 0
    prefix_miss_hints: int = 0


@dataclass
class BackendStats:
    name: str = ""
    healthy: bool = False
    instances: list[InstanceStats] = field(default_factory=list)
    in_flight: int = 0
    total_requests: int = 0
    failed_requests: int = 0
    last_error: str = ""
    prefix_cache_aware: bool = False


class PrefixCacheMode(str, Enum):
    """How a backend caches prefill state."""

    NONE = "none"
    APC = "apc"
    RADIX = "radix"
    EXTERNAL_KV = "external_kv"


@dataclass
class CostProfile:
    """USD per 1k tokens; zero means free."""

    input_usd_per_1k: float = 0.0
    output_usd_per_1k: float = 0.0
    cached_input_discount: float = 0.0


@dataclass
class Capabilities:
    """Per-backend capability sheet driving routing and caching decisions."""

    supports_prefix_cache: bool = False
    supports_structured_output: bool = False
    supports_logprobs: bool = False
    supports_streaming: bool = False
    supports_tool_calling: bool = False
    supports_abort: bool = False

    prefix_cache_mode: PrefixCacheMode | None = None
    kv_provider: str = ""

    max_context_length: int = 0
    supported_models: list[str] = field(default_factory=list)

    cost_profile: CostProfile = field(default_factory=CostProfile)

    vendor: str = ""