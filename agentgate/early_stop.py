"""Streaming detection of tool-call payloads in model output.

The parser watches text chunks for a tool-call start marker, then tries to
reconstruct a complete call and signals that the upstream stream can stop
early. It is conservative: anything it cannot parse is handed back as
ordinary text.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any

from agentgate.incremental_json import IncrementalJSON
from agentgate.types import ToolCall

_DEFAULT_MAX_BUFFER_BYTES = 16 * 1024

_START_MARKERS = (
    "\n## Tool Call:\n",
    "<|python_tag|>",
    "<tool_call>",
    "<tool_use>",
)

_STOP_STRINGS = (
    "</tool_call>",
    "</tool_use>",
    "<|eom_id|>",
)

_LONGEST_MARKER = max(len(m) for m in _START_MARKERS)


class EventKind(Enum):
    NONE = 0
    TEXT = 1
    TOOL_DETECTED = 2
    TOOL_COMPLETE = 3
    ABORT = 4


class ParserState(Enum):
    TEXT = 0
    TOOL = 1
    COMPLETE = 2
    ABORT = 3


@dataclass(frozen=True)
class ParserOptions:
    """Parser settings.

    ``aggressive_abort`` makes abort events request that the upstream stream
    be stopped instead of continuing to forward raw text.
    """

    max_buffer_bytes: int = 0
    aggressive_abort: bool = False


@dataclass
class ParseEvent:
    kind: EventKind
    text: str = ""
    tool_call: ToolCall | None = None
    should_stop: bool = False


def stop_strings_for_model(model: str) -> list[str]:
    """Stop strings that end a tool call for the given model family."""
    model = model.lower()
    if "llama" in model:
        return ["<|eom_id|>"]
    if "claude" in model or "anthropic" in model:
        return ["</tool_use>", "</tool_call>"]
    if "qwen" in model:
        return ["</tool_call>"]
    if "deepseek" in model:
        return ["\n##"]
    return list(_STOP_STRINGS)


def find_start_marker(s: str) -> tuple[int, str] | None:
    """Earliest start marker in ``s`` as ``(index, marker)``; longest wins ties."""
    best: tuple[int, str] | None = None
    for marker in _START_MARKERS:
        idx = s.find(marker)
        if idx < 0:
            continue
        if best is None or idx < best[0] or (idx == best[0] and len(marker) > len(best[1])):
            best = (idx, marker)
    return best


def _find_stop_marker(s: str) -> int | None:
    found = [idx for idx in (s.find(m) for m in _STOP_STRINGS) if idx >= 0]
    return min(found) if found else None


def _extract_first_json_object(s: str) -> str | None:
    return IncrementalJSON().feed(s)


def _read_string(obj: dict[str, Any], *keys: str) -> str:
    for key in keys:
        if key not in obj:
            continue
        value = obj[key]
        if value is None:
            return ""
        if isinstance(value, str):
            return value
    return ""


_MISSING = object()


def _first_value(obj: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in obj:
            return obj[key]
    return _MISSING


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def parse_tool_call(raw: str) -> ToolCall:
    """Build a ToolCall from a JSON object in one of the common call formats.

    Raises ValueError when the text is not a JSON object or has no tool name.
    """
    obj = json.loads(raw)
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise ValueError("tool call is not a JSON object")

    name = _read_string(obj, "name", "tool", "tool_name")
    if not name:
        fn = obj.get("function")
        if isinstance(fn, dict):
            name = _read_string(fn, "name")
            fn_args = _first_value(fn, "arguments", "input", "parameters")
            if fn_args is not _MISSING:
                obj["arguments"] = fn_args
    if not name:
        raise ValueError("tool call missing name")

    args = _first_value(obj, "arguments", "input", "parameters", "args")
    if args is _MISSING:
        arguments = "{}"
    elif args is None or isinstance(args, str):
        arguments = args or ""
        if not _is_valid_json(arguments):
            arguments = _dumps({"value": arguments})
    else:
        arguments = _dumps(args)

    return ToolCall(id="call_" + secrets.token_hex(8), name=name, arguments=arguments)


class StreamingParser:
    """Incremental tool-call detector fed one text chunk at a time."""

    def __init__(self, options: ParserOptions | None = None) -> None:
        opts = options or ParserOptions()
        self._max_buffer_bytes = (
            opts.max_buffer_bytes if opts.max_buffer_bytes > 0 else _DEFAULT_MAX_BUFFER_BYTES
        )
        self._aggressive_abort = opts.aggressive_abort
        self.reset()

    @property
    def state(self) -> ParserState:
        return self._state

    def reset(self) -> None:
        self._state = ParserState.TEXT
        self._buffer = ""
        self._marker = ""

    def feed(self, chunk: str) -> ParseEvent:
        """Consume a chunk and report what, if anything, can be emitted."""
        if not chunk:
            return ParseEvent(EventKind.NONE)
        if self._state is ParserState.COMPLETE:
            return ParseEvent(EventKind.NONE, should_stop=True)
        if self._state is ParserState.ABORT:
            return ParseEvent(EventKind.TEXT, text=chunk)

        self._buffer += chunk
        if len(self._buffer.encode("utf-8")) > self._max_buffer_bytes:
            return self._abort()

        if self._state is ParserState.TEXT:
            found = find_start_marker(self._buffer)
            if found is not None:
                idx, marker = found
                text = self._buffer[:idx]
                self._marker = marker
                self._buffer = self._buffer[idx + len(marker):]
                self._state = ParserState.TOOL
                event = self._try_complete_tool()
                if event.kind is EventKind.TOOL_COMPLETE:
                    event.text = text
                    return event
                return ParseEvent(EventKind.TOOL_DETECTED, text=text)

            text = self._flush_text_with_lookahead()
            if not text:
                return ParseEvent(EventKind.NONE)
            return ParseEvent(EventKind.TEXT, text=text)

        return self._try_complete_tool()

    def flush(self) -> str:
        """Return whatever is still buffered as plain text."""
        if self._state in (ParserState.TEXT, ParserState.ABORT):
            text, self._buffer = self._buffer, ""
            return text
        if self._state is ParserState.TOOL:
            return self._flush_as_text()
        return ""

    def _abort(self) -> ParseEvent:
        text = self._flush_as_text()
        self._state = ParserState.ABORT
        return ParseEvent(EventKind.ABORT, text=text, should_stop=self._aggressive_abort)

    def _complete(self, raw: str) -> ParseEvent:
        try:
            tool_call = parse_tool_call(raw)
        except ValueError:
            return self._abort()
        self._state = ParserState.COMPLETE
        self._buffer = ""
        return ParseEvent(EventKind.TOOL_COMPLETE, tool_call=tool_call, should_stop=True)

    def _try_complete_tool(self) -> ParseEvent:
        raw = _extract_first_json_object(self._buffer)
        if raw is not None:
            return self._complete(raw)

        stop_idx = _find_stop_marker(self._buffer)
        if stop_idx is not None:
            raw = _extract_first_json_object(self._buffer[:stop_idx])
            if raw is None:
                return self._abort()
            return self._complete(raw)

        return ParseEvent(EventKind.NONE)

    def _flush_text_with_lookahead(self) -> str:
        keep = max(_LONGEST_MARKER - 1, 0)
        if len(self._buffer) <= keep:
            return ""
        cut = len(self._buffer) - keep
        text, self._buffer = self._buffer[:cut], self._buffer[cut:]
        return text

    def _flush_as_text(self) -> str:
        text = self._marker + self._buffer
        self._buffer = ""
        self._marker = ""
        return text