# agentgate

Library components for a gateway that sits in front of several LLM
inference backends (vLLM, SGLang, Ollama, OpenAI, Anthropic, ...) and serves
agent-style traffic: multi-turn conversations with shared system prompts,
tool definitions and tool calls.

## What is inside

| Module | Purpose |
| --- | --- |
| `agentgate.types` | `Request`, `Response`, `Message`, `Capabilities` and related data types |
| `agentgate.capability` | `CapabilityRegistry` of per-backend capability `Sheet`s, refreshed by probers |
| `agentgate.config` | YAML configuration with `${NAME}` expansion, defaults and validation (`load`, `Config`) |
| `agentgate.breaker` | Per-backend circuit breakers (`Breaker`, `BreakerSet`) |
| `agentgate.chain` | Ordered fallback across backends, gated by breakers (`Chain`) |
| `agentgate.cost` | Expected-cost scoring of backends with EWMA statistics (`CostModel`) |
| `agentgate.policy` | Declarative routing, cache and budget rules (`PolicyEngine`, `load_from_file`) |
| `agentgate.prefix_service` | Tenant-isolated prefix affinity index (`PrefixService`) |
| `agentgate.prefix_mirror` | Bounded in-process mirror of prefix writes (`LocalMirror`) |
| `agentgate.semantic` | Exact and tool-result response cache with `Singleflight` (`SemanticCache`) |
| `agentgate.incremental_json` | Scanner for the first complete JSON object in a stream (`IncrementalJSON`) |
| `agentgate.early_stop` | Streaming tool-call detector that signals early stop (`StreamingParser`) |

## Installing

```
pip install .
```

For tests:

```
pip install ".[test]"
pytest
```

## Examples

Loading configuration (raises `ConfigError` when invalid):

```python
from agentgate.config import load

cfg = load("agentgate.yaml")
print(cfg.server.addr, [b.name for b in cfg.backends])
```

Circuit breakers and fallback. A registry is any object with
`by_name(name)` returning a backend or `None`; a backend has `name`,
`complete(request)` and `stream(request)`.

```python
from datetime import timedelta

from agentgate.breaker import BreakerOptions, BreakerSet
from agentgate.chain import Chain, ChainError

breakers = BreakerSet(BreakerOptions(failure_threshold=3, cooldown=timedelta(seconds=10)))
chain = Chain(breakers)
try:
    result = chain.complete(registry, ["vllm-prod", "ollama-edge"], request)
    print(result.backend.name, result.response)
except ChainError as exc:
    print("no backend succeeded", exc.outcomes)
```

Policy evaluation:

```python
from agentgate.policy import load_from_file
from agentgate.types import Request

engine = load_from_file("policy.yaml")
decision = engine.evaluate(Request(tenant_id="premium", model="qwen"), "vllm")
print(decision.backend_name, decision.backend_chain, decision.budget_exceeded)
engine.account_usage(Request(tenant_id="premium"), "vllm", tokens=1200, usd=0.0)
```

Detecting a tool call in a streamed response:

```python
from agentgate.early_stop import ParserOptions, StreamingParser

parser = StreamingParser(ParserOptions(max_buffer_bytes=4096))
for chunk in chunks:
    event = parser.feed(chunk)
    forward(event.text)
    if event.tool_call is not None and event.should_stop:
        break
forward(parser.flush())
```

Prefix-affinity routing hints:

```python
from agentgate.prefix_service import PrefixOptions, PrefixService

svc = PrefixService(PrefixOptions(max_entries=100_000))
segments = svc.extract(request)
svc.insert(request.tenant_id, segments, "vllm-0")
match = svc.lookup(request.tenant_id, segments)
print(match.backend_id, match.reason)
```

Response caching (only `temperature == 0` requests are cached unless
`AccessOptions(explicit_use=True)` is passed):

```python
from agentgate.semantic import SemanticCache

cache = SemanticCache()
hit = cache.lookup(request)
if not hit:
    response = backend.complete(request)
    cache.store(request, response)
```

## What this package does not do

It provides the decision-making parts of a gateway, not a running gateway.
There is no HTTP server or command to start one, no adapters that talk to
inference backends, and no storage or export of request traces. Callers
supply backends, registries and the request loop themselves.