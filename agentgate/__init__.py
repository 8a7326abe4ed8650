"""Components for an agent-aware LLM gateway: capabilities, config, breakers, fallback, cost, policy, prefix affinity, caching and tool-call detection."""

__version__ = "0.1.0"