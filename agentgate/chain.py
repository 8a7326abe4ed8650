"""Ordered fallback across backends, gated by circuit breakers.

Each backend in the chain is tried in turn until one succeeds. A backend whose
breaker is open, or which is not registered, is skipped. Once a stream is
opened the chain does not fall back further: partial output may already have
reached the client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

from agentgate.breaker import BreakerSet
from agentgate.types import Request, Response


class Backend(Protocol):
    name: str

    def complete(self, request: Request) -> Response: ...

    def stream(self, request: Request) -> Iterable[Any]: ...


class BackendRegistry(Protocol):
    def by_name(self, name: str) -> Backend | None: ...


@dataclass
class AttemptOutcome:
    """One step of the chain's audit trail."""

    backend_name: str
    skipped: bool = False
    skip_reason: str = ""
    error: Exception | None = None


@dataclass
class ChainResult:
    response: Response | None = None
    stream: Iterable[Any] | None = None
    backend: Any = None
    outcomes: list[AttemptOutcome] = field(default_factory=list)


class ChainError(Exception):
    """Raised when no backend in the chain produced a result."""

    def __init__(self, message: str, outcomes: list[AttemptOutcome] | None = None) -> None:
        super().__init__(message)
        self.outcomes = outcomes or []


class Chain:
    """Runs an ordered list of backend names; the first success wins."""

    def __init__(self, breakers: BreakerSet) -> None:
        self._breakers = breakers

    def complete(
        self, registry: BackendRegistry, names: list[str], request: Request
    ) -> ChainResult:
        """Walk the chain for a non-streaming request."""
        return self._walk(
            registry, names, lambda b: ChainResult(response=b.complete(request))
        )

    def stream(
        self, registry: BackendRegistry, names: list[str], request: Request
    ) -> ChainResult:
        """Walk the chain for a streaming request; success is recorded on open."""
        return self._walk(
            registry, names, lambda b: ChainResult(stream=b.stream(request))
        )

    def _walk(
        self,
        registry: BackendRegistry,
        names: list[str],
        attempt: Callable[[Backend], ChainResult],
    ) -> ChainResult:
        if not names:
            raise ChainError("fallback chain is empty")
        outcomes: list[AttemptOutcome] = []
        last_error: Exception | None = None
        for name in names:
            backend = registry.by_name(name)
            if backend is None:
                outcomes.append(
                    AttemptOutcome(name, skipped=True, skip_reason="backend not registered")
                )
                continue
            breaker = self._breakers.for_name(name)
            if not breaker.allow():
                outcomes.append(AttemptOutcome(name, skipped=True, skip_reason="breaker open"))
                continue
            try:
                result = attempt(backend)
            except Exception as exc:
                breaker.failure()
                outcomes.append(AttemptOutcome(name, error=exc))
                last_error = exc
                continue
            breaker.success()
            result.backend = backend
            result.outcomes = [*outcomes, AttemptOutcome(name)]
            return result

        if last_error is not None:
            raise ChainError(str(last_error), outcomes) from last_error
        raise ChainError(f"all {len(names)} backends in chain were unavailable", outcomes)