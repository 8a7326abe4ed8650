from datetime import timedelta

import pytest

from agentgate.breaker import BreakerOptions, BreakerSet, BreakerState
from agentgate.chain import Chain, ChainError
from agentgate.types import Choice, Message, Request, Response, Role


class FakeBackend:
    def __init__(self, name, fail_once=False, resp_text=""):
        self.name = name
        self.fail_once = fail_once
        self.failed = False
        self.resp_text = resp_text

    def complete(self, request):
        if self.fail_once and not self.failed:
            self.failed = True
            raise RuntimeError("nope")
        return Response(
            choices=[
                Choice(
                    index=0,
                    message=Message(role=Role.ASSISTANT, content=self.resp_text),
                    finish_reason="stop",
                )
            ]
        )

    def stream(self, request):
        if self.fail_once and not self.failed:
            self.failed = True
            raise RuntimeError("stream nope")
        return iter(["a", "b"])


class FakeRegistry:
    def __init__(self, items):
        self.items = items

    def by_name(self, name):
        return self.items.get(name)


def make_chain(threshold=5, cooldown=timedelta(seconds=1)):
    return Chain(BreakerSet(BreakerOptions(failure_threshold=threshold, cooldown=cooldown)))


def test_chain_falls_back_on_error():
    reg = FakeRegistry(
        {"vllm": FakeBackend("vllm", fail_once=True), "ollama": FakeBackend("ollama", resp_text="hi from ollama")}
    )
    res = make_chain().complete(reg, ["vllm", "ollama"], Request())
    assert res.backend.name == "ollama"
    assert res.response.choices[0].message.content == "hi from ollama"
    assert len(res.outcomes) == 2
    assert res.outcomes[0].error is not None
    assert res.outcomes[1].error is None


def test_chain_skips_open_breaker():
    reg = FakeRegistry({"vllm": FakeBackend("vllm"), "ollama": FakeBackend("ollama", resp_text="hi")})
    breakers = BreakerSet(BreakerOptions(failure_threshold=1, cooldown=timedelta(hours=1)))
    breakers.for_name("vllm").failure()
    res = Chain(breakers).complete(reg, ["vllm", "ollama"], Request())
    assert res.backend.name == "ollama"
    assert res.outcomes[0].skipped
    assert res.outcomes[0].skip_reason == "breaker open"


def test_chain_errors_when_all_backends_fail():
    reg = FakeRegistry(
        {"vllm": FakeBackend("vllm", fail_once=True), "ollama": FakeBackend("ollama", fail_once=True)}
    )
    with pytest.raises(ChainError) as info:
        make_chain().complete(reg, ["vllm", "ollama"], Request())
    assert str(info.value) == "nope"
    assert [o.backend_name for o in info.value.outcomes] == ["vllm", "ollama"]
    assert isinstance(info.value.__cause__, RuntimeError)


def test_chain_empty_raises():
    with pytest.raises(ChainError, match="fallback chain is empty"):
        make_chain().complete(FakeRegistry({}), [], Request())


def test_chain_all_unregistered():
    with pytest.raises(ChainError) as info:
        make_chain().complete(FakeRegistry({}), ["a", "b"], Request())
    assert str(info.value) == "all 2 backends in chain were unavailable"
    assert all(o.skip_reason == "backend not registered" for o in info.value.outcomes)


def test_chain_records_breaker_outcomes():
    breakers = BreakerSet(BreakerOptions(failure_threshold=1, cooldown=timedelta(hours=1)))
    reg = FakeRegistry({"vllm": FakeBackend("vllm", fail_once=True), "ollama": FakeBackend("ollama")})
    Chain(breakers).complete(reg, ["vllm", "ollama"], Request())
    snap = breakers.snapshot()
    assert snap["vllm"].state is BreakerState.OPEN
    assert snap["ollama"].consecutive_ok == 1


def test_chain_stream_falls_back():
    reg = FakeRegistry({"vllm": FakeBackend("vllm", fail_once=True), "ollama": FakeBackend("ollama")})
    res = make_chain().stream(reg, ["vllm", "ollama"], Request())
    assert res.backend.name == "ollama"
    assert list(res.stream) == ["a", "b"]
    assert res.response is None
    assert res.outcomes[0].error is not None