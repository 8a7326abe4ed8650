from agentgate.capability import CapabilityRegistry, Sheet
from agentgate.types import Capabilities, PrefixCacheMode


def test_register_and_get():
    reg = CapabilityRegistry()
    reg.register(
        "vllm",
        Capabilities(vendor="vllm", prefix_cache_mode=PrefixCacheMode.APC),
        None,
    )
    got = reg.get("vllm")
    assert got is not None
    assert got.supports_prefix_sticky()
    assert got.caps.vendor == "vllm"


def test_unhealthy_hides_prefix_sticky():
    reg = CapabilityRegistry()
    reg.register("vllm", Capabilities(prefix_cache_mode=PrefixCacheMode.APC), None)
    reg.update("vllm", Capabilities(prefix_cache_mode=PrefixCacheMode.APC), False)
    got = reg.get("vllm")
    assert got is not None
    assert not got.supports_prefix_sticky()


def test_refresh_all_propagates_probe_failure():
    def failing_probe():
        raise ConnectionError("connect refused")

    reg = CapabilityRegistry()
    reg.register("ollama", Capabilities(vendor="ollama"), failing_probe)
    reg.refresh_all()
    got = reg.get("ollama")
    assert got is not None
    assert got.healthy is False
    assert got.caps.vendor == "ollama"


def test_all_sorted_by_name():
    reg = CapabilityRegistry()
    reg.register("zeta", Capabilities(), None)
    reg.register("alpha", Capabilities(), None)
    reg.register("mu", Capabilities(), None)
    assert [s.backend for s in reg.all()] == ["alpha", "mu", "zeta"]


def test_refresh_all_success_restores_health_and_caps():
    fresh = Capabilities(vendor="sglang", prefix_cache_mode=PrefixCacheMode.RADIX)
    reg = CapabilityRegistry()
    reg.register("sg", Capabilities(vendor="old"), lambda: fresh)
    reg.update("sg", Capabilities(vendor="old"), False)
    result = reg.refresh_all()
    assert [s.backend for s in result] == ["sg"]
    got = reg.get("sg")
    assert got is not None
    assert got.healthy is True
    assert got.caps.vendor == "sglang"
    assert got.supports_prefix_sticky()


def test_get_unknown_backend_returns_none():
    assert CapabilityRegistry().get("missing") is None


def test_flag_alone_enables_sticky():
    sheet = Sheet(backend="x", caps=Capabilities(supports_prefix_cache=True))
    assert sheet.supports_prefix_sticky()


def test_none_mode_without_flag_is_not_sticky():
    sheet = Sheet(backend="x", caps=Capabilities(prefix_cache_mode=PrefixCacheMode.NONE))
    assert not sheet.supports_prefix_sticky()