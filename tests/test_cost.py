from datetime import timedelta

import pytest

from agentgate.cost import CostModel
from agentgate.types import Capabilities, CostProfile


def test_prefers_cheaper_backend():
    cm = CostModel()
    expensive = Capabilities(
        vendor="anthropic",
        cost_profile=CostProfile(input_usd_per_1k=0.003, output_usd_per_1k=0.015),
    )
    cheap = Capabilities(
        vendor="openai",
        cost_profile=CostProfile(input_usd_per_1k=0.001, output_usd_per_1k=0.002),
    )
    assert cm.score("a", expensive) > cm.score("o", cheap)


def test_self_hosted_falls_back_to_latency():
    cm = CostModel()
    caps = Capabilities(vendor="vllm")
    cm.observe("fast", 1000, timedelta(milliseconds=100))
    cm.observe("slow", 1000, timedelta(milliseconds=800))
    assert cm.score("slow", caps) > cm.score("fast", caps)


def test_ewma_converges():
    cm = CostModel()
    caps = Capabilities()
    for _ in range(50):
        cm.observe("b", 1000, timedelta(milliseconds=100))
    first = cm.score("b", caps)
    cm.observe("b", 1000, timedelta(milliseconds=100))
    second = cm.score("b", caps)
    assert abs(first - second) <= 0.0001


def test_observes_sub_millisecond_latency():
    cm = CostModel()
    cm.observe("b", 1000, timedelta(microseconds=500))
    snap = cm.snapshot()["b"]
    assert 0 < snap.mean_latency < 1


def test_first_observation_sets_means():
    cm = CostModel()
    cm.observe("b", 1000, timedelta(milliseconds=100))
    snap = cm.snapshot()["b"]
    assert snap.mean_tokens == 1000
    assert snap.mean_latency == pytest.approx(100)
    assert snap.updated_at is not None


def test_zero_tokens_do_not_update_mean():
    cm = CostModel()
    cm.observe("b", 0, timedelta(milliseconds=100))
    assert cm.snapshot()["b"].mean_tokens == 0


def test_priced_backend_ignores_latency():
    cm = CostModel()
    caps = Capabilities(
        cost_profile=CostProfile(input_usd_per_1k=0.001, output_usd_per_1k=0.002)
    )
    cm.observe("slow", 0, timedelta(seconds=5))
    assert cm.score("slow", caps) == cm.score("unseen", caps)


def test_snapshot_is_a_copy():
    cm = CostModel()
    cm.observe("b", 1000, timedelta(milliseconds=100))
    snap = cm.snapshot()
    snap["b"].mean_tokens = 1
    assert cm.snapshot()["b"].mean_tokens == 1000