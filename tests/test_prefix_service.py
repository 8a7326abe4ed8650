import threading
from datetime import timedelta

import pytest

from agentgate.prefix_service import (
    PrefixOptions,
    PrefixService,
    Segment,
    SegmentType,
    estimate_tokens,
    hash64,
    split_content,
)
from agentgate.types import Message, Request, Role, ToolDefinition


def _req(tenant, system, user, **kwargs):
    return Request(
        tenant_id=tenant,
        messages=[
            Message(role=Role.SYSTEM, content=system),
            Message(role=Role.USER, content=user),
        ],
        **kwargs,
    )


class _Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_lookup_uses_shared_agent_prefix_across_different_user_queries():
    svc = PrefixService(PrefixOptions(max_entries=100))
    tools = [ToolDefinition(type="function", function={"name": "search"})]
    system = "You are a build agent with a strict tool budget."
    req_a = _req("tenant-a", system, "Inspect service A", tools=tools)
    req_b = _req("tenant-a", system, "Inspect service B", tools=tools)

    svc.insert(req_a.tenant_id, svc.extract(req_a), "vllm-prod-0")
    match = svc.lookup(req_b.tenant_id, svc.extract(req_b))
    assert match.backend_id == "vllm-prod-0"
    assert match.matched_tokens > 0
    assert match.reason == "sticky_match"


def test_split_content_keeps_utf8_valid():
    content = "中文🙂" * 1400
    segments = split_content(SegmentType.SYSTEM, content, True)
    assert len(segments) >= 2
    for seg in segments:
        assert seg.content.encode("utf-8").decode("utf-8") == seg.content
    assert "".join(s.content for s in segments) == content


def test_client_prefix_hash_participates_in_prefix_index():
    svc = PrefixService(PrefixOptions(max_entries=100))
    req = _req("tenant-a", "same prompt", "question", prefix_hash="client-hash")
    segments = svc.extract(req)
    assert segments[0].type == SegmentType.CLIENT_HINT
    assert segments[0].token_len == 0
    svc.insert(req.tenant_id, segments, "vllm-prod-0")
    assert svc.lookup(req.tenant_id, svc.extract(req)).backend_id == "vllm-prod-0"


def test_service_evicts_oldest_leaves():
    svc = PrefixService(PrefixOptions(max_entries=3))
    for content in ["old", "warm", "new", "overflow"]:
        r = _req("tenant-a", content, "q")
        svc.insert(r.tenant_id, svc.extract(r), "vllm-prod-0")
    stats = svc.stats(0)
    assert stats.evictions > 0
    assert stats.nodes <= 3


def test_eviction_removes_least_recently_hit_leaf():
    clock = _Clock()
    svc = PrefixService(PrefixOptions(max_entries=3), clock=clock)
    reqs = {c: _req("t", c, "q") for c in ["old", "warm", "new", "overflow"]}
    for content, r in reqs.items():
        clock.now += 1
        svc.insert("t", svc.extract(r), "b0")
    assert svc.lookup("t", svc.extract(reqs["old"])).reason == "prefix_miss"
    assert svc.lookup("t", svc.extract(reqs["overflow"])).reason == "sticky_match"


def test_pinned_nodes_survive_eviction():
    clock = _Clock()
    svc = PrefixService(PrefixOptions(max_entries=3), clock=clock)
    old = _req("t", "old", "q")
    svc.insert("t", svc.extract(old), "b0")
    svc.pin("t", svc.extract(old))
    for content in ["warm", "new", "overflow"]:
        clock.now += 1
        r = _req("t", content, "q")
        svc.insert("t", svc.extract(r), "b0")
    assert svc.lookup("t", svc.extract(old)).backend_id == "b0"
    assert svc.stats().pinned == 1


def test_pin_counts_each_node_once():
    svc = PrefixService()
    segs = [Segment(hash=11, token_len=2)]
    svc.pin("t", segs)
    svc.pin("t", segs)
    assert svc.stats().pinned == 1
    assert svc.stats().nodes == 1


def test_service_concurrency():
    svc = PrefixService(PrefixOptions(max_entries=10_000))

    def work(i):
        req = _req("tenant-a", "shared", i)
        segments = svc.extract(req)
        svc.insert(req.tenant_id, segments, "vllm-prod-0")
        svc.lookup(req.tenant_id, segments)

    threads = [threading.Thread(target=work, args=(i,)) for i in range(100)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    stats = svc.stats()
    assert stats.inserts == 100
    assert stats.lookups == 100
    assert stats.hits == 100


def test_tenant_isolation():
    svc = PrefixService(PrefixOptions(max_entries=100))
    req = _req("tenant-a", "same prompt", "question")
    svc.insert(req.tenant_id, svc.extract(req), "vllm-prod-0")
    req.tenant_id = "tenant-b"
    match = svc.lookup(req.tenant_id, svc.extract(req))
    assert match.backend_id == ""
    assert match.reason == "cold_tenant"


def test_lookup_empty_segments():
    assert PrefixService().lookup("t", []).reason == "empty_prefix"


def test_lookup_empty_tenant_uses_default():
    svc = PrefixService()
    segs = [Segment(hash=5, token_len=4)]
    svc.insert("", segs, "b0")
    assert svc.lookup("default", segs).backend_id == "b0"


def test_fresh_candidate_score_equals_matched_tokens():
    clock = _Clock()
    svc = PrefixService(PrefixOptions(half_life=timedelta(minutes=5)), clock=clock)
    segs = [Segment(hash=1, token_len=10), Segment(hash=2, token_len=30)]
    svc.insert("t", segs, "b0")
    match = svc.lookup("t", segs)
    assert match.matched_tokens == 40
    assert match.total_tokens == 40
    assert match.matched_ratio == 1.0
    assert [c.backend_id for c in match.candidates] == ["b0"]
    assert match.candidates[0].hit_prob == 1.0
    assert match.candidates[0].score == 40.0


def test_more_recent_backend_wins_longest_match():
    clock = _Clock()
    svc = PrefixService(clock=clock)
    segs = [Segment(hash=1, token_len=10)]
    svc.insert("t", segs, "old")
    clock.now += 600
    svc.insert("t", segs, "new")
    match = svc.lookup("t", segs)
    assert match.backend_id == "new"
    assert [c.backend_id for c in match.candidates] == ["new", "old"]


def test_partial_match_ratio():
    svc = PrefixService()
    svc.insert("t", [Segment(hash=1, token_len=10)], "b0")
    match = svc.lookup("t", [Segment(hash=1, token_len=10), Segment(hash=9, token_len=30)])
    assert match.matched_tokens == 10
    assert match.matched_ratio == pytest.approx(0.25)


def test_top_k_orders_by_hits():
    svc = PrefixService()
    svc.insert("t", [Segment(hash=1, token_len=1)], "b0")
    svc.insert("t", [Segment(hash=2, token_len=1)], "b0")
    svc.lookup("t", [Segment(hash=2, token_len=1)])
    top = svc.top_k(1)
    assert [(k.hash, k.hits) for k in top] == [(2, 2)]
    assert [k.hash for k in svc.stats(5).top_candidates] == [2, 1]


def test_hash64_known_values():
    assert hash64("") == 0xCBF29CE484222325
    assert hash64("a") == 0xAF63DC4C8601EC8C


@pytest.mark.parametrize("text,expected", [("", 0), ("abc", 1), ("abcdefgh", 2)])
def test_estimate_tokens(text, expected):
    assert estimate_tokens(text) == expected


def test_extract_skips_only_last_user_message():
    svc = PrefixService(PrefixOptions(debug_content=True))
    req = Request(
        messages=[
            Message(role=Role.SYSTEM, content="sys"),
            Message(role=Role.USER, content="first"),
            Message(role=Role.ASSISTANT, content="reply"),
            Message(role=Role.USER, content="current"),
        ]
    )
    segs = svc.extract(req)
    assert [(s.type, s.content) for s in segs] == [
        (SegmentType.SYSTEM, "sys"),
        (SegmentType.HISTORY, "first"),
        (SegmentType.HISTORY, "reply"),
    ]