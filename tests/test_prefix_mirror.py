from agentgate.prefix_mirror import LocalMirror
from agentgate.prefix_service import PrefixOptions, PrefixService, Segment
from agentgate.types import Message, Request, Role


def test_service_fanouts_to_mirror():
    mirror = LocalMirror(16)
    svc = PrefixService(PrefixOptions(max_entries=100, mirror=mirror))
    req = Request(
        tenant_id="tenant-a",
        messages=[
            Message(role=Role.SYSTEM, content="you are tools"),
            Message(role=Role.USER, content="hi"),
        ],
    )
    segs = svc.extract(req)
    svc.insert("tenant-a", segs, "vllm-0")

    events = mirror.drain()
    assert len(events) == 1
    assert events[0].backend_id == "vllm-0"
    assert events[0].tenant_id == "tenant-a"
    assert events[0].segments == segs


def test_local_mirror_bounds_buffer_size():
    mirror = LocalMirror(2)
    for i in range(10):
        mirror.mirror_insert("t", [Segment(hash=i)], "b")
    stats = mirror.stats()
    assert stats.pending == 2
    assert stats.dropped == 8
    assert stats.sent == 10
    assert [e.segments[0].hash for e in mirror.drain()] == [8, 9]


def test_drain_empties_buffer():
    mirror = LocalMirror()
    mirror.mirror_insert("t", [Segment(hash=1)], "b")
    assert len(mirror.drain()) == 1
    assert mirror.drain() == []
    assert mirror.stats().pending == 0


def test_pin_is_mirrored():
    mirror = LocalMirror()
    svc = PrefixService(PrefixOptions(mirror=mirror))
    svc.pin("t", [Segment(hash=3)])
    pins = mirror.pins
    assert len(pins) == 1
    assert pins[0].tenant_id == "t"
    assert pins[0].segments[0].hash == 3
    assert mirror.stats().pending == 0