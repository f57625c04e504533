from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

from ag_bridge.hub import BroadcastHub


class _Sink:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.frames: List[Dict[str, Any]] = []

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(json.loads(data))


class _StuckSink:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.closed_with: List[int] = []

    async def send_text(self, data: str) -> None:
        await self.release.wait()

    async def close(self, code: int = 1000) -> None:
        self.closed_with.append(code)


async def _drain() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


def test_hello_and_backlog_precede_live_events() -> None:
    async def _run() -> List[Dict[str, Any]]:
        hub = BroadcastHub()
        sink = _Sink()
        hub.attach(sink, backlog=[{"id": "appr_1"}, {"id": "appr_2"}])
        hub.publish("message_new", {"id": "msg_1"})
        await _drain()
        await hub.aclose()
        return sink.frames

    frames = asyncio.run(_run())
    assert [f["event"] for f in frames] == ["hello", "approval_requested", "approval_requested", "message_new"]
    assert [f["payload"].get("id") for f in frames[1:]] == ["appr_1", "appr_2", "msg_1"]
    for f in frames:
        assert set(f) == {"event", "payload", "ts"}
        assert f["ts"].endswith("Z")


def test_failed_observer_is_dropped_without_affecting_others() -> None:
    async def _run():
        hub = BroadcastHub()
        good = _Sink()
        bad = _Sink(fail=True)
        hub.attach(good)
        hub.attach(bad)
        await _drain()
        count_after_failure = hub.observer_count
        delivered = hub.publish("agent_status", {"state": "working"})
        await _drain()
        await hub.aclose()
        return good, count_after_failure, delivered

    good, count_after_failure, delivered = asyncio.run(_run())
    assert count_after_failure == 1
    assert delivered == 1
    assert [f["event"] for f in good.frames] == ["hello", "agent_status"]


def test_slow_observer_is_dropped_on_overflow() -> None:
    async def _run():
        hub = BroadcastHub(max_pending=3)
        fast = _Sink()
        slow = _StuckSink()
        hub.attach(fast)
        hub.attach(slow)
        await _drain()
        for i in range(5):
            hub.publish("message_new", {"id": f"msg_{i}"})
            await _drain()
        remaining = hub.observer_count
        await hub.aclose()
        return fast, remaining

    fast, remaining = asyncio.run(_run())
    assert remaining == 1
    assert len(fast.frames) == 6


def test_detach_stops_delivery() -> None:
    async def _run():
        hub = BroadcastHub()
        sink = _Sink()
        obs = hub.attach(sink)
        await _drain()
        hub.detach(obs)
        hub.detach(obs)
        hub.publish("message_new", {"id": "msg_1"})
        await _drain()
        return sink, hub.observer_count

    sink, count = asyncio.run(_run())
    assert count == 0
    assert [f["event"] for f in sink.frames] == ["hello"]


def test_dropped_slow_observer_is_closed_before_aclose_returns() -> None:
    async def _run():
        hub = BroadcastHub(max_pending=1)
        slow = _StuckSink()
        hub.attach(slow)
        await _drain()
        hub.publish("message_new", {"id": "msg_1"})
        hub.publish("message_new", {"id": "msg_2"})
        pending_closers = len(hub._closers)
        await hub.aclose()
        return slow, pending_closers, len(hub._closers)

    slow, pending_closers, left = asyncio.run(_run())
    assert pending_closers == 1
    assert slow.closed_with == [1013]
    assert left == 0
