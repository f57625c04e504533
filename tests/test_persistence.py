from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

from ag_bridge.config import load_settings_dicts
from ag_bridge.models import BridgeSnapshot
from ag_bridge.persistence import SnapshotStore, merge_snapshot
from ag_bridge.service import BridgeService


def _settings(tmp_path):
    return load_settings_dicts([{"root": str(tmp_path), "persistence": {"debounce_ms": 0}}], env={})


def test_missing_file_is_created_with_defaults(tmp_path) -> None:
    path = tmp_path / "data" / "state.json"
    store = SnapshotStore(path=path)

    snap = store.load()
    assert snap == BridgeSnapshot()
    assert path.exists()
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["version"] == 1
    assert on_disk["strictMode"] is True
    assert on_disk["approvals"] == []
    assert not store.tmp_path.exists()


def test_corrupt_file_is_quarantined(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    snap = SnapshotStore(path=path).load()

    assert snap == BridgeSnapshot()
    bad = list(tmp_path.glob("state.json.bad.*"))
    assert len(bad) == 1
    assert bad[0].read_text(encoding="utf-8") == "{not json"
    assert not path.exists()


def test_non_object_root_is_quarantined(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text("[]", encoding="utf-8")

    assert SnapshotStore(path=path).load() == BridgeSnapshot()
    assert len(list(tmp_path.glob("state.json.bad.*"))) == 1


def test_merge_keeps_defaults_for_malformed_fields() -> None:
    snap = merge_snapshot(
        {
            "version": 1,
            "strictMode": False,
            "approvals": "oops",
            "messages": [{"id": "msg_1", "createdAt": "2024-01-01T00:00:00.000Z", "to": "agent", "text": "hi"}],
            "agent": {"state": "bogus"},
            "tokens": ["t1", 5, "", "t2"],
            "future_field": {"ignored": True},
        }
    )
    assert snap.strict_mode is False
    assert snap.approvals == []
    assert [m.id for m in snap.messages] == ["msg_1"]
    assert snap.agent.state == "idle"
    assert snap.tokens == ["t1", "t2"]


def test_state_round_trips_through_service(tmp_path) -> None:
    settings = _settings(tmp_path)
    svc = BridgeService(settings, pairing_code="123456")
    token = svc.claim("123456")
    a1 = svc.request_approval(kind="edit", details={"path": "a.py"})
    a2 = svc.request_approval(kind="edit", details={"path": "b.py"})
    svc.decide_approval(a1.id, "approved")
    m = svc.send_message(to="agent", text="run the tests")
    svc.ack_message(m.id, "done")
    svc.heartbeat(state="working", task="tests")
    cp = svc.add_checkpoint({"summary": "halfway"})
    svc.set_strict_mode(False)

    again = BridgeService(settings)
    assert again.pairing.authenticate(token) is True
    assert [a.to_wire() for a in again.approvals.items()] == [a.to_wire() for a in svc.approvals.items()]
    assert [a.id for a in again.approvals.pending()] == [a2.id]
    assert [x.to_wire() for x in again.messages.items()] == [x.to_wire() for x in svc.messages.items()]
    assert again.agent.current() == svc.agent.current()
    assert [c.to_wire() for c in again.checkpoints.items()] == [cp.to_wire()]
    assert again.strict_mode is False
    assert again.snapshot() == svc.snapshot()


def test_debounced_writes_coalesce(tmp_path, monkeypatch) -> None:
    store = SnapshotStore(path=tmp_path / "state.json", debounce_sec=0.05)
    state = {"n": 0}
    store.bind(lambda: {"n": state["n"]})
    writes: List[Dict[str, Any]] = []
    monkeypatch.setattr(store, "_write_atomic", lambda data: writes.append(data))

    async def _run() -> None:
        for i in range(1, 6):
            state["n"] = i
            store.schedule()
        assert store.pending is True
        await asyncio.sleep(0.3)
        await store.aclose()

    asyncio.run(_run())
    assert writes == [{"n": 5}]
    assert store.pending is False


def test_aclose_flushes_pending_changes(tmp_path) -> None:
    path = tmp_path / "state.json"
    store = SnapshotStore(path=path, debounce_sec=60)
    store.bind(lambda: {"hello": "world"})

    async def _run() -> None:
        store.schedule()
        await store.aclose()

    asyncio.run(_run())
    assert json.loads(path.read_text(encoding="utf-8")) == {"hello": "world"}
    assert not store.tmp_path.exists()


def test_write_failures_are_logged_not_raised(tmp_path, monkeypatch) -> None:
    store = SnapshotStore(path=tmp_path / "state.json")
    store.bind(lambda: {"x": 1})

    def _boom(data: Dict[str, Any]) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write_atomic", _boom)
    assert store.save_now({"x": 1}) is False

    async def _run() -> bool:
        store.schedule()
        return await store.flush()

    assert asyncio.run(_run()) is False
    assert store.pending is True


def _message(i: int) -> Dict[str, Any]:
    return {
        "id": f"msg_{i:03d}",
        "createdAt": f"2024-05-01T10:00:{i % 60:02d}.000Z",
        "from": "user",
        "to": "agent",
        "channel": "general",
        "text": f"message {i}",
        "status": "new",
    }


def test_one_bad_message_does_not_discard_the_rest(tmp_path) -> None:
    path = tmp_path / "state.json"
    messages = [_message(i) for i in range(50)]
    messages.insert(25, {**_message(99), "text": 42})
    raw = {"version": 1, "messages": messages}
    path.write_text(json.dumps(raw), encoding="utf-8")

    snap = SnapshotStore(path=path).load()

    assert len(snap.messages) == 50
    assert [m.id for m in snap.messages] == [f"msg_{i:03d}" for i in range(50)]
    backups = list(tmp_path.glob("state.json.bad.*"))
    assert len(backups) == 1
    assert json.loads(backups[0].read_text(encoding="utf-8")) == raw
    assert path.exists()


def test_merge_skips_bad_items_and_agent_fields() -> None:
    snap = merge_snapshot(
        {
            "checkpoints": [
                {"id": "cp_1", "ts": "2024-05-01T10:00:00.000Z", "summary": "ok"},
                {"id": 7, "ts": "2024-05-01T10:00:01.000Z"},
            ],
            "approvals": [
                {"id": "appr_1", "createdAt": "2024-05-01T10:00:00.000Z", "status": "approved", "decidedAt": None},
                {"id": "appr_2", "createdAt": "2024-05-01T10:00:00.000Z"},
            ],
            "agent": {"state": "bogus", "task": "refactor", "note": None},
        }
    )
    assert [c.id for c in snap.checkpoints] == ["cp_1"]
    assert snap.checkpoints[0].to_wire()["summary"] == "ok"
    assert [a.id for a in snap.approvals] == ["appr_2"]
    assert snap.agent.state == "idle"
    assert snap.agent.task == "refactor"
    assert snap.agent.note == ""


def test_clean_snapshot_is_not_backed_up(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"version": 1, "messages": [_message(1)]}), encoding="utf-8")

    snap = SnapshotStore(path=path).load()

    assert len(snap.messages) == 1
    assert list(tmp_path.glob("state.json.bad.*")) == []


def test_snapshot_from_node_bridge_keeps_history(tmp_path) -> None:
    path = tmp_path / "state.json"
    raw = {
        "version": 1,
        "strictMode": False,
        "approvals": [
            {
                "id": "appr_1a2b3c4d",
                "createdAt": "2024-05-01T10:00:00.000Z",
                "kind": "command",
                "details": {"cmd": "npm test"},
                "status": "approved",
                "decidedAt": "2024-05-01T10:00:05.000Z",
            },
            {
                "id": "appr_5e6f7a8b",
                "createdAt": "2024-05-01T10:01:00.000Z",
                "kind": "command",
                "details": {"cmd": "git push"},
                "status": "pending",
                "decidedAt": None,
                "meta": {"risk": "high", "clientTag": "cli"},
            },
        ],
        "messages": [_message(1), {**_message(2), "text": 42}],
        "agent": {"state": "working", "lastSeen": "2024-05-01T10:02:00.000Z", "task": None, "note": "compiling"},
        "checkpoints": [
            {"id": "cp_1714557600000", "ts": "2024-05-01T10:00:00.000Z", "summary": "halfway"},
            {"id": 7, "ts": "2024-05-01T10:00:30.000Z", "summary": "client id"},
        ],
        "tokens": ["ab" * 24],
    }
    path.write_text(json.dumps(raw), encoding="utf-8")

    snap = SnapshotStore(path=path).load()

    assert snap.strict_mode is False
    assert [a.id for a in snap.approvals] == ["appr_1a2b3c4d", "appr_5e6f7a8b"]
    assert snap.approvals[1].meta.client_tag == "cli"
    assert [m.id for m in snap.messages] == ["msg_001"]
    assert snap.agent.state == "working"
    assert snap.agent.last_seen == "2024-05-01T10:02:00.000Z"
    assert (snap.agent.task, snap.agent.note) == ("", "compiling")
    assert [c.id for c in snap.checkpoints] == ["cp_1714557600000"]
    assert snap.tokens == ["ab" * 24]
    assert len(list(tmp_path.glob("state.json.bad.*"))) == 1
