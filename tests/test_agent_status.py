from __future__ import annotations

import pytest

from ag_bridge.agent_status import AgentStatusTracker, CheckpointLog
from ag_bridge.errors import ValidationFailed


def test_default_status() -> None:
    assert AgentStatusTracker().current().to_wire() == {"state": "idle", "lastSeen": None, "task": "", "note": ""}


def test_heartbeat_merges_partial_updates() -> None:
    tracker = AgentStatusTracker()
    first = tracker.heartbeat(state="working", task="refactor parser")
    assert first.state == "working"
    assert first.task == "refactor parser"
    assert first.last_seen is not None

    second = tracker.heartbeat(note="halfway")
    assert second.state == "working"
    assert second.task == "refactor parser"
    assert second.note == "halfway"
    assert second.last_seen is not None
    assert second.last_seen >= first.last_seen


def test_heartbeat_none_keeps_value_and_empty_string_clears() -> None:
    tracker = AgentStatusTracker()
    tracker.heartbeat(state="working", task="refactor parser", note="halfway")

    kept = tracker.heartbeat(task=None, note=None)
    assert (kept.task, kept.note) == ("refactor parser", "halfway")

    cleared = tracker.heartbeat(task="", note="")
    assert (cleared.task, cleared.note) == ("", "")
    assert cleared.state == "working"


def test_heartbeat_rejects_unknown_state() -> None:
    tracker = AgentStatusTracker()
    with pytest.raises(ValidationFailed):
        tracker.heartbeat(state="sleeping")
    assert tracker.current().last_seen is None


def test_checkpoint_keeps_freeform_fields() -> None:
    log = CheckpointLog()
    cp = log.append({"summary": "tests green", "files": ["a.py"], "progress": 0.5})

    wire = cp.to_wire()
    assert wire["id"].startswith("cp_")
    assert wire["summary"] == "tests green"
    assert wire["files"] == ["a.py"]
    assert wire["progress"] == 0.5
    assert [c.id for c in log.items()] == [cp.id]


def test_checkpoint_envelope_cannot_be_overridden() -> None:
    log = CheckpointLog()
    cp = log.append({"id": "mine", "ts": "1970-01-01T00:00:00Z", "note": "x"})
    assert cp.id != "mine"
    assert cp.ts != "1970-01-01T00:00:00Z"
    assert cp.to_wire()["note"] == "x"


def test_checkpoint_body_must_be_object() -> None:
    with pytest.raises(ValidationFailed):
        CheckpointLog().append(["not", "an", "object"])
