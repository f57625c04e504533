from __future__ import annotations

import json
import logging

from ag_bridge.policy import Policy, PolicyGate, load_policy


def _gate(*, deny=(), allow=()) -> PolicyGate:
    return PolicyGate(Policy.from_lists(deny=deny, allow=allow))


def test_missing_command_is_rejected() -> None:
    gate = _gate()
    for cmd in (None, "", 42):
        d = gate.evaluate(cmd, strict_mode=False)  # type: ignore[arg-type]
        assert d.allowed is False
        assert d.error == "missing_command"


def test_deny_wins_over_allow_and_strict_mode() -> None:
    gate = _gate(deny=["rm -rf"], allow=["^rm"])
    for strict in (True, False):
        d = gate.evaluate("rm -rf /", strict_mode=strict)
        assert d.allowed is False
        assert d.error == "command_denied"
        assert d.matched_rule == "rm -rf"


def test_strict_mode_requires_allow_match() -> None:
    gate = _gate(allow=[r"^git (status|diff)\b", r"^ls\b"])

    assert gate.evaluate("git status", strict_mode=True).allowed is True
    assert gate.evaluate("ls -la", strict_mode=True).matched_rule == r"^ls\b"

    d = gate.evaluate("curl http://example.com", strict_mode=True)
    assert d.allowed is False
    assert d.error == "command_not_allowlisted"

    # 非 strict：allow 列表不生效
    assert gate.evaluate("curl http://example.com", strict_mode=False).allowed is True


def test_patterns_are_partial_matches() -> None:
    gate = _gate(deny=["sudo"])
    assert gate.evaluate("echo hi && sudo reboot", strict_mode=False).error == "command_denied"


def test_invalid_regex_is_matched_literally(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="ag_bridge.policy"):
        gate = _gate(deny=["rm [-rf"])
    assert any("Invalid policy pattern" in r.getMessage() for r in caplog.records)

    assert gate.evaluate("rm [-rf tmp", strict_mode=False).error == "command_denied"
    assert gate.evaluate("rm -rf tmp", strict_mode=False).allowed is True


def test_load_policy_reads_json(tmp_path) -> None:
    p = tmp_path / "policy.json"
    p.write_text(json.dumps({"deny": ["rm -rf", 3, ""], "allow": ["^npm test$"]}), encoding="utf-8")

    policy = load_policy(p)
    assert [raw for raw, _ in policy.deny] == ["rm -rf"]
    assert [raw for raw, _ in policy.allow] == ["^npm test$"]


def test_load_policy_reads_yaml(tmp_path) -> None:
    p = tmp_path / "policy.yaml"
    p.write_text("deny:\n  - 'git push --force'\nallow:\n  - '^pytest'\n", encoding="utf-8")

    gate = PolicyGate(load_policy(p))
    assert gate.evaluate("git push --force origin", strict_mode=True).error == "command_denied"
    assert gate.evaluate("pytest -q", strict_mode=True).allowed is True


def test_load_policy_missing_or_invalid_is_empty(tmp_path) -> None:
    assert load_policy(tmp_path / "nope.json") == Policy()

    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2, 3]", encoding="utf-8")
    assert load_policy(bad) == Policy()

    broken = tmp_path / "broken.json"
    broken.write_text("{deny: [", encoding="utf-8")
    assert load_policy(broken) == Policy()
