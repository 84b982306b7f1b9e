"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from envoy.audit import AuditTrail, EventType
from envoy.errors import StoreError


def test_audit_hash_chain_detects_tampering(tmp_path):
    trail = AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )
    trail.log(EventType.AGENT_SPAWNED, agent_id="a-1", success=True)
    trail.log(EventType.REDEMPTION_COMPLETED, agent_id="a-1", success=True, amount_wei=10**18)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    second = json.loads(lines[1])
    second["amount_wei"] = str(10**21)
    lines[1] = json.dumps(second, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(StoreError, match="Audit chain broken"):
        trail.read_events()


def test_audit_chain_survives_reopen(tmp_path):
    kwargs = {"path": tmp_path / "audit.jsonl", "key_path": tmp_path / "secret" / "audit_hmac.key"}
    AuditTrail(**kwargs).log(EventType.ROOT_DELEGATION_CREATED, delegation_hash="0x01")
    reopened = AuditTrail(**kwargs)
    reopened.log(EventType.ROOT_DELEGATION_REVOKED, delegation_hash="0x01")
    events = reopened.read_events()
    assert [e.event_type for e in events] == ["root_delegation_created", "root_delegation_revoked"]
    assert events[1].prev_hash == events[0].event_hash


def test_amounts_are_decimal_strings(audit):
    event = audit.log(EventType.REDEMPTION_ATTEMPTED, amount_wei=2**200)
    assert event.amount_wei == str(2**200)


def test_filters_and_summary(audit):
    audit.log(EventType.REDEMPTION_ATTEMPTED, agent_id="a-1")
    audit.log(EventType.REDEMPTION_FAILED, agent_id="a-1", success=False, reason="reverted")
    audit.log(EventType.REDEMPTION_ATTEMPTED, agent_id="a-2")

    assert len(audit.read_events(agent_id="a-1")) == 2
    assert len(audit.read_events(event_type=EventType.REDEMPTION_ATTEMPTED)) == 2
    summary = audit.summary(agent_id="a-1")
    assert summary["total_events"] == 2
    assert summary["failures"] == 1
    assert summary["by_type"] == {"redemption_attempted": 1, "redemption_failed": 1}
