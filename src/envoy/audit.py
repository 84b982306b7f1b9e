"""
Audit trail for delegation and redemption activity.

Events are append-only JSONL entries chained with HMAC-SHA256 so that
edits or deletions are detected on read. Amounts are recorded as
decimal strings of base units.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import StoreError
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".envoy" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".envoy-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "ENVOY_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    ROOT_DELEGATION_CREATED = "root_delegation_created"
    ROOT_DELEGATION_REVOKED = "root_delegation_revoked"
    SUB_DELEGATION_CREATED = "sub_delegation_created"
    AGENT_SPAWNED = "agent_spawned"
    AGENT_REVOKED = "agent_revoked"
    REDEMPTION_ATTEMPTED = "redemption_attempted"
    REDEMPTION_COMPLETED = "redemption_completed"
    REDEMPTION_FAILED = "redemption_failed"
    APPROVAL_EXECUTED = "approval_executed"
    VALIDATION_DENIED = "validation_denied"
    USER_OPERATION_SUBMITTED = "user_operation_submitted"
    USER_OPERATION_INCLUDED = "user_operation_included"
    USER_OPERATION_FAILED = "user_operation_failed"


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    agent_id: Optional[str] = None
    delegation_hash: Optional[str] = None
    delegator: Optional[str] = None
    delegate: Optional[str] = None
    amount_wei: Optional[str] = None
    target: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)

        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        ensure_private_file(self.key_path)
        self.key_path.write_bytes(key)
        return key

    def _scan_last_hash(self) -> str:
        last = ""
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    last = json.loads(line).get("event_hash", "")
        return last

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def log(
        self,
        event_type: EventType,
        agent_id: Optional[str] = None,
        delegation_hash: Optional[str] = None,
        delegator: Optional[str] = None,
        delegate: Optional[str] = None,
        amount_wei: Optional[int] = None,
        target: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "agent_id": agent_id,
            "delegation_hash": delegation_hash,
            "delegator": delegator,
            "delegate": delegate,
            "amount_wei": str(amount_wei) if amount_wei is not None else None,
            "target": target,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}
        prev_hash = self._last_hash
        current_hash = self._event_hash(payload, prev_hash)
        event = AuditEvent(**payload, prev_hash=prev_hash or None, event_hash=current_hash)

        with open(self.path, "a", encoding="utf-8") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._last_hash = current_hash
        return event

    def read_events(
        self,
        agent_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verify the whole chain, then return the newest matching events."""
        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)
                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise StoreError(f"Audit chain broken at line {line_no}: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                    raise StoreError(f"Audit chain broken at line {line_no}: event hash mismatch")
                expected_prev = event_hash

                if agent_id and raw.get("agent_id") != agent_id:
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue
                events.append(AuditEvent(**{k: v for k, v in raw.items() if k in AuditEvent.__dataclass_fields__}))

        self._last_hash = expected_prev
        return events[-limit:]

    def summary(self, agent_id: Optional[str] = None) -> dict:
        events = self.read_events(agent_id=agent_id, limit=100_000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
