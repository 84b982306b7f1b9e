"""
Persisted records: agent state, trade log entries, stored delegations.

JSON field names are part of the on-disk format. Large integers are
written as decimal strings and parsed back with int().
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from eth_utils import to_checksum_address

from .config import NATIVE_TOKEN_ADDRESS
from .delegation import DelegationDraft, SignedDelegation
from .units import parse_base_units

MAX_ERRORS_KEPT = 100


def now_ms() -> int:
    return int(time.time() * 1000)


class AgentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    REVOKED = "revoked"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.REVOKED)


class AgentArchetype(str, Enum):
    PERPS = "perps"
    MOMENTUM = "momentum"
    GENERAL = "general"


def token_key(token: str) -> str:
    return token.lower()


@dataclass
class Budget:
    """Per-token allocation and spend in base units."""

    allocated: dict[str, int] = field(default_factory=dict)
    spent: dict[str, int] = field(default_factory=dict)

    def allocated_for(self, token: str) -> int:
        return self.allocated.get(token_key(token), 0)

    def spent_for(self, token: str) -> int:
        return self.spent.get(token_key(token), 0)

    def remaining_for(self, token: str) -> Optional[int]:
        """Remaining allowance, or None when the token has no allocation."""
        key = token_key(token)
        if key not in self.allocated:
            return None
        return self.allocated[key] - self.spent.get(key, 0)

    def to_dict(self) -> dict:
        return {
            "allocatedPerToken": {k: str(v) for k, v in self.allocated.items()},
            "spentPerToken": {k: str(v) for k, v in self.spent.items()},
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Budget":
        return cls(
            allocated={token_key(k): parse_base_units(v, "allocatedPerToken") for k, v in d.get("allocatedPerToken", {}).items()},
            spent={token_key(k): parse_base_units(v, "spentPerToken") for k, v in d.get("spentPerToken", {}).items()},
        )


@dataclass
class AgentError:
    timestamp: int
    message: str
    recoverable: bool

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "message": self.message, "recoverable": self.recoverable}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "AgentError":
        return cls(timestamp=int(d["timestamp"]), message=str(d["message"]), recoverable=bool(d["recoverable"]))


@dataclass
class AgentState:
    agent_id: str
    wallet_id: str
    wallet_address: str
    archetype: AgentArchetype
    status: AgentStatus
    executed: int
    max_allowed: int
    budget: Budget
    created_at: int
    expires_at: int
    last_activity_at: int = 0
    errors: list[AgentError] = field(default_factory=list)

    @property
    def is_expired(self) -> bool:
        return now_ms() > self.expires_at

    @property
    def trades_remaining(self) -> int:
        return max(0, self.max_allowed - self.executed)

    @property
    def native_remaining(self) -> Optional[int]:
        return self.budget.remaining_for(NATIVE_TOKEN_ADDRESS)

    def to_dict(self) -> dict:
        return {
            "agentId": self.agent_id,
            "walletId": self.wallet_id,
            "walletAddress": self.wallet_address,
            "archetype": self.archetype.value,
            "status": self.status.value,
            "trades": {"executed": self.executed, "maxAllowed": self.max_allowed},
            "budget": self.budget.to_dict(),
            "createdAt": self.created_at,
            "lastActivityAt": self.last_activity_at,
            "expiresAt": self.expires_at,
            "errors": [e.to_dict() for e in self.errors],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "AgentState":
        return cls(
            agent_id=str(d["agentId"]),
            wallet_id=str(d["walletId"]),
            wallet_address=to_checksum_address(d["walletAddress"]),
            archetype=AgentArchetype(d.get("archetype", AgentArchetype.GENERAL.value)),
            status=AgentStatus(d["status"]),
            executed=int(d["trades"]["executed"]),
            max_allowed=int(d["trades"]["maxAllowed"]),
            budget=Budget.from_dict(d.get("budget", {})),
            created_at=int(d.get("createdAt", 0)),
            last_activity_at=int(d.get("lastActivityAt", 0)),
            expires_at=int(d["expiresAt"]),
            errors=[AgentError.from_dict(e) for e in d.get("errors", [])],
        )


@dataclass
class TradeRecord:
    action: str
    protocol: str
    tx_hash: str
    success: bool = True
    timestamp: int = field(default_factory=now_ms)
    error: Optional[str] = None
    details: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {
            "timestamp": self.timestamp,
            "action": self.action,
            "protocol": self.protocol,
            "txHash": self.tx_hash,
            "success": self.success,
            "details": dict(self.details),
        }
        if self.error is not None:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "TradeRecord":
        return cls(
            action=str(d["action"]),
            protocol=str(d["protocol"]),
            tx_hash=str(d["txHash"]),
            success=bool(d.get("success", True)),
            timestamp=int(d["timestamp"]),
            error=d.get("error"),
            details={str(k): str(v) for k, v in d.get("details", {}).items()},
        )


@dataclass
class StoredDelegation:
    """A signed delegation plus the metadata derived when it was built."""

    delegation_hash: str
    signed_delegation: SignedDelegation
    allowed_targets: list[str]
    created_at: int
    expires_at: int
    value_cap_per_tx: int
    max_calls: int
    chain_id: int
    parent_delegation_hash: Optional[str] = None
    root_delegation: Optional[SignedDelegation] = None

    @property
    def approximate_budget(self) -> int:
        return self.value_cap_per_tx * self.max_calls

    @property
    def delegator(self) -> str:
        return self.signed_delegation.delegator

    @property
    def delegate(self) -> str:
        return self.signed_delegation.delegate

    @property
    def is_expired(self) -> bool:
        return now_ms() > self.expires_at

    def chain(self) -> list[SignedDelegation]:
        """Innermost-first delegation chain ending at the root."""
        links = [self.signed_delegation]
        if self.root_delegation is not None:
            links.append(self.root_delegation)
        return links

    @classmethod
    def from_draft(
        cls,
        draft: DelegationDraft,
        signed: SignedDelegation,
        chain_id: int,
        root: Optional["StoredDelegation"] = None,
    ) -> "StoredDelegation":
        return cls(
            delegation_hash=signed.delegation_hash(),
            signed_delegation=signed,
            allowed_targets=list(draft.allowed_targets),
            created_at=draft.created_at * 1000,
            expires_at=draft.expires_at * 1000,
            value_cap_per_tx=draft.value_lte_per_tx,
            max_calls=draft.max_calls,
            chain_id=chain_id,
            parent_delegation_hash=root.delegation_hash if root else None,
            root_delegation=root.signed_delegation if root else None,
        )

    def to_dict(self) -> dict:
        d = {
            "delegationHash": self.delegation_hash,
            "signedDelegation": self.signed_delegation.to_dict(),
            "allowedTargets": list(self.allowed_targets),
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "valueCapPerTx": str(self.value_cap_per_tx),
            "maxCalls": self.max_calls,
            "approximateBudget": str(self.approximate_budget),
            "chainId": self.chain_id,
        }
        if self.parent_delegation_hash:
            d["parentDelegationHash"] = self.parent_delegation_hash
        if self.root_delegation is not None:
            d["rootDelegation"] = self.root_delegation.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "StoredDelegation":
        root = d.get("rootDelegation")
        return cls(
            delegation_hash=str(d["delegationHash"]),
            signed_delegation=SignedDelegation.from_dict(d["signedDelegation"]),
            allowed_targets=[to_checksum_address(t) for t in d.get("allowedTargets", [])],
            created_at=int(d["createdAt"]),
            expires_at=int(d["expiresAt"]),
            value_cap_per_tx=parse_base_units(d["valueCapPerTx"], "valueCapPerTx"),
            max_calls=int(d["maxCalls"]),
            chain_id=int(d.get("chainId", 0)),
            parent_delegation_hash=d.get("parentDelegationHash"),
            root_delegation=SignedDelegation.from_dict(root) if root else None,
        )
