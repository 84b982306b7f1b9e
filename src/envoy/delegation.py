"""
Delegation model, EIP-712 hashing and factory functions.

A Delegation is a caveat-bounded grant from a delegator account to a
delegate account. Once signed it is wrapped in an immutable
SignedDelegation; the only per-redemption input, the logical-or group
selection, travels separately in a SelectionContext.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from eth_utils import keccak, to_checksum_address

from .caveats import (
    EPHEMERAL_WINDOW_SECONDS,
    SECONDS_PER_DAY,
    AllowedCalldataCaveat,
    Caveat,
    CaveatBuilder,
    Scope,
    encode_selected_group_args,
    logical_or_group_sizes,
)
from .config import DelegationFramework
from .errors import ValidationError
from .units import parse_base_units, parse_ether

ROOT_AUTHORITY = "0x" + "ff" * 32
ZERO_SALT = 0

ROOT_EXPIRY_DAYS = (1, 30)
ROOT_MAX_CALLS = (10, 500)
SUB_EXPIRY_DAYS = (1, 30)
SUB_MAX_CALLS = (1, 1000)
ROOT_BUDGET_CEILING = parse_ether("1000")

DELEGATION_TYPES = {
    "Delegation": [
        {"name": "delegate", "type": "address"},
        {"name": "delegator", "type": "address"},
        {"name": "authority", "type": "bytes32"},
        {"name": "caveats", "type": "Caveat[]"},
        {"name": "salt", "type": "uint256"},
    ],
    "Caveat": [
        {"name": "enforcer", "type": "address"},
        {"name": "terms", "type": "bytes"},
    ],
}


class DelegationKind(str, Enum):
    EPHEMERAL = "ephemeral"
    ROOT = "root"
    SUB = "sub"


def signing_label(kind: DelegationKind) -> str:
    """Human-readable prompt shown by the signer."""
    match kind:
        case DelegationKind.EPHEMERAL:
            return "Authorize a single transaction"
        case DelegationKind.ROOT:
            return "Enable autonomous trading mode"
        case DelegationKind.SUB:
            return "Delegate trading authority to sub-agent"
    raise ValueError(f"Unknown delegation kind: {kind}")


@dataclass(frozen=True)
class Delegation:
    """Unsigned delegation payload. Every field is covered by the signature."""

    delegate: str
    delegator: str
    authority: str
    caveats: tuple[Caveat, ...]
    salt: int

    def to_eip712_message(self, chain_id: int, delegation_manager: str) -> dict:
        return {
            "types": DELEGATION_TYPES,
            "primaryType": "Delegation",
            "domain": {
                "name": "DelegationManager",
                "version": "1",
                "chainId": chain_id,
                "verifyingContract": delegation_manager,
            },
            "message": {
                "delegate": self.delegate,
                "delegator": self.delegator,
                "authority": self.authority,
                "caveats": [{"enforcer": c.enforcer, "terms": c.terms} for c in self.caveats],
                "salt": self.salt,
            },
        }

    def signable(self, chain_id: int, delegation_manager: str) -> SignableMessage:
        data = self.to_eip712_message(chain_id, delegation_manager)
        return encode_typed_data(data["domain"], data["types"], data["message"])

    def delegation_hash(self) -> str:
        """Struct hash the delegation manager and enforcers key state by."""
        # The struct hash is domain independent; any domain yields the same body.
        signable = self.signable(1, "0x" + "00" * 20)
        return "0x" + signable.body.hex()

    def signing_digest(self, chain_id: int, delegation_manager: str) -> bytes:
        """Domain-separated digest handed to the signer."""
        signable = self.signable(chain_id, delegation_manager)
        return keccak(b"\x19" + signable.version + signable.header + signable.body)

    def to_dict(self) -> dict:
        return {
            "delegate": self.delegate,
            "delegator": self.delegator,
            "authority": self.authority,
            "caveats": [c.to_dict() for c in self.caveats],
            # Decimal string so uint256 values survive any JSON reader.
            "salt": str(self.salt),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Delegation":
        return cls(
            delegate=to_checksum_address(d["delegate"]),
            delegator=to_checksum_address(d["delegator"]),
            authority=str(d["authority"]).lower(),
            caveats=tuple(Caveat.from_dict(c) for c in d["caveats"]),
            salt=parse_base_units(d["salt"], "salt"),
        )


@dataclass(frozen=True)
class SignedDelegation:
    """A delegation together with its delegator's signature."""

    delegation: Delegation
    signature: str

    @property
    def delegate(self) -> str:
        return self.delegation.delegate

    @property
    def delegator(self) -> str:
        return self.delegation.delegator

    @property
    def caveats(self) -> tuple[Caveat, ...]:
        return self.delegation.caveats

    def delegation_hash(self) -> str:
        return self.delegation.delegation_hash()

    def to_dict(self) -> dict:
        d = self.delegation.to_dict()
        d["signature"] = self.signature
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SignedDelegation":
        signature = d.get("signature")
        if not signature:
            raise ValidationError("Delegation is not signed")
        return cls(delegation=Delegation.from_dict(d), signature=str(signature))


@dataclass(frozen=True)
class SelectionContext:
    """
    Unsigned redemption-time input: which logical-or group to satisfy.

    ``group_index`` of None leaves every caveat's args empty.
    """

    group_index: Optional[int] = None

    def args_for(self, caveat: Caveat, framework: DelegationFramework) -> bytes:
        if self.group_index is None:
            return b""
        if caveat.enforcer.lower() != framework.logical_or_wrapper.lower():
            return b""
        sizes = logical_or_group_sizes(caveat.terms)
        if not 0 <= self.group_index < len(sizes):
            raise ValidationError(
                f"Group {self.group_index} not present in logical-or caveat ({len(sizes)} groups)"
            )
        return encode_selected_group_args(self.group_index, sizes[self.group_index])


def verify_delegation_signature(
    signed: SignedDelegation,
    chain_id: int,
    delegation_manager: str,
) -> tuple[bool, str]:
    """Check the signature recovers to the delegator (EOA signers only)."""
    try:
        recovered = Account.recover_message(
            signed.delegation.signable(chain_id, delegation_manager),
            signature=bytes.fromhex(signed.signature[2:]),
        )
    except Exception as exc:
        return False, f"Signature recovery failed: {exc}"
    if recovered.lower() != signed.delegator.lower():
        return False, "Signature does not match delegator"
    return True, "Valid delegation signature"


@dataclass(frozen=True)
class DelegationDraft:
    """Unsigned delegation plus the metadata derived while building it."""

    kind: DelegationKind
    delegation: Delegation
    created_at: int
    expires_at: int
    allowed_targets: tuple[str, ...] = ()
    value_lte_per_tx: int = 0
    max_calls: int = 1
    nonce: Optional[int] = None

    @property
    def approximate_budget(self) -> int:
        return self.value_lte_per_tx * self.max_calls


def validate_root_params(
    expiry_days: int,
    value_lte_per_tx: int,
    max_calls: int,
    allowed_targets: Sequence[str],
) -> list[str]:
    errors = []
    if not ROOT_EXPIRY_DAYS[0] <= expiry_days <= ROOT_EXPIRY_DAYS[1]:
        errors.append(f"expiry_days must be between {ROOT_EXPIRY_DAYS[0]} and {ROOT_EXPIRY_DAYS[1]}")
    if not ROOT_MAX_CALLS[0] <= max_calls <= ROOT_MAX_CALLS[1]:
        errors.append(f"max_calls must be between {ROOT_MAX_CALLS[0]} and {ROOT_MAX_CALLS[1]}")
    if value_lte_per_tx <= 0:
        errors.append("value_lte_per_tx must be positive")
    if value_lte_per_tx * max_calls > ROOT_BUDGET_CEILING:
        errors.append("Approximate budget exceeds 1000 ether safety limit")
    if not allowed_targets:
        errors.append("At least one allowed target is required")
    return errors


def validate_sub_params(
    expiry_days: int,
    value_lte_per_tx: int,
    max_calls: int,
    allowed_targets: Sequence[str],
) -> list[str]:
    errors = []
    if not SUB_EXPIRY_DAYS[0] <= expiry_days <= SUB_EXPIRY_DAYS[1]:
        errors.append(f"expiry_days must be between {SUB_EXPIRY_DAYS[0]} and {SUB_EXPIRY_DAYS[1]}")
    if not SUB_MAX_CALLS[0] <= max_calls <= SUB_MAX_CALLS[1]:
        errors.append(f"max_calls must be between {SUB_MAX_CALLS[0]} and {SUB_MAX_CALLS[1]}")
    if value_lte_per_tx <= 0:
        errors.append("value_lte_per_tx must be positive")
    if not allowed_targets:
        errors.append("At least one allowed target is required")
    return errors


def ephemeral_salt(now: Optional[float] = None) -> int:
    """Random salt mixed with a millisecond timestamp."""
    millis = int((time.time() if now is None else now) * 1000)
    return int.from_bytes(keccak(os.urandom(32) + millis.to_bytes(8, "big")), "big")


@dataclass
class DelegationFactory:
    """Composes delegations for the three supported shapes."""

    framework: DelegationFramework = field(default_factory=DelegationFramework)

    @property
    def caveat_builder(self) -> CaveatBuilder:
        return CaveatBuilder(framework=self.framework)

    def build(
        self,
        delegator: str,
        delegate: str,
        caveats: Sequence[Caveat],
        authority: str = ROOT_AUTHORITY,
        salt: int = ZERO_SALT,
    ) -> Delegation:
        return Delegation(
            delegate=to_checksum_address(delegate),
            delegator=to_checksum_address(delegator),
            authority=authority.lower(),
            caveats=tuple(caveats),
            salt=salt,
        )

    def ephemeral(
        self,
        delegator: str,
        delegate: str,
        scope: Scope,
        nonce: int,
        pins: Sequence[AllowedCalldataCaveat] = (),
        now: Optional[int] = None,
    ) -> DelegationDraft:
        """Single-trade delegation with a short window and one call."""
        now = int(time.time()) if now is None else int(now)
        caveats = self.caveat_builder.ephemeral(scope, nonce=nonce, pins=pins, now=now)
        delegation = self.build(
            delegator,
            delegate,
            caveats,
            salt=ephemeral_salt(now),
        )
        return DelegationDraft(
            kind=DelegationKind.EPHEMERAL,
            delegation=delegation,
            created_at=now,
            expires_at=now + EPHEMERAL_WINDOW_SECONDS,
            allowed_targets=scope.targets,
            value_lte_per_tx=scope.value_lte or 0,
            max_calls=1,
            nonce=nonce,
        )

    def root(
        self,
        delegator: str,
        session_key: str,
        allowed_targets: Sequence[str],
        expiry_days: int,
        value_lte_per_tx: int,
        max_calls: int,
        now: Optional[int] = None,
    ) -> DelegationDraft:
        """User to primary agent. Deterministic zero salt."""
        errors = validate_root_params(expiry_days, value_lte_per_tx, max_calls, allowed_targets)
        if errors:
            raise ValidationError.from_errors(errors)
        now = int(time.time()) if now is None else int(now)
        scope = Scope.of(allowed_targets, value_lte=value_lte_per_tx)
        caveats = self.caveat_builder.persistent(scope, expiry_days, max_calls, now=now)
        delegation = self.build(delegator, session_key, caveats)
        return DelegationDraft(
            kind=DelegationKind.ROOT,
            delegation=delegation,
            created_at=now,
            expires_at=now + expiry_days * SECONDS_PER_DAY,
            allowed_targets=scope.targets,
            value_lte_per_tx=value_lte_per_tx,
            max_calls=max_calls,
        )

    def sub(
        self,
        parent: Optional[SignedDelegation],
        delegator: str,
        delegate: str,
        allowed_targets: Sequence[str],
        expiry_days: int,
        value_lte_per_tx: int,
        max_calls: int,
        allowed_selectors: Sequence[str] = (),
        nonce: Optional[int] = None,
        now: Optional[int] = None,
    ) -> DelegationDraft:
        """
        Primary agent to sub-agent redelegation.

        When ``parent`` is given the authority is the parent's hash and
        the delegator must be the parent's delegate.
        """
        errors = validate_sub_params(expiry_days, value_lte_per_tx, max_calls, allowed_targets)
        if parent is not None and parent.delegate.lower() != delegator.lower():
            errors.append("Sub-delegation delegator must be the parent delegation's delegate")
        if errors:
            raise ValidationError.from_errors(errors)
        now = int(time.time()) if now is None else int(now)
        scope = Scope.of(allowed_targets, allowed_selectors, value_lte=value_lte_per_tx)
        caveats = self.caveat_builder.persistent(scope, expiry_days, max_calls, nonce=nonce, now=now)
        authority = parent.delegation_hash() if parent is not None else ROOT_AUTHORITY
        delegation = self.build(delegator, delegate, caveats, authority=authority)
        return DelegationDraft(
            kind=DelegationKind.SUB,
            delegation=delegation,
            created_at=now,
            expires_at=now + expiry_days * SECONDS_PER_DAY,
            allowed_targets=scope.targets,
            value_lte_per_tx=value_lte_per_tx,
            max_calls=max_calls,
            nonce=nonce,
        )
