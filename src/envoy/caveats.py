"""
Caveat construction and terms encoding.

Each caveat variant is a small frozen dataclass. ``to_caveat`` turns a
variant into the on-chain (enforcer, terms) pair signed into a
delegation. CaveatBuilder assembles ordered caveat lists for the
ephemeral and persistent profiles.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import to_checksum_address

from .config import ERC20_APPROVE_SELECTOR, DelegationFramework
from .errors import ValidationError

SECONDS_PER_DAY = 24 * 60 * 60
EPHEMERAL_WINDOW_SECONDS = 300

# ERC-20 transfer(address to, uint256 amount) argument offsets.
TRANSFER_TO_OFFSET = 4
TRANSFER_AMOUNT_OFFSET = 36

APPROVE_GROUP = 0
TRADING_GROUP = 1

_UINT128_MAX = 2**128 - 1
_UINT256_MAX = 2**256 - 1
_CAVEAT_TUPLE = "(address,bytes,bytes)"


@dataclass(frozen=True)
class Caveat:
    """On-chain caveat as signed: enforcer address plus encoded terms."""

    enforcer: str
    terms: str = "0x"

    def to_dict(self) -> dict:
        return {"enforcer": self.enforcer, "terms": self.terms}

    @classmethod
    def from_dict(cls, d: dict) -> "Caveat":
        return cls(enforcer=to_checksum_address(d["enforcer"]), terms=_hex(d.get("terms", "0x")))


@dataclass(frozen=True)
class TimestampCaveat:
    after: int
    before: int

    def terms(self) -> bytes:
        return _uint(self.after, 16) + _uint(self.before, 16)


@dataclass(frozen=True)
class LimitedCallsCaveat:
    limit: int

    def terms(self) -> bytes:
        return _uint(self.limit, 32)


@dataclass(frozen=True)
class NonceCaveat:
    value: int

    def terms(self) -> bytes:
        return _uint(self.value, 32)


@dataclass(frozen=True)
class ValueLteCaveat:
    max_value: int

    def terms(self) -> bytes:
        return _uint(self.max_value, 32)


@dataclass(frozen=True)
class AllowedCalldataCaveat:
    """Pin ``expected`` bytes at ``offset`` in the execution calldata."""

    offset: int
    expected: bytes

    def terms(self) -> bytes:
        return _uint(self.offset, 32) + self.expected


@dataclass(frozen=True)
class AllowedTargetsCaveat:
    targets: tuple[str, ...]

    def terms(self) -> bytes:
        return b"".join(bytes.fromhex(t[2:]) for t in self.targets)


@dataclass(frozen=True)
class AllowedMethodsCaveat:
    selectors: tuple[str, ...]

    def terms(self) -> bytes:
        return b"".join(bytes.fromhex(s[2:]) for s in self.selectors)


@dataclass(frozen=True)
class LogicalOrCaveat:
    """
    Alternatives chosen at redemption time without re-signing.

    Caveats inside one group are ANDed; groups are ORed. The selected
    group index travels in the unsigned caveat args.
    """

    groups: tuple[tuple["CaveatSpec", ...], ...]


CaveatSpec = Union[
    TimestampCaveat,
    LimitedCallsCaveat,
    NonceCaveat,
    ValueLteCaveat,
    AllowedCalldataCaveat,
    AllowedTargetsCaveat,
    AllowedMethodsCaveat,
    LogicalOrCaveat,
]


def enforcer_for(spec: CaveatSpec, framework: DelegationFramework) -> str:
    match spec:
        case TimestampCaveat():
            return framework.timestamp
        case LimitedCallsCaveat():
            return framework.limited_calls
        case NonceCaveat():
            return framework.nonce
        case ValueLteCaveat():
            return framework.value_lte
        case AllowedCalldataCaveat():
            return framework.allowed_calldata
        case AllowedTargetsCaveat():
            return framework.allowed_targets
        case AllowedMethodsCaveat():
            return framework.allowed_methods
        case LogicalOrCaveat():
            return framework.logical_or_wrapper
    raise TypeError(f"Unknown caveat variant: {type(spec).__name__}")


def encode_terms(spec: CaveatSpec, framework: DelegationFramework) -> bytes:
    if isinstance(spec, LogicalOrCaveat):
        return encode_logical_or_terms(spec.groups, framework)
    return spec.terms()


def to_caveat(spec: CaveatSpec, framework: DelegationFramework) -> Caveat:
    return Caveat(
        enforcer=enforcer_for(spec, framework),
        terms="0x" + encode_terms(spec, framework).hex(),
    )


def encode_logical_or_terms(
    groups: Sequence[Sequence[CaveatSpec]],
    framework: DelegationFramework,
) -> bytes:
    """ABI-encode CaveatGroup[] as ((address,bytes,bytes)[])[]."""
    payload = [
        (
            [
                (enforcer_for(spec, framework), encode_terms(spec, framework), b"")
                for spec in group
            ],
        )
        for group in groups
    ]
    return abi_encode([f"({_CAVEAT_TUPLE}[])[]"], [payload])


def logical_or_group_sizes(terms: Union[str, bytes]) -> list[int]:
    """Number of caveats in each group of encoded logical-or terms."""
    raw = bytes.fromhex(terms[2:]) if isinstance(terms, str) else terms
    (groups,) = abi_decode([f"({_CAVEAT_TUPLE}[])[]"], raw)
    return [len(group[0]) for group in groups]


def encode_selected_group_args(group_index: int, caveat_count: int) -> bytes:
    """Execution-time args selecting one logical-or group."""
    return abi_encode(["(uint256,bytes[])"], [(group_index, [b""] * caveat_count)])


@dataclass(frozen=True)
class Scope:
    """
    Targets, selectors and per-call value cap a delegation grants.

    An empty ``selectors`` tuple permits every method on the targets.
    """

    targets: tuple[str, ...] = ()
    selectors: tuple[str, ...] = ()
    value_lte: Optional[int] = None

    @classmethod
    def of(
        cls,
        targets: Sequence[str],
        selectors: Sequence[str] = (),
        value_lte: Optional[int] = None,
    ) -> "Scope":
        return cls(
            targets=tuple(to_checksum_address(t) for t in targets),
            selectors=tuple(_selector(s) for s in selectors),
            value_lte=value_lte,
        )


@dataclass
class CaveatBuilder:
    """Builds ordered caveat lists for a requested scope."""

    framework: DelegationFramework = field(default_factory=DelegationFramework)

    def ephemeral(
        self,
        scope: Scope,
        nonce: int,
        pins: Sequence[AllowedCalldataCaveat] = (),
        now: Optional[int] = None,
    ) -> list[Caveat]:
        """Single-use caveats: short window, one call, revocation nonce."""
        now = int(time.time()) if now is None else int(now)
        specs: list[CaveatSpec] = [
            TimestampCaveat(after=0, before=now + EPHEMERAL_WINDOW_SECONDS),
            LimitedCallsCaveat(limit=1),
            NonceCaveat(value=nonce),
        ]
        specs.extend(self._scope_specs(scope))
        specs.extend(pins)
        return [to_caveat(s, self.framework) for s in specs]

    def persistent(
        self,
        scope: Scope,
        expiry_days: int,
        max_calls: int,
        nonce: Optional[int] = None,
        now: Optional[int] = None,
    ) -> list[Caveat]:
        """
        Multi-day caveats for root and sub-delegations.

        Target and method scope is wrapped in a logical-or caveat whose
        group 0 permits approve() on any token and group 1 permits the
        trading scope. Nonce is included only when revocation support
        is requested.
        """
        now = int(time.time()) if now is None else int(now)
        specs: list[CaveatSpec] = [
            TimestampCaveat(after=0, before=now + expiry_days * SECONDS_PER_DAY),
            LimitedCallsCaveat(limit=max_calls),
        ]
        if nonce is not None:
            specs.append(NonceCaveat(value=nonce))
        if scope.value_lte:
            specs.append(ValueLteCaveat(max_value=scope.value_lte))
        specs.append(self.approve_or_trade(scope))
        return [to_caveat(s, self.framework) for s in specs]

    def approve_or_trade(self, scope: Scope) -> LogicalOrCaveat:
        approve_group = (AllowedMethodsCaveat(selectors=(ERC20_APPROVE_SELECTOR,)),)
        trading_group: tuple[CaveatSpec, ...] = (AllowedTargetsCaveat(targets=scope.targets),)
        if scope.selectors:
            trading_group += (AllowedMethodsCaveat(selectors=scope.selectors),)
        return LogicalOrCaveat(groups=(approve_group, trading_group))

    def _scope_specs(self, scope: Scope) -> list[CaveatSpec]:
        specs: list[CaveatSpec] = []
        if scope.targets:
            specs.append(AllowedTargetsCaveat(targets=scope.targets))
        if scope.selectors:
            specs.append(AllowedMethodsCaveat(selectors=scope.selectors))
        if scope.value_lte is not None:
            specs.append(ValueLteCaveat(max_value=scope.value_lte))
        return specs


def transfer_pins(recipient: str, amount: int) -> list[AllowedCalldataCaveat]:
    """Pin both recipient and amount of an ERC-20 transfer()."""
    if amount <= 0:
        raise ValidationError("Transfer amount must be positive")
    recipient_word = bytes(12) + bytes.fromhex(to_checksum_address(recipient)[2:])
    return [
        AllowedCalldataCaveat(offset=TRANSFER_TO_OFFSET, expected=recipient_word),
        AllowedCalldataCaveat(offset=TRANSFER_AMOUNT_OFFSET, expected=_uint(amount, 32)),
    ]


def native_transfer_scope(amount: int) -> Scope:
    """
    Scope for a native-value transfer: amount cap only.

    The recipient is not pinned. A redeemer holding this delegation can
    send up to ``amount`` to any address within the ephemeral window.
    """
    if amount <= 0:
        raise ValidationError("Transfer amount must be positive")
    return Scope(value_lte=amount)


def _uint(value: int, size: int) -> bytes:
    if value < 0 or value > (_UINT128_MAX if size == 16 else _UINT256_MAX):
        raise ValidationError(f"Value {value} does not fit in uint{size * 8}")
    return value.to_bytes(size, "big")


def _selector(value: str) -> str:
    candidate = value.lower()
    if not candidate.startswith("0x") or len(candidate) != 10:
        raise ValidationError(f"Invalid method selector: {value}")
    int(candidate[2:], 16)
    return candidate


def _hex(value: str) -> str:
    candidate = value.lower()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    bytes.fromhex(candidate[2:])
    return candidate
