"""Tests for caveat terms encoding and caveat list profiles."""

import pytest
from eth_abi import decode as abi_decode
from eth_account import Account

from envoy.caveats import (
    EPHEMERAL_WINDOW_SECONDS,
    SECONDS_PER_DAY,
    TRANSFER_AMOUNT_OFFSET,
    TRANSFER_TO_OFFSET,
    AllowedMethodsCaveat,
    AllowedTargetsCaveat,
    CaveatBuilder,
    LimitedCallsCaveat,
    LogicalOrCaveat,
    NonceCaveat,
    Scope,
    TimestampCaveat,
    ValueLteCaveat,
    encode_selected_group_args,
    logical_or_group_sizes,
    native_transfer_scope,
    to_caveat,
    transfer_pins,
)
from envoy.config import DelegationFramework
from envoy.errors import ValidationError

NOW = 1_700_000_000


@pytest.fixture
def framework():
    return DelegationFramework()


@pytest.fixture
def builder(framework):
    return CaveatBuilder(framework=framework)


@pytest.fixture
def target():
    return Account.create().address


class TestTermsEncoding:
    def test_timestamp_is_two_uint128(self, framework):
        caveat = to_caveat(TimestampCaveat(after=0, before=NOW), framework)
        raw = bytes.fromhex(caveat.terms[2:])
        assert len(raw) == 32
        assert int.from_bytes(raw[:16], "big") == 0
        assert int.from_bytes(raw[16:], "big") == NOW
        assert caveat.enforcer == framework.timestamp

    def test_uint256_caveats(self, framework):
        for spec, enforcer in (
            (LimitedCallsCaveat(limit=7), framework.limited_calls),
            (NonceCaveat(value=7), framework.nonce),
            (ValueLteCaveat(max_value=7), framework.value_lte),
        ):
            caveat = to_caveat(spec, framework)
            assert caveat.enforcer == enforcer
            assert int(caveat.terms, 16) == 7
            assert len(caveat.terms) == 2 + 64

    def test_targets_are_packed(self, framework, target):
        other = Account.create().address
        caveat = to_caveat(AllowedTargetsCaveat(targets=(target, other)), framework)
        assert caveat.terms == "0x" + target[2:].lower() + other[2:].lower()

    def test_methods_are_packed(self, framework):
        caveat = to_caveat(AllowedMethodsCaveat(selectors=("0x095ea7b3", "0xa9059cbb")), framework)
        assert caveat.terms == "0x095ea7b3a9059cbb"

    def test_timestamp_overflow_rejected(self, framework):
        with pytest.raises(ValidationError):
            to_caveat(TimestampCaveat(after=0, before=2**128), framework)


class TestLogicalOr:
    def test_group_sizes_round_trip(self, framework, target):
        spec = LogicalOrCaveat(
            groups=(
                (AllowedMethodsCaveat(selectors=("0x095ea7b3",)),),
                (AllowedTargetsCaveat(targets=(target,)), AllowedMethodsCaveat(selectors=("0x12345678",))),
            )
        )
        caveat = to_caveat(spec, framework)
        assert caveat.enforcer == framework.logical_or_wrapper
        assert logical_or_group_sizes(caveat.terms) == [1, 2]

    def test_selected_group_args(self):
        (decoded,) = abi_decode(["(uint256,bytes[])"], encode_selected_group_args(1, 2))
        assert decoded[0] == 1
        assert list(decoded[1]) == [b"", b""]


class TestEphemeralProfile:
    def test_window_call_limit_and_nonce(self, builder, framework, target):
        caveats = builder.ephemeral(Scope.of([target], value_lte=10), nonce=4, now=NOW)
        enforcers = [c.enforcer for c in caveats]
        assert enforcers[:3] == [framework.timestamp, framework.limited_calls, framework.nonce]
        assert int(caveats[0].terms[-32:], 16) == NOW + EPHEMERAL_WINDOW_SECONDS
        assert int(caveats[1].terms, 16) == 1
        assert int(caveats[2].terms, 16) == 4
        assert framework.allowed_targets in enforcers
        assert framework.value_lte in enforcers

    def test_transfer_pins_recipient_and_amount(self, builder, framework, target):
        recipient = Account.create().address
        pins = transfer_pins(recipient, 5_000)
        assert [p.offset for p in pins] == [TRANSFER_TO_OFFSET, TRANSFER_AMOUNT_OFFSET]
        caveats = builder.ephemeral(Scope.of([target]), nonce=0, pins=pins, now=NOW)
        pinned = [c for c in caveats if c.enforcer == framework.allowed_calldata]
        assert len(pinned) == 2
        assert pinned[0].terms.endswith(recipient[2:].lower())
        assert int(pinned[1].terms[-64:], 16) == 5_000

    def test_native_transfer_caps_value_only(self):
        scope = native_transfer_scope(100)
        assert scope.targets == ()
        assert scope.value_lte == 100

    def test_zero_transfer_rejected(self):
        with pytest.raises(ValidationError):
            transfer_pins(Account.create().address, 0)


class TestPersistentProfile:
    def test_logical_or_with_selectors(self, builder, framework, target):
        scope = Scope.of([target], ["0x12345678"], value_lte=10**18)
        caveats = builder.persistent(scope, expiry_days=7, max_calls=100, now=NOW)
        assert [c.enforcer for c in caveats] == [
            framework.timestamp,
            framework.limited_calls,
            framework.value_lte,
            framework.logical_or_wrapper,
        ]
        assert int(caveats[0].terms[-32:], 16) == NOW + 7 * SECONDS_PER_DAY
        assert logical_or_group_sizes(caveats[-1].terms) == [1, 2]

    def test_trading_group_without_selectors(self, builder, target):
        caveats = builder.persistent(Scope.of([target], value_lte=1), expiry_days=1, max_calls=10, now=NOW)
        assert logical_or_group_sizes(caveats[-1].terms) == [1, 1]

    def test_nonce_only_when_requested(self, builder, framework, target):
        without = builder.persistent(Scope.of([target], value_lte=1), 1, 10, now=NOW)
        with_nonce = builder.persistent(Scope.of([target], value_lte=1), 1, 10, nonce=3, now=NOW)
        assert framework.nonce not in [c.enforcer for c in without]
        assert framework.nonce in [c.enforcer for c in with_nonce]

    def test_invalid_selector_rejected(self, target):
        with pytest.raises(ValidationError):
            Scope.of([target], ["0x1234"])
