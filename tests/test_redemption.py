"""Tests for redemption calldata encoding and submission."""

import pytest
from eth_abi import decode as abi_decode
from eth_account import Account

from envoy.delegation import SelectionContext
from envoy.errors import NetworkError, OnChainRevertError, RpcError, TransientNetworkError, ValidationError
from envoy.redemption import (
    BATCH_DEFAULT_MODE,
    SINGLE_DEFAULT_MODE,
    DelegationRedeemer,
    Execution,
    encode_batch_execution,
    encode_redeem_delegations,
    encode_single_execution,
    may_have_been_accepted,
    validate_chain,
)
from envoy.rpc import selector

SUBMITTED_HASH = "0x" + "ab" * 32


@pytest.fixture
def agent_account(keyring, spawned):
    return keyring.load_account(spawned.state.wallet_id)


@pytest.fixture
def delegation_chain(spawned):
    return spawned.delegation.chain()


def _decode_redeem(calldata):
    raw = bytes.fromhex(calldata[2:])
    assert raw[:4] == selector("redeemDelegations(bytes[],bytes32[],bytes[])")
    return abi_decode(["bytes[]", "bytes32[]", "bytes[]"], raw[4:])


class TestExecutionEncoding:
    def test_single_is_packed(self):
        target = Account.create().address
        encoded = encode_single_execution(Execution(target=target, value=5, call_data="0xdeadbeef"))
        assert encoded[:20] == bytes.fromhex(target[2:])
        assert int.from_bytes(encoded[20:52], "big") == 5
        assert encoded[52:] == bytes.fromhex("deadbeef")

    def test_batch_is_abi_encoded(self):
        a, b = Account.create().address, Account.create().address
        encoded = encode_batch_execution([Execution(a, 1, "0x01"), Execution(b, 2, "0x")])
        (decoded,) = abi_decode(["(address,uint256,bytes)[]"], encoded)
        assert [d[1] for d in decoded] == [1, 2]
        assert decoded[0][0].lower() == a.lower()


class TestChainValidation:
    def test_valid_chain(self, delegation_chain, agent_account):
        validate_chain(delegation_chain, agent_account.address)

    def test_innermost_delegate_must_be_redeemer(self, delegation_chain):
        with pytest.raises(ValidationError, match="Innermost delegate"):
            validate_chain(delegation_chain, Account.create().address)

    def test_reversed_chain_rejected(self, delegation_chain, session_key):
        with pytest.raises(ValidationError):
            validate_chain(list(reversed(delegation_chain)), session_key.address)

    def test_empty_chain_rejected(self):
        with pytest.raises(ValidationError):
            validate_chain([], Account.create().address)


class TestRedeemCalldata:
    def test_single_mode(self, delegation_chain, config):
        target = Account.create().address
        data = encode_redeem_delegations(
            delegation_chain, [Execution(target, 0, "0x12345678")], SelectionContext(1), config.framework
        )
        contexts, modes, executions = _decode_redeem(data)
        assert modes == (SINGLE_DEFAULT_MODE,)
        assert executions[0][:20] == bytes.fromhex(target[2:])

    def test_batch_mode(self, delegation_chain, config):
        target = Account.create().address
        data = encode_redeem_delegations(
            delegation_chain, [Execution(target), Execution(target)], SelectionContext(1), config.framework
        )
        _, modes, _ = _decode_redeem(data)
        assert modes == (BATCH_DEFAULT_MODE,)

    def test_permission_context_is_innermost_first(self, delegation_chain, config, spawned):
        data = encode_redeem_delegations(
            delegation_chain, [Execution(Account.create().address)], SelectionContext(1), config.framework
        )
        contexts, _, _ = _decode_redeem(data)
        (delegations,) = abi_decode(
            ["(address,address,bytes32,(address,bytes,bytes)[],uint256,bytes)[]"], contexts[0]
        )
        assert len(delegations) == 2
        assert delegations[0][0].lower() == spawned.wallet_address.lower()
        # Selection args are set on the logical-or caveat only.
        inner_caveats = delegations[0][3]
        assert inner_caveats[-1][2] != b""
        assert all(c[2] == b"" for c in inner_caveats[:-1])

    def test_no_executions_rejected(self, delegation_chain, config):
        with pytest.raises(ValidationError):
            encode_redeem_delegations(delegation_chain, [], SelectionContext(), config.framework)


class TestDelegationRedeemer:
    @pytest.fixture
    def redeemer(self, fake_chain, agent_account, config):
        return DelegationRedeemer(
            chain=fake_chain, account=agent_account, chain_id=config.chain_id, framework=config.framework
        )

    async def test_successful_redemption(self, redeemer, delegation_chain, fake_chain):
        receipt = await redeemer.redeem(delegation_chain, [Execution(Account.create().address)], SelectionContext(1))
        assert receipt.confirmed_by == "receipt"
        assert len(fake_chain.sent) == 1

    async def test_revert_raises(self, redeemer, delegation_chain, fake_chain):
        fake_chain.receipt = {"status": "0x0"}
        with pytest.raises(OnChainRevertError):
            await redeemer.redeem(delegation_chain, [Execution(Account.create().address)], SelectionContext(1))

    async def test_lost_receipt_confirmed_by_call_count(self, redeemer, delegation_chain, fake_chain):
        fake_chain.receipt_error = NetworkError("connection dropped")
        fake_chain.call_counts = [3, 4]
        receipt = await redeemer.redeem(delegation_chain, [Execution(Account.create().address)], SelectionContext(1))
        assert receipt.confirmed_by == "call_count"

    async def test_lost_receipt_without_progress_raises(self, redeemer, delegation_chain, fake_chain):
        fake_chain.receipt_error = NetworkError("connection dropped")
        fake_chain.call_counts = [3]
        with pytest.raises(NetworkError):
            await redeemer.redeem(delegation_chain, [Execution(Account.create().address)], SelectionContext(1))

    async def test_send_timeout_confirmed_by_call_count(self, redeemer, delegation_chain, fake_chain):
        fake_chain.send_error = TransientNetworkError("eth_sendRawTransaction: request timeout")
        fake_chain.receipt_error = NetworkError("connection dropped")
        fake_chain.call_counts = [0, 1]
        receipt = await redeemer.redeem(delegation_chain, [Execution(Account.create().address)], SelectionContext(1))
        assert receipt.confirmed_by == "call_count"
        assert receipt.tx_hash.startswith("0x") and len(receipt.tx_hash) == 66

    async def test_send_timeout_then_receipt_by_local_hash(self, redeemer, delegation_chain, fake_chain):
        fake_chain.send_error = TransientNetworkError("eth_sendRawTransaction: request timeout")
        receipt = await redeemer.redeem(delegation_chain, [Execution(Account.create().address)], SelectionContext(1))
        assert receipt.confirmed_by == "receipt"
        assert receipt.tx_hash != SUBMITTED_HASH

    async def test_already_known_rebroadcast_is_not_a_failure(self, redeemer, delegation_chain, fake_chain):
        fake_chain.send_error = RpcError(-32000, "already known", method="eth_sendRawTransaction")
        receipt = await redeemer.redeem(delegation_chain, [Execution(Account.create().address)], SelectionContext(1))
        assert receipt.confirmed_by == "receipt"

    async def test_send_timeout_without_progress_raises_send_error(self, redeemer, delegation_chain, fake_chain):
        fake_chain.send_error = TransientNetworkError("eth_sendRawTransaction: request timeout")
        fake_chain.receipt_error = NetworkError("connection dropped")
        fake_chain.call_counts = [3]
        with pytest.raises(TransientNetworkError, match="request timeout"):
            await redeemer.redeem(delegation_chain, [Execution(Account.create().address)], SelectionContext(1))

    async def test_node_rejection_raises_immediately(self, redeemer, delegation_chain, fake_chain):
        fake_chain.send_error = RpcError(-32000, "insufficient funds for gas", method="eth_sendRawTransaction")
        fake_chain.call_counts = [3, 4]
        with pytest.raises(RpcError):
            await redeemer.redeem(delegation_chain, [Execution(Account.create().address)], SelectionContext(1))
        assert fake_chain.call_counts == [4]


class TestAcceptanceAfterSendFailure:
    def test_transport_failure_may_have_landed(self):
        assert may_have_been_accepted(TransientNetworkError("reset"))

    @pytest.mark.parametrize("message", ["already known", "nonce too low", "Known transaction: 0xab"])
    def test_duplicate_submission_may_have_landed(self, message):
        assert may_have_been_accepted(RpcError(-32000, message))

    def test_rejection_did_not_land(self):
        assert not may_have_been_accepted(RpcError(-32000, "intrinsic gas too low"))

    async def test_wrong_account_never_submits(self, fake_chain, delegation_chain, config):
        redeemer = DelegationRedeemer(chain=fake_chain, account=Account.create(), chain_id=config.chain_id)
        with pytest.raises(ValidationError):
            await redeemer.redeem(delegation_chain, [Execution(Account.create().address)])
        assert fake_chain.sent == []
