"""
Delegation redemption: calldata encoding and transaction submission.

redeemDelegations(bytes[] permissionContexts, bytes32[] modes,
bytes[] executionCallDatas) takes one entry per delegation chain. A
permission context is the ABI-encoded Delegation[] ordered innermost
first; unsigned caveat args come from a SelectionContext at encode
time, never from the stored delegation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from eth_abi import encode as abi_encode
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address, to_hex

from .config import DelegationFramework
from .delegation import ROOT_AUTHORITY, SelectionContext, SignedDelegation
from .errors import NetworkError, OnChainRevertError, RpcError, ValidationError
from .retry import Poller
from .rpc import ChainClient, selector
from .units import to_quantity

logger = logging.getLogger(__name__)

SINGLE_DEFAULT_MODE = bytes(32)
BATCH_DEFAULT_MODE = b"\x01" + bytes(31)

_DELEGATION_TUPLE = "(address,address,bytes32,(address,bytes,bytes)[],uint256,bytes)"
_REDEEM_SELECTOR = selector("redeemDelegations(bytes[],bytes32[],bytes[])")

# Gas headroom over the node estimate for redemption transactions.
GAS_ESTIMATE_MARGIN_PERCENT = 20

# Node replies to a rebroadcast of a transaction it already holds.
_ALREADY_SUBMITTED_PHRASES = ("already known", "known transaction", "already imported", "nonce too low")


@dataclass(frozen=True)
class Execution:
    target: str
    value: int = 0
    call_data: str = "0x"

    @property
    def call_data_bytes(self) -> bytes:
        return bytes.fromhex(self.call_data[2:])


def encode_single_execution(execution: Execution) -> bytes:
    """Packed target ‖ uint256 value ‖ callData."""
    return (
        bytes.fromhex(to_checksum_address(execution.target)[2:])
        + execution.value.to_bytes(32, "big")
        + execution.call_data_bytes
    )


def encode_batch_execution(executions: Sequence[Execution]) -> bytes:
    return abi_encode(
        ["(address,uint256,bytes)[]"],
        [[(to_checksum_address(e.target), e.value, e.call_data_bytes) for e in executions]],
    )


def validate_chain(chain: Sequence[SignedDelegation], redeemer: str) -> None:
    """
    Check chain ordering before submission.

    The innermost delegation's delegate must be the redeemer; each
    delegation's authority must be the next one's hash, ending at the
    root authority.
    """
    if not chain:
        raise ValidationError("Delegation chain is empty")
    if chain[0].delegate.lower() != redeemer.lower():
        raise ValidationError(
            f"Innermost delegate {chain[0].delegate} is not the submitting account {redeemer}"
        )
    for inner, outer in zip(chain, chain[1:]):
        if inner.delegator.lower() != outer.delegate.lower():
            raise ValidationError("Delegation chain is broken: delegator/delegate mismatch")
        if inner.delegation.authority != outer.delegation_hash():
            raise ValidationError("Delegation chain is broken: authority does not reference parent")
    if chain[-1].delegation.authority != ROOT_AUTHORITY:
        raise ValidationError("Outermost delegation must carry the root authority")


def encode_permission_context(
    chain: Sequence[SignedDelegation],
    selection: SelectionContext,
    framework: DelegationFramework,
) -> bytes:
    delegations = []
    for signed in chain:
        d = signed.delegation
        caveats = [
            (c.enforcer, bytes.fromhex(c.terms[2:]), selection.args_for(c, framework))
            for c in d.caveats
        ]
        delegations.append(
            (
                d.delegate,
                d.delegator,
                bytes.fromhex(d.authority[2:]),
                caveats,
                d.salt,
                bytes.fromhex(signed.signature[2:]),
            )
        )
    return abi_encode([f"{_DELEGATION_TUPLE}[]"], [delegations])


def encode_redeem_delegations(
    chain: Sequence[SignedDelegation],
    executions: Sequence[Execution],
    selection: SelectionContext,
    framework: DelegationFramework,
) -> str:
    """Calldata for a single redeemDelegations entry."""
    if not executions:
        raise ValidationError("At least one execution is required")
    if len(executions) == 1:
        mode, execution_data = SINGLE_DEFAULT_MODE, encode_single_execution(executions[0])
    else:
        mode, execution_data = BATCH_DEFAULT_MODE, encode_batch_execution(executions)
    context = encode_permission_context(chain, selection, framework)
    args = abi_encode(["bytes[]", "bytes32[]", "bytes[]"], [[context], [mode], [execution_data]])
    return "0x" + (_REDEEM_SELECTOR + args).hex()


def may_have_been_accepted(error: NetworkError) -> bool:
    """
    Whether a failed eth_sendRawTransaction can still end up mined.

    Transport failures can hide an accepted send. An RPC error only
    does so when the node reports it already holds the transaction.
    """
    if isinstance(error, RpcError):
        message = error.rpc_message.lower()
        return any(phrase in message for phrase in _ALREADY_SUBMITTED_PHRASES)
    return True


@dataclass
class RedemptionReceipt:
    tx_hash: str
    receipt: Optional[dict] = None
    confirmed_by: str = "receipt"


@dataclass
class DelegationRedeemer:
    """Signs and submits redemption transactions from the delegate account."""

    chain: ChainClient
    account: LocalAccount
    chain_id: int
    framework: DelegationFramework = field(default_factory=DelegationFramework)
    poller: Poller = field(default_factory=Poller)

    async def redeem(
        self,
        delegation_chain: Sequence[SignedDelegation],
        executions: Sequence[Execution],
        selection: SelectionContext = SelectionContext(),
    ) -> RedemptionReceipt:
        """
        Submit one redemption and wait for inclusion.

        Raises OnChainRevertError when mined with status 0. If sending or
        polling fails in a way that leaves inclusion possible, the
        innermost delegation's call count decides whether the redemption
        landed.
        """
        validate_chain(delegation_chain, self.account.address)
        data = encode_redeem_delegations(delegation_chain, executions, selection, self.framework)
        manager = self.framework.delegation_manager
        inner_hash = delegation_chain[0].delegation_hash()

        calls_before = await self._call_count(inner_hash)
        tx = await self._build_transaction(manager, data)
        signed = self.account.sign_transaction(tx)
        try:
            tx_hash = await self.chain.send_raw_transaction("0x" + signed.raw_transaction.hex())
        except NetworkError as e:
            if not may_have_been_accepted(e):
                raise
            tx_hash = to_hex(signed.hash)
            logger.warning("Sending redemption %s failed, checking whether it landed: %s", tx_hash, e)
            if await self._call_count_advanced(inner_hash, calls_before):
                return RedemptionReceipt(tx_hash=tx_hash, confirmed_by="call_count")
            return await self._await_inclusion(tx_hash, inner_hash, calls_before, send_error=e)

        logger.info("Submitted redemption %s from %s", tx_hash, self.account.address)
        return await self._await_inclusion(tx_hash, inner_hash, calls_before)

    async def _await_inclusion(
        self,
        tx_hash: str,
        inner_hash: str,
        calls_before: Optional[int],
        send_error: Optional[NetworkError] = None,
    ) -> RedemptionReceipt:
        try:
            receipt = await self.chain.wait_for_receipt(tx_hash, self.poller)
        except OnChainRevertError:
            raise
        except NetworkError as e:
            if await self._call_count_advanced(inner_hash, calls_before):
                logger.warning("Receipt unavailable for %s but call count advanced: %s", tx_hash, e)
                return RedemptionReceipt(tx_hash=tx_hash, confirmed_by="call_count")
            if send_error is not None:
                raise send_error from e
            raise
        return RedemptionReceipt(tx_hash=tx_hash, receipt=receipt)

    async def _call_count_advanced(self, delegation_hash: str, calls_before: Optional[int]) -> bool:
        if calls_before is None:
            return False
        calls_after = await self._call_count(delegation_hash)
        return calls_after is not None and calls_after > calls_before

    async def _call_count(self, delegation_hash: str) -> Optional[int]:
        try:
            return await self.chain.call_count(
                self.framework.limited_calls, self.framework.delegation_manager, delegation_hash
            )
        except NetworkError as e:
            logger.debug("Call count read failed: %s", e)
            return None

    async def _build_transaction(self, to: str, data: str) -> dict:
        sender = self.account.address
        nonce = await self.chain.get_transaction_count(sender)
        fees = await self.chain.fee_fields()
        gas = await self.chain.estimate_gas({"from": sender, "to": to, "data": data, "value": to_quantity(0)})
        return {
            "type": 2,
            "chainId": self.chain_id,
            "nonce": nonce,
            "to": to_checksum_address(to),
            "value": 0,
            "data": data,
            "gas": gas * (100 + GAS_ESTIMATE_MARGIN_PERCENT) // 100,
            "maxFeePerGas": fees["maxFeePerGas"],
            "maxPriorityFeePerGas": fees["maxPriorityFeePerGas"],
            "accessList": [],
        }
