"""
ERC-4337 v0.7 user operations: building, gas floors, sponsorship.

Two paths are supported:

- sponsor-paid (account deployment): draft with zeroed gas, ask the
  paymaster to sponsor, fill missing gas from the bundler estimator,
  clamp to floors, and re-sponsor only if the gas fields no longer
  match what the paymaster signed over;
- self-paid (session key funding): estimate, clamp, sign, submit.

Once sponsorship is final, only the signature may change.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Mapping, Optional

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_checksum_address, to_hex

from .audit import AuditTrail, EventType
from .errors import BundlerError, NetworkError, ValidationError
from .redemption import may_have_been_accepted
from .retry import Poller, PollTimeout
from .rpc import ChainClient, JsonRpcClient, encode_call
from .signer import SignatureBroker
from .units import from_quantity, parse_ether, to_quantity

logger = logging.getLogger(__name__)

MIN_SESSION_KEY_BALANCE = parse_ether("0.04")
SESSION_KEY_FUNDING_AMOUNT = parse_ether("0.5")

GAS_FIELDS = ("call_gas_limit", "verification_gas_limit", "pre_verification_gas")


@dataclass(frozen=True)
class GasFloors:
    """Minimum gas values; passkey signature verification is expensive."""

    call_gas_limit: int = 100_000
    verification_gas_limit: int = 500_000
    pre_verification_gas: int = 200_000


DEPLOYMENT_FLOORS = GasFloors()
FUNDING_FLOORS = GasFloors(pre_verification_gas=400_000)


class OperationStage(str, Enum):
    DRAFT = "draft"
    SPONSORED = "sponsored"
    GAS_ADJUSTED = "gas_adjusted"
    RESPONSORED = "responsored"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    INCLUDED = "included"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class UserOperation:
    sender: str
    nonce: int
    call_data: str = "0x"
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    signature: str = "0x"
    factory: Optional[str] = None
    factory_data: Optional[str] = None
    paymaster: Optional[str] = None
    paymaster_data: Optional[str] = None
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0

    def gas(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in GAS_FIELDS}

    def to_rpc(self) -> dict:
        """Unpacked v0.7 JSON-RPC form with hex quantities."""
        op: dict[str, Any] = {
            "sender": self.sender,
            "nonce": to_quantity(self.nonce),
            "callData": self.call_data,
            "callGasLimit": to_quantity(self.call_gas_limit),
            "verificationGasLimit": to_quantity(self.verification_gas_limit),
            "preVerificationGas": to_quantity(self.pre_verification_gas),
            "maxFeePerGas": to_quantity(self.max_fee_per_gas),
            "maxPriorityFeePerGas": to_quantity(self.max_priority_fee_per_gas),
            "signature": self.signature,
        }
        if self.factory:
            op["factory"] = self.factory
            op["factoryData"] = self.factory_data or "0x"
        if self.paymaster:
            op["paymaster"] = self.paymaster
            op["paymasterData"] = self.paymaster_data or "0x"
            op["paymasterVerificationGasLimit"] = to_quantity(self.paymaster_verification_gas_limit)
            op["paymasterPostOpGasLimit"] = to_quantity(self.paymaster_post_op_gas_limit)
        return op

    def without_paymaster(self) -> "UserOperation":
        return replace(
            self,
            paymaster=None,
            paymaster_data=None,
            paymaster_verification_gas_limit=0,
            paymaster_post_op_gas_limit=0,
            signature="0x",
        )

    def init_code(self) -> bytes:
        if not self.factory:
            return b""
        return bytes.fromhex(self.factory[2:]) + _hex_bytes(self.factory_data)

    def paymaster_and_data(self) -> bytes:
        if not self.paymaster:
            return b""
        return (
            bytes.fromhex(self.paymaster[2:])
            + self.paymaster_verification_gas_limit.to_bytes(16, "big")
            + self.paymaster_post_op_gas_limit.to_bytes(16, "big")
            + _hex_bytes(self.paymaster_data)
        )

    def hash(self, entry_point: str, chain_id: int) -> bytes:
        """EntryPoint v0.7 userOpHash."""
        account_gas_limits = (self.verification_gas_limit << 128 | self.call_gas_limit).to_bytes(32, "big")
        gas_fees = (self.max_priority_fee_per_gas << 128 | self.max_fee_per_gas).to_bytes(32, "big")
        packed = abi_encode(
            ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
            [
                to_checksum_address(self.sender),
                self.nonce,
                keccak(self.init_code()),
                keccak(_hex_bytes(self.call_data)),
                account_gas_limits,
                self.pre_verification_gas,
                gas_fees,
                keccak(self.paymaster_and_data()),
            ],
        )
        return keccak(
            abi_encode(["bytes32", "address", "uint256"], [keccak(packed), to_checksum_address(entry_point), chain_id])
        )


def apply_gas_floor(value: int, floor: int) -> int:
    return value if value >= floor else floor


def apply_gas_floors(op: UserOperation, floors: GasFloors) -> UserOperation:
    """Clamp every gas field up to its floor. Idempotent."""
    return replace(op, **{name: apply_gas_floor(getattr(op, name), getattr(floors, name)) for name in GAS_FIELDS})


def merge_gas(op: UserOperation, estimates: Mapping[str, Optional[int]]) -> UserOperation:
    """Take positive estimates; keep existing values otherwise."""
    updates = {name: value for name, value in estimates.items() if name in GAS_FIELDS and value and value > 0}
    return replace(op, **updates) if updates else op


@dataclass(frozen=True)
class Sponsorship:
    """Paymaster response normalized to split paymaster/paymasterData form."""

    paymaster: str
    paymaster_data: str = "0x"
    call_gas_limit: Optional[int] = None
    verification_gas_limit: Optional[int] = None
    pre_verification_gas: Optional[int] = None
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0

    @classmethod
    def from_rpc(cls, result: Optional[Mapping[str, Any]]) -> "Sponsorship":
        if not result:
            raise BundlerError("Paymaster did not return a result")
        paymaster = result.get("paymaster")
        data = result.get("paymasterData")
        combined = result.get("paymasterAndData")
        if not paymaster and combined and combined != "0x":
            # Combined form: first 20 bytes are the paymaster address.
            if len(combined) < 42:
                raise BundlerError("Malformed paymasterAndData")
            paymaster, data = combined[:42], "0x" + combined[42:]
        if not paymaster:
            raise BundlerError("Paymaster response missing paymaster fields")
        return cls(
            paymaster=to_checksum_address(paymaster),
            paymaster_data=data or "0x",
            call_gas_limit=_positive(result.get("callGasLimit")),
            verification_gas_limit=_positive(result.get("verificationGasLimit")),
            pre_verification_gas=_positive(result.get("preVerificationGas")),
            paymaster_verification_gas_limit=from_quantity(result.get("paymasterVerificationGasLimit")),
            paymaster_post_op_gas_limit=from_quantity(result.get("paymasterPostOpGasLimit")),
        )

    def apply(self, op: UserOperation) -> UserOperation:
        op = merge_gas(
            op,
            {
                "call_gas_limit": self.call_gas_limit,
                "verification_gas_limit": self.verification_gas_limit,
                "pre_verification_gas": self.pre_verification_gas,
            },
        )
        return replace(
            op,
            paymaster=self.paymaster,
            paymaster_data=self.paymaster_data,
            paymaster_verification_gas_limit=self.paymaster_verification_gas_limit,
            paymaster_post_op_gas_limit=self.paymaster_post_op_gas_limit,
        )


class BundlerClient(JsonRpcClient):
    """Bundler and paymaster JSON-RPC methods."""

    async def gas_price(self) -> tuple[int, int]:
        """(maxFeePerGas, maxPriorityFeePerGas) from the fast tier, else standard."""
        result = await self.request("pimlico_getUserOperationGasPrice") or {}
        prices = result.get("fast") or result.get("standard")
        if not prices:
            raise BundlerError("No gas price data returned")
        return from_quantity(prices["maxFeePerGas"]), from_quantity(prices["maxPriorityFeePerGas"])

    async def estimate_user_operation_gas(self, op: UserOperation, entry_point: str) -> dict[str, Optional[int]]:
        result = await self.request("eth_estimateUserOperationGas", [op.to_rpc(), entry_point]) or {}
        return {
            "call_gas_limit": _positive(result.get("callGasLimit")),
            "verification_gas_limit": _positive(result.get("verificationGasLimit") or result.get("verificationGas")),
            "pre_verification_gas": _positive(result.get("preVerificationGas")),
        }

    async def sponsor_user_operation(self, op: UserOperation, entry_point: str) -> Sponsorship:
        request = op.without_paymaster().to_rpc()
        return Sponsorship.from_rpc(await self.request("pm_sponsorUserOperation", [request, entry_point]))

    async def send_user_operation(self, op: UserOperation, entry_point: str) -> str:
        result = await self.request("eth_sendUserOperation", [op.to_rpc(), entry_point])
        if not result:
            raise BundlerError("No userOpHash returned")
        return result

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[dict]:
        return await self.request("eth_getUserOperationReceipt", [user_op_hash])

    async def wait_for_user_operation_receipt(self, user_op_hash: str, poller: Optional[Poller] = None) -> dict:
        poller = poller or Poller()
        return await poller.poll(
            lambda: self.get_user_operation_receipt(user_op_hash), label=f"user operation {user_op_hash}"
        )


@dataclass(frozen=True)
class SmartAccountRef:
    """The account a user operation is sent from."""

    address: str
    factory: Optional[str] = None
    factory_data: Optional[str] = None


@dataclass
class UserOperationResult:
    success: bool
    user_op_hash: Optional[str] = None
    transaction_hash: Optional[str] = None
    already_deployed: bool = False
    error: Optional[str] = None
    stages: list[OperationStage] = field(default_factory=list)
    user_operation: Optional[UserOperation] = None
    sponsorship_requests: int = 0
    balance_before: Optional[int] = None
    balance_after: Optional[int] = None

    @property
    def balance_delta(self) -> Optional[int]:
        if self.balance_before is None or self.balance_after is None:
            return None
        return self.balance_after - self.balance_before


@dataclass
class UserOperationBuilder:
    """Builds, sponsors, signs and submits user operations."""

    bundler: BundlerClient
    chain: ChainClient
    signer: SignatureBroker
    entry_point: str
    chain_id: int
    poller: Poller = field(default_factory=Poller)
    audit: Optional[AuditTrail] = None

    async def account_nonce(self, sender: str) -> int:
        return await self.chain.call_uint(
            self.entry_point, "getNonce(address,uint192)", ["address", "uint192"], [to_checksum_address(sender), 0]
        )

    async def deploy_smart_account(
        self,
        account: SmartAccountRef,
        floors: GasFloors = DEPLOYMENT_FLOORS,
    ) -> UserOperationResult:
        """Deploy ``account`` with a paymaster-sponsored, call-less user operation."""
        if await self.chain.is_deployed(account.address):
            return UserOperationResult(success=True, already_deployed=True)
        if not account.factory:
            raise ValidationError("Factory address is required to deploy a smart account")

        stages = [OperationStage.DRAFT]
        nonce = await self.account_nonce(account.address)
        max_fee, priority_fee = await self.bundler.gas_price()
        op = UserOperation(
            sender=to_checksum_address(account.address),
            nonce=nonce,
            factory=to_checksum_address(account.factory),
            factory_data=account.factory_data or "0x",
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority_fee,
        )

        sponsorship = await self.bundler.sponsor_user_operation(op, self.entry_point)
        sponsorship_requests = 1
        op = sponsorship.apply(op)
        sponsored_gas = op.gas()
        stages.append(OperationStage.SPONSORED)

        if op.call_gas_limit == 0 or op.verification_gas_limit == 0 or op.pre_verification_gas == 0:
            try:
                estimates = await self.bundler.estimate_user_operation_gas(replace(op, signature="0x"), self.entry_point)
                op = merge_gas(op, estimates)
            except NetworkError as e:
                logger.warning("Bundler gas estimation failed, relying on floors: %s", e)
        op = apply_gas_floors(op, floors)

        if op.gas() != sponsored_gas:
            stages.append(OperationStage.GAS_ADJUSTED)
            sponsorship = await self.bundler.sponsor_user_operation(op, self.entry_point)
            sponsorship_requests += 1
            op = sponsorship.apply(op)
            stages.append(OperationStage.RESPONSORED)

        return await self._sign_and_submit(
            op,
            stages,
            label="Deploy smart account",
            sponsorship_requests=sponsorship_requests,
            confirm=lambda: self.chain.is_deployed(account.address),
        )

    async def fund_session_key(
        self,
        account: SmartAccountRef,
        session_key: str,
        amount: int = SESSION_KEY_FUNDING_AMOUNT,
        floors: GasFloors = FUNDING_FLOORS,
    ) -> UserOperationResult:
        """Self-paid transfer of ``amount`` from the smart account to the session key."""
        if amount <= 0:
            raise ValidationError("Funding amount must be positive")
        session_key = to_checksum_address(session_key)
        balance_before = await self.chain.get_balance(session_key)
        call_data = encode_call("execute((address,uint256,bytes))", ["(address,uint256,bytes)"], [(session_key, amount, b"")])
        nonce = await self.account_nonce(account.address)
        max_fee, priority_fee = await self.bundler.gas_price()
        op = UserOperation(
            sender=to_checksum_address(account.address),
            nonce=nonce,
            call_data=call_data,
            call_gas_limit=floors.call_gas_limit,
            verification_gas_limit=floors.verification_gas_limit,
            pre_verification_gas=floors.pre_verification_gas,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority_fee,
        )
        stages = [OperationStage.DRAFT]
        try:
            op = merge_gas(op, await self.bundler.estimate_user_operation_gas(op, self.entry_point))
        except NetworkError as e:
            logger.warning("Gas estimation failed, using floors: %s", e)
        op = apply_gas_floors(op, floors)
        stages.append(OperationStage.GAS_ADJUSTED)

        async def funded() -> bool:
            return await self.chain.get_balance(session_key) > balance_before

        result = await self._sign_and_submit(op, stages, label="Fund session key", confirm=funded)
        result.balance_before = balance_before
        if result.success:
            result.balance_after = await self.chain.get_balance(session_key)
        return result

    async def _sign_and_submit(
        self,
        op: UserOperation,
        stages: list[OperationStage],
        label: str,
        confirm,
        sponsorship_requests: int = 0,
    ) -> UserOperationResult:
        digest = op.hash(self.entry_point, self.chain_id)
        op = replace(op, signature=await self.signer.sign_digest(digest, label))
        stages.append(OperationStage.SIGNED)

        send_error: Optional[NetworkError] = None
        try:
            user_op_hash = await self.bundler.send_user_operation(op, self.entry_point)
        except NetworkError as e:
            if not may_have_been_accepted(e):
                raise
            send_error = e
            user_op_hash = to_hex(digest)
            logger.warning("Sending user operation %s failed, checking whether it landed: %s", user_op_hash, e)
        else:
            stages.append(OperationStage.SUBMITTED)
            self._log(EventType.USER_OPERATION_SUBMITTED, op, details={"user_op_hash": user_op_hash, "label": label})

        result = UserOperationResult(
            success=False,
            user_op_hash=user_op_hash,
            stages=stages,
            user_operation=op,
            sponsorship_requests=sponsorship_requests,
        )
        if send_error is not None and await confirm():
            return self._confirmed_without_receipt(result, op)
        try:
            receipt = await self.bundler.wait_for_user_operation_receipt(user_op_hash, self.poller)
        except (PollTimeout, NetworkError) as e:
            stages.append(OperationStage.TIMED_OUT)
            if await confirm():
                return self._confirmed_without_receipt(result, op)
            if send_error is not None:
                self._log(EventType.USER_OPERATION_FAILED, op, success=False, reason=str(send_error))
                raise send_error from e
            result.error = str(e)
            self._log(EventType.USER_OPERATION_FAILED, op, success=False, reason=str(e))
            return result

        stages.append(OperationStage.INCLUDED)
        result.success = True
        result.transaction_hash = (receipt.get("receipt") or {}).get("transactionHash") or receipt.get("transactionHash")
        self._log(
            EventType.USER_OPERATION_INCLUDED,
            op,
            details={"user_op_hash": user_op_hash, "tx_hash": result.transaction_hash},
        )
        return result

    def _confirmed_without_receipt(self, result: UserOperationResult, op: UserOperation) -> UserOperationResult:
        logger.info("User operation %s not observed but side effect confirmed", result.user_op_hash)
        result.success = True
        self._log(EventType.USER_OPERATION_INCLUDED, op, details={"user_op_hash": result.user_op_hash})
        return result

    def _log(self, event_type: EventType, op: UserOperation, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log(event_type, delegator=op.sender, **kwargs)


async def needs_funding(chain: ChainClient, session_key: str, minimum: int = MIN_SESSION_KEY_BALANCE) -> bool:
    return await chain.get_balance(session_key) < minimum


def _positive(value: Any) -> Optional[int]:
    if value in (None, "", "0x"):
        return None
    try:
        parsed = from_quantity(value)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _hex_bytes(value: Optional[str]) -> bytes:
    if not value or value == "0x":
        return b""
    return bytes.fromhex(value[2:])
