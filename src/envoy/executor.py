"""
Autonomous redemption orchestrator.

A sub-agent redeems its stored delegation chain (sub-delegation, then
root) without prompting the user. Each attempt walks the same stages:

    validate -> load chain -> select caveat group -> build executions
    -> redeem -> interpret receipt -> update ledger

Local validation never touches the network. Ledger updates happen only
after a confirmed redemption. Every outcome is returned as an
ExecutionResult; nothing below validation raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address

from .audit import AuditTrail, EventType
from .cache import DEFAULT_QUOTE_CAPACITY, DEFAULT_QUOTE_TTL_SECONDS, TTLCache
from .config import (
    ERC20_APPROVE_SELECTOR,
    NATIVE_TOKEN_ADDRESS,
    WHITELISTED_SPENDERS,
    EnvoyConfig,
)
from .caveats import APPROVE_GROUP, TRADING_GROUP
from .delegation import SelectionContext, SignedDelegation
from .errors import (
    ConfigurationError,
    EnvoyError,
    NetworkError,
    OnChainRevertError,
    SignatureError,
    ValidationError,
)
from .keyring import AgentKeyring
from .redemption import DelegationRedeemer, Execution, RedemptionReceipt
from .retry import Poller
from .rpc import ChainClient, encode_call
from .state import AgentState, AgentStatus, TradeRecord, now_ms, token_key
from .store import DelegationStore
from .units import MAX_UINT256, format_ether, parse_ether

logger = logging.getLogger(__name__)

MIN_AGENT_GAS_BALANCE = parse_ether("0.01")
APPROVAL_SETTLE_SECONDS = 1.0


class RedemptionStage(str, Enum):
    VALIDATE = "validate"
    LOAD_CHAIN = "load_chain"
    SELECT_GROUP = "select_group"
    BUILD_EXECUTIONS = "build_executions"
    REDEEM = "redeem"
    INTERPRET_RECEIPT = "interpret_receipt"
    UPDATE_LEDGER = "update_ledger"


class FailureKind(str, Enum):
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NETWORK = "network"
    REVERT = "revert"
    SIGNATURE = "signature"
    UNKNOWN = "unknown"


@dataclass
class TradeInfo:
    """Trade metadata for the ledger. ``token_in`` debits are tracked off-chain."""

    action: str = "other"
    protocol: str = "other"
    details: dict[str, str] = field(default_factory=dict)
    token_in: Optional[str] = None
    amount_in: int = 0


@dataclass
class ExecutionOptions:
    skip_budget_tracking: bool = False
    skip_trade_logging: bool = False


@dataclass
class ExecutionResult:
    success: bool
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    stage: Optional[RedemptionStage] = None
    details: dict = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        error: str,
        kind: FailureKind,
        stage: RedemptionStage,
        tx_hash: Optional[str] = None,
    ) -> "ExecutionResult":
        return cls(success=False, error=error, failure_kind=kind, stage=stage, tx_hash=tx_hash)

    def to_dict(self) -> dict:
        d = {"success": self.success}
        for key in ("tx_hash", "explorer_url", "error"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        if self.failure_kind is not None:
            d["failure_kind"] = self.failure_kind.value
        if self.stage is not None:
            d["stage"] = self.stage.value
        if self.details:
            d["details"] = self.details
        return d


@dataclass(frozen=True)
class SwapQuote:
    """A priced route ready to execute against a whitelisted router."""

    quote_id: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    router: str
    call_data: str
    value: int = 0

    @property
    def is_native_in(self) -> bool:
        return self.token_in.lower() == NATIVE_TOKEN_ADDRESS.lower()


def quote_cache(
    capacity: int = DEFAULT_QUOTE_CAPACITY,
    ttl_seconds: float = DEFAULT_QUOTE_TTL_SECONDS,
) -> TTLCache[str, SwapQuote]:
    return TTLCache(capacity=capacity, ttl_seconds=ttl_seconds)


@dataclass
class SwapBatchResult:
    results: list[tuple[str, ExecutionResult]]

    @property
    def successful(self) -> int:
        return sum(1 for _, r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.successful

    def to_dict(self) -> dict:
        return {
            "results": [{"quote_id": q, **r.to_dict()} for q, r in self.results],
            "summary": {"total": len(self.results), "successful": self.successful, "failed": self.failed},
        }


class Redeemer(Protocol):
    async def redeem(
        self,
        delegation_chain: Sequence[SignedDelegation],
        executions: Sequence[Execution],
        selection: SelectionContext = ...,
    ) -> RedemptionReceipt: ...


def is_spender_whitelisted(spender: str) -> bool:
    candidate = spender.lower()
    return any(addr.lower() == candidate for addr in WHITELISTED_SPENDERS.values())


def select_caveat_group(call_data: str) -> SelectionContext:
    """approve() calls satisfy the approve group; everything else the trading group."""
    if call_data.lower().startswith(ERC20_APPROVE_SELECTOR):
        return SelectionContext(group_index=APPROVE_GROUP)
    return SelectionContext(group_index=TRADING_GROUP)


def validate_agent_for_execution(
    state: AgentState,
    execution: Execution,
    trade_info: TradeInfo,
    options: ExecutionOptions,
    now: Optional[int] = None,
) -> tuple[bool, str, Optional[AgentStatus]]:
    """
    Local pre-flight checks.

    Returns (ok, reason, status_transition). The transition is the
    terminal status the agent should move to, if any.
    """
    now = now_ms() if now is None else now
    if state.status != AgentStatus.RUNNING:
        return False, f"Agent not running (status: {state.status.value})", None
    if now > state.expires_at:
        return False, "Delegation expired", AgentStatus.FAILED
    if state.executed >= state.max_allowed:
        return False, "Max trades reached", AgentStatus.COMPLETED
    if options.skip_budget_tracking:
        return True, "ok", None

    if execution.value > 0:
        remaining = state.budget.remaining_for(NATIVE_TOKEN_ADDRESS)
        if remaining is not None and execution.value > remaining:
            return (
                False,
                f"Insufficient native budget. Allocated: {state.budget.allocated_for(NATIVE_TOKEN_ADDRESS)}, "
                f"Spent: {state.budget.spent_for(NATIVE_TOKEN_ADDRESS)}, Required: {execution.value}",
                None,
            )
    if trade_info.token_in and trade_info.amount_in > 0 and token_key(trade_info.token_in) != token_key(NATIVE_TOKEN_ADDRESS):
        remaining = state.budget.remaining_for(trade_info.token_in)
        if remaining is not None and trade_info.amount_in > remaining:
            return (
                False,
                f"Insufficient budget for token {trade_info.token_in}. Remaining: {remaining}, "
                f"Required: {trade_info.amount_in}",
                None,
            )
    return True, "ok", None


class AutonomousExecutor:
    """Redeems sub-agent delegation chains and keeps the agent ledger."""

    def __init__(
        self,
        config: EnvoyConfig,
        store: DelegationStore,
        keyring: AgentKeyring,
        chain: ChainClient,
        audit: Optional[AuditTrail] = None,
        quotes: Optional[TTLCache[str, SwapQuote]] = None,
        redeemer_factory: Optional[Callable[[LocalAccount], Redeemer]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.store = store
        self.keyring = keyring
        self.chain = chain
        self.audit = audit
        self.quotes = quotes
        self._redeemer_factory = redeemer_factory or self._default_redeemer
        self._sleep = sleep

    def _default_redeemer(self, account: LocalAccount) -> Redeemer:
        return DelegationRedeemer(
            chain=self.chain,
            account=account,
            chain_id=self.config.chain_id,
            framework=self.config.framework,
            poller=Poller(
                interval=self.config.receipt_poll_interval_seconds,
                max_duration=self.config.receipt_timeout_seconds,
            ),
        )

    def _log(self, event_type: EventType, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **kwargs)

    async def execute(
        self,
        agent_id: str,
        execution: Execution,
        trade_info: Optional[TradeInfo] = None,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """Redeem one execution through the agent's delegation chain."""
        trade_info = trade_info or TradeInfo()
        options = options or ExecutionOptions()

        # Validate
        state = self.store.load_agent_state(agent_id)
        if state is None:
            return ExecutionResult.failure(
                f"Agent not found: {agent_id}", FailureKind.VALIDATION, RedemptionStage.VALIDATE
            )
        ok, reason, transition = validate_agent_for_execution(state, execution, trade_info, options)
        if not ok:
            if transition is not None:
                self.store.set_status(agent_id, transition)
            self._log(
                EventType.VALIDATION_DENIED,
                agent_id=agent_id,
                amount_wei=execution.value,
                target=execution.target,
                success=False,
                reason=reason,
            )
            return ExecutionResult.failure(reason, FailureKind.VALIDATION, RedemptionStage.VALIDATE)

        # Load chain
        stored = self.store.load_delegation(agent_id)
        if stored is None or stored.root_delegation is None:
            return ExecutionResult.failure(
                "Missing delegation chain in storage", FailureKind.CONFIGURATION, RedemptionStage.LOAD_CHAIN
            )
        chain = stored.chain()
        try:
            account = self.keyring.load_account(state.wallet_id)
        except ConfigurationError as e:
            return ExecutionResult.failure(str(e), FailureKind.CONFIGURATION, RedemptionStage.LOAD_CHAIN)

        # Select caveat group
        selection = select_caveat_group(execution.call_data)

        self._log(
            EventType.REDEMPTION_ATTEMPTED,
            agent_id=agent_id,
            delegation_hash=stored.delegation_hash,
            delegate=account.address,
            amount_wei=execution.value,
            target=execution.target,
            details={"group": selection.group_index, "action": trade_info.action},
        )

        stage = RedemptionStage.BUILD_EXECUTIONS
        try:
            balance = await self.chain.get_balance(account.address)
            if balance < MIN_AGENT_GAS_BALANCE:
                return ExecutionResult.failure(
                    f"Sub-agent wallet needs gas. Balance: {format_ether(balance)}",
                    FailureKind.VALIDATION,
                    stage,
                )

            stage = RedemptionStage.REDEEM
            redeemer = self._redeemer_factory(account)
            receipt = await redeemer.redeem(chain, [execution], selection)
        except OnChainRevertError as e:
            self.store.add_error(agent_id, str(e), recoverable=True)
            self._log(
                EventType.REDEMPTION_FAILED,
                agent_id=agent_id,
                delegation_hash=stored.delegation_hash,
                target=execution.target,
                success=False,
                reason=str(e),
                details={"tx_hash": e.tx_hash},
            )
            return ExecutionResult.failure(
                str(e), FailureKind.REVERT, RedemptionStage.INTERPRET_RECEIPT, tx_hash=e.tx_hash
            )
        except EnvoyError as e:
            kind = _failure_kind(e)
            self.store.add_error(agent_id, str(e), recoverable=kind != FailureKind.CONFIGURATION)
            self._log(
                EventType.REDEMPTION_FAILED,
                agent_id=agent_id,
                target=execution.target,
                success=False,
                reason=str(e),
            )
            return ExecutionResult.failure(str(e), kind, stage)
        except Exception as e:
            logger.exception("Redemption for agent %s failed unexpectedly", agent_id)
            self.store.add_error(agent_id, f"{type(e).__name__}: {e}", recoverable=True)
            return ExecutionResult.failure(f"{type(e).__name__}: {e}", FailureKind.UNKNOWN, stage)

        # Update ledger
        if not options.skip_trade_logging:
            self.store.append_trade(
                agent_id,
                TradeRecord(
                    action=trade_info.action,
                    protocol=trade_info.protocol,
                    tx_hash=receipt.tx_hash,
                    details=dict(trade_info.details),
                ),
            )
        if not options.skip_budget_tracking:
            if execution.value > 0:
                self.store.debit_token_spent(agent_id, NATIVE_TOKEN_ADDRESS, execution.value)
            if trade_info.token_in and trade_info.amount_in > 0 and token_key(trade_info.token_in) != token_key(NATIVE_TOKEN_ADDRESS):
                self.store.debit_token_spent(agent_id, trade_info.token_in, trade_info.amount_in)

        self._log(
            EventType.REDEMPTION_COMPLETED,
            agent_id=agent_id,
            delegation_hash=stored.delegation_hash,
            amount_wei=execution.value,
            target=execution.target,
            details={"tx_hash": receipt.tx_hash, "confirmed_by": receipt.confirmed_by},
        )
        logger.info("Agent %s redeemed %s", agent_id, receipt.tx_hash)
        return ExecutionResult(
            success=True,
            tx_hash=receipt.tx_hash,
            explorer_url=self.config.explorer_tx_url(receipt.tx_hash),
            stage=RedemptionStage.UPDATE_LEDGER,
        )

    async def execute_approval(self, agent_id: str, token: str, spender: str) -> ExecutionResult:
        """Unlimited approve() of a whitelisted spender; not counted as a trade."""
        if not is_spender_whitelisted(spender):
            whitelisted = ", ".join(f"{k}: {v}" for k, v in WHITELISTED_SPENDERS.items())
            return ExecutionResult.failure(
                f"Spender {spender} is not whitelisted for autonomous approvals. Whitelisted: {whitelisted}",
                FailureKind.VALIDATION,
                RedemptionStage.VALIDATE,
            )
        call_data = encode_call(
            "approve(address,uint256)", ["address", "uint256"], [to_checksum_address(spender), MAX_UINT256]
        )
        result = await self.execute(
            agent_id,
            Execution(target=to_checksum_address(token), value=0, call_data=call_data),
            TradeInfo(details={"operation": "approve", "token": token, "spender": spender}),
            ExecutionOptions(skip_budget_tracking=True, skip_trade_logging=True),
        )
        if result.success:
            self._log(EventType.APPROVAL_EXECUTED, agent_id=agent_id, target=token, details={"spender": spender})
        return result

    async def execute_with_approval_if_needed(
        self,
        agent_id: str,
        token: str,
        spender: str,
        required_amount: int,
        execution: Execution,
        trade_info: Optional[TradeInfo] = None,
    ) -> ExecutionResult:
        """Approve ``spender`` first when the delegator's allowance is short."""
        if token.lower() == NATIVE_TOKEN_ADDRESS.lower():
            return await self.execute(agent_id, execution, trade_info)
        if not is_spender_whitelisted(spender):
            return ExecutionResult.failure(
                f"Spender {spender} is not whitelisted for autonomous approvals.",
                FailureKind.VALIDATION,
                RedemptionStage.VALIDATE,
            )
        stored = self.store.load_delegation(agent_id)
        if stored is None or stored.root_delegation is None:
            return ExecutionResult.failure(
                "Missing delegation chain in storage", FailureKind.CONFIGURATION, RedemptionStage.LOAD_CHAIN
            )
        owner = stored.root_delegation.delegator

        try:
            allowance = await self.chain.allowance(token, owner, spender)
        except NetworkError as e:
            logger.warning("Allowance read failed for %s, assuming none: %s", token, e)
            allowance = 0

        if allowance < required_amount:
            approval = await self.execute_approval(agent_id, token, spender)
            if not approval.success:
                return ExecutionResult.failure(
                    f"Approval failed: {approval.error}",
                    approval.failure_kind or FailureKind.UNKNOWN,
                    approval.stage or RedemptionStage.REDEEM,
                    tx_hash=approval.tx_hash,
                )
            await self._sleep(APPROVAL_SETTLE_SECONDS)

        return await self.execute(agent_id, execution, trade_info)

    # Wrappers

    async def execute_transfer(self, agent_id: str, token: str, recipient: str, amount: int) -> ExecutionResult:
        if amount <= 0:
            return ExecutionResult.failure("Amount must be positive", FailureKind.VALIDATION, RedemptionStage.VALIDATE)
        recipient = to_checksum_address(recipient)
        is_native = token.lower() == NATIVE_TOKEN_ADDRESS.lower()
        if is_native:
            execution = Execution(target=recipient, value=amount)
        else:
            execution = Execution(
                target=to_checksum_address(token),
                call_data=encode_call("transfer(address,uint256)", ["address", "uint256"], [recipient, amount]),
            )
        info = TradeInfo(
            details={"operation": "transfer", "token": token, "recipient": recipient, "amount": str(amount)},
            token_in=None if is_native else token,
            amount_in=0 if is_native else amount,
        )
        return await self.execute(agent_id, execution, info)

    async def execute_wrap(self, agent_id: str, amount: int) -> ExecutionResult:
        execution = Execution(
            target=self.config.chain.wrapped_native,
            value=amount,
            call_data=encode_call("deposit()", [], []),
        )
        return await self.execute(agent_id, execution, TradeInfo(details={"operation": "wrap", "amount": str(amount)}))

    async def execute_unwrap(self, agent_id: str, amount: int) -> ExecutionResult:
        execution = Execution(
            target=self.config.chain.wrapped_native,
            call_data=encode_call("withdraw(uint256)", ["uint256"], [amount]),
        )
        return await self.execute(agent_id, execution, TradeInfo(details={"operation": "unwrap", "amount": str(amount)}))

    async def execute_swap(self, agent_id: str, quote_ids: Sequence[str]) -> SwapBatchResult:
        """Execute cached quotes in order. Each quote is consumed on success."""
        if self.quotes is None:
            raise ConfigurationError("No quote cache configured")
        results: list[tuple[str, ExecutionResult]] = []
        for quote_id in quote_ids:
            quote = self.quotes.get(quote_id)
            if quote is None:
                results.append(
                    (
                        quote_id,
                        ExecutionResult.failure(
                            "Quote not found or expired", FailureKind.VALIDATION, RedemptionStage.VALIDATE
                        ),
                    )
                )
                continue
            execution = Execution(target=quote.router, value=quote.value, call_data=quote.call_data)
            info = TradeInfo(
                action="swap",
                protocol="dex",
                details={
                    "tokenIn": quote.token_in,
                    "tokenOut": quote.token_out,
                    "amountIn": str(quote.amount_in),
                    "amountOut": str(quote.amount_out),
                },
                token_in=None if quote.is_native_in else quote.token_in,
                amount_in=0 if quote.is_native_in else quote.amount_in,
            )
            result = await self.execute_with_approval_if_needed(
                agent_id, quote.token_in, quote.router, quote.amount_in, execution, info
            )
            if result.success:
                self.quotes.pop(quote_id)
            results.append((quote_id, result))
        return SwapBatchResult(results=results)


def _failure_kind(error: EnvoyError) -> FailureKind:
    if isinstance(error, ValidationError):
        return FailureKind.VALIDATION
    if isinstance(error, ConfigurationError):
        return FailureKind.CONFIGURATION
    if isinstance(error, SignatureError):
        return FailureKind.SIGNATURE
    if isinstance(error, NetworkError):
        return FailureKind.NETWORK
    return FailureKind.UNKNOWN
