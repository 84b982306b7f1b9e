"""
Sub-agent lifecycle: root delegation setup, spawn, status, revoke.

The root delegation is signed once by the user (through a signature
broker). Sub-agents are then spawned without prompting: the session
key redelegates a narrower scope to a freshly generated agent wallet.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Sequence

from .audit import AuditTrail, EventType
from .config import ChainProfile, EnvoyConfig
from .delegation import DelegationFactory, DelegationKind
from .errors import StoreError, ValidationError
from .keyring import AgentKeyring
from .nonce import NonceRevocationTracker
from .rpc import ChainClient
from .signer import SignatureBroker, sign_delegation
from .state import AgentArchetype, AgentState, AgentStatus, StoredDelegation
from .store import DelegationStore

logger = logging.getLogger(__name__)

PERPS_SELECTORS = (
    "0x8739e924",  # openMarketTrade
    "0x6e25e216",  # openMarketTradeBtc
    "0xe1379570",  # closeTrade
    "0x2f745df6",  # updateTpSl
    "0xf22b4898",  # addMargin
    "0x56189236",  # cancelPendingOrder
)
LAUNCHPAD_SELECTORS = ("0x0f5b0d09", "0xd4e19b4b", "0x8b159e6e")
WRAPPED_NATIVE_SELECTORS = ("0xd0e30db0", "0x2e1a7d4d")
DEX_SELECTORS = ("0x087c2af4",)


@dataclass(frozen=True)
class ArchetypeScope:
    targets: tuple[str, ...]
    selectors: tuple[str, ...]


def archetype_scope(archetype: AgentArchetype, chain: ChainProfile) -> ArchetypeScope:
    """Targets and method selectors a sub-agent of ``archetype`` may call."""
    match archetype:
        case AgentArchetype.PERPS:
            return ArchetypeScope(targets=(chain.perps_venue,), selectors=PERPS_SELECTORS)
        case AgentArchetype.MOMENTUM:
            targets = [chain.dex_router, chain.wrapped_native]
            selectors = list(DEX_SELECTORS + WRAPPED_NATIVE_SELECTORS)
            if chain.launchpad_router:
                targets.insert(0, chain.launchpad_router)
                selectors = list(LAUNCHPAD_SELECTORS) + selectors
            return ArchetypeScope(targets=tuple(targets), selectors=tuple(selectors))
        case AgentArchetype.GENERAL:
            return ArchetypeScope(
                targets=tuple(chain.trading_targets()),
                selectors=PERPS_SELECTORS + LAUNCHPAD_SELECTORS + WRAPPED_NATIVE_SELECTORS + DEX_SELECTORS,
            )


def new_agent_id(archetype: AgentArchetype) -> str:
    return f"{archetype.value}-{secrets.token_hex(6)}"


@dataclass
class SpawnResult:
    agent_id: str
    wallet_address: str
    delegation: StoredDelegation
    state: AgentState

    def to_dict(self) -> dict:
        return {
            "agentId": self.agent_id,
            "walletAddress": self.wallet_address,
            "delegationHash": self.delegation.delegation_hash,
            "expiresAt": self.delegation.expires_at,
            "maxCalls": self.delegation.max_calls,
            "approximateBudget": str(self.delegation.approximate_budget),
        }


class AgentManager:
    """Creates, inspects and revokes sub-agents under the stored root."""

    def __init__(
        self,
        config: EnvoyConfig,
        store: DelegationStore,
        keyring: AgentKeyring,
        audit: Optional[AuditTrail] = None,
        chain: Optional[ChainClient] = None,
    ):
        self.config = config
        self.store = store
        self.keyring = keyring
        self.audit = audit
        self.chain = chain
        self.factory = DelegationFactory(framework=config.framework)

    def _log(self, event_type: EventType, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **kwargs)

    async def create_root_delegation(
        self,
        user: SignatureBroker,
        session_key: str,
        expiry_days: int,
        value_lte_per_tx: int,
        max_calls: int,
        allowed_targets: Optional[Sequence[str]] = None,
    ) -> StoredDelegation:
        """Have the user sign a root delegation to ``session_key`` and store it."""
        draft = self.factory.root(
            delegator=user.address,
            session_key=session_key,
            allowed_targets=allowed_targets or self.config.chain.trading_targets(),
            expiry_days=expiry_days,
            value_lte_per_tx=value_lte_per_tx,
            max_calls=max_calls,
        )
        signed = await sign_delegation(
            user,
            draft.delegation,
            DelegationKind.ROOT,
            self.config.chain_id,
            self.config.framework.delegation_manager,
        )
        stored = StoredDelegation.from_draft(draft, signed, self.config.chain_id)
        self.store.save_root_delegation(stored)
        self._log(
            EventType.ROOT_DELEGATION_CREATED,
            delegation_hash=stored.delegation_hash,
            delegator=stored.delegator,
            delegate=stored.delegate,
            amount_wei=stored.approximate_budget,
            details={"expiresAt": stored.expires_at, "maxCalls": stored.max_calls},
        )
        return stored

    def revoke_root_delegation(self) -> bool:
        stored = self.store.load_root_delegation()
        removed = self.store.revoke_root_delegation()
        if removed and stored is not None:
            self._log(
                EventType.ROOT_DELEGATION_REVOKED,
                delegation_hash=stored.delegation_hash,
                delegator=stored.delegator,
            )
        return removed

    async def spawn_sub_agent(
        self,
        session_key: SignatureBroker,
        archetype: AgentArchetype,
        expiry_days: int,
        value_lte_per_tx: int,
        max_calls: int,
        token_limits: Optional[dict[str, int]] = None,
        agent_id: Optional[str] = None,
        revocable: bool = False,
    ) -> SpawnResult:
        """
        Spawn a sub-agent holding a redelegation of the root.

        The session key signs the sub-delegation; the user is not
        prompted. The agent's trade limit equals ``max_calls`` and its
        native budget equals the sub-delegation's approximate budget.
        A ``revocable`` sub-delegation pins the session key's current
        on-chain nonce, so a nonce bump invalidates it.
        """
        root = self.store.load_root_delegation()
        if root is None:
            raise StoreError("No root delegation found. Create one first.")
        if root.is_expired:
            raise ValidationError("Root delegation has expired")
        if root.delegate.lower() != session_key.address.lower():
            raise ValidationError("Session key is not the root delegation's delegate")

        agent_id = agent_id or new_agent_id(archetype)
        if self.store.load_agent_state(agent_id) is not None:
            raise StoreError(f"Agent {agent_id} already exists")
        nonce = None
        if revocable:
            if self.chain is None:
                raise ValidationError("A revocable sub-agent needs a chain client")
            tracker = NonceRevocationTracker(chain=self.chain, framework=self.config.framework)
            nonce = await tracker.current_nonce(session_key.address)
        scope = archetype_scope(archetype, self.config.chain)
        wallet_id, wallet_address = self.keyring.create_wallet()
        try:
            draft = self.factory.sub(
                parent=root.signed_delegation,
                delegator=session_key.address,
                delegate=wallet_address,
                allowed_targets=scope.targets,
                expiry_days=expiry_days,
                value_lte_per_tx=value_lte_per_tx,
                max_calls=max_calls,
                allowed_selectors=scope.selectors,
                nonce=nonce,
            )
            signed = await sign_delegation(
                session_key,
                draft.delegation,
                DelegationKind.SUB,
                self.config.chain_id,
                self.config.framework.delegation_manager,
            )
        except Exception:
            self.keyring.delete_wallet(wallet_id)
            raise

        stored = StoredDelegation.from_draft(draft, signed, self.config.chain_id, root=root)
        state = self.store.create_agent_state(
            agent_id=agent_id,
            wallet_id=wallet_id,
            wallet_address=wallet_address,
            archetype=archetype,
            max_trades=max_calls,
            expires_at=stored.expires_at,
            native_allocated=stored.approximate_budget,
            token_limits=token_limits,
        )
        self.store.store_delegation(agent_id, stored)
        self._log(
            EventType.SUB_DELEGATION_CREATED,
            agent_id=agent_id,
            delegation_hash=stored.delegation_hash,
            delegator=stored.delegator,
            delegate=stored.delegate,
            amount_wei=stored.approximate_budget,
            details={"parent": root.delegation_hash},
        )
        self._log(EventType.AGENT_SPAWNED, agent_id=agent_id, delegate=wallet_address)
        logger.info("Spawned %s agent %s at %s", archetype.value, agent_id, wallet_address)
        return SpawnResult(agent_id=agent_id, wallet_address=wallet_address, delegation=stored, state=state)

    def revoke_sub_agent(self, agent_id: str, reason: str = "revoked by user") -> AgentState:
        """
        Stop an agent locally.

        The sub-delegation itself remains valid on-chain until it expires
        or its call limit is reached.
        """
        state = self.store.set_status(agent_id, AgentStatus.REVOKED)
        self._log(EventType.AGENT_REVOKED, agent_id=agent_id, reason=reason)
        return state

    async def delegation_status(self, agent_id: str) -> dict:
        state = self.store.require_agent_state(agent_id)
        stored = self.store.load_delegation(agent_id)
        status = {
            "agentId": agent_id,
            "status": state.status.value,
            "executed": state.executed,
            "maxAllowed": state.max_allowed,
            "remaining": state.trades_remaining,
            "expiresAt": state.expires_at,
            "expired": state.is_expired,
            "delegationHash": stored.delegation_hash if stored else None,
        }
        if stored is None or self.chain is None:
            return status
        framework = self.config.framework
        status["onChainCalls"] = await self.chain.call_count(
            framework.limited_calls, framework.delegation_manager, stored.delegation_hash
        )
        tracker = NonceRevocationTracker(chain=self.chain, framework=framework)
        status["delegatorNonce"] = await tracker.current_nonce(stored.delegator)
        return status
