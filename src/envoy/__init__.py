"""
Envoy: scoped delegations for autonomous EVM trading agents.

User signs one root delegation → session key redelegates narrower
scopes to sub-agents → sub-agents redeem without prompting.
"""

__version__ = "0.1.0"

from .caveats import Caveat, CaveatBuilder, Scope
from .delegation import (
    Delegation,
    DelegationFactory,
    DelegationKind,
    SelectionContext,
    SignedDelegation,
    verify_delegation_signature,
)
from .redemption import DelegationRedeemer, Execution, encode_redeem_delegations
from .executor import AutonomousExecutor, ExecutionResult, TradeInfo
from .agents import AgentManager
from .userop import UserOperation, UserOperationBuilder
from .store import DelegationStore
from .audit import AuditTrail, EventType
from .config import EnvoyConfig, load_config

__all__ = [
    "Caveat", "CaveatBuilder", "Scope",
    "Delegation", "DelegationFactory", "DelegationKind", "SelectionContext", "SignedDelegation",
    "verify_delegation_signature",
    "DelegationRedeemer", "Execution", "encode_redeem_delegations",
    "AutonomousExecutor", "ExecutionResult", "TradeInfo", "AgentManager",
    "UserOperation", "UserOperationBuilder",
    "DelegationStore", "AuditTrail", "EventType", "EnvoyConfig", "load_config",
]
