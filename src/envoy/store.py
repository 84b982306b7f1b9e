"""
File-backed store for agent state, trade logs and delegations.

Layout under the Envoy home directory:

    root-delegation.json
    agents/<agent_id>/state.json
    agents/<agent_id>/delegation.json
    agents/<agent_id>/trades.jsonl

Whole-file JSON records are replaced atomically. Read-modify-write
updates hold an advisory lock for one update only; a validate, redeem,
record sequence for one agent must be serialized by the caller.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Optional

from .config import DEFAULT_HOME, NATIVE_TOKEN_ADDRESS
from .errors import StoreError
from .state import (
    MAX_ERRORS_KEPT,
    AgentArchetype,
    AgentError,
    AgentState,
    AgentStatus,
    Budget,
    StoredDelegation,
    TradeRecord,
    now_ms,
    token_key,
)
from .storage import (
    atomic_write_json,
    ensure_private_dir,
    ensure_private_file,
    file_lock,
    safe_child_path,
)
from .units import format_ether

logger = logging.getLogger(__name__)

ROOT_DELEGATION_FILENAME = "root-delegation.json"
STATE_FILENAME = "state.json"
DELEGATION_FILENAME = "delegation.json"
TRADES_FILENAME = "trades.jsonl"


class DelegationStore:
    """Durable local state for delegations and sub-agents."""

    def __init__(self, home_dir: Optional[Path] = None):
        self.home_dir = home_dir or DEFAULT_HOME
        self.agents_dir = self.home_dir / "agents"
        ensure_private_dir(self.home_dir)
        ensure_private_dir(self.agents_dir)
        self._lock_path = self.home_dir / ".store.lock"

    # Paths

    def agent_dir(self, agent_id: str) -> Path:
        try:
            return safe_child_path(self.agents_dir, agent_id)
        except ValueError as e:
            raise StoreError(str(e)) from e

    @property
    def root_delegation_path(self) -> Path:
        return self.home_dir / ROOT_DELEGATION_FILENAME

    def _read_json(self, path: Path) -> Optional[dict]:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt record {path}: {e}") from e

    # Agent state

    def create_agent_state(
        self,
        agent_id: str,
        wallet_id: str,
        wallet_address: str,
        archetype: AgentArchetype,
        max_trades: int,
        expires_at: int,
        native_allocated: int,
        token_limits: Optional[dict[str, int]] = None,
    ) -> AgentState:
        allocated = {token_key(NATIVE_TOKEN_ADDRESS): native_allocated}
        for token, limit in (token_limits or {}).items():
            allocated[token_key(token)] = limit
        created = now_ms()
        state = AgentState(
            agent_id=agent_id,
            wallet_id=wallet_id,
            wallet_address=wallet_address,
            archetype=archetype,
            status=AgentStatus.RUNNING,
            executed=0,
            max_allowed=max_trades,
            budget=Budget(allocated=allocated, spent={}),
            created_at=created,
            last_activity_at=created,
            expires_at=expires_at,
        )
        directory = self.agent_dir(agent_id)
        with file_lock(self._lock_path):
            if (directory / STATE_FILENAME).exists():
                raise StoreError(f"Agent {agent_id} already exists")
            ensure_private_dir(directory)
            atomic_write_json(directory / STATE_FILENAME, state.to_dict())
        logger.info("Created agent %s (%s)", agent_id, archetype.value)
        return state

    def load_agent_state(self, agent_id: str) -> Optional[AgentState]:
        raw = self._read_json(self.agent_dir(agent_id) / STATE_FILENAME)
        return AgentState.from_dict(raw) if raw is not None else None

    def require_agent_state(self, agent_id: str) -> AgentState:
        state = self.load_agent_state(agent_id)
        if state is None:
            raise StoreError(f"Agent {agent_id} not found")
        return state

    def save_agent_state(self, state: AgentState) -> None:
        directory = self.agent_dir(state.agent_id)
        ensure_private_dir(directory)
        atomic_write_json(directory / STATE_FILENAME, state.to_dict())

    def update_agent_state(self, agent_id: str, mutate: Callable[[AgentState], None]) -> AgentState:
        """Apply ``mutate`` to the current state and persist it."""
        with file_lock(self._lock_path):
            state = self.require_agent_state(agent_id)
            mutate(state)
            state.last_activity_at = now_ms()
            self.save_agent_state(state)
            return state

    def set_status(self, agent_id: str, status: AgentStatus) -> AgentState:
        def apply(state: AgentState) -> None:
            state.status = status

        return self.update_agent_state(agent_id, apply)

    def append_trade(self, agent_id: str, trade: TradeRecord) -> AgentState:
        """Append to the trade log and count it against the trade limit."""
        self._write_trade(agent_id, trade)

        def apply(state: AgentState) -> None:
            state.executed += 1

        return self.update_agent_state(agent_id, apply)

    def _write_trade(self, agent_id: str, trade: TradeRecord) -> None:
        path = self.agent_dir(agent_id) / TRADES_FILENAME
        ensure_private_file(path)
        with file_lock(self._lock_path):
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(trade.to_dict(), separators=(",", ":")) + "\n")
                f.flush()
                os.fsync(f.fileno())

    def load_trades(self, agent_id: str, limit: Optional[int] = None) -> list[TradeRecord]:
        path = self.agent_dir(agent_id) / TRADES_FILENAME
        if not path.exists():
            return []
        trades = []
        with open(path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    trades.append(TradeRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError) as e:
                    raise StoreError(f"Corrupt trade log {path} line {line_no}: {e}") from e
        if limit is not None:
            trades = trades[-limit:]
        return trades

    def debit_token_spent(self, agent_id: str, token: str, amount: int) -> AgentState:
        if amount < 0:
            raise StoreError("Spent amount must be non-negative")

        def apply(state: AgentState) -> None:
            key = token_key(token)
            state.budget.spent[key] = state.budget.spent.get(key, 0) + amount

        return self.update_agent_state(agent_id, apply)

    def add_error(self, agent_id: str, message: str, recoverable: bool) -> AgentState:
        def apply(state: AgentState) -> None:
            state.errors.append(AgentError(timestamp=now_ms(), message=message, recoverable=recoverable))
            del state.errors[:-MAX_ERRORS_KEPT]

        return self.update_agent_state(agent_id, apply)

    def token_budget_remaining(self, agent_id: str, token: str) -> Optional[int]:
        return self.require_agent_state(agent_id).budget.remaining_for(token)

    def list_agent_states(self, status: Optional[AgentStatus] = None) -> list[AgentState]:
        states = []
        for path in sorted(self.agents_dir.glob(f"*/{STATE_FILENAME}")):
            raw = self._read_json(path)
            if raw is None:
                continue
            state = AgentState.from_dict(raw)
            if status is None or state.status == status:
                states.append(state)
        states.sort(key=lambda s: s.created_at, reverse=True)
        return states

    def delete_agent_state(self, agent_id: str) -> bool:
        directory = self.agent_dir(agent_id)
        with file_lock(self._lock_path):
            if not directory.exists():
                return False
            shutil.rmtree(directory)
        return True

    # Delegations

    def store_delegation(self, agent_id: str, stored: StoredDelegation) -> None:
        directory = self.agent_dir(agent_id)
        ensure_private_dir(directory)
        atomic_write_json(directory / DELEGATION_FILENAME, stored.to_dict())

    def load_delegation(self, agent_id: str) -> Optional[StoredDelegation]:
        raw = self._read_json(self.agent_dir(agent_id) / DELEGATION_FILENAME)
        return StoredDelegation.from_dict(raw) if raw is not None else None

    def save_root_delegation(self, stored: StoredDelegation) -> None:
        atomic_write_json(self.root_delegation_path, stored.to_dict())
        logger.info("Stored root delegation %s", stored.delegation_hash)

    def load_root_delegation(self) -> Optional[StoredDelegation]:
        raw = self._read_json(self.root_delegation_path)
        return StoredDelegation.from_dict(raw) if raw is not None else None

    def revoke_root_delegation(self) -> bool:
        """
        Delete the local root delegation.

        On-chain the delegation stays redeemable until its timestamp or
        call-limit caveat stops it.
        """
        if not self.root_delegation_path.exists():
            return False
        self.root_delegation_path.unlink()
        logger.info("Removed local root delegation")
        return True

    def root_delegation_status(self) -> dict:
        stored = self.load_root_delegation()
        if stored is None:
            return {"exists": False, "valid": False}
        remaining_ms = stored.expires_at - now_ms()
        return {
            "exists": True,
            "valid": remaining_ms > 0,
            "delegationHash": stored.delegation_hash,
            "delegator": stored.delegator,
            "sessionKey": stored.delegate,
            "expiresAt": stored.expires_at,
            "expiresIn": format_time_remaining(remaining_ms),
            "maxCalls": stored.max_calls,
            "approximateBudget": format_ether(stored.approximate_budget),
        }


def format_time_remaining(remaining_ms: int) -> str:
    if remaining_ms <= 0:
        return "expired"
    minutes = remaining_ms // 60_000
    days, rem = divmod(minutes, 24 * 60)
    hours, minutes = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
