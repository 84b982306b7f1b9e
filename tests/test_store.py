"""Tests for the file-backed delegation and agent store."""

import json

import pytest
from eth_account import Account

from envoy.config import NATIVE_TOKEN_ADDRESS
from envoy.errors import StoreError, ValidationError
from envoy.state import AgentArchetype, AgentStatus, StoredDelegation, TradeRecord, now_ms
from envoy.store import DelegationStore, format_time_remaining
from envoy.units import parse_ether

TOKEN = "0x754704Bc059F8C67012fEd69BC8A327a5aafb603"


@pytest.fixture
def agent(store):
    return store.create_agent_state(
        agent_id="perps-1",
        wallet_id="w_test",
        wallet_address=Account.create().address,
        archetype=AgentArchetype.PERPS,
        max_trades=3,
        expires_at=now_ms() + 60_000,
        native_allocated=parse_ether("5"),
        token_limits={TOKEN: 10**6},
    )


class TestAgentState:
    def test_create_and_load(self, store, agent):
        loaded = store.load_agent_state("perps-1")
        assert loaded.status == AgentStatus.RUNNING
        assert loaded.budget.allocated_for(NATIVE_TOKEN_ADDRESS) == parse_ether("5")
        assert loaded.budget.allocated_for(TOKEN) == 10**6

    def test_big_ints_stored_as_strings(self, store, agent, config):
        raw = json.loads((config.home_dir / "agents" / "perps-1" / "state.json").read_text())
        assert raw["budget"]["allocatedPerToken"][NATIVE_TOKEN_ADDRESS] == str(parse_ether("5"))

    def test_duplicate_agent_rejected(self, store, agent):
        with pytest.raises(StoreError, match="already exists"):
            store.create_agent_state("perps-1", "w", agent.wallet_address, AgentArchetype.PERPS, 1, 0, 0)

    def test_append_trade_counts(self, store, agent):
        store.append_trade("perps-1", TradeRecord(action="open", protocol="perps", tx_hash="0x01"))
        store.append_trade("perps-1", TradeRecord(action="close", protocol="perps", tx_hash="0x02"))
        assert store.require_agent_state("perps-1").executed == 2
        assert [t.tx_hash for t in store.load_trades("perps-1", limit=1)] == ["0x02"]

    def test_debit_and_remaining(self, store, agent):
        store.debit_token_spent("perps-1", TOKEN.lower(), 400_000)
        assert store.token_budget_remaining("perps-1", TOKEN) == 600_000
        assert store.token_budget_remaining("perps-1", Account.create().address) is None

    def test_errors_are_capped(self, store, agent):
        for i in range(105):
            store.add_error("perps-1", f"error {i}", recoverable=True)
        errors = store.require_agent_state("perps-1").errors
        assert len(errors) == 100
        assert errors[-1].message == "error 104"

    def test_list_filters_by_status(self, store, agent):
        store.set_status("perps-1", AgentStatus.REVOKED)
        assert store.list_agent_states(AgentStatus.RUNNING) == []
        assert [s.agent_id for s in store.list_agent_states(AgentStatus.REVOKED)] == ["perps-1"]

    def test_path_traversal_rejected(self, store):
        with pytest.raises(StoreError):
            store.load_agent_state("..")

    def test_corrupt_record_reported(self, store, agent, config):
        (config.home_dir / "agents" / "perps-1" / "state.json").write_text("{not json")
        with pytest.raises(StoreError, match="Corrupt"):
            store.load_agent_state("perps-1")

    def test_delete(self, store, agent):
        assert store.delete_agent_state("perps-1")
        assert store.load_agent_state("perps-1") is None


class TestStoredDelegations:
    async def test_root_round_trip(self, store, root):
        loaded = store.load_root_delegation()
        assert loaded.delegation_hash == root.delegation_hash
        assert loaded.signed_delegation == root.signed_delegation
        assert loaded.expires_at - loaded.created_at == 7 * 86400 * 1000
        assert loaded.approximate_budget == 100 * 10**18

    async def test_sub_chain_round_trip(self, store, spawned):
        loaded = store.load_delegation(spawned.agent_id)
        assert [c.enforcer for c in loaded.signed_delegation.caveats] == [
            c.enforcer for c in spawned.delegation.signed_delegation.caveats
        ]
        chain = loaded.chain()
        assert len(chain) == 2
        assert chain[0].delegation.authority == chain[1].delegation_hash()

    async def test_json_keys(self, config, root):
        raw = json.loads((config.home_dir / "root-delegation.json").read_text())
        assert raw["valueCapPerTx"] == str(10**18)
        assert raw["approximateBudget"] == str(100 * 10**18)
        assert set(raw) >= {"delegationHash", "signedDelegation", "allowedTargets", "createdAt", "expiresAt"}

    async def test_status_and_revoke(self, store, root):
        status = store.root_delegation_status()
        assert status["valid"]
        assert status["maxCalls"] == 100
        assert store.revoke_root_delegation()
        assert store.root_delegation_status() == {"exists": False, "valid": False}
        assert not store.revoke_root_delegation()

    def test_stored_delegation_requires_signature(self, store, config):
        record = {
            "delegationHash": "0x00",
            "signedDelegation": {
                "delegate": Account.create().address,
                "delegator": Account.create().address,
                "authority": "0x" + "ff" * 32,
                "caveats": [],
                "salt": "0",
            },
            "allowedTargets": [],
            "createdAt": 0,
            "expiresAt": 0,
            "valueCapPerTx": "1",
            "maxCalls": 1,
        }
        with pytest.raises(ValidationError, match="not signed"):
            StoredDelegation.from_dict(record)


@pytest.mark.parametrize(
    "remaining_ms,expected",
    [(0, "expired"), (90_000, "1m"), (3 * 3_600_000 + 60_000, "3h 1m"), (2 * 86_400_000 + 3_600_000, "2d 1h")],
)
def test_format_time_remaining(remaining_ms, expected):
    assert format_time_remaining(remaining_ms) == expected
