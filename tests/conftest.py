"""Shared fixtures: isolated home directory, fake chain, spawned agent."""

from typing import Optional

import pytest
from eth_account import Account

from envoy.agents import AgentManager
from envoy.audit import AuditTrail
from envoy.config import EnvoyConfig
from envoy.errors import OnChainRevertError
from envoy.keyring import AgentKeyring
from envoy.signer import LocalKeySigner
from envoy.state import AgentArchetype
from envoy.store import DelegationStore
from envoy.units import parse_ether

TX_HASH = "0x" + "ab" * 32


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self):
        self.balance = parse_ether("1")
        self.allowance_value = 0
        self.call_counts: list[int] = [0]
        self.receipt: Optional[dict] = {"status": "0x1", "transactionHash": TX_HASH}
        self.receipt_error: Optional[Exception] = None
        self.sent: list[str] = []
        self.calls: list[str] = []
        self.nonce = 0
        self.deployed = False
        self.send_error: Optional[Exception] = None

    async def get_balance(self, address):
        self.calls.append("get_balance")
        return self.balance

    async def allowance(self, token, owner, spender):
        self.calls.append("allowance")
        return self.allowance_value

    async def call_count(self, enforcer, manager, delegation_hash):
        self.calls.append("call_count")
        return self.call_counts.pop(0) if len(self.call_counts) > 1 else self.call_counts[0]

    async def current_nonce(self, enforcer, manager, delegator):
        self.calls.append("current_nonce")
        return self.nonce

    async def get_transaction_count(self, address, block="pending"):
        return 0

    async def fee_fields(self):
        return {"maxFeePerGas": 2 * 10**9, "maxPriorityFeePerGas": 10**9}

    async def estimate_gas(self, tx):
        return 100_000

    async def send_raw_transaction(self, raw_tx):
        self.calls.append("send_raw_transaction")
        self.sent.append(raw_tx)
        if self.send_error is not None:
            raise self.send_error
        return TX_HASH

    async def wait_for_receipt(self, tx_hash, poller=None):
        if self.receipt_error is not None:
            raise self.receipt_error
        if self.receipt is None or int(self.receipt["status"], 16) != 1:
            raise OnChainRevertError(tx_hash)
        return self.receipt

    async def is_deployed(self, address):
        self.calls.append("is_deployed")
        return self.deployed

    async def call_uint(self, to, signature, arg_types, args):
        self.calls.append(signature)
        return 0


@pytest.fixture(autouse=True)
def audit_key(monkeypatch):
    monkeypatch.setenv("ENVOY_AUDIT_HMAC_KEY", "test-audit-key")


@pytest.fixture
def config(tmp_path):
    return EnvoyConfig(
        home_dir=tmp_path / "home",
        receipt_timeout_seconds=0.05,
        receipt_poll_interval_seconds=0.01,
    )


@pytest.fixture
def store(config):
    return DelegationStore(config.home_dir)


@pytest.fixture
def keyring(tmp_path):
    return AgentKeyring(tmp_path / "keys")


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def user():
    return Account.create()


@pytest.fixture
def session_key():
    return Account.create()


@pytest.fixture
def manager(config, store, keyring, audit, fake_chain):
    return AgentManager(config, store, keyring, audit=audit, chain=fake_chain)


@pytest.fixture
async def root(manager, user, session_key):
    return await manager.create_root_delegation(
        LocalKeySigner(user),
        session_key.address,
        expiry_days=7,
        value_lte_per_tx=parse_ether("1"),
        max_calls=100,
    )


@pytest.fixture
async def spawned(manager, root, session_key):
    return await manager.spawn_sub_agent(
        LocalKeySigner(session_key),
        AgentArchetype.GENERAL,
        expiry_days=3,
        value_lte_per_tx=parse_ether("0.1"),
        max_calls=5,
    )
