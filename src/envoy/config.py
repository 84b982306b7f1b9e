"""
Runtime configuration: chain profiles, framework addresses, endpoints.

Values come from ~/.envoy/config.json with ENVOY_* environment overrides.
Credentials are never stored here.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

from eth_utils import to_checksum_address

from .errors import ConfigurationError
from .retry import RetryPolicy


DEFAULT_HOME = Path.home() / ".envoy"
CONFIG_FILENAME = "config.json"

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"
ENTRY_POINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"

ERC20_APPROVE_SELECTOR = "0x095ea7b3"
ERC20_TRANSFER_SELECTOR = "0xa9059cbb"

# Fixed spender whitelist for autonomous approvals. Never extended at runtime.
WHITELISTED_SPENDERS: Mapping[str, str] = {
    "dex_router": "0x0000000000001fF3684f28c67538d4D072C22734",
    "perps_venue": "0xea1b8E4aB7f14F7dCA68c5B214303B13078FC5ec",
    "launchpad_router": "0x6F6B8F1a20703309951a5127c45B49b1CD981A22",
}


@dataclass(frozen=True)
class DelegationFramework:
    """Delegation manager and caveat enforcer deployment addresses."""

    delegation_manager: str = "0xdb9B1e94B5b69Df7e401DDbedE43491141047dB3"
    timestamp: str = "0x1046bb45C8d673d4ea75321280DB34899413c069"
    limited_calls: str = "0x04658B29F6b82ed55274221a06Fc97D318E25416"
    nonce: str = "0xDE4f2FAC4B3D87A1d9953Ca5FC09FCa7F366254f"
    allowed_calldata: str = "0xc2b0d624c1c4319760C96503BA27C347F3260f55"
    value_lte: str = "0x92Bf12322527cAA612fd31a0e810472BBB106A8F"
    allowed_targets: str = "0x7F20f61b1f09b08D970938F6fa563634d65c4EeB"
    allowed_methods: str = "0x2c21fD0Cb9DC8445CB3fb0DC5E7Bb0Aca01842B5"
    logical_or_wrapper: str = "0xE1302607a3251AF54c3a6e69318d6aa07F5eB46c"

    def __post_init__(self):
        for name in self.__dataclass_fields__:
            object.__setattr__(self, name, to_checksum_address(getattr(self, name)))

    @classmethod
    def from_dict(cls, data: Mapping[str, str]) -> "DelegationFramework":
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown framework fields: {sorted(unknown)}")
        return cls(**data)


@dataclass(frozen=True)
class ChainProfile:
    """Trading venues and explorer for a supported chain."""

    chain_id: int
    name: str
    explorer_url: str
    wrapped_native: str
    dex_router: str
    perps_venue: str
    launchpad_router: Optional[str] = None

    def trading_targets(self) -> list[str]:
        """Every trading venue on the chain: the root delegation scope."""
        targets = [self.wrapped_native, self.perps_venue, self.dex_router]
        if self.launchpad_router:
            targets.append(self.launchpad_router)
        return targets


SUPPORTED_CHAINS: Mapping[int, ChainProfile] = {
    143: ChainProfile(
        chain_id=143,
        name="monad",
        explorer_url="https://monadexplorer.com",
        wrapped_native="0x3bd359C1119dA7Da1D913D1C4D2B7c461115433A",
        dex_router=WHITELISTED_SPENDERS["dex_router"],
        perps_venue=WHITELISTED_SPENDERS["perps_venue"],
        launchpad_router=WHITELISTED_SPENDERS["launchpad_router"],
    ),
    10143: ChainProfile(
        chain_id=10143,
        name="monad-testnet",
        explorer_url="https://testnet.monadexplorer.com",
        wrapped_native="0x3bd359C1119dA7Da1D913D1C4D2B7c461115433A",
        dex_router=WHITELISTED_SPENDERS["dex_router"],
        perps_venue=WHITELISTED_SPENDERS["perps_venue"],
    ),
}


def get_chain_profile(chain_id: int) -> ChainProfile:
    profile = SUPPORTED_CHAINS.get(chain_id)
    if profile is None:
        supported = ", ".join(str(c) for c in sorted(SUPPORTED_CHAINS))
        raise ConfigurationError(f"Chain {chain_id} not supported. Supported chains: {supported}")
    return profile


@dataclass
class EnvoyConfig:
    home_dir: Path = DEFAULT_HOME
    chain_id: int = 143
    rpc_url: Optional[str] = None
    bundler_url: Optional[str] = None
    entry_point: str = ENTRY_POINT_V07
    framework: DelegationFramework = field(default_factory=DelegationFramework)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    receipt_timeout_seconds: float = 60.0
    receipt_poll_interval_seconds: float = 2.0
    explorer_url: Optional[str] = None

    @property
    def chain(self) -> ChainProfile:
        return get_chain_profile(self.chain_id)

    @property
    def agents_dir(self) -> Path:
        return self.home_dir / "agents"

    @property
    def audit_path(self) -> Path:
        return self.home_dir / "audit.jsonl"

    def require_rpc(self) -> str:
        if not self.rpc_url:
            raise ConfigurationError("No RPC URL configured. Set ENVOY_RPC_URL or rpc_url in config.json.")
        return self.rpc_url

    def require_bundler(self) -> str:
        if not self.bundler_url:
            raise ConfigurationError(
                "No bundler URL configured. Set ENVOY_BUNDLER_URL or bundler_url in config.json."
            )
        return self.bundler_url

    def explorer_tx_url(self, tx_hash: str) -> str:
        base = self.explorer_url or self.chain.explorer_url
        return f"{base.rstrip('/')}/tx/{tx_hash}"


def load_config(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> EnvoyConfig:
    """Load configuration from disk, then apply environment overrides."""
    env = os.environ if env is None else env
    home = Path(env["ENVOY_HOME"]) if env.get("ENVOY_HOME") else DEFAULT_HOME
    config_path = path or home / CONFIG_FILENAME

    raw: dict = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid config file {config_path}: {e}") from e

    config = EnvoyConfig(home_dir=home)
    if "chain_id" in raw:
        config.chain_id = int(raw["chain_id"])
    config.rpc_url = raw.get("rpc_url")
    config.bundler_url = raw.get("bundler_url")
    config.explorer_url = raw.get("explorer_url")
    if "entry_point" in raw:
        config.entry_point = to_checksum_address(raw["entry_point"])
    if "framework" in raw:
        config.framework = DelegationFramework.from_dict(raw["framework"])
    if "retry" in raw:
        config.retry = replace(config.retry, **raw["retry"])
    if "receipt_timeout_seconds" in raw:
        config.receipt_timeout_seconds = float(raw["receipt_timeout_seconds"])

    if env.get("ENVOY_CHAIN_ID"):
        config.chain_id = int(env["ENVOY_CHAIN_ID"])
    if env.get("ENVOY_RPC_URL"):
        config.rpc_url = env["ENVOY_RPC_URL"]
    if env.get("ENVOY_BUNDLER_URL"):
        config.bundler_url = env["ENVOY_BUNDLER_URL"]
    if env.get("ENVOY_EXPLORER_URL"):
        config.explorer_url = env["ENVOY_EXPLORER_URL"]

    get_chain_profile(config.chain_id)
    return config
