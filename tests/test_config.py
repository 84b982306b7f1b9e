"""Tests for configuration loading."""

import json

import pytest

from envoy.config import DelegationFramework, get_chain_profile, load_config
from envoy.errors import ConfigurationError


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        config = load_config(env={"ENVOY_HOME": str(tmp_path)})
        assert config.home_dir == tmp_path
        assert config.chain_id == 143
        assert config.rpc_url is None

    def test_file_then_env(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({
            "chain_id": 10143,
            "rpc_url": "https://file.rpc",
            "retry": {"max_retries": 5},
        }))
        config = load_config(env={"ENVOY_HOME": str(tmp_path), "ENVOY_RPC_URL": "https://env.rpc"})
        assert config.chain_id == 10143
        assert config.rpc_url == "https://env.rpc"
        assert config.retry.max_retries == 5

    def test_unsupported_chain(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not supported"):
            load_config(env={"ENVOY_HOME": str(tmp_path), "ENVOY_CHAIN_ID": "1"})

    def test_invalid_json(self, tmp_path):
        (tmp_path / "config.json").write_text("{")
        with pytest.raises(ConfigurationError):
            load_config(env={"ENVOY_HOME": str(tmp_path)})

    def test_unknown_framework_field(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"framework": {"bogus": "0x" + "00" * 20}}))
        with pytest.raises(ConfigurationError, match="Unknown framework fields"):
            load_config(env={"ENVOY_HOME": str(tmp_path)})

    def test_missing_endpoints(self, tmp_path):
        config = load_config(env={"ENVOY_HOME": str(tmp_path)})
        with pytest.raises(ConfigurationError):
            config.require_bundler()


def test_framework_addresses_are_checksummed():
    framework = DelegationFramework(delegation_manager="0x" + "ab" * 20)
    assert framework.delegation_manager != "0x" + "ab" * 20
    assert framework.delegation_manager.lower() == "0x" + "ab" * 20


def test_explorer_url(tmp_path):
    config = load_config(env={"ENVOY_HOME": str(tmp_path)})
    assert config.explorer_tx_url("0xabc") == get_chain_profile(143).explorer_url + "/tx/0xabc"
