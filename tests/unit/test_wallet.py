"""Unit tests for account settings."""
import json

import pytest
from unittest.mock import patch

from vmf_staking.core.wallet import NETWORKS, Wallet, WalletConfig

ACCOUNT = "0x" + "a" * 40


@pytest.fixture
def temp_config_dir(tmp_path):
    """Create a temporary config directory."""
    with patch('vmf_staking.core.wallet.Wallet._get_config_dir') as mock_dir:
        mock_dir.return_value = tmp_path
        yield tmp_path


@pytest.fixture
def wallet(temp_config_dir):
    """Create a test wallet instance."""
    return Wallet()


def test_wallet_initialization(wallet):
    assert isinstance(wallet.config, WalletConfig)
    assert wallet.config.network == "base"
    assert wallet.config.account is None
    assert wallet.config.rpc_url == NETWORKS["base"]["rpc_url"]
    assert wallet.config.explorer_url == "https://basescan.org"
    assert wallet.config.chain_id == 8453
    assert wallet.config.cache_ttl_seconds == 300
    assert not wallet.is_logged_in()


def test_login_persists_checksummed_account(wallet, temp_config_dir):
    assert wallet.login(ACCOUNT)
    assert wallet.is_logged_in()

    saved = json.loads((temp_config_dir / "wallet_config.json").read_text())
    assert saved["account"].lower() == ACCOUNT
    assert Wallet().account == wallet.account


def test_login_rejects_bad_address(wallet):
    assert not wallet.login("alice.near")
    assert not wallet.is_logged_in()


def test_logout(wallet):
    wallet.login(ACCOUNT)
    wallet.logout()
    assert not wallet.is_logged_in()
    assert Wallet().account is None


def test_update_settings(wallet):
    config = wallet.update(cache_ttl_seconds=60, allowed_period_days=[90, 30, 30])
    assert config.cache_ttl_seconds == 60
    assert config.allowed_period_days == [30, 90]
    assert Wallet().config.cache_ttl_seconds == 60


def test_update_rejects_unknown_or_invalid(wallet):
    with pytest.raises(KeyError):
        wallet.update(colour="blue")
    with pytest.raises(ValueError):
        wallet.update(network="solana")


def test_switching_network_resets_presets(wallet):
    wallet.update(network="base-sepolia")
    assert wallet.config.rpc_url == "https://sepolia.base.org"
    assert wallet.config.staking_contract is None


def test_environment_overrides(temp_config_dir, env_setup):
    wallet = Wallet()
    assert wallet.config.network == "base-sepolia"
    assert wallet.config.log_level == "DEBUG"


def test_corrupt_config_falls_back_to_defaults(temp_config_dir):
    (temp_config_dir / "wallet_config.json").write_text("{not json")
    assert Wallet().config.network == "base"


def test_environment_overrides_are_not_saved(temp_config_dir, monkeypatch):
    monkeypatch.setenv("VMF_STAKING_RPC_URL", "http://localhost:8545")
    wallet = Wallet()
    assert wallet.config.rpc_url == "http://localhost:8545"

    wallet.login(ACCOUNT)
    saved = json.loads((temp_config_dir / "wallet_config.json").read_text())
    assert "rpc_url" not in saved

    monkeypatch.delenv("VMF_STAKING_RPC_URL")
    wallet = Wallet()
    assert wallet.config.rpc_url == NETWORKS["base"]["rpc_url"]
    assert wallet.account is not None


def test_network_argument_applies_to_this_run_only(temp_config_dir):
    wallet = Wallet(network="base-sepolia")
    assert wallet.config.chain_id == 84532

    wallet.update(cache_ttl_seconds=30)
    assert wallet.config.network == "base-sepolia"

    saved = Wallet()
    assert saved.config.network == "base"
    assert saved.config.cache_ttl_seconds == 30
