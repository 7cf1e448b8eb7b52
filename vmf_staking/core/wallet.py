"""Account and connection settings."""
import os
import json
import platform
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, field_validator
from web3 import Web3

from .indexer import DEFAULT_INDEXER_URL

NETWORKS: Dict[str, Dict[str, Any]] = {
    "base": {
        "chain_id": 8453,
        "rpc_url": "https://mainnet.base.org",
        "explorer_url": "https://basescan.org",
        "staking_contract": "0xCCC28c4E7204C44676CFDEbf8172599404c4610A",
        "token_contract": "0x7A97a79DD86a9AC7636a023C2A87393FB89a0918",
    },
    "base-sepolia": {
        "chain_id": 84532,
        "rpc_url": "https://sepolia.base.org",
        "explorer_url": "https://sepolia.basescan.org",
        "staking_contract": None,
        "token_contract": None,
    },
}

ENV_OVERRIDES = {
    "VMF_STAKING_ACCOUNT": "account",
    "VMF_STAKING_RPC_URL": "rpc_url",
    "VMF_STAKING_INDEXER_URL": "indexer_url",
    "VMF_STAKING_NETWORK": "network",
    "VMF_STAKING_LOG_LEVEL": "log_level",
}

CONFIG_FILE = "wallet_config.json"

PRESET_FIELDS = ("rpc_url", "explorer_url", "staking_contract", "token_contract")


class WalletConfig(BaseModel):
    """Connection and engine settings."""
    network: str = "base"
    account: Optional[str] = None
    rpc_url: Optional[str] = None
    staking_contract: Optional[str] = None
    token_contract: Optional[str] = None
    indexer_url: str = DEFAULT_INDEXER_URL
    explorer_url: Optional[str] = None
    cache_ttl_seconds: float = 300
    confirmation_timeout: float = 120
    poll_interval: float = 2.0
    refresh_interval: float = 1.0
    allowed_period_days: List[int] = [30, 60, 90]
    max_attempts: int = 3
    fallback_apr: Optional[str] = None
    log_level: str = "INFO"

    def __init__(self, **data):
        super().__init__(**data)
        # Fill anything left unset from the network preset
        preset = NETWORKS[self.network]
        for key in PRESET_FIELDS:
            if getattr(self, key) is None:
                setattr(self, key, preset[key])

    @field_validator("network")
    @classmethod
    def _known_network(cls, value: str) -> str:
        if value not in NETWORKS:
            raise ValueError(f"Unknown network {value!r}, expected one of {sorted(NETWORKS)}")
        return value

    @field_validator("account")
    @classmethod
    def _valid_account(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not Web3.is_address(value):
            raise ValueError(f"Not an account address: {value}")
        return Web3.to_checksum_address(value)

    @field_validator("allowed_period_days")
    @classmethod
    def _positive_periods(cls, value: List[int]) -> List[int]:
        if not value or any(days <= 0 for days in value):
            raise ValueError("Lock periods must be positive day counts")
        return sorted(set(value))

    @property
    def chain_id(self) -> int:
        return NETWORKS[self.network]["chain_id"]


class Wallet:
    """Holds the active account and persists settings between runs.

    Only settings made through ``login``, ``logout`` and ``update`` are
    written to disk. Environment overrides and the ``network`` argument
    apply to ``config`` for this run only.
    """

    def __init__(self, network: Optional[str] = None):
        """Load settings from disk and the environment.

        Args:
            network: Network to use instead of the saved one (base/base-sepolia)
        """
        self._network = network
        self._stored: Dict[str, Any] = {}
        self.config = WalletConfig()
        self.config_dir = self._get_config_dir()
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self._load_config()

    def _get_config_dir(self) -> Path:
        """Get platform-specific config directory."""
        override = os.getenv("VMF_STAKING_CONFIG_DIR")
        if override:
            return Path(override)
        if os.name == 'nt':  # Windows
            return Path(os.getenv('APPDATA')) / 'vmf-staking'
        elif platform.system() == 'Darwin':  # macOS
            return Path.home() / 'Library' / 'Application Support' / 'vmf-staking'
        else:  # Linux and others
            return Path.home() / '.config' / 'vmf-staking'

    def _overrides(self) -> Dict[str, Any]:
        data = {}
        for env_name, key in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                data[key] = value
        if self._network:
            data["network"] = self._network
        return data

    def _effective(self, stored: Dict[str, Any]) -> WalletConfig:
        """Stored settings with this run's overrides on top."""
        data = dict(stored)
        overrides = self._overrides()
        if overrides.get("network", data.get("network")) != data.get("network"):
            # saved endpoints belong to the saved network
            for key in PRESET_FIELDS:
                data.pop(key, None)
        data.update(overrides)
        return WalletConfig(**data)

    def _load_config(self) -> None:
        """Load settings from disk, then apply overrides."""
        config_path = self.config_dir / CONFIG_FILE
        if config_path.exists():
            try:
                with open(config_path) as f:
                    self._stored = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load wallet config: {e}")

        try:
            self.config = self._effective(self._stored)
        except ValueError as e:
            logger.error(f"Ignoring invalid wallet config: {e}")
            self._stored = {}
            self.config = WalletConfig()

    def _save_config(self) -> None:
        """Save stored settings to disk."""
        config_path = self.config_dir / CONFIG_FILE
        try:
            with open(config_path, 'w') as f:
                json.dump(self._stored, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save wallet config: {e}")

    def _store(self, **fields) -> WalletConfig:
        stored = dict(self._stored)
        if fields.get("network", stored.get("network")) != stored.get("network"):
            for key in PRESET_FIELDS:
                if key not in fields:
                    stored.pop(key, None)
        stored.update(fields)
        # normalized values (checksummed account, sorted periods) are what gets saved
        validated = WalletConfig(**stored)
        for key in fields:
            stored[key] = getattr(validated, key)
        self.config = self._effective(stored)
        self._stored = stored
        self._save_config()
        return self.config

    def login(self, account: str) -> bool:
        """Use ``account`` for all operations from now on.

        Args:
            account: EVM address of the staking account

        Returns:
            True if the address was accepted and saved
        """
        if not Web3.is_address(account):
            logger.error(f"Not an account address: {account}")
            return False
        self._store(account=account)
        logger.info(f"Successfully logged in as {self.config.account}")
        return True

    def logout(self) -> None:
        self._store(account=None)
        logger.info("Successfully logged out")

    def is_logged_in(self) -> bool:
        return self.config.account is not None

    @property
    def account(self) -> Optional[str]:
        return self.config.account

    def update(self, **fields) -> WalletConfig:
        """Change settings and persist them.

        Raises:
            KeyError: A field name is not a setting
            ValueError: A value does not validate
        """
        unknown = set(fields) - set(WalletConfig.model_fields)
        if unknown:
            raise KeyError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        return self._store(**fields)
