# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Configuration

Defaults target a local EVM dev chain and the Bitcoin testnet explorer.
Every field can be overridden from the environment (STAKERELAY_*), and a
.env file next to the working directory is merged first without clobbering
variables that are already set.

    cfg = RelayerConfig.from_env()
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

log = logging.getLogger(__name__)

# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_EXPLORER_URL = "https://mempool.space/testnet/api"
DEFAULT_WATCH_ADDRESS = "tb1qav3dse2x7wpf4njp2qd7rfs8qmwq6c27gmtewq6s9jurnlryc0ys7kzv35"
DEFAULT_EVM_RPC = "http://localhost:8545"
DEFAULT_CHAIN_ID = 1337

TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class StakingParams:
    """Simulation parameters for the staking ledger."""
    base_reward_rate: float = 0.06       # 6% annual
    slashing_rate: float = 0.05          # 5%, halved for minor severity
    slashing_probability: float = 0.02   # chance per slashing check
    epoch_duration: int = 21600          # 6 hours
    reward_interval: int = 3600          # 1 hour
    slashing_interval: int = 1800        # 30 minutes
    unbonding_period: int = 604800       # 7 days
    reputation_penalty: float = 10.0


@dataclass
class RelayerConfig:
    # Source chain
    explorer_url: str = DEFAULT_EXPLORER_URL
    watch_address: str = DEFAULT_WATCH_ADDRESS
    min_confirmations: int = 3
    poll_interval: int = 30
    seen_outputs_file: Optional[str] = None

    # Destination chain
    evm_rpc_url: str = DEFAULT_EVM_RPC
    chain_id: int = DEFAULT_CHAIN_ID
    private_key: str = ""
    vault_address: str = ""
    token_address: str = ""
    gas_limit: int = 500000
    min_gas_balance_wei: int = 5 * 10 ** 15   # 0.005 ether

    # Relay policy
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 10.0
    receipt_timeout: float = 120.0
    receipt_poll_interval: float = 2.0
    oracle_min_confidence: float = 0.75
    finality_provider: str = "fp1"
    lock_days: int = 30
    release_failed_outputs: bool = True

    # Process
    health_interval: int = 600
    log_level: str = "INFO"

    staking: StakingParams = field(default_factory=StakingParams)

    @property
    def lock_duration(self) -> int:
        return self.lock_days * 86400

    def apply_deployments(self, path: str) -> None:
        """Fill contract addresses from a deployments JSON file."""
        with open(path) as f:
            deployments = json.load(f)
        self.vault_address = self.vault_address or deployments.get("vault", "")
        self.token_address = (self.token_address or deployments.get("token")
                              or deployments.get("stBTC", ""))
        log.info(f"Loaded deployments from {path}: vault={self.vault_address}, "
                 f"token={self.token_address}")

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "RelayerConfig":
        """Build a config from environment variables."""
        env = os.environ if env is None else env
        cfg = cls()

        def get(name: str) -> Optional[str]:
            value = env.get(f"STAKERELAY_{name}")
            return value if value not in (None, "") else None

        for name, cast in _ENV_FIELDS.items():
            raw = get(name.upper())
            if raw is not None:
                setattr(cfg, name, cast(raw))

        for name, cast in _STAKING_ENV_FIELDS.items():
            raw = get(name.upper())
            if raw is not None:
                setattr(cfg.staking, name, cast(raw))

        cfg.private_key = (
            get("PRIVATE_KEY") or
            env.get("RELAYER_PRIVATE_KEY", "") or
            cfg.private_key
        )

        deployments = get("DEPLOYMENTS_FILE")
        if deployments and Path(deployments).exists():
            cfg.apply_deployments(deployments)

        return cfg


def _bool(raw: str) -> bool:
    return raw.strip().lower() in TRUE_VALUES


_ENV_FIELDS = {
    "explorer_url": str,
    "watch_address": str,
    "min_confirmations": int,
    "poll_interval": int,
    "seen_outputs_file": str,
    "evm_rpc_url": str,
    "chain_id": int,
    "vault_address": str,
    "token_address": str,
    "gas_limit": int,
    "min_gas_balance_wei": int,
    "max_retries": int,
    "backoff_base": float,
    "backoff_cap": float,
    "receipt_timeout": float,
    "receipt_poll_interval": float,
    "oracle_min_confidence": float,
    "finality_provider": str,
    "lock_days": int,
    "release_failed_outputs": _bool,
    "health_interval": int,
    "log_level": str,
}

_STAKING_ENV_FIELDS = {
    "base_reward_rate": float,
    "slashing_rate": float,
    "slashing_probability": float,
    "epoch_duration": int,
    "reward_interval": int,
    "slashing_interval": int,
    "unbonding_period": int,
}


def load_env_file(path: str = ".env") -> int:
    """Merge KEY=VALUE lines from a .env file into os.environ.

    Existing variables win. Returns the number of keys read.
    """
    if not os.path.exists(path):
        return 0
    log.info(f"Loading config from {path}")
    count = 0
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))
                count += 1
    return count
