# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Staking deposit relayer

Watches a Bitcoin-style address for time-locked staking outputs, registers
and mints the matching deposit on an EVM vault contract, and simulates the
resulting delegations (rewards, slashing, epochs).

Usage:
    from stakerelay import RelayerConfig, LocalLedger, Relayer

    cfg = RelayerConfig.from_env()
    relayer = Relayer(cfg, LocalLedger())
    results = await relayer.poll_once()
"""

__version__ = "0.1.0"

from .config import RelayerConfig, StakingParams
from .errors import (
    AuthorizationError, ChainCallError, ExplorerError, LedgerRevertError,
    ReceiptTimeoutError, RelayError, ValidationError,
)
from .events import EventBus
from .ledger_client import LedgerClient, LocalLedger, Web3LedgerClient
from .oracle import OracleValidator, StaticOracle
from .relay import DepositRelayController
from .relayer import Relayer
from .scanner import ExplorerClient, SourceScanner
from .staking import StakingLedger
from .types import (
    Deposit, DepositCandidate, DepositState, FinalityProvider, NetworkStats,
    PositionStatus, RelayResult, Severity, SlashingEvent, StakingPosition,
)

__all__ = [
    "RelayerConfig", "StakingParams",
    "RelayError", "ValidationError", "AuthorizationError", "ChainCallError",
    "LedgerRevertError", "ReceiptTimeoutError", "ExplorerError",
    "EventBus",
    "LedgerClient", "LocalLedger", "Web3LedgerClient",
    "OracleValidator", "StaticOracle",
    "DepositRelayController", "Relayer",
    "ExplorerClient", "SourceScanner",
    "StakingLedger",
    "Deposit", "DepositCandidate", "DepositState", "FinalityProvider",
    "NetworkStats", "PositionStatus", "RelayResult", "Severity",
    "SlashingEvent", "StakingPosition",
]
