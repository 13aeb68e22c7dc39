# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Data Types

Records shared by the scanner, the relay controller and the staking engine.

Amounts are integers in the smallest source-chain unit (satoshis).
Timestamps are integer unix seconds.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


SATOSHI_PER_BTC = 100_000_000
TOKEN_SCALE = 10 ** 10          # 8-decimal source units -> 18-decimal tokens
MAX_SUPPLY_SATS = 21_000_000 * SATOSHI_PER_BTC


class DepositState(Enum):
    """Relay pipeline state for one source transaction."""
    DETECTED = "detected"
    ORACLE_VALIDATED = "oracle_validated"
    AUTHORIZED = "authorized"
    REGISTERED = "registered"
    MINTED = "minted"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DepositState.MINTED, DepositState.REJECTED, DepositState.FAILED)


class PositionStatus(Enum):
    ACTIVE = "active"
    UNBONDING = "unbonding"
    CLOSED = "closed"


class Severity(Enum):
    MINOR = "minor"
    MAJOR = "major"


# =============================================================================
# SOURCE CHAIN
# =============================================================================

@dataclass
class Utxo:
    """Unspent output as reported by the explorer."""
    txid: str
    vout: int
    value: int
    script_type: Optional[str] = None
    block_height: int = 0
    confirmed: bool = False

    @property
    def key(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def from_explorer(cls, data: dict) -> "Utxo":
        """Build from a mempool.space /address/{addr}/utxo entry."""
        status = data.get("status") or {}
        return cls(
            txid=data["txid"],
            vout=int(data["vout"]),
            value=int(data["value"]),
            script_type=data.get("scriptpubkey_type"),
            block_height=int(status.get("block_height") or 0),
            confirmed=bool(status.get("confirmed", False)),
        )


@dataclass
class DepositCandidate:
    """A staking output accepted by the scanner, ready for relaying."""
    tx_id: str
    vout: int
    amount: int
    unlock_time: int
    provider_id: str
    user_address: str
    block_height: int = 0
    confirmations: int = 0
    detected_at: int = 0

    @property
    def key(self) -> str:
        return f"{self.tx_id}:{self.vout}"

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# DESTINATION CHAIN
# =============================================================================

@dataclass
class Deposit:
    """Deposit record mirrored from the vault contract."""
    tx_id: str
    user: str
    amount: int
    unlock_time: int
    provider_id: str
    timestamp: int
    processed: bool = False

    @property
    def exists(self) -> bool:
        return self.timestamp > 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TxReceipt:
    """Normalized transaction receipt."""
    tx_hash: str
    status: int
    block_number: int = 0
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass
class OracleResult:
    is_valid: bool
    confidence: float
    validation_hash: str = ""
    attestations: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class RelayResult:
    """Outcome of running one candidate through the relay pipeline."""
    tx_id: str
    state: DepositState
    amount: int = 0
    register_tx_hash: Optional[str] = None
    mint_tx_hash: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == DepositState.MINTED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


# =============================================================================
# STAKING
# =============================================================================

@dataclass(frozen=True)
class SlashingEvent:
    """Immutable slashing record."""
    amount: int
    reason: str
    severity: Severity
    timestamp: int
    affected_delegators: int = 0

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "reason": self.reason,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "affected_delegators": self.affected_delegators,
        }


@dataclass
class FinalityProvider:
    id: str
    name: str
    address: str
    public_key: str
    commission: float

    # Performance (percent)
    reputation: float = 100.0
    uptime: float = 100.0

    total_delegated: int = 0
    delegator_count: int = 0
    voting_power: int = 0
    commission_earned: int = 0
    rewards_distributed: int = 0
    slashing_history: List[SlashingEvent] = field(default_factory=list)

    is_active: bool = True
    joined_epoch: int = 1
    max_delegation: int = 0
    self_stake: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "public_key": self.public_key,
            "commission": self.commission,
            "reputation": round(self.reputation, 4),
            "uptime": round(self.uptime, 4),
            "total_delegated": self.total_delegated,
            "delegator_count": self.delegator_count,
            "voting_power": self.voting_power,
            "commission_earned": self.commission_earned,
            "rewards_distributed": self.rewards_distributed,
            "slashing_history": [e.to_dict() for e in self.slashing_history],
            "is_active": self.is_active,
            "joined_epoch": self.joined_epoch,
            "max_delegation": self.max_delegation,
            "self_stake": self.self_stake,
        }


@dataclass
class RewardInfo:
    accumulated: int = 0
    last_distribution: int = 0
    annual_rate: float = 0.0


@dataclass
class SlashingRecord:
    penalty_amount: int = 0
    events: List[SlashingEvent] = field(default_factory=list)


@dataclass
class StakingPosition:
    """A delegation created from one accepted deposit."""
    tx_id: str
    staker_address: str
    amount: int
    provider_id: str
    created_at: int
    unlock_time: int
    status: PositionStatus = PositionStatus.ACTIVE
    voting_power: int = 0
    rewards: RewardInfo = field(default_factory=RewardInfo)
    slashing: SlashingRecord = field(default_factory=SlashingRecord)
    unbonding_started: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "staker_address": self.staker_address,
            "amount": self.amount,
            "provider_id": self.provider_id,
            "created_at": self.created_at,
            "unlock_time": self.unlock_time,
            "status": self.status.value,
            "voting_power": self.voting_power,
            "rewards": asdict(self.rewards),
            "slashing": {
                "penalty_amount": self.slashing.penalty_amount,
                "events": [e.to_dict() for e in self.slashing.events],
            },
            "unbonding_started": self.unbonding_started,
        }


@dataclass
class NetworkStats:
    total_staked: int = 0
    total_delegators: int = 0
    active_providers: int = 0
    average_commission: float = 0.0
    total_rewards_distributed: int = 0
    total_slashed: int = 0
    network_uptime: float = 100.0
    current_epoch: int = 1

    def to_dict(self) -> dict:
        return asdict(self)
