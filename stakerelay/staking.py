# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Staking Ledger Engine

In-memory model of finality providers and delegation positions.

Driven by:
  - delegation-created events (one position per minted deposit)
  - reward distribution timer   (default hourly)
  - slashing check timer        (default every 30 minutes)
  - epoch update timer          (default every 6 hours)

NetworkStats is rebuilt from the live collections after every mutation.
The reward and slashing numbers are illustrative, not protocol accurate.

Usage:
    engine = StakingLedger(StakingParams(), bus=bus, rng=random.Random(7))
    engine.attach(bus)
    tasks = engine.start(stop_event)
"""

import asyncio
import logging
import math
import random
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .config import StakingParams
from .errors import ValidationError
from .events import (
    DELEGATION_CREATED, EPOCH_UPDATED, REWARDS_DISTRIBUTED, SLASHING_EXECUTED,
    EventBus,
)
from .types import (
    SATOSHI_PER_BTC, FinalityProvider, NetworkStats, PositionStatus, RewardInfo,
    Severity, SlashingEvent, StakingPosition,
)
from .utils import format_btc, run_periodic

log = logging.getLogger(__name__)

SECONDS_PER_YEAR = 365.25 * 24 * 3600

REPUTATION_MIN, REPUTATION_MAX = 10.0, 100.0
UPTIME_MIN, UPTIME_MAX = 90.0, 100.0

MAJOR_SEVERITY_THRESHOLD = 0.7
MIN_UPTIME_FACTOR = 0.8

# Epoch drift
UPTIME_DRIFT = 1.0
HIGH_UPTIME, LOW_UPTIME = 98.0, 95.0
REPUTATION_GAIN, REPUTATION_LOSS = 0.1, 0.5

DEFAULT_PROVIDERS = [
    {
        "id": "fp1",
        "name": "Babylon Finality Provider Alpha",
        "address": "bc1qbabylon_finality_provider_1",
        "public_key": "0x1234567890abcdef1234567890abcdef12345678",
        "commission": 0.05,
        "reputation": 95.0,
        "uptime": 99.0,
        "joined_epoch": 1,
        "max_delegation": 50_000_000_000_000,
        "self_stake": 10 * SATOSHI_PER_BTC,
    },
    {
        "id": "fp2",
        "name": "Babylon Finality Provider Beta",
        "address": "bc1qbabylon_finality_provider_2",
        "public_key": "0xabcdef1234567890abcdef1234567890abcdef12",
        "commission": 0.03,
        "reputation": 92.0,
        "uptime": 97.0,
        "joined_epoch": 1,
        "max_delegation": 30_000_000_000_000,
        "self_stake": 5 * SATOSHI_PER_BTC,
    },
    {
        "id": "fp3",
        "name": "Babylon Finality Provider Gamma",
        "address": "bc1qbabylon_finality_provider_3",
        "public_key": "0xfedcba0987654321fedcba0987654321fedcba09",
        "commission": 0.08,
        "reputation": 88.0,
        "uptime": 95.0,
        "joined_epoch": 2,
        "max_delegation": 20_000_000_000_000,
        "self_stake": 2 * SATOSHI_PER_BTC,
    },
]


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def voting_power(amount: int, reputation: float, uptime: float) -> int:
    """floor(amount in BTC x reputation% x uptime% x 1000)"""
    return math.floor((amount / SATOSHI_PER_BTC) * (reputation / 100) * (uptime / 100) * 1000)


# =============================================================================
# SLASHING POLICY
# =============================================================================

class SlashingPolicy:
    """Decides whether a slashing check should punish someone."""

    def select(self, engine: "StakingLedger") -> Optional[Tuple[str, str]]:
        raise NotImplementedError


class SimulatedSlashingPolicy(SlashingPolicy):
    """Random misbehavior: with `probability` per check, slash one provider
    that has delegations."""

    def __init__(self, probability: float = 0.02):
        self.probability = probability

    def select(self, engine: "StakingLedger") -> Optional[Tuple[str, str]]:
        if engine.rng.random() >= self.probability:
            return None
        candidates = [fp for fp in engine.providers.values()
                      if fp.is_active and fp.total_delegated > 0]
        if not candidates:
            return None
        fp = engine.rng.choice(candidates)
        reason = "unavailability" if fp.uptime < LOW_UPTIME else "double_sign"
        return fp.id, reason


# =============================================================================
# ENGINE
# =============================================================================

class StakingLedger:
    """Owns FinalityProvider and StakingPosition state."""

    def __init__(self, params: Optional[StakingParams] = None,
                 bus: Optional[EventBus] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time,
                 policy: Optional[SlashingPolicy] = None,
                 providers: Optional[List[Dict[str, Any]]] = None):
        self.params = params or StakingParams()
        self.bus = bus
        self.rng = rng or random.Random()
        self.clock = clock
        self.policy = policy or SimulatedSlashingPolicy(self.params.slashing_probability)

        self.providers: Dict[str, FinalityProvider] = {}
        self.positions: Dict[str, StakingPosition] = {}
        self.stats = NetworkStats()
        self.current_epoch = 1
        self.slashing_requests: Deque[Tuple[str, str]] = deque()
        self.last_reward_run: Optional[int] = None
        self.last_epoch_update: Optional[int] = None

        for entry in (DEFAULT_PROVIDERS if providers is None else providers):
            fp = FinalityProvider(**entry)
            self.providers[fp.id] = fp
        self.recompute_network_stats()
        log.info(f"Staking ledger ready with {len(self.providers)} finality providers "
                 f"(reward rate {self.params.base_reward_rate:.1%}, "
                 f"slashing rate {self.params.slashing_rate:.1%})")

    def _now(self) -> int:
        return int(self.clock())

    async def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.bus:
            await self.bus.emit(event, payload)

    def attach(self, bus: EventBus) -> None:
        """Subscribe to delegation-created on `bus` and publish to it."""
        self.bus = bus
        bus.on(DELEGATION_CREATED, self.on_delegation_created)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get_provider(self, provider_id: str) -> Optional[FinalityProvider]:
        return self.providers.get(provider_id)

    def get_position(self, tx_id: str) -> Optional[StakingPosition]:
        return self.positions.get(tx_id)

    def positions_for(self, provider_id: str, active_only: bool = True) -> List[StakingPosition]:
        return [p for p in self.positions.values()
                if p.provider_id == provider_id and (p.is_active or not active_only)]

    # -------------------------------------------------------------------------
    # Derived values
    # -------------------------------------------------------------------------

    def update_provider_voting_power(self, fp: FinalityProvider) -> int:
        fp.voting_power = voting_power(fp.total_delegated, fp.reputation, fp.uptime)
        return fp.voting_power

    def recompute_network_stats(self) -> NetworkStats:
        """Rebuild NetworkStats from providers and positions."""
        active_positions = [p for p in self.positions.values() if p.is_active]
        active_providers = [fp for fp in self.providers.values() if fp.is_active]

        stats = NetworkStats(current_epoch=self.current_epoch)
        stats.total_staked = sum(p.amount for p in active_positions)
        stats.total_delegators = len(active_positions)
        stats.active_providers = len(active_providers)
        if active_providers:
            stats.average_commission = (
                sum(fp.commission for fp in active_providers) / len(active_providers)
            )
            stats.network_uptime = (
                sum(fp.uptime for fp in active_providers) / len(active_providers)
            )
        stats.total_rewards_distributed = sum(
            p.rewards.accumulated for p in self.positions.values())
        stats.total_slashed = sum(
            p.slashing.penalty_amount for p in self.positions.values())

        self.stats = stats
        return stats

    # -------------------------------------------------------------------------
    # Delegation
    # -------------------------------------------------------------------------

    def create_position(self, tx_id: str, staker_address: str, amount: int,
                        provider_id: str, unlock_time: int) -> StakingPosition:
        """Create a delegation for an accepted deposit."""
        if tx_id in self.positions:
            raise ValidationError(f"Position already exists for {tx_id}")
        fp = self.providers.get(provider_id)
        if fp is None:
            raise ValidationError(f"Unknown finality provider: {provider_id}")
        if not fp.is_active:
            raise ValidationError(f"Finality provider {provider_id} is not active")
        if amount < 0:
            raise ValidationError(f"Negative amount for {tx_id}")

        now = self._now()
        if unlock_time <= now:
            raise ValidationError(f"Unlock time must be after creation time for {tx_id}")

        position = StakingPosition(
            tx_id=tx_id,
            staker_address=staker_address,
            amount=amount,
            provider_id=provider_id,
            created_at=now,
            unlock_time=unlock_time,
            voting_power=voting_power(amount, fp.reputation, fp.uptime),
            rewards=RewardInfo(last_distribution=now,
                               annual_rate=self.params.base_reward_rate),
        )
        self.positions[tx_id] = position

        fp.total_delegated += amount
        fp.delegator_count += 1
        self.update_provider_voting_power(fp)
        if fp.max_delegation and fp.total_delegated > fp.max_delegation:
            log.warning(f"{fp.name} is above its delegation cap "
                        f"({format_btc(fp.total_delegated)} > {format_btc(fp.max_delegation)})")

        self.recompute_network_stats()
        log.info(f"Delegation created: {tx_id} -> {fp.name}, {format_btc(amount)}, "
                 f"voting power {position.voting_power}")
        return position

    async def on_delegation_created(self, payload: Dict[str, Any]) -> None:
        self.create_position(
            tx_id=payload["tx_id"],
            staker_address=payload["staker"],
            amount=int(payload["amount"]),
            provider_id=payload["provider"],
            unlock_time=int(payload["unlock_time"]),
        )

    def begin_unbonding(self, tx_id: str) -> StakingPosition:
        """Stop reward accrual for an active position."""
        position = self.positions.get(tx_id)
        if position is None:
            raise ValidationError(f"No position for {tx_id}")
        if position.status != PositionStatus.ACTIVE:
            raise ValidationError(f"Position {tx_id} is {position.status.value}")
        position.status = PositionStatus.UNBONDING
        position.unbonding_started = self._now()
        self.recompute_network_stats()
        log.info(f"Position {tx_id} unbonding")
        return position

    def close_position(self, tx_id: str) -> StakingPosition:
        """Close an unbonding position after the unbonding period."""
        position = self.positions.get(tx_id)
        if position is None:
            raise ValidationError(f"No position for {tx_id}")
        if position.status != PositionStatus.UNBONDING:
            raise ValidationError(f"Position {tx_id} is not unbonding")
        remaining = position.unbonding_started + self.params.unbonding_period - self._now()
        if remaining > 0:
            raise ValidationError(f"Position {tx_id} still unbonding ({remaining}s left)")

        position.status = PositionStatus.CLOSED
        fp = self.providers.get(position.provider_id)
        if fp:
            fp.total_delegated = max(fp.total_delegated - position.amount, 0)
            fp.delegator_count = max(fp.delegator_count - 1, 0)
            self.update_provider_voting_power(fp)
        self.recompute_network_stats()
        log.info(f"Position {tx_id} closed ({format_btc(position.amount)} released)")
        return position

    def deactivate_provider(self, provider_id: str) -> bool:
        fp = self.providers.get(provider_id)
        if fp is None or not fp.is_active:
            return False
        fp.is_active = False
        self.recompute_network_stats()
        log.warning(f"Finality provider {fp.name} deactivated")
        return True

    # -------------------------------------------------------------------------
    # Rewards
    # -------------------------------------------------------------------------

    def calculate_reward(self, position: StakingPosition, now: int) -> int:
        fp = self.providers.get(position.provider_id)
        elapsed = max(now - position.rewards.last_distribution, 0)
        year_fraction = elapsed / SECONDS_PER_YEAR
        reward = position.amount * position.rewards.annual_rate * year_fraction
        if fp:
            reward *= (fp.reputation / 100) * max(MIN_UPTIME_FACTOR, fp.uptime / 100)
        return math.floor(reward)

    async def distribute_rewards(self) -> int:
        """Accrue rewards on every active position. Returns the total."""
        now = self._now()
        total = 0
        recipients = 0

        for position in self.positions.values():
            if not position.is_active:
                continue
            reward = self.calculate_reward(position, now)
            if reward <= 0:
                continue
            position.rewards.accumulated += reward
            position.rewards.last_distribution = now

            fp = self.providers.get(position.provider_id)
            if fp:
                fp.commission_earned += math.floor(reward * fp.commission)
                fp.rewards_distributed += reward
            total += reward
            recipients += 1

        self.last_reward_run = now
        self.recompute_network_stats()
        if total > 0:
            log.info(f"Distributed {total} sats of rewards to {recipients} positions")
        await self._emit(REWARDS_DISTRIBUTED, {
            "amount": total,
            "recipient_count": recipients,
            "timestamp": now,
        })
        return total

    # -------------------------------------------------------------------------
    # Slashing
    # -------------------------------------------------------------------------

    def request_slashing(self, provider_id: str, reason: str) -> None:
        """Queue a slashing for the next check."""
        self.slashing_requests.append((provider_id, reason))

    async def check_slashing_conditions(self) -> Optional[SlashingEvent]:
        if self.slashing_requests:
            provider_id, reason = self.slashing_requests.popleft()
        else:
            selected = self.policy.select(self)
            if selected is None:
                return None
            provider_id, reason = selected
        return await self.execute_slashing(provider_id, reason)

    async def execute_slashing(self, provider_id: str, reason: str,
                               severity: Optional[Severity] = None) -> Optional[SlashingEvent]:
        """Slash every active position delegated to `provider_id`."""
        fp = self.providers.get(provider_id)
        if fp is None:
            log.warning(f"Finality provider {provider_id} not found for slashing")
            return None

        if severity is None:
            severity = (Severity.MAJOR if self.rng.random() > MAJOR_SEVERITY_THRESHOLD
                        else Severity.MINOR)
        rate = self.params.slashing_rate
        if severity == Severity.MINOR:
            rate *= 0.5

        now = self._now()
        affected = self.positions_for(provider_id)
        slashed: List[Tuple[StakingPosition, int]] = []
        for position in affected:
            penalty = min(math.floor(position.amount * rate), position.amount)
            position.amount -= penalty
            position.slashing.penalty_amount += penalty
            slashed.append((position, penalty))

        total = sum(penalty for _, penalty in slashed)
        for position, penalty in slashed:
            position.slashing.events.append(SlashingEvent(
                amount=penalty, reason=reason, severity=severity,
                timestamp=now, affected_delegators=len(slashed),
            ))

        event = SlashingEvent(
            amount=total, reason=reason, severity=severity,
            timestamp=now, affected_delegators=len(slashed),
        )
        fp.total_delegated = max(fp.total_delegated - total, 0)
        fp.reputation = clamp(fp.reputation - self.params.reputation_penalty,
                              REPUTATION_MIN, REPUTATION_MAX)
        for position, _ in slashed:
            position.voting_power = voting_power(position.amount, fp.reputation, fp.uptime)
        fp.slashing_history.append(event)
        self.update_provider_voting_power(fp)
        self.recompute_network_stats()

        log.warning(f"SLASHING: {fp.name} ({reason}, {severity.value}) - "
                    f"{format_btc(total)} from {len(slashed)} delegators, "
                    f"reputation now {fp.reputation:.1f}")
        await self._emit(SLASHING_EXECUTED, {
            "provider": provider_id,
            "reason": reason,
            "severity": severity.value,
            "amount": total,
            "affected_delegators": len(slashed),
            "reputation": fp.reputation,
            "timestamp": now,
        })
        return event

    # -------------------------------------------------------------------------
    # Epochs
    # -------------------------------------------------------------------------

    def update_provider_performance(self) -> None:
        for fp in self.providers.values():
            drift = self.rng.uniform(-UPTIME_DRIFT, UPTIME_DRIFT)
            fp.uptime = clamp(fp.uptime + drift, UPTIME_MIN, UPTIME_MAX)
            if fp.uptime > HIGH_UPTIME:
                fp.reputation = min(REPUTATION_MAX, fp.reputation + REPUTATION_GAIN)
            elif fp.uptime < LOW_UPTIME:
                fp.reputation = max(REPUTATION_MIN, fp.reputation - REPUTATION_LOSS)
            fp.reputation = clamp(fp.reputation, REPUTATION_MIN, REPUTATION_MAX)
            self.update_provider_voting_power(fp)

    async def update_epoch(self) -> int:
        self.current_epoch += 1
        self.update_provider_performance()
        self.recompute_network_stats()
        self.last_epoch_update = self._now()

        ranked = sorted(self.providers.values(), key=lambda fp: fp.voting_power, reverse=True)
        log.info(f"Epoch updated to {self.current_epoch}")
        await self._emit(EPOCH_UPDATED, {
            "epoch": self.current_epoch,
            "network_uptime": self.stats.network_uptime,
            "top_providers": [
                {"id": fp.id, "name": fp.name, "voting_power": fp.voting_power}
                for fp in ranked[:3]
            ],
            "timestamp": self.last_epoch_update,
        })
        return self.current_epoch

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def start(self, stop: asyncio.Event) -> List[asyncio.Task]:
        """Launch the three periodic processes. They exit when `stop` is set."""
        p = self.params
        return [
            asyncio.create_task(run_periodic(
                "Reward distribution", p.reward_interval, self.distribute_rewards, stop)),
            asyncio.create_task(run_periodic(
                "Slashing check", p.slashing_interval, self.check_slashing_conditions, stop)),
            asyncio.create_task(run_periodic(
                "Epoch update", p.epoch_duration, self.update_epoch, stop)),
        ]

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {s.value: 0 for s in PositionStatus}
        for position in self.positions.values():
            by_status[position.status.value] += 1
        return {
            "network": self.stats.to_dict(),
            "positions": {
                "total": len(self.positions),
                **by_status,
            },
            "providers": [fp.to_dict() for fp in self.providers.values()],
            "current_epoch": self.current_epoch,
            "last_reward_run": self.last_reward_run,
            "last_epoch_update": self.last_epoch_update,
            "pending_slashing_requests": len(self.slashing_requests),
        }
