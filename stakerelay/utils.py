# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Helpers

Unit conversion, format checks, log masking and the periodic task runner
shared by the relayer and the staking engine.
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable

from .types import SATOSHI_PER_BTC, TOKEN_SCALE

log = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^[a-fA-F0-9]{64}$")
EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

# Synthetic transaction ids accepted by the relay in test deployments
TEST_TX_PREFIXES = ("test_", "duplicate_test_", "integration_test_", "perf_test_")


def is_valid_tx_hash(tx_id: str) -> bool:
    return bool(tx_id) and bool(TX_HASH_RE.match(tx_id))


def is_test_tx_id(tx_id: str) -> bool:
    return bool(tx_id) and tx_id.startswith(TEST_TX_PREFIXES)


def is_valid_evm_address(address: str) -> bool:
    return bool(address) and bool(EVM_ADDRESS_RE.match(address))


def sats_to_btc(sats: int) -> float:
    return sats / SATOSHI_PER_BTC


def format_btc(sats: int, decimals: int = 8) -> str:
    return f"{sats / SATOSHI_PER_BTC:.{decimals}f} BTC"


def to_token_units(sats: int) -> int:
    """Convert 8-decimal source units to 18-decimal token units."""
    return sats * TOKEN_SCALE


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 10.0) -> float:
    """Exponential backoff before retry number `attempt` (1-based)."""
    return min(base * (2 ** (attempt - 1)), cap)


def mask_secret(secret: str, visible_prefix: int = 6, visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. NEVER log full keys."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"


async def run_periodic(name: str, interval: float,
                       step: Callable[[], Awaitable[None]],
                       stop: asyncio.Event) -> None:
    """Run `step` every `interval` seconds until `stop` is set.

    The first run happens after one interval. A failing step is logged and the
    loop keeps going. Setting `stop` never interrupts a step in progress.
    """
    log.info(f"{name} started (every {interval}s)")
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass
        try:
            await step()
        except Exception as e:
            log.error(f"{name} error: {e}")
    log.info(f"{name} stopped")
