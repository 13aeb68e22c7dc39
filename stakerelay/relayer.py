# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Relayer

Wires the scanner, relay controller and staking engine together over one
event bus, and runs them on a single asyncio loop:

  poll loop     scan watched address -> relay new deposits (every poll_interval)
  health loop   balances and counters (every health_interval)
  engine timers rewards / slashing / epochs
  status API    optional FastAPI app served by uvicorn on the same loop

Usage:
    stakerelay                       # real chain, settings from .env / env
    stakerelay --simulate --debug    # in-process ledger
    stakerelay --once                # single poll, then exit
    stakerelay --api-port 8080       # also serve the status API
"""

import argparse
import asyncio
import logging
import random
import signal
import sys
import time
from typing import Any, Callable, Dict, List, Optional

import uvicorn

from .api import create_app
from .config import RelayerConfig, load_env_file
from .events import (
    DELEGATION_CREATED, DEPOSIT_DETECTED, DEPOSIT_FAILED, DEPOSIT_MINTED,
    EPOCH_UPDATED, REWARDS_DISTRIBUTED, SLASHING_EXECUTED, EventBus,
)
from .ledger_client import LedgerClient, LocalLedger, Web3LedgerClient
from .oracle import OracleValidator
from .relay import DepositRelayController
from .scanner import ExplorerClient, SourceScanner
from .staking import StakingLedger
from .types import RelayResult
from .utils import format_btc, run_periodic

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Relayer:
    """Owns every component and the background tasks."""

    def __init__(self, cfg: RelayerConfig, ledger: LedgerClient,
                 explorer: Optional[ExplorerClient] = None,
                 oracle: Optional[OracleValidator] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time,
                 sleep=asyncio.sleep):
        self.cfg = cfg
        self.ledger = ledger
        self.clock = clock
        self.started_at = clock()
        self.bus = EventBus()

        self.engine = StakingLedger(cfg.staking, rng=rng, clock=clock)
        self.engine.attach(self.bus)

        self.explorer = explorer or ExplorerClient(cfg.explorer_url)
        self.scanner = SourceScanner(
            self.explorer,
            user_address=ledger.address,
            provider_id=cfg.finality_provider,
            lock_duration=cfg.lock_duration,
            min_confirmations=cfg.min_confirmations,
            bus=self.bus,
            seen_file=cfg.seen_outputs_file,
            clock=clock,
        )
        self.relay = DepositRelayController.from_config(
            cfg, ledger,
            oracle=oracle,
            bus=self.bus,
            on_release=self.scanner.release_tx,
            sleep=sleep,
            clock=clock,
        )

        self.poll_count = 0
        self.last_poll_time: Optional[float] = None
        self.last_health: Dict[str, Any] = {}
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._register_observers()

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def _register_observers(self):
        self.bus.on(DEPOSIT_DETECTED, self._log_detected)
        self.bus.on(DEPOSIT_MINTED, self._log_minted)
        self.bus.on(DEPOSIT_FAILED, self._log_failed)
        self.bus.on(DELEGATION_CREATED, self._log_delegation)
        self.bus.on(REWARDS_DISTRIBUTED, self._log_rewards)
        self.bus.on(SLASHING_EXECUTED, self._log_slashing)
        self.bus.on(EPOCH_UPDATED, self._log_epoch)

    def _log_detected(self, payload):
        log.info(f"Deposit detected: {payload['tx_id']}:{payload['vout']} "
                 f"{format_btc(payload['amount'])}")

    def _log_minted(self, payload):
        log.info("=" * 60)
        log.info(f"DEPOSIT RELAYED: {payload['tx_id']}")
        log.info(f"  Amount:  {format_btc(payload['amount'])}")
        log.info(f"  Minted:  {payload['minted']} token units -> {payload['user']}")
        log.info(f"  Tx:      {payload['tx_hash']}")
        log.info("=" * 60)

    def _log_failed(self, payload):
        log.error(f"Deposit {payload['tx_id']} {payload['state']}: {payload['error']} "
                  f"({format_btc(payload['amount'])}, {payload['attempts']} attempts)")

    def _log_delegation(self, payload):
        position = self.engine.get_position(payload["tx_id"])
        if position is not None:
            log.info(f"Staking position {position.tx_id}: voting power "
                     f"{position.voting_power}, unlocks at {position.unlock_time}")

    def _log_rewards(self, payload):
        if payload["amount"]:
            log.info(f"Rewards: {payload['amount']} sats to {payload['recipient_count']} "
                     f"positions (total {self.engine.stats.total_rewards_distributed})")

    def _log_slashing(self, payload):
        log.warning(f"Slashing on {payload['provider']}: {payload['reason']} "
                    f"({payload['severity']}), {format_btc(payload['amount'])} from "
                    f"{payload['affected_delegators']} delegators")

    def _log_epoch(self, payload):
        top = ", ".join(f"{p['id']}={p['voting_power']}" for p in payload["top_providers"])
        log.info(f"Epoch {payload['epoch']}: network uptime "
                 f"{payload['network_uptime']:.2f}%, top providers: {top}")

    # -------------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------------

    async def poll_once(self) -> List[RelayResult]:
        candidates = await self.scanner.scan(self.cfg.watch_address)
        self.poll_count += 1
        self.last_poll_time = self.clock()
        if not candidates:
            return []
        log.info(f"Processing {len(candidates)} new deposit(s)")
        return await self.relay.process_batch(candidates)

    async def check_health(self) -> Dict[str, Any]:
        health = {
            "gas_balance": await self.ledger.get_gas_balance(),
            "token_supply": await self.ledger.get_total_supply(),
            "relay": self.relay.summary(),
            "positions": len(self.engine.positions),
            "seen_outputs": len(self.scanner.seen),
            "timestamp": self.clock(),
        }
        self.last_health = health
        log.info(f"Health: gas {health['gas_balance']} wei, supply {health['token_supply']}, "
                 f"minted {health['relay']['minted']}, failed {health['relay']['failed']}, "
                 f"positions {health['positions']}")
        if self.cfg.min_gas_balance_wei and health["gas_balance"] < self.cfg.min_gas_balance_wei:
            log.warning("Relayer gas balance below minimum, relays will fail")
        return health

    async def log_startup(self) -> None:
        log.info("=" * 60)
        log.info("StakeRelay starting")
        log.info(f"  Watch address: {self.cfg.watch_address}")
        log.info(f"  Explorer:      {self.cfg.explorer_url}")
        log.info(f"  Relayer:       {self.ledger.address}")
        log.info(f"  Provider:      {self.cfg.finality_provider}")
        log.info(f"  Poll interval: {self.cfg.poll_interval}s")
        try:
            info = await self.ledger.get_network_info()
            log.info(f"  Chain:         id {info.get('chain_id')}, "
                     f"block {info.get('block_number')}")
            authorized = await self.ledger.is_provider_authorized(self.cfg.finality_provider)
            log.info(f"  Provider authorized: {authorized}")
            if not authorized:
                log.warning(f"Finality provider {self.cfg.finality_provider} is not "
                            f"authorized; deposits will be rejected")
        except Exception as e:
            log.error(f"Destination chain not reachable: {e}")
        log.info("=" * 60)

    def start(self) -> List[asyncio.Task]:
        self._tasks = self.engine.start(self._stop)
        self._tasks.append(asyncio.create_task(run_periodic(
            "Deposit poll", self.cfg.poll_interval, self._poll_step, self._stop)))
        self._tasks.append(asyncio.create_task(run_periodic(
            "Health check", self.cfg.health_interval, self.check_health, self._stop)))
        return self._tasks

    async def _poll_step(self) -> None:
        await self.poll_once()

    async def run(self, api_port: Optional[int] = None, api_host: str = "0.0.0.0") -> None:
        """Run until stop() is called."""
        await self.log_startup()
        try:
            await self.poll_once()
        except Exception as e:
            log.error(f"Initial poll failed: {e}")
        self.start()

        server = None
        if api_port:
            server = uvicorn.Server(uvicorn.Config(
                create_app(self), host=api_host, port=api_port, log_level="warning"))
            api_task = asyncio.create_task(server.serve())
            api_task.add_done_callback(lambda _: self.stop())
            self._tasks.append(api_task)
            log.info(f"Status API on http://{api_host}:{api_port}/api/status")

        await self._stop.wait()
        log.info("Shutting down...")
        if server is not None:
            server.should_exit = True
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.close()
        log.info("Stopped")

    def stop(self) -> None:
        self._stop.set()

    async def close(self) -> None:
        await self.explorer.close()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        return {
            "relayer": self.ledger.address,
            "watch_address": self.cfg.watch_address,
            "finality_provider": self.cfg.finality_provider,
            "uptime": self.clock() - self.started_at,
            "poll_count": self.poll_count,
            "last_poll_time": self.last_poll_time,
            "scanner": self.scanner.status(),
            "relay": self.relay.summary(),
            "events": dict(self.bus.counts),
            "health": self.last_health,
            "epoch": self.engine.current_epoch,
        }


# =============================================================================
# MAIN
# =============================================================================

def build_ledger(cfg: RelayerConfig, simulate: bool = False) -> LedgerClient:
    if simulate:
        log.info("Simulation mode: using in-process ledger")
        return LocalLedger()
    return Web3LedgerClient(
        cfg.evm_rpc_url,
        cfg.private_key,
        cfg.vault_address,
        cfg.token_address,
        chain_id=cfg.chain_id,
        gas_limit=cfg.gas_limit,
    )


async def _run(relayer: Relayer, once: bool, api_port: Optional[int]) -> None:
    if once:
        try:
            results = await relayer.poll_once()
            for result in results:
                log.info(f"{result.tx_id}: {result.state.value} "
                         f"(attempts {result.attempts}, error {result.error})")
            log.info(f"Relay summary: {relayer.relay.summary()}")
        finally:
            await relayer.close()
        return

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, relayer.stop)
        except NotImplementedError:
            pass  # Windows
    await relayer.run(api_port=api_port)


def main(argv=None):
    parser = argparse.ArgumentParser(description="StakeRelay - staking deposit relayer")
    parser.add_argument("--env-file", default=".env", help="Env file to load (default: .env)")
    parser.add_argument("--simulate", action="store_true", help="Use the in-process ledger")
    parser.add_argument("--poll", type=int, default=None, help="Poll interval in seconds")
    parser.add_argument("--api-port", type=int, default=None, help="Serve the status API on this port")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--once", action="store_true", help="Poll once and exit")
    args = parser.parse_args(argv)

    load_env_file(args.env_file)
    cfg = RelayerConfig.from_env()
    if args.poll:
        cfg.poll_interval = args.poll

    logging.basicConfig(
        level=logging.DEBUG if args.debug else getattr(logging, cfg.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        ledger = build_ledger(cfg, simulate=args.simulate)
    except ValueError as e:
        log.error(f"Configuration error: {e}")
        return 1

    relayer = Relayer(cfg, ledger)
    try:
        asyncio.run(_run(relayer, args.once, args.api_port))
    except KeyboardInterrupt:
        log.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
