# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Source Scanner

Polls a watched source-chain address (mempool.space style explorer API) and
turns staking outputs into deposit candidates.

An output is a staking output when its locking script is a segwit v0
script-hash (P2WSH). Each output is keyed by "txid:vout" and emitted at most
once: the key is marked seen before the candidate leaves the scanner.
Outputs that do not have enough confirmations yet are left unmarked and
picked up by a later poll.
"""

import json
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import httpx

from .errors import ExplorerError
from .events import DEPOSIT_DETECTED, EventBus
from .types import DepositCandidate, Utxo

log = logging.getLogger(__name__)

STAKING_SCRIPT_TYPES = ("v0_p2wsh", "witness_v0_scripthash")

EXPLORER_TIMEOUT = 10.0


def is_staking_script(script_type: Optional[str]) -> bool:
    return script_type in STAKING_SCRIPT_TYPES


# =============================================================================
# EXPLORER CLIENT
# =============================================================================

class ExplorerClient:
    """Thin async client for the source-chain explorer."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = EXPLORER_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str):
        url = f"{self.base_url}{path}"
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ExplorerError(f"GET {path} failed: {e}") from e
        if "json" in resp.headers.get("content-type", ""):
            return resp.json()
        return resp.text

    async def get_utxos(self, address: str) -> List[Utxo]:
        data = await self._get(f"/address/{address}/utxo")
        if not isinstance(data, list):
            raise ExplorerError(f"Unexpected UTXO response for {address}")
        return [Utxo.from_explorer(entry) for entry in data]

    async def get_transaction(self, txid: str) -> dict:
        data = await self._get(f"/tx/{txid}")
        if not isinstance(data, dict):
            raise ExplorerError(f"Unexpected transaction response for {txid}")
        return data

    async def get_tip_height(self) -> int:
        data = await self._get("/blocks/tip/height")
        try:
            return int(data)
        except (TypeError, ValueError):
            raise ExplorerError(f"Unexpected tip height: {data!r}")


# =============================================================================
# SCANNER
# =============================================================================

class SourceScanner:
    """Detects new staking outputs on a watched address."""

    def __init__(self, explorer: ExplorerClient, user_address: str,
                 provider_id: str = "fp1", lock_duration: int = 30 * 86400,
                 min_confirmations: int = 0, bus: Optional[EventBus] = None,
                 seen_file: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        self.explorer = explorer
        self.user_address = user_address
        self.provider_id = provider_id
        self.lock_duration = lock_duration
        self.min_confirmations = min_confirmations
        self.bus = bus
        self.clock = clock
        self.seen_file = Path(seen_file) if seen_file else None
        self.seen: Set[str] = set()
        self.last_scan_time: float = 0
        self.scan_count = 0
        self._load()

    # -------------------------------------------------------------------------
    # Seen set
    # -------------------------------------------------------------------------

    def _load(self):
        if self.seen_file and self.seen_file.exists():
            try:
                with open(self.seen_file) as f:
                    data = json.load(f)
                self.seen = set(data.get("seen", []))
                log.info(f"Loaded {len(self.seen)} seen outputs from {self.seen_file}")
            except Exception as e:
                log.error(f"Failed to load seen outputs: {e}")

    def save(self):
        """Persist the seen set (atomic write via temp file + rename)."""
        if not self.seen_file:
            return
        self.seen_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.seen_file.with_suffix(".tmp")
        with open(tmp_file, "w") as f:
            json.dump({"seen": sorted(self.seen)}, f, indent=2)
        tmp_file.replace(self.seen_file)

    def mark_seen(self, key: str) -> None:
        self.seen.add(key)
        self.save()

    def release(self, key: str) -> bool:
        """Forget an output so the next poll can detect it again."""
        if key not in self.seen:
            return False
        self.seen.discard(key)
        self.save()
        log.info(f"Released output {key} for re-detection")
        return True

    def release_tx(self, tx_id: str) -> int:
        """Release every seen output of a transaction."""
        keys = [k for k in self.seen if k.split(":", 1)[0] == tx_id]
        for key in keys:
            self.seen.discard(key)
        if keys:
            self.save()
            log.info(f"Released {len(keys)} output(s) of {tx_id} for re-detection")
        return len(keys)

    # -------------------------------------------------------------------------
    # Scan
    # -------------------------------------------------------------------------

    async def _script_type(self, utxo: Utxo) -> Optional[str]:
        if utxo.script_type:
            return utxo.script_type
        tx = await self.explorer.get_transaction(utxo.txid)
        outputs = tx.get("vout", [])
        if utxo.vout < len(outputs):
            return outputs[utxo.vout].get("scriptpubkey_type")
        return None

    async def scan(self, address: str) -> List[DepositCandidate]:
        """Return staking outputs of `address` not emitted before.

        Explorer failures are logged and produce an empty result.
        """
        try:
            utxos = await self.explorer.get_utxos(address)
            tip_height = await self.explorer.get_tip_height()
        except ExplorerError as e:
            log.error(f"Scan of {address} failed: {e}")
            return []

        self.scan_count += 1
        self.last_scan_time = self.clock()
        log.debug(f"Found {len(utxos)} UTXOs at {address} (tip {tip_height})")

        candidates = []
        for utxo in utxos:
            if utxo.key in self.seen:
                continue

            try:
                script_type = await self._script_type(utxo)
            except ExplorerError as e:
                log.warning(f"Could not classify output {utxo.key}: {e}")
                continue
            if not is_staking_script(script_type):
                log.debug(f"Skipping non-staking output {utxo.key} ({script_type})")
                continue

            confirmations = 0
            if utxo.confirmed and utxo.block_height:
                confirmations = max(tip_height - utxo.block_height + 1, 0)
            if confirmations < self.min_confirmations:
                log.info(f"Output {utxo.key} has {confirmations}/"
                         f"{self.min_confirmations} confirmations, deferring")
                continue

            now = int(self.clock())
            candidate = DepositCandidate(
                tx_id=utxo.txid,
                vout=utxo.vout,
                amount=utxo.value,
                unlock_time=now + self.lock_duration,
                provider_id=self.provider_id,
                user_address=self.user_address,
                block_height=utxo.block_height,
                confirmations=confirmations,
                detected_at=now,
            )

            self.mark_seen(utxo.key)
            log.info(f"New staking deposit: {utxo.key} ({utxo.value} sats, "
                     f"{confirmations} confirmations)")
            if self.bus:
                await self.bus.emit(DEPOSIT_DETECTED, candidate.to_dict())
            candidates.append(candidate)

        return candidates

    def status(self) -> Dict[str, object]:
        return {
            "seen_outputs": len(self.seen),
            "scan_count": self.scan_count,
            "last_scan_time": self.last_scan_time,
            "min_confirmations": self.min_confirmations,
        }
