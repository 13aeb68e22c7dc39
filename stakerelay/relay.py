# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Deposit Relay Controller

Drives one source-chain deposit through the destination ledger:

    detected -> oracle_validated -> authorized -> registered -> minted
                        \\                \\              \\
                         rejected         rejected       failed (retries exhausted)

Register and mint are retried together with exponential backoff. Contract
reverts that can never succeed (duplicate deposit, bad parameters, caller not
the relayer) end the pipeline immediately.

Every transaction id enters the pipeline at most once until it reaches a
terminal state. A failed id can be released so a later poll picks it up.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import (
    AuthorizationError, ChainCallError, LedgerRevertError, ReceiptTimeoutError,
    ValidationError,
)
from .events import (
    DELEGATION_CREATED, DEPOSIT_FAILED, DEPOSIT_MINTED, DEPOSIT_REGISTERED,
    EventBus,
)
from .ledger_client import LedgerClient
from .oracle import OracleValidator, StaticOracle
from .types import (
    MAX_SUPPLY_SATS, Deposit, DepositCandidate, DepositState, RelayResult,
)
from .utils import (
    backoff_delay, format_btc, is_test_tx_id, is_valid_evm_address,
    is_valid_tx_hash, to_token_units,
)

log = logging.getLogger(__name__)

# Revert reasons that will fail the same way on every retry
TERMINAL_REVERTS = (
    "already registered",
    "already processed",
    "not registered",
    "invalid transaction hash",
    "invalid user address",
    "amount must be greater than 0",
    "unlock time must be in future",
)
UNAUTHORIZED_REVERTS = (
    "only relayer can call",
    "unauthorized finality provider",
)


def classify_revert(error: LedgerRevertError) -> Exception:
    """Map a contract revert to the error class the retry loop acts on."""
    reason = error.reason.lower()
    if any(r in reason for r in UNAUTHORIZED_REVERTS):
        return AuthorizationError(error.reason)
    if any(r in reason for r in TERMINAL_REVERTS):
        return ValidationError(error.reason)
    return error


def validate_deposit(tx_id: str, user: str, amount: int, unlock_time: int,
                     now: Optional[int] = None) -> None:
    """Local checks run before any chain call. Raises ValidationError."""
    now = int(time.time()) if now is None else now
    if not tx_id:
        raise ValidationError("transaction id is required")
    if not (is_valid_tx_hash(tx_id) or is_test_tx_id(tx_id)):
        raise ValidationError(f"invalid transaction id: {tx_id}")
    if not is_valid_evm_address(user):
        raise ValidationError(f"invalid user address: {user}")
    if amount <= 0:
        raise ValidationError("amount must be positive")
    if amount > MAX_SUPPLY_SATS:
        raise ValidationError(f"amount exceeds maximum supply: {amount}")
    if unlock_time <= now:
        raise ValidationError("unlock time must be in future")


class DepositRelayController:
    """Relays deposit candidates to the destination ledger."""

    def __init__(self, ledger: LedgerClient,
                 oracle: Optional[OracleValidator] = None,
                 bus: Optional[EventBus] = None,
                 max_retries: int = 3,
                 backoff_base: float = 1.0,
                 backoff_cap: float = 10.0,
                 receipt_timeout: float = 120.0,
                 receipt_poll_interval: float = 2.0,
                 min_confidence: float = 0.75,
                 min_gas_balance: int = 0,
                 release_failed: bool = True,
                 on_release: Optional[Callable[[str], object]] = None,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep,
                 clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.oracle = oracle or StaticOracle()
        self.bus = bus
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.receipt_timeout = receipt_timeout
        self.receipt_poll_interval = receipt_poll_interval
        self.min_confidence = min_confidence
        self.min_gas_balance = min_gas_balance
        self.release_failed = release_failed
        self.on_release = on_release
        self.sleep = sleep
        self.clock = clock

        self.dispatched: set = set()
        # tx_id -> first attempt that wrote to the ledger, for the pipeline in flight
        self.chain_writes: Dict[str, int] = {}
        self.states: Dict[str, DepositState] = {}
        self.results: Dict[str, RelayResult] = {}
        self.deposits: Dict[str, Deposit] = {}

    @classmethod
    def from_config(cls, cfg, ledger: LedgerClient, **kwargs) -> "DepositRelayController":
        return cls(
            ledger,
            max_retries=cfg.max_retries,
            backoff_base=cfg.backoff_base,
            backoff_cap=cfg.backoff_cap,
            receipt_timeout=cfg.receipt_timeout,
            receipt_poll_interval=cfg.receipt_poll_interval,
            min_confidence=cfg.oracle_min_confidence,
            min_gas_balance=cfg.min_gas_balance_wei,
            release_failed=cfg.release_failed_outputs,
            **kwargs,
        )

    async def _emit(self, event: str, payload: dict) -> None:
        if self.bus:
            await self.bus.emit(event, payload)

    def _set_state(self, result: RelayResult, state: DepositState) -> None:
        result.state = state
        self.states[result.tx_id] = state
        log.debug(f"{result.tx_id}: {state.value}")

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def process(self, candidate: DepositCandidate) -> Optional[RelayResult]:
        """Run a candidate to a terminal state.

        Returns None when the transaction id is already in the pipeline or done.
        """
        tx_id = candidate.tx_id
        if tx_id in self.dispatched:
            log.warning(f"Output {candidate.key} not relayed: transaction {tx_id} is "
                        f"already relayed or in flight ({format_btc(candidate.amount)} skipped)")
            return None
        self.dispatched.add(tx_id)

        result = RelayResult(tx_id=tx_id, state=DepositState.DETECTED, amount=candidate.amount)
        self.results[tx_id] = result
        self._set_state(result, DepositState.DETECTED)
        log.info(f"Relaying deposit {tx_id}: {format_btc(candidate.amount)} "
                 f"-> {candidate.user_address} (provider {candidate.provider_id})")

        try:
            validate_deposit(tx_id, candidate.user_address, candidate.amount,
                             candidate.unlock_time, now=int(self.clock()))
            await self._check_oracle(candidate, result)
            await self._check_authorization(candidate, result)
        except (ValidationError, AuthorizationError) as e:
            return await self._reject(candidate, result, str(e))
        except Exception as e:
            result.error = str(e)
            return await self._fail(candidate, result)

        await self._relay_with_retry(candidate, result)
        return result

    async def process_batch(self, candidates: List[DepositCandidate]) -> List[RelayResult]:
        """Process candidates one after another, in detection order."""
        results = []
        for candidate in candidates:
            result = await self.process(candidate)
            if result is not None:
                results.append(result)
        return results

    async def _check_oracle(self, candidate: DepositCandidate, result: RelayResult) -> None:
        verdict = await self.oracle.validate(candidate)
        if not verdict.is_valid:
            raise ValidationError(f"oracle rejected deposit: {verdict.error or 'invalid'}")
        if verdict.confidence < self.min_confidence:
            raise ValidationError(
                f"oracle confidence {verdict.confidence:.2f} below {self.min_confidence:.2f}")
        self._set_state(result, DepositState.ORACLE_VALIDATED)

    async def _check_authorization(self, candidate: DepositCandidate, result: RelayResult) -> None:
        if not await self.ledger.is_provider_authorized(candidate.provider_id):
            raise AuthorizationError(
                f"finality provider {candidate.provider_id} is not authorized")
        self._set_state(result, DepositState.AUTHORIZED)

    async def _relay_with_retry(self, candidate: DepositCandidate, result: RelayResult) -> None:
        try:
            await self._retry_loop(candidate, result)
        finally:
            self.chain_writes.pop(candidate.tx_id, None)

    async def _retry_loop(self, candidate: DepositCandidate, result: RelayResult) -> None:
        for attempt in range(1, self.max_retries + 1):
            result.attempts = attempt
            try:
                await self._attempt(candidate, result)
                return
            except (ValidationError, AuthorizationError) as e:
                await self._reject(candidate, result, str(e))
                return
            except Exception as e:
                result.error = str(e)
                log.warning(f"{candidate.tx_id}: attempt {attempt}/{self.max_retries} "
                            f"failed: {e}")
                if attempt < self.max_retries:
                    delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                    log.info(f"{candidate.tx_id}: retrying in {delay:.1f}s")
                    await self.sleep(delay)

        await self._fail(candidate, result)

    async def _attempt(self, candidate: DepositCandidate, result: RelayResult) -> None:
        """One register + mint pass."""
        tx_id = candidate.tx_id

        if self.min_gas_balance:
            balance = await self.ledger.get_gas_balance()
            if balance < self.min_gas_balance:
                raise ChainCallError(
                    f"relayer gas balance too low: {balance} < {self.min_gas_balance} wei")

        existing = await self.ledger.get_deposit(tx_id)
        if existing is not None and existing.processed:
            self.deposits[tx_id] = existing
            if tx_id in self.chain_writes and self._matches(existing, candidate):
                log.info(f"{tx_id}: mint from attempt {self.chain_writes[tx_id]} "
                         f"landed on chain, completing")
                await self._complete(candidate, result, result.mint_tx_hash)
                return
            raise ValidationError("Deposit already processed")

        if existing is None:
            try:
                tx_hash = await self.ledger.register_deposit(
                    tx_id, candidate.user_address, candidate.amount,
                    candidate.unlock_time, candidate.provider_id)
                self.chain_writes.setdefault(tx_id, result.attempts)
                await self._monitor_transaction(tx_hash)
            except LedgerRevertError as e:
                self._raise_classified(e)
            result.register_tx_hash = tx_hash
            log.info(f"{tx_id}: registered (tx {tx_hash})")
            await self._emit(DEPOSIT_REGISTERED, {
                "tx_id": tx_id,
                "tx_hash": tx_hash,
                "user": candidate.user_address,
                "amount": candidate.amount,
                "provider": candidate.provider_id,
            })
        else:
            log.info(f"{tx_id}: already registered, continuing with mint")
        self._set_state(result, DepositState.REGISTERED)

        try:
            tx_hash = await self.ledger.mint(tx_id)
            self.chain_writes.setdefault(tx_id, result.attempts)
            result.mint_tx_hash = tx_hash
            await self._monitor_transaction(tx_hash)
        except LedgerRevertError as e:
            self._raise_classified(e)
        await self._complete(candidate, result, tx_hash)

    @staticmethod
    def _matches(deposit: Deposit, candidate: DepositCandidate) -> bool:
        return (deposit.user.lower() == candidate.user_address.lower()
                and deposit.amount == candidate.amount
                and deposit.provider_id == candidate.provider_id)

    async def _complete(self, candidate: DepositCandidate, result: RelayResult,
                        tx_hash: Optional[str]) -> None:
        """Mark a landed mint as done and announce the delegation."""
        tx_id = candidate.tx_id
        result.error = None
        self._set_state(result, DepositState.MINTED)

        try:
            deposit = await self.ledger.get_deposit(tx_id)
        except Exception as e:
            log.warning(f"{tx_id}: could not read minted deposit back: {e}")
            deposit = None
        if deposit is not None:
            self.deposits[tx_id] = deposit

        minted = to_token_units(candidate.amount)
        log.info(f"{tx_id}: minted {minted} token units to {candidate.user_address} "
                 f"(tx {tx_hash}, attempt {result.attempts})")
        await self._emit(DEPOSIT_MINTED, {
            "tx_id": tx_id,
            "tx_hash": tx_hash,
            "user": candidate.user_address,
            "amount": candidate.amount,
            "minted": minted,
            "attempts": result.attempts,
        })
        await self._emit(DELEGATION_CREATED, {
            "tx_id": tx_id,
            "staker": candidate.user_address,
            "amount": candidate.amount,
            "provider": candidate.provider_id,
            "unlock_time": candidate.unlock_time,
        })

    def _raise_classified(self, error: LedgerRevertError) -> None:
        classified = classify_revert(error)
        if classified is error:
            raise error
        raise classified from error

    async def _monitor_transaction(self, tx_hash: str):
        """Poll for a receipt. Raises on revert or timeout."""
        waited = 0.0
        while waited < self.receipt_timeout:
            try:
                receipt = await self.ledger.get_receipt(tx_hash)
            except Exception as e:
                log.debug(f"Receipt poll for {tx_hash} failed: {e}")
                receipt = None

            if receipt is not None:
                if receipt.succeeded:
                    return receipt
                reason = await self.ledger.get_revert_reason(tx_hash)
                raise LedgerRevertError(reason or "unknown reason", tx_hash)

            await self.sleep(self.receipt_poll_interval)
            waited += self.receipt_poll_interval

        raise ReceiptTimeoutError(tx_hash, self.receipt_timeout)

    # -------------------------------------------------------------------------
    # Terminal states
    # -------------------------------------------------------------------------

    async def _reject(self, candidate: DepositCandidate, result: RelayResult,
                      reason: str) -> RelayResult:
        result.error = reason
        self._set_state(result, DepositState.REJECTED)
        log.warning(f"Deposit {candidate.tx_id} rejected: {reason}")
        await self._emit(DEPOSIT_FAILED, {
            "tx_id": candidate.tx_id,
            "state": result.state.value,
            "amount": candidate.amount,
            "attempts": result.attempts,
            "error": reason,
        })
        return result

    async def _fail(self, candidate: DepositCandidate, result: RelayResult) -> RelayResult:
        self._set_state(result, DepositState.FAILED)
        if result.attempts:
            stage = f"after {result.attempts} attempt(s)"
        else:
            stage = "before relaying (oracle or authorization check)"
        log.error(f"Deposit {candidate.tx_id} FAILED {stage}: "
                  f"{format_btc(candidate.amount)} - {result.error}")
        await self._emit(DEPOSIT_FAILED, {
            "tx_id": candidate.tx_id,
            "state": result.state.value,
            "amount": candidate.amount,
            "attempts": result.attempts,
            "error": result.error,
        })
        if self.release_failed:
            self.release(candidate.tx_id)
        return result

    def release(self, tx_id: str) -> None:
        """Allow a transaction id to be relayed again."""
        self.dispatched.discard(tx_id)
        if self.on_release:
            self.on_release(tx_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_result(self, tx_id: str) -> Optional[RelayResult]:
        return self.results.get(tx_id)

    def get_deposit(self, tx_id: str) -> Optional[Deposit]:
        return self.deposits.get(tx_id)

    def summary(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in DepositState}
        for state in self.states.values():
            counts[state.value] += 1
        counts["dispatched"] = len(self.dispatched)
        return counts
