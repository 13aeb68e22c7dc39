# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Oracle validation

A validator confirms that a candidate deposit really exists on the source
chain before anything is written to the destination ledger. Only a static
validator ships; proof checking plugs in behind the same interface.
"""

import hashlib
import logging

from .types import DepositCandidate, OracleResult

log = logging.getLogger(__name__)


class OracleValidator:
    """Interface: validate(candidate) -> OracleResult."""

    async def validate(self, candidate: DepositCandidate) -> OracleResult:
        raise NotImplementedError


class StaticOracle(OracleValidator):
    """Accepts every candidate with a fixed confidence."""

    def __init__(self, confidence: float = 1.0, attestor: str = "static-oracle"):
        self.confidence = confidence
        self.attestor = attestor

    async def validate(self, candidate: DepositCandidate) -> OracleResult:
        digest = hashlib.sha256(
            f"{candidate.tx_id}:{candidate.vout}:{candidate.amount}".encode()
        ).hexdigest()
        log.debug(f"Oracle validated {candidate.tx_id} (confidence {self.confidence})")
        return OracleResult(
            is_valid=True,
            confidence=self.confidence,
            validation_hash="0x" + digest,
            attestations=[self.attestor],
        )
