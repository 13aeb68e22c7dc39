# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Error taxonomy

Terminal errors (ValidationError, AuthorizationError) stop a deposit pipeline.
ChainCallError and its subclasses are retried with backoff.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for relay errors."""


class ValidationError(RelayError):
    """Malformed or ineligible deposit. Never retried."""


class AuthorizationError(RelayError):
    """Unauthorized finality provider or caller. Never retried."""


class ChainCallError(RelayError):
    """Destination chain call failed (register, mint or receipt poll)."""


class LedgerRevertError(ChainCallError):
    """Contract call reverted."""

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        self.reason = reason
        self.tx_hash = tx_hash
        msg = f"Transaction reverted: {reason}"
        if tx_hash:
            msg += f" (tx {tx_hash})"
        super().__init__(msg)


class ReceiptTimeoutError(ChainCallError):
    """Receipt not observed within the monitoring window."""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"Transaction timeout after {timeout:.0f} seconds: {tx_hash}")


class ExplorerError(RelayError):
    """Source chain explorer query failed."""
