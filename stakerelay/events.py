# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Lifecycle events

Components never touch each other's state; they publish events here.
Handlers run in subscription order on the event loop, one after another.
A failing handler is logged and does not stop the others.
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

log = logging.getLogger(__name__)

DEPOSIT_DETECTED = "deposit-detected"
DEPOSIT_REGISTERED = "deposit-registered"
DEPOSIT_MINTED = "deposit-minted"
DEPOSIT_FAILED = "deposit-failed"
DELEGATION_CREATED = "delegation-created"
REWARDS_DISTRIBUTED = "rewards-distributed"
SLASHING_EXECUTED = "slashing-executed"
EPOCH_UPDATED = "epoch-updated"

ALL_EVENTS = (
    DEPOSIT_DETECTED,
    DEPOSIT_REGISTERED,
    DEPOSIT_MINTED,
    DEPOSIT_FAILED,
    DELEGATION_CREATED,
    REWARDS_DISTRIBUTED,
    SLASHING_EXECUTED,
    EPOCH_UPDATED,
)

Handler = Callable[[Dict[str, Any]], Any]


class EventBus:
    """Minimal in-process publisher. Handlers may be sync or async."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self.counts: Dict[str, int] = defaultdict(int)

    def on(self, event: str, handler: Handler) -> None:
        if event not in ALL_EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self.counts[event] += 1
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error(f"Handler for {event} failed: {e}")
