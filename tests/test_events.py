"""Tests for the event bus and the periodic runner."""
import asyncio

import pytest

from stakerelay.events import DEPOSIT_DETECTED, DEPOSIT_MINTED, EventBus
from stakerelay.utils import is_test_tx_id, mask_secret, run_periodic, to_token_units


class TestEventBus:

    def test_unknown_event(self):
        with pytest.raises(ValueError):
            EventBus().on("deposit-exploded", print)

    @pytest.mark.asyncio
    async def test_handlers_run_in_order(self):
        bus = EventBus()
        seen = []

        async def second(payload):
            seen.append(("async", payload["n"]))

        bus.on(DEPOSIT_DETECTED, lambda p: seen.append(("sync", p["n"])))
        bus.on(DEPOSIT_DETECTED, second)
        await bus.emit(DEPOSIT_DETECTED, {"n": 1})

        assert seen == [("sync", 1), ("async", 1)]
        assert bus.counts[DEPOSIT_DETECTED] == 1

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self):
        bus = EventBus()
        seen = []

        def broken(_payload):
            raise RuntimeError("boom")

        bus.on(DEPOSIT_MINTED, broken)
        bus.on(DEPOSIT_MINTED, seen.append)
        await bus.emit(DEPOSIT_MINTED, {"tx_id": "x"})

        assert seen == [{"tx_id": "x"}]

    @pytest.mark.asyncio
    async def test_off(self):
        bus = EventBus()
        seen = []
        bus.on(DEPOSIT_MINTED, seen.append)
        bus.off(DEPOSIT_MINTED, seen.append)
        await bus.emit(DEPOSIT_MINTED, {})
        assert seen == []


class TestRunPeriodic:

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_loop(self):
        stop = asyncio.Event()
        calls = []

        async def step():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run fails")
            if len(calls) >= 3:
                stop.set()

        await asyncio.wait_for(run_periodic("test", 0.01, step, stop), timeout=2)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_stop_before_first_run(self):
        stop = asyncio.Event()
        stop.set()
        calls = []

        async def step():
            calls.append(1)

        await run_periodic("test", 10, step, stop)
        assert calls == []


class TestHelpers:

    def test_mask_secret(self):
        assert mask_secret("0x1234567890abcdef") == "0x1234...cdef"
        assert mask_secret("short") == "***"

    def test_test_prefixes(self):
        assert is_test_tx_id("perf_test_001")
        assert not is_test_tx_id("prod_001")

    def test_token_units(self):
        assert to_token_units(250_000_000) == 2_500_000_000_000_000_000
