"""End-to-end tests: explorer -> relay -> vault -> staking engine."""
import asyncio
import signal

import pytest

from stakerelay.relayer import _run, main
from stakerelay.types import DepositState

from tests.conftest import TX_A, p2wsh_utxo


class TestPoll:

    @pytest.mark.asyncio
    async def test_poll_relays_new_deposit(self, relayer, ledger, explorer_state):
        explorer_state["utxos"] = [p2wsh_utxo(TX_A, value=250_000_000)]

        results = await relayer.poll_once()

        assert [r.state for r in results] == [DepositState.MINTED]
        assert ledger.balances[ledger.address] == 2_500_000_000_000_000_000
        position = relayer.engine.get_position(TX_A)
        assert position.amount == 250_000_000
        assert position.staker_address == ledger.address
        assert relayer.poll_count == 1

        assert await relayer.poll_once() == []

    @pytest.mark.asyncio
    async def test_failed_deposit_redetected(self, relayer, ledger, explorer_state):
        explorer_state["utxos"] = [p2wsh_utxo(TX_A)]
        ledger.pause()

        first = await relayer.poll_once()
        assert first[0].state == DepositState.FAILED
        assert first[0].attempts == 3
        assert f"{TX_A}:0" not in relayer.scanner.seen

        ledger.unpause()
        second = await relayer.poll_once()
        assert second[0].state == DepositState.MINTED
        assert ledger.deposits[TX_A].processed

    @pytest.mark.asyncio
    async def test_explorer_down(self, relayer, explorer_state):
        explorer_state["fail"] = True
        assert await relayer.poll_once() == []

    @pytest.mark.asyncio
    async def test_health(self, relayer, explorer_state):
        explorer_state["utxos"] = [p2wsh_utxo(TX_A)]
        await relayer.poll_once()

        health = await relayer.check_health()

        assert health["relay"]["minted"] == 1
        assert health["positions"] == 1
        assert health["token_supply"] == 100_000_000 * 10 ** 10
        assert relayer.status()["health"] == health


class TestRun:

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, relayer, explorer_state):
        relayer.cfg.poll_interval = 0.01
        explorer_state["utxos"] = [p2wsh_utxo(TX_A)]

        task = asyncio.create_task(relayer.run())
        await asyncio.sleep(0.1)
        relayer.stop()
        await asyncio.wait_for(task, timeout=2)

        assert relayer.poll_count > 1
        assert relayer.relay.get_result(TX_A).state == DepositState.MINTED
        assert all(t.done() for t in relayer._tasks)

    @pytest.mark.asyncio
    async def test_service_run_stops_on_signal_handler(self, relayer, explorer_state):
        relayer.cfg.poll_interval = 0.01
        loop = asyncio.get_running_loop()

        task = asyncio.create_task(_run(relayer, once=False, api_port=None))
        await asyncio.sleep(0.05)
        try:
            signal.raise_signal(signal.SIGTERM)
            await asyncio.wait_for(task, timeout=2)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

        assert relayer.poll_count >= 1


class TestCli:

    def test_missing_key_is_config_error(self, monkeypatch, tmp_path):
        monkeypatch.delenv("STAKERELAY_PRIVATE_KEY", raising=False)
        monkeypatch.delenv("RELAYER_PRIVATE_KEY", raising=False)
        assert main(["--env-file", str(tmp_path / "none.env")]) == 1

    def test_simulate_once(self, monkeypatch, tmp_path):
        import stakerelay.relayer as relayer_module

        polled = []

        async def fake_poll(self):
            polled.append(self.ledger.address)
            return []

        monkeypatch.setattr(relayer_module.Relayer, "poll_once", fake_poll)
        assert main(["--simulate", "--once", "--env-file", str(tmp_path / "none.env")]) == 0
        assert polled and polled[0].startswith("0x")
