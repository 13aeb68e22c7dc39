"""Test configuration and fixtures for StakeRelay."""
import random

import httpx
import pytest

from stakerelay.config import RelayerConfig
from stakerelay.errors import ChainCallError
from stakerelay.events import EventBus
from stakerelay.ledger_client import LocalLedger
from stakerelay.relay import DepositRelayController
from stakerelay.relayer import Relayer
from stakerelay.scanner import ExplorerClient
from stakerelay.staking import StakingLedger
from stakerelay.types import DepositCandidate

NOW = 1_700_000_000
USER = "0x" + "ab" * 20
TX_A = "a" * 64
TX_B = "b" * 64


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FlakyLedger(LocalLedger):
    """LocalLedger whose register call fails the first `failures` times."""

    def __init__(self, failures: int = 1, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    async def register_deposit(self, tx_id, user, amount, unlock_time, provider_id):
        if self.failures > 0:
            self.failures -= 1
            self.calls.append(("register-failed", tx_id))
            raise ChainCallError("connection reset by peer")
        return await super().register_deposit(tx_id, user, amount, unlock_time, provider_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def ledger(clock):
    """In-process vault with fp1 and fp2 authorized."""
    return LocalLedger(clock=clock)


@pytest.fixture
def engine(clock, bus):
    """Staking engine subscribed to the bus, seeded for deterministic drift."""
    eng = StakingLedger(rng=random.Random(42), clock=clock)
    eng.attach(bus)
    return eng


@pytest.fixture
def controller(ledger, bus, engine, sleeps, clock):
    return DepositRelayController(ledger, bus=bus, sleep=sleeps, clock=clock)


@pytest.fixture
def make_candidate(clock):
    """Factory for deposit candidates."""

    def _make(tx_id=TX_A, amount=250_000_000, unlock_offset=86400,
              provider_id="fp1", user=USER, vout=0):
        return DepositCandidate(
            tx_id=tx_id,
            vout=vout,
            amount=amount,
            unlock_time=int(clock()) + unlock_offset,
            provider_id=provider_id,
            user_address=user,
            block_height=100,
            confirmations=3,
            detected_at=int(clock()),
        )

    return _make


@pytest.fixture
def config():
    cfg = RelayerConfig()
    cfg.explorer_url = "https://explorer.test/api"
    cfg.watch_address = "tb1qwatched"
    cfg.min_confirmations = 1
    return cfg


@pytest.fixture
def explorer_state():
    """Mutable explorer contents served by `mock_explorer`."""
    return {
        "utxos": [],
        "txs": {},
        "tip": 100,
        "fail": False,
    }


@pytest.fixture
def mock_explorer(explorer_state):
    """ExplorerClient backed by httpx.MockTransport."""

    def handler(request: httpx.Request) -> httpx.Response:
        if explorer_state["fail"]:
            return httpx.Response(503, text="service unavailable")
        path = request.url.path.removeprefix("/api")
        if path.startswith("/address/") and path.endswith("/utxo"):
            return httpx.Response(200, json=explorer_state["utxos"])
        if path == "/blocks/tip/height":
            return httpx.Response(200, text=str(explorer_state["tip"]))
        if path.startswith("/tx/"):
            tx = explorer_state["txs"].get(path[len("/tx/"):])
            if tx is None:
                return httpx.Response(404, text="Transaction not found")
            return httpx.Response(200, json=tx)
        return httpx.Response(404, text="not found")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExplorerClient("https://explorer.test/api", client=client)


def p2wsh_utxo(txid, vout=0, value=100_000_000, height=98, confirmed=True,
               script_type="v0_p2wsh"):
    entry = {
        "txid": txid,
        "vout": vout,
        "value": value,
        "status": {"confirmed": confirmed, "block_height": height if confirmed else None},
    }
    if script_type is not None:
        entry["scriptpubkey_type"] = script_type
    return entry


@pytest.fixture
def relayer(config, ledger, mock_explorer, clock, sleeps):
    return Relayer(config, ledger, explorer=mock_explorer, rng=random.Random(7),
                   clock=clock, sleep=sleeps)
