"""Tests for the status API."""
import asyncio

import pytest
from fastapi.testclient import TestClient

from stakerelay.api import create_app

from tests.conftest import TX_A, TX_B, USER


@pytest.fixture
def api(relayer, make_candidate):
    asyncio.run(relayer.relay.process(make_candidate(tx_id=TX_A, amount=150_000_000)))
    asyncio.run(relayer.relay.process(make_candidate(tx_id=TX_B, unlock_offset=-1)))
    return TestClient(create_app(relayer))


class TestStatusApi:

    def test_status(self, api):
        data = api.get("/api/status").json()
        assert data["relay"]["minted"] == 1
        assert data["relay"]["rejected"] == 1
        assert data["finality_provider"] == "fp1"
        assert "timestamp" in data

    def test_staking_stats(self, api):
        data = api.get("/api/staking/stats").json()
        assert data["network"]["total_staked"] == 150_000_000
        assert data["positions"]["active"] == 1
        assert data["current_epoch"] == 1

    def test_providers(self, api):
        data = api.get("/api/providers").json()
        assert data["count"] == 3
        assert data["providers"][0]["id"] == "fp1"
        assert api.get("/api/providers/fp2").json()["commission"] == 0.03
        assert api.get("/api/providers/fp9").status_code == 404

    def test_positions_filter(self, api):
        assert api.get("/api/positions").json()["count"] == 1
        assert api.get("/api/positions?provider=fp2").json()["count"] == 0
        positions = api.get("/api/positions?status=active").json()["positions"]
        assert positions[0]["staker_address"] == USER

    def test_deposit(self, api):
        data = api.get(f"/api/deposits/{TX_A}").json()
        assert data["relay"]["state"] == "minted"
        assert data["deposit"]["processed"] is True
        assert data["position"]["amount"] == 150_000_000

        rejected = api.get(f"/api/deposits/{TX_B}").json()
        assert rejected["relay"]["state"] == "rejected"
        assert rejected["deposit"] is None

        assert api.get("/api/deposits/unknown").status_code == 404
