# Copyright (c) 2025 The StakeRelay developers
# Distributed under the MIT software license

"""
StakeRelay - Status API

Read-only views over a running relayer.

Endpoints:
  GET /api/status              relayer, scanner and relay counters
  GET /api/staking/stats       network stats and position summary
  GET /api/providers           finality providers
  GET /api/positions           staking positions (?provider=fp1&status=active)
  GET /api/deposits/{tx_id}    relay result and mirrored deposit record
"""

import time
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from . import __version__


def create_app(relayer) -> FastAPI:
    app = FastAPI(title="StakeRelay", version=__version__)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    engine = relayer.engine
    relay = relayer.relay

    @app.get("/api/status")
    async def get_status():
        """Relayer health and counters."""
        return {**relayer.status(), "timestamp": time.time()}

    @app.get("/api/staking/stats")
    async def get_staking_stats():
        stats = engine.get_stats()
        return {
            "network": stats["network"],
            "positions": stats["positions"],
            "current_epoch": stats["current_epoch"],
            "last_reward_run": stats["last_reward_run"],
            "last_epoch_update": stats["last_epoch_update"],
        }

    @app.get("/api/providers")
    async def get_providers():
        providers = sorted(engine.providers.values(),
                           key=lambda fp: fp.voting_power, reverse=True)
        return {
            "providers": [fp.to_dict() for fp in providers],
            "count": len(providers),
        }

    @app.get("/api/providers/{provider_id}")
    async def get_provider(provider_id: str):
        fp = engine.get_provider(provider_id)
        if fp is None:
            raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_id}")
        return fp.to_dict()

    @app.get("/api/positions")
    async def get_positions(provider: Optional[str] = None, status: Optional[str] = None):
        """List positions, optionally filtered by provider and status."""
        positions = [
            p.to_dict() for p in engine.positions.values()
            if (provider is None or p.provider_id == provider)
            and (status is None or p.status.value == status)
        ]
        return {"positions": positions, "count": len(positions)}

    @app.get("/api/deposits/{tx_id}")
    async def get_deposit(tx_id: str):
        result = relay.get_result(tx_id)
        deposit = relay.get_deposit(tx_id)
        if result is None and deposit is None:
            raise HTTPException(status_code=404, detail=f"Unknown deposit: {tx_id}")
        position = engine.get_position(tx_id)
        return {
            "tx_id": tx_id,
            "relay": result.to_dict() if result else None,
            "deposit": deposit.to_dict() if deposit else None,
            "position": position.to_dict() if position else None,
        }

    return app
