"""Liveness and readiness probes.

``/health`` always answers 200 so load-balancers see the process as alive.
``/ready`` answers 200 only once startup recovery has finished and Vault is
reachable, so orchestrators can gate traffic on it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from vault_broker import __version__
from vault_broker.lifecycle import LifecycleManager

logger = logging.getLogger(__name__)

# Keep probes fast even when Vault hangs.
_VAULT_HEALTH_TIMEOUT = 2.0

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "healthy", "version": __version__}


@router.get("/ready")
async def ready(request: Request) -> JSONResponse:
    manager: LifecycleManager | None = getattr(request.app.state, "manager", None)
    if manager is None or not manager.running:
        return JSONResponse(status_code=503, content={"status": "not_ready", "broker": "starting", "vault": "unknown"})

    try:
        vault_ok = await asyncio.wait_for(manager.ready(), timeout=_VAULT_HEALTH_TIMEOUT)
    except TimeoutError:
        logger.warning("Vault health check timed out after %.1fs", _VAULT_HEALTH_TIMEOUT)
        vault_ok = False

    if not vault_ok:
        return JSONResponse(status_code=503, content={"status": "not_ready", "broker": "running", "vault": "unavailable"})
    return JSONResponse(status_code=200, content={"status": "ready", "broker": "running", "vault": "ok"})
