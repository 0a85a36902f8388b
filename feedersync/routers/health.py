"""Liveness endpoint for load balancers and the device fleet dashboard."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter

from feedersync.dependencies import AppSettings
from feedersync.services.postgres import fetchval

router = APIRouter(tags=["system"])
logger = logging.getLogger("feedersync.health")


async def _database_reachable() -> bool:
    try:
        await fetchval("SELECT 1")
    except Exception as exc:
        logger.warning("Health check DB probe failed: %s", exc)
        return False
    return True


@router.get("/health")
async def health_check(settings: AppSettings) -> dict[str, Any]:
    """Always 200 while the process is up; ``status`` reports the DB probe.

    ``signature_enforced`` lets operators confirm which device
    authentication strategy the instance started with.
    """
    db_ok = await _database_reachable()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "signature_enforced": settings.device_signature_enabled,
        "poll_interval_sec": settings.poll_interval_sec,
        "database": "connected" if db_ok else "unreachable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
