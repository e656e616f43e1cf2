"""
Hestia API Endpoints
"""

import asyncio
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel

from core.hestia.exceptions import DataUnavailableError
from core.hestia.models import utcnow
from core.hestia.settings import UserScheduleSettings, is_valid_zone, normalize_zone

router = APIRouter()

# Collaborators (set by app.py during startup)
container = None


class SettingsUpdate(BaseModel):
    """Request body for updating a user's schedule settings."""
    comfort_hours: Optional[int] = None
    turn_off_percentile: Optional[float] = None
    max_comfort_gap_hours: Optional[int] = None
    auto_apply: Optional[bool] = None
    zone: Optional[str] = None


def _container():
    if container is None:
        raise HTTPException(status_code=503, detail="Hestia is not initialized")
    return container


@router.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": "Hestia",
        "version": "0.1.0",
        "ha_connected": container is not None and container.ha_client is not None,
        "lease_store": container.config.lease_store if container else None,
    }


@router.get("/api/schedule/preview")
async def preview_schedule(
    zone: Optional[str] = Query(None, description="Price zone, default zone if omitted"),
    comfort_hours: Optional[int] = Query(None),
    turn_off_percentile: Optional[float] = Query(None),
    max_comfort_gap_hours: Optional[int] = Query(None),
):
    """Preview a schedule without touching any user state."""
    c = _container()
    overrides = {
        "comfort_hours": comfort_hours,
        "turn_off_percentile": turn_off_percentile,
        "max_comfort_gap_hours": max_comfort_gap_hours,
    }
    settings = UserScheduleSettings.from_dict({
        **c.settings_repository.defaults.to_dict(),
        **{k: v for k, v in overrides.items() if v is not None},
    })

    now = utcnow()
    try:
        decision = await asyncio.to_thread(c.service.generate_decision, zone, settings, now)
    except DataUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    return {
        **decision.to_snapshot(),
        "max_comfort_gap_hours": decision.max_comfort_gap(now),
    }


@router.post("/api/users/{user_id}/schedule/run")
async def run_schedule(user_id: str):
    """Run the compute-and-apply cycle for one user now."""
    c = _container()
    lease = c.coordinator.try_acquire_manual(user_id)
    if lease is None:
        raise HTTPException(status_code=409, detail=f"A schedule run for {user_id} is already in progress")

    try:
        result = await asyncio.to_thread(c.service.run_cycle, user_id, utcnow())
    finally:
        c.coordinator.release(lease)

    logger.info(f"Manual run for {user_id}: {result.message}")
    return result.to_dict()


@router.get("/api/users/{user_id}/schedule/state")
async def get_schedule_state(user_id: str):
    """Pending Comfort run and device status for a user."""
    c = _container()
    state = c.state_repository.load(user_id)
    applied = c.service.applied_state(user_id)
    return {
        "user_id": user_id,
        **state.to_dict(),
        "phase": c.service.engine.phase(state, utcnow()).value,
        "device_status": c.service.device_status(user_id),
        "applied_state": applied.value if applied else None,
    }


@router.get("/api/users/{user_id}/history")
async def get_history(
    user_id: str,
    hours: int = Query(24, ge=1, le=24 * 30, description="Hours of history to return"),
):
    """Recorded decisions for a user, newest first."""
    c = _container()
    since = utcnow() - timedelta(hours=hours)
    entries = c.history_repository.load(user_id, since=since)
    return {
        "user_id": user_id,
        "count": len(entries),
        "entries": [
            {"timestamp": e.timestamp_utc.isoformat(), "schedule": e.snapshot}
            for e in entries
        ],
    }


@router.put("/api/users/{user_id}/settings")
async def update_settings(user_id: str, update: SettingsUpdate):
    """Update a user's schedule settings. Out-of-range values are clamped when used."""
    c = _container()
    changes = update.model_dump(exclude_none=True)
    if "zone" in changes:
        if not is_valid_zone(changes["zone"]):
            raise HTTPException(status_code=400, detail=f"Invalid price zone: {changes['zone']}")
        changes["zone"] = normalize_zone(changes["zone"])

    current = c.settings_repository.get_user_schedule_settings(user_id)
    settings = UserScheduleSettings.from_dict({**current.to_dict(), **changes})
    c.settings_repository.save(user_id, settings)

    _, warnings = settings.validated(24, default_zone=c.config.default_zone)
    logger.info(f"Updated settings for {user_id}: {settings.to_dict()}")
    return {"user_id": user_id, "settings": settings.to_dict(), "warnings": warnings}
