from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query

from ..core.config import settings
from ..core.timeutil import now_local
from ..domain.interfaces import Repository
from ..services.history import weather_history
from ..services.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


# Dependency getters; main.py points them at the real objects via app.dependency_overrides.
def get_orchestrator() -> Orchestrator:  # overridden in main
    raise RuntimeError("Orchestrator dependency not configured")

def get_store() -> Repository:  # overridden in main
    raise RuntimeError("Store dependency not configured")


@router.get("/status")
async def get_status(svc: Orchestrator = Depends(get_orchestrator)):
    return {"app": settings.app_name, "now_local": now_local().isoformat(), **svc.status()}


@router.get("/live")
async def get_live(svc: Orchestrator = Depends(get_orchestrator)):
    snap = svc.snapshot
    w = snap.weather
    return {
        "config": snap.config,
        "variables": {
            path: {**s.as_payload(), "name": snap.names.get(path, ""), "captured_at": s.captured_at.isoformat()}
            for path, s in snap.variables.items()
        },
        "weather": {
            "indoor_temperature": w.indoor_temperature,
            "outdoor_temperature": w.outdoor_temperature,
            "humidity": w.humidity,
            "pressure": w.pressure,
            "indoor_humidity": w.indoor_humidity,
            "channels": {str(k): asdict(c) for k, c in w.channels.items()},
            "captured_at": w.captured_at.isoformat(),
        } if w else None,
        "control": {
            "was_below_threshold": snap.control_state.was_below_threshold,
            "was_actuator_negative": snap.control_state.was_actuator_negative,
            "manual_override_active": snap.control_state.manual_override_active,
            "manual_override_started_at": (
                snap.control_state.manual_override_started_at.isoformat()
                if snap.control_state.manual_override_started_at else None
            ),
            "last_action": snap.last_action,
            "trace": snap.trace,
        },
        "temperature_error": snap.temperature_error,
        "actuator_position": snap.actuator_position,
        "last_cycle_utc": snap.last_cycle_utc.isoformat() if snap.last_cycle_utc else None,
        "last_error": snap.last_error,
    }


@router.get("/weather/history")
async def get_weather_history(
    range_key: Literal["24h", "7d", "1m"] = Query("24h", alias="range"),
    store: Repository = Depends(get_store),
):
    try:
        rows = await weather_history(store, range_key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"range": range_key, "count": len(rows), "rows": rows}
