"""System health and reconciler status endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psutil
from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

# Create router
router = APIRouter(
    prefix="/system",
    tags=["System"]
)

class SystemHealth(BaseModel):
    """Model for system health data."""
    status: str
    uptime: float
    cpu_usage: float
    memory_usage: float
    database_status: str
    lock_backend_status: str
    primary_worker: bool
    scheduler_started: bool

class JobStatus(BaseModel):
    """Model for one scheduled reconciler."""
    name: str
    interval: float
    running: bool
    runs: int
    failures: int
    last_started: Optional[str] = None
    last_duration: Optional[float] = None
    last_error: Optional[str] = None

class ReconcilerStatus(BaseModel):
    primary: bool
    started: bool
    jobs: List[JobStatus]

async def _probe(check) -> str:
    if check is None:
        return "unknown"
    try:
        return "ok" if await check() else "unavailable"
    except Exception:
        return "unavailable"

@router.get("/health", response_model=SystemHealth)
async def get_health(request: Request, response: Response) -> Dict[str, Any]:
    """Report worker health.

    The worker is degraded when the store is unreachable. An unreachable
    lock backend is reported but does not degrade it, since locks fail open.
    """
    state = request.app.state
    process = psutil.Process()
    database_status = await _probe(getattr(state, 'db_ping', None))
    lock_status = await _probe(getattr(state, 'lock_ping', None))
    scheduler = state.scheduler

    healthy = database_status != "unavailable"
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        'status': "healthy" if healthy else "degraded",
        'uptime': datetime.now(timezone.utc).timestamp() - process.create_time(),
        'cpu_usage': process.cpu_percent(interval=None),
        'memory_usage': process.memory_percent(),
        'database_status': database_status,
        'lock_backend_status': lock_status,
        'primary_worker': scheduler.primary,
        'scheduler_started': scheduler.started,
    }

@router.get("/reconcilers", response_model=ReconcilerStatus)
async def get_reconcilers(request: Request) -> Dict[str, Any]:
    """Per-reconciler run counts, timings and last error."""
    return request.app.state.scheduler.status()
