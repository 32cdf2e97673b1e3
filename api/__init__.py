"""HTTP health API for the settlement worker.

This module provides HTTP endpoints for:
- Worker health (store and lock backend reachability)
- Reconciler run status
"""

import logging
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI

from .system import router as system_router

logger = logging.getLogger(__name__)

def create_app(
    scheduler,
    db_ping: Optional[Callable[[], Awaitable[bool]]] = None,
    lock_ping: Optional[Callable[[], Awaitable[bool]]] = None
) -> FastAPI:
    """Build the health API around a running scheduler.

    Args:
        scheduler: Scheduler whose jobs are reported
        db_ping: Coroutine function checking the store
        lock_ping: Coroutine function checking the lock backend
    """
    app = FastAPI(
        title="Escrow Settlement Worker",
        description="Health and reconciler status for the escrow settlement worker",
        version="1.0.0"
    )
    app.state.scheduler = scheduler
    app.state.db_ping = db_ping
    app.state.lock_ping = lock_ping
    app.include_router(system_router)

    @app.get("/")
    async def root():
        return {"service": "escrow-settlement-worker", "primary": scheduler.primary}

    return app

__all__ = ['create_app']
