"""
FleetFlow Route Engine — FastAPI Backend
Route synthesis, live re-optimization and real-time dispatch notifications
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from db.database import engine, init_models
from routers import realtime, routes
from services.notifications import dispatcher_loop
from services.reoptimizer import monitor

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    logger.info("FleetFlow API starting...")
    if settings.DB_CREATE_ALL:
        await init_models()

    tasks = [asyncio.create_task(dispatcher_loop(), name="notification-dispatcher")]
    if settings.REOPTIMIZE_WORKER_ENABLED:
        tasks.append(asyncio.create_task(monitor.run_forever(), name="reoptimize-sweep"))
    yield
    # Shutdown
    for task in tasks:
        task.cancel()
    for task in tasks:
        with suppress(asyncio.CancelledError):
            await task
    await engine.dispose()
    logger.info("FleetFlow API shut down.")


app = FastAPI(
    title="FleetFlow Route Engine API",
    description="Multi-stop route synthesis and live re-optimization backend",
    version="2.0.0",
    lifespan=lifespan,
)

# ── CORS ───────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ────────────────────────────────────────────────
app.include_router(routes.router, prefix="/api/routes", tags=["Routes"])
app.include_router(realtime.router, tags=["Real-time"])


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "FleetFlow API v2",
        "reoptimize_worker": settings.REOPTIMIZE_WORKER_ENABLED,
    }
