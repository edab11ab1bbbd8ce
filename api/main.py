"""
FastAPI application factory.

This file:
1. Creates the FastAPI app
2. Runs startup logic (create DB tables, connect to Redis, build the engine services)
3. Registers all routers (health, jobs, errors, schedules, queues)
4. Runs shutdown logic (close connections)

The `lifespan` context manager is FastAPI's way of handling startup/shutdown.
It replaces the older @app.on_event("startup") pattern.

The API process admits jobs and serves operator reads. It never executes jobs:
that's the worker process (python -m worker.main).

To run:  uvicorn api.main:app --host 0.0.0.0 --port 8000 --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from redis import Redis
from redis.asyncio import Redis as AsyncRedis

from api.routers import errors, health, jobs, queues, schedules
from config.settings import settings
from errors.circuit_breaker import CircuitBreakerRegistry
from errors.tracking import ErrorTrackingService
from models.base import Base, SyncSessionLocal, async_engine, sync_engine
from queues.broker import RedisBroker
from queues.compensation import CompensationLog
from queues.registry import QueueRegistry
from recovery.stuck_tasks import InMemoryStuckCounterStore, StuckTaskDetector
from scheduler.recurring import RecurringScheduler

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Runs on startup (before yield) and shutdown (after yield).

    Startup:
    - Creates all DB tables if they don't exist (safe to run multiple times)
    - Connects to Redis (async client for /health, sync client for the broker)
    - Builds the services the routers depend on

    Shutdown:
    - Closes Redis connections
    - Disposes the DB engines (closes connection pools)
    """
    # ── Startup ─────────────────────────────────────────────────
    logger.info("Creating database tables...")
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.redis = AsyncRedis.from_url(settings.redis_url)
    broker_client = Redis.from_url(settings.redis_url, decode_responses=True)
    broker = RedisBroker(broker_client)

    compensation_log = CompensationLog()
    tracking = ErrorTrackingService(SyncSessionLocal)
    app.state.tracking = tracking
    app.state.registry = QueueRegistry(SyncSessionLocal, broker, compensation_log)
    app.state.scheduler = RecurringScheduler(broker)
    app.state.detector = StuckTaskDetector(
        SyncSessionLocal, broker, tracking, InMemoryStuckCounterStore(), compensation_log
    )
    # Same Redis as the workers: their breaker trips show up here
    app.state.breakers = CircuitBreakerRegistry(broker_client)
    logger.info(f"API ready — broker prefix: {settings.BROKER_PREFIX}")

    yield  # app is running and serving requests between startup and shutdown

    # ── Shutdown ────────────────────────────────────────────────
    await app.state.redis.close()
    broker_client.close()
    await async_engine.dispose()
    sync_engine.dispose()
    logger.info("API shut down")


def create_app() -> FastAPI:
    """Factory function that builds and configures the FastAPI application."""
    app = FastAPI(
        title="Job Engine",
        description="Job admission with dedup and daily budgets, classified retries, and stuck-task self-healing",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Register routers — each one adds its endpoints to the app
    app.include_router(health.router)
    app.include_router(jobs.router)
    app.include_router(errors.router)
    app.include_router(schedules.router)
    app.include_router(queues.router)

    return app


# This is what uvicorn imports: `uvicorn api.main:app`
app = create_app()
