"""
FastAPI dependency injection.

How this works:
- An endpoint declares `db: AsyncSession = Depends(get_db)`
- FastAPI calls get_db() before your endpoint runs, creating a DB session
- Your endpoint receives the session and uses it
- After the endpoint returns (or raises), the session is automatically closed

The engine services (admission registry, error tracking, schedules, stuck-task
detector, circuit breakers) are built once in the app lifespan and stored on
app.state; the getters below just hand them out. Tests swap any of them through
app.dependency_overrides.
"""

from typing import AsyncGenerator

from fastapi import Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from errors.circuit_breaker import CircuitBreakerRegistry
from errors.tracking import ErrorTrackingService
from models.base import AsyncSessionLocal
from queues.registry import QueueRegistry
from recovery.stuck_tasks import StuckTaskDetector
from scheduler.recurring import RecurringScheduler


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yields an async database session, auto-closes when the request ends."""
    async with AsyncSessionLocal() as session:
        yield session


async def get_redis(request: Request) -> Redis:
    """Returns the async Redis client stored on the app during startup."""
    return request.app.state.redis


def get_registry(request: Request) -> QueueRegistry:
    return request.app.state.registry


def get_tracking(request: Request) -> ErrorTrackingService:
    return request.app.state.tracking


def get_scheduler(request: Request) -> RecurringScheduler:
    return request.app.state.scheduler


def get_detector(request: Request) -> StuckTaskDetector:
    return request.app.state.detector


def get_breakers(request: Request) -> CircuitBreakerRegistry:
    return request.app.state.breakers
