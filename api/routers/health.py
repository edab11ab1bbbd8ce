"""
Health check endpoint.

Checks both Postgres (Job Store) and Redis (Work Broker) connectivity and
reports each one separately. Load balancers only look at the status code:
200 when both answer, 503 when either is down.

Admission fails open on Redis errors, so a 503 here with "redis" down means
jobs are still being recorded but dedup and budgets are not enforced.
"""

import logging

from fastapi import APIRouter, Depends, Response
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, get_redis

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    response: Response,
    db: AsyncSession = Depends(get_db),
    redis: Redis = Depends(get_redis),
) -> dict:
    """Check that Postgres and Redis are reachable."""
    checks = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["postgres"] = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Health check: Postgres unreachable: {e}")
        checks["postgres"] = "unreachable"

    try:
        await redis.ping()
        checks["redis"] = "ok"
    except (RedisError, OSError) as e:
        logger.error(f"Health check: Redis unreachable: {e}")
        checks["redis"] = "unreachable"

    healthy = all(v == "ok" for v in checks.values())
    if not healthy:
        response.status_code = 503
    return {"status": "healthy" if healthy else "unhealthy", **checks}
