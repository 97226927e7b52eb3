"""
Health checks - liveness and dependency readiness

- liveness: the process is up (no dependency checks)
- readiness: DB, Redis (closure queue), Celery broker, plus the closure
  backlog and circuit breaker states for diagnostics
"""
from datetime import timedelta
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import func, select, text

from app.core.circuit_breaker import CircuitBreaker
from app.core.clock import utcnow
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal
from app.db.models.conversation import Conversation
from app.domain.services.closure_queue import SCHEDULE_KEY
from app.state_machine.states import ConversationState

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Filtered error strings, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """Ping the Celery broker"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def _closure_backlog() -> dict[str, Any]:
    """
    Conversations overdue for closing and queued jobs.

    An overdue count that keeps growing means both the queue dispatcher and
    the backup sweep are not running.
    """
    backlog: dict[str, Any] = {"overdue": None, "queued": None}
    grace = timedelta(seconds=2 * settings.CLOSURE_SWEEP_INTERVAL_SECONDS)
    try:
        async with AsyncSessionLocal() as session:
            backlog["overdue"] = await session.scalar(
                select(func.count(Conversation.id)).where(
                    Conversation.state == ConversationState.WAITING_CLOSE.value,
                    Conversation.close_at <= utcnow() - grace,
                )
            )
    except Exception as e:
        logger.warning("Closure backlog check failed", extra_data={"error": str(e)})
    try:
        client = await get_redis()
        backlog["queued"] = await client.zcard(SCHEDULE_KEY)
    except Exception as e:
        logger.warning("Closure queue size check failed", extra_data={"error": str(e)})
    return backlog


async def check_readiness() -> dict[str, Any]:
    """
    Returns ``status`` ("healthy" or "degraded") and one entry per dependency.

    Redis is reported but does not degrade the service: conversations still
    close through the backup sweep without it.
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
    }

    required_ok = checks["db"] == _CHECK_OK and checks["celery"] == _CHECK_OK
    overall_status = _STATUS_HEALTHY if required_ok else _STATUS_DEGRADED

    if not all(v == _CHECK_OK for v in checks.values()):
        logger.warning("Readiness check reported failures", extra_data=checks)

    return {
        "status": overall_status,
        **checks,
        "closure_backlog": await _closure_backlog(),
        "circuit_breakers": CircuitBreaker.snapshot_all(),
    }
