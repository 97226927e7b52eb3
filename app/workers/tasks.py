"""
Celery Tasks - conversation closure

- ``dispatch_closure_jobs``: claims due jobs from the Redis queue and closes
  the conversations they point at
- ``sweep_due_conversations``: database-only backup for jobs that were never
  enqueued or got lost
- ``sweep_stale_awaiting_conversations``: closes conversations left waiting
  for a user choice past the awaiting timeout
"""
import asyncio
from contextlib import contextmanager

from app.core.logging import get_logger, set_correlation_id
from app.core.redis_client import task_redis
from app.db.database import get_task_session
from app.domain.services.closure_queue import RedisClosureQueue
from app.domain.services.closure_scheduler import ClosureScheduler
from app.state_machine.manager import ConversationStore
from app.workers.celery_app import celery_app

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            asyncio.set_event_loop(None)


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _dispatch_closure_jobs() -> dict:
    async with task_redis() as redis, get_task_session() as db:
        scheduler = ClosureScheduler(ConversationStore(db), RedisClosureQueue(redis))
        return await scheduler.dispatch_due_jobs()


async def _sweep_due() -> int:
    async with get_task_session() as db:
        return await ClosureScheduler(ConversationStore(db)).sweep_due()


async def _sweep_stale_awaiting() -> int:
    async with get_task_session() as db:
        return await ClosureScheduler(ConversationStore(db)).sweep_stale_awaiting()


@celery_app.task(name="app.workers.tasks.dispatch_closure_jobs")
def dispatch_closure_jobs():
    """Close conversations whose delayed closure job is due"""
    stats = run_async(_dispatch_closure_jobs())
    if stats["claimed"]:
        logger.info("Closure jobs dispatched", extra_data=stats)
    return stats


@celery_app.task(name="app.workers.tasks.sweep_due_conversations")
def sweep_due_conversations():
    return {"closed": run_async(_sweep_due())}


@celery_app.task(name="app.workers.tasks.sweep_stale_awaiting_conversations")
def sweep_stale_awaiting_conversations():
    return {"closed": run_async(_sweep_stale_awaiting())}
