"""
Closure Scheduler - turns "idle for N minutes" into a closed conversation

Three tiers, from authoritative to advisory:
    1. the conversations table; a conversation is closed only by the store's
       conditional close (``waiting_close`` and ``close_at <= now``)
    2. the delayed-job queue, which fires that close close to ``close_at``
    3. periodic sweeps that apply the same close in bulk, so conversations
       still close when the queue is down

The store is always written before the queue is touched. Queue failures are
logged and never propagate.
"""
from datetime import timedelta
from typing import Any, Optional

from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.exceptions import InvalidContextError
from app.core.logging import bind_conversation, get_logger
from app.domain.services.closure_queue import (
    ClosureJob,
    ClosureQueue,
    RetryPolicy,
    closure_job_id,
)
from app.state_machine.context import IdleContext, WaitingCloseContext, parse_context
from app.state_machine.manager import ConversationStore
from app.state_machine.states import ConversationState

logger = get_logger(__name__)


class ClosureScheduler:
    """Schedules, cancels and reconciles idle-conversation closing"""

    def __init__(
        self,
        store: ConversationStore,
        queue: Optional[ClosureQueue] = None,
        *,
        close_delay_seconds: Optional[int] = None,
        awaiting_timeout_seconds: Optional[int] = None,
        retry: Optional[RetryPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.close_delay_seconds = (
            close_delay_seconds
            if close_delay_seconds is not None
            else settings.CONVERSATION_CLOSE_DELAY_SECONDS
        )
        self.awaiting_timeout_seconds = (
            awaiting_timeout_seconds
            if awaiting_timeout_seconds is not None
            else settings.AWAITING_TIMEOUT_SECONDS
        )
        self.retry = retry or RetryPolicy.from_settings()
        self.clock = clock

    async def schedule_close(self, conversation_id: int) -> bool:
        """
        Arm the idle timer for an idle (or already waiting) conversation.

        Any previous job is cancelled first, then ``waiting_close`` is
        committed, then the job is enqueued. Returns whether the store write
        applied; an enqueue failure still returns True since the sweep will
        find the row.
        """
        conversation = await self.store.get(conversation_id)
        if conversation is None:
            logger.warning("schedule_close: conversation not found", extra_data={
                "conversation_id": conversation_id,
            })
            return False

        state = ConversationState(conversation.state)
        if state not in (ConversationState.IDLE, ConversationState.WAITING_CLOSE):
            logger.debug("schedule_close skipped", extra_data={
                "conversation_id": conversation_id,
                "state": state.value,
            })
            return False

        if conversation.close_job_id:
            await self._dequeue(conversation.close_job_id)

        now = self.clock()
        close_at = now + timedelta(seconds=self.close_delay_seconds)
        job_id = closure_job_id(conversation_id)
        context = self._carry_over(conversation, WaitingCloseContext)

        applied = await self.store.mark_waiting_close(
            conversation_id, state, context, close_at, job_id, now
        )
        await self.store.commit()
        if not applied:
            logger.info("schedule_close lost a race, state changed", extra_data={
                "conversation_id": conversation_id,
                "expected_state": state.value,
            })
            return False

        if self.queue is not None:
            try:
                await self.queue.enqueue(
                    job_id,
                    {"conversation_id": conversation_id},
                    self.close_delay_seconds,
                    self.retry,
                )
            except Exception as e:
                logger.warning("Closure job enqueue failed, sweep will close", extra_data={
                    "conversation_id": conversation_id,
                    "job_id": job_id,
                    "error": str(e),
                })

        logger.info("Conversation close scheduled", extra_data={
            "conversation_id": conversation_id,
            "job_id": job_id,
            "close_at": close_at.isoformat(),
        })
        return True

    async def cancel_close(self, conversation_id: int) -> bool:
        """
        Return a waiting_close (or closed) conversation to idle.

        The store is cleared first; removing the queued job afterwards is
        best-effort, a job that still fires finds the row idle and does nothing.
        """
        conversation = await self.store.get(conversation_id)
        if conversation is None:
            return False

        job_id = conversation.close_job_id
        context = self._carry_over(conversation, IdleContext)

        applied = await self.store.reactivate(conversation_id, context, self.clock())
        await self.store.commit()

        if job_id:
            await self._dequeue(job_id)

        if applied:
            logger.info("Conversation close cancelled", extra_data={
                "conversation_id": conversation_id,
                "from_state": conversation.state,
                "job_id": job_id,
            })
        return applied

    async def handle_fired_job(self, payload: dict[str, Any]) -> bool:
        """Apply the conditional close for a fired job; False means nothing to do"""
        try:
            conversation_id = int(payload["conversation_id"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Closure job with malformed payload", extra_data={"payload": payload})
            return False

        with bind_conversation(conversation_id):
            closed = await self.store.close_if_due(conversation_id, self.clock())
            await self.store.commit()

            if closed:
                logger.info("Conversation closed by job", extra_data={
                    "conversation_id": conversation_id,
                })
            else:
                logger.info("Closure job no-op, conversation already closed or reactivated", extra_data={
                    "conversation_id": conversation_id,
                })
            return closed

    async def sweep_due(self) -> int:
        """
        Close every waiting_close conversation whose close_at has passed, and
        every idle one left unarmed for longer than the close delay.
        """
        now = self.clock()
        due = await self.store.close_all_due(now)
        unarmed = await self.store.close_stale_idle(
            now - timedelta(seconds=self.close_delay_seconds), now
        )
        await self.store.commit()
        if due or unarmed:
            logger.info("Backup sweep closed conversations", extra_data={
                "closed": due + unarmed,
                "unarmed_idle": unarmed,
            })
        return due + unarmed

    async def sweep_stale_awaiting(self) -> int:
        """Force-close conversations left awaiting an answer past the timeout"""
        now = self.clock()
        cutoff = now - timedelta(seconds=self.awaiting_timeout_seconds)
        count = await self.store.close_stale_awaiting(cutoff, now)
        await self.store.commit()
        if count:
            logger.info("Stale awaiting conversations closed", extra_data={
                "closed": count,
                "timeout_seconds": self.awaiting_timeout_seconds,
            })
        return count

    async def dispatch_due_jobs(self, limit: Optional[int] = None) -> dict[str, int]:
        """
        Claim due jobs from the queue and run them.

        A job whose handler raises is rescheduled with backoff until its retry
        policy is exhausted.
        """
        if self.queue is None:
            return {"claimed": 0, "closed": 0, "retried": 0, "dropped": 0}

        jobs: list[ClosureJob] = await self.queue.claim_due(
            limit or settings.CLOSURE_QUEUE_BATCH_SIZE
        )
        stats = {"claimed": len(jobs), "closed": 0, "retried": 0, "dropped": 0}

        for job in jobs:
            try:
                if await self.handle_fired_job(job.payload):
                    stats["closed"] += 1
                await self.queue.complete(job)
            except Exception as e:
                await self.store.rollback()
                logger.error("Closure job failed", extra_data={
                    "job_id": job.job_id,
                    "attempt": job.attempt + 1,
                    "error": str(e),
                }, exc_info=True)
                if await self.queue.retry_or_drop(job):
                    stats["retried"] += 1
                else:
                    stats["dropped"] += 1

        return stats

    async def _dequeue(self, job_id: str) -> None:
        if self.queue is None:
            return
        try:
            await self.queue.cancel(job_id)
        except Exception as e:
            logger.warning("Closure job cancel failed, job will no-op when fired", extra_data={
                "job_id": job_id,
                "error": str(e),
            })

    @staticmethod
    def _carry_over(conversation, target):
        """Build ``target`` context keeping last_intent/last_action when present"""
        try:
            current = parse_context(conversation.context, conversation.id)
        except InvalidContextError:
            current = None
        return target(
            last_intent=getattr(current, "last_intent", None),
            last_action=getattr(current, "last_action", None),
        )
