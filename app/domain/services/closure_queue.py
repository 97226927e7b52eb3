"""
Closure Queue - delayed jobs that close idle conversations

Redis layout:
    closure:schedule          ZSET  member = job id, score = fire time (epoch seconds)
    closure:job:<job id>      HASH  payload, attempt, max_attempts, backoff_seconds, max_backoff_seconds

Job ids are deterministic (``close:<conversation id>``), so enqueueing the same
conversation again replaces its entry and cancelling needs no lookup. A job is
claimed by removing its member from the ZSET: ZREM returns 1 to exactly one
worker, so concurrent dispatchers never run the same entry twice.

The queue only accelerates closing. The conversation row is the source of
truth and the backup sweep closes anything the queue loses.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.exceptions import ClosureQueueError
from app.core.logging import get_logger

logger = get_logger(__name__)

SCHEDULE_KEY = "closure:schedule"
JOB_KEY_PREFIX = "closure:job:"


def closure_job_id(conversation_id: int) -> str:
    return f"close:{conversation_id}"


def _job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


def _epoch(moment: datetime) -> float:
    """Naive UTC datetime to epoch seconds"""
    return moment.replace(tzinfo=timezone.utc).timestamp()


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    Capped at max_backoff_seconds without computing huge powers when
    retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # Smallest retry_count whose multiplier reaches ceil(max / base)
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    backoff = base_seconds * (1 << retry_count)
    return min(backoff, max_backoff_seconds)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: int = 5
    max_backoff_seconds: int = 300

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.CLOSURE_JOB_MAX_ATTEMPTS,
            backoff_seconds=settings.CLOSURE_JOB_BACKOFF_SECONDS,
            max_backoff_seconds=settings.CLOSURE_JOB_MAX_BACKOFF_SECONDS,
        )

    def delay_after(self, attempt: int) -> int:
        """Delay before the retry that follows the given (1-based) failed attempt"""
        return _calculate_backoff_seconds(
            attempt - 1,
            base_seconds=self.backoff_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
        )


@dataclass
class ClosureJob:
    job_id: str
    payload: dict[str, Any]
    attempt: int = 0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


class ClosureQueue(Protocol):
    async def enqueue(
        self,
        job_id: str,
        payload: dict[str, Any],
        delay_seconds: float,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        ...

    async def cancel(self, job_id: str) -> bool:
        ...


class RedisClosureQueue:
    """Delayed closure jobs on a Redis sorted set"""

    def __init__(self, redis: aioredis.Redis, clock: Clock = utcnow):
        self.redis = redis
        self.clock = clock

    async def enqueue(
        self,
        job_id: str,
        payload: dict[str, Any],
        delay_seconds: float,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        """Schedule (or reschedule) a job; raises ClosureQueueError on Redis failure"""
        retry = retry or RetryPolicy()
        fire_at = _epoch(self.clock()) + max(0.0, delay_seconds)
        try:
            # Hash first: a claimer that sees the member always finds its payload
            await self.redis.hset(
                _job_key(job_id),
                mapping={
                    "payload": json.dumps(payload),
                    "attempt": 0,
                    "max_attempts": retry.max_attempts,
                    "backoff_seconds": retry.backoff_seconds,
                    "max_backoff_seconds": retry.max_backoff_seconds,
                },
            )
            await self.redis.zadd(SCHEDULE_KEY, {job_id: fire_at})
        except RedisError as e:
            raise ClosureQueueError("enqueue", job_id, e) from e

        logger.debug(
            "Closure job enqueued",
            extra_data={"job_id": job_id, "delay_seconds": delay_seconds},
        )

    async def cancel(self, job_id: str) -> bool:
        """Remove a job; True if it was still scheduled"""
        try:
            removed = await self.redis.zrem(SCHEDULE_KEY, job_id)
            await self.redis.delete(_job_key(job_id))
        except RedisError as e:
            raise ClosureQueueError("cancel", job_id, e) from e
        return removed == 1

    async def claim_due(self, limit: int = 100) -> list[ClosureJob]:
        """Claim up to ``limit`` jobs whose fire time has passed"""
        now_score = _epoch(self.clock())
        try:
            job_ids = await self.redis.zrangebyscore(
                SCHEDULE_KEY, "-inf", now_score, start=0, num=limit
            )
            claimed: list[ClosureJob] = []
            for job_id in job_ids:
                if await self.redis.zrem(SCHEDULE_KEY, job_id) != 1:
                    # Another dispatcher won it
                    continue
                raw = await self.redis.hgetall(_job_key(job_id))
                if not raw:
                    # Cancelled between ZRANGEBYSCORE and ZREM
                    continue
                claimed.append(self._decode(job_id, raw))
        except RedisError as e:
            raise ClosureQueueError("claim", SCHEDULE_KEY, e) from e
        return claimed

    async def complete(self, job: ClosureJob) -> None:
        """Drop the job's hash unless it was re-enqueued while running"""
        try:
            if await self.redis.zscore(SCHEDULE_KEY, job.job_id) is None:
                await self.redis.delete(_job_key(job.job_id))
        except RedisError as e:
            raise ClosureQueueError("complete", job.job_id, e) from e

    async def retry_or_drop(self, job: ClosureJob) -> bool:
        """
        Put a failed job back with exponential backoff.

        Returns False once the job has used up its attempts; the backup sweep
        is then the only path left for that conversation.
        """
        attempt = job.attempt + 1
        if attempt >= job.retry.max_attempts:
            logger.warning(
                "Closure job dropped after max attempts",
                extra_data={"job_id": job.job_id, "attempts": attempt},
            )
            await self.complete(job)
            return False

        delay = job.retry.delay_after(attempt)
        fire_at = _epoch(self.clock()) + delay
        try:
            await self.redis.hset(_job_key(job.job_id), "attempt", attempt)
            # nx: a fresh enqueue for the same conversation takes precedence
            await self.redis.zadd(SCHEDULE_KEY, {job.job_id: fire_at}, nx=True)
        except RedisError as e:
            raise ClosureQueueError("retry", job.job_id, e) from e

        logger.info(
            "Closure job rescheduled",
            extra_data={"job_id": job.job_id, "attempt": attempt, "delay_seconds": delay},
        )
        return True

    @staticmethod
    def _decode(job_id: str, raw: dict[str, str]) -> ClosureJob:
        defaults = RetryPolicy()
        return ClosureJob(
            job_id=job_id,
            payload=json.loads(raw.get("payload") or "{}"),
            attempt=int(raw.get("attempt", 0)),
            retry=RetryPolicy(
                max_attempts=int(raw.get("max_attempts", defaults.max_attempts)),
                backoff_seconds=int(raw.get("backoff_seconds", defaults.backoff_seconds)),
                max_backoff_seconds=int(raw.get("max_backoff_seconds", defaults.max_backoff_seconds)),
            ),
        )
