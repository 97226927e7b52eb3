"""
Message Processor - one inbound channel message, end to end

    incoming -> user lookup -> engine turn -> send reply -> post-send hook

Something is always sent back: when the turn itself fails the user gets the
generic apology. Send and hook failures are logged only.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.logging import get_logger, log_async_operation, set_correlation_id
from app.core.redis_client import get_redis
from app.core.validation import PhoneNumberValidator, TextSanitizer
from app.db.database import AsyncSessionLocal
from app.domain.services.catalog import Catalog, DefaultCatalog
from app.domain.services.channels.base_adapter import BaseChannelAdapter, IncomingMessage
from app.domain.services.closure_queue import ClosureQueue, RedisClosureQueue
from app.domain.services.closure_scheduler import ClosureScheduler
from app.domain.services.intent_classifier import IntentClassifier
from app.domain.services.planner import PlannerDelegate, get_planner
from app.domain.services.tool_executor import ToolExecutor
from app.domain.services.user_service import UserService
from app.state_machine import replies
from app.state_machine.engine import ConversationEngine, TurnResult
from app.state_machine.manager import ConversationStore

logger = get_logger(__name__)


async def get_closure_queue(clock: Clock = utcnow) -> Optional[ClosureQueue]:
    """Redis-backed queue, or None when Redis is unreachable (the sweep still closes)"""
    try:
        redis = await get_redis()
    except Exception as e:
        logger.warning("Closure queue unavailable, relying on sweep", extra_data={"error": str(e)})
        return None
    return RedisClosureQueue(redis, clock=clock)


class MessageProcessor:
    def __init__(
        self,
        db: AsyncSession,
        *,
        planner: Optional[PlannerDelegate] = None,
        catalog: Optional[Catalog] = None,
        queue: Optional[ClosureQueue] = None,
        classifier: Optional[IntentClassifier] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.users = UserService(db)
        store = ConversationStore(db)
        self.engine = ConversationEngine(
            store=store,
            scheduler=ClosureScheduler(store, queue, clock=clock),
            classifier=classifier or IntentClassifier(max_batch_items=settings.MAX_BATCH_ITEMS),
            tools=ToolExecutor(db),
            planner=planner or get_planner(),
            catalog=catalog or DefaultCatalog(),
            clock=clock,
        )

    @log_async_operation("process_message")
    async def process(
        self,
        incoming: IncomingMessage,
        adapter: BaseChannelAdapter,
    ) -> Optional[TurnResult]:
        reply = replies.GENERIC_APOLOGY
        result: Optional[TurnResult] = None

        try:
            user, _ = await self.users.find_or_create_by_account(
                provider=adapter.provider_name,
                external_id=incoming.external_id,
                name=incoming.sender_name,
                phone=incoming.phone,
            )
            result = await self.engine.handle_turn(user.id, TextSanitizer.sanitize(incoming.text))
            reply = result.reply
        except Exception as e:
            await self.db.rollback()
            logger.error("Message processing failed", extra_data={
                "provider": adapter.provider_name,
                "external_id": PhoneNumberValidator.mask(incoming.external_id),
                "error": str(e),
            }, exc_info=True)

        try:
            await adapter.send_text(incoming.external_id, reply)
        except Exception as e:
            logger.error("Reply delivery failed", extra_data={
                "provider": adapter.provider_name,
                "external_id": PhoneNumberValidator.mask(incoming.external_id),
                "error": str(e),
            })

        try:
            await adapter.after_send(incoming)
        except Exception as e:
            logger.warning("Post-send hook failed", extra_data={
                "provider": adapter.provider_name,
                "error": str(e),
            })

        return result


async def handle_incoming_message(
    incoming: IncomingMessage,
    adapter: BaseChannelAdapter,
    correlation_id: Optional[str] = None,
) -> None:
    """Background-task entry point; owns its own DB session"""
    set_correlation_id(correlation_id)
    queue = await get_closure_queue()
    async with AsyncSessionLocal() as session:
        await MessageProcessor(session, queue=queue).process(incoming, adapter)
