"""
Conversation Store - durable state, context and message history

Every state write is a single ``UPDATE ... WHERE id = ? AND state = ?`` and
reports whether it matched. A write that loses a race returns False and
callers treat that as an ordinary outcome. Nothing here commits implicitly
except ``find_or_create``; the engine and the scheduler own their
transactions through ``commit``/``rollback``.
"""
from datetime import datetime, timedelta
from typing import Optional, Sequence

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidContextError, InvalidStateTransitionError
from app.core.logging import get_logger
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageRole
from app.state_machine.context import (
    ClosedContext,
    IdleContext,
    WaitingCloseContext,
    context_matches_state,
    dump_context,
)
from app.state_machine.states import AWAITING_STATES, ConversationState, is_valid_transition

logger = get_logger(__name__)

# Transitions that only the closure primitives below may perform
_RESERVED_TARGETS = {
    (ConversationState.IDLE, ConversationState.WAITING_CLOSE),
    (ConversationState.IDLE, ConversationState.CLOSED),
    (ConversationState.WAITING_CLOSE, ConversationState.WAITING_CLOSE),
    (ConversationState.WAITING_CLOSE, ConversationState.CLOSED),
}


class ConversationStore:
    """Conditional-update access to conversations and their messages"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    async def get(self, conversation_id: int) -> Optional[Conversation]:
        """Fresh read of a conversation (never served from the identity map)"""
        result = await self.db.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_or_create(self, user_id: int, now: datetime) -> Conversation:
        """
        Latest conversation of the user, created idle on first contact.

        A closed conversation is reopened to idle here. If the reopen loses a
        race, whatever state the winner wrote is returned.
        """
        result = await self.db.execute(
            select(Conversation)
            .where(Conversation.user_id == user_id)
            .order_by(Conversation.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        conversation = result.scalar_one_or_none()

        if conversation is None:
            conversation = Conversation(
                user_id=user_id,
                state=ConversationState.IDLE.value,
                context=dump_context(IdleContext()),
                created_at=now,
                updated_at=now,
            )
            self.db.add(conversation)
            await self.db.commit()
            await self.db.refresh(conversation)
            logger.info(
                "Conversation created",
                extra_data={"conversation_id": conversation.id, "user_id": user_id},
            )
            return conversation

        if conversation.state == ConversationState.CLOSED.value:
            reopened = await self.conditional_update(
                conversation.id,
                ConversationState.CLOSED,
                ConversationState.IDLE,
                IdleContext(),
                now,
            )
            await self.db.commit()
            if reopened:
                logger.info(
                    "Conversation reopened",
                    extra_data={"conversation_id": conversation.id, "user_id": user_id},
                )
            conversation = await self.get(conversation.id)

        return conversation

    async def conditional_update(
        self,
        conversation_id: int,
        expected_state: ConversationState | str,
        new_state: ConversationState | str,
        new_context: BaseModel,
        now: datetime,
    ) -> bool:
        """
        Replace state and context if the row is still in ``expected_state``.

        Also clears ``close_at``/``close_job_id``. Moving into ``waiting_close``,
        or closing an idle or waiting_close row, goes through the closure
        primitives instead.
        """
        expected = ConversationState(expected_state)
        target = ConversationState(new_state)

        if not is_valid_transition(expected, target) or (expected, target) in _RESERVED_TARGETS:
            raise InvalidStateTransitionError(expected.value, target.value, conversation_id)
        if not context_matches_state(target, new_context):
            raise InvalidContextError(target.value, getattr(new_context, "kind", "?"), conversation_id)

        result = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.state == expected.value,
            )
            .values(
                state=target.value,
                context=dump_context(new_context),
                close_at=None,
                close_job_id=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1

        logger.info(
            "Conversation state update",
            extra_data={
                "conversation_id": conversation_id,
                "from_state": expected.value,
                "to_state": target.value,
                "context_kind": getattr(new_context, "kind", None),
                "applied": applied,
            },
        )
        return applied

    async def append_message(
        self,
        conversation_id: int,
        role: MessageRole | str,
        content: str,
        now: datetime,
    ) -> Message:
        message = Message(
            conversation_id=conversation_id,
            role=MessageRole(role).value,
            content=content,
            created_at=now,
        )
        self.db.add(message)
        await self.db.flush()
        return message

    async def recent_messages(
        self,
        conversation_id: int,
        *,
        now: Optional[datetime] = None,
        window_minutes: Optional[int] = None,
        limit: Optional[int] = None,
        role: Optional[MessageRole] = None,
    ) -> list[Message]:
        """Most recent messages, returned oldest first"""
        query = select(Message).where(Message.conversation_id == conversation_id)
        if window_minutes is not None and now is not None:
            query = query.where(Message.created_at >= now - timedelta(minutes=window_minutes))
        if role is not None:
            query = query.where(Message.role == role.value)
        query = query.order_by(Message.created_at.desc(), Message.id.desc())
        if limit is not None:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return list(reversed(result.scalars().all()))

    # --- closure primitives ---

    async def mark_waiting_close(
        self,
        conversation_id: int,
        expected_state: ConversationState | str,
        context: WaitingCloseContext,
        close_at: datetime,
        job_id: str,
        now: datetime,
    ) -> bool:
        """Arm the idle timer: idle or waiting_close -> waiting_close"""
        expected = ConversationState(expected_state)
        if expected not in (ConversationState.IDLE, ConversationState.WAITING_CLOSE):
            raise InvalidStateTransitionError(
                expected.value, ConversationState.WAITING_CLOSE.value, conversation_id
            )

        result = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.state == expected.value,
            )
            .values(
                state=ConversationState.WAITING_CLOSE.value,
                context=dump_context(context),
                close_at=close_at,
                close_job_id=job_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reactivate(
        self,
        conversation_id: int,
        context: IdleContext,
        now: datetime,
    ) -> bool:
        """
        waiting_close or closed -> idle, clearing the close fields.

        Not conditioned on ``close_at``: new activity always wins over a
        pending close.
        """
        result = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.state.in_([
                    ConversationState.WAITING_CLOSE.value,
                    ConversationState.CLOSED.value,
                ]),
            )
            .values(
                state=ConversationState.IDLE.value,
                context=dump_context(context),
                close_at=None,
                close_job_id=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def close_if_due(self, conversation_id: int, now: datetime) -> bool:
        """The only write that closes a waiting_close conversation"""
        result = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.state == ConversationState.WAITING_CLOSE.value,
                Conversation.close_at <= now,
            )
            .values(self._closed_values(now))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def close_all_due(self, now: datetime) -> int:
        """Bulk form of ``close_if_due``"""
        result = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.state == ConversationState.WAITING_CLOSE.value,
                Conversation.close_at <= now,
            )
            .values(self._closed_values(now))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def close_stale_awaiting(
        self,
        cutoff: datetime,
        now: datetime,
        states: Sequence[ConversationState] = tuple(AWAITING_STATES),
    ) -> int:
        """Force-close conversations stuck waiting for an answer since ``cutoff``"""
        result = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.state.in_([s.value for s in states]),
                Conversation.updated_at <= cutoff,
            )
            .values(self._closed_values(now))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def close_stale_idle(self, cutoff: datetime, now: datetime) -> int:
        """Close idle conversations untouched since ``cutoff`` whose timer was never armed"""
        result = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.state == ConversationState.IDLE.value,
                Conversation.updated_at <= cutoff,
            )
            .values(self._closed_values(now))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    @staticmethod
    def _closed_values(now: datetime) -> dict:
        return {
            "state": ConversationState.CLOSED.value,
            "context": dump_context(ClosedContext()),
            "close_at": None,
            "close_job_id": None,
            "updated_at": now,
        }
