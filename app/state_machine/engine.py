"""
Conversation Lifecycle Engine

One inbound message in, one reply out. Each turn:

    1. loads the user's conversation (reopening a closed one and cancelling a
       pending close)
    2. decides the action, in priority order: batch continuation, confirmation
       resolution, batch trigger, deterministic intents, planner delegation
    3. writes both messages and the new (state, context) in one transaction,
       the state through a single conditional update
    4. re-arms the idle timer when the turn ends idle

A reply is always produced. Collaborator failures become canned replies close
to where they happen; anything else is caught once in ``handle_turn``, the
transaction is rolled back and the last committed state stays in place.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel

from app.core.clock import Clock, utcnow
from app.core.config import Settings, settings as app_settings
from app.core.exceptions import InvalidContextError
from app.core.logging import bind_conversation, get_logger
from app.db.models.conversation import Conversation
from app.db.models.item import ItemType
from app.db.models.message import MessageRole
from app.domain.services.catalog import Catalog, note_candidate
from app.domain.services.closure_scheduler import ClosureScheduler
from app.domain.services.intent_classifier import (
    Intent,
    IntentClassifier,
    IntentResult,
    detect_type,
    parse_selection,
)
from app.domain.services.planner import HistoryMessage, PlannerDelegate, PlannerRequest
from app.domain.services.tool_executor import (
    DELETE_ALL_ITEMS,
    DELETE_ITEM,
    SAVE_ITEM,
    SEARCH_ITEMS,
    ToolContext,
    ToolExecutor,
    ToolResult,
)
from app.state_machine import replies
from app.state_machine.context import (
    BatchContext,
    BatchItem,
    Candidate,
    ConfirmedItem,
    DeleteConfirmation,
    IdleContext,
    SelectionConfirmation,
    parse_context,
)
from app.state_machine.manager import ConversationStore
from app.state_machine.states import ConversationState

logger = get_logger(__name__)

ACTIVE_STATES = frozenset({
    ConversationState.IDLE,
    ConversationState.AWAITING_CONFIRMATION,
    ConversationState.AWAITING_BATCH_ITEM,
})


@dataclass
class TurnResult:
    reply: str
    state: ConversationState
    tools_used: list[str] = field(default_factory=list)
    applied: bool = True
    conversation_id: Optional[int] = None
    confirmed_items: list[ConfirmedItem] = field(default_factory=list)


@dataclass
class Decision:
    reply: str
    state: ConversationState
    context: BaseModel
    tools_used: list[str] = field(default_factory=list)
    confirmed_items: list[ConfirmedItem] = field(default_factory=list)


class ToolFailure(Exception):
    """A tool or catalog call failed; the turn ends idle with a failure reply"""

    def __init__(self, action: str, message: Optional[str] = None, prefix: Optional[list[str]] = None):
        super().__init__(message or action)
        self.action = action
        self.prefix = prefix or []


class ConversationEngine:
    """Runs one conversation turn against injected collaborators"""

    def __init__(
        self,
        store: ConversationStore,
        scheduler: ClosureScheduler,
        classifier: IntentClassifier,
        tools: ToolExecutor,
        planner: PlannerDelegate,
        catalog: Catalog,
        *,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.classifier = classifier
        self.tools = tools
        self.planner = planner
        self.catalog = catalog
        self.clock = clock
        self.settings = settings or app_settings

    async def handle_turn(self, user_id: int, text: str) -> TurnResult:
        text = (text or "").strip()
        # The rollback below expires ORM instances, so only plain values are
        # read once the turn has failed
        conversation_id: Optional[int] = None
        last_state = ConversationState.IDLE
        try:
            conversation = await self.store.find_or_create(user_id, self.clock())
            conversation_id = conversation.id
            last_state = ConversationState(conversation.state)
            with bind_conversation(conversation_id):
                return await self._run_turn(user_id, conversation, text)
        except Exception as e:
            await self.store.rollback()
            logger.error(
                "Turn failed, replying with apology",
                extra_data={
                    "user_id": user_id,
                    "conversation_id": conversation_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            if conversation_id is not None:
                last_state = await self._rearm_after_failure(conversation_id, last_state)
            return TurnResult(
                reply=replies.GENERIC_APOLOGY,
                state=last_state,
                applied=False,
                conversation_id=conversation_id,
            )

    async def _rearm_after_failure(
        self, conversation_id: int, last_state: ConversationState
    ) -> ConversationState:
        """
        Best-effort: a failed turn may have left the row idle with no timer
        (cancel_close had already committed). Arm it again and report the
        persisted state.
        """
        try:
            conversation = await self.store.get(conversation_id)
            if conversation is None:
                return last_state
            state = ConversationState(conversation.state)
            if state == ConversationState.IDLE:
                await self.scheduler.schedule_close(conversation_id)
            return state
        except Exception as e:
            await self.store.rollback()
            logger.warning("Could not re-arm close timer after failed turn", extra_data={
                "conversation_id": conversation_id,
                "error": str(e),
            })
            return last_state

    async def _run_turn(self, user_id: int, conversation: Conversation, text: str) -> TurnResult:
        conversation_id = conversation.id
        if conversation.state == ConversationState.WAITING_CLOSE.value:
            await self.scheduler.cancel_close(conversation_id)
            conversation = await self.store.get(conversation_id)

        state = ConversationState(conversation.state)
        if state not in ACTIVE_STATES:
            # A close landed between the cancel and this read
            return await self._stale_turn(conversation_id, state, text)

        try:
            context = parse_context(conversation.context, conversation_id)
        except InvalidContextError:
            logger.warning("Unreadable conversation context, treating as idle", extra_data={
                "conversation_id": conversation_id,
                "state": state.value,
            })
            context = IdleContext()

        tool_context = ToolContext(user_id=user_id, conversation_id=conversation_id)
        decision = await self._decide(state, context, tool_context, text)

        now = self.clock()
        await self.store.append_message(conversation_id, MessageRole.USER, text, now)
        await self.store.append_message(conversation_id, MessageRole.ASSISTANT, decision.reply, now)
        applied = await self.store.conditional_update(
            conversation_id, state, decision.state, decision.context, now
        )
        if not applied:
            await self.store.rollback()
            return await self._stale_turn(conversation_id, state, text)
        await self.store.commit()

        logger.info("Turn handled", extra_data={
            "conversation_id": conversation_id,
            "from_state": state.value,
            "to_state": decision.state.value,
            "tools_used": decision.tools_used,
        })

        if decision.state == ConversationState.IDLE:
            try:
                await self.scheduler.schedule_close(conversation_id)
            except Exception as e:
                await self.store.rollback()
                logger.warning("schedule_close failed after turn", extra_data={
                    "conversation_id": conversation_id,
                    "error": str(e),
                })

        return TurnResult(
            reply=decision.reply,
            state=decision.state,
            tools_used=decision.tools_used,
            applied=True,
            conversation_id=conversation_id,
            confirmed_items=decision.confirmed_items,
        )

    async def _stale_turn(self, conversation_id: int, state: ConversationState, text: str) -> TurnResult:
        """Keep the messages, leave the state to whoever changed it concurrently"""
        logger.info("Turn lost a concurrent state change", extra_data={
            "conversation_id": conversation_id,
            "expected_state": state.value,
        })
        now = self.clock()
        await self.store.append_message(conversation_id, MessageRole.USER, text, now)
        await self.store.append_message(conversation_id, MessageRole.ASSISTANT, replies.STALE_TURN, now)
        await self.store.commit()
        current = await self.store.get(conversation_id)
        return TurnResult(
            reply=replies.STALE_TURN,
            state=ConversationState(current.state) if current is not None else state,
            applied=False,
            conversation_id=conversation_id,
        )

    # --- decision policy ---

    async def _decide(
        self,
        state: ConversationState,
        context: BaseModel,
        tool_context: ToolContext,
        text: str,
    ) -> Decision:
        intent = self.classifier.classify(text)
        try:
            if state == ConversationState.AWAITING_BATCH_ITEM and isinstance(context, BatchContext):
                return await self._continue_batch(context, intent, tool_context, text)

            if state == ConversationState.AWAITING_CONFIRMATION:
                if isinstance(context, SelectionConfirmation):
                    return await self._resolve_selection(context, intent, tool_context, text)
                if isinstance(context, DeleteConfirmation):
                    return await self._resolve_delete(context, intent, tool_context, text)

            return await self._route_intent(intent, tool_context, text)
        except ToolFailure as e:
            logger.warning("Tool failure ended the turn", extra_data={
                "conversation_id": tool_context.conversation_id,
                "action": e.action,
                "error": str(e),
            })
            reply = "\n\n".join([*e.prefix, replies.GENERIC_FAILURE])
            return self._idle(reply, intent, f"{e.action}_failed")

    async def _route_intent(self, intent: IntentResult, tool_context: ToolContext, text: str) -> Decision:
        entities = intent.entities
        kind = intent.intent

        if kind == Intent.BATCH:
            return await self._start_batch(intent, tool_context)

        if kind == Intent.DELETE_ALL:
            result = await self._tool(DELETE_ALL_ITEMS, tool_context, {})
            count = result.data.get("deleted_count", 0)
            return self._idle(replies.deleted_all(count), intent, "delete_all", [DELETE_ALL_ITEMS])

        if kind == Intent.DELETE_SELECTED or (kind == Intent.DELETE_ITEM and entities.selection is not None):
            return await self._delete_by_index(intent, tool_context)

        if kind == Intent.DELETE_ITEM:
            if not entities.query:
                return self._idle(replies.DELETE_WHICH, intent, "delete_which")
            return await self._delete_by_query(intent, tool_context)

        if kind in (Intent.LIST_ALL, Intent.SEARCH):
            return await self._search(intent, tool_context)

        if kind == Intent.SAVE_PREVIOUS:
            return await self._save_previous(intent, tool_context)

        if kind in (Intent.GREET, Intent.THANK):
            return self._idle(replies.casual_reply(text, kind.value), intent, "casual")

        if kind in (Intent.CANCEL, Intent.DENY):
            return self._idle(replies.CANCELLED, intent, "cancel")

        if kind == Intent.SAVE_CONTENT and entities.query:
            return await self._save_content(intent, tool_context)

        if not text:
            return self._idle(replies.GREETING, intent, "empty")

        return await self._delegate(intent, tool_context, text)

    # --- confirmations ---

    async def _resolve_selection(
        self,
        context: SelectionConfirmation,
        intent: IntentResult,
        tool_context: ToolContext,
        text: str,
    ) -> Decision:
        selection = parse_selection(text)
        count = len(context.candidates)
        if selection is None or not 1 <= selection <= count:
            if selection is None and intent.intent in (Intent.CANCEL, Intent.DENY):
                return self._idle(replies.CANCELLED, intent, "selection_cancelled")
            return Decision(
                replies.selection_reprompt(count),
                ConversationState.AWAITING_CONFIRMATION,
                context,
            )

        candidate = context.candidates[selection - 1]
        result = await self._save_candidate(candidate, tool_context)
        return self._idle(
            replies.saved(candidate.label()),
            intent,
            "selection_saved",
            [SAVE_ITEM],
            confirmed=[self._confirmed(candidate, result)],
        )

    async def _resolve_delete(
        self,
        context: DeleteConfirmation,
        intent: IntentResult,
        tool_context: ToolContext,
        text: str,
    ) -> Decision:
        selection = parse_selection(text)
        if selection is not None:
            if not 1 <= selection <= len(context.item_ids):
                return Decision(replies.delete_confirm_reprompt(), ConversationState.AWAITING_CONFIRMATION, context)
            targets = [(context.item_ids[selection - 1], self._title_at(context, selection - 1))]
        elif intent.intent == Intent.CONFIRM:
            targets = [(item_id, self._title_at(context, i)) for i, item_id in enumerate(context.item_ids)]
        elif intent.intent in (Intent.DENY, Intent.CANCEL):
            return self._idle(replies.DELETE_CANCELLED, intent, "delete_cancelled")
        else:
            return Decision(replies.delete_confirm_reprompt(), ConversationState.AWAITING_CONFIRMATION, context)

        deleted: list[str] = []
        for item_id, title in targets:
            await self._tool(DELETE_ITEM, tool_context, {"item_id": item_id})
            deleted.append(title)
        return self._idle(replies.deleted_many(deleted), intent, "delete_confirmed", [DELETE_ITEM])

    @staticmethod
    def _title_at(context: DeleteConfirmation, index: int) -> str:
        return context.titles[index] if index < len(context.titles) else str(context.item_ids[index])

    # --- batch ---

    async def _start_batch(self, intent: IntentResult, tool_context: ToolContext) -> Decision:
        queries = intent.entities.items[: self.settings.MAX_BATCH_ITEMS]
        batch = BatchContext(
            queue=[
                BatchItem(query=q, type=intent.entities.content_type or detect_type(q))
                for q in queries
            ]
        )
        logger.info("Batch started", extra_data={
            "conversation_id": tool_context.conversation_id,
            "items": len(queries),
        })
        return await self._advance_batch(batch, intent, tool_context, [replies.batch_detected(queries)], [])

    async def _continue_batch(
        self,
        batch: BatchContext,
        intent: IntentResult,
        tool_context: ToolContext,
        text: str,
    ) -> Decision:
        item = batch.current_item
        if item is None or item.status != "processing" or not batch.candidates:
            return await self._advance_batch(batch, intent, tool_context, [], [])

        total = len(batch.queue)
        position = batch.current_index + 1
        selection = parse_selection(text)

        if selection is None and intent.intent == Intent.CANCEL:
            return self._idle(
                replies.batch_cancelled(batch.confirmed_items),
                intent,
                "batch_cancelled",
                confirmed=list(batch.confirmed_items),
            )

        if selection is None and intent.intent == Intent.DENY:
            item.status = "skipped"
            batch.candidates = []
            batch.current_index += 1
            lines = [replies.batch_item_skipped(position, total, item.query)]
            return await self._advance_batch(batch, intent, tool_context, lines, [])

        if selection is None or not 1 <= selection <= len(batch.candidates):
            return Decision(
                replies.batch_reprompt(item.query, len(batch.candidates)),
                ConversationState.AWAITING_BATCH_ITEM,
                batch,
            )

        candidate = batch.candidates[selection - 1]
        result = await self._save_candidate(candidate, tool_context)
        item.status = "confirmed"
        batch.confirmed_items.append(self._confirmed(candidate, result))
        batch.candidates = []
        batch.current_index += 1
        lines = [replies.batch_item_saved(position, total, candidate.label())]
        return await self._advance_batch(batch, intent, tool_context, lines, [SAVE_ITEM])

    async def _advance_batch(
        self,
        batch: BatchContext,
        intent: IntentResult,
        tool_context: ToolContext,
        lines: list[str],
        tools_used: list[str],
    ) -> Decision:
        """
        Resolve pending items until one needs the user or the queue runs out.

        Each pass consumes one pending item, so the loop runs at most
        ``len(batch.queue)`` times.
        """
        total = len(batch.queue)
        for _ in range(total):
            index = next(
                (i for i in range(batch.current_index, total) if batch.queue[i].status == "pending"),
                None,
            )
            if index is None:
                break

            batch.current_index = index
            item = batch.queue[index]
            position = index + 1

            try:
                candidates = await self._lookup(item.query, item.type)
            except ToolFailure as e:
                e.prefix = lines
                raise

            if not candidates:
                item.status = "skipped"
                lines.append(replies.batch_item_skipped(position, total, item.query))
                continue

            if len(candidates) == 1:
                try:
                    result = await self._save_candidate(candidates[0], tool_context)
                except ToolFailure as e:
                    e.prefix = lines
                    raise
                item.status = "confirmed"
                batch.confirmed_items.append(self._confirmed(candidates[0], result))
                tools_used.append(SAVE_ITEM)
                lines.append(replies.batch_item_saved(position, total, candidates[0].label()))
                continue

            item.status = "processing"
            batch.candidates = candidates[: self.settings.CANDIDATE_LIMIT]
            remaining = sum(1 for i in batch.queue[index + 1:] if i.status == "pending")
            lines.append(
                replies.batch_item_prompt(position, total, item.query, batch.candidates, remaining)
            )
            return Decision(
                "\n\n".join(lines),
                ConversationState.AWAITING_BATCH_ITEM,
                batch,
                tools_used,
            )

        batch.candidates = []
        lines.append(replies.batch_summary(batch.confirmed_items))
        logger.info("Batch completed", extra_data={
            "conversation_id": tool_context.conversation_id,
            "confirmed": len(batch.confirmed_items),
            "total": total,
        })
        return self._idle(
            "\n\n".join(lines),
            intent,
            "batch_completed",
            tools_used,
            confirmed=list(batch.confirmed_items),
        )

    # --- deterministic handlers ---

    async def _save_content(self, intent: IntentResult, tool_context: ToolContext) -> Decision:
        query = intent.entities.query
        item_type = intent.entities.content_type or ItemType.MOVIE.value
        candidates = await self._lookup(query, item_type)

        if not candidates:
            return self._idle(replies.not_found(query), intent, "save_not_found")

        if len(candidates) == 1:
            result = await self._save_candidate(candidates[0], tool_context)
            return self._idle(
                replies.saved(candidates[0].label()),
                intent,
                "save_content",
                [SAVE_ITEM],
                confirmed=[self._confirmed(candidates[0], result)],
            )

        top = candidates[: self.settings.CANDIDATE_LIMIT]
        return Decision(
            replies.selection_prompt(top),
            ConversationState.AWAITING_CONFIRMATION,
            SelectionConfirmation(candidates=top, item_type=item_type, query=query),
        )

    async def _search(self, intent: IntentResult, tool_context: ToolContext) -> Decision:
        args: dict[str, Any] = {"limit": self.settings.SEARCH_RESULT_LIMIT}
        if intent.entities.query and intent.intent == Intent.SEARCH:
            args["query"] = intent.entities.query
        if intent.entities.content_type:
            args["type"] = intent.entities.content_type

        result = await self._tool(SEARCH_ITEMS, tool_context, args)
        count = result.data.get("count", 0)
        if not count:
            return self._idle(replies.NO_ITEMS_FOUND, intent, "search_empty", [SEARCH_ITEMS])
        return self._idle(
            replies.items_list(result.data.get("items", []), count),
            intent,
            "search",
            [SEARCH_ITEMS],
        )

    async def _delete_by_index(self, intent: IntentResult, tool_context: ToolContext) -> Decision:
        # Positions follow the listing order (most recent first)
        selection = intent.entities.selection or 0
        listing = await self._tool(
            SEARCH_ITEMS, tool_context, {"limit": 1, "offset": max(selection - 1, 0)}
        )
        total = listing.data.get("count", 0)
        items = listing.data.get("items", [])
        if not 1 <= selection <= total or not items:
            return self._idle(
                replies.delete_index_out_of_range(selection, total),
                intent,
                "delete_out_of_range",
                [SEARCH_ITEMS],
            )

        target = items[0]
        await self._tool(DELETE_ITEM, tool_context, {"item_id": target["id"]})
        return self._idle(
            replies.deleted_one(target["title"]),
            intent,
            "delete_item",
            [SEARCH_ITEMS, DELETE_ITEM],
        )

    async def _delete_by_query(self, intent: IntentResult, tool_context: ToolContext) -> Decision:
        query = intent.entities.query
        result = await self._tool(
            SEARCH_ITEMS, tool_context, {"query": query, "limit": self.settings.SEARCH_RESULT_LIMIT}
        )
        items = result.data.get("items", [])
        if not items:
            return self._idle(replies.not_found(query), intent, "delete_not_found", [SEARCH_ITEMS])

        titles = [item["title"] for item in items]
        return Decision(
            replies.delete_confirm_prompt(query, titles),
            ConversationState.AWAITING_CONFIRMATION,
            DeleteConfirmation(query=query, item_ids=[item["id"] for item in items], titles=titles),
            [SEARCH_ITEMS],
        )

    async def _save_previous(self, intent: IntentResult, tool_context: ToolContext) -> Decision:
        # The current message is persisted at the end of the turn, so the
        # latest stored user message is the previous one
        previous = await self.store.recent_messages(
            tool_context.conversation_id,
            now=self.clock(),
            window_minutes=self.settings.RECENT_CONTEXT_WINDOW_MINUTES,
            limit=1,
            role=MessageRole.USER,
        )
        if not previous or not previous[-1].content.strip():
            return self._idle(replies.NOTHING_TO_SAVE, intent, "save_previous_empty")

        candidate = note_candidate(previous[-1].content)
        candidate.metadata["saved_from"] = "previous_message"
        await self._save_candidate(candidate, tool_context)
        return self._idle(replies.SAVED_PREVIOUS, intent, "save_previous", [SAVE_ITEM])

    # --- planner ---

    async def _delegate(self, intent: IntentResult, tool_context: ToolContext, text: str) -> Decision:
        history = await self.store.recent_messages(
            tool_context.conversation_id,
            limit=self.settings.HISTORY_LIMIT,
        )
        request = PlannerRequest(
            message=text,
            history=[HistoryMessage(role=m.role, content=m.content) for m in history],
        )

        try:
            reply = await asyncio.wait_for(
                self.planner.call(request),
                timeout=self.settings.PLANNER_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("Planner timed out", extra_data={
                "conversation_id": tool_context.conversation_id,
                "timeout_seconds": self.settings.PLANNER_TIMEOUT_SECONDS,
            })
            return self._idle(replies.PLANNER_APOLOGY, intent, "planner_timeout")
        except Exception as e:
            logger.error("Planner call failed", extra_data={
                "conversation_id": tool_context.conversation_id,
                "error": str(e),
            })
            return self._idle(replies.PLANNER_APOLOGY, intent, "planner_error")

        if reply.degraded:
            return self._idle(reply.text or replies.PLANNER_APOLOGY, intent, "planner_degraded")

        tools_used: list[str] = []
        for call in reply.tool_calls:
            await self._tool(call.name, tool_context, call.arguments)
            tools_used.append(call.name)

        if reply.choices:
            choices = reply.choices[: self.settings.SEARCH_RESULT_LIMIT]
            text_out = (
                f"{reply.text}\n\n{replies.numbered(choices)}"
                if reply.text
                else replies.selection_prompt(choices)
            )
            return Decision(
                text_out,
                ConversationState.AWAITING_CONFIRMATION,
                SelectionConfirmation(candidates=choices, item_type=choices[0].item_type),
                tools_used,
            )

        return self._idle(reply.text or replies.PLANNER_EMPTY, intent, "planner", tools_used)

    # --- collaborator calls ---

    async def _tool(self, name: str, tool_context: ToolContext, args: dict[str, Any]) -> ToolResult:
        result = await self.tools.execute(name, tool_context, args)
        if not result.success:
            raise ToolFailure(name, result.message)
        return result

    async def _lookup(self, query: str, item_type: str) -> list[Candidate]:
        try:
            return await self.catalog.search(query, item_type)
        except Exception as e:
            raise ToolFailure("catalog_search", str(e)) from e

    async def _save_candidate(self, candidate: Candidate, tool_context: ToolContext) -> ToolResult:
        metadata = dict(candidate.metadata)
        if candidate.year is not None:
            metadata.setdefault("year", candidate.year)
        if candidate.external_id:
            metadata.setdefault("external_id", candidate.external_id)
        return await self._tool(
            SAVE_ITEM,
            tool_context,
            {"type": candidate.item_type, "title": candidate.title, "metadata": metadata},
        )

    @staticmethod
    def _confirmed(candidate: Candidate, result: ToolResult) -> ConfirmedItem:
        return ConfirmedItem(
            title=candidate.title,
            year=candidate.year,
            item_id=result.data.get("item_id"),
        )

    @staticmethod
    def _idle(
        reply: str,
        intent: IntentResult,
        action: str,
        tools_used: Optional[list[str]] = None,
        *,
        confirmed: Optional[list[ConfirmedItem]] = None,
    ) -> Decision:
        return Decision(
            reply,
            ConversationState.IDLE,
            IdleContext(last_intent=intent.intent.value, last_action=action),
            tools_used or [],
            confirmed or [],
        )
