"""
Conversation context - one tagged variant per state

The ``conversations.context`` JSON column always holds exactly one of the models
below, discriminated by ``kind``. Every write replaces the whole payload, so a
field that belongs to an earlier state can never leak into a later one.
"""
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from app.core.exceptions import InvalidContextError
from app.state_machine.states import ConversationState


class Candidate(BaseModel):
    """A catalog match offered to the user"""

    external_id: Optional[str] = None
    title: str
    year: Optional[int] = None
    item_type: str = "movie"
    metadata: dict[str, Any] = Field(default_factory=dict)

    def label(self) -> str:
        return f"{self.title} ({self.year})" if self.year else self.title


class BatchItem(BaseModel):
    query: str
    type: str = "movie"
    status: Literal["pending", "processing", "confirmed", "skipped"] = "pending"


class ConfirmedItem(BaseModel):
    title: str
    year: Optional[int] = None
    item_id: Optional[int] = None

    def label(self) -> str:
        return f"{self.title} ({self.year})" if self.year else self.title


class IdleContext(BaseModel):
    kind: Literal["idle"] = "idle"
    last_intent: Optional[str] = None
    last_action: Optional[str] = None


class SelectionConfirmation(BaseModel):
    """Waiting for the user to pick one of ``candidates`` by number"""

    kind: Literal["selection"] = "selection"
    candidates: list[Candidate]
    item_type: str = "movie"
    query: Optional[str] = None


class DeleteConfirmation(BaseModel):
    """Waiting for a yes/no before deleting items matched by a query"""

    kind: Literal["delete_confirmation"] = "delete_confirmation"
    query: str
    item_ids: list[int]
    titles: list[str] = Field(default_factory=list)


class BatchContext(BaseModel):
    """A multi-item save being resolved one entry at a time"""

    kind: Literal["batch"] = "batch"
    queue: list[BatchItem]
    current_index: int = 0
    candidates: list[Candidate] = Field(default_factory=list)
    confirmed_items: list[ConfirmedItem] = Field(default_factory=list)

    @property
    def current_item(self) -> Optional[BatchItem]:
        if 0 <= self.current_index < len(self.queue):
            return self.queue[self.current_index]
        return None


class WaitingCloseContext(BaseModel):
    kind: Literal["waiting_close"] = "waiting_close"
    last_intent: Optional[str] = None
    last_action: Optional[str] = None


class ClosedContext(BaseModel):
    kind: Literal["closed"] = "closed"


ConversationContext = Annotated[
    Union[
        IdleContext,
        SelectionConfirmation,
        DeleteConfirmation,
        BatchContext,
        WaitingCloseContext,
        ClosedContext,
    ],
    Field(discriminator="kind"),
]

_context_adapter: TypeAdapter[ConversationContext] = TypeAdapter(ConversationContext)

STATE_CONTEXTS: dict[ConversationState, tuple[type[BaseModel], ...]] = {
    ConversationState.IDLE: (IdleContext,),
    ConversationState.AWAITING_CONFIRMATION: (SelectionConfirmation, DeleteConfirmation),
    ConversationState.AWAITING_BATCH_ITEM: (BatchContext,),
    ConversationState.WAITING_CLOSE: (WaitingCloseContext,),
    ConversationState.CLOSED: (ClosedContext,),
}


def context_matches_state(state: ConversationState | str, context: BaseModel) -> bool:
    return isinstance(context, STATE_CONTEXTS[ConversationState(state)])


def parse_context(raw: Optional[dict[str, Any]], conversation_id: int | None = None) -> ConversationContext:
    """Load a stored payload; an empty payload is treated as idle"""
    if not raw:
        return IdleContext()
    try:
        return _context_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidContextError(
            state="unknown",
            context_kind=str(raw.get("kind")) if isinstance(raw, dict) else type(raw).__name__,
            conversation_id=conversation_id,
        ) from e


def dump_context(context: BaseModel) -> dict[str, Any]:
    return context.model_dump(mode="json")
