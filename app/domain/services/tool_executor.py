"""
Tool Executor - named side-effecting operations over a user's saved items

Every call returns a ``ToolResult``; nothing raised inside a tool escapes
``execute``. Writes are flushed, not committed: the engine commits them together
with the conversation update at the end of the turn.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ToolExecutionError
from app.core.logging import get_logger
from app.db.models.item import Item, ItemType

logger = get_logger(__name__)

SEARCH_ITEMS = "search_items"
SAVE_ITEM = "save_item"
DELETE_ITEM = "delete_item"
DELETE_ALL_ITEMS = "delete_all_items"


@dataclass
class ToolContext:
    user_id: int
    conversation_id: int


@dataclass
class ToolResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None


class SearchItemsArgs(BaseModel):
    query: Optional[str] = None
    type: Optional[ItemType] = None
    limit: int = Field(default=10, ge=1, le=50)
    offset: int = Field(default=0, ge=0)


class SaveItemArgs(BaseModel):
    type: ItemType
    title: str = Field(min_length=1, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeleteItemArgs(BaseModel):
    item_id: int


class DeleteAllItemsArgs(BaseModel):
    pass


# JSON schemas advertised to the planner
TOOL_SCHEMAS: dict[str, dict[str, Any]] = {
    SEARCH_ITEMS: {
        "description": "Busca itens salvos do usuário por texto e/ou tipo.",
        "input_schema": SearchItemsArgs.model_json_schema(),
    },
    SAVE_ITEM: {
        "description": "Salva um item (movie, video, link ou note) para o usuário.",
        "input_schema": SaveItemArgs.model_json_schema(),
    },
    DELETE_ITEM: {
        "description": "Deleta um item salvo pelo id.",
        "input_schema": DeleteItemArgs.model_json_schema(),
    },
    DELETE_ALL_ITEMS: {
        "description": "Deleta todos os itens salvos do usuário.",
        "input_schema": DeleteAllItemsArgs.model_json_schema(),
    },
}


def serialize_item(item: Item) -> dict[str, Any]:
    return {
        "id": item.id,
        "type": item.type,
        "title": item.title,
        "metadata": item.item_metadata or {},
        "created_at": item.created_at.isoformat() if item.created_at else None,
    }


class ToolExecutor:
    """Dispatches tool calls by name; unknown names fail closed"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._tools: dict[str, tuple[type[BaseModel], Callable[[ToolContext, Any], Awaitable[ToolResult]]]] = {
            SEARCH_ITEMS: (SearchItemsArgs, self._search_items),
            SAVE_ITEM: (SaveItemArgs, self._save_item),
            DELETE_ITEM: (DeleteItemArgs, self._delete_item),
            DELETE_ALL_ITEMS: (DeleteAllItemsArgs, self._delete_all_items),
        }

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    async def execute(
        self,
        name: str,
        context: ToolContext,
        args: Optional[dict[str, Any]] = None,
    ) -> ToolResult:
        entry = self._tools.get(name)
        if entry is None:
            logger.warning(
                "Unknown tool requested",
                extra_data={"tool": name, "conversation_id": context.conversation_id},
            )
            return ToolResult(success=False, message=f"Unknown tool: {name}")

        args_model, handler = entry
        try:
            parsed = args_model.model_validate(args or {})
        except ValidationError as e:
            logger.warning(
                "Invalid tool arguments",
                extra_data={"tool": name, "errors": e.errors(include_url=False)},
            )
            return ToolResult(success=False, message=f"Invalid arguments for {name}")

        try:
            result = await handler(context, parsed)
        except Exception as e:
            logger.error(
                "Tool execution failed",
                extra_data={
                    "tool": name,
                    "user_id": context.user_id,
                    "conversation_id": context.conversation_id,
                    "error": str(e),
                },
                exc_info=True,
            )
            return ToolResult(success=False, message=str(e))

        logger.info(
            "Tool executed",
            extra_data={
                "tool": name,
                "user_id": context.user_id,
                "success": result.success,
            },
        )
        return result

    async def _search_items(self, context: ToolContext, args: SearchItemsArgs) -> ToolResult:
        conditions = [Item.user_id == context.user_id]
        if args.type is not None:
            conditions.append(Item.type == args.type.value)
        if args.query:
            pattern = f"%{args.query.strip()}%"
            conditions.append(Item.title.ilike(pattern))

        total = await self.db.scalar(select(func.count(Item.id)).where(*conditions))
        result = await self.db.execute(
            select(Item)
            .where(*conditions)
            .order_by(Item.created_at.desc(), Item.id.desc())
            .offset(args.offset)
            .limit(args.limit)
        )
        items = [serialize_item(item) for item in result.scalars().all()]
        return ToolResult(success=True, data={"items": items, "count": int(total or 0)})

    async def _save_item(self, context: ToolContext, args: SaveItemArgs) -> ToolResult:
        item = Item(
            user_id=context.user_id,
            type=args.type.value,
            title=args.title.strip(),
            item_metadata=args.metadata,
        )
        self.db.add(item)
        await self.db.flush()
        return ToolResult(
            success=True,
            data={"item_id": item.id, "title": item.title, "type": item.type},
            message=f"Saved {item.title}",
        )

    async def _delete_item(self, context: ToolContext, args: DeleteItemArgs) -> ToolResult:
        item = await self.db.scalar(
            select(Item).where(Item.id == args.item_id, Item.user_id == context.user_id)
        )
        if item is None:
            raise ToolExecutionError(DELETE_ITEM, f"Item {args.item_id} not found")

        title = item.title
        await self.db.delete(item)
        await self.db.flush()
        return ToolResult(success=True, data={"item_id": args.item_id, "title": title})

    async def _delete_all_items(self, context: ToolContext, args: DeleteAllItemsArgs) -> ToolResult:
        result = await self.db.execute(
            delete(Item)
            .where(Item.user_id == context.user_id)
            .execution_options(synchronize_session=False)
        )
        return ToolResult(success=True, data={"deleted_count": result.rowcount or 0})
