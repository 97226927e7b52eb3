"""
Planner Delegate - language-model fallback for free-form messages

The planner never raises to the engine: provider errors, open circuits and
malformed payloads all come back as a degraded apology reply. Whether the
reply is waiting for the user to pick an option is carried by ``choices``,
filled only when the model calls the ``offer_choices`` tool.
"""
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError

from app.core.circuit_breaker import get_planner_circuit_breaker
from app.core.config import settings
from app.core.exceptions import PlannerError
from app.core.logging import get_logger
from app.domain.services.tool_executor import TOOL_SCHEMAS
from app.state_machine.context import Candidate

logger = get_logger(__name__)

OFFER_CHOICES = "offer_choices"
ANTHROPIC_VERSION = "2023-06-01"

DEFAULT_SYSTEM_PROMPT = """Você é um assistente pessoal que ajuda usuários a organizar conteúdo (filmes, vídeos, links, notas).

CAPACIDADES:
- Identificar e classificar conteúdo (filme, vídeo, link, nota)
- Entender contexto de mensagens anteriores
- Distinguir entre novas solicitações e refinamentos/complementos

COMPORTAMENTO COM MÚLTIPLAS MENSAGENS:
1. Se a nova mensagem se refere ao conteúdo anterior (ex: "o de 1999", "quero o primeiro", "com o brad pitt"):
   - Trate como REFINAMENTO do contexto anterior
   - Use o histórico para entender a solicitação completa

2. Se a nova mensagem é independente (ex: novo filme, novo link):
   - Trate como NOVA SOLICITAÇÃO separada

3. Quando precisar que o usuário escolha entre opções, use a ferramenta offer_choices
   em vez de apenas perguntar no texto.

Seja conciso, prestativo e natural. Sempre considere o histórico recente."""

DEGRADED_REPLY = "⚠️ Serviço de IA indisponível. Tente novamente mais tarde."
UNCONFIGURED_REPLY = (
    "⚠️ Nenhum serviço de IA disponível no momento. "
    "Posso salvar filmes, vídeos, links e notas: é só me mandar!"
)

_STATUS_REPLIES = {
    401: "⚠️ Serviço de IA mal configurado. Avise o administrador.",
    429: "⚠️ Limite de requisições atingido. Tente novamente em alguns minutos.",
}

OFFER_CHOICES_SCHEMA: dict[str, Any] = {
    "description": (
        "Apresenta uma lista numerada de opções e aguarda o usuário escolher uma pelo número."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "candidates": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "title": {"type": "string"},
                        "year": {"type": "integer"},
                        "item_type": {"type": "string", "enum": ["movie", "video", "link", "note"]},
                        "external_id": {"type": "string"},
                    },
                    "required": ["title"],
                },
                "minItems": 2,
            },
        },
        "required": ["candidates"],
    },
}


@dataclass
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class HistoryMessage:
    role: str
    content: str


@dataclass
class PlannerRequest:
    message: str
    history: Sequence[HistoryMessage] = ()
    system_prompt: Optional[str] = None


@dataclass
class PlannerReply:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    choices: list[Candidate] = field(default_factory=list)
    degraded: bool = False


class PlannerDelegate(Protocol):
    async def call(self, request: PlannerRequest) -> PlannerReply:
        ...


def build_tools() -> list[dict[str, Any]]:
    tools = [
        {"name": name, **schema}
        for name, schema in TOOL_SCHEMAS.items()
    ]
    tools.append({"name": OFFER_CHOICES, **OFFER_CHOICES_SCHEMA})
    return tools


def build_messages(request: PlannerRequest) -> list[dict[str, str]]:
    messages = [
        {"role": m.role, "content": m.content}
        for m in request.history
        if m.role in ("user", "assistant") and m.content
    ]
    # The Messages API requires the first turn to come from the user
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    messages.append({"role": "user", "content": request.message})
    return messages


def parse_reply(payload: dict[str, Any]) -> PlannerReply:
    """Split a Messages API response into text, tool calls and offered choices"""
    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    choices: list[Candidate] = []

    for block in payload.get("content") or []:
        block_type = block.get("type")
        if block_type == "text":
            texts.append(block.get("text") or "")
        elif block_type == "tool_use":
            name = block.get("name") or ""
            arguments = block.get("input") or {}
            if name == OFFER_CHOICES:
                for raw in arguments.get("candidates") or []:
                    try:
                        choices.append(Candidate.model_validate(raw))
                    except ValidationError:
                        logger.warning("Dropping malformed planner choice", extra_data={"choice": raw})
            else:
                tool_calls.append(ToolCall(name=name, arguments=arguments))

    return PlannerReply(
        text="\n".join(t for t in texts if t).strip(),
        tool_calls=tool_calls,
        choices=choices if len(choices) >= 2 else [],
    )


class AnthropicPlanner:
    """Claude Messages API over httpx, guarded by the planner circuit breaker"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        api_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.model = model or settings.ANTHROPIC_MODEL
        self.max_tokens = max_tokens or settings.ANTHROPIC_MAX_TOKENS
        self.api_url = api_url or settings.ANTHROPIC_API_URL
        self.timeout_seconds = timeout_seconds or settings.PLANNER_TIMEOUT_SECONDS

    async def call(self, request: PlannerRequest) -> PlannerReply:
        body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": request.system_prompt or DEFAULT_SYSTEM_PROMPT,
            "messages": build_messages(request),
            "tools": build_tools(),
        }

        async def _send() -> dict[str, Any]:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.api_url,
                    json=body,
                    headers={
                        "x-api-key": self.api_key,
                        "anthropic-version": ANTHROPIC_VERSION,
                        "content-type": "application/json",
                    },
                )
                if response.status_code != 200:
                    raise PlannerError.from_response("messages", response)
                return response.json()

        try:
            payload = await get_planner_circuit_breaker().execute(_send)
            reply = parse_reply(payload)
        except PlannerError as e:
            status = e.details.get("status_code")
            logger.error(
                "Planner request rejected",
                extra_data={"status_code": status, "model": self.model},
            )
            return PlannerReply(text=_STATUS_REPLIES.get(status, DEGRADED_REPLY), degraded=True)
        except Exception as e:
            logger.error(
                "Planner unavailable",
                extra_data={"error": str(e), "error_type": type(e).__name__},
            )
            return PlannerReply(text=DEGRADED_REPLY, degraded=True)

        logger.info(
            "Planner replied",
            extra_data={
                "tool_calls": [c.name for c in reply.tool_calls],
                "choices": len(reply.choices),
                "stop_reason": payload.get("stop_reason"),
            },
        )
        return reply


class UnconfiguredPlanner:
    """Stands in when no provider key is configured"""

    async def call(self, request: PlannerRequest) -> PlannerReply:
        return PlannerReply(text=UNCONFIGURED_REPLY, degraded=True)


def get_planner() -> PlannerDelegate:
    if settings.ANTHROPIC_API_KEY:
        return AnthropicPlanner()
    logger.warning("ANTHROPIC_API_KEY not configured, planner disabled")
    return UnconfiguredPlanner()
