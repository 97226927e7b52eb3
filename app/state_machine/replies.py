"""
Canned replies (pt-BR) and list formatters used by the engine
"""
from typing import Any, Sequence

from app.state_machine.context import Candidate, ConfirmedItem

GENERIC_APOLOGY = (
    "😅 Opa, algo deu errado aqui! Mas já estou de volta. Me manda aí:\n\n"
    "🎬 Um filme pra salvar\n🎥 Vídeo do YouTube\n🔗 Link interessante\n"
    "📝 Ou qualquer coisa que queira organizar!"
)
PLANNER_APOLOGY = (
    "😅 Eita, dei um bug aqui! Tenta de novo ou me manda algum conteúdo tipo:\n\n"
    "🎬 Nome de um filme\n🎥 Link do YouTube\n🔗 Qualquer link interessante"
)
PLANNER_EMPTY = (
    "😅 Opa, fiquei sem resposta aqui! Tenta de novo ou me manda um filme, "
    "vídeo ou link que eu organizo pra você!"
)
GENERIC_FAILURE = "Não consegui concluir essa ação agora. Tente novamente em instantes."

NO_ITEMS_FOUND = "Você ainda não tem nenhum item salvo com esse critério."
NOTHING_TO_SAVE = "Não tenho nenhuma mensagem anterior para salvar."
SAVED_PREVIOUS = "✅ Salvei!"
CANCELLED = "Tudo bem, cancelei. Se precisar, é só mandar outra coisa."
DELETE_WHICH = "Qual item você quer deletar? Diga o número ou o nome."
DELETE_CANCELLED = "Ok, não deletei nada."

GREETING = "Oi! 👋 Me manda um filme, vídeo, link ou nota que eu guardo pra você."
THANKS = "De nada! 😊"

CASUAL_REPLIES = {
    "oi": "Oi! 👋",
    "olá": "Olá! 👋",
    "ola": "Olá! 👋",
    "bom dia": "Bom dia! ☀️",
    "boa tarde": "Boa tarde! 👋",
    "boa noite": "Boa noite! 🌙",
    "obrigado": THANKS,
    "obrigada": THANKS,
    "valeu": "Valeu! 🤙",
}


def casual_reply(text: str, intent: str) -> str:
    reply = CASUAL_REPLIES.get(text.lower().strip(" !.?"))
    if reply:
        return reply
    return THANKS if intent == "thank" else GREETING


def numbered(candidates: Sequence[Candidate]) -> str:
    return "\n".join(f"{i}. {c.label()}" for i, c in enumerate(candidates, start=1))


def option_range(count: int) -> str:
    """'1, 2 ou 3' style list of valid choices"""
    numbers = [str(i) for i in range(1, count + 1)]
    if len(numbers) <= 1:
        return "".join(numbers)
    return f"{', '.join(numbers[:-1])} ou {numbers[-1]}"


def selection_prompt(candidates: Sequence[Candidate]) -> str:
    return (
        f"Encontrei vários resultados:\n\n{numbered(candidates)}\n\n"
        "Qual você quer salvar? (Digite o número)"
    )


def selection_reprompt(count: int) -> str:
    return f"Por favor, digite o número da opção que deseja ({option_range(count)})."


def saved(label: str) -> str:
    return f"✅ Salvo: {label}"


def not_found(query: str) -> str:
    return f"Não encontrei nada com \"{query}\". Pode tentar com outro nome?"


def batch_detected(queries: Sequence[str]) -> str:
    lines = "\n".join(f"{i}. {q}" for i, q in enumerate(queries, start=1))
    return f"📋 Detectei {len(queries)} itens! Vamos processar:\n{lines}"


def batch_item_saved(position: int, total: int, label: str) -> str:
    return f"✅ [{position}/{total}] {label} salvo!"


def batch_item_skipped(position: int, total: int, query: str) -> str:
    return f"❌ [{position}/{total}] Não encontrei \"{query}\""


def batch_item_prompt(position: int, total: int, query: str, candidates: Sequence[Candidate], remaining: int) -> str:
    text = (
        f"[{position}/{total}] *{query}*\n\nEncontrei:\n{numbered(candidates)}\n\n"
        "Qual você quer? (Digite o número)"
    )
    if remaining > 0:
        text += f"\n\n📋 Ainda faltam {remaining} item(ns)"
    return text


def batch_reprompt(query: str, count: int) -> str:
    return f"Por favor, escolha uma das opções para \"{query}\" ({option_range(count)})."


def batch_summary(confirmed: Sequence[ConfirmedItem]) -> str:
    if not confirmed:
        return "Terminei a lista, mas não consegui salvar nenhum item."
    lines = "\n".join(f"• {item.label()}" for item in confirmed)
    return f"🎉 Pronto! {len(confirmed)} item(ns) salvo(s):\n{lines}"


def items_list(items: Sequence[dict[str, Any]], count: int) -> str:
    icons = {"movie": "🎬", "video": "🎥", "link": "🔗", "note": "📝"}
    lines = "\n".join(
        f"{i}. {icons.get(item.get('type'), '•')} {item.get('title')}"
        for i, item in enumerate(items, start=1)
    )
    header = f"📚 Encontrei {count} item(ns):" if count > len(items) else f"📚 Seus itens ({count}):"
    return f"{header}\n\n{lines}"


def deleted_all(count: int) -> str:
    return f"✅ {count} item(ns) deletado(s) com sucesso."


def deleted_one(title: str) -> str:
    return f"✅ \"{title}\" deletado com sucesso."


def deleted_many(titles: Sequence[str]) -> str:
    if len(titles) == 1:
        return deleted_one(titles[0])
    return f"✅ {len(titles)} item(ns) deletado(s) com sucesso."


def delete_index_out_of_range(selection: int, total: int) -> str:
    return f"Item {selection} não encontrado. Você tem {total} item(ns) salvos."


def delete_confirm_prompt(query: str, titles: Sequence[str]) -> str:
    listed = "\n".join(f"• {t}" for t in titles)
    return (
        f"Quer deletar os itens relacionados a \"{query}\"?\n\n{listed}\n\n"
        "Responda com \"sim\" ou \"não\"."
    )


def delete_confirm_reprompt() -> str:
    return "Responda com \"sim\" para deletar ou \"não\" para cancelar."


STALE_TURN = "Recebi outra mensagem ao mesmo tempo. Pode repetir, por favor?"


def batch_cancelled(confirmed: Sequence[ConfirmedItem]) -> str:
    if not confirmed:
        return CANCELLED
    lines = "\n".join(f"• {item.label()}" for item in confirmed)
    return f"Ok, parei a lista. Já tinha salvo {len(confirmed)} item(ns):\n{lines}"
