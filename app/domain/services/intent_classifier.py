"""
Intent Classifier - deterministic text -> intent mapping

Pattern based, no I/O. Anything the patterns do not recognise falls back to
``free_form`` (handed to the planner) or ``unknown`` for text with no words at all.
"""
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from app.db.models.item import ItemType


class Intent(str, Enum):
    GREET = "greet"
    THANK = "thank"
    CONFIRM = "confirm"
    DENY = "deny"
    CANCEL = "cancel"
    DELETE_ALL = "delete_all"
    DELETE_ITEM = "delete_item"
    DELETE_SELECTED = "delete_selected"
    LIST_ALL = "list_all"
    SEARCH = "search"
    SAVE_PREVIOUS = "save_previous"
    BATCH = "batch"
    SAVE_CONTENT = "save_content"
    FREE_FORM = "free_form"
    UNKNOWN = "unknown"


@dataclass
class IntentEntities:
    selection: Optional[int] = None
    query: Optional[str] = None
    items: list[str] = field(default_factory=list)
    url: Optional[str] = None
    content_type: Optional[str] = None


@dataclass
class IntentResult:
    intent: Intent
    confidence: float
    entities: IntentEntities = field(default_factory=IntentEntities)


SAVE_VERBS = r"(?:salva|salvar|salve|guarda|guardar|guarde|adiciona|adicionar|adicione|anota|anotar|anote)"
DELETE_VERBS = r"(?:apaga|apagar|apague|deleta|deletar|delete|remove|remover|remova|exclui|excluir|exclua|tira|tirar)"
SEARCH_VERBS = r"(?:busca|buscar|busque|procura|procurar|procure|pesquisa|pesquisar|pesquise|acha|achar|encontra|encontrar)"

URL_RE = re.compile(r"(https?://[^\s]+|www\.[^\s]+)", re.IGNORECASE)
VIDEO_HOSTS = ("youtube.com", "youtu.be", "vimeo.com", "tiktok.com")

ORDINALS = {
    "primeiro": 1, "primeira": 1,
    "segundo": 2, "segunda": 2,
    "terceiro": 3, "terceira": 3,
    "quarto": 4, "quarta": 4,
    "quinto": 5, "quinta": 5,
}

_SELECTION_RE = re.compile(
    r"^(?:(?:o|a|op[cç][aã]o|n[uú]mero|n[º°o]\.?|#)\s*)?(\d{1,3})\s*[.)!]?$",
    re.IGNORECASE,
)
_ORDINAL_RE = re.compile(
    r"^(?:(?:o|a)\s+)?(" + "|".join(ORDINALS) + r")(?:\s+(?:op[cç][aã]o|item|filme|link))?[.!]?$",
    re.IGNORECASE,
)

_CONFIRM_WORDS = {
    "sim", "s", "isso", "isso mesmo", "pode", "pode sim", "confirmo", "confirma",
    "claro", "ok", "okay", "beleza", "blz", "certo", "yes", "manda ver", "bora",
}
_DENY_WORDS = {"nao", "n", "no", "nope", "negativo", "nao quero", "melhor nao", "nem"}
_CANCEL_RE = re.compile(r"^(?:cancela|cancelar|cancele|deixa pra la|deixa|esquece|para|pare|sair|chega)\b")
_GREET_RE = re.compile(r"^(?:oi+|ola|opa|e ai|eai|hey|hello|hi|bom dia|boa tarde|boa noite)\b")
_THANK_RE = re.compile(r"\b(?:obrigad[oa]|brigad[oa]|valeu|vlw|thanks|grat[oa])\b")

_DELETE_ALL_RE = re.compile(rf"\b{DELETE_VERBS}\b.*\b(?:tudo|todos|todas)\b|\blimpa(?:r)?\s+tudo\b")
_DELETE_RE = re.compile(rf"^\s*{DELETE_VERBS}\b\s*(?P<rest>.*)$", re.IGNORECASE | re.DOTALL)
_SAVE_RE = re.compile(rf"^\s*(?P<verb>{SAVE_VERBS})\b\s*(?P<rest>.*)$", re.IGNORECASE | re.DOTALL)
_SEARCH_RE = re.compile(rf"^\s*{SEARCH_VERBS}\b\s*(?P<rest>.*)$", re.IGNORECASE | re.DOTALL)

_SAVE_PREVIOUS_RE = re.compile(
    rf"^{SAVE_VERBS}(?:\s+(?:isso|isto|ai|ae|aqui|essa|esse|ela|ele|a anterior|o anterior|"
    r"a mensagem anterior|essa mensagem|esse texto|isso ai|isso aqui|pra mim))?[.!]*$"
)
_LIST_RE = re.compile(
    r"^(?:lista|listar|liste|mostra|mostrar|mostre|ver|veja|exibe|exibir)\b"
    r"(?:\s+(?:tudo|todos|todas|meus|minhas|os|as|itens|filmes|videos|links|notas|minha lista)\b.*)?$"
    r"|^(?:meus|minhas)\s+(?:itens|filmes|videos|links|notas)\b"
    r"|\bo que (?:eu )?(?:salvei|guardei|tenho)\b"
)
_LIST_TYPE_WORDS = {
    "filmes": ItemType.MOVIE.value,
    "videos": ItemType.VIDEO.value,
    "links": ItemType.LINK.value,
    "notas": ItemType.NOTE.value,
}
_FILLER_PREFIX_RE = re.compile(
    r"^(?:(?:o|a|os|as|um|uma)\s+)?(?:filme|filmes|serie|série|video|vídeo|link|nota|item)\s+"
    r"(?:(?:do|da|de|sobre|chamado|chamada)\s+)?",
    re.IGNORECASE,
)
_NOTE_PREFIX_RE = re.compile(r"^\s*(?:nota|lembrete|lembrar)\s*[:\-]?\s*", re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-*•·]|\d{1,3}[.)-])\s*")
_SPLIT_RE = re.compile(r"\s*(?:,|;|\s+e\s+)\s*", re.IGNORECASE)


def normalize(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace, for keyword matching"""
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped.lower()).strip()


def parse_selection(text: str) -> Optional[int]:
    """1-based option number from '2', 'o 2', 'número 2', 'segundo'... or None"""
    candidate = (text or "").strip()
    if not candidate or len(candidate) > 40:
        return None
    match = _SELECTION_RE.match(candidate)
    if match:
        return int(match.group(1))
    match = _ORDINAL_RE.match(normalize(candidate))
    if match:
        return ORDINALS[match.group(1)]
    return None


def extract_url(text: str) -> Optional[str]:
    match = URL_RE.search(text or "")
    return match.group(1).rstrip(".,;!?)") if match else None


def detect_type(text: str) -> str:
    """Item type of a save target: video/link from URLs, note on an explicit prefix, else movie"""
    url = extract_url(text)
    if url:
        lowered = url.lower()
        if any(host in lowered for host in VIDEO_HOSTS):
            return ItemType.VIDEO.value
        return ItemType.LINK.value
    if _NOTE_PREFIX_RE.match(text or ""):
        return ItemType.NOTE.value
    return ItemType.MOVIE.value


def clean_query(text: str) -> str:
    """Drop articles and 'o filme'-style fillers around a title"""
    query = (text or "").strip().strip("\"'“”").strip()
    query = _FILLER_PREFIX_RE.sub("", query, count=1).strip()
    return query.rstrip(" .!?").strip("\"'“”").strip()


def split_batch(text: str, max_items: int) -> list[str]:
    """
    Entries of a list message: one per line when the message has several lines,
    otherwise split on commas, semicolons and ' e '. Empty entries are dropped.
    """
    lines = [_BULLET_RE.sub("", line).strip() for line in (text or "").splitlines()]
    # "salva esses filmes:" style header lines are not entries
    lines = [line for line in lines if line and not line.endswith(":")]
    if len(lines) >= 2:
        parts = lines
    else:
        parts = _SPLIT_RE.split(text or "")
    items = [clean_query(part) for part in parts]
    return [item for item in items if item][:max_items]


class IntentClassifier:
    """Maps one message to an intent plus entities. Never raises."""

    def __init__(self, max_batch_items: int = 10):
        self.max_batch_items = max_batch_items

    def classify(self, text: str) -> IntentResult:
        raw = (text or "").strip()
        norm = normalize(raw)
        if not norm or not re.search(r"\w", norm):
            return IntentResult(Intent.UNKNOWN, 0.0)

        selection = parse_selection(raw)
        if selection is not None:
            return IntentResult(Intent.CONFIRM, 0.9, IntentEntities(selection=selection))

        bare = norm.strip(" !.?")
        if bare in _CONFIRM_WORDS:
            return IntentResult(Intent.CONFIRM, 0.9)
        if bare in _DENY_WORDS:
            return IntentResult(Intent.DENY, 0.9)
        if _CANCEL_RE.match(bare) and len(bare.split()) <= 4:
            return IntentResult(Intent.CANCEL, 0.85)

        if _DELETE_ALL_RE.search(norm):
            return IntentResult(Intent.DELETE_ALL, 0.95)

        delete = _DELETE_RE.match(raw)
        if delete:
            return self._classify_delete(delete.group("rest"))

        if _SAVE_PREVIOUS_RE.match(bare):
            return IntentResult(Intent.SAVE_PREVIOUS, 0.9)

        if _LIST_RE.search(bare) and not _SEARCH_RE.match(raw):
            content_type = next(
                (item_type for word, item_type in _LIST_TYPE_WORDS.items() if word in bare.split()),
                None,
            )
            return IntentResult(Intent.LIST_ALL, 0.85, IntentEntities(content_type=content_type))

        search = _SEARCH_RE.match(raw)
        if search:
            query = clean_query(search.group("rest"))
            return IntentResult(
                Intent.SEARCH if query else Intent.LIST_ALL,
                0.8,
                IntentEntities(query=query or None),
            )

        if len(bare.split()) <= 4 and _GREET_RE.match(bare):
            return IntentResult(Intent.GREET, 0.9)
        if len(bare.split()) <= 6 and _THANK_RE.search(bare):
            return IntentResult(Intent.THANK, 0.9)

        save = _SAVE_RE.match(raw)
        body = save.group("rest").lstrip(" :-") if save else raw
        note_verb = bool(save) and normalize(save.group("verb")).startswith("anot")

        batch = self._detect_batch(raw, body, explicit_save=bool(save))
        if batch:
            return IntentResult(
                Intent.BATCH,
                0.85,
                IntentEntities(items=batch, content_type=ItemType.NOTE.value if note_verb else None),
            )

        url = extract_url(raw)
        if url:
            return IntentResult(
                Intent.SAVE_CONTENT,
                0.9,
                IntentEntities(url=url, query=url, content_type=detect_type(url)),
            )

        if save:
            content_type = ItemType.NOTE.value if note_verb else detect_type(body)
            query = _NOTE_PREFIX_RE.sub("", body).strip() if content_type == ItemType.NOTE.value else clean_query(body)
            if query:
                return IntentResult(
                    Intent.SAVE_CONTENT,
                    0.8,
                    IntentEntities(query=query, content_type=content_type),
                )

        return IntentResult(Intent.FREE_FORM, 0.5, IntentEntities(query=raw))

    def _classify_delete(self, rest: str) -> IntentResult:
        rest = (rest or "").strip()
        selection = parse_selection(rest)
        if selection is not None:
            return IntentResult(Intent.DELETE_SELECTED, 0.9, IntentEntities(selection=selection))
        query = clean_query(rest)
        if query:
            return IntentResult(Intent.DELETE_ITEM, 0.85, IntentEntities(query=query))
        return IntentResult(Intent.DELETE_ITEM, 0.6)

    def _detect_batch(self, raw: str, body: str, *, explicit_save: bool) -> list[str]:
        lines = [line for line in raw.splitlines() if line.strip()]
        multiline = len(lines) >= 2
        if not explicit_save:
            # an unprompted list must look like a list, not a paragraph or a question
            if not multiline or "?" in raw or any(len(line.split()) > 8 for line in lines):
                return []
        if extract_url(body) and not multiline:
            return []
        items = split_batch(body, self.max_batch_items)
        return items if len(items) >= 2 else []
