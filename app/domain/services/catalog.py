"""
Catalog - resolves a save target to candidates

Movies are looked up on TMDB; links, videos and notes resolve locally to the
one candidate the text already describes.
"""
from typing import Optional, Protocol

import httpx

from app.core.circuit_breaker import get_catalog_circuit_breaker
from app.core.config import settings
from app.core.exceptions import CatalogError
from app.core.logging import get_logger
from app.db.models.item import ItemType
from app.domain.services.intent_classifier import extract_url, normalize
from app.state_machine.context import Candidate

logger = get_logger(__name__)

NOTE_TITLE_MAX = 100


class Catalog(Protocol):
    async def search(self, query: str, item_type: str) -> list[Candidate]:
        ...


def note_candidate(text: str) -> Candidate:
    """Note titled by its first 97 characters, full text kept in metadata"""
    content = text.strip()
    title = content if len(content) <= NOTE_TITLE_MAX else content[:97] + "..."
    return Candidate(
        title=title,
        item_type=ItemType.NOTE.value,
        metadata={"full_content": content},
    )


def _parse_year(release_date: Optional[str]) -> Optional[int]:
    if release_date and len(release_date) >= 4 and release_date[:4].isdigit():
        return int(release_date[:4])
    return None


class DefaultCatalog:
    """TMDB for movies, local resolution for everything else"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        language: Optional[str] = None,
        base_url: Optional[str] = None,
        max_results: int = 10,
        timeout_seconds: float = 10.0,
    ):
        self.api_key = settings.TMDB_API_KEY if api_key is None else api_key
        self.language = language or settings.TMDB_LANGUAGE
        self.base_url = (base_url or settings.TMDB_API_URL).rstrip("/")
        self.max_results = max_results
        self.timeout_seconds = timeout_seconds

    async def search(self, query: str, item_type: str) -> list[Candidate]:
        query = (query or "").strip()
        if not query:
            return []

        if item_type == ItemType.MOVIE.value:
            return await self._search_movies(query)

        if item_type in (ItemType.VIDEO.value, ItemType.LINK.value):
            url = extract_url(query) or query
            return [Candidate(title=url, item_type=item_type, metadata={"url": url})]

        return [note_candidate(query)]

    async def _search_movies(self, query: str) -> list[Candidate]:
        if not self.api_key:
            # Without a TMDB key the title is saved exactly as typed
            logger.warning("TMDB_API_KEY not configured, saving movie without metadata")
            return [Candidate(title=query, item_type=ItemType.MOVIE.value)]

        async def _request() -> dict:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(
                    f"{self.base_url}/search/movie",
                    params={
                        "api_key": self.api_key,
                        "query": query,
                        "language": self.language,
                        "include_adult": "false",
                    },
                )
                if response.status_code != 200:
                    raise CatalogError.from_response("search/movie", response)
                return response.json()

        try:
            payload = await get_catalog_circuit_breaker().execute(_request)
        except CatalogError:
            raise
        except Exception as e:
            raise CatalogError(str(e), details={"query": query}) from e

        candidates = [
            Candidate(
                external_id=str(movie["id"]),
                title=movie.get("title") or movie.get("original_title") or query,
                year=_parse_year(movie.get("release_date")),
                item_type=ItemType.MOVIE.value,
                metadata={
                    "tmdb_id": movie["id"],
                    "original_title": movie.get("original_title"),
                    "overview": movie.get("overview"),
                    "poster_path": movie.get("poster_path"),
                    "vote_average": movie.get("vote_average"),
                },
            )
            for movie in (payload.get("results") or [])[: self.max_results]
            if movie.get("id") is not None
        ]

        # An exact title match is treated as unambiguous
        wanted = normalize(query)
        exact = [
            c for c in candidates
            if normalize(c.title) == wanted or normalize(c.metadata.get("original_title") or "") == wanted
        ]
        if len(exact) == 1:
            return exact

        logger.debug(
            "Catalog movie search",
            extra_data={"query": query, "results": len(candidates)},
        )
        return candidates
