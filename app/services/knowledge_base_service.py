"""Client for the external wiki knowledge base (search, article lookup, categories)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx
from pydantic import TypeAdapter, ValidationError

from app.core.config import settings
from app.schemas.knowledge_base import Article, SearchHit

logger = logging.getLogger(__name__)

_search_hits = TypeAdapter(list[SearchHit])


class KnowledgeBaseError(RuntimeError):
    pass


class KnowledgeBase(ABC):
    """
    Read-only view of the wiki used by the retrieval engine.

    Implementations must return search hits in rank order, best match first.
    """

    @abstractmethod
    async def search(self, query: str) -> list[SearchHit]:
        """Keyword search across every category."""

    @abstractmethod
    async def get_by_slug(self, slug: str) -> Article | None:
        """Full article for ``slug``, or ``None`` when it no longer exists."""

    async def list_categories(self) -> list[str]:
        return []


class KnowledgeBaseClient(KnowledgeBase):
    def __init__(
        self,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.knowledge_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.knowledge_base_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise KnowledgeBaseError(f"Knowledge base request failed: {exc}") from exc
        return response

    async def search(self, query: str) -> list[SearchHit]:
        if not query.strip():
            return []
        response = await self._get("/search", params={"q": query})
        if response.status_code >= 400:
            raise KnowledgeBaseError(
                f"Knowledge base search failed with status {response.status_code}: {response.text}"
            )
        try:
            hits = _search_hits.validate_python(response.json())
        except (ValueError, ValidationError) as exc:
            raise KnowledgeBaseError("Knowledge base returned malformed search results") from exc

        logger.info("Knowledge base search for %r returned %d hits", query, len(hits))
        return hits

    async def get_by_slug(self, slug: str) -> Article | None:
        response = await self._get(f"/articles/{slug}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise KnowledgeBaseError(
                f"Article lookup for {slug!r} failed with status {response.status_code}"
            )
        try:
            return Article.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise KnowledgeBaseError(f"Knowledge base returned a malformed article for {slug!r}") from exc

    async def list_categories(self) -> list[str]:
        response = await self._get("/categories")
        if response.status_code >= 400:
            raise KnowledgeBaseError(f"Category listing failed with status {response.status_code}")
        try:
            payload = response.json()
            if not isinstance(payload, list):
                raise TypeError(f"expected a list, got {type(payload).__name__}")
            # Entries are {"category": ..., "articleCount": ...}; bare strings are accepted too.
            return [item["category"] if isinstance(item, dict) else str(item) for item in payload]
        except (ValueError, TypeError, KeyError) as exc:
            raise KnowledgeBaseError("Knowledge base returned malformed categories") from exc
