"""Retrieval backend: semantic search over a document store.

The storage engine is out of scope; any LangChain ``VectorStore`` can be
plugged in through ``VectorStoreRetriever``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

from aigent.errors import RetrievalError

if TYPE_CHECKING:
    from langchain_core.vectorstores import VectorStore

logger = logging.getLogger(__name__)


class SearchResult(BaseModel):
    content: str
    similarity: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetrievalBackend(Protocol):
    async def search(self, query: str, top_k: int) -> list[SearchResult]: ...


class VectorStoreRetriever:
    """Adapts a LangChain vector store to the retrieval contract."""

    def __init__(self, store: VectorStore) -> None:
        self._store = store

    async def search(self, query: str, top_k: int) -> list[SearchResult]:
        try:
            hits = await self._store.asimilarity_search_with_relevance_scores(query, k=top_k)
        except Exception as e:
            raise RetrievalError(f"Retrieval search failed for {query!r}: {e}") from e

        logger.debug(f"Retrieval returned {len(hits)} hit(s) for {query!r}")
        return [
            SearchResult(content=doc.page_content, similarity=score, metadata=doc.metadata)
            for doc, score in hits
        ]


def format_results(results: list[SearchResult]) -> str:
    if not results:
        return "No relevant results found."

    lines = ["Retrieved the following relevant information:"]
    for i, result in enumerate(results, 1):
        lines.append(f"{i}. {result.content} (similarity: {result.similarity:.2f})")
    return "\n".join(lines)
