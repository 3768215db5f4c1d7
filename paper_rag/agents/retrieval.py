# =============================================================================
# Vector Query Tool: Query-Time Retrieval Facade
# =============================================================================
#
# Turns a natural-language query (plus an optional metadata filter) into
# ranked fragments:
#
#   query text ──embed(QUERY)──▶ vector ──index.query──▶ results
#
# The query is embedded with the QUERY task variant; documents were
# embedded with DOCUMENT at index time. Both share one dimension.
#
# An empty result is a valid outcome, reported explicitly through
# RetrievalResponse.found / .message so callers never mistake it for a
# successful answer.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from paper_rag.config import settings
from paper_rag.errors import ConfigurationError, InputValidationError
from paper_rag.services.embedder import EmbeddingModel, embed_query
from paper_rag.services.filters import FilterExpression, parse_filter
from paper_rag.services.vectorstore import VectorIndex, VectorSearchResult

logger = logging.getLogger(__name__)

NO_RELEVANT_INFORMATION = "No relevant information found in the indexed documents."


@dataclass
class RetrievalResponse:
    """Results of one retrieval, highest similarity first."""

    query: str
    results: list[VectorSearchResult] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.results)

    @property
    def message(self) -> str:
        if not self.results:
            return NO_RELEVANT_INFORMATION
        return f"Found {len(self.results)} relevant fragments."


class VectorQueryTool:
    """
    Retrieval tool bound to one index and one embedding model.

    The index and embedding model are injected; the tool owns neither.
    """

    name = "vector_query"
    description = (
        "Search the local document index. Arguments: query_text (the main "
        "topic or question), top_k (number of fragments, default 5), "
        "filter (optional metadata filter)."
    )

    def __init__(
        self,
        index: VectorIndex,
        embedding_model: EmbeddingModel,
        index_name: str | None = None,
        default_top_k: int | None = None,
        min_score: float | None = None,
    ) -> None:
        if index is None:
            raise ConfigurationError("VectorQueryTool requires a vector index")
        if embedding_model is None:
            raise ConfigurationError("VectorQueryTool requires an embedding model")

        self._index = index
        self._embedding_model = embedding_model
        self.index_name = index_name or settings.index_name
        self.default_top_k = default_top_k or settings.retrieval_top_k
        self._min_score = (
            settings.retrieval_min_score if min_score is None else min_score
        )

    async def run(
        self,
        query_text: str,
        top_k: int | None = None,
        filter: FilterExpression | Mapping[str, Any] | None = None,
    ) -> RetrievalResponse:
        """
        Embed `query_text` and search the index.

        Raises:
            InputValidationError: Blank query, top_k < 1 or malformed filter.
            ConfigurationError: Missing index or dimension mismatch.
            UpstreamUnavailable: The embedding call failed.
        """
        if not query_text or not query_text.strip():
            raise InputValidationError("query_text must not be empty")
        _top_k = self.default_top_k if top_k is None else top_k
        if _top_k < 1:
            raise InputValidationError(f"top_k must be at least 1, got {_top_k}")
        expression = parse_filter(filter)

        embedding = await asyncio.to_thread(
            embed_query, query_text, self._embedding_model,
        )
        results = await self._index.query(
            self.index_name,
            embedding,
            top_k=_top_k,
            filter=expression,
            min_score=self._min_score,
        )

        logger.info(
            "Retrieval on '%s': %d results (top_k=%d, filter=%s, query='%s')",
            self.index_name, len(results), _top_k, expression, query_text[:80],
        )
        return RetrievalResponse(query=query_text, results=results)
