# =============================================================================
# Embedding Service: Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings through any OpenAI-compatible embedding API
# (OpenAI, Gemini's OpenAI endpoint, DashScope, a local server, ...).
#
# TASK VARIANTS:
# Retrieval embedding models often calibrate queries and documents
# differently. TaskType.QUERY and TaskType.DOCUMENT select per-task
# instruction prefixes from settings; the output dimension is shared.
#
# BATCHING:
# - Texts are partitioned into batches of at most `batch_size` (100).
# - Batches run sequentially, or on a bounded thread pool when
#   max_concurrency > 1. Output order always equals input order.
# - Any failing batch aborts the whole call. A partial index cannot tell
#   "not relevant" apart from "never indexed".
#
# No retry logic lives here; the caller decides whether to re-run.
# =============================================================================

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

import openai
from openai import OpenAI

from paper_rag.config import settings
from paper_rag.errors import ConfigurationError, UpstreamUnavailable

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class TaskType(str, enum.Enum):
    """Which side of retrieval a text is embedded for."""

    DOCUMENT = "document"
    QUERY = "query"


class EmbeddingModel(Protocol):
    """
    Protocol defining the embedding model interface.

    `dimension` is fixed for the lifetime of the model and must match the
    dimension of every index the model writes to or queries.
    """

    name: str
    dimension: int

    def embed(
        self,
        texts: Sequence[str],
        task_type: TaskType,
    ) -> list[list[float]]:
        """Return one vector per text, in input order."""
        ...


# ---------------------------------------------------------------------------
# Implementation: OpenAI-compatible API
# ---------------------------------------------------------------------------


class OpenAIEmbeddingModel:
    """
    Embedding model backed by the OpenAI SDK with a configurable base_url.

    The client is created lazily so importing this module never requires
    an API key.
    """

    def __init__(
        self,
        model: str | None = None,
        dimension: int | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        query_prefix: str | None = None,
        document_prefix: str | None = None,
    ) -> None:
        self.name = model or settings.embedding_model
        self.dimension = dimension or settings.embedding_dimensions
        self._api_key = api_key
        self._base_url = base_url or settings.embedding_base_url
        self._prefixes = {
            TaskType.QUERY: (
                settings.embedding_query_prefix
                if query_prefix is None else query_prefix
            ),
            TaskType.DOCUMENT: (
                settings.embedding_document_prefix
                if document_prefix is None else document_prefix
            ),
        }
        self._client: OpenAI | None = None

    def _get_client(self) -> OpenAI:
        if self._client is None:
            resolved_key = (
                self._api_key or settings.openai_api_key or settings.llm_api_key
            )
            if not resolved_key:
                raise ConfigurationError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )

            client_kwargs: dict = {"api_key": resolved_key}
            if self._base_url:
                client_kwargs["base_url"] = self._base_url
            self._client = OpenAI(**client_kwargs)

            logger.info(
                "Initialized embedding client (model=%s, base_url=%s)",
                self.name,
                self._base_url or "https://api.openai.com/v1",
            )
        return self._client

    def embed(
        self,
        texts: Sequence[str],
        task_type: TaskType,
    ) -> list[list[float]]:
        if not texts:
            return []

        prefix = self._prefixes[task_type]
        inputs = [f"{prefix}{text}" for text in texts]

        try:
            response = self._get_client().embeddings.create(
                model=self.name,
                input=inputs,
                dimensions=self.dimension,
            )
        except openai.APIError as exc:
            raise UpstreamUnavailable(
                f"Embedding request failed (model={self.name}): {exc}"
            ) from exc

        # Sort by index: a reordered response would silently corrupt the
        # text-to-vector pairing.
        return [item.embedding for item in sorted(response.data, key=lambda x: x.index)]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_batch(
    texts: Sequence[str],
    model: EmbeddingModel,
    task_type: TaskType = TaskType.DOCUMENT,
    batch_size: int | None = None,
    max_concurrency: int | None = None,
    progress: ProgressCallback | None = None,
) -> list[list[float]]:
    """
    Embed `texts` in batches, preserving order.

    Args:
        texts: Texts to embed.
        model: Embedding model to call.
        task_type: DOCUMENT at index time, QUERY at query time.
        batch_size: Texts per request (default settings.embedding_batch_size).
        max_concurrency: Batches in flight at once
            (default settings.embedding_max_concurrency).
        progress: Optional callback invoked as progress(batches_done, total).

    Returns:
        vectors, where vectors[i] is the embedding of texts[i].

    Raises:
        UpstreamUnavailable: A batch failed or returned the wrong count.
        ConfigurationError: A vector does not match model.dimension.
    """
    if not texts:
        return []

    _batch_size = batch_size or settings.embedding_batch_size
    _concurrency = max(1, max_concurrency or settings.embedding_max_concurrency)

    batches = [
        list(texts[i:i + _batch_size])
        for i in range(0, len(texts), _batch_size)
    ]
    total = len(batches)
    completed = 0

    def _run_batch(number: int, batch: list[str]) -> list[list[float]]:
        logger.info(
            "Embedding batch %d of %d (%d texts, model=%s, task=%s)",
            number, total, len(batch), model.name, task_type.value,
        )
        try:
            vectors = model.embed(batch, task_type)
        except UpstreamUnavailable as exc:
            raise UpstreamUnavailable(
                f"Embedding batch {number} of {total} failed: {exc}"
            ) from exc

        if len(vectors) != len(batch):
            raise UpstreamUnavailable(
                f"Embedding batch {number} of {total} returned "
                f"{len(vectors)} vectors for {len(batch)} texts"
            )
        for vector in vectors:
            if len(vector) != model.dimension:
                raise ConfigurationError(
                    f"Embedding model '{model.name}' returned a vector of "
                    f"dimension {len(vector)}, expected {model.dimension}"
                )
        return vectors

    results: list[list[float]] = []
    if _concurrency == 1 or total == 1:
        for number, batch in enumerate(batches, 1):
            results.extend(_run_batch(number, batch))
            completed += 1
            if progress:
                progress(completed, total)
    else:
        # executor.map yields in submission order, so batch outputs
        # reassemble in input order regardless of completion order.
        with ThreadPoolExecutor(max_workers=_concurrency) as executor:
            for vectors in executor.map(_run_batch, range(1, total + 1), batches):
                results.extend(vectors)
                completed += 1
                if progress:
                    progress(completed, total)

    logger.info(
        "Generated %d embeddings in %d batches (model=%s, dimensions=%d)",
        len(results), total, model.name, model.dimension,
    )
    return results


def embed_query(text: str, model: EmbeddingModel) -> list[float]:
    """Embed a single query string with the QUERY task variant."""
    return embed_batch([text], model, task_type=TaskType.QUERY, batch_size=1)[0]
