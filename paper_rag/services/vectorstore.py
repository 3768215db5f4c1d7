# =============================================================================
# Vector Index Abstraction: Pluggable Backend Protocol
# =============================================================================
#
# A vector index is a named collection with a fixed dimension:
#
#   create_index(name, dimension) : idempotent; a different dimension for an
#                                    existing name is a ConfigurationError
#   delete_index(name)            : explicit, the only destructive operation
#   upsert(name, records)         : replace by record id
#   query(name, vector, top_k, filter, min_score)
#                                 : cosine similarity, highest first
#
# Querying or writing an index that was never created raises
# IndexNotFoundError rather than returning nothing: an empty answer would
# hide a misconfigured index name.
#
# Mixed sync/async interface:
# - create_index() / upsert() are sync → called by the offline indexing run
# - query() is async → called per request by the retrieval tool
#
# CONCURRENCY: reads run concurrently; writes are serialised per index name
# with one lock per name. Different indexes never block each other.
#
# ARCHITECTURE:
#   VectorIndex (Protocol)
#   ├── ChromaVectorIndex: ChromaDB (in-memory, on-disk or client/server)
#   └── PgVectorIndex    : PostgreSQL + pgvector via SQLAlchemy
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import chromadb
from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Column,
    Engine,
    Integer,
    MetaData,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    select,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert

from paper_rag.config import settings
from paper_rag.errors import (
    ConfigurationError,
    IndexNotFoundError,
    InputValidationError,
)
from paper_rag.services.filters import (
    And,
    Eq,
    FilterExpression,
    In,
    to_chroma_where,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class IndexedRecord:
    """
    One vector plus its metadata, addressed by `id`.

    metadata always carries `text`, `source` and `excerpt_keywords`; extra
    scalar keys (ordinal, token_count, ...) are stored alongside and can be
    filtered on.
    """

    id: str
    vector: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.metadata.get("text", "")


@dataclass
class VectorSearchResult:
    """A single result from vector similarity search."""

    record_id: str
    text: str
    source: str
    excerpt_keywords: str
    similarity_score: float  # cosine similarity, higher = more relevant
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorIndex(Protocol):
    """Protocol every vector index backend implements."""

    def create_index(self, name: str, dimension: int) -> None:
        ...

    def delete_index(self, name: str) -> None:
        ...

    def upsert(self, name: str, records: Sequence[IndexedRecord]) -> int:
        """Insert or replace records. Returns the number written."""
        ...

    def delete_records(self, name: str, filter: FilterExpression) -> int:
        """Delete the records matching `filter`. Returns the number removed."""
        ...

    async def query(
        self,
        name: str,
        query_vector: list[float],
        top_k: int = 5,
        filter: FilterExpression | None = None,
        min_score: float | None = None,
    ) -> list[VectorSearchResult]:
        """Up to top_k results, highest similarity first."""
        ...


class _WriteLocks:
    """One lock per index name, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def for_index(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name, threading.Lock())


def _check_dimension(name: str, expected: int, vector: Sequence[float]) -> None:
    if len(vector) != expected:
        raise ConfigurationError(
            f"Vector dimension {len(vector)} does not match index '{name}' "
            f"dimension {expected}"
        )


def _require_filter(filter: FilterExpression | None) -> FilterExpression:
    if filter is None:
        raise InputValidationError(
            "delete_records needs a filter; use delete_index to drop every record"
        )
    return filter


def _validate_top_k(top_k: int) -> None:
    if top_k < 1:
        raise InputValidationError(f"top_k must be at least 1, got {top_k}")


# ---------------------------------------------------------------------------
# Implementation 1: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorIndex:
    """
    ChromaDB-backed vector index: one collection per index name.

    The declared dimension is stored in the collection metadata next to
    the cosine distance setting, so it survives restarts when ChromaDB
    persists to disk.

    Client modes:
    - client/server: CHROMA_URL
    - on-disk: CHROMA_PATH
    - in-process memory (default; tests)
    """

    def __init__(self, client: Any | None = None) -> None:
        if client is not None:
            self._client = client
        elif settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        elif settings.chroma_path:
            self._client = chromadb.PersistentClient(path=settings.chroma_path)
        else:
            self._client = chromadb.Client()
        self._locks = _WriteLocks()

    # -- lifecycle ----------------------------------------------------------

    def create_index(self, name: str, dimension: int) -> None:
        if dimension < 1:
            raise InputValidationError(
                f"dimension must be positive, got {dimension}"
            )
        with self._locks.for_index(name):
            if self._exists(name):
                existing = self._dimension(self._client.get_collection(name=name))
                if existing != dimension:
                    raise ConfigurationError(
                        f"Index '{name}' already exists with dimension "
                        f"{existing}, requested {dimension}. Delete the index "
                        "explicitly before recreating it."
                    )
                logger.debug("Index '%s' already exists (dimension=%d)", name, dimension)
                return

            self._client.create_collection(
                name=name,
                metadata={"hnsw:space": "cosine", "dimension": dimension},
            )
            logger.info("Created Chroma index '%s' (dimension=%d)", name, dimension)

    def delete_index(self, name: str) -> None:
        with self._locks.for_index(name):
            if not self._exists(name):
                raise IndexNotFoundError(name)
            self._client.delete_collection(name=name)
            logger.info("Deleted Chroma index '%s'", name)

    # -- writes -------------------------------------------------------------

    def upsert(self, name: str, records: Sequence[IndexedRecord]) -> int:
        if not records:
            return 0

        with self._locks.for_index(name):
            collection = self._require(name)
            dimension = self._dimension(collection)
            for record in records:
                _check_dimension(name, dimension, record.vector)

            collection.upsert(
                ids=[r.id for r in records],
                embeddings=[r.vector for r in records],
                documents=[r.text for r in records],
                metadatas=[
                    _sanitise_chroma_metadata(
                        {k: v for k, v in r.metadata.items() if k != "text"}
                    )
                    for r in records
                ],
            )

        logger.info("Upserted %d records into Chroma index '%s'", len(records), name)
        return len(records)

    def delete_records(self, name: str, filter: FilterExpression) -> int:
        where = to_chroma_where(_require_filter(filter))
        with self._locks.for_index(name):
            collection = self._require(name)
            ids = collection.get(where=where, include=[])["ids"]
            if ids:
                collection.delete(ids=ids)

        logger.info("Deleted %d records from Chroma index '%s'", len(ids), name)
        return len(ids)

    # -- reads --------------------------------------------------------------

    async def query(
        self,
        name: str,
        query_vector: list[float],
        top_k: int = 5,
        filter: FilterExpression | None = None,
        min_score: float | None = None,
    ) -> list[VectorSearchResult]:
        """
        Similarity search in ChromaDB.

        The ChromaDB client is synchronous, so the query runs in a worker
        thread to keep the event loop free.
        """
        _validate_top_k(top_k)

        def _sync_query() -> list[VectorSearchResult]:
            collection = self._require(name)
            _check_dimension(name, self._dimension(collection), query_vector)

            count = collection.count()
            if count == 0:
                return []

            results = collection.query(
                query_embeddings=[query_vector],
                n_results=min(top_k, count),
                where=to_chroma_where(filter),
                include=["documents", "metadatas", "distances"],
            )

            search_results: list[VectorSearchResult] = []
            if results and results["ids"] and results["ids"][0]:
                for i, record_id in enumerate(results["ids"][0]):
                    # Chroma cosine distance is in [0, 2]; convert to similarity
                    similarity = round(1.0 - results["distances"][0][i], 4)
                    if min_score is not None and similarity < min_score:
                        continue
                    metadata = dict(results["metadatas"][0][i] or {})
                    content = results["documents"][0][i] or ""
                    search_results.append(VectorSearchResult(
                        record_id=record_id,
                        text=content,
                        source=str(metadata.get("source", "")),
                        excerpt_keywords=str(metadata.get("excerpt_keywords", "")),
                        similarity_score=similarity,
                        metadata=metadata,
                    ))

            search_results.sort(key=lambda r: r.similarity_score, reverse=True)
            return search_results

        results = await asyncio.to_thread(_sync_query)
        logger.debug(
            "Chroma query on '%s' returned %d results (top_k=%d, filter=%s)",
            name, len(results), top_k, filter,
        )
        return results

    # -- helpers ------------------------------------------------------------

    def _exists(self, name: str) -> bool:
        # list_collections() returns names or Collection objects depending
        # on the chromadb release.
        return any(
            (c if isinstance(c, str) else c.name) == name
            for c in self._client.list_collections()
        )

    def _require(self, name: str):
        if not self._exists(name):
            raise IndexNotFoundError(name)
        return self._client.get_collection(name=name)

    @staticmethod
    def _dimension(collection) -> int:
        metadata = collection.metadata or {}
        if "dimension" not in metadata:
            raise ConfigurationError(
                f"Collection '{collection.name}' has no declared dimension; "
                "it was not created through create_index()"
            )
        return int(metadata["dimension"])


# ---------------------------------------------------------------------------
# Implementation 2: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------

_INDEX_NAME_RE = re.compile(r"^[a-z][a-z0-9_]{0,47}$")


class PgVectorIndex:
    """
    pgvector-backed vector index using PostgreSQL through SQLAlchemy Core.

    Each index is its own table `rag_<name>` with a `vector(dimension)`
    column; a registry table records the declared dimension of every index
    so a mismatch is detected before any DDL runs.
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._metadata = MetaData()
        self._registry = Table(
            "rag_index_registry",
            self._metadata,
            Column("name", Text, primary_key=True),
            Column("dimension", Integer, nullable=False),
        )
        self._tables: dict[str, Table] = {}
        self._locks = _WriteLocks()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(settings.database_url_sync)
        return self._engine

    # -- lifecycle ----------------------------------------------------------

    def create_index(self, name: str, dimension: int) -> None:
        if dimension < 1:
            raise InputValidationError(
                f"dimension must be positive, got {dimension}"
            )
        table_name = self.table_name(name)

        with self._locks.for_index(name), self.engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            self._registry.create(conn, checkfirst=True)

            existing = conn.execute(
                select(self._registry.c.dimension)
                .where(self._registry.c.name == name)
            ).scalar_one_or_none()
            if existing is not None:
                if existing != dimension:
                    raise ConfigurationError(
                        f"Index '{name}' already exists with dimension "
                        f"{existing}, requested {dimension}. Delete the index "
                        "explicitly before recreating it."
                    )
                return

            self._table(name, dimension).create(conn, checkfirst=True)
            conn.execute(
                self._registry.insert().values(name=name, dimension=dimension)
            )

        logger.info(
            "Created pgvector index '%s' as table %s (dimension=%d)",
            name, table_name, dimension,
        )

    def delete_index(self, name: str) -> None:
        with self._locks.for_index(name), self.engine.begin() as conn:
            dimension = self._lookup_dimension(conn, name)
            self._table(name, dimension).drop(conn, checkfirst=True)
            conn.execute(
                delete(self._registry).where(self._registry.c.name == name)
            )
        self._tables.pop(name, None)
        logger.info("Deleted pgvector index '%s'", name)

    # -- writes -------------------------------------------------------------

    def upsert(self, name: str, records: Sequence[IndexedRecord]) -> int:
        if not records:
            return 0

        with self._locks.for_index(name), self.engine.begin() as conn:
            dimension = self._lookup_dimension(conn, name)
            for record in records:
                _check_dimension(name, dimension, record.vector)

            table = self._table(name, dimension)
            stmt = pg_insert(table).values([
                {
                    "id": r.id,
                    "embedding": r.vector,
                    "content": r.text,
                    "meta": {k: v for k, v in r.metadata.items() if k != "text"},
                }
                for r in records
            ])
            conn.execute(stmt.on_conflict_do_update(
                index_elements=[table.c.id],
                set_={
                    "embedding": stmt.excluded.embedding,
                    "content": stmt.excluded.content,
                    "meta": stmt.excluded.meta,
                },
            ))

        logger.info("Upserted %d records into pgvector index '%s'", len(records), name)
        return len(records)

    def delete_records(self, name: str, filter: FilterExpression) -> int:
        _require_filter(filter)
        with self._locks.for_index(name), self.engine.begin() as conn:
            table = self._table(name, self._lookup_dimension(conn, name))
            removed = conn.execute(self.build_delete(table, filter)).rowcount

        logger.info("Deleted %d records from pgvector index '%s'", removed, name)
        return removed

    # -- reads --------------------------------------------------------------

    async def query(
        self,
        name: str,
        query_vector: list[float],
        top_k: int = 5,
        filter: FilterExpression | None = None,
        min_score: float | None = None,
    ) -> list[VectorSearchResult]:
        """
        Cosine similarity search. pgvector's cosine_distance() is in [0, 2];
        similarity is 1 - distance.
        """
        _validate_top_k(top_k)

        def _sync_query() -> list[VectorSearchResult]:
            with self.engine.connect() as conn:
                dimension = self._lookup_dimension(conn, name)
                _check_dimension(name, dimension, query_vector)
                table = self._table(name, dimension)
                stmt = self.build_query(table, query_vector, top_k, filter, min_score)
                rows = conn.execute(stmt).all()

            return [
                VectorSearchResult(
                    record_id=row.id,
                    text=row.content,
                    source=str((row.meta or {}).get("source", "")),
                    excerpt_keywords=str((row.meta or {}).get("excerpt_keywords", "")),
                    similarity_score=round(1.0 - row.distance, 4),
                    metadata=row.meta or {},
                )
                for row in rows
            ]

        return await asyncio.to_thread(_sync_query)

    # -- SQL construction ---------------------------------------------------

    @staticmethod
    def table_name(name: str) -> str:
        """Map an index name to its table, rejecting unsafe identifiers."""
        if not _INDEX_NAME_RE.match(name):
            raise InputValidationError(
                f"Invalid index name '{name}': use lowercase letters, digits "
                "and underscores, starting with a letter (max 48 chars)"
            )
        return f"rag_{name}"

    def build_query(
        self,
        table: Table,
        query_vector: list[float],
        top_k: int,
        filter: FilterExpression | None = None,
        min_score: float | None = None,
    ):
        distance = table.c.embedding.cosine_distance(query_vector)
        stmt = (
            select(
                table.c.id,
                table.c.content,
                table.c.meta,
                distance.label("distance"),
            )
            .order_by(distance)
            .limit(top_k)
        )
        if filter is not None:
            stmt = stmt.where(filter_to_sql(filter, table))
        if min_score is not None:
            stmt = stmt.where(distance <= 1.0 - min_score)
        return stmt

    @staticmethod
    def build_delete(table: Table, filter: FilterExpression):
        return delete(table).where(filter_to_sql(filter, table))

    def _table(self, name: str, dimension: int) -> Table:
        if name not in self._tables:
            self._tables[name] = Table(
                self.table_name(name),
                self._metadata,
                Column("id", Text, primary_key=True),
                Column("embedding", Vector(dimension), nullable=False),
                Column("content", Text, nullable=False),
                Column("meta", JSONB, nullable=False),
            )
        return self._tables[name]

    def _lookup_dimension(self, conn, name: str) -> int:
        self.table_name(name)
        if not conn.execute(
            text("SELECT to_regclass('rag_index_registry') IS NOT NULL")
        ).scalar():
            raise IndexNotFoundError(name)
        dimension = conn.execute(
            select(self._registry.c.dimension)
            .where(self._registry.c.name == name)
        ).scalar_one_or_none()
        if dimension is None:
            raise IndexNotFoundError(name)
        return dimension


def filter_to_sql(expr: FilterExpression, table: Table):
    """Translate a filter expression into a SQLAlchemy clause on JSONB `meta`."""
    if isinstance(expr, And):
        return and_(*(filter_to_sql(clause, table) for clause in expr.clauses))

    element = table.c.meta[expr.field]
    if isinstance(expr, Eq):
        return _typed(element, expr.value) == expr.value
    if isinstance(expr, In):
        return _typed(element, expr.values[0]).in_(list(expr.values))

    as_number = element.as_float()
    comparisons = {
        "gt": as_number.__gt__,
        "gte": as_number.__ge__,
        "lt": as_number.__lt__,
        "lte": as_number.__le__,
    }
    return and_(*(comparisons[op](bound) for op, bound in expr.bounds()))


def _typed(element, sample):
    if isinstance(sample, bool):
        return element.as_boolean()
    if isinstance(sample, (int, float)):
        return element.as_float()
    return element.as_string()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_vector_index(
    override_type: str | None = None,
) -> ChromaVectorIndex | PgVectorIndex:
    """
    Factory that returns the configured vector index backend.

    Reads `vectorstore_type` from settings ("chroma" or "pgvector").
    """
    store_type = override_type or settings.vectorstore_type

    if store_type == "pgvector":
        logger.info("Using pgvector vector index")
        return PgVectorIndex()
    if store_type == "chroma":
        logger.info("Using ChromaDB vector index")
        return ChromaVectorIndex()

    raise ConfigurationError(
        f"Unknown vectorstore_type '{store_type}'. Use 'chroma' or 'pgvector'."
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB compatibility.

    ChromaDB requires all metadata values to be str, int, float, or bool.
    Lists and None values are not supported. We convert:
    - list → comma-separated string
    - None → empty string
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
