# =============================================================================
# Unit Tests: Indexing Pipeline
# =============================================================================
#
# chunk → create_index → embed → upsert, with a fake embedding model and
# a mocked or in-process vector index.
# =============================================================================

import asyncio
import uuid
from unittest.mock import MagicMock

import pytest

from paper_rag.errors import ConfigurationError, InputValidationError, UpstreamUnavailable
from paper_rag.services.chunker import ChunkingConfig
from paper_rag.services.filters import And, Eq, Range
from paper_rag.services.indexer import Document, index_document, record_id
from paper_rag.services.vectorstore import ChromaVectorIndex


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeEmbeddingModel:
    name = "fake-embed"

    def __init__(self, dimension: int = 4, fail: bool = False):
        self.dimension = dimension
        self.fail = fail

    def embed(self, texts, task_type):
        if self.fail:
            raise UpstreamUnavailable("embedding service down")
        return [[float(len(text)), 1.0, 0.5, 0.25][:self.dimension] for text in texts]


PAPER = "".join(f"Line {i}: attention mechanisms relate positions.\n" * 3 for i in range(20))


class TestIndexDocument:
    def test_records_written_with_metadata(self):
        index = MagicMock()
        config = ChunkingConfig(max_size=200, overlap=20)

        summary = index_document(
            Document(text=PAPER, source="attention.html"),
            FakeEmbeddingModel(), index, index_name="papers", config=config,
        )

        index.create_index.assert_called_once_with("papers", 4)
        name, records = index.upsert.call_args.args
        assert name == "papers"
        assert len(records) == summary.chunk_count > 1
        first = records[0]
        assert first.id == record_id("attention.html", 0) == "attention.html#0"
        assert first.metadata["source"] == "attention.html"
        assert first.metadata["ordinal"] == 0
        assert first.metadata["text"] == first.text
        assert "attention" in first.metadata["excerpt_keywords"]
        assert len(first.vector) == 4

    def test_records_past_the_new_end_are_removed(self):
        index = MagicMock()
        summary = index_document(
            Document(text=PAPER, source="attention.html"),
            FakeEmbeddingModel(), index, index_name="papers",
            config=ChunkingConfig(max_size=200, overlap=20),
        )
        index.delete_records.assert_called_once_with("papers", And((
            Eq("source", "attention.html"),
            Range("ordinal", gte=summary.chunk_count),
        )))

    def test_summary(self):
        summary = index_document(
            Document(text=PAPER, source="attention.html"),
            FakeEmbeddingModel(), MagicMock(), index_name="papers",
            config=ChunkingConfig(max_size=300, overlap=30),
        )
        assert summary.index_name == "papers"
        assert summary.dimension == 4
        assert (summary.chunk_size, summary.chunk_overlap) == (300, 30)

    def test_empty_document_rejected_before_any_call(self):
        index = MagicMock()
        with pytest.raises(InputValidationError):
            index_document(Document(text="   ", source="x"), FakeEmbeddingModel(), index)
        index.create_index.assert_not_called()

    def test_empty_source_rejected(self):
        with pytest.raises(InputValidationError):
            index_document(Document(text=PAPER, source=""), FakeEmbeddingModel(), MagicMock())

    def test_embedding_failure_writes_nothing(self):
        index = MagicMock()
        with pytest.raises(UpstreamUnavailable):
            index_document(
                Document(text=PAPER, source="attention.html"),
                FakeEmbeddingModel(fail=True), index, index_name="papers",
            )
        index.upsert.assert_not_called()
        index.delete_records.assert_not_called()

    def test_reindexing_is_idempotent(self):
        index = ChromaVectorIndex()
        name = f"test-{uuid.uuid4().hex[:12]}"
        document = Document(text=PAPER, source="attention.html")
        config = ChunkingConfig(max_size=200, overlap=20)

        first = index_document(document, FakeEmbeddingModel(), index, name, config)
        index_document(document, FakeEmbeddingModel(), index, name, config)

        results = _run(index.query(name, [1.0, 1.0, 0.5, 0.25], top_k=100))
        assert len(results) == first.chunk_count

    def test_dimension_mismatch_with_existing_index(self):
        index = ChromaVectorIndex()
        name = f"test-{uuid.uuid4().hex[:12]}"
        index.create_index(name, 768)
        with pytest.raises(ConfigurationError):
            index_document(
                Document(text=PAPER, source="attention.html"),
                FakeEmbeddingModel(dimension=4), index, name,
            )

    def test_shorter_reindex_drops_old_tail(self):
        index = ChromaVectorIndex()
        name = f"test-{uuid.uuid4().hex[:12]}"
        config = ChunkingConfig(max_size=200, overlap=20)
        other = index_document(
            Document(text=PAPER[:600], source="other.html"),
            FakeEmbeddingModel(), index, name, config,
        )
        index_document(
            Document(text=PAPER, source="attention.html"),
            FakeEmbeddingModel(), index, name, config,
        )

        shorter = index_document(
            Document(text=PAPER[:600], source="attention.html"),
            FakeEmbeddingModel(), index, name, config,
        )

        results = _run(index.query(name, [1.0, 1.0, 0.5, 0.25], top_k=200))
        sources = [r.source for r in results]
        assert sources.count("attention.html") == shorter.chunk_count
        assert sources.count("other.html") == other.chunk_count
