# =============================================================================
# Unit Tests: Embedding Batcher
# =============================================================================
#
# embed_batch() against fake embedding models: ordering, batching,
# failures and dimension checks. The OpenAI client is mocked.
# =============================================================================

import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from paper_rag.errors import ConfigurationError, UpstreamUnavailable
from paper_rag.services.embedder import (
    OpenAIEmbeddingModel,
    TaskType,
    embed_batch,
    embed_query,
)


class FakeEmbeddingModel:
    """Encodes the position of each text so order can be checked."""

    name = "fake-embed"

    def __init__(self, dimension: int = 3, fail_on_call: int | None = None):
        self.dimension = dimension
        self.fail_on_call = fail_on_call
        self.calls: list[tuple[list[str], TaskType]] = []
        self._lock = threading.Lock()

    def embed(self, texts, task_type):
        with self._lock:
            self.calls.append((list(texts), task_type))
            call_number = len(self.calls)
        if call_number == self.fail_on_call:
            raise UpstreamUnavailable("rate limited")
        return [[float(text.split("-")[1]), 1.0, 0.0][:self.dimension] for text in texts]


class SlowFirstBatchModel(FakeEmbeddingModel):
    """The first batch finishes last."""

    def embed(self, texts, task_type):
        if texts[0] == "t-0":
            time.sleep(0.05)
        return super().embed(texts, task_type)


def _texts(n: int) -> list[str]:
    return [f"t-{i}" for i in range(n)]


class TestEmbedBatch:
    def test_empty_input(self):
        model = FakeEmbeddingModel()
        assert embed_batch([], model) == []
        assert model.calls == []

    def test_vectors_align_with_texts(self):
        vectors = embed_batch(_texts(7), FakeEmbeddingModel(), batch_size=3)
        assert [v[0] for v in vectors] == [float(i) for i in range(7)]

    def test_batches_respect_batch_size(self):
        model = FakeEmbeddingModel()
        embed_batch(_texts(250), model, batch_size=100)
        assert [len(texts) for texts, _ in model.calls] == [100, 100, 50]

    def test_document_task_type_is_default(self):
        model = FakeEmbeddingModel()
        embed_batch(_texts(2), model)
        assert model.calls[0][1] is TaskType.DOCUMENT

    def test_progress_callback(self):
        seen = []
        embed_batch(_texts(5), FakeEmbeddingModel(), batch_size=2,
                    progress=lambda done, total: seen.append((done, total)))
        assert seen == [(1, 3), (2, 3), (3, 3)]

    def test_failed_batch_names_batch_number(self):
        model = FakeEmbeddingModel(fail_on_call=2)
        with pytest.raises(UpstreamUnavailable, match="batch 2 of 3"):
            embed_batch(_texts(5), model, batch_size=2)

    def test_failed_batch_is_retryable(self):
        model = FakeEmbeddingModel(fail_on_call=1)
        with pytest.raises(UpstreamUnavailable) as excinfo:
            embed_batch(_texts(1), model)
        assert excinfo.value.retryable is True

    def test_count_mismatch_is_upstream_error(self):
        model = FakeEmbeddingModel()
        model.embed = lambda texts, task_type: [[1.0, 1.0, 1.0]]
        with pytest.raises(UpstreamUnavailable, match="returned 1 vectors"):
            embed_batch(_texts(2), model)

    def test_dimension_mismatch_is_configuration_error(self):
        model = FakeEmbeddingModel(dimension=3)
        model.embed = lambda texts, task_type: [[1.0, 2.0] for _ in texts]
        with pytest.raises(ConfigurationError):
            embed_batch(_texts(2), model)

    def test_concurrent_batches_preserve_order(self):
        model = SlowFirstBatchModel()
        vectors = embed_batch(_texts(9), model, batch_size=2, max_concurrency=4)
        assert [v[0] for v in vectors] == [float(i) for i in range(9)]


class TestEmbedQuery:
    def test_uses_query_task_type(self):
        model = FakeEmbeddingModel()
        vector = embed_query("t-4", model)
        assert vector == [4.0, 1.0, 0.0]
        assert model.calls == [(["t-4"], TaskType.QUERY)]


class TestOpenAIEmbeddingModel:
    """The OpenAI client is replaced with a MagicMock."""

    def _model(self, data, **kwargs):
        model = OpenAIEmbeddingModel(
            model="test-embedding", dimension=2, api_key="sk-test", **kwargs,
        )
        client = MagicMock()
        client.embeddings.create.return_value = SimpleNamespace(data=data)
        model._client = client
        return model, client

    def test_sorts_response_by_index(self):
        data = [
            SimpleNamespace(index=1, embedding=[0.0, 1.0]),
            SimpleNamespace(index=0, embedding=[1.0, 0.0]),
        ]
        model, client = self._model(data)

        vectors = model.embed(["first", "second"], TaskType.DOCUMENT)

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        kwargs = client.embeddings.create.call_args.kwargs
        assert kwargs["dimensions"] == 2
        assert kwargs["model"] == "test-embedding"

    def test_task_prefixes(self):
        data = [SimpleNamespace(index=0, embedding=[1.0, 0.0])]
        model, client = self._model(
            data, query_prefix="search_query: ", document_prefix="search_document: ",
        )

        model.embed(["attention"], TaskType.QUERY)
        assert client.embeddings.create.call_args.kwargs["input"] == [
            "search_query: attention"
        ]

        model.embed(["attention"], TaskType.DOCUMENT)
        assert client.embeddings.create.call_args.kwargs["input"] == [
            "search_document: attention"
        ]
