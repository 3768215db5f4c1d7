# =============================================================================
# Unit Tests: Workflow Schemas and Settings
# =============================================================================

import pytest
from pydantic import ValidationError

from paper_rag import config
from paper_rag.config import Settings
from paper_rag.models.research import (
    AugmentInput,
    ChunkRecord,
    ResearchQuery,
    ResearchReport,
    VectorResults,
)


def _report(**overrides) -> ResearchReport:
    fields = {
        "query": "q",
        "summary": "s",
        "key_findings": ["f"],
        "thought_process": "t",
        "sources": ["a.html"],
        "confidence": 0.5,
        "recommendations": [],
    }
    fields.update(overrides)
    return ResearchReport(**fields)


class TestResearchQuery:
    def test_defaults(self):
        query = ResearchQuery(query="  attention  ")
        assert query.query == "attention"
        assert query.top_k == 5
        assert query.analysis_depth == "detailed"

    @pytest.mark.parametrize("fields", [
        {"query": ""},
        {"query": "   "},
        {"query": "q", "top_k": 0},
        {"query": "q", "analysis_depth": "deep"},
    ])
    def test_invalid(self, fields):
        with pytest.raises(ValidationError):
            ResearchQuery(**fields)


class TestStepInputs:
    def test_unknown_state_keys_are_dropped(self):
        vector_results = VectorResults(
            chunks=[ChunkRecord(text="t", source="a.html")], query="q", top_k=5,
        )
        step = AugmentInput.model_validate({
            "vector_results": vector_results,
            "include_external": False,
            "analysis_depth": "basic",
            "query": "not part of this step",
        })
        assert not hasattr(step, "query")

    def test_vector_results_need_a_chunk(self):
        with pytest.raises(ValidationError):
            VectorResults(chunks=[], query="q", top_k=5)


class TestResearchReport:
    def test_sources_deduplicated_in_order(self):
        report = _report(sources=["b.html", "a.html", "b.html"])
        assert report.sources == ["b.html", "a.html"]

    @pytest.mark.parametrize("confidence", [-0.1, 1.1])
    def test_confidence_bounds(self, confidence):
        with pytest.raises(ValidationError):
            _report(confidence=confidence)

    def test_key_findings_required(self):
        with pytest.raises(ValidationError):
            _report(key_findings=[])

    def test_executed_at_is_timezone_aware(self):
        assert _report().executed_at.tzinfo is not None


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.index_name == "papers"
        assert settings.embedding_dimensions == 768
        assert (settings.chunk_size, settings.chunk_overlap) == (512, 50)
        assert settings.step_timeout_seconds == 60.0

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("CHUNK_SIZE", "256")
        monkeypatch.setenv("INCLUDE_EXTERNAL_SOURCES", "false")
        settings = Settings(_env_file=None)
        assert settings.chunk_size == 256
        assert settings.include_external_sources is False

    def test_module_exposes_one_settings_instance(self):
        assert isinstance(config.settings, Settings)
        assert not hasattr(config, "get_settings")
        assert "app_name" not in Settings.model_fields
