# =============================================================================
# Unit Tests: Research Workflow (LangGraph)
# =============================================================================
#
# The graph runs for real; the agent and external provider are scripted.
# One end-to-end test wires the real agent and tool to an empty in-process
# Chroma index.
# =============================================================================

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from paper_rag.agents.orchestrator import ResearchWorkflow
from paper_rag.agents.research import ResearchAgent
from paper_rag.agents.retrieval import NO_RELEVANT_INFORMATION, VectorQueryTool
from paper_rag.agents.synthesizer import (
    FALLBACK_SOURCE,
    FALLBACK_SUMMARY,
    RECOMMEND_DIVERSE_SOURCES,
    RECOMMEND_ENABLE_EXTERNAL,
)
from paper_rag.errors import (
    ConfigurationError,
    InputValidationError,
    StepTimeoutError,
    UpstreamUnavailable,
)
from paper_rag.models.research import ExternalContext
from paper_rag.services.filters import Eq
from paper_rag.services.vectorstore import ChromaVectorIndex


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


RETRIEVAL_REPLY = (
    "Source: attention.html\n"
    "Multi-head attention runs h attention heads in parallel.\n\n"
    "Source: bert.html\n"
    "BERT stacks bidirectional transformer encoders.\n"
)

ANALYSIS_REPLY = """THOUGHT PROCESS:
Both sources rely on multi-head self-attention.

FINAL ANSWER:
Summary: Multi-head attention is the shared building block.
Key Findings:
- Heads attend to different subspaces
- Encoders stack attention with feed-forward layers
Confidence: 0.9
"""


class ScriptedAgent:
    """Returns one reply for retrieval calls and another for analysis calls."""

    def __init__(self, retrieval=RETRIEVAL_REPLY, analysis=ANALYSIS_REPLY, delay=0.0):
        self.retrieval = retrieval
        self.analysis = analysis
        self.delay = delay
        self.calls: list[dict] = []

    async def stream(self, messages, *, retrieve=True, query_text=None, top_k=None, filter=None):
        self.calls.append({
            "messages": messages, "retrieve": retrieve,
            "query_text": query_text, "top_k": top_k, "filter": filter,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.retrieval if retrieve else self.analysis
        for line in reply.splitlines(keepends=True):
            yield line


class StaticExternal:
    def __init__(self, contexts):
        self.contexts = contexts
        self.calls: list[tuple[str, list[str]]] = []

    async def fetch(self, query, terms):
        self.calls.append((query, list(terms)))
        return self.contexts


class TestResearchWorkflow:
    def test_full_report(self):
        agent = ScriptedAgent()
        report = _run(ResearchWorkflow(agent).run(
            "How does multi-head attention work?", include_external=False,
        ))

        assert report.query == "How does multi-head attention work?"
        assert report.summary == "Multi-head attention is the shared building block."
        assert report.key_findings == [
            "Heads attend to different subspaces",
            "Encoders stack attention with feed-forward layers",
        ]
        assert report.thought_process == "Both sources rely on multi-head self-attention."
        assert report.sources == ["attention.html", "bert.html"]
        assert report.confidence == pytest.approx(0.9)
        assert RECOMMEND_DIVERSE_SOURCES in report.recommendations
        assert RECOMMEND_ENABLE_EXTERNAL not in report.recommendations

    def test_steps_call_agent_in_order(self):
        agent = ScriptedAgent()
        _run(ResearchWorkflow(agent).run(
            "attention heads", top_k=3, include_external=False, filter={"source": "a"},
        ))

        retrieval, analysis = agent.calls
        assert retrieval["retrieve"] is True
        assert retrieval["query_text"] == "attention heads"
        assert retrieval["top_k"] == 3
        assert retrieval["filter"] == Eq("source", "a")
        assert analysis["retrieve"] is False
        prompt = analysis["messages"][0]["content"]
        assert "Multi-head attention runs h attention heads in parallel." in prompt

    def test_response_without_markers(self):
        agent = ScriptedAgent(
            retrieval="Attention lets every position look at every other position.",
            analysis="It works well.",
        )
        report = _run(ResearchWorkflow(agent).run("attention", include_external=False))

        assert report.sources == [FALLBACK_SOURCE]
        assert report.summary == FALLBACK_SUMMARY
        assert report.confidence == pytest.approx(0.8)

    def test_external_context_included(self):
        external = StaticExternal([
            ExternalContext(source="http://arxiv.org/abs/1810.04805", content="BERT", relevance=0.75),
        ])
        agent = ScriptedAgent()

        report = _run(ResearchWorkflow(agent, external=external).run(
            "How does BERT use attention?", include_external=True,
        ))

        assert external.calls == [(
            "How does BERT use attention?", ["how", "does", "bert", "use", "attention"],
        )]
        assert report.sources == [
            "attention.html", "bert.html", "http://arxiv.org/abs/1810.04805",
        ]
        assert RECOMMEND_ENABLE_EXTERNAL not in report.recommendations
        assert "[E1] Source: http://arxiv.org/abs/1810.04805" in agent.calls[1]["messages"][0]["content"]

    def test_external_not_requested_skips_provider(self):
        external = StaticExternal([])
        _run(ResearchWorkflow(ScriptedAgent(), external=external).run(
            "attention", include_external=False,
        ))
        assert external.calls == []

    def test_external_requested_without_provider(self):
        report = _run(ResearchWorkflow(ScriptedAgent()).run("attention", include_external=True))
        assert report.recommendations[-1] == RECOMMEND_ENABLE_EXTERNAL

    def test_external_failure_degrades(self):
        external = StaticExternal([])
        external.fetch = AsyncMock(side_effect=UpstreamUnavailable("arXiv down"))

        report = _run(ResearchWorkflow(ScriptedAgent(), external=external).run(
            "attention", include_external=True,
        ))

        assert report.sources == ["attention.html", "bert.html"]
        assert report.recommendations[-1] == RECOMMEND_ENABLE_EXTERNAL

    def test_no_relevant_information_skips_analysis(self):
        agent = ScriptedAgent(retrieval=NO_RELEVANT_INFORMATION)
        report = _run(ResearchWorkflow(agent).run("quantum gravity", include_external=False))

        assert report.summary == NO_RELEVANT_INFORMATION
        assert report.confidence == 0.0
        assert report.sources == []
        assert len(agent.calls) == 1

    def test_partial_miss_keeps_cited_chunks(self):
        agent = ScriptedAgent(retrieval=(
            "Source: attention.html\n"
            "Multi-head attention runs h attention heads in parallel.\n\n"
            "No relevant information was found about training cost.\n"
        ))
        report = _run(ResearchWorkflow(agent).run(
            "attention heads and training cost", include_external=False,
        ))

        assert report.sources == ["attention.html"]
        assert report.confidence == pytest.approx(0.9)
        assert len(agent.calls) == 2
        assert "Multi-head attention runs h attention heads" in agent.calls[1]["messages"][0]["content"]

    def test_no_relevant_information_with_external_context(self):
        external = StaticExternal([
            ExternalContext(source="arxiv:1", content="Quantum gravity survey", relevance=0.8),
        ])
        agent = ScriptedAgent(retrieval=NO_RELEVANT_INFORMATION)

        report = _run(ResearchWorkflow(agent, external=external).run(
            "quantum gravity", include_external=True,
        ))

        assert report.sources == ["arxiv:1"]
        assert len(agent.calls) == 2

    def test_step_timeout(self):
        workflow = ResearchWorkflow(ScriptedAgent(delay=1.0), step_timeout=0.05)
        with pytest.raises(StepTimeoutError) as excinfo:
            _run(workflow.run("attention", include_external=False))
        assert excinfo.value.step == "retrieve"
        assert excinfo.value.retryable is True

    @pytest.mark.parametrize("kwargs", [
        {"query": ""},
        {"query": "   "},
        {"query": "attention", "top_k": 0},
        {"query": "attention", "analysis_depth": "exhaustive"},
        {"query": "attention", "filter": {"$nor": []}},
    ])
    def test_invalid_input_rejected_before_agent_call(self, kwargs):
        agent = ScriptedAgent()
        with pytest.raises(InputValidationError):
            _run(ResearchWorkflow(agent).run(**kwargs))
        assert agent.calls == []

    def test_missing_agent(self):
        with pytest.raises(ConfigurationError):
            ResearchWorkflow(None)

    def test_report_is_frozen(self):
        report = _run(ResearchWorkflow(ScriptedAgent()).run("attention", include_external=False))
        with pytest.raises(ValidationError):
            report.confidence = 0.1


class ForbiddenLLM:
    """Fails the test if the workflow reaches the LLM."""

    async def stream(self, messages, system=None, temperature=None, max_tokens=None):
        raise AssertionError("LLM must not be called")
        yield ""  # pragma: no cover


class KeywordEmbeddingModel:
    name = "keyword-embed"
    dimension = 3

    def embed(self, texts, task_type):
        return [[1.0, 0.0, 0.0] for _ in texts]


class TestEmptyIndexEndToEnd:
    def test_empty_index_yields_no_information_report(self):
        index = ChromaVectorIndex()
        name = f"test-{uuid.uuid4().hex[:12]}"
        index.create_index(name, 3)
        tool = VectorQueryTool(index, KeywordEmbeddingModel(), index_name=name)
        agent = ResearchAgent(ForbiddenLLM(), tool)

        report = _run(ResearchWorkflow(agent).run("attention", include_external=False))

        assert report.summary == NO_RELEVANT_INFORMATION
        assert report.key_findings == [NO_RELEVANT_INFORMATION]
        assert report.confidence == 0.0
        assert report.sources == []
