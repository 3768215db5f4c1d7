# =============================================================================
# Research Workflow: LangGraph Orchestrator
# =============================================================================
#
# Three steps, run in order over one shared state:
#
#   START ──▶ retrieve ──▶ augment ──▶ synthesize ──▶ END
#
# retrieve:   the research agent runs the vector query tool and cites the
#             excerpts it used; the cited "Source:" blocks become chunks.
# augment:    search terms from the query; external context when asked
#             for and a provider is configured.
# synthesize: the agent (retrieval off) reasons over chunks and external
#             context; the reply is parsed into a ResearchReport.
#
# Each node builds its own typed *Input model from the state. The models
# ignore unknown keys, so a node only ever sees the fields it declares.
#
# Collaborators are passed to the constructor and the graph is compiled
# per workflow instance, so two workflows never share an agent.
#
# There are no retries here. Every agent call and external fetch runs
# under step_timeout_seconds; expiry raises StepTimeoutError. Cancelling
# run() cancels whichever stream or fetch is in flight.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Mapping
from typing import Any, TypeVar

from langgraph.graph import END, START, StateGraph
from pydantic import ValidationError
from typing_extensions import TypedDict

from paper_rag.agents.research import ResearchAgent, ResearchAgentProtocol
from paper_rag.agents.retrieval import NO_RELEVANT_INFORMATION, VectorQueryTool
from paper_rag.agents.synthesizer import (
    build_analysis_prompt,
    compile_sources,
    detect_no_relevant_information,
    extract_chunks_from_response,
    extract_search_terms,
    generate_recommendations,
    parse_analysis_response,
)
from paper_rag.config import settings
from paper_rag.errors import (
    ConfigurationError,
    InputValidationError,
    StepTimeoutError,
    UpstreamUnavailable,
)
from paper_rag.models.research import (
    AnalysisDepth,
    AugmentInput,
    EnhancedResults,
    ExternalContext,
    ResearchQuery,
    ResearchReport,
    RetrieveInput,
    SynthesizeInput,
    VectorResults,
)
from paper_rag.services.embedder import EmbeddingModel, OpenAIEmbeddingModel
from paper_rag.services.external import ArxivContextProvider, ExternalContextProvider
from paper_rag.services.filters import FilterExpression, parse_filter
from paper_rag.services.llm import LLMProvider, get_llm_provider
from paper_rag.services.vectorstore import VectorIndex, get_vector_index

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRIEVAL_PROMPT = (
    "Search the indexed papers for information relevant to this research "
    "question and cite every excerpt you use.\n\n"
    "Question: {query}"
)


# ---------------------------------------------------------------------------
# Workflow State Schema
# ---------------------------------------------------------------------------


class ResearchState(TypedDict, total=False):
    """
    State shared by the graph nodes.

    total=False: nodes return only the keys they add.
    """

    # --- Input (set by run) ---
    query: str
    top_k: int
    include_external: bool
    analysis_depth: AnalysisDepth
    filter: Any

    # --- Step outputs ---
    vector_results: VectorResults
    enhanced_results: EnhancedResults
    report: ResearchReport


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class ResearchWorkflow:
    """
    retrieve → augment → synthesize over one research agent.

    Args:
        agent: Anything with the research agent's `stream` method.
        external: Optional provider of context from outside the index.
        step_timeout: Seconds allowed per agent call or external fetch.
    """

    def __init__(
        self,
        agent: ResearchAgentProtocol,
        external: ExternalContextProvider | None = None,
        step_timeout: float | None = None,
    ) -> None:
        if agent is None:
            raise ConfigurationError("ResearchWorkflow requires a research agent")
        self._agent = agent
        self._external = external
        self._step_timeout = (
            settings.step_timeout_seconds if step_timeout is None else step_timeout
        )
        self._graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(ResearchState)
        builder.add_node("retrieve", self._retrieve)
        builder.add_node("augment", self._augment)
        builder.add_node("synthesize", self._synthesize)

        builder.add_edge(START, "retrieve")
        builder.add_edge("retrieve", "augment")
        builder.add_edge("augment", "synthesize")
        builder.add_edge("synthesize", END)
        return builder.compile()

    # ---- Public API ----

    async def run(
        self,
        query: str,
        top_k: int | None = None,
        include_external: bool | None = None,
        analysis_depth: AnalysisDepth = "detailed",
        filter: FilterExpression | Mapping[str, Any] | None = None,
    ) -> ResearchReport:
        """
        Research `query` against the index and return the report.

        Raises:
            InputValidationError: Invalid query, top_k, depth or filter.
                Raised before any agent call.
            StepTimeoutError: A step exceeded step_timeout_seconds.
            UpstreamUnavailable: The LLM or embedding service failed.
        """
        try:
            request = ResearchQuery(
                query=query,
                top_k=settings.retrieval_top_k if top_k is None else top_k,
                include_external=(
                    settings.include_external_sources
                    if include_external is None else include_external
                ),
                analysis_depth=analysis_depth,
            )
        except ValidationError as exc:
            raise InputValidationError(f"Invalid research query: {exc}") from exc
        expression = parse_filter(filter)

        logger.info(
            "Research workflow started: query='%s', top_k=%d, external=%s, depth=%s",
            request.query[:80], request.top_k,
            request.include_external, request.analysis_depth,
        )
        initial_state: ResearchState = {
            "query": request.query,
            "top_k": request.top_k,
            "include_external": request.include_external,
            "analysis_depth": request.analysis_depth,
            "filter": expression,
        }
        final_state = await self._graph.ainvoke(initial_state)
        report: ResearchReport = final_state["report"]

        logger.info(
            "Research workflow complete: %d sources, confidence=%.2f",
            len(report.sources), report.confidence,
        )
        return report

    # ---- Nodes ----

    async def _retrieve(self, state: ResearchState) -> dict:
        step = RetrieveInput.model_validate(state)
        messages = [{
            "role": "user",
            "content": RETRIEVAL_PROMPT.format(query=step.query),
        }]
        response = await self._drain("retrieve", self._agent.stream(
            messages,
            retrieve=True,
            query_text=step.query,
            top_k=step.top_k,
            filter=step.filter,
        ))

        no_relevant = detect_no_relevant_information(response)
        chunks = extract_chunks_from_response(response)
        logger.info(
            "Retrieve step: %d chunks (no_relevant_information=%s)",
            len(chunks), no_relevant,
        )
        return {"vector_results": VectorResults(
            chunks=chunks,
            query=step.query,
            top_k=step.top_k,
            no_relevant_information=no_relevant,
        )}

    async def _augment(self, state: ResearchState) -> dict:
        step = AugmentInput.model_validate(state)
        query = step.vector_results.query
        terms = extract_search_terms(query)

        context: list[ExternalContext] = []
        if step.include_external:
            if self._external is None:
                logger.warning(
                    "External sources requested but no provider is configured"
                )
            else:
                try:
                    context = await self._bounded(
                        "augment", self._external.fetch(query, terms),
                    )
                except StepTimeoutError:
                    raise
                except UpstreamUnavailable as exc:
                    logger.warning("External context unavailable: %s", exc)

        logger.info(
            "Augment step: %d search terms, %d external sources",
            len(terms), len(context),
        )
        return {"enhanced_results": EnhancedResults(
            vector_results=step.vector_results,
            external_context=context,
            search_terms=terms,
            external_requested=step.include_external,
        )}

    async def _synthesize(self, state: ResearchState) -> dict:
        step = SynthesizeInput.model_validate(state)
        enhanced = step.enhanced_results
        vector_results = enhanced.vector_results
        query = vector_results.query
        chunks = (
            [] if vector_results.no_relevant_information else vector_results.chunks
        )
        external = enhanced.external_context

        if not chunks and not external:
            logger.info("Synthesize step: nothing to analyse; skipping agent call")
            return {"report": ResearchReport(
                query=query,
                summary=NO_RELEVANT_INFORMATION,
                key_findings=[NO_RELEVANT_INFORMATION],
                thought_process="",
                sources=[],
                confidence=0.0,
                recommendations=generate_recommendations(
                    0.0, [], [], enhanced.external_requested,
                ),
            )}

        prompt = build_analysis_prompt(query, chunks, external, step.analysis_depth)
        response = await self._drain("synthesize", self._agent.stream(
            [{"role": "user", "content": prompt}], retrieve=False,
        ))
        analysis = parse_analysis_response(response)
        sources = compile_sources(chunks, external)

        logger.info(
            "Synthesize step: %d findings, confidence=%.2f",
            len(analysis.key_findings), analysis.confidence,
        )
        return {"report": ResearchReport(
            query=query,
            summary=analysis.summary,
            key_findings=analysis.key_findings,
            thought_process=analysis.thought_process,
            sources=sources,
            confidence=analysis.confidence,
            recommendations=generate_recommendations(
                analysis.confidence, sources, external, enhanced.external_requested,
            ),
        )}

    # ---- Helpers ----

    async def _drain(self, step: str, stream: AsyncIterator[str]) -> str:
        """Collect an agent stream into one string under the step timeout."""
        async def _collect() -> str:
            return "".join([piece async for piece in stream])

        return await self._bounded(step, _collect())

    async def _bounded(self, step: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._step_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Step '%s' timed out after %.1fs", step, self._step_timeout,
            )
            raise StepTimeoutError(step, self._step_timeout) from None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_research_workflow(
    index: VectorIndex | None = None,
    embedding_model: EmbeddingModel | None = None,
    llm: LLMProvider | None = None,
    external: ExternalContextProvider | None = None,
) -> ResearchWorkflow:
    """Wire a workflow from settings, overriding any collaborator passed in."""
    tool = VectorQueryTool(
        index or get_vector_index(),
        embedding_model or OpenAIEmbeddingModel(),
    )
    agent = ResearchAgent(llm or get_llm_provider(), tool)
    if external is None and settings.include_external_sources:
        external = ArxivContextProvider()
    return ResearchWorkflow(agent, external=external)
