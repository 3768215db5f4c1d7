# =============================================================================
# Research Agent: Tool-Grounded LLM Streaming
# =============================================================================
#
# The research agent answers from the local index only. With retrieval on
# (the default) every call runs the vector query tool first and hands the
# excerpts to the LLM as numbered context; the agent never answers from
# general knowledge.
#
# When the tool finds nothing, the agent replies with
# NO_RELEVANT_INFORMATION without calling the LLM.
#
# With retrieval off, the agent only streams the LLM under the
# analyze → connect → conclude instructions. The synthesis step uses this
# mode because its prompt already carries the retrieved material.
#
# The output is prose, streamed as text deltas. The workflow drains the
# stream and extracts structure with the heuristics in synthesizer.py.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol

from paper_rag.agents.retrieval import (
    NO_RELEVANT_INFORMATION,
    VectorQueryTool,
)
from paper_rag.errors import ConfigurationError, InputValidationError
from paper_rag.services.filters import FilterExpression
from paper_rag.services.llm import LLMProvider
from paper_rag.services.vectorstore import VectorSearchResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------

RESEARCH_INSTRUCTIONS = (
    "You are a helpful research assistant that analyzes academic papers "
    "and technical documents.\n\n"
    "Rules:\n"
    "- Base your response ONLY on the retrieved excerpts provided with the "
    "question, never on general knowledge\n"
    "- For every excerpt you rely on, write a line 'Source: <source>' "
    "followed on the next line by the relevant content of that excerpt\n"
    "- After the sources, give a concise answer to the question\n"
    "- If the excerpts do not answer the question, reply exactly: "
    f"'{NO_RELEVANT_INFORMATION}'"
)

ANALYSIS_INSTRUCTIONS = (
    "You are a research analyst synthesizing findings from document "
    "excerpts and external context.\n\n"
    "Reason in three stages: analyze each source, connect the evidence "
    "across sources, then conclude.\n\n"
    "Format your response exactly as:\n"
    "THOUGHT PROCESS:\n"
    "<your analysis and the connections between sources>\n\n"
    "FINAL ANSWER:\n"
    "Summary: <two or three sentences on one line>\n"
    "Key Findings:\n"
    "- <finding>\n"
    "- <finding>\n"
    "Confidence: <number between 0.0 and 1.0>\n"
    "Limitations: <caveats>\n\n"
    "Use ONLY information from the provided material."
)


class ResearchAgentProtocol(Protocol):
    """What the workflow needs from an agent: a drainable text stream."""

    def stream(
        self,
        messages: list[dict[str, str]],
        *,
        retrieve: bool = True,
        query_text: str | None = None,
        top_k: int | None = None,
        filter: FilterExpression | Mapping[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        ...


# ---------------------------------------------------------------------------
# Implementation
# ---------------------------------------------------------------------------


class ResearchAgent:
    """LLM agent bound to one retrieval tool."""

    def __init__(
        self,
        llm: LLMProvider,
        tool: VectorQueryTool,
        instructions: str = RESEARCH_INSTRUCTIONS,
        analysis_instructions: str = ANALYSIS_INSTRUCTIONS,
    ) -> None:
        if llm is None:
            raise ConfigurationError("ResearchAgent requires an LLM provider")
        if tool is None:
            raise ConfigurationError("ResearchAgent requires a vector query tool")
        self._llm = llm
        self._tool = tool
        self._instructions = instructions
        self._analysis_instructions = analysis_instructions

    async def stream(
        self,
        messages: list[dict[str, str]],
        *,
        retrieve: bool = True,
        query_text: str | None = None,
        top_k: int | None = None,
        filter: FilterExpression | Mapping[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        """
        Yield the agent's answer as text deltas.

        Args:
            messages: Conversation so far; the last message must be from
                the user.
            retrieve: Run the vector query tool before answering.
            query_text: Search query; defaults to the last user message.
            top_k: Fragments to retrieve (tool default when None).
            filter: Optional metadata filter for retrieval.
        """
        if not messages or messages[-1].get("role") != "user":
            raise InputValidationError("The last message must be a user message")

        if not retrieve:
            async for piece in self._llm.stream(
                messages=messages, system=self._analysis_instructions,
            ):
                yield piece
            return

        response = await self._tool.run(
            query_text or messages[-1]["content"], top_k=top_k, filter=filter,
        )
        if not response.found:
            logger.info("Retrieval found nothing; skipping LLM call")
            yield response.message
            return

        grounded = [
            *messages[:-1],
            {
                "role": "user",
                "content": (
                    f"{messages[-1]['content']}\n\n"
                    f"Retrieved excerpts ({len(response.results)} total):\n\n"
                    f"{format_excerpts(response.results)}"
                ),
            },
        ]
        logger.info(
            "Research agent answering with %d excerpts", len(response.results),
        )
        async for piece in self._llm.stream(
            messages=grounded, system=self._instructions,
        ):
            yield piece


def format_excerpts(results: list[VectorSearchResult]) -> str:
    """
    Format retrieved fragments as numbered context for the LLM.

    Example output:
        [1] Source: attention.html (similarity 0.873)
        Keywords: attention, heads, projection
        Multi-head attention allows the model to ...
    """
    sections = []
    for i, result in enumerate(results, 1):
        keywords = (
            f"\nKeywords: {result.excerpt_keywords}" if result.excerpt_keywords else ""
        )
        sections.append(
            f"[{i}] Source: {result.source} "
            f"(similarity {result.similarity_score:.3f}){keywords}\n{result.text}"
        )
    return "\n\n---\n\n".join(sections)
