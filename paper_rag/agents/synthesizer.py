# =============================================================================
# Response Synthesizer: Structure from Free-Form Agent Prose
# =============================================================================
#
# The research agent answers in prose. This module recovers structure from
# that prose with a chain of independent matchers:
#
#   split_sections        THOUGHT PROCESS: / FINAL ANSWER:
#   extract_summary       "Summary: ..." line
#   extract_key_findings  bullets or numbered items after a findings label
#   extract_confidence    "Confidence: 0.85" or "Confidence: 85%"
#   extract_chunks_from_response   "Source: <id>" + following content line
#
# Every matcher has a terminal fallback and never raises: a response that
# ignores the requested format still yields a complete ResearchReport.
# Fallbacks are logged at DEBUG.
#
# Recommendations and source compilation are deterministic functions of
# the parsed result and the configured thresholds.
# =============================================================================

from __future__ import annotations

import logging
import re
import string
from collections.abc import Sequence
from dataclasses import dataclass, field

from paper_rag.config import settings
from paper_rag.models.research import AnalysisDepth, ChunkRecord, ExternalContext
from paper_rag.services.chunker import extract_keywords

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fallback texts
# ---------------------------------------------------------------------------

FALLBACK_SOURCE = "Research Agent Analysis"
FALLBACK_SUMMARY = "Analysis completed based on available sources."
FALLBACK_FINDING = "Analysis findings compiled from available sources."

FALLBACK_CHUNK_CHARS = 500
FALLBACK_CHUNK_SCORE = 0.7
MARKED_CHUNK_SCORE = 0.8

RECOMMEND_MORE_SOURCES = (
    "Consider gathering additional sources to improve confidence in findings"
)
RECOMMEND_DIVERSE_SOURCES = (
    "Expand research to include more diverse sources for comprehensive coverage"
)
RECOMMEND_PRIMARY_RESEARCH = (
    "Validate findings with primary research publications when available"
)
RECOMMEND_RECENT_DEVELOPMENTS = (
    "Consider recent developments and ongoing research in this field"
)
RECOMMEND_ENABLE_EXTERNAL = "Enable external sources for broader research coverage"


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_SOURCE_LINE = re.compile(
    r"^\s*(?:[-*>]\s*)?(?:\[\w+\]|\d+[.)])?\s*"
    r"\**source\**\s*:\s*\**\s*(?P<source>.+?)\s*\**\s*$",
    re.IGNORECASE,
)
_SCORE_SUFFIX = re.compile(
    r"\s*\((?:similarity|score|relevance)\b[^)]*\)\s*\**\s*$", re.IGNORECASE,
)
_KEYWORDS_LINE = re.compile(r"^\s*\**keywords\**\s*:", re.IGNORECASE)
_NO_RELEVANT = re.compile(r"no relevant information (?:was )?found", re.IGNORECASE)
_THOUGHT_MARKER = re.compile(r"\**thought process\**\s*:", re.IGNORECASE)
_FINAL_MARKER = re.compile(r"\**final answer\**\s*:", re.IGNORECASE)
_SUMMARY_LINE = re.compile(
    r"^\s*(?:#+\s*)?\**summary\**\s*:\**\s*(?P<rest>.*)$",
    re.IGNORECASE | re.MULTILINE,
)
_FINDINGS_LABEL = re.compile(
    r"^\s*(?:#+\s*)?\**(?:key\s+)?(?:findings|insights)\**\s*:?\**\s*$",
    re.IGNORECASE,
)
_LIST_ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(?P<item>.+)$")
# Only a "Confidence:" label line counts; prose mentioning confidence does not.
_CONFIDENCE = re.compile(
    r"^\W*confidence(?:\s+(?:level|score))?\W*?[:\-]\s*\**\s*"
    r"(?P<value>-?\d*\.?\d+)\s*(?P<percent>%)?",
    re.IGNORECASE | re.MULTILINE,
)
_PUNCTUATION = str.maketrans("", "", string.punctuation)

_DEPTH_GUIDANCE: dict[str, str] = {
    "basic": "Give a short overview of the main points.",
    "detailed": (
        "Give a detailed analysis covering the key concepts, methods "
        "and results."
    ),
    "comprehensive": (
        "Give a comprehensive analysis: methods, results, limitations, "
        "relationships between sources and open questions."
    ),
}


@dataclass
class AnalysisResult:
    summary: str
    key_findings: list[str] = field(default_factory=list)
    thought_process: str = ""
    confidence: float = 0.8


# ---------------------------------------------------------------------------
# Step 1 and 2 helpers
# ---------------------------------------------------------------------------


def extract_search_terms(query: str, limit: int = 10) -> list[str]:
    """Lower-case, strip punctuation, keep words longer than two characters."""
    words = query.lower().translate(_PUNCTUATION).split()
    return [word for word in words if len(word) > 2][:limit]


def detect_no_relevant_information(text: str) -> bool:
    """
    True when the retrieval answer reports nothing found and cites nothing.

    An answer that cites sources keeps them even if it also says nothing
    was found for part of the question.
    """
    if any(_SOURCE_LINE.match(line) for line in text.splitlines()):
        return False
    return bool(_NO_RELEVANT.search(text))


def extract_chunks_from_response(text: str) -> list[ChunkRecord]:
    """
    Pull "Source: <id>" blocks out of the agent's retrieval answer.

    The first non-empty line after a source marker is that source's
    content. Without any usable marker the first 500 characters of the
    response become one chunk attributed to the agent itself.
    """
    lines = text.splitlines()
    chunks: list[ChunkRecord] = []

    for i, line in enumerate(lines):
        match = _SOURCE_LINE.match(line)
        if not match:
            continue
        source = _clean_source(match.group("source"))
        content = ""
        for following in lines[i + 1:]:
            if _SOURCE_LINE.match(following):
                break
            if following.strip() and not _KEYWORDS_LINE.match(following):
                content = following.strip()
                break
        if not (content and source):
            continue
        chunks.append(ChunkRecord(
            text=content,
            source=source,
            excerpt_keywords=", ".join(extract_keywords(content, 5)),
            score=MARKED_CHUNK_SCORE,
        ))

    if chunks:
        return chunks

    logger.debug("No source markers in agent response; using fallback chunk")
    excerpt = text.strip()[:FALLBACK_CHUNK_CHARS]
    return [ChunkRecord(
        text=excerpt,
        source=FALLBACK_SOURCE,
        excerpt_keywords=", ".join(extract_keywords(excerpt, 5)),
        score=FALLBACK_CHUNK_SCORE,
    )]


# ---------------------------------------------------------------------------
# Step 3: Analysis prompt
# ---------------------------------------------------------------------------


def build_analysis_prompt(
    query: str,
    chunks: Sequence[ChunkRecord],
    external_context: Sequence[ExternalContext],
    analysis_depth: AnalysisDepth,
) -> str:
    """Assemble the synthesis prompt from vector results and external context."""
    excerpts = "\n\n".join(
        f"[{i}] Source: {chunk.source}\n{chunk.text}"
        for i, chunk in enumerate(chunks, 1)
    )
    parts = [
        f"Research question: {query}",
        f"Document excerpts:\n\n{excerpts or '(none)'}",
    ]
    if external_context:
        external = "\n\n".join(
            f"[E{i}] Source: {ctx.source} (relevance {ctx.relevance:.2f})\n"
            f"{ctx.content}"
            for i, ctx in enumerate(external_context, 1)
        )
        parts.append(f"External context:\n\n{external}")
    parts.append(
        f"Analysis depth: {analysis_depth}. "
        f"{_DEPTH_GUIDANCE.get(analysis_depth, _DEPTH_GUIDANCE['detailed'])}"
    )
    parts.append(
        "Analyze each source, connect the evidence, then conclude. Answer "
        "with a THOUGHT PROCESS section followed by a FINAL ANSWER section."
    )
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Step 3: Response parsing
# ---------------------------------------------------------------------------


def split_sections(text: str) -> tuple[str, str]:
    """
    Return (thought_process, final_answer).

    When either marker is missing, the whole text is used for both.
    """
    thought = _THOUGHT_MARKER.search(text)
    final = _FINAL_MARKER.search(text)
    if not (thought and final) or final.start() < thought.end():
        logger.debug("Section markers missing; using whole response")
        whole = text.strip()
        return whole, whole
    return (
        text[thought.end():final.start()].strip(),
        text[final.end():].strip(),
    )


def extract_summary(text: str) -> str:
    match = _SUMMARY_LINE.search(text)
    if match:
        rest = _strip_markup(match.group("rest"))
        if rest:
            return rest
        # Label on its own line: take the next non-empty line
        for line in text[match.end():].splitlines():
            if line.strip():
                return _strip_markup(line)
    logger.debug("No summary line found; using fallback summary")
    return FALLBACK_SUMMARY


def extract_key_findings(text: str) -> list[str]:
    findings: list[str] = []
    in_findings = False
    for line in text.splitlines():
        if not in_findings:
            in_findings = bool(_FINDINGS_LABEL.match(line))
            continue
        if not line.strip():
            if findings:
                break
            continue
        item = _LIST_ITEM.match(line)
        if not item:
            break
        cleaned = _strip_markup(item.group("item"))
        if cleaned:
            findings.append(cleaned)

    if findings:
        return findings
    logger.debug("No key findings list found; using fallback finding")
    return [FALLBACK_FINDING]


def extract_confidence(text: str, default: float | None = None) -> float:
    """Labelled confidence as a float in [0, 1]; percentages are divided by 100."""
    match = _CONFIDENCE.search(text)
    if not match:
        logger.debug("No confidence value found; using default")
        return settings.default_confidence if default is None else default
    value = float(match.group("value"))
    if match.group("percent"):
        value /= 100
    return min(1.0, max(0.0, value))


def parse_analysis_response(
    text: str,
    default_confidence: float | None = None,
) -> AnalysisResult:
    thought_process, final_answer = split_sections(text)
    return AnalysisResult(
        summary=extract_summary(final_answer),
        key_findings=extract_key_findings(final_answer),
        thought_process=thought_process,
        confidence=extract_confidence(final_answer, default_confidence),
    )


# ---------------------------------------------------------------------------
# Report assembly
# ---------------------------------------------------------------------------


def compile_sources(
    chunks: Sequence[ChunkRecord],
    external_context: Sequence[ExternalContext],
) -> list[str]:
    """Chunk sources then external sources, without duplicates."""
    ordered = [chunk.source for chunk in chunks]
    ordered.extend(ctx.source for ctx in external_context)
    return list(dict.fromkeys(ordered))


def generate_recommendations(
    confidence: float,
    sources: Sequence[str],
    external_context: Sequence[ExternalContext],
    external_requested: bool,
    low_confidence_threshold: float | None = None,
    min_distinct_sources: int | None = None,
) -> list[str]:
    threshold = (
        settings.low_confidence_threshold
        if low_confidence_threshold is None else low_confidence_threshold
    )
    minimum = (
        settings.min_distinct_sources
        if min_distinct_sources is None else min_distinct_sources
    )

    recommendations: list[str] = []
    if confidence < threshold:
        recommendations.append(RECOMMEND_MORE_SOURCES)
    if len(set(sources)) < minimum:
        recommendations.append(RECOMMEND_DIVERSE_SOURCES)
    recommendations.append(RECOMMEND_PRIMARY_RESEARCH)
    recommendations.append(RECOMMEND_RECENT_DEVELOPMENTS)
    if external_requested and not external_context:
        recommendations.append(RECOMMEND_ENABLE_EXTERNAL)
    return recommendations


def _strip_markup(value: str) -> str:
    return value.replace("**", "").replace("__", "").strip().strip("*").strip()


def _clean_source(value: str) -> str:
    return _strip_markup(_SCORE_SUFFIX.sub("", value))
