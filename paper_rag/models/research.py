# =============================================================================
# Research Workflow Schemas: Pydantic V2
# =============================================================================
#
# Typed contracts between the three workflow steps:
#
#   ResearchQuery ──▶ retrieve ──▶ VectorResults
#   VectorResults + flags ──▶ augment ──▶ EnhancedResults
#   EnhancedResults + depth ──▶ synthesize ──▶ ResearchReport
#
# Each step receives its *Input model, validated from the shared graph
# state with extra="ignore": fields a step does not declare are dropped
# before the step runs, so no step can read another step's private data.
# =============================================================================

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

AnalysisDepth = Literal["basic", "detailed", "comprehensive"]


class StepModel(BaseModel):
    """Base for step inputs: unknown state keys are ignored."""

    model_config = ConfigDict(extra="ignore", arbitrary_types_allowed=True)


# ---------------------------------------------------------------------------
# Workflow Input
# ---------------------------------------------------------------------------


class ResearchQuery(StepModel):
    """
    Input of the whole research workflow.

    Example:
        {
            "query": "How does multi-head attention work?",
            "top_k": 5,
            "include_external": true,
            "analysis_depth": "detailed"
        }
    """

    query: str = Field(..., min_length=1, max_length=2000)
    top_k: int = Field(default=5, ge=1, le=100)
    include_external: bool = True
    analysis_depth: AnalysisDepth = "detailed"
    # FilterExpression or Mongo-style mapping; parsed by the retrieval tool
    filter: Any = None

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query must not be blank")
        return value


# ---------------------------------------------------------------------------
# Step 1: Retrieve
# ---------------------------------------------------------------------------


class RetrieveInput(StepModel):
    query: str
    top_k: int
    include_external: bool
    analysis_depth: AnalysisDepth
    filter: Any = None


class ChunkRecord(BaseModel):
    """A retrieved fragment as reported by the research agent."""

    text: str
    source: str
    excerpt_keywords: str = ""
    score: float | None = None


class VectorResults(BaseModel):
    chunks: list[ChunkRecord] = Field(min_length=1)
    query: str
    top_k: int
    # True when the agent reported that the index held nothing relevant
    no_relevant_information: bool = False


# ---------------------------------------------------------------------------
# Step 2: Augment
# ---------------------------------------------------------------------------


class AugmentInput(StepModel):
    vector_results: VectorResults
    include_external: bool
    analysis_depth: AnalysisDepth


class ExternalContext(BaseModel):
    source: str
    content: str
    relevance: float = Field(ge=0.0, le=1.0)


class EnhancedResults(BaseModel):
    vector_results: VectorResults
    external_context: list[ExternalContext] = Field(default_factory=list)
    search_terms: list[str] = Field(default_factory=list)
    external_requested: bool = False


# ---------------------------------------------------------------------------
# Step 3: Synthesize
# ---------------------------------------------------------------------------


class SynthesizeInput(StepModel):
    enhanced_results: EnhancedResults
    analysis_depth: AnalysisDepth


class ResearchReport(BaseModel):
    """
    Terminal artifact of the research workflow. Immutable once built.

    `sources` never contains duplicates: the validator collapses repeats
    while keeping first-seen order.
    """

    model_config = ConfigDict(frozen=True)

    query: str
    summary: str
    key_findings: list[str] = Field(min_length=1)
    thought_process: str
    sources: list[str]
    confidence: float = Field(ge=0.0, le=1.0)
    recommendations: list[str]
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("sources")
    @classmethod
    def _dedupe_sources(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))
