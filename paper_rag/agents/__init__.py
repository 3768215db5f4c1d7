# =============================================================================
# Agents Package: Query-Time Research
# =============================================================================
#   - retrieval.py: VectorQueryTool, embeds a query and searches the index
#   - research.py: ResearchAgent, streams LLM answers grounded in the tool
#   - synthesizer.py: matchers that recover structure from agent prose
#   - orchestrator.py: LangGraph graph, retrieve → augment → synthesize
# =============================================================================
