# =============================================================================
# Paper Research RAG
# =============================================================================
# Index research papers into a vector store, then answer research questions
# with a three-step workflow (retrieve, augment, synthesize) that turns an
# agent's prose into a structured ResearchReport.
#
# Package structure:
#   paper_rag/
#   ├── agents/       → retrieval tool, research agent, synthesizer parsers,
#   │                    LangGraph workflow
#   ├── models/       → Pydantic V2 step contracts and the report schema
#   ├── services/     → chunking, embedding, vector indexes, filters,
#   │                    indexing, LLM providers, external context
#   ├── config.py     → Pydantic Settings
#   └── errors.py     → error taxonomy
# =============================================================================
