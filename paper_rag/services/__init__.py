# =============================================================================
# Services Package: Indexing and Backends
# =============================================================================
#   - chunker.py: recursive / fixed-window chunking with overlap
#   - embedder.py: batched embeddings (OpenAI-compatible endpoints)
#   - vectorstore.py: VectorIndex protocol (Chroma, pgvector)
#   - filters.py: store-agnostic metadata filter expressions
#   - indexer.py: chunk → embed → upsert for one document
#   - llm.py: multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - external.py: external context providers (arXiv)
# =============================================================================
