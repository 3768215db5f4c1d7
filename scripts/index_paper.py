#!/usr/bin/env python3
"""
Fetch a paper by URL and index it into the configured vector store.

The default is the HTML version of "Attention Is All You Need". The page
is reduced to plain text, chunked with the recursive strategy, embedded
with the configured model and upserted into the index.

Usage:
    python scripts/index_paper.py
    python scripts/index_paper.py --url https://arxiv.org/html/1706.03762 \
        --index papers --chunk-size 512 --chunk-overlap 50
"""

import argparse
import logging
import sys

import httpx

from paper_rag.config import settings
from paper_rag.errors import PaperRagError
from paper_rag.services.chunker import ChunkingConfig
from paper_rag.services.documents import fetch_document
from paper_rag.services.embedder import OpenAIEmbeddingModel
from paper_rag.services.indexer import index_document
from paper_rag.services.vectorstore import get_vector_index

logger = logging.getLogger("index_paper")

DEFAULT_URL = "https://arxiv.org/html/1706.03762"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--url", default=DEFAULT_URL)
    parser.add_argument("--source", help="Source id stored with each chunk (default: the URL)")
    parser.add_argument("--index", default=settings.index_name)
    parser.add_argument("--strategy", default=settings.chunk_strategy)
    parser.add_argument("--chunk-size", type=int, default=settings.chunk_size)
    parser.add_argument("--chunk-overlap", type=int, default=settings.chunk_overlap)
    parser.add_argument("--separator", default=settings.chunk_separator)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = parse_args(argv)

    try:
        config = ChunkingConfig(
            strategy=args.strategy,
            max_size=args.chunk_size,
            overlap=args.chunk_overlap,
            separator=args.separator,
            keyword_count=settings.chunk_keyword_count,
        )
        document = fetch_document(args.url, args.source)
        summary = index_document(
            document,
            OpenAIEmbeddingModel(),
            get_vector_index(),
            index_name=args.index,
            config=config,
            progress=lambda done, total: logger.info("Embedded batch %d/%d", done, total),
        )
    except httpx.HTTPError as exc:
        logger.error("Could not fetch %s: %s", args.url, exc)
        return 1
    except PaperRagError as exc:
        logger.error("Indexing failed: %s", exc)
        return 1

    logger.info(
        "Indexed %d chunks from %s into '%s' (dimension %d)",
        summary.chunk_count, summary.source, summary.index_name, summary.dimension,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
