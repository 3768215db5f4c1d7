# =============================================================================
# Structure-Aware Text Chunker
# =============================================================================
#
# Splits a document into overlapping, character-bounded chunks that follow
# the document's structure wherever possible.
#
# ALGORITHM (strategy="recursive"):
# 1. Split at the configured separator (default "\n"), keeping the
#    separator attached to the piece before it so no text is lost.
# 2. Any piece still too long is split again at sentence boundaries,
#    then at word boundaries, then into fixed character windows.
# 3. Pieces are packed greedily into contiguous "cores" that partition the
#    document. The first core may use the full max_size; every later core is
#    at most max_size - overlap.
# 4. Chunk i = the `overlap` characters preceding its core + the core.
#    Every chunk therefore fits in max_size, and dropping each chunk's
#    leading overlap and concatenating reconstructs the document exactly.
#
# strategy="character" skips step 1-2 and cuts fixed windows.
#
# Sizes are in characters. A tiktoken token count is attached to each chunk
# for monitoring; it plays no part in the cut points.
# =============================================================================

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from functools import cached_property

import tiktoken

from paper_rag.errors import InputValidationError

logger = logging.getLogger(__name__)

STRATEGIES = ("recursive", "character")

# Tried in order once the configured separator is exhausted.
_FALLBACK_SEPARATORS = (". ", " ", "")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChunkingConfig:
    """
    Chunking parameters. Invalid combinations fail at construction time,
    before any document is read or any embedding call is made.
    """

    strategy: str = "recursive"
    max_size: int = 512
    overlap: int = 50
    separator: str = "\n"
    keyword_count: int = 5

    def __post_init__(self) -> None:
        if self.strategy not in STRATEGIES:
            raise InputValidationError(
                f"Unknown chunking strategy '{self.strategy}'. "
                f"Supported: {list(STRATEGIES)}"
            )
        if self.max_size <= 0:
            raise InputValidationError(
                f"max_size must be positive, got {self.max_size}"
            )
        if self.overlap < 0:
            raise InputValidationError(
                f"overlap must be non-negative, got {self.overlap}"
            )
        if self.overlap >= self.max_size:
            raise InputValidationError(
                f"overlap ({self.overlap}) must be smaller than "
                f"max_size ({self.max_size})"
            )
        if not self.separator:
            raise InputValidationError("separator must be a non-empty string")
        if self.keyword_count < 0:
            raise InputValidationError(
                f"keyword_count must be non-negative, got {self.keyword_count}"
            )

    @classmethod
    def from_settings(cls) -> ChunkingConfig:
        from paper_rag.config import settings

        return cls(
            strategy=settings.chunk_strategy,
            max_size=settings.chunk_size,
            overlap=settings.chunk_overlap,
            separator=settings.chunk_separator,
            keyword_count=settings.chunk_keyword_count,
        )


@dataclass
class Chunk:
    """
    One fragment of a document, the unit of retrieval.

    `start` is the character offset of `text` in the source document,
    including the leading overlap.
    """

    text: str
    ordinal: int
    start: int = 0
    keywords: list[str] = field(default_factory=list)

    @cached_property
    def token_count(self) -> int:
        return len(_get_encoder().encode(self.text))


# ---------------------------------------------------------------------------
# Tiktoken Encoder: Cached Singleton
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def iter_chunks(
    text: str,
    config: ChunkingConfig | None = None,
) -> Iterator[Chunk]:
    """
    Lazily yield the chunks of `text` in document order.

    The returned generator is single-pass: once exhausted, call again to
    re-chunk.
    """
    config = config or ChunkingConfig()
    if not text:
        return

    cores = _build_cores(text, config)
    start = 0
    for ordinal, core in enumerate(cores):
        lead = min(config.overlap, start) if ordinal else 0
        chunk_start = start - lead
        chunk_text = text[chunk_start:start + len(core)]
        yield Chunk(
            text=chunk_text,
            ordinal=ordinal,
            start=chunk_start,
            keywords=extract_keywords(chunk_text, config.keyword_count),
        )
        start += len(core)


def chunk_text(
    text: str,
    config: ChunkingConfig | None = None,
) -> list[Chunk]:
    """
    Split a document into overlapping chunks.

    Args:
        text: Raw document text.
        config: Chunking parameters (defaults: recursive, 512/50, "\\n").

    Returns:
        Chunks in document order. Empty text yields an empty list; text no
        longer than max_size yields exactly one chunk.
    """
    config = config or ChunkingConfig()
    chunks = list(iter_chunks(text, config))

    logger.info(
        "Chunked %d chars into %d chunks (strategy=%s, max_size=%d, overlap=%d)",
        len(text), len(chunks), config.strategy, config.max_size, config.overlap,
    )
    return chunks


def extract_keywords(text: str, limit: int = 5) -> list[str]:
    """
    Rank the most frequent content words of `text`.

    Tokens are lower-cased and stripped of punctuation; tokens of two
    characters or fewer and common stop words are ignored. Ties keep
    first-occurrence order.
    """
    if limit <= 0:
        return []
    tokens = [
        token
        for token in _PUNCTUATION_RE.sub(" ", text.lower()).split()
        if len(token) > 2 and token not in _STOP_WORDS
    ]
    return [word for word, _ in Counter(tokens).most_common(limit)]


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------

_PUNCTUATION_RE = re.compile(r"[^\w\s]")

_STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can",
    "has", "had", "her", "was", "one", "our", "out", "his", "how", "its",
    "may", "who", "did", "get", "him", "she", "too", "use", "that", "with",
    "have", "this", "will", "your", "from", "they", "been", "were", "which",
    "their", "there", "what", "when", "where", "than", "then", "them",
    "these", "those", "into", "such", "also", "each", "other", "some",
    "only", "over", "more", "most", "both", "very", "would", "could",
    "should", "about", "after", "before", "between", "while", "being",
})


def _build_cores(text: str, config: ChunkingConfig) -> list[str]:
    """Partition `text` into contiguous cores (chunks minus overlap)."""
    if len(text) <= config.max_size:
        return [text]

    limit = config.max_size - config.overlap

    if config.strategy == "character":
        cores = [text[:config.max_size]]
        cores.extend(
            text[i:i + limit] for i in range(config.max_size, len(text), limit)
        )
        return cores

    separators = [config.separator] + [
        sep for sep in _FALLBACK_SEPARATORS if sep != config.separator
    ]
    pieces = _split_recursive(text, limit, separators)
    return _pack(pieces, first_limit=config.max_size, limit=limit)


def _split_recursive(text: str, limit: int, separators: list[str]) -> list[str]:
    """
    Split `text` into pieces of at most `limit` characters, preferring the
    earliest separator that applies. Concatenating the pieces gives `text`.
    """
    if len(text) <= limit:
        return [text]

    separator, *remaining = separators
    if separator == "":
        return [text[i:i + limit] for i in range(0, len(text), limit)]

    pieces = _split_keeping_separator(text, separator)
    if len(pieces) == 1:
        return _split_recursive(text, limit, remaining)

    result: list[str] = []
    for piece in pieces:
        if len(piece) <= limit:
            result.append(piece)
        else:
            result.extend(_split_recursive(piece, limit, remaining))
    return result


def _split_keeping_separator(text: str, separator: str) -> list[str]:
    parts = text.split(separator)
    pieces = [part + separator for part in parts[:-1]]
    if parts[-1]:
        pieces.append(parts[-1])
    return pieces


def _pack(pieces: list[str], first_limit: int, limit: int) -> list[str]:
    """Greedily merge adjacent pieces into cores without exceeding the caps."""
    cores: list[str] = []
    current = ""
    for piece in pieces:
        cap = first_limit if not cores else limit
        if current and len(current) + len(piece) > cap:
            cores.append(current)
            current = piece
        else:
            current += piece
    if current:
        cores.append(current)
    return cores
