# =============================================================================
# External Context: Supplementary Sources Beyond the Local Index
# =============================================================================
#
# The research workflow can augment vector results with context from
# outside the index. Any object with an async `fetch(query, terms)` method
# works; ArxivContextProvider queries the public arXiv Atom API.
#
# Relevance is rank-based: arXiv returns results ordered by its own
# relevance, so the first entry scores highest.
# =============================================================================

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections.abc import Sequence
from typing import Protocol

import httpx

from paper_rag.config import settings
from paper_rag.errors import UpstreamUnavailable
from paper_rag.models.research import ExternalContext

logger = logging.getLogger(__name__)

_ATOM = "{http://www.w3.org/2005/Atom}"


class ExternalContextProvider(Protocol):
    async def fetch(
        self,
        query: str,
        terms: Sequence[str],
    ) -> list[ExternalContext]:
        ...


class ArxivContextProvider:
    """
    Fetch paper abstracts from arXiv that match the search terms.

    Pass an `httpx.AsyncClient` to share a connection pool (or a mock
    transport in tests); otherwise a client is created per call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        api_url: str | None = None,
        max_results: int | None = None,
        timeout: float = 20.0,
    ) -> None:
        self._client = client
        self._api_url = api_url or settings.arxiv_api_url
        self._max_results = max_results or settings.arxiv_max_results
        self._timeout = timeout

    async def fetch(
        self,
        query: str,
        terms: Sequence[str],
    ) -> list[ExternalContext]:
        params = {
            "search_query": build_search_query(query, terms),
            "start": 0,
            "max_results": self._max_results,
        }
        logger.info("Querying arXiv: %s", params["search_query"])

        try:
            if self._client is not None:
                response = await self._client.get(self._api_url, params=params)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self._api_url, params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"arXiv request failed: {exc}") from exc

        contexts = parse_arxiv_feed(response.text)
        logger.info("arXiv returned %d entries", len(contexts))
        return contexts


def build_search_query(query: str, terms: Sequence[str]) -> str:
    """AND together the first five terms; fall back to the raw query."""
    if terms:
        return " AND ".join(f"all:{term}" for term in terms[:5])
    return f'all:"{query.strip()}"'


def parse_arxiv_feed(feed: str) -> list[ExternalContext]:
    """Turn an arXiv Atom feed into ExternalContext entries."""
    try:
        root = ET.fromstring(feed)
    except ET.ParseError as exc:
        raise UpstreamUnavailable(f"arXiv returned malformed XML: {exc}") from exc

    entries = root.findall(f"{_ATOM}entry")
    contexts: list[ExternalContext] = []
    for rank, entry in enumerate(entries):
        title = " ".join((entry.findtext(f"{_ATOM}title") or "").split())
        summary = " ".join((entry.findtext(f"{_ATOM}summary") or "").split())
        link = (entry.findtext(f"{_ATOM}id") or "").strip()
        if not (title or summary):
            continue
        contexts.append(ExternalContext(
            source=link or f"arXiv: {title}",
            content=f"{title}: {summary}" if summary else title,
            relevance=round(1.0 - rank / (len(entries) + 1), 4),
        ))
    return contexts
