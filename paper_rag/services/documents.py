# =============================================================================
# Document Loading: URL → Plain Text
# =============================================================================
#
# Papers are fetched over HTTP. HTML pages are parsed with BeautifulSoup;
# page chrome (scripts, styles, navigation) and comments are dropped, and
# block elements become line breaks so the recursive chunker can split on
# "\n". Any other content type is taken as plain text.
# =============================================================================

from __future__ import annotations

import logging

import httpx
from bs4 import BeautifulSoup, Comment

from paper_rag.services.indexer import Document

logger = logging.getLogger(__name__)

_DROPPED_TAGS = ["script", "style", "noscript", "nav", "header", "footer"]
_BLOCK_TAGS = [
    "p", "div", "section", "article", "li", "tr", "blockquote", "pre",
    "h1", "h2", "h3", "h4", "h5", "h6", "figcaption", "caption",
]


def html_to_text(page: str) -> str:
    """Visible text of an HTML page, one block element per paragraph."""
    soup = BeautifulSoup(page, "html.parser")
    for tag in soup.find_all(_DROPPED_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")

    paragraphs: list[str] = []
    current: list[str] = []
    for line in soup.get_text().splitlines():
        line = " ".join(line.split())
        if line:
            current.append(line)
        elif current:
            paragraphs.append("\n".join(current))
            current = []
    if current:
        paragraphs.append("\n".join(current))
    return "\n\n".join(paragraphs)


def fetch_document(
    url: str,
    source: str | None = None,
    client: httpx.Client | None = None,
    timeout: float = 60.0,
) -> Document:
    """
    Download `url` and return its text as a Document.

    Raises:
        httpx.HTTPError: The request failed or returned an error status.
    """
    if client is not None:
        response = client.get(url)
    else:
        with httpx.Client(timeout=timeout, follow_redirects=True) as owned:
            response = owned.get(url)
    response.raise_for_status()

    content_type = response.headers.get("content-type", "")
    if "html" in content_type:
        text = html_to_text(response.text)
    else:
        text = response.text
    logger.info("Fetched %s (%s, %d characters)", url, content_type or "unknown", len(text))
    return Document(text=text, source=source or url)
