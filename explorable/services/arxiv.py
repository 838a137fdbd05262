"""arXiv paper ingestion.

Resolves an arXiv URL or bare identifier, downloads the PDF and the
abstract page over the shared HTTP client, and stores the PDF under the
caller's prefix through the artifact gateway.

Metadata is best effort: a missing or unreadable abstract page leaves the
title as ``arXiv:<id>`` and the abstract empty. The PDF is not optional.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
import structlog

from explorable.config import ArxivConfig
from explorable.errors import NotFoundError, PaperSourceError, PayloadTooLargeError
from explorable.services.http import get_http_client

if TYPE_CHECKING:
    from explorable.services.artifact_store import ArtifactStoreGateway
    from explorable.services.identity import Principal

logger = structlog.get_logger()

# 2301.00001, 2301.00001v2 (new style); hep-th/9901001 (old style)
_NEW_ID = r"\d{4}\.\d{4,5}(?:v\d+)?"
_OLD_ID = r"[a-z-]+/\d{7}(?:v\d+)?"

_BARE_ID_RE = re.compile(rf"^(?:{_NEW_ID}|{_OLD_ID})$", re.IGNORECASE)
_URL_ID_RE = re.compile(rf"arxiv\.org/(?:abs|pdf)/({_NEW_ID}|{_OLD_ID})", re.IGNORECASE)

_TITLE_RE = re.compile(r'<meta name="citation_title" content="([^"]+)"')
_ABSTRACT_RE = re.compile(
    r'<blockquote class="abstract[^"]*">\s*<span class="descriptor">Abstract:</span>'
    r"\s*(.*?)</blockquote>",
    re.IGNORECASE | re.DOTALL,
)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def extract_arxiv_id(value: str) -> str | None:
    """arXiv identifier from an abs/pdf URL or a bare id; None if unrecognized."""
    value = value.strip()
    if _BARE_ID_RE.match(value):
        return value
    match = _URL_ID_RE.search(value)
    return match.group(1) if match else None


def parse_abstract_page(page: str) -> tuple[str | None, str]:
    """Pull ``(title, abstract)`` out of an arXiv abstract page."""
    title = None
    title_match = _TITLE_RE.search(page)
    if title_match:
        title = html.unescape(title_match.group(1)).strip()

    abstract = ""
    abstract_match = _ABSTRACT_RE.search(page)
    if abstract_match:
        text = _TAG_RE.sub("", abstract_match.group(1))
        abstract = _SPACE_RE.sub(" ", html.unescape(text)).strip()
    return title, abstract


@dataclass(frozen=True)
class ArxivPaper:
    """A paper fetched from arXiv and stored for the caller."""

    arxiv_id: str
    title: str
    abstract: str
    storage_path: str
    size: int


class ArxivClient:
    """Fetches papers from arXiv."""

    def __init__(self, config: ArxivConfig) -> None:
        self._config = config
        self._log = logger.bind(service="arxiv")

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self._config.user_agent}

    async def fetch_pdf(self, arxiv_id: str, max_bytes: int) -> bytes:
        """Download the paper's PDF.

        Raises:
            NotFoundError: arXiv has no such paper
            PayloadTooLargeError: PDF is larger than ``max_bytes``
            PaperSourceError: arXiv unreachable or answered with an error
        """
        url = f"{self._config.pdf_base_url.rstrip('/')}/{arxiv_id}.pdf"
        try:
            response = await get_http_client().get(
                url,
                headers=self._headers(),
                timeout=self._config.timeout_seconds,
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            self._log.warning("arxiv.pdf.unreachable", arxiv_id=arxiv_id, error=str(e))
            raise PaperSourceError(
                "Could not reach arXiv", details={"arxiv_id": arxiv_id}
            ) from e

        if response.status_code == 404:
            raise NotFoundError(
                "arXiv paper not found. Please check the ID or URL.",
                details={"arxiv_id": arxiv_id},
            )
        if response.status_code >= 400:
            self._log.warning(
                "arxiv.pdf.http_error", arxiv_id=arxiv_id, status_code=response.status_code
            )
            raise PaperSourceError(
                f"arXiv returned HTTP {response.status_code}",
                details={"arxiv_id": arxiv_id},
            )

        data = response.content
        if len(data) > max_bytes:
            size_mb = len(data) / (1024 * 1024)
            raise PayloadTooLargeError(
                f"PDF is too large ({size_mb:.1f}MB). "
                f"Maximum size is {max_bytes / (1024 * 1024):.1f}MB.",
                details={"size": len(data), "limit": max_bytes},
            )
        return data

    async def fetch_metadata(self, arxiv_id: str) -> tuple[str, str]:
        """``(title, abstract)`` from the abstract page, with fallbacks."""
        title, abstract = f"arXiv:{arxiv_id}", ""
        url = f"{self._config.abs_base_url.rstrip('/')}/{arxiv_id}"
        try:
            response = await get_http_client().get(
                url,
                headers=self._headers(),
                timeout=self._config.timeout_seconds,
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            self._log.warning("arxiv.metadata.unreachable", arxiv_id=arxiv_id, error=str(e))
            return title, abstract

        if response.status_code != 200:
            self._log.warning(
                "arxiv.metadata.http_error", arxiv_id=arxiv_id, status_code=response.status_code
            )
            return title, abstract

        parsed_title, abstract = parse_abstract_page(response.text)
        return parsed_title or title, abstract

    async def ingest(
        self,
        principal: "Principal",
        url_or_id: str,
        gateway: "ArtifactStoreGateway",
    ) -> ArxivPaper:
        """Fetch a paper and store its PDF under the principal's prefix.

        Raises:
            PaperSourceError: ``url_or_id`` is not an arXiv URL or id
        """
        arxiv_id = extract_arxiv_id(url_or_id)
        if arxiv_id is None:
            raise PaperSourceError(
                "Invalid arXiv URL or ID format", details={"arxiv_url": url_or_id}
            )

        data = await self.fetch_pdf(arxiv_id, gateway.max_upload_bytes)
        title, abstract = await self.fetch_metadata(arxiv_id)
        storage_path = await gateway.upload(principal, f"{arxiv_id.replace('/', '-')}.pdf", data)

        self._log.info(
            "arxiv.ingested",
            arxiv_id=arxiv_id,
            user_id=principal.user_id,
            size=len(data),
        )
        return ArxivPaper(
            arxiv_id=arxiv_id,
            title=title,
            abstract=abstract,
            storage_path=storage_path,
            size=len(data),
        )
