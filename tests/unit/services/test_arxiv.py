"""Unit tests for arXiv ingestion.

HTTP goes through a mocked shared client; storage is in memory.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from explorable.config import ArxivConfig, StorageConfig
from explorable.errors import NotFoundError, PaperSourceError, PayloadTooLargeError
from explorable.services.arxiv import ArxivClient, extract_arxiv_id, parse_abstract_page
from explorable.services.artifact_store import ArtifactStoreGateway
from explorable.services.identity import AuthMode, Principal
from tests.fakes import MemoryObjectStore

ALICE = Principal(user_id="alice", auth_mode=AuthMode.API_KEY)

ABS_PAGE = """
<html><head>
<meta name="citation_title" content="Attention Is All You Need" />
</head><body>
<blockquote class="abstract mathjax">
  <span class="descriptor">Abstract:</span>
  The dominant sequence transduction models are based on
  <a href="#">recurrent</a> networks &amp; encoders.
</blockquote>
</body></html>
"""


def http_client(routes: dict[str, httpx.Response | Exception]) -> MagicMock:
    """A client whose ``get`` answers from ``routes`` keyed by URL."""

    async def get(url, **kwargs):
        answer = routes.get(url, httpx.Response(404))
        if isinstance(answer, Exception):
            raise answer
        return answer

    client = MagicMock()
    client.get = AsyncMock(side_effect=get)
    return client


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def gateway(store: MemoryObjectStore) -> ArtifactStoreGateway:
    return ArtifactStoreGateway(store, StorageConfig(max_upload_bytes=1024))


@pytest.fixture
def arxiv() -> ArxivClient:
    return ArxivClient(ArxivConfig())


class TestExtractArxivId:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("https://arxiv.org/abs/2301.00001", "2301.00001"),
            ("https://arxiv.org/abs/2301.00001v2", "2301.00001v2"),
            ("https://arxiv.org/pdf/2301.00001.pdf", "2301.00001"),
            ("https://arxiv.org/pdf/2301.00001", "2301.00001"),
            ("https://arxiv.org/pdf/2301.00001v1.pdf", "2301.00001v1"),
            ("http://arxiv.org/abs/2301.12345", "2301.12345"),
            ("https://arxiv.org/abs/hep-th/9901001", "hep-th/9901001"),
            ("https://arxiv.org/abs/hep-th/9901001v1", "hep-th/9901001v1"),
            ("https://arxiv.org/pdf/hep-th/9901001.pdf", "hep-th/9901001"),
            ("2309.12345v3", "2309.12345v3"),
            ("cs/0001001", "cs/0001001"),
            ("\n2301.00001\t", "2301.00001"),
        ],
    )
    def test_recognized(self, value: str, expected: str):
        assert extract_arxiv_id(value) == expected

    @pytest.mark.parametrize(
        "value",
        ["https://example.com/paper", "not-a-url", "", "   ", "23.00001", "2301.1", "230100001"],
    )
    def test_rejected(self, value: str):
        assert extract_arxiv_id(value) is None


class TestAbstractPage:
    def test_title_and_abstract(self):
        title, abstract = parse_abstract_page(ABS_PAGE)

        assert title == "Attention Is All You Need"
        assert abstract == (
            "The dominant sequence transduction models are based on "
            "recurrent networks & encoders."
        )

    def test_unrecognized_page(self):
        assert parse_abstract_page("<html></html>") == (None, "")


class TestIngest:
    async def test_stores_pdf_under_caller_prefix(
        self, arxiv: ArxivClient, gateway: ArtifactStoreGateway, store: MemoryObjectStore
    ):
        client = http_client(
            {
                "https://arxiv.org/pdf/1706.03762v7.pdf": httpx.Response(200, content=b"%PDF-1.5"),
                "https://arxiv.org/abs/1706.03762v7": httpx.Response(200, text=ABS_PAGE),
            }
        )

        with patch("explorable.services.arxiv.get_http_client", return_value=client):
            paper = await arxiv.ingest(ALICE, "https://arxiv.org/abs/1706.03762v7", gateway)

        assert paper.arxiv_id == "1706.03762v7"
        assert paper.title == "Attention Is All You Need"
        assert paper.abstract.startswith("The dominant sequence")
        assert paper.storage_path.startswith("alice/")
        assert paper.storage_path.endswith("-1706.03762v7.pdf")
        assert store.objects[paper.storage_path] == b"%PDF-1.5"
        headers = client.get.call_args_list[0].kwargs["headers"]
        assert headers["User-Agent"].startswith("Explorable/")

    async def test_old_style_id_filename(
        self, arxiv: ArxivClient, gateway: ArtifactStoreGateway
    ):
        client = http_client(
            {"https://arxiv.org/pdf/hep-th/9901001.pdf": httpx.Response(200, content=b"%PDF")}
        )

        with patch("explorable.services.arxiv.get_http_client", return_value=client):
            paper = await arxiv.ingest(ALICE, "hep-th/9901001", gateway)

        assert paper.storage_path.endswith("-hep-th-9901001.pdf")
        # Abstract page missing: fallbacks apply
        assert paper.title == "arXiv:hep-th/9901001"
        assert paper.abstract == ""

    async def test_invalid_url(
        self, arxiv: ArxivClient, gateway: ArtifactStoreGateway, store: MemoryObjectStore
    ):
        client = http_client({})

        with patch("explorable.services.arxiv.get_http_client", return_value=client):
            with pytest.raises(PaperSourceError, match="Invalid arXiv URL"):
                await arxiv.ingest(ALICE, "https://example.com/paper", gateway)

        client.get.assert_not_called()
        assert store.objects == {}

    async def test_unknown_paper(
        self, arxiv: ArxivClient, gateway: ArtifactStoreGateway, store: MemoryObjectStore
    ):
        with patch("explorable.services.arxiv.get_http_client", return_value=http_client({})):
            with pytest.raises(NotFoundError):
                await arxiv.ingest(ALICE, "2301.00001", gateway)

        assert store.objects == {}

    async def test_pdf_over_upload_limit(
        self, arxiv: ArxivClient, gateway: ArtifactStoreGateway, store: MemoryObjectStore
    ):
        client = http_client(
            {"https://arxiv.org/pdf/2301.00001.pdf": httpx.Response(200, content=b"x" * 1025)}
        )

        with patch("explorable.services.arxiv.get_http_client", return_value=client):
            with pytest.raises(PayloadTooLargeError) as exc_info:
                await arxiv.ingest(ALICE, "2301.00001", gateway)

        assert exc_info.value.details == {"size": 1025, "limit": 1024}
        assert store.objects == {}

    async def test_arxiv_unreachable(self, arxiv: ArxivClient, gateway: ArtifactStoreGateway):
        client = http_client(
            {"https://arxiv.org/pdf/2301.00001.pdf": httpx.ConnectError("refused")}
        )

        with patch("explorable.services.arxiv.get_http_client", return_value=client):
            with pytest.raises(PaperSourceError, match="Could not reach arXiv"):
                await arxiv.ingest(ALICE, "2301.00001", gateway)

    async def test_arxiv_server_error(self, arxiv: ArxivClient, gateway: ArtifactStoreGateway):
        client = http_client({"https://arxiv.org/pdf/2301.00001.pdf": httpx.Response(503)})

        with patch("explorable.services.arxiv.get_http_client", return_value=client):
            with pytest.raises(PaperSourceError, match="HTTP 503"):
                await arxiv.ingest(ALICE, "2301.00001", gateway)

    async def test_metadata_failure_is_tolerated(
        self, arxiv: ArxivClient, gateway: ArtifactStoreGateway
    ):
        client = http_client(
            {
                "https://arxiv.org/pdf/2301.00001.pdf": httpx.Response(200, content=b"%PDF"),
                "https://arxiv.org/abs/2301.00001": httpx.ReadTimeout("slow"),
            }
        )

        with patch("explorable.services.arxiv.get_http_client", return_value=client):
            paper = await arxiv.ingest(ALICE, "2301.00001", gateway)

        assert paper.title == "arXiv:2301.00001"
