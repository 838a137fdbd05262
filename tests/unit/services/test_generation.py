"""Unit tests for fragments and the HTTP fragment generator."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from explorable.config import GenerationConfig
from explorable.errors import ExecutionError, MisconfiguredError
from explorable.services.generation import Fragment, GenerationRequest, HttpFragmentGenerator

REQUEST = GenerationRequest(project_id="prj-1", template="html-developer", instruction="x")


class TestFragment:
    def test_single_file(self):
        fragment = Fragment(file_path="index.html", code="<h1/>")
        assert fragment.files() == {"index.html": "<h1/>"}

    def test_multi_file(self):
        fragment = Fragment.model_validate(
            {
                "code": [
                    {"file_path": "src/App.tsx", "file_content": "export {}"},
                    {"file_path": "src/main.tsx", "file_content": "import App"},
                ]
            }
        )
        assert fragment.files() == {"src/App.tsx": "export {}", "src/main.tsx": "import App"}

    def test_install_command_only_with_dependencies(self):
        assert Fragment(install_dependencies_command="npm i d3").install_command is None
        assert (
            Fragment(
                has_additional_dependencies=True,
                install_dependencies_command="npm i d3",
            ).install_command
            == "npm i d3"
        )


class TestHttpFragmentGenerator:
    def _client(self, response=None, error=None) -> MagicMock:
        client = MagicMock()
        client.post = AsyncMock(return_value=response, side_effect=error)
        return client

    async def _generate(self, client, config=None):
        config = config or GenerationConfig(url="https://gen.example.com/fragment", api_key="k")
        with patch("explorable.services.generation.get_http_client", return_value=client):
            return await HttpFragmentGenerator(config).generate(REQUEST)

    async def test_unconfigured(self):
        with pytest.raises(MisconfiguredError):
            await HttpFragmentGenerator(GenerationConfig()).generate(REQUEST)

    async def test_wrapped_fragment(self):
        client = self._client(
            httpx.Response(200, json={"fragment": {"title": "T", "file_path": "a.html", "code": "x"}})
        )

        fragment = await self._generate(client)

        assert fragment.title == "T"
        assert client.post.call_args.kwargs["headers"]["Authorization"] == "Bearer k"
        assert client.post.call_args.kwargs["json"]["project_id"] == "prj-1"

    async def test_bare_fragment(self):
        client = self._client(httpx.Response(200, json={"title": "Bare"}))
        assert (await self._generate(client)).title == "Bare"

    async def test_http_error_status(self):
        client = self._client(httpx.Response(502, text="bad gateway"))
        with pytest.raises(ExecutionError, match="HTTP 502"):
            await self._generate(client)

    async def test_invalid_body(self):
        client = self._client(httpx.Response(200, text="not json"))
        with pytest.raises(ExecutionError, match="invalid fragment"):
            await self._generate(client)

    async def test_timeout(self):
        client = self._client(error=httpx.ReadTimeout("slow"))
        with pytest.raises(ExecutionError, match="timed out"):
            await self._generate(client)
