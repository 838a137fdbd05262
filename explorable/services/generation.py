"""Fragment generation service.

A fragment is the generated project description: title, commentary, the
code files to write into the sandbox and optional extra dependencies.
How a fragment is produced (the model and its prompts) lives behind an
external HTTP service; this module only defines the contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import pydantic
import structlog
from pydantic import BaseModel, Field

from explorable.config import GenerationConfig
from explorable.errors import ExecutionError, MisconfiguredError
from explorable.services.http import get_http_client

logger = structlog.get_logger()


class FragmentFile(BaseModel):
    file_path: str
    file_content: str


class Fragment(BaseModel):
    """Generated project description."""

    commentary: str = ""
    template: str | None = None
    title: str = ""
    description: str = ""
    additional_dependencies: list[str] = Field(default_factory=list)
    has_additional_dependencies: bool = False
    install_dependencies_command: str = ""
    port: int | None = None
    # Single-file fragments use file_path + code; multi-file ones a list
    file_path: str | None = None
    code: str | list[FragmentFile] = ""

    def files(self) -> dict[str, str]:
        """Files to write into the sandbox, path -> content."""
        if isinstance(self.code, list):
            return {f.file_path: f.file_content for f in self.code}
        if self.code and self.file_path:
            return {self.file_path: self.code}
        return {}

    @property
    def install_command(self) -> str | None:
        if self.has_additional_dependencies and self.install_dependencies_command.strip():
            return self.install_dependencies_command
        return None


@dataclass
class GenerationRequest:
    project_id: str
    template: str
    instruction: str
    pdf_storage_path: str | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)


class FragmentGenerator(ABC):
    """Produces a fragment for a project request."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> Fragment:
        """Generate a fragment.

        Raises:
            ExecutionError: Generation failed or returned an invalid fragment
            MisconfiguredError: No generation backend is configured
        """
        ...


class HttpFragmentGenerator(FragmentGenerator):
    """Calls an external generation service over HTTP.

    POSTs the request as JSON and expects either a fragment object or
    ``{"fragment": {...}}`` back.
    """

    def __init__(self, config: GenerationConfig) -> None:
        self._config = config
        self._log = logger.bind(service="generation")

    async def generate(self, request: GenerationRequest) -> Fragment:
        if not self._config.url:
            self._log.error("generation.unconfigured")
            raise MisconfiguredError("Generation service is not configured")

        headers = {}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"

        payload = {
            "project_id": request.project_id,
            "template": request.template,
            "instruction": request.instruction,
            "pdf_storage_path": request.pdf_storage_path,
            "messages": request.messages,
        }

        self._log.info(
            "generation.request",
            project_id=request.project_id,
            template=request.template,
        )

        try:
            response = await get_http_client().post(
                self._config.url,
                json=payload,
                headers=headers,
                timeout=self._config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise ExecutionError(
                f"Generation timed out after {self._config.timeout_seconds:g}s"
            ) from e
        except httpx.HTTPError as e:
            raise ExecutionError(f"Generation service unreachable: {e}") from e

        if response.status_code >= 400:
            self._log.warning(
                "generation.http_error",
                project_id=request.project_id,
                status_code=response.status_code,
            )
            raise ExecutionError(f"Generation failed with HTTP {response.status_code}")

        try:
            data = response.json()
            if isinstance(data, dict) and isinstance(data.get("fragment"), dict):
                data = data["fragment"]
            return Fragment.model_validate(data)
        except (ValueError, pydantic.ValidationError) as e:
            raise ExecutionError("Generation returned an invalid fragment") from e
