"""Driver base class - infrastructure abstraction.

The driver is responsible ONLY for images and container lifecycle.
It does NOT handle:
- Authentication or ownership
- Retries
- Build caching decisions
- Persistence

Endpoint resolution: the service may run on the host or inside a
container with the docker socket mounted, so drivers support both a
container-network address and a published host port.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class ContainerStatus(str, Enum):
    """Container status from driver's perspective."""

    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    REMOVING = "removing"
    NOT_FOUND = "not_found"


@dataclass
class ContainerInfo:
    """Container information from driver."""

    container_id: str
    status: ContainerStatus
    endpoint: str | None = None
    exit_code: int | None = None


@dataclass
class InstanceEndpoints:
    """Addresses of a started container.

    ``internal`` is what this service uses to reach the sandbox;
    ``public`` is what is handed back to the user as a preview URL.
    """

    internal: str
    public: str


@dataclass
class ExecResult:
    """Outcome of a command executed inside a container."""

    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class InstanceSpec:
    """Everything needed to create a sandbox container."""

    instance_id: str
    image: str
    command: str
    runtime_port: int
    cpu_count: float = 1.0
    memory_mb: int = 1024
    labels: dict[str, str] = field(default_factory=dict)


class Driver(ABC):
    """Abstract driver interface.

    All containers created by a driver MUST be labeled with:
    - explorable.managed
    - explorable.instance_id
    - explorable.project_id
    - explorable.owner
    """

    # Images

    @abstractmethod
    async def build_image(
        self,
        tag: str,
        dockerfile: str,
        context_files: dict[str, bytes],
        *,
        nocache: bool = False,
        pull: bool = False,
        labels: dict[str, str] | None = None,
    ) -> list[str]:
        """Build an image from a Dockerfile and its build context.

        Args:
            tag: Image reference to tag the result with
            dockerfile: Dockerfile text
            context_files: Context-relative path -> file content
            nocache: Re-execute every step instead of reusing layers
            pull: Always pull the base image
            labels: Image labels

        Returns:
            Build log lines

        Raises:
            BuildError: If any step fails
        """
        ...

    @abstractmethod
    async def image_exists(self, tag: str) -> bool:
        ...

    # Containers

    @abstractmethod
    async def create(self, spec: InstanceSpec) -> str:
        """Create a container without starting it.

        Returns:
            Container ID
        """
        ...

    @abstractmethod
    async def start(self, container_id: str, *, runtime_port: int) -> InstanceEndpoints:
        """Start a container and resolve its endpoints."""
        ...

    @abstractmethod
    async def exec(
        self,
        container_id: str,
        command: str,
        *,
        workdir: str | None = None,
    ) -> ExecResult:
        """Run a shell command inside a running container.

        Callers bound the call with their own timeout.
        """
        ...

    @abstractmethod
    async def put_files(self, container_id: str, files: dict[str, bytes]) -> None:
        """Write files into a container.

        Args:
            container_id: Container ID
            files: Absolute path inside the container -> content
        """
        ...

    @abstractmethod
    async def destroy(self, container_id: str) -> None:
        """Destroy (remove) a container. Missing containers are ignored."""
        ...

    @abstractmethod
    async def status(self, container_id: str) -> ContainerInfo:
        ...

    async def close(self) -> None:
        """Release client resources."""
        return None
