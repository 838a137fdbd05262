"""Driver layer - infrastructure abstraction."""

from explorable.drivers.base import (
    ContainerInfo,
    ContainerStatus,
    Driver,
    ExecResult,
    InstanceEndpoints,
    InstanceSpec,
)
from explorable.drivers.docker import DockerDriver

__all__ = [
    "ContainerInfo",
    "ContainerStatus",
    "DockerDriver",
    "Driver",
    "ExecResult",
    "InstanceEndpoints",
    "InstanceSpec",
]
