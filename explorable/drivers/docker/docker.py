"""Docker driver implementation using aiodocker.

Supports multiple connectivity modes between the service and sandboxes:
- container_network: reach the sandbox by container IP on a docker network
- host_port: reach the sandbox via host port-mapping (127.0.0.1:<host_port>)
- auto: prefer container_network, fallback to host_port

Public preview URLs always use the published host port when there is one,
since users cannot reach container IPs.
"""

from __future__ import annotations

import io
import tarfile
import time
from pathlib import PurePosixPath
from typing import Any

import aiodocker
import structlog
from aiodocker.exceptions import DockerError

from explorable.config import get_settings
from explorable.drivers.base import (
    ContainerInfo,
    ContainerStatus,
    Driver,
    ExecResult,
    InstanceEndpoints,
    InstanceSpec,
)
from explorable.errors import BuildError

logger = structlog.get_logger()

# Sandboxes are small; keep them from fork-bombing the host
_PIDS_LIMIT = 512


def make_tar(files: dict[str, bytes], *, gzip: bool = False) -> bytes:
    """Pack ``files`` (archive path -> content) into an in-memory tar."""
    buf = io.BytesIO()
    mode = "w:gz" if gzip else "w"
    now = int(time.time())
    with tarfile.open(fileobj=buf, mode=mode) as tar:
        for name, data in sorted(files.items()):
            info = tarfile.TarInfo(name=name.lstrip("/"))
            info.size = len(data)
            info.mode = 0o644
            info.mtime = now
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def parse_build_output(output: list[dict[str, Any]]) -> tuple[list[str], str | None]:
    """Split docker build output into log lines and the first error, if any."""
    lines: list[str] = []
    error: str | None = None
    for chunk in output:
        if "stream" in chunk:
            text = chunk["stream"].rstrip("\n")
            if text:
                lines.append(text)
        if error is None and ("error" in chunk or "errorDetail" in chunk):
            detail = chunk.get("errorDetail") or {}
            error = detail.get("message") or chunk.get("error") or "unknown build error"
    return lines, error


class DockerDriver(Driver):
    """Docker driver implementation using aiodocker."""

    def __init__(self) -> None:
        settings = get_settings()
        socket_url = settings.driver.docker.socket
        if socket_url.startswith("unix://"):
            self._socket = socket_url
        else:
            self._socket = f"unix://{socket_url}"

        docker_cfg = settings.driver.docker
        self._network = docker_cfg.network
        self._connect_mode = docker_cfg.connect_mode
        self._host_address = docker_cfg.host_address
        self._publish_ports = docker_cfg.publish_ports

        self._log = logger.bind(driver="docker")
        self._client: aiodocker.Docker | None = None

    async def _get_client(self) -> aiodocker.Docker:
        """Get or create the aiodocker client."""
        if self._client is None:
            self._client = aiodocker.Docker(url=self._socket)
        return self._client

    async def close(self) -> None:
        """Close the docker client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def _network_exists(self, name: str) -> bool:
        client = await self._get_client()
        try:
            await client.networks.get(name)
            return True
        except DockerError as e:
            if e.status == 404:
                return False
            raise

    def _resolve_container_ip(self, info: dict[str, Any]) -> str | None:
        networks = info.get("NetworkSettings", {}).get("Networks", {})
        if not networks:
            return None

        if self._network and self._network in networks:
            return networks[self._network].get("IPAddress") or None

        # fallback: first attached network
        return next(iter(networks.values())).get("IPAddress") or None

    def _resolve_host_port(
        self,
        info: dict[str, Any],
        *,
        runtime_port: int,
    ) -> tuple[str, int] | None:
        ports = info.get("NetworkSettings", {}).get("Ports") or {}
        bindings = ports.get(f"{runtime_port}/tcp")
        if not bindings:
            return None

        # Docker returns list like [{"HostIp": "0.0.0.0", "HostPort": "32768"}]
        b0 = bindings[0]
        host_ip = (b0.get("HostIp") or "").strip()
        host_port_str = b0.get("HostPort")
        if not host_port_str:
            return None

        # Bound on all interfaces: use the configured host address
        if host_ip in ("", "0.0.0.0", "::"):
            host_ip = self._host_address

        return host_ip, int(host_port_str)

    def _resolve_internal(self, info: dict[str, Any], *, runtime_port: int) -> str | None:
        if self._connect_mode in ("container_network", "auto"):
            ip = self._resolve_container_ip(info)
            if ip:
                return f"http://{ip}:{runtime_port}"

        if self._connect_mode in ("host_port", "auto"):
            hp = self._resolve_host_port(info, runtime_port=runtime_port)
            if hp:
                return f"http://{hp[0]}:{hp[1]}"

        return None

    # Images

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
        client = await self._get_client()

        files = dict(context_files)
        files["Dockerfile"] = dockerfile.encode()
        context = make_tar(files, gzip=True)

        image_labels = {"explorable.managed": "true"}
        if labels:
            image_labels.update(labels)

        self._log.info(
            "docker.build",
            tag=tag,
            nocache=nocache,
            pull=pull,
            context_bytes=len(context),
        )

        try:
            output = await client.images.build(
                fileobj=io.BytesIO(context),
                encoding="gzip",
                tag=tag,
                nocache=nocache,
                pull=pull,
                rm=True,
                forcerm=True,
                labels=image_labels,
            )
        except DockerError as e:
            raise BuildError(
                message=f"Docker build failed: {e.message}",
                details={"tag": tag},
            ) from e

        lines, error = parse_build_output(output)
        if error is not None:
            self._log.warning("docker.build.failed", tag=tag, error=error)
            raise BuildError(message=f"Docker build failed: {error}", details={"tag": tag})

        self._log.info("docker.built", tag=tag, log_lines=len(lines))
        return lines

    async def image_exists(self, tag: str) -> bool:
        client = await self._get_client()
        try:
            await client.images.inspect(tag)
            return True
        except DockerError as e:
            if e.status == 404:
                return False
            raise

    # Containers

    async def create(self, spec: InstanceSpec) -> str:
        """Create a sandbox container without starting it."""
        client = await self._get_client()

        container_labels = {
            "explorable.managed": "true",
            "explorable.instance_id": spec.instance_id,
            "explorable.runtime_port": str(spec.runtime_port),
        }
        container_labels.update(spec.labels)

        self._log.info(
            "docker.create",
            instance_id=spec.instance_id,
            image=spec.image,
            runtime_port=spec.runtime_port,
            connect_mode=self._connect_mode,
            network=self._network,
        )

        network_mode = None
        if self._network:
            if await self._network_exists(self._network):
                network_mode = self._network
            else:
                self._log.warning(
                    "docker.network_not_found.fallback_default",
                    network=self._network,
                )

        host_config: dict[str, Any] = {
            "Memory": spec.memory_mb * 1024 * 1024,
            "NanoCpus": int(spec.cpu_count * 1e9),
            "PidsLimit": _PIDS_LIMIT,
        }

        expose_key = f"{spec.runtime_port}/tcp"
        if self._publish_ports:
            # Random host port; needed for public preview URLs
            host_config["PortBindings"] = {expose_key: [{"HostIp": "0.0.0.0", "HostPort": ""}]}

        if network_mode and self._connect_mode in ("container_network", "auto"):
            host_config["NetworkMode"] = network_mode

        config: dict[str, Any] = {
            "Image": spec.image,
            "Cmd": ["/bin/sh", "-c", spec.command],
            "Labels": container_labels,
            "HostConfig": host_config,
            "ExposedPorts": {expose_key: {}},
        }

        container = await client.containers.create(
            config=config,
            name=f"explorable-{spec.instance_id}",
        )

        self._log.info("docker.created", container_id=container.id)
        return container.id

    async def start(self, container_id: str, *, runtime_port: int) -> InstanceEndpoints:
        """Start container and resolve its endpoints."""
        client = await self._get_client()
        self._log.info("docker.start", container_id=container_id, runtime_port=runtime_port)

        container = client.containers.container(container_id)
        await container.start()
        info = await container.show()

        hp = self._resolve_host_port(info, runtime_port=runtime_port)
        internal = self._resolve_internal(info, runtime_port=runtime_port)
        if internal is None:
            # Last resort: container name (only works if it resolves from here)
            name = info.get("Name", "").lstrip("/")
            internal = f"http://{name}:{runtime_port}"
            self._log.warning("docker.endpoint.fallback_name", endpoint=internal)

        public = f"http://{hp[0]}:{hp[1]}" if hp else internal
        self._log.info("docker.endpoint", internal=internal, public=public)
        return InstanceEndpoints(internal=internal, public=public)

    async def exec(
        self,
        container_id: str,
        command: str,
        *,
        workdir: str | None = None,
    ) -> ExecResult:
        client = await self._get_client()
        container = client.containers.container(container_id)
        self._log.info("docker.exec", container_id=container_id, workdir=workdir)

        kwargs: dict[str, Any] = {"stdout": True, "stderr": True}
        if workdir:
            kwargs["workdir"] = workdir
        exec_ = await container.exec(["/bin/sh", "-c", command], **kwargs)

        chunks: list[bytes] = []
        async with exec_.start(detach=False) as stream:
            while True:
                msg = await stream.read_out()
                if msg is None:
                    break
                chunks.append(msg.data)

        inspect = await exec_.inspect()
        exit_code = inspect.get("ExitCode")
        output = b"".join(chunks).decode(errors="replace")
        return ExecResult(exit_code=exit_code if exit_code is not None else -1, output=output)

    async def put_files(self, container_id: str, files: dict[str, bytes]) -> None:
        client = await self._get_client()
        container = client.containers.container(container_id)

        # One archive rooted at "/", so every path keeps its directories
        archive = make_tar({str(PurePosixPath(p)): data for p, data in files.items()})
        self._log.info("docker.put_files", container_id=container_id, count=len(files))
        await container.put_archive("/", archive)

    async def destroy(self, container_id: str) -> None:
        """Destroy (remove) a container."""
        client = await self._get_client()
        self._log.info("docker.destroy", container_id=container_id)

        try:
            container = client.containers.container(container_id)
            await container.delete(force=True)
        except DockerError as e:
            if e.status == 404:
                self._log.warning("docker.destroy.not_found", container_id=container_id)
            else:
                raise

    async def status(self, container_id: str) -> ContainerInfo:
        """Get container status."""
        client = await self._get_client()

        try:
            container = client.containers.container(container_id)
            info = await container.show()
        except DockerError as e:
            if e.status == 404:
                return ContainerInfo(container_id=container_id, status=ContainerStatus.NOT_FOUND)
            raise

        docker_status = info.get("State", {}).get("Status", "unknown")

        if docker_status == "running":
            status = ContainerStatus.RUNNING
        elif docker_status == "created":
            status = ContainerStatus.CREATED
        elif docker_status == "removing":
            status = ContainerStatus.REMOVING
        else:
            status = ContainerStatus.EXITED

        endpoint = None
        runtime_port = info.get("Config", {}).get("Labels", {}).get("explorable.runtime_port")
        if status == ContainerStatus.RUNNING and runtime_port:
            endpoint = self._resolve_internal(info, runtime_port=int(runtime_port))

        return ContainerInfo(
            container_id=container_id,
            status=status,
            endpoint=endpoint,
            exit_code=info.get("State", {}).get("ExitCode"),
        )
