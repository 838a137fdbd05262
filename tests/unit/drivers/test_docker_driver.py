"""Unit tests for DockerDriver helpers and endpoint resolution.

Pure function tests on docker inspect structures; no Docker daemon needed.
"""

from __future__ import annotations

import io
import tarfile
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiodocker.exceptions import DockerError

from explorable.drivers.base import ContainerStatus
from explorable.drivers.docker.docker import DockerDriver, make_tar, parse_build_output
from explorable.errors import BuildError


@pytest.fixture
def container_info() -> dict:
    return {
        "Id": "abc123",
        "Name": "/explorable-sbx-abc",
        "State": {"Status": "running", "ExitCode": 0},
        "Config": {"Labels": {"explorable.runtime_port": "3000"}},
        "NetworkSettings": {
            "Networks": {"explorable-net": {"IPAddress": "172.18.0.5"}},
            "Ports": {"3000/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32768"}]},
        },
    }


def _driver(connect_mode: str = "auto", network: str | None = "explorable-net") -> DockerDriver:
    driver = DockerDriver()
    driver._connect_mode = connect_mode
    driver._network = network
    return driver


class TestEndpointResolution:
    def test_auto_prefers_container_network(self, container_info: dict):
        driver = _driver("auto")
        assert driver._resolve_internal(container_info, runtime_port=3000) == "http://172.18.0.5:3000"

    def test_host_port_mode(self, container_info: dict):
        driver = _driver("host_port")
        assert driver._resolve_internal(container_info, runtime_port=3000) == "http://127.0.0.1:32768"

    def test_auto_falls_back_to_host_port(self, container_info: dict):
        container_info["NetworkSettings"]["Networks"] = {}
        driver = _driver("auto")
        assert driver._resolve_internal(container_info, runtime_port=3000) == "http://127.0.0.1:32768"

    def test_no_route(self, container_info: dict):
        container_info["NetworkSettings"]["Ports"] = {}
        driver = _driver("host_port")
        assert driver._resolve_internal(container_info, runtime_port=3000) is None

    def test_explicit_host_ip_kept(self, container_info: dict):
        container_info["NetworkSettings"]["Ports"]["3000/tcp"][0]["HostIp"] = "10.0.0.2"
        driver = _driver("host_port")
        assert driver._resolve_host_port(container_info, runtime_port=3000) == ("10.0.0.2", 32768)


class TestBuildHelpers:
    def test_make_tar_contains_files(self):
        data = make_tar({"Dockerfile": b"FROM scratch\n", "files/1/a.txt": b"a"}, gzip=True)

        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            names = sorted(tar.getnames())
            assert names == ["Dockerfile", "files/1/a.txt"]
            assert tar.extractfile("files/1/a.txt").read() == b"a"

    def test_make_tar_strips_leading_slash(self):
        data = make_tar({"/home/user/index.html": b"<h1/>"})
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            assert tar.getnames() == ["home/user/index.html"]

    def test_parse_build_output_success(self):
        lines, error = parse_build_output(
            [{"stream": "Step 1/2 : FROM node:24-slim\n"}, {"stream": "\n"}, {"aux": {"ID": "sha"}}]
        )
        assert lines == ["Step 1/2 : FROM node:24-slim"]
        assert error is None

    def test_parse_build_output_error(self):
        _, error = parse_build_output(
            [
                {"stream": "Step 2/2 : RUN npm run dev\n"},
                {"errorDetail": {"message": "returned a non-zero code: 1"}, "error": "x"},
            ]
        )
        assert error == "returned a non-zero code: 1"


class TestDockerCalls:
    """Driver calls against a mocked aiodocker client."""

    async def test_build_error_in_stream_raises(self):
        driver = _driver()
        client = MagicMock()
        client.images.build = AsyncMock(return_value=[{"error": "pull access denied"}])
        driver._client = client

        with pytest.raises(BuildError, match="pull access denied"):
            await driver.build_image("explorable/x:1", "FROM nope\n", {})

        kwargs = client.images.build.call_args.kwargs
        assert kwargs["tag"] == "explorable/x:1"
        assert kwargs["encoding"] == "gzip"

    async def test_image_exists_404(self):
        driver = _driver()
        client = MagicMock()
        client.images.inspect = AsyncMock(side_effect=DockerError(404, {"message": "no such image"}))
        driver._client = client

        assert await driver.image_exists("explorable/x:1") is False

    async def test_destroy_missing_container_is_noop(self):
        driver = _driver()
        container = MagicMock()
        container.delete = AsyncMock(side_effect=DockerError(404, {"message": "gone"}))
        client = MagicMock()
        client.containers.container.return_value = container
        driver._client = client

        await driver.destroy("gone")

    async def test_status_not_found(self):
        driver = _driver()
        container = MagicMock()
        container.show = AsyncMock(side_effect=DockerError(404, {"message": "gone"}))
        client = MagicMock()
        client.containers.container.return_value = container
        driver._client = client

        info = await driver.status("gone")
        assert info.status == ContainerStatus.NOT_FOUND

    async def test_status_running_resolves_endpoint(self, container_info: dict):
        driver = _driver()
        container = MagicMock()
        container.show = AsyncMock(return_value=container_info)
        client = MagicMock()
        client.containers.container.return_value = container
        driver._client = client

        info = await driver.status("abc123")
        assert info.status == ContainerStatus.RUNNING
        assert info.endpoint == "http://172.18.0.5:3000"
