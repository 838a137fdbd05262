"""Explorable configuration management.

Configuration sources (in priority order):
1. Environment variables (EXPLORABLE_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from explorable.models.template import (
    BaseImageStep,
    CopyFileStep,
    InstallPackagesStep,
    ReadinessProbe,
    ResourceLimits,
    RunCommandStep,
    SandboxTemplate,
    SetStartCommandStep,
    SetWorkdirStep,
)

# Bundled template sources (index.html etc. for html-developer)
_BUNDLED_TEMPLATE_ROOT = Path(__file__).parent / "sandbox_templates"


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str = "sqlite+aiosqlite:///./explorable.db"
    echo: bool = False


class DockerConfig(BaseModel):
    """Docker driver configuration."""

    socket: str = "unix:///var/run/docker.sock"

    # Optional network for sandbox containers; empty means Docker default
    network: str | None = None

    # How the service reaches a sandbox:
    # - container_network: container IP on the shared network
    # - host_port: published host port
    # - auto: container_network first, then host_port
    connect_mode: Literal["container_network", "host_port", "auto"] = "auto"

    # Host address used in host_port mode and in public preview URLs
    host_address: str = "127.0.0.1"

    publish_ports: bool = True


class DriverConfig(BaseModel):
    """Driver layer configuration."""

    type: Literal["docker"] = "docker"
    docker: DockerConfig = Field(default_factory=DockerConfig)

    # Repository prefix for built template images
    image_prefix: str = "explorable"

    # Applies to template base images when building
    # - "always": pull the base image on every build
    # - "if_not_present": let the build pull it only when missing
    image_pull_policy: Literal["always", "if_not_present"] = "if_not_present"


class IdentityConfig(BaseModel):
    """Identity provider used to validate browser session tokens."""

    # Base URL of the auth API (e.g. https://<project>.supabase.co/auth/v1)
    # None = sessions cannot be validated (requests fail as misconfigured)
    url: str | None = None
    # Public API key sent alongside the bearer token, if the provider wants one
    api_key: str | None = None
    timeout_seconds: float = 10.0


class StorageConfig(BaseModel):
    """Artifact (PDF) storage configuration."""

    # Host directory for stored objects; None = storage unconfigured
    root_path: str | None = None
    max_upload_bytes: int = 10 * 1024 * 1024
    fetch_timeout_seconds: float = 60.0


class ArxivConfig(BaseModel):
    """arXiv paper ingestion for ``arxiv_url`` project requests."""

    abs_base_url: str = "https://arxiv.org/abs"
    pdf_base_url: str = "https://arxiv.org/pdf"
    user_agent: str = "Explorable/1.0 (+https://github.com/michaltakac/explorable-research)"
    timeout_seconds: float = 60.0


class RateLimitConfig(BaseModel):
    """Per-user quota on project creation (sliding window)."""

    enabled: bool = True
    requests: int = Field(default=100, ge=1)
    window_seconds: float = Field(default=86400.0, gt=0)


class GenerationConfig(BaseModel):
    """Fragment generation service."""

    # None = generation unconfigured; runs fail with a recorded error
    url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = 300.0


class PipelineConfig(BaseModel):
    """Project run deadlines and sandbox lifetimes (seconds)."""

    run_timeout_seconds: float = 900.0
    generation_timeout_seconds: float = 300.0
    build_timeout_seconds: float = 900.0
    boot_timeout_seconds: float = 60.0
    install_timeout_seconds: float = 300.0
    write_timeout_seconds: float = 60.0

    # Sandbox lifetime after a successful run
    instance_ttl_seconds: int = 600

    # queued/running projects older than this are failed by GC
    stale_run_seconds: int = 1800


class HTTPConfig(BaseModel):
    """Shared outbound HTTP client."""

    max_connections: int = 100
    max_keepalive_connections: int = 50
    keepalive_expiry: float = 30.0
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    write_timeout: float = 30.0
    pool_timeout: float = 10.0


class GCTaskConfig(BaseModel):
    """GC task-specific configuration."""

    enabled: bool = True


class GCConfig(BaseModel):
    """Garbage collection configuration."""

    enabled: bool = True
    run_on_startup: bool = True
    interval_seconds: int = 120

    expired_instance: GCTaskConfig = Field(default_factory=GCTaskConfig)
    stale_run: GCTaskConfig = Field(default_factory=GCTaskConfig)


class SecurityConfig(BaseModel):
    """Security configuration."""

    # Users allowed to call /v1/admin endpoints
    admin_user_ids: list[str] = Field(default_factory=list)


def _default_templates() -> list[SandboxTemplate]:
    return [
        SandboxTemplate(
            alias="html-developer",
            steps=[
                BaseImageStep(image="node:24-slim"),
                InstallPackagesStep(packages=["curl", "git"]),
                SetWorkdirStep(path="/home/user"),
                CopyFileStep(source="index.html", destination="index.html"),
                CopyFileStep(source="style.css", destination="style.css"),
                CopyFileStep(source="main.js", destination="main.js"),
                RunCommandStep(command="ls -al"),
                SetStartCommandStep(
                    command="npx http-server . -a 0.0.0.0 -p 3000 --cors",
                    ready=ReadinessProbe(port=3000),
                ),
            ],
            resources=ResourceLimits(cpu_count=4, memory_mb=1024),
        ),
        SandboxTemplate(
            alias="explorable-research-developer",
            steps=[
                BaseImageStep(image="node:24-slim"),
                InstallPackagesStep(packages=["curl", "git"]),
                SetWorkdirStep(path="/home/user"),
                RunCommandStep(
                    command=(
                        "git clone https://github.com/michaltakac/explorable-research.git repo"
                        " && mv repo/sandbox-templates/explorable-research-developer/template/* ."
                        " && rm -rf repo"
                    )
                ),
                RunCommandStep(command="npm install"),
                SetStartCommandStep(command="npm run dev", ready=ReadinessProbe(port=3000)),
            ],
            resources=ResourceLimits(cpu_count=4, memory_mb=4096),
            # Clones upstream at build time, so the step hash never changes
            skip_cache=True,
        ),
    ]


class TemplatesConfig(BaseModel):
    """Sandbox template catalogue."""

    # Directory holding <alias>/<files> used by copyFile steps
    source_root: str = str(_BUNDLED_TEMPLATE_ROOT)
    default_alias: str = "explorable-research-developer"
    items: list[SandboxTemplate] = Field(default_factory=_default_templates)


class Settings(BaseSettings):
    """Explorable application settings."""

    model_config = SettingsConfigDict(
        env_prefix="EXPLORABLE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    driver: DriverConfig = Field(default_factory=DriverConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    arxiv: ArxivConfig = Field(default_factory=ArxivConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    http: HTTPConfig = Field(default_factory=HTTPConfig)
    gc: GCConfig = Field(default_factory=GCConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    templates: TemplatesConfig = Field(default_factory=TemplatesConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # File values arrive as init kwargs; environment wins over them
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    def get_template(self, alias: str) -> SandboxTemplate | None:
        """Get template by alias."""
        for template in self.templates.items:
            if template.alias == alias:
                return template
        return None


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. EXPLORABLE_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/explorable/config.yaml
    """
    config_paths = [
        os.environ.get("EXPLORABLE_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/explorable/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Environment variables override values from the YAML file.
    """
    file_config = _load_config_file()
    return Settings(**file_config)
