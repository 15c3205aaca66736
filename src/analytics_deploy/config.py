"""Configuration management for analytics-deploy.

``Settings`` reads the environment (and ``.env`` / ``.env.<environment>``
files); ``Settings.deployment_config()`` freezes it into the
``DeploymentConfig`` handed to the pipeline at run start.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from analytics_deploy.models import Environment, RetryPolicy, ServiceSpec

_DEFAULT_APP_URLS: dict[Environment, str] = {
    Environment.DEVELOPMENT: "http://localhost:8000",
    Environment.STAGING: "http://localhost:8000",
    Environment.PRODUCTION: "http://localhost:80",
}


class ServiceSettings(BaseModel):
    """One entry of ``ANALYTICS_DEPLOY_SERVICES`` (JSON list in the environment)."""

    name: str
    required: bool = True
    readiness_url: str | None = None
    readiness_command: list[str] | None = None


def _default_services() -> list[ServiceSettings]:
    return [
        ServiceSettings(name="plausible"),
        ServiceSettings(
            name="plausible_db",
            readiness_command=["pg_isready", "-U", "postgres"],
        ),
        ServiceSettings(
            name="plausible_events_db",
            readiness_command=[
                "wget",
                "--no-verbose",
                "--tries=1",
                "-O",
                "-",
                "http://127.0.0.1:8123/ping",
            ],
        ),
    ]


@dataclass(frozen=True)
class DeploymentConfig:
    """Immutable configuration for one environment, passed into every run."""

    environment: Environment
    project_dir: Path
    compose_file: str
    compose_project: str | None
    git_remote: str
    default_revision: str
    services: tuple[ServiceSpec, ...]
    app_service: str
    build_services: tuple[str, ...]
    migration_command: tuple[str, ...]
    volumes: tuple[str, ...]
    volume_prefix: str | None
    backup_dir: Path
    backup_retention: int
    backup_image: str
    health_policy: RetryPolicy
    disk_threshold_percent: float
    memory_threshold_percent: float
    disk_path: str
    scan_logs: bool
    log_scan_window: str
    start_grace_seconds: float
    status_timeout: float
    command_timeout: float
    build_timeout: float
    backup_timeout: float
    exec_timeout: float
    webhook_url: str | None
    notify_timeout: float
    state_dir: Path

    @property
    def service_names(self) -> list[str]:
        return [spec.name for spec in self.services]


class Settings(BaseSettings):
    """Deployment settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_DEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Environment = Field(
        default=Environment.PRODUCTION, description="Target environment"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Path | None = Field(default=None, description="Append logs to this file too")

    # Source & compose project
    project_dir: Path = Field(default=Path("."), description="Application checkout")
    compose_file: str = Field(default="docker-compose.yml")
    compose_project: str | None = Field(default=None, description="docker compose -p value")
    git_remote: str = Field(default="origin")
    default_revision: str = Field(default="main", description="Revision deployed when none given")

    # Services
    services: Annotated[
        list[ServiceSettings],
        Field(default_factory=_default_services, description="Services to supervise"),
    ]
    app_service: str = Field(default="plausible", description="Service running the application")
    build_services: Annotated[list[str], Field(default_factory=lambda: ["plausible"])]
    migration_command: Annotated[
        list[str],
        Field(
            default_factory=lambda: ["/app/bin/plausible", "eval", "Plausible.Release.migrate()"]
        ),
    ]
    app_url: str | None = Field(default=None, description="Application readiness URL")

    # Backups
    volumes: Annotated[
        list[str],
        Field(default_factory=lambda: ["postgres-data", "clickhouse-data", "plausible-data"]),
    ]
    volume_prefix: str | None = Field(default="analytics", description="Compose volume prefix")
    backup_dir: Path = Field(default=Path("backups"))
    backup_retention: int = Field(default=5, ge=0)
    backup_image: str = Field(default="alpine")

    # Health
    health_max_attempts: int = Field(default=10, ge=1)
    health_interval_seconds: float = Field(default=10.0, ge=0)
    health_probe_timeout: float = Field(default=5.0, gt=0)
    disk_threshold_percent: float = Field(default=90.0, gt=0, le=100)
    memory_threshold_percent: float = Field(default=90.0, gt=0, le=100)
    disk_path: str = Field(default="/")
    scan_logs: bool = Field(default=True)
    log_scan_window: str = Field(default="1h")

    # Timeouts (seconds)
    start_grace_seconds: float = Field(default=5.0, ge=0)
    status_timeout: float = Field(default=10.0, gt=0)
    command_timeout: float = Field(default=180.0, gt=0)
    build_timeout: float = Field(default=1800.0, gt=0)
    backup_timeout: float = Field(default=1800.0, gt=0)
    exec_timeout: float = Field(default=600.0, gt=0)

    # Notifications
    webhook_url: SecretStr | None = Field(default=None, description="Outcome webhook URL")
    notify_timeout: float = Field(default=10.0, gt=0)

    state_dir: Path = Field(default=Path(".deploy-state"), description="Run records and locks")

    @model_validator(mode="after")
    def _default_app_url(self) -> Settings:
        if self.app_url is None:
            self.app_url = _DEFAULT_APP_URLS[self.environment]
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment is Environment.DEVELOPMENT

    @property
    def health_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.health_max_attempts,
            interval=self.health_interval_seconds,
            per_attempt_timeout=self.health_probe_timeout,
        )

    def service_specs(self) -> tuple[ServiceSpec, ...]:
        """Resolve configured services; the app service defaults to probing ``app_url``."""
        specs = []
        for entry in self.services:
            readiness_url = entry.readiness_url
            if readiness_url is None and entry.name == self.app_service:
                readiness_url = self.app_url
            specs.append(
                ServiceSpec(
                    name=entry.name,
                    required=entry.required,
                    readiness_url=readiness_url,
                    readiness_command=(
                        tuple(entry.readiness_command) if entry.readiness_command else None
                    ),
                )
            )
        return tuple(specs)

    def deployment_config(self) -> DeploymentConfig:
        project_dir = self.project_dir.expanduser().resolve()
        return DeploymentConfig(
            environment=self.environment,
            project_dir=project_dir,
            compose_file=self.compose_file,
            compose_project=self.compose_project,
            git_remote=self.git_remote,
            default_revision=self.default_revision,
            services=self.service_specs(),
            app_service=self.app_service,
            build_services=tuple(self.build_services),
            migration_command=tuple(self.migration_command),
            volumes=tuple(self.volumes),
            volume_prefix=self.volume_prefix,
            backup_dir=self.backup_dir.expanduser().resolve(),
            backup_retention=self.backup_retention,
            backup_image=self.backup_image,
            health_policy=self.health_policy,
            disk_threshold_percent=self.disk_threshold_percent,
            memory_threshold_percent=self.memory_threshold_percent,
            disk_path=self.disk_path,
            scan_logs=self.scan_logs,
            log_scan_window=self.log_scan_window,
            start_grace_seconds=self.start_grace_seconds,
            status_timeout=self.status_timeout,
            command_timeout=self.command_timeout,
            build_timeout=self.build_timeout,
            backup_timeout=self.backup_timeout,
            exec_timeout=self.exec_timeout,
            webhook_url=self.webhook_url.get_secret_value() if self.webhook_url else None,
            notify_timeout=self.notify_timeout,
            state_dir=self.state_dir.expanduser().resolve(),
        )


def load_settings(environment: Environment | str | None = None) -> Settings:
    """Load settings for an environment, layering ``.env.<environment>`` over ``.env``."""
    if environment is None:
        return Settings()
    env = Environment(environment)
    return Settings(_env_file=(".env", f".env.{env.value}"), environment=env)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
