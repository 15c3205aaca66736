"""Data model for deployment runs, backups and health reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from analytics_deploy.errors import RunAlreadyFinishedError


def utc_now() -> datetime:
    return datetime.now(UTC)


class Environment(Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Stage(Enum):
    """Pipeline stages in execution order, plus the two terminal states."""

    INIT = "INIT"
    PRECHECK = "PRECHECK"
    BACKUP = "BACKUP"
    UPDATE_SOURCE = "UPDATE_SOURCE"
    REBUILD_AND_RESTART = "REBUILD_AND_RESTART"
    MIGRATE = "MIGRATE"
    VERIFY_HEALTH = "VERIFY_HEALTH"
    CLEANUP = "CLEANUP"
    DONE = "DONE"
    FAILED = "FAILED"


PIPELINE_STAGES: tuple[Stage, ...] = (
    Stage.PRECHECK,
    Stage.BACKUP,
    Stage.UPDATE_SOURCE,
    Stage.REBUILD_AND_RESTART,
    Stage.MIGRATE,
    Stage.VERIFY_HEALTH,
    Stage.CLEANUP,
)


class StageOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ServiceState(Enum):
    RUNNING = "running"
    EXITED = "exited"
    ABSENT = "absent"


@dataclass(frozen=True)
class DeploymentRequest:
    """What to deploy and where. Immutable once a run starts."""

    revision: str
    environment: Environment

    def __post_init__(self) -> None:
        if not self.revision or not self.revision.strip():
            raise ValueError("revision must be a non-empty string")


@dataclass(frozen=True)
class ServiceSpec:
    """A compose service that must (or should) be healthy after a deploy."""

    name: str
    required: bool = True
    readiness_url: str | None = None
    readiness_command: tuple[str, ...] | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-interval retry policy for health checks."""

    max_attempts: int = 10
    interval: float = 10.0
    per_attempt_timeout: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")
        if self.per_attempt_timeout <= 0:
            raise ValueError("per_attempt_timeout must be > 0")


@dataclass(frozen=True)
class BackupSet:
    """A complete snapshot of a set of volumes, one archive per volume."""

    name: str
    created_at: datetime
    artifacts: dict[str, Path]

    @property
    def volumes(self) -> list[str]:
        return list(self.artifacts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "artifacts": {volume: str(path) for volume, path in self.artifacts.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupSet:
        name = data.get("name")
        created_at = data.get("created_at")
        artifacts = data.get("artifacts")
        if not name or not created_at or not isinstance(artifacts, dict):
            raise ValueError("backup manifest is missing name, created_at or artifacts")
        return cls(
            name=str(name),
            created_at=datetime.fromisoformat(str(created_at)),
            artifacts={str(volume): Path(path) for volume, path in artifacts.items()},
        )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class CheckState(Enum):
    """Lifecycle of a single health check."""

    PENDING = "pending"
    RETRYING = "retrying"
    PASS = "pass"
    EXHAUSTED = "exhausted"


class CheckOutcome(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class CheckResult:
    name: str
    state: CheckState
    outcome: CheckOutcome
    required: bool
    attempts: int = 0
    detail: str = ""
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "outcome": self.outcome.value,
            "required": self.required,
            "attempts": self.attempts,
            "detail": self.detail,
            "elapsed_seconds": self.elapsed_seconds,
        }


@dataclass
class HealthReport:
    """Result of one verification pass. Never persisted as authoritative state."""

    checks: list[CheckResult] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def passed(self) -> bool:
        return not self.failures

    @property
    def overall(self) -> str:
        return "pass" if self.passed else "fail"

    @property
    def failures(self) -> list[CheckResult]:
        return [c for c in self.checks if c.outcome is CheckOutcome.FAIL]

    @property
    def warnings(self) -> list[CheckResult]:
        return [c for c in self.checks if c.outcome is CheckOutcome.WARN]

    def get(self, name: str) -> CheckResult | None:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "elapsed_seconds": self.elapsed_seconds,
            "checks": [c.to_dict() for c in self.checks],
        }


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageRecord:
    stage: Stage
    outcome: StageOutcome
    timestamp: datetime
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }


@dataclass(frozen=True)
class RunOutcome:
    success: bool
    stage: Stage | None = None
    reason: str = ""
    error_kind: str | None = None

    @classmethod
    def succeeded(cls) -> RunOutcome:
        return cls(success=True)

    @classmethod
    def failed(cls, stage: Stage, reason: str, error_kind: str | None = None) -> RunOutcome:
        return cls(success=False, stage=stage, reason=reason, error_kind=error_kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "stage": self.stage.value if self.stage else None,
            "reason": self.reason,
            "error_kind": self.error_kind,
        }


def _run_id(environment: Environment, started_at: datetime) -> str:
    return f"{environment.value}-{started_at.strftime('%Y%m%d-%H%M%S-%f')}"


@dataclass
class DeploymentRun:
    """One execution of the pipeline.

    Only the orchestrator mutates a run, and only until ``finish`` is called.
    """

    request: DeploymentRequest
    started_at: datetime = field(default_factory=utc_now)
    id: str = ""
    current_stage: Stage = Stage.INIT
    stage_history: list[StageRecord] = field(default_factory=list)
    final_outcome: RunOutcome | None = None
    finished_at: datetime | None = None
    backup: BackupSet | None = None
    previous_revision: str | None = None
    deployed_revision: str | None = None
    stopped_services: list[str] = field(default_factory=list)
    health_report: HealthReport | None = None
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = _run_id(self.request.environment, self.started_at)

    @property
    def is_terminal(self) -> bool:
        return self.final_outcome is not None

    @property
    def succeeded(self) -> bool:
        return self.final_outcome is not None and self.final_outcome.success

    def _ensure_active(self) -> None:
        if self.final_outcome is not None:
            raise RunAlreadyFinishedError(f"run {self.id} is already {self.current_stage.value}")

    def enter(self, stage: Stage) -> None:
        self._ensure_active()
        self.current_stage = stage

    def record(self, stage: Stage, outcome: StageOutcome, detail: str = "") -> None:
        self._ensure_active()
        self.stage_history.append(StageRecord(stage, outcome, utc_now(), detail))

    def warn(self, message: str) -> None:
        self._ensure_active()
        self.warnings.append(message)

    def finish(self, outcome: RunOutcome) -> None:
        self._ensure_active()
        self.final_outcome = outcome
        self.finished_at = utc_now()
        self.current_stage = Stage.DONE if outcome.success else Stage.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "revision": self.request.revision,
            "environment": self.request.environment.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "current_stage": self.current_stage.value,
            "stage_history": [r.to_dict() for r in self.stage_history],
            "final_outcome": self.final_outcome.to_dict() if self.final_outcome else None,
            "backup": self.backup.to_dict() if self.backup else None,
            "previous_revision": self.previous_revision,
            "deployed_revision": self.deployed_revision,
            "stopped_services": self.stopped_services,
            "health_report": self.health_report.to_dict() if self.health_report else None,
            "warnings": self.warnings,
        }
