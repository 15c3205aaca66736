"""Error taxonomy for the deployment pipeline.

Every failure the pipeline can report falls into one of five families:

- ``PreconditionError``: the environment is not ready; nothing was changed.
- ``BackupFailure``: the safety gate tripped; nothing was changed.
- ``MutationFailure``: state was partially changed; an operator must look.
- ``VerificationFailure``: the new code is running but is not provably healthy.
- ``HousekeepingWarning``: cleanup trouble; logged, never fatal.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from analytics_deploy.models import HealthReport


class DeploymentError(Exception):
    """Base class for every pipeline failure."""

    kind = "deployment"
    fatal = True


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class PreconditionError(DeploymentError):
    """The environment is not ready; no mutation occurred."""

    kind = "precondition"


class ControllerUnavailable(PreconditionError):
    """The container runtime could not be reached."""


class WorkingTreeMissing(PreconditionError):
    """The application checkout does not exist on disk."""


class SourceUpdateError(PreconditionError):
    """A version-control operation failed without touching the working tree."""


class RefNotFound(SourceUpdateError):
    """The requested revision does not exist at the remote."""

    def __init__(self, ref: str) -> None:
        super().__init__(f"revision {ref!r} not found at remote")
        self.ref = ref


class DirtyWorkingTree(SourceUpdateError):
    """Local uncommitted changes would be lost by a checkout."""

    def __init__(self, paths: list[str]) -> None:
        preview = ", ".join(paths[:5])
        if len(paths) > 5:
            preview += f" (+{len(paths) - 5} more)"
        super().__init__(f"working tree has uncommitted changes: {preview}")
        self.paths = paths


class DeploymentInProgressError(PreconditionError):
    """Another run already holds the environment."""

    def __init__(self, environment: str) -> None:
        super().__init__(f"a deployment is already in progress for {environment}")
        self.environment = environment


# ---------------------------------------------------------------------------
# Backup gate
# ---------------------------------------------------------------------------


class BackupFailure(DeploymentError):
    """A volume could not be archived; the deployment must not proceed."""

    kind = "backup"

    def __init__(self, volume: str, cause: str) -> None:
        super().__init__(f"backup of volume {volume!r} failed: {cause}")
        self.volume = volume
        self.cause = cause


class BackupNotFound(DeploymentError):
    kind = "backup"

    def __init__(self, name: str) -> None:
        super().__init__(f"backup {name!r} does not exist or is incomplete")
        self.name = name


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


class MutationFailure(DeploymentError):
    """A state change happened partially; requires operator attention."""

    kind = "mutation"


class ServiceControlError(MutationFailure):
    """A compose operation (stop, pull, build, restart) failed."""

    def __init__(self, operation: str, services: list[str], cause: str) -> None:
        names = ", ".join(services) if services else "all services"
        super().__init__(f"{operation} failed for {names}: {cause}")
        self.operation = operation
        self.services = services
        self.cause = cause


class StartFailure(MutationFailure):
    def __init__(self, service: str, cause: str) -> None:
        super().__init__(f"service {service!r} failed to start: {cause}")
        self.service = service
        self.cause = cause


class ExecFailure(MutationFailure):
    def __init__(self, service: str, exit_code: int | None, output: str) -> None:
        code = "timeout" if exit_code is None else f"exit code {exit_code}"
        super().__init__(f"command in {service!r} failed ({code}): {output[:300]}")
        self.service = service
        self.exit_code = exit_code
        self.output = output


class MigrationFailure(MutationFailure):
    def __init__(self, exit_code: int | None, output: str) -> None:
        if exit_code is None:
            message = f"migration failed: {output[:300]}"
        else:
            message = f"migration failed with exitCode={exit_code}: {output[:300]}"
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class RestoreFailure(MutationFailure):
    """Restoring a volume failed; the volume may be partially overwritten."""

    def __init__(self, volume: str, cause: str) -> None:
        super().__init__(f"restore of volume {volume!r} failed: {cause}")
        self.volume = volume
        self.cause = cause


# ---------------------------------------------------------------------------
# Verification / housekeeping
# ---------------------------------------------------------------------------


class VerificationFailure(DeploymentError):
    """The new code is running but health verification did not pass."""

    kind = "verification"

    def __init__(self, report: HealthReport) -> None:
        failed = ", ".join(check.name for check in report.failures) or "unknown"
        super().__init__(f"health verification failed: {failed}")
        self.report = report


class HousekeepingWarning(DeploymentError):
    kind = "housekeeping"
    fatal = False


class PruneWarning(HousekeepingWarning):
    """Some old backup sets could not be deleted; the rest were."""

    def __init__(self, errors: list[str], pruned: list[str]) -> None:
        super().__init__(f"could not prune backups: {'; '.join(errors)}")
        self.errors = errors
        self.pruned = pruned


class RunAlreadyFinishedError(RuntimeError):
    """Raised when a terminal run is mutated."""
