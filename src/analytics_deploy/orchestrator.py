"""Deployment pipeline state machine.

A run moves through ``PIPELINE_STAGES`` strictly in order. Every stage
either records success or ends the run ``FAILED(stage, reason)``; the
terminal transition is persisted, logged with the full stage history and
notified exactly once.

Nothing is ever restored automatically. A failed run names the backup set
an operator can restore from with the ``restore`` verb.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from contextlib import AbstractAsyncContextManager

import structlog

from analytics_deploy.backup import BackupManager
from analytics_deploy.config import DeploymentConfig
from analytics_deploy.errors import (
    ControllerUnavailable,
    DeploymentError,
    PruneWarning,
    VerificationFailure,
    WorkingTreeMissing,
)
from analytics_deploy.health import HealthVerifier
from analytics_deploy.locking import RunLock
from analytics_deploy.logging import get_logger
from analytics_deploy.migrations import MigrationRunner
from analytics_deploy.models import (
    PIPELINE_STAGES,
    BackupSet,
    DeploymentRequest,
    DeploymentRun,
    Environment,
    RunOutcome,
    Stage,
    StageOutcome,
)
from analytics_deploy.notifications import (
    NotificationContext,
    NotificationSink,
    NotificationStatus,
    WebhookNotifier,
)
from analytics_deploy.services import ComposeServiceController, ServiceController
from analytics_deploy.shell import CommandRunner
from analytics_deploy.source import GitSourceUpdater, SourceUpdater
from analytics_deploy.store import RunStore

log = get_logger("analytics_deploy.orchestrator")

StageHandler = Callable[[DeploymentRun], Awaitable[str]]

CANCELLED = "cancelled"


class DeploymentOrchestrator:
    """Runs deployments and the other mutating verbs for one environment."""

    def __init__(
        self,
        config: DeploymentConfig,
        controller: ServiceController,
        source: SourceUpdater,
        backups: BackupManager,
        migrations: MigrationRunner,
        health: HealthVerifier,
        notifier: NotificationSink,
        store: RunStore | None = None,
        lock: RunLock | None = None,
    ) -> None:
        self._config = config
        self._controller = controller
        self._source = source
        self._backups = backups
        self._migrations = migrations
        self._health = health
        self._notifier = notifier
        self._store = store
        self._lock = lock or RunLock()
        self._active: dict[Environment, DeploymentRun] = {}
        self._cancel_requested: set[Environment] = set()
        self._handlers: dict[Stage, StageHandler] = {
            Stage.PRECHECK: self._precheck,
            Stage.BACKUP: self._backup,
            Stage.UPDATE_SOURCE: self._update_source,
            Stage.REBUILD_AND_RESTART: self._rebuild_and_restart,
            Stage.MIGRATE: self._migrate,
            Stage.VERIFY_HEALTH: self._verify_health,
            Stage.CLEANUP: self._cleanup,
        }

    @classmethod
    def from_config(cls, config: DeploymentConfig) -> DeploymentOrchestrator:
        """Wire the docker compose / git / webhook implementations."""
        runner = CommandRunner(cwd=config.project_dir, default_timeout=config.command_timeout)
        controller = ComposeServiceController(
            project_dir=config.project_dir,
            services=config.service_names,
            runner=runner,
            compose_file=config.compose_file,
            project_name=config.compose_project,
            start_grace=config.start_grace_seconds,
            status_timeout=config.status_timeout,
            command_timeout=config.command_timeout,
            build_timeout=config.build_timeout,
            exec_timeout=config.exec_timeout,
        )
        return cls(
            config=config,
            controller=controller,
            source=GitSourceUpdater(
                config.project_dir,
                runner=runner,
                remote=config.git_remote,
                timeout=config.command_timeout,
            ),
            backups=BackupManager(
                config.backup_dir,
                runner=runner,
                volume_prefix=config.volume_prefix,
                helper_image=config.backup_image,
                timeout=config.backup_timeout,
            ),
            migrations=MigrationRunner(
                controller, service=config.app_service, command=config.migration_command
            ),
            health=HealthVerifier(
                controller,
                disk_threshold=config.disk_threshold_percent,
                memory_threshold=config.memory_threshold_percent,
                disk_path=config.disk_path,
                scan_logs=config.scan_logs,
                log_window=config.log_scan_window,
            ),
            notifier=WebhookNotifier(config.webhook_url, timeout=config.notify_timeout),
            store=RunStore(config.state_dir),
            lock=RunLock(config.state_dir / "locks"),
        )

    @property
    def config(self) -> DeploymentConfig:
        return self._config

    @property
    def controller(self) -> ServiceController:
        return self._controller

    @property
    def backups(self) -> BackupManager:
        return self._backups

    @property
    def health(self) -> HealthVerifier:
        return self._health

    # ------------------------------------------------------------------
    # Exclusivity and cancellation
    # ------------------------------------------------------------------

    def exclusive(self, environment: Environment) -> AbstractAsyncContextManager[None]:
        """Hold the environment; raises ``DeploymentInProgressError`` if busy."""
        self._check_environment(environment)
        return self._lock.hold(environment)

    def cancel(self, environment: Environment) -> bool:
        """Ask the active run to stop at the next stage boundary.

        Returns False when no run is active for the environment.
        """
        run = self._active.get(environment)
        if run is None:
            return False
        self._cancel_requested.add(environment)
        log.warning("cancel_requested", run_id=run.id, stage=run.current_stage.value)
        return True

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy(self, request: DeploymentRequest) -> DeploymentRun:
        """Run the full pipeline for ``request`` and return the terminal run.

        Raises ``DeploymentInProgressError`` without creating a run when the
        environment is busy. Every other failure is reported through the run.
        """
        env = request.environment
        async with self.exclusive(env):
            run = DeploymentRun(request=request)
            self._active[env] = run
            self._cancel_requested.discard(env)
            try:
                with structlog.contextvars.bound_contextvars(
                    run_id=run.id, environment=env.value
                ):
                    log.info("deployment_started", revision=request.revision)
                    await self._execute(run)
                    await self._conclude(run)
            finally:
                self._active.pop(env, None)
                self._cancel_requested.discard(env)
        return run

    async def _execute(self, run: DeploymentRun) -> None:
        env = run.request.environment
        for stage in PIPELINE_STAGES:
            if env in self._cancel_requested:
                log.warning("deployment_cancelled", before_stage=stage.value)
                run.finish(RunOutcome.failed(stage, CANCELLED, CANCELLED))
                return

            run.enter(stage)
            log.info("stage_started", stage=stage.value)
            try:
                detail = await self._handlers[stage](run)
            except DeploymentError as exc:
                if not exc.fatal:
                    run.warn(str(exc))
                    log.warning("stage_warning", stage=stage.value, warning=str(exc))
                    detail = f"completed with warning: {exc}"
                else:
                    self._fail(run, stage, str(exc), exc.kind)
                    return
            except Exception as exc:
                log.exception("stage_unexpected_error", stage=stage.value)
                reason = f"unexpected error: {type(exc).__name__}: {exc}"
                self._fail(run, stage, reason, "unexpected")
                return

            run.record(stage, StageOutcome.SUCCESS, detail)
            log.info("stage_completed", stage=stage.value, detail=detail)

        run.finish(RunOutcome.succeeded())

    @staticmethod
    def _fail(run: DeploymentRun, stage: Stage, reason: str, kind: str) -> None:
        run.record(stage, StageOutcome.FAILED, reason)
        log.error("stage_failed", stage=stage.value, error_kind=kind, reason=reason)
        run.finish(RunOutcome.failed(stage, reason, kind))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _precheck(self, run: DeploymentRun) -> str:
        if not await self._controller.is_available():
            raise ControllerUnavailable("container runtime is not reachable")
        if not self._source.is_present():
            raise WorkingTreeMissing(f"no git working tree at {self._config.project_dir}")
        return "container runtime reachable, working tree present"

    async def _backup(self, run: DeploymentRun) -> str:
        run.backup = await self._backups.create_backup(self._config.volumes)
        return f"backup {run.backup.name} ({', '.join(run.backup.volumes)})"

    async def _update_source(self, run: DeploymentRun) -> str:
        run.previous_revision = await self._source.current_revision()
        sha = await self._source.fetch(run.request.revision)
        run.deployed_revision = await self._source.checkout(sha)
        return f"{run.previous_revision[:12]} -> {run.deployed_revision[:12]}"

    async def _rebuild_and_restart(self, run: DeploymentRun) -> str:
        names = self._config.service_names
        stopped = await self._controller.stop(names)
        run.stopped_services = sorted(stopped)
        await self._controller.pull()
        await self._controller.build(self._config.build_services)
        await self._controller.start(names)
        return f"restarted {', '.join(names)}"

    async def _migrate(self, run: DeploymentRun) -> str:
        await self._migrations.migrate()
        return "migrations applied"

    async def _verify_health(self, run: DeploymentRun) -> str:
        report = await self._health.verify(self._config.services, self._config.health_policy)
        run.health_report = report
        for check in report.warnings:
            run.warn(f"{check.name}: {check.detail}")
        if not report.passed:
            raise VerificationFailure(report)
        return f"{len(report.checks)} checks, {len(report.warnings)} warning(s)"

    async def _cleanup(self, run: DeploymentRun) -> str:
        steps: list[tuple[str, Callable[[], Awaitable[object]]]] = [
            ("prune_images", self._controller.prune_images),
            ("prune_volumes", self._controller.prune_volumes),
            ("prune_backups", self._prune_backups),
        ]
        failed = []
        for name, step in steps:
            try:
                await step()
            except Exception as exc:
                failed.append(name)
                run.warn(f"{name}: {exc}")
                log.warning("cleanup_step_failed", step=name, error=str(exc))
        if failed:
            return f"completed with warnings: {', '.join(failed)}"
        return "housekeeping complete"

    async def _prune_backups(self) -> list[str]:
        return self._backups.prune_old(self._config.backup_retention)

    # ------------------------------------------------------------------
    # Terminal transition
    # ------------------------------------------------------------------

    async def _conclude(self, run: DeploymentRun) -> None:
        outcome = run.final_outcome
        if outcome is None:
            raise RuntimeError(f"run {run.id} concluded without an outcome")

        if self._store is not None:
            self._store.save(run)

        history = [record.to_dict() for record in run.stage_history]
        if outcome.success:
            log.info("deployment_succeeded", history=history, warnings=run.warnings)
        else:
            log.error(
                "deployment_failed",
                stage=outcome.stage.value if outcome.stage else None,
                error_kind=outcome.error_kind,
                reason=outcome.reason,
                backup=run.backup.name if run.backup else None,
                history=history,
            )

        status = NotificationStatus.SUCCESS if outcome.success else NotificationStatus.FAILED
        context = NotificationContext(
            environment=run.request.environment,
            revision=run.request.revision,
            message=self._summarize(run),
            timestamp=run.finished_at or run.started_at,
        )
        try:
            await self._notifier.notify(status, context)
        except Exception:
            log.exception("notification_sink_error")

    @staticmethod
    def _summarize(run: DeploymentRun) -> str:
        outcome = run.final_outcome
        env = run.request.environment.value
        revision = run.request.revision
        backup = run.backup.name if run.backup else "none"

        if outcome is not None and outcome.success:
            message = f"Deployed {revision} to {env}"
            if run.deployed_revision:
                message += f" ({run.deployed_revision[:12]})"
            message += f". Backup: {backup}."
            if run.warnings:
                message += f" {len(run.warnings)} warning(s)."
            return message

        stage = outcome.stage.value if outcome and outcome.stage else "unknown"
        reason = outcome.reason if outcome else ""
        message = f"Deployment of {revision} to {env} failed at {stage}: {reason}."
        if outcome is not None and outcome.error_kind == VerificationFailure.kind:
            message += " The new code is running but is not verified healthy."
        elif run.stopped_services:
            message += f" Services stopped during the run: {', '.join(run.stopped_services)}."
        message += f" Backup available to restore from: {backup}."
        return message

    # ------------------------------------------------------------------
    # Other mutating verbs
    # ------------------------------------------------------------------

    async def backup(
        self, environment: Environment, prune: bool = True
    ) -> tuple[BackupSet, list[str]]:
        """Take a backup set outside a deployment, then apply retention."""
        async with self.exclusive(environment):
            backup_set = await self._backups.create_backup(self._config.volumes)
            pruned: list[str] = []
            if prune:
                try:
                    pruned = self._backups.prune_old(self._config.backup_retention)
                except PruneWarning as exc:
                    pruned = exc.pruned
                    log.warning("backup_prune_incomplete", backup=backup_set.name, error=str(exc))
        return backup_set, pruned

    async def update(self, environment: Environment) -> BackupSet:
        """Back up, pull newer images and recreate services in place."""
        async with self.exclusive(environment):
            backup_set = await self._backups.create_backup(self._config.volumes)
            await self._controller.pull()
            await self._controller.start(self._config.service_names)
        log.info("update_completed", environment=environment.value, backup=backup_set.name)
        return backup_set

    async def restore(
        self,
        environment: Environment,
        backup_name: str,
        volumes: Iterable[str] | None = None,
    ) -> BackupSet:
        """Stop every service, restore volumes from a backup set, start again.

        A failed restore leaves services stopped.
        """
        async with self.exclusive(environment):
            backup_set = self._backups.get_backup(backup_name)
            selected = list(volumes) if volumes is not None else None
            await self._controller.stop(self._config.service_names)
            await self._backups.restore(backup_set, selected)
            await self._controller.start(self._config.service_names)
        log.info(
            "restore_finished",
            environment=environment.value,
            backup=backup_set.name,
            volumes=selected or backup_set.volumes,
        )
        return backup_set

    async def run_exclusive(
        self, environment: Environment, action: Callable[[], Awaitable[object]]
    ) -> object:
        async with self.exclusive(environment):
            return await action()

    def _check_environment(self, environment: Environment) -> None:
        if environment is not self._config.environment:
            raise ValueError(
                f"orchestrator is configured for {self._config.environment.value}, "
                f"not {environment.value}"
            )
