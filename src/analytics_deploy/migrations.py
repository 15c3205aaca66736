"""Run the application's own data migrations inside its container."""

from __future__ import annotations

from collections.abc import Sequence

from analytics_deploy.errors import ExecFailure, MigrationFailure
from analytics_deploy.logging import get_logger
from analytics_deploy.models import ServiceState
from analytics_deploy.services import ServiceController

log = get_logger("analytics_deploy.migrations")

DEFAULT_MIGRATION_COMMAND: tuple[str, ...] = (
    "/app/bin/plausible",
    "eval",
    "Plausible.Release.migrate()",
)


class MigrationRunner:
    def __init__(
        self,
        controller: ServiceController,
        service: str = "plausible",
        command: Sequence[str] = DEFAULT_MIGRATION_COMMAND,
    ) -> None:
        self._controller = controller
        self._service = service
        self._command = tuple(command)

    async def migrate(self) -> str:
        """Run migrations; returns the migration output.

        The target service must already be running. Any failure is fatal
        for the run: skipping a failed migration is never safe.
        """
        states = await self._controller.status()
        state = states.get(self._service, ServiceState.ABSENT)
        if state is not ServiceState.RUNNING:
            raise MigrationFailure(None, f"service {self._service!r} is {state.value}, not running")

        log.info("migration_started", service=self._service, command=list(self._command))
        try:
            output = await self._controller.exec_in_service(self._service, self._command)
        except ExecFailure as exc:
            raise MigrationFailure(exc.exit_code, exc.output) from exc
        log.info("migration_completed", service=self._service)
        return output
