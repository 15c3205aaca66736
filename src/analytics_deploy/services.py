"""Control plane for the named compose services.

The pipeline depends only on the ``ServiceController`` protocol;
``ComposeServiceController`` realises it with ``docker compose``.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Protocol

from analytics_deploy.errors import (
    ExecFailure,
    HousekeepingWarning,
    ServiceControlError,
    StartFailure,
)
from analytics_deploy.logging import get_logger
from analytics_deploy.models import ServiceState
from analytics_deploy.shell import CommandResult, CommandRunner

log = get_logger("analytics_deploy.services")

_START_POLL_INTERVAL = 0.5
_DEAD_STATES = frozenset({"exited", "dead"})


class ServiceController(Protocol):
    """Start, stop and query a fixed set of named services."""

    async def is_available(self) -> bool: ...

    async def status(self) -> dict[str, ServiceState]: ...

    async def stop(self, names: Iterable[str]) -> set[str]: ...

    async def start(self, names: Iterable[str]) -> None: ...

    async def restart(self, names: Iterable[str]) -> None: ...

    async def pull(self) -> None: ...

    async def build(self, names: Iterable[str], no_cache: bool = True) -> None: ...

    async def exec_in_service(self, name: str, command: Sequence[str]) -> str: ...

    async def logs(
        self, names: Iterable[str] = (), tail: int | None = None, since: str | None = None
    ) -> str: ...

    async def prune_images(self) -> None: ...

    async def prune_volumes(self) -> None: ...


def _parse_ps_output(output: str) -> list[dict[str, Any]]:
    """Parse ``compose ps --format json``.

    Compose v2.21+ prints one JSON object per line; older releases print a
    single JSON array.
    """
    text = output.strip()
    if not text:
        return []
    if text.startswith("["):
        data = json.loads(text)
        return [row for row in data if isinstance(row, dict)]
    rows = []
    for line in text.splitlines():
        line = line.strip()
        if line:
            row = json.loads(line)
            if isinstance(row, dict):
                rows.append(row)
    return rows


class ComposeServiceController:
    """``ServiceController`` backed by a docker compose project."""

    def __init__(
        self,
        project_dir: Path | str,
        services: Sequence[str],
        runner: CommandRunner | None = None,
        compose_file: str = "docker-compose.yml",
        project_name: str | None = None,
        start_grace: float = 5.0,
        status_timeout: float = 10.0,
        command_timeout: float = 180.0,
        build_timeout: float = 1800.0,
        exec_timeout: float = 600.0,
    ) -> None:
        self._project_dir = Path(project_dir)
        self._services = list(services)
        self._runner = runner or CommandRunner(cwd=self._project_dir)
        self._compose_file = compose_file
        self._project_name = project_name
        self._start_grace = start_grace
        self._status_timeout = status_timeout
        self._command_timeout = command_timeout
        self._build_timeout = build_timeout
        self._exec_timeout = exec_timeout

    @property
    def services(self) -> list[str]:
        return list(self._services)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def is_available(self) -> bool:
        """Check that the container runtime answers."""
        result = await self._runner.run(["docker", "info"], timeout=self._status_timeout)
        return result.ok

    async def status(self) -> dict[str, ServiceState]:
        """Return the state of every configured service.

        Fails closed: if the runtime does not answer in time every service
        is reported ``absent``.
        """
        raw = await self._container_states()
        states = {name: ServiceState.ABSENT for name in self._services}
        for name, state in raw.items():
            states[name] = ServiceState.RUNNING if state == "running" else ServiceState.EXITED
        return states

    async def logs(
        self, names: Iterable[str] = (), tail: int | None = None, since: str | None = None
    ) -> str:
        args = ["logs", "--no-color"]
        if tail is not None:
            args += ["--tail", str(tail)]
        if since:
            args += ["--since", since]
        args += list(names)
        result = await self._compose(*args, timeout=self._command_timeout)
        if not result.ok:
            raise ServiceControlError("logs", list(names), result.describe_failure())
        return result.stdout + result.stderr

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def stop(self, names: Iterable[str]) -> set[str]:
        """Stop and remove services. Idempotent.

        Returns the services that were running before the call.
        """
        targets = list(names)
        if not targets:
            return set()
        before = await self.status()
        was_running = {n for n in targets if before.get(n) is ServiceState.RUNNING}

        result = await self._compose("stop", *targets, timeout=self._command_timeout)
        if not result.ok:
            raise ServiceControlError("stop", targets, result.describe_failure())
        result = await self._compose("rm", "-f", *targets, timeout=self._command_timeout)
        if not result.ok:
            raise ServiceControlError("remove", targets, result.describe_failure())

        log.info("services_stopped", services=sorted(was_running), requested=targets)
        return was_running

    async def start(self, names: Iterable[str]) -> None:
        """Start services and wait for their containers to be running.

        Only checks that a process exists; readiness is the health verifier's job.
        """
        targets = list(names)
        if not targets:
            return
        result = await self._compose(
            "up", "-d", "--no-deps", *targets, timeout=self._command_timeout
        )
        if not result.ok:
            raise StartFailure(targets[0], result.describe_failure())
        await self._await_running(targets)
        log.info("services_started", services=targets)

    async def restart(self, names: Iterable[str]) -> None:
        targets = list(names)
        result = await self._compose("restart", *targets, timeout=self._command_timeout)
        if not result.ok:
            raise ServiceControlError("restart", targets, result.describe_failure())
        await self._await_running(targets or self._services)

    async def pull(self) -> None:
        result = await self._compose("pull", "--ignore-buildable", timeout=self._build_timeout)
        if not result.ok:
            raise ServiceControlError("pull", [], result.describe_failure())

    async def build(self, names: Iterable[str], no_cache: bool = True) -> None:
        targets = list(names)
        args = ["build"]
        if no_cache:
            args.append("--no-cache")
        result = await self._compose(*args, *targets, timeout=self._build_timeout)
        if not result.ok:
            raise ServiceControlError("build", targets, result.describe_failure())
        log.info("services_built", services=targets, no_cache=no_cache)

    async def exec_in_service(self, name: str, command: Sequence[str]) -> str:
        """Run a one-shot command inside a running service; return its stdout."""
        result = await self._compose("exec", "-T", name, *command, timeout=self._exec_timeout)
        if not result.ok:
            raise ExecFailure(name, result.returncode, result.output)
        return result.stdout

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def prune_images(self) -> None:
        result = await self._runner.run(
            ["docker", "image", "prune", "-f"], timeout=self._command_timeout
        )
        if not result.ok:
            raise HousekeepingWarning(f"image prune failed: {result.describe_failure()}")

    async def prune_volumes(self) -> None:
        result = await self._runner.run(
            ["docker", "volume", "prune", "-f"], timeout=self._command_timeout
        )
        if not result.ok:
            raise HousekeepingWarning(f"volume prune failed: {result.describe_failure()}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _compose_args(self) -> list[str]:
        args = ["docker", "compose", "-f", self._compose_file]
        if self._project_name:
            args += ["-p", self._project_name]
        return args

    async def _compose(self, *args: str, timeout: float) -> CommandResult:
        return await self._runner.run(
            [*self._compose_args(), *args], timeout=timeout, cwd=self._project_dir
        )

    async def _container_states(self) -> dict[str, str]:
        """Map configured service names to the raw compose container state."""
        result = await self._compose("ps", "-a", "--format", "json", timeout=self._status_timeout)
        if not result.ok:
            log.warning("service_status_unavailable", reason=result.describe_failure())
            return {}
        try:
            rows = _parse_ps_output(result.stdout)
        except json.JSONDecodeError as exc:
            log.warning("service_status_unparseable", error=str(exc))
            return {}

        states: dict[str, str] = {}
        for row in rows:
            name = row.get("Service")
            if name not in self._services:
                continue
            # A scaled service counts as running when any replica runs
            if states.get(name) != "running":
                states[name] = str(row.get("State", "")).lower()
        return states

    async def _await_running(self, targets: list[str]) -> None:
        deadline = time.monotonic() + self._start_grace
        while True:
            states = await self._container_states()
            exited = [n for n in targets if states.get(n) in _DEAD_STATES]
            if exited:
                raise StartFailure(exited[0], "process exited immediately after start")
            pending = [n for n in targets if states.get(n) != "running"]
            if not pending:
                return
            if time.monotonic() >= deadline:
                raise StartFailure(
                    pending[0], f"not running within {self._start_grace:g}s grace window"
                )
            await asyncio.sleep(_START_POLL_INTERVAL)
