"""Shared fixtures for the analytics-deploy test suite."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from analytics_deploy.config import DeploymentConfig
from analytics_deploy.models import Environment, RetryPolicy, ServiceSpec
from analytics_deploy.shell import CommandResult

Response = CommandResult | Callable[[list[str]], CommandResult]


class ScriptedRunner:
    """Stands in for ``CommandRunner``.

    Rules match when their tokens appear as a contiguous run inside the
    argv; the most recently added matching rule wins. Unmatched commands
    succeed with empty output. A rule given a list of responses answers
    with them in order and repeats the last one.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self._rules: list[tuple[tuple[str, ...], list[Response]]] = []

    def on(
        self,
        *tokens: str,
        returncode: int | None = 0,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        self.respond(
            tokens, [CommandResult((), returncode, stdout, stderr, timed_out=timed_out)]
        )

    def respond(self, tokens: Sequence[str], responses: list[Response]) -> None:
        self._rules.append((tuple(tokens), list(responses)))

    def called(self, *tokens: str) -> list[list[str]]:
        return [argv for argv in self.calls if _contains(argv, tokens)]

    async def run(
        self, args: Sequence[str], timeout: float | None = None, cwd: Any = None
    ) -> CommandResult:
        argv = [str(a) for a in args]
        self.calls.append(argv)
        for tokens, responses in reversed(self._rules):
            if not _contains(argv, tokens):
                continue
            response = responses.pop(0) if len(responses) > 1 else responses[0]
            if callable(response):
                return response(argv)
            return CommandResult(
                tuple(argv),
                response.returncode,
                response.stdout,
                response.stderr,
                response.timed_out,
            )
        return CommandResult(tuple(argv), 0, "", "")


def _contains(argv: list[str], tokens: Sequence[str]) -> bool:
    if not tokens:
        return True
    size = len(tokens)
    return any(tuple(argv[i : i + size]) == tuple(tokens) for i in range(len(argv) - size + 1))


@pytest.fixture()
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., DeploymentConfig]:
    """Factory for a ``DeploymentConfig`` rooted in ``tmp_path``."""

    def _make(**overrides: Any) -> DeploymentConfig:
        values: dict[str, Any] = {
            "environment": Environment.PRODUCTION,
            "project_dir": tmp_path / "app",
            "compose_file": "docker-compose.yml",
            "compose_project": None,
            "git_remote": "origin",
            "default_revision": "main",
            "services": (
                ServiceSpec("plausible", readiness_url="http://localhost:80"),
                ServiceSpec("plausible_db"),
                ServiceSpec("plausible_events_db"),
            ),
            "app_service": "plausible",
            "build_services": ("plausible",),
            "migration_command": ("/app/bin/plausible", "eval", "Plausible.Release.migrate()"),
            "volumes": ("postgres-data", "clickhouse-data"),
            "volume_prefix": "analytics",
            "backup_dir": tmp_path / "backups",
            "backup_retention": 5,
            "backup_image": "alpine",
            "health_policy": RetryPolicy(max_attempts=3, interval=0, per_attempt_timeout=1.0),
            "disk_threshold_percent": 90.0,
            "memory_threshold_percent": 90.0,
            "disk_path": "/",
            "scan_logs": True,
            "log_scan_window": "1h",
            "start_grace_seconds": 1.0,
            "status_timeout": 5.0,
            "command_timeout": 10.0,
            "build_timeout": 10.0,
            "backup_timeout": 10.0,
            "exec_timeout": 10.0,
            "webhook_url": None,
            "notify_timeout": 1.0,
            "state_dir": tmp_path / "state",
        }
        values.update(overrides)
        return DeploymentConfig(**values)

    return _make
