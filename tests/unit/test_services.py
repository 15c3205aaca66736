"""Tests for ComposeServiceController against a scripted command runner."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from analytics_deploy.errors import (
    ExecFailure,
    HousekeepingWarning,
    ServiceControlError,
    StartFailure,
)
from analytics_deploy.models import ServiceState
from analytics_deploy.services import ComposeServiceController, _parse_ps_output
from analytics_deploy.shell import CommandResult

SERVICES = ["plausible", "plausible_db", "plausible_events_db"]


def _ps(**states: str) -> str:
    rows = [{"Service": name, "State": state} for name, state in states.items()]
    return "\n".join(json.dumps(row) for row in rows)


def _ok(stdout: str) -> CommandResult:
    return CommandResult((), 0, stdout, "")


def _controller(tmp_path: Path, runner, **kwargs) -> ComposeServiceController:
    return ComposeServiceController(
        project_dir=tmp_path,
        services=SERVICES,
        runner=runner,
        start_grace=kwargs.pop("start_grace", 0.0),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# ps parsing / status
# ---------------------------------------------------------------------------


class TestParsePsOutput:
    def test_ndjson(self) -> None:
        rows = _parse_ps_output(_ps(plausible="running", plausible_db="exited"))
        assert [r["Service"] for r in rows] == ["plausible", "plausible_db"]

    def test_json_array(self) -> None:
        output = json.dumps([{"Service": "plausible", "State": "running"}])
        assert _parse_ps_output(output) == [{"Service": "plausible", "State": "running"}]

    def test_empty(self) -> None:
        assert _parse_ps_output("  \n") == []


class TestStatus:
    @pytest.mark.asyncio
    async def test_maps_every_configured_service(self, tmp_path: Path, runner) -> None:
        runner.on("ps", stdout=_ps(plausible="running", plausible_db="exited", other="running"))
        states = await _controller(tmp_path, runner).status()

        assert states == {
            "plausible": ServiceState.RUNNING,
            "plausible_db": ServiceState.EXITED,
            "plausible_events_db": ServiceState.ABSENT,
        }

    @pytest.mark.asyncio
    async def test_timeout_reports_all_absent(self, tmp_path: Path, runner) -> None:
        runner.on("ps", returncode=None, timed_out=True)
        states = await _controller(tmp_path, runner).status()
        assert set(states.values()) == {ServiceState.ABSENT}

    @pytest.mark.asyncio
    async def test_uses_compose_file_and_project(self, tmp_path: Path, runner) -> None:
        controller = _controller(
            tmp_path, runner, compose_file="compose.prod.yml", project_name="analytics"
        )
        await controller.status()
        assert runner.calls[0][:6] == [
            "docker",
            "compose",
            "-f",
            "compose.prod.yml",
            "-p",
            "analytics",
        ]


# ---------------------------------------------------------------------------
# stop / start
# ---------------------------------------------------------------------------


class TestStop:
    @pytest.mark.asyncio
    async def test_returns_previously_running(self, tmp_path: Path, runner) -> None:
        runner.on("ps", stdout=_ps(plausible="running", plausible_db="exited"))
        stopped = await _controller(tmp_path, runner).stop(SERVICES)

        assert stopped == {"plausible"}
        assert runner.called("stop", *SERVICES)
        assert runner.called("rm", "-f", *SERVICES)

    @pytest.mark.asyncio
    async def test_stop_twice_is_idempotent(self, tmp_path: Path, runner) -> None:
        runner.respond(
            ["ps"],
            [
                _ok(_ps(plausible="running", plausible_db="running")),
                _ok(""),
            ],
        )
        controller = _controller(tmp_path, runner)

        first = await controller.stop(SERVICES)
        second = await controller.stop(SERVICES)
        states = await controller.status()

        assert first == {"plausible", "plausible_db"}
        assert second == set()
        assert set(states.values()) == {ServiceState.ABSENT}

    @pytest.mark.asyncio
    async def test_failure_raises_service_control_error(self, tmp_path: Path, runner) -> None:
        runner.on("stop", returncode=1, stderr="daemon gone")
        with pytest.raises(ServiceControlError, match="daemon gone"):
            await _controller(tmp_path, runner).stop(["plausible"])


class TestStart:
    @pytest.mark.asyncio
    async def test_waits_until_running(self, tmp_path: Path, runner) -> None:
        runner.respond(
            ["ps"],
            [
                _ok(_ps(plausible="created")),
                _ok(_ps(plausible="running")),
            ],
        )
        controller = _controller(tmp_path, runner, start_grace=5.0)
        await controller.start(["plausible"])

        assert runner.called("up", "-d", "--no-deps", "plausible")
        assert len(runner.called("ps")) == 2

    @pytest.mark.asyncio
    async def test_exited_process_is_start_failure(self, tmp_path: Path, runner) -> None:
        runner.on("ps", stdout=_ps(plausible="exited"))
        with pytest.raises(StartFailure) as exc_info:
            await _controller(tmp_path, runner, start_grace=5.0).start(["plausible"])
        assert exc_info.value.service == "plausible"
        assert "exited immediately" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_not_running_within_grace(self, tmp_path: Path, runner) -> None:
        runner.on("ps", stdout=_ps(plausible="created"))
        with pytest.raises(StartFailure, match="grace window"):
            await _controller(tmp_path, runner, start_grace=0.0).start(["plausible"])

    @pytest.mark.asyncio
    async def test_up_failure(self, tmp_path: Path, runner) -> None:
        runner.on("up", returncode=1, stderr="image not found")
        with pytest.raises(StartFailure, match="image not found"):
            await _controller(tmp_path, runner).start(["plausible", "plausible_db"])


# ---------------------------------------------------------------------------
# exec / build / housekeeping
# ---------------------------------------------------------------------------


class TestExecAndBuild:
    @pytest.mark.asyncio
    async def test_exec_returns_stdout(self, tmp_path: Path, runner) -> None:
        runner.on("exec", stdout="migrated\n")
        output = await _controller(tmp_path, runner).exec_in_service(
            "plausible", ["/app/bin/plausible", "eval", "Plausible.Release.migrate()"]
        )
        assert output == "migrated\n"
        assert runner.called("exec", "-T", "plausible", "/app/bin/plausible")

    @pytest.mark.asyncio
    async def test_exec_failure_carries_exit_code(self, tmp_path: Path, runner) -> None:
        runner.on("exec", returncode=1, stderr="** (Postgrex.Error)")
        with pytest.raises(ExecFailure) as exc_info:
            await _controller(tmp_path, runner).exec_in_service("plausible", ["false"])
        assert exc_info.value.exit_code == 1
        assert "Postgrex" in exc_info.value.output

    @pytest.mark.asyncio
    async def test_build_without_cache(self, tmp_path: Path, runner) -> None:
        await _controller(tmp_path, runner).build(["plausible"])
        assert runner.called("build", "--no-cache", "plausible")

    @pytest.mark.asyncio
    async def test_pull_failure(self, tmp_path: Path, runner) -> None:
        runner.on("pull", returncode=1, stderr="rate limited")
        with pytest.raises(ServiceControlError, match="pull failed"):
            await _controller(tmp_path, runner).pull()

    @pytest.mark.asyncio
    async def test_prune_failure_is_housekeeping_warning(self, tmp_path: Path, runner) -> None:
        runner.on("image", "prune", returncode=1, stderr="busy")
        with pytest.raises(HousekeepingWarning):
            await _controller(tmp_path, runner).prune_images()

    @pytest.mark.asyncio
    async def test_is_available(self, tmp_path: Path, runner) -> None:
        runner.on("docker", "info", returncode=1)
        assert await _controller(tmp_path, runner).is_available() is False

    @pytest.mark.asyncio
    async def test_logs_arguments(self, tmp_path: Path, runner) -> None:
        runner.on("logs", stdout="line\n")
        output = await _controller(tmp_path, runner).logs(["plausible"], tail=50, since="1h")
        assert output == "line\n"
        assert runner.called("logs", "--no-color", "--tail", "50", "--since", "1h", "plausible")
