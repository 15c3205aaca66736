"""Post-deploy health verification.

Each check moves ``PENDING -> PASS`` or ``PENDING -> RETRYING -> (PASS |
EXHAUSTED)``. A readiness check for a service that never came up stays
``PENDING``. Service and readiness checks are retried on a fixed interval;
resource checks run once. ``verify`` always returns a complete
``HealthReport`` and leaves the pass/fail decision to the caller.

Severity:

- required service checks fail the report, optional ones only warn
- disk over threshold fails
- memory over threshold warns
- errors in recent service logs warn
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Callable, Sequence

from analytics_deploy.health.probes import ResourceProbe, SystemResources, probe_http
from analytics_deploy.logging import get_logger
from analytics_deploy.models import (
    CheckOutcome,
    CheckResult,
    CheckState,
    HealthReport,
    RetryPolicy,
    ServiceSpec,
    ServiceState,
)
from analytics_deploy.retry import Attempt, Sleep, retry_until
from analytics_deploy.services import ServiceController

log = get_logger("analytics_deploy.health.verifier")

HttpProbe = Callable[[str, float], Awaitable[tuple[bool, str]]]

_LOG_ERROR_RE = re.compile(r"error|exception|fatal", re.IGNORECASE)


class HealthVerifier:
    def __init__(
        self,
        controller: ServiceController,
        http_probe: HttpProbe = probe_http,
        resources: ResourceProbe | None = None,
        disk_threshold: float = 90.0,
        memory_threshold: float = 90.0,
        disk_path: str = "/",
        scan_logs: bool = True,
        log_window: str = "1h",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._controller = controller
        self._http_probe = http_probe
        self._resources = resources or SystemResources()
        self._disk_threshold = disk_threshold
        self._memory_threshold = memory_threshold
        self._disk_path = disk_path
        self._scan_logs = scan_logs
        self._log_window = log_window
        self._sleep = sleep

    async def verify(
        self, specs: Sequence[ServiceSpec], policy: RetryPolicy | None = None
    ) -> HealthReport:
        policy = policy or RetryPolicy()
        start = time.monotonic()
        report = HealthReport()

        for spec in specs:
            service_check = await self._check_service(spec, policy)
            report.checks.append(service_check)
            service_up = service_check.state is CheckState.PASS
            if spec.readiness_url:
                report.checks.append(await self._check_url(spec, policy, service_up))
            if spec.readiness_command:
                report.checks.append(await self._check_command(spec, policy, service_up))

        report.checks.append(self._check_disk())
        report.checks.append(self._check_memory())
        if self._scan_logs:
            report.checks.append(await self._check_logs(specs))

        report.elapsed_seconds = round(time.monotonic() - start, 3)
        log.info(
            "health_verified",
            overall=report.overall,
            failures=[c.name for c in report.failures],
            warnings=[c.name for c in report.warnings],
            elapsed_seconds=report.elapsed_seconds,
        )
        return report

    # ------------------------------------------------------------------
    # Retried checks
    # ------------------------------------------------------------------

    async def _check_service(self, spec: ServiceSpec, policy: RetryPolicy) -> CheckResult:
        async def attempt() -> tuple[bool, str]:
            states = await self._controller.status()
            state = states.get(spec.name, ServiceState.ABSENT)
            return state is ServiceState.RUNNING, f"{spec.name} is {state.value}"

        return await self._retried(f"service:{spec.name}", spec.required, attempt, policy)

    async def _check_url(
        self, spec: ServiceSpec, policy: RetryPolicy, service_up: bool
    ) -> CheckResult:
        name = f"http:{spec.name}"
        if not service_up:
            return self._not_attempted(name, spec.required)
        url = spec.readiness_url or ""

        async def attempt() -> tuple[bool, str]:
            return await self._http_probe(url, policy.per_attempt_timeout)

        return await self._retried(name, spec.required, attempt, policy)

    async def _check_command(
        self, spec: ServiceSpec, policy: RetryPolicy, service_up: bool
    ) -> CheckResult:
        name = f"exec:{spec.name}"
        if not service_up:
            return self._not_attempted(name, spec.required)
        command = list(spec.readiness_command or ())

        async def attempt() -> tuple[bool, str]:
            await self._controller.exec_in_service(spec.name, command)
            return True, f"{command[0]} succeeded"

        return await self._retried(name, spec.required, attempt, policy)

    async def _retried(
        self, name: str, required: bool, attempt: Attempt, policy: RetryPolicy
    ) -> CheckResult:
        def on_attempt(number: int, state: CheckState, detail: str) -> None:
            if state is not CheckState.PASS:
                log.info(
                    "health_check_attempt_failed",
                    check=name,
                    state=state.value,
                    attempt=number,
                    max_attempts=policy.max_attempts,
                    detail=detail,
                )

        result = await retry_until(attempt, policy, sleep=self._sleep, on_attempt=on_attempt)
        if result.succeeded:
            outcome = CheckOutcome.PASS
        else:
            outcome = CheckOutcome.FAIL if required else CheckOutcome.WARN
        return CheckResult(
            name=name,
            state=result.state,
            outcome=outcome,
            required=required,
            attempts=result.attempts,
            detail=result.detail,
            elapsed_seconds=result.elapsed_seconds,
        )

    @staticmethod
    def _not_attempted(name: str, required: bool) -> CheckResult:
        return CheckResult(
            name=name,
            state=CheckState.PENDING,
            outcome=CheckOutcome.FAIL if required else CheckOutcome.WARN,
            required=required,
            attempts=0,
            detail="not attempted: service is not running",
        )

    # ------------------------------------------------------------------
    # Single-shot checks
    # ------------------------------------------------------------------

    def _check_disk(self) -> CheckResult:
        try:
            usage = self._resources.disk_usage_percent(self._disk_path)
        except Exception as exc:
            # Unknown disk usage is treated as unsafe
            return CheckResult(
                "resource:disk",
                CheckState.EXHAUSTED,
                CheckOutcome.FAIL,
                required=True,
                attempts=1,
                detail=f"disk usage unavailable: {exc}",
            )
        ok = usage <= self._disk_threshold
        return CheckResult(
            "resource:disk",
            CheckState.PASS if ok else CheckState.EXHAUSTED,
            CheckOutcome.PASS if ok else CheckOutcome.FAIL,
            required=True,
            attempts=1,
            detail=f"disk usage {usage:g}% (threshold {self._disk_threshold:g}%)",
        )

    def _check_memory(self) -> CheckResult:
        try:
            usage = self._resources.memory_usage_percent()
        except Exception as exc:
            return CheckResult(
                "resource:memory",
                CheckState.EXHAUSTED,
                CheckOutcome.WARN,
                required=False,
                attempts=1,
                detail=f"memory usage unavailable: {exc}",
            )
        ok = usage <= self._memory_threshold
        return CheckResult(
            "resource:memory",
            CheckState.PASS if ok else CheckState.EXHAUSTED,
            CheckOutcome.PASS if ok else CheckOutcome.WARN,
            required=False,
            attempts=1,
            detail=f"memory usage {usage:g}% (threshold {self._memory_threshold:g}%)",
        )

    async def _check_logs(self, specs: Sequence[ServiceSpec]) -> CheckResult:
        names = [spec.name for spec in specs]
        try:
            output = await self._controller.logs(names, since=self._log_window)
        except Exception as exc:
            return CheckResult(
                "logs:errors",
                CheckState.EXHAUSTED,
                CheckOutcome.WARN,
                required=False,
                attempts=1,
                detail=f"log scan unavailable: {exc}",
            )
        count = sum(1 for line in output.splitlines() if _LOG_ERROR_RE.search(line))
        ok = count == 0
        return CheckResult(
            "logs:errors",
            CheckState.PASS if ok else CheckState.EXHAUSTED,
            CheckOutcome.PASS if ok else CheckOutcome.WARN,
            required=False,
            attempts=1,
            detail=f"{count} error line(s) in the last {self._log_window}",
        )
