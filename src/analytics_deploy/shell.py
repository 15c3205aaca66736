"""Async subprocess execution with per-call timeouts.

All external commands (git, docker) go through ``CommandRunner`` so the
components above it can be tested by patching a single coroutine.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from analytics_deploy.logging import get_logger

log = get_logger("analytics_deploy.shell")

DEFAULT_TIMEOUT = 120.0


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command invocation."""

    args: tuple[str, ...]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        return shlex.join(self.args)

    @property
    def output(self) -> str:
        """Combined stdout and stderr, for error reporting."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)

    def describe_failure(self) -> str:
        if self.timed_out:
            return f"timed out: {self.command_line}"
        detail = self.stderr.strip() or self.stdout.strip() or "no output"
        return f"exit code {self.returncode}: {detail[:500]}"


class CommandRunner:
    """Runs argv lists without a shell."""

    def __init__(self, cwd: Path | str | None = None, default_timeout: float = DEFAULT_TIMEOUT):
        self._cwd = str(cwd) if cwd is not None else None
        self._default_timeout = default_timeout

    async def run(
        self,
        args: Sequence[str],
        timeout: float | None = None,
        cwd: Path | str | None = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Never raises for command failures: a non-zero exit, a timeout or a
        missing binary all come back as a ``CommandResult`` that is not ``ok``.
        """
        argv = tuple(str(a) for a in args)
        limit = timeout if timeout is not None else self._default_timeout
        workdir = str(cwd) if cwd is not None else self._cwd
        log.debug("command_start", command=shlex.join(argv), cwd=workdir, timeout=limit)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
            )
        except OSError as exc:
            log.warning("command_launch_failed", command=shlex.join(argv), error=str(exc))
            return CommandResult(argv, 127, "", str(exc))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            log.warning("command_timed_out", command=shlex.join(argv), timeout=limit)
            return CommandResult(argv, None, "", "", timed_out=True)
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await asyncio.shield(proc.wait())
            log.warning("command_cancelled", command=shlex.join(argv))
            raise

        result = CommandResult(
            argv,
            proc.returncode,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
        if not result.ok:
            log.warning(
                "command_failed",
                command=result.command_line,
                returncode=result.returncode,
                stderr=result.stderr[:500],
            )
        return result
