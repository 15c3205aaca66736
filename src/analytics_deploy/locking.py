"""One mutating operation per environment at a time.

Inside a process an ``asyncio.Lock`` per environment rejects a second
request immediately. Across processes a lock file holding the owner's pid
does the same; a lock left behind by a dead process is taken over.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import AsyncIterator
from pathlib import Path

from analytics_deploy.errors import DeploymentInProgressError
from analytics_deploy.logging import get_logger
from analytics_deploy.models import Environment

log = get_logger("analytics_deploy.locking")


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RunLock:
    def __init__(self, lock_dir: Path | str | None = None) -> None:
        self._lock_dir = Path(lock_dir) if lock_dir is not None else None
        self._locks: dict[Environment, asyncio.Lock] = {}

    def is_busy(self, environment: Environment) -> bool:
        lock = self._locks.get(environment)
        return lock is not None and lock.locked()

    @contextlib.asynccontextmanager
    async def hold(self, environment: Environment) -> AsyncIterator[None]:
        """Hold the environment for the duration of the block.

        Raises ``DeploymentInProgressError`` instead of waiting.
        """
        lock = self._locks.setdefault(environment, asyncio.Lock())
        if lock.locked():
            raise DeploymentInProgressError(environment.value)

        async with lock:
            lock_file = self._claim_file(environment)
            try:
                yield
            finally:
                if lock_file is not None:
                    with contextlib.suppress(FileNotFoundError):
                        lock_file.unlink()

    def _claim_file(self, environment: Environment) -> Path | None:
        if self._lock_dir is None:
            return None
        self._lock_dir.mkdir(parents=True, exist_ok=True)
        path = self._lock_dir / f"deploy-{environment.value}.lock"

        for _ in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self._read_owner(path)
                if owner is not None and _pid_alive(owner):
                    raise DeploymentInProgressError(environment.value) from None
                log.warning("stale_lock_removed", path=str(path), pid=owner)
                with contextlib.suppress(FileNotFoundError):
                    path.unlink()
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(str(os.getpid()))
            return path

        raise DeploymentInProgressError(environment.value)

    @staticmethod
    def _read_owner(path: Path) -> int | None:
        try:
            return int(path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None
