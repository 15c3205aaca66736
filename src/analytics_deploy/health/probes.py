"""Single-shot probes used by the health verifier."""

from __future__ import annotations

import shutil
from typing import Protocol

import httpx
import psutil


async def probe_http(url: str, timeout: float) -> tuple[bool, str]:
    """GET ``url``; any status below 400 counts as reachable."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url)
    except httpx.RequestError as exc:
        return False, f"{url} unreachable: {type(exc).__name__}: {exc}"

    if resp.status_code < 400:
        return True, f"{url} responded {resp.status_code}"
    return False, f"{url} responded {resp.status_code}"


class ResourceProbe(Protocol):
    def disk_usage_percent(self, path: str) -> float: ...

    def memory_usage_percent(self) -> float: ...


class SystemResources:
    """Host resource usage via ``shutil`` and ``psutil``."""

    def disk_usage_percent(self, path: str) -> float:
        disk = shutil.disk_usage(path)
        return round(disk.used / disk.total * 100, 1) if disk.total else 0.0

    def memory_usage_percent(self) -> float:
        return round(float(psutil.virtual_memory().percent), 1)
