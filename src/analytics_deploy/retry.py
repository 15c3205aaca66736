"""Bounded, fixed-interval retry.

Deployments are watched by people, so the cadence is predictable: the same
pause between every attempt, no backoff, no jitter.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from analytics_deploy.logging import get_logger
from analytics_deploy.models import CheckState, RetryPolicy

log = get_logger("analytics_deploy.retry")

Attempt = Callable[[], Awaitable[tuple[bool, str]]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryResult:
    state: CheckState
    attempts: int
    detail: str
    elapsed_seconds: float

    @property
    def succeeded(self) -> bool:
        return self.state is CheckState.PASS


async def retry_until(
    attempt: Attempt,
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    on_attempt: Callable[[int, CheckState, str], None] | None = None,
) -> RetryResult:
    """Call ``attempt`` until it reports success or ``max_attempts`` is reached.

    ``attempt`` returns ``(ok, detail)``. Each call is bounded by
    ``policy.per_attempt_timeout``; a timeout or an exception counts as a
    failed attempt. There is no pause after the final attempt.

    ``on_attempt(number, state, detail)`` sees the state each attempt leaves
    the check in: ``PASS``, ``RETRYING`` while attempts remain, then
    ``EXHAUSTED``.
    """
    start = time.monotonic()
    detail = ""

    for number in range(1, policy.max_attempts + 1):
        try:
            ok, detail = await asyncio.wait_for(attempt(), timeout=policy.per_attempt_timeout)
        except TimeoutError:
            ok, detail = False, f"attempt timed out after {policy.per_attempt_timeout:g}s"
        except Exception as exc:
            ok, detail = False, f"{type(exc).__name__}: {exc}"

        if ok:
            state = CheckState.PASS
        elif number < policy.max_attempts:
            state = CheckState.RETRYING
        else:
            state = CheckState.EXHAUSTED
        if on_attempt is not None:
            on_attempt(number, state, detail)

        if state is CheckState.PASS:
            return RetryResult(state, number, detail, round(time.monotonic() - start, 3))

        if state is CheckState.RETRYING:
            await sleep(policy.interval)

    log.debug("retry_exhausted", attempts=policy.max_attempts, detail=detail)
    return RetryResult(
        CheckState.EXHAUSTED, policy.max_attempts, detail, round(time.monotonic() - start, 3)
    )
