"""HealthCheck polling: bounded wait for an instance to report healthy.

Outcomes:
  healthy signal                        -> return immediately
  exited signal                         -> InstanceExitedError immediately
  ``crash_loop_threshold`` consecutive
  restarting signals                    -> InstanceCrashLoopError immediately
  anything else (incl. provider errors) -> sleep and poll again
  deadline passed                       -> DeployTimeoutError ("timed out")
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..errors import (
    DeployTimeoutError,
    InstanceCrashLoopError,
    InstanceExitedError,
    ProviderError,
)
from ..providers.base import ComputeProvider, InstanceHandle, InstanceHealth, normalize_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HealthCheckPolicy:
    poll_interval_seconds: float = 5.0
    timeout_seconds: float = 120.0
    crash_loop_threshold: int = 2


@dataclass(frozen=True, slots=True)
class HealthCheckResult:
    health: InstanceHealth
    polls: int
    elapsed_seconds: float


async def wait_until_healthy(
    provider: ComputeProvider,
    handle: InstanceHandle,
    *,
    policy: HealthCheckPolicy = HealthCheckPolicy(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> HealthCheckResult:
    started = clock()
    deadline = started + policy.timeout_seconds
    polls = 0
    consecutive_restarts = 0
    last_raw = ''

    while True:
        polls += 1
        try:
            raw = await provider.get_status(handle)
        except ProviderError as exc:
            # Transient: the instance may not be reachable through the API yet.
            logger.debug(
                'Status poll %d for %s failed: %s', polls, handle.name, exc.message,
                extra={'instance_name': handle.name},
            )
            raw = ''
        health = normalize_status(raw)
        last_raw = health.raw

        if health.is_healthy:
            return HealthCheckResult(
                health=health, polls=polls, elapsed_seconds=clock() - started,
            )

        if health.is_exited:
            raise InstanceExitedError(
                f'instance exited before becoming healthy (status: {health.raw})',
                provider=provider.name,
                operation='health_check',
                details={'status': health.raw, 'polls': polls},
            )

        if health.is_restarting:
            consecutive_restarts += 1
            if consecutive_restarts >= policy.crash_loop_threshold:
                raise InstanceCrashLoopError(
                    f'instance is crash-looping ({consecutive_restarts} consecutive '
                    f'restarting polls)',
                    provider=provider.name,
                    operation='health_check',
                    details={'status': health.raw, 'polls': polls},
                )
        else:
            consecutive_restarts = 0

        now = clock()
        if now >= deadline:
            break
        await sleep(min(policy.poll_interval_seconds, deadline - now))

    raise DeployTimeoutError(
        f'health check timed out after {policy.timeout_seconds:g}s '
        f'(last status: {last_raw or "unknown"})',
        details={'polls': polls, 'last_status': last_raw},
    )
