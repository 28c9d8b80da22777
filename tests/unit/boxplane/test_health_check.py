"""Health-check polling tests (scripted statuses, fake clock)."""

from __future__ import annotations

import pytest

from boxplane.app.deploy.health import HealthCheckPolicy, wait_until_healthy
from boxplane.app.errors import (
    DeployTimeoutError,
    InstanceCrashLoopError,
    InstanceExitedError,
    ProviderError,
)
from boxplane.app.providers.base import InstanceHandle, normalize_status
from boxplane.app.providers.inmemory import InMemoryComputeProvider

HANDLE = InstanceHandle(provider='inmemory', name='box-abcd', url='http://box-abcd')


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay


async def _wait(provider, clock, **policy):
    return await wait_until_healthy(
        provider,
        HANDLE,
        policy=HealthCheckPolicy(**policy),
        sleep=clock.sleep,
        clock=clock,
    )


class TestNormalizeStatus:
    @pytest.mark.parametrize('raw', ['running', 'Running', 'running:healthy', 'ready'])
    def test_healthy(self, raw):
        assert normalize_status(raw).is_healthy

    def test_restarting(self):
        health = normalize_status('restarting:unhealthy')
        assert health.is_restarting and not health.is_healthy

    @pytest.mark.parametrize('raw', ['exited', 'exited:unhealthy', 'dead'])
    def test_exited(self, raw):
        assert normalize_status(raw).is_exited

    def test_unknown_and_empty(self):
        for raw in (None, '', 'starting:starting', 'unknown'):
            health = normalize_status(raw)
            assert not (health.is_healthy or health.is_exited or health.is_restarting)


class TestWaitUntilHealthy:
    @pytest.mark.asyncio
    async def test_healthy_on_first_poll(self):
        clock = FakeClock()
        result = await _wait(InMemoryComputeProvider(statuses=['running']), clock)
        assert result.polls == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_polls_until_healthy(self):
        clock = FakeClock()
        provider = InMemoryComputeProvider(statuses=['starting', 'starting', 'running:healthy'])
        result = await _wait(provider, clock, poll_interval_seconds=5)
        assert result.polls == 3
        assert result.health.raw == 'running:healthy'
        assert clock.sleeps == [5, 5]
        assert result.elapsed_seconds == 10

    @pytest.mark.asyncio
    async def test_exited_fails_fast(self):
        clock = FakeClock()
        provider = InMemoryComputeProvider(statuses=['starting', 'exited'])
        with pytest.raises(InstanceExitedError) as exc_info:
            await _wait(provider, clock)
        assert exc_info.value.retryable is False
        assert clock.now == 5

    @pytest.mark.asyncio
    async def test_crash_loop_after_threshold(self):
        clock = FakeClock()
        provider = InMemoryComputeProvider(statuses=['restarting', 'restarting'])
        with pytest.raises(InstanceCrashLoopError):
            await _wait(provider, clock, crash_loop_threshold=2)

    @pytest.mark.asyncio
    async def test_non_consecutive_restarts_reset(self):
        clock = FakeClock()
        provider = InMemoryComputeProvider(
            statuses=['restarting', 'starting', 'restarting', 'running'],
        )
        result = await _wait(provider, clock, crash_loop_threshold=2)
        assert result.polls == 4

    @pytest.mark.asyncio
    async def test_timeout_mentions_timed_out(self):
        clock = FakeClock()
        provider = InMemoryComputeProvider(statuses=['starting'])
        with pytest.raises(DeployTimeoutError, match='timed out') as exc_info:
            await _wait(provider, clock, poll_interval_seconds=5, timeout_seconds=12)
        # Polls at 0, 5, 10, 12.
        assert exc_info.value.details['polls'] == 4
        assert clock.sleeps == [5, 5, 2]
        assert exc_info.value.details['last_status'] == 'starting'

    @pytest.mark.asyncio
    async def test_provider_errors_are_transient(self):
        clock = FakeClock()

        class FlakyProvider(InMemoryComputeProvider):
            def __init__(self):
                super().__init__()
                self.failures = 2

            async def get_status(self, handle):
                if self.failures:
                    self.failures -= 1
                    raise ProviderError('not reachable yet')
                return 'running'

        result = await _wait(FlakyProvider(), clock)
        assert result.polls == 3
