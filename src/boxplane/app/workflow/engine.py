"""In-process workflow engine: DAG flows, retries, concurrency, repeatables.

``LocalWorkflowEngine`` runs every job as an asyncio task:

  - a node starts only after all of its children finished;
  - a failed child blocks its parent (and every ancestor) unless the child
    was submitted with ``fail_parent_on_failure=False``;
  - jobs are retried per ``QueueConfig`` with exponential backoff, except
    for errors that declare ``retryable = False``;
  - per-queue concurrency is bounded with a semaphore;
  - a job id is accepted once, so re-submitting a flow never runs a step
    twice (at-least-once delivery is handled by the step handlers); finished
    jobs leave the run table and only the most recent outcomes are kept;
  - repeatable jobs fire on a cron schedule until cancelled.

Handlers only see a ``Job``; all cross-step coordination happens through
the stores the handlers write to.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Protocol

from ..errors import DeployTimeoutError, InternalError, NotFoundError, error_message
from .cron import next_fire_time, validate_cron
from .flow import (
    JOB_BLOCKED,
    JOB_COMPLETED,
    JOB_FAILED,
    FlowNode,
    Job,
    JobOutcome,
    QueueConfig,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[Any]]
FailureHook = Callable[[Job, BaseException], Awaitable[None]]
Clock = Callable[[], datetime]

DEFAULT_KEEP_FINISHED = 1000


class WorkflowEngine(Protocol):
    """Contract the deploy orchestrator and cronjob scheduler rely on."""

    def register(
        self,
        queue: str,
        handler: Handler,
        *,
        config: QueueConfig | None = None,
        on_failed: FailureHook | None = None,
    ) -> None: ...

    async def submit_flow(self, root: FlowNode) -> str: ...

    async def add_job(
        self,
        queue: str,
        name: str,
        data: Mapping[str, Any],
        *,
        job_id: str,
        attempts: int | None = None,
    ) -> str: ...

    async def submit_repeatable(
        self,
        key: str,
        *,
        queue: str,
        name: str,
        data: Mapping[str, Any],
        cron: str,
        tz: str = 'UTC',
    ) -> None: ...

    async def cancel_repeatable(self, key: str) -> bool: ...


@dataclass(slots=True)
class _Worker:
    handler: Handler
    config: QueueConfig
    on_failed: FailureHook | None
    semaphore: asyncio.Semaphore


@dataclass(slots=True)
class _Repeatable:
    key: str
    queue: str
    name: str
    cron: str
    tz: str
    data: Mapping[str, Any] = field(default_factory=dict)
    task: asyncio.Task[None] | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalWorkflowEngine:
    """asyncio implementation of ``WorkflowEngine``.

    Args:
        sleep: Awaitable sleep used for retry backoff and repeatable
            scheduling (inject a fake in tests).
        clock: Returns the current aware datetime for repeatables.
        keep_finished: How many finished outcomes stay available to
            ``wait``/``outcome`` and to job-id de-duplication.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Clock = _utcnow,
        keep_finished: int = DEFAULT_KEEP_FINISHED,
    ) -> None:
        self._sleep = sleep
        self._clock = clock
        self._keep_finished = keep_finished
        self._workers: dict[str, _Worker] = {}
        self._runs: dict[str, asyncio.Task[JobOutcome]] = {}
        self._finished: OrderedDict[str, JobOutcome] = OrderedDict()
        self._repeatables: dict[str, _Repeatable] = {}
        self._closed = False

    # ── Registration ─────────────────────────────────────────────

    def register(
        self,
        queue: str,
        handler: Handler,
        *,
        config: QueueConfig | None = None,
        on_failed: FailureHook | None = None,
    ) -> None:
        config = config or QueueConfig()
        if config.attempts < 1:
            raise ValueError('attempts must be >= 1')
        if config.concurrency < 1:
            raise ValueError('concurrency must be >= 1')
        self._workers[queue] = _Worker(
            handler=handler,
            config=config,
            on_failed=on_failed,
            semaphore=asyncio.Semaphore(config.concurrency),
        )

    @property
    def queues(self) -> frozenset[str]:
        return frozenset(self._workers)

    # ── Submission ───────────────────────────────────────────────

    async def submit_flow(self, root: FlowNode) -> str:
        """Validate and start a DAG; returns the root job id."""
        if self._closed:
            raise InternalError('workflow engine is closed')
        missing = sorted({n.queue for n in root.walk() if n.queue not in self._workers})
        if missing:
            raise InternalError(
                f'no worker registered for queue(s): {", ".join(missing)}',
                details={'queues': missing},
            )
        self._schedule(root)
        logger.info(
            'Flow submitted: root=%s', root.job_id,
            extra={'job_id': root.job_id, 'queue': root.queue},
        )
        return root.job_id

    async def add_job(
        self,
        queue: str,
        name: str,
        data: Mapping[str, Any],
        *,
        job_id: str,
        attempts: int | None = None,
    ) -> str:
        """Submit a standalone job (a flow with no children)."""
        return await self.submit_flow(
            FlowNode(name=name, queue=queue, job_id=job_id, data=data, attempts=attempts),
        )

    def _schedule(self, node: FlowNode) -> asyncio.Future[JobOutcome]:
        task = self._runs.get(node.job_id)
        if task is not None:
            return task
        finished = self._finished.get(node.job_id)
        if finished is not None:
            done: asyncio.Future[JobOutcome] = asyncio.get_running_loop().create_future()
            done.set_result(finished)
            return done
        task = asyncio.create_task(self._run_node(node), name=f'job:{node.job_id}')
        self._runs[node.job_id] = task
        task.add_done_callback(lambda t, job_id=node.job_id: self._retire(job_id, t))
        return task

    def _retire(self, job_id: str, task: asyncio.Task[JobOutcome]) -> None:
        """Move a finished task out of the run table into the bounded outcome map."""
        if self._runs.get(job_id) is task:
            del self._runs[job_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                'Job %s crashed: %s', job_id, error_message(exc), extra={'job_id': job_id},
            )
            return
        self._finished[job_id] = task.result()
        self._finished.move_to_end(job_id)
        while len(self._finished) > self._keep_finished:
            self._finished.popitem(last=False)

    # ── Inspection ───────────────────────────────────────────────

    async def wait(self, job_id: str) -> JobOutcome:
        task = self._runs.get(job_id)
        if task is not None:
            return await asyncio.shield(task)
        finished = self._finished.get(job_id)
        if finished is None:
            raise NotFoundError(f'job {job_id!r} not found', details={'job_id': job_id})
        return finished

    def outcome(self, job_id: str) -> JobOutcome | None:
        """Finished outcome of a job, or None while unknown or still running."""
        task = self._runs.get(job_id)
        if task is not None:
            if not task.done() or task.cancelled() or task.exception() is not None:
                return None
            return task.result()
        return self._finished.get(job_id)

    @property
    def active_job_count(self) -> int:
        return len(self._runs)

    async def drain(self) -> None:
        """Wait until no submitted job is pending or running."""
        while True:
            pending = [t for t in self._runs.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Execution ────────────────────────────────────────────────

    async def _run_node(self, node: FlowNode) -> JobOutcome:
        child_outcomes: list[JobOutcome] = []
        if node.children:
            child_outcomes = list(
                await asyncio.gather(*(self._schedule(c) for c in node.children))
            )

        job = Job(id=node.job_id, name=node.name, queue=node.queue, data=dict(node.data))
        blocking: str | None = None
        for child, outcome in zip(node.children, child_outcomes):
            if outcome.state == JOB_COMPLETED:
                job.children_values[child.name] = outcome.value
                continue
            job.children_failures[child.name] = outcome.error or outcome.state
            if outcome.state == JOB_BLOCKED or child.fail_parent_on_failure:
                blocking = blocking or child.name

        if blocking is not None:
            logger.info(
                'Job %s not run: dependency %s did not complete', node.job_id, blocking,
                extra={'job_id': node.job_id, 'queue': node.queue},
            )
            return JobOutcome(
                job_id=node.job_id,
                name=node.name,
                state=JOB_BLOCKED,
                error=f'dependency {blocking!r} did not complete',
            )

        return await self._run_with_retries(node, job)

    async def _run_with_retries(self, node: FlowNode, job: Job) -> JobOutcome:
        worker = self._workers[node.queue]
        attempts = node.attempts or worker.config.attempts

        for attempt in range(1, attempts + 1):
            try:
                async with worker.semaphore:
                    value = await self._invoke(worker, job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                job.attempts_made = attempt
                retryable = getattr(exc, 'retryable', True)
                if attempt < attempts and retryable:
                    delay = worker.config.retry_delay(attempt)
                    logger.warning(
                        'Job %s failed (attempt %d/%d), retrying in %.1fs: %s',
                        job.id, attempt, attempts, delay, error_message(exc),
                        extra={'job_id': job.id, 'queue': job.queue},
                    )
                    if delay > 0:
                        await self._sleep(delay)
                    continue

                logger.error(
                    'Job %s failed permanently after %d attempt(s): %s',
                    job.id, attempt, error_message(exc),
                    extra={'job_id': job.id, 'queue': job.queue},
                )
                await self._notify_failed(worker, job, exc)
                return JobOutcome(
                    job_id=job.id,
                    name=job.name,
                    state=JOB_FAILED,
                    error=error_message(exc),
                    attempts_made=attempt,
                )
            else:
                job.attempts_made = attempt
                return JobOutcome(
                    job_id=job.id,
                    name=job.name,
                    state=JOB_COMPLETED,
                    value=value,
                    attempts_made=attempt,
                )

        raise InternalError(f'job {job.id!r} exhausted attempts without an outcome')

    async def _invoke(self, worker: _Worker, job: Job) -> Any:
        timeout = worker.config.timeout_seconds
        if timeout is None:
            return await worker.handler(job)
        try:
            return await asyncio.wait_for(worker.handler(job), timeout)
        except asyncio.TimeoutError:
            raise DeployTimeoutError(
                f'{job.name} timed out after {timeout:g}s',
                details={'job_id': job.id, 'timeout_seconds': timeout},
            ) from None

    async def _notify_failed(self, worker: _Worker, job: Job, exc: BaseException) -> None:
        if worker.on_failed is None:
            return
        try:
            await worker.on_failed(job, exc)
        except Exception:
            logger.exception(
                'on_failed hook raised for job %s', job.id,
                extra={'job_id': job.id, 'queue': job.queue},
            )

    # ── Repeatables ──────────────────────────────────────────────

    async def submit_repeatable(
        self,
        key: str,
        *,
        queue: str,
        name: str,
        data: Mapping[str, Any],
        cron: str,
        tz: str = 'UTC',
    ) -> None:
        """(Re)register a cron-driven job under ``key``."""
        if self._closed:
            raise InternalError('workflow engine is closed')
        if queue not in self._workers:
            raise InternalError(
                f'no worker registered for queue(s): {queue}', details={'queues': [queue]},
            )
        validate_cron(cron, tz)
        await self.cancel_repeatable(key)
        spec = _Repeatable(key=key, queue=queue, name=name, cron=cron, tz=tz, data=dict(data))
        spec.task = asyncio.create_task(self._repeat_loop(spec), name=f'repeat:{key}')
        self._repeatables[key] = spec
        logger.info(
            'Repeatable registered: %s (%s %s)', key, cron, tz,
            extra={'queue': queue},
        )

    async def cancel_repeatable(self, key: str) -> bool:
        spec = self._repeatables.pop(key, None)
        if spec is None:
            return False
        if spec.task is not None and not spec.task.done():
            spec.task.cancel()
            await asyncio.gather(spec.task, return_exceptions=True)
        logger.info('Repeatable removed: %s', key)
        return True

    def repeatable_keys(self) -> frozenset[str]:
        return frozenset(self._repeatables)

    def repeatable(self, key: str) -> Mapping[str, Any] | None:
        spec = self._repeatables.get(key)
        if spec is None:
            return None
        return {
            'key': spec.key,
            'queue': spec.queue,
            'name': spec.name,
            'cron': spec.cron,
            'tz': spec.tz,
            'data': dict(spec.data),
        }

    async def _repeat_loop(self, spec: _Repeatable) -> None:
        while True:
            now = self._clock()
            fire_at = next_fire_time(spec.cron, spec.tz, after=now)
            await self._sleep(max((fire_at - now).total_seconds(), 0.0))
            job_id = f'repeat:{spec.key}:{int(fire_at.timestamp())}'
            self._schedule(
                FlowNode(
                    name=spec.name,
                    queue=spec.queue,
                    job_id=job_id,
                    data={**spec.data, 'scheduled_for': fire_at.isoformat()},
                )
            )

    # ── Shutdown ─────────────────────────────────────────────────

    async def close(self) -> None:
        self._closed = True
        for key in list(self._repeatables):
            await self.cancel_repeatable(key)
        pending = [t for t in self._runs.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
