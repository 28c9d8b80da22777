"""Workflow data types: flow nodes, jobs, queue policies, outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'
# Never ran because a dependency failed.
JOB_BLOCKED = 'blocked'


@dataclass(frozen=True, slots=True)
class QueueConfig:
    """Per-queue execution policy.

    Attributes:
        attempts: Total tries before a job fails permanently.
        backoff_seconds: Base delay before a retry.
        backoff_type: ``exponential`` (delay doubles each retry) or ``fixed``.
        concurrency: Max jobs of this queue running at the same time.
        timeout_seconds: Per-attempt wall clock limit (None = unbounded).
    """

    attempts: int = 1
    backoff_seconds: float = 0.0
    backoff_type: str = 'exponential'
    concurrency: int = 5
    timeout_seconds: float | None = None

    def retry_delay(self, attempts_made: int) -> float:
        """Delay before the try that follows ``attempts_made`` failures."""
        if self.backoff_seconds <= 0:
            return 0.0
        if self.backoff_type == 'fixed':
            return self.backoff_seconds
        return self.backoff_seconds * (2 ** (attempts_made - 1))


@dataclass(slots=True)
class FlowNode:
    """One node of a submitted DAG.

    A node runs only after every child reached a terminal state. A child
    that fails blocks this node unless the child sets
    ``fail_parent_on_failure=False``. The same node object (same
    ``job_id``) may appear under several parents; it runs once.
    """

    name: str
    queue: str
    job_id: str
    data: Mapping[str, Any] = field(default_factory=dict)
    children: list[FlowNode] = field(default_factory=list)
    fail_parent_on_failure: bool = True
    attempts: int | None = None

    def walk(self) -> Iterator[FlowNode]:
        """Yield every distinct node of the DAG rooted here (children first)."""
        seen: set[str] = set()

        def _visit(node: FlowNode) -> Iterator[FlowNode]:
            if node.job_id in seen:
                return
            seen.add(node.job_id)
            for child in node.children:
                yield from _visit(child)
            yield node

        yield from _visit(self)


@dataclass(slots=True)
class Job:
    """What a handler receives."""

    id: str
    name: str
    queue: str
    data: Mapping[str, Any]
    attempts_made: int = 0
    children_values: dict[str, Any] = field(default_factory=dict)
    """Return values of completed children, keyed by child name."""
    children_failures: dict[str, str] = field(default_factory=dict)
    """Error messages of failed children, keyed by child name."""


@dataclass(frozen=True, slots=True)
class JobOutcome:
    job_id: str
    name: str
    state: str
    value: Any = None
    error: str | None = None
    attempts_made: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state == JOB_COMPLETED
