"""Box status state machine.

Implements the box lifecycle:
  pending -> deploying -> running -> stopped

And deterministic error/retry/delete transitions:
  deploying -> error
  error --(explicit redeploy)--> deploying
  any status -> deleted (terminal)
"""

from __future__ import annotations

from types import MappingProxyType

from ..errors import InvalidStatusError
from .models import BOX_STATUSES

TERMINAL_STATUSES = frozenset({'deleted'})
DEPLOYABLE_STATUSES = frozenset({'pending', 'error'})

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        'pending': frozenset({'deploying', 'deleted'}),
        'deploying': frozenset({'running', 'error', 'deleted'}),
        'running': frozenset({'stopped', 'deleted'}),
        'stopped': frozenset({'deleted'}),
        'error': frozenset({'deploying', 'deleted'}),
        'deleted': frozenset(),
    }
)


class InvalidStatusTransition(InvalidStatusError):
    """Raised for box status transitions outside the allowed table."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f'invalid status transition: {from_status!r} -> {to_status!r}',
            details={'from_status': from_status, 'to_status': to_status},
        )


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def check_transition(from_status: str, to_status: str) -> None:
    """Raise ``InvalidStatusTransition`` unless the move is allowed."""
    if to_status not in BOX_STATUSES:
        raise InvalidStatusTransition(from_status, to_status)
    if not can_transition(from_status, to_status):
        raise InvalidStatusTransition(from_status, to_status)


def next_deployment_attempt(current_status: str, current_attempt: int) -> int:
    """Attempt number assigned when a deploy starts from ``current_status``.

    The first deploy of a fresh box keeps attempt 1; every redeploy from
    ``error`` moves to a new attempt so prior ledger rows stay untouched.
    """
    if current_status not in DEPLOYABLE_STATUSES:
        raise InvalidStatusTransition(current_status, 'deploying')
    if current_status == 'pending':
        return max(current_attempt, 1)
    return current_attempt + 1
