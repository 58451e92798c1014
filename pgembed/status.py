"""
Classification of per-row embedding statuses.

Every embedding result carries a free-text status. An empty status means the
row was embedded. A status starting with ``RETRYABLE_ERROR_PREFIX`` marks a
transient failure: such rows are never written to the destination, so they
stay pending and are picked up again by a later iteration or a later run.
Any other status is a terminal failure and is written to the destination
as-is.
"""

from typing import Protocol

RETRYABLE_ERROR_PREFIX = "A retryable error occurred:"
SUCCESS_STATUS = ""


class HasStatus(Protocol):
    status: str


def is_retryable(status: str) -> bool:
    return status.startswith(RETRYABLE_ERROR_PREFIX)


def accept(result: HasStatus) -> bool:
    """The insert predicate shared by table creation and every iteration."""
    return not is_retryable(result.status)


def retryable_status(reason: str) -> str:
    return f"{RETRYABLE_ERROR_PREFIX} {reason}"


def terminal_status(code: str, reason: str) -> str:
    return f"{code}: {reason}" if reason else code
