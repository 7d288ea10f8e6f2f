"""Token status and its transition rules.

State transitions are enforced via ``TOKEN_TRANSITIONS``.  Use
``validate_token_transition()`` (or ``TokenTreeExecutor`` which calls it)
before changing the status of any token row.

Valid transition graph::

    PENDING   → RUNNING | CANCELED
    RUNNING   → SUCCESS | WARNING | FAILURE | CANCELING | CANCELED
    CANCELING → CANCELED
    FAILURE   → PENDING (bounded retry, operator retry of a leaf)
              | RUNNING (operator retry of a compound token)
              | SUCCESS (operator skip)
    SUCCESS   → (terminal)
    WARNING   → (terminal)
    CANCELED  → (terminal)
"""

from __future__ import annotations

from enum import Enum

from shiftwork.core.errors import InvalidTransitionError


class TokenStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    WARNING = "warning"
    FAILURE = "failure"
    CANCELING = "canceling"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self in (TokenStatus.SUCCESS, TokenStatus.WARNING)

    @classmethod
    def active_values(cls) -> list[str]:
        return [status.value for status in cls if status not in TERMINAL_STATUSES]


TERMINAL_STATUSES = frozenset({
    TokenStatus.SUCCESS,
    TokenStatus.WARNING,
    TokenStatus.FAILURE,
    TokenStatus.CANCELED,
})

TOKEN_TRANSITIONS: dict[TokenStatus, frozenset[TokenStatus]] = {
    TokenStatus.PENDING: frozenset({
        TokenStatus.RUNNING,
        TokenStatus.CANCELED,
    }),
    TokenStatus.RUNNING: frozenset({
        TokenStatus.SUCCESS,
        TokenStatus.WARNING,
        TokenStatus.FAILURE,
        TokenStatus.CANCELING,
        TokenStatus.CANCELED,
    }),
    TokenStatus.CANCELING: frozenset({
        TokenStatus.CANCELED,
    }),
    TokenStatus.FAILURE: frozenset({
        TokenStatus.PENDING,  # retry
        TokenStatus.RUNNING,  # operator retry of a compound token
        TokenStatus.SUCCESS,  # operator skip
    }),
    TokenStatus.SUCCESS: frozenset(),
    TokenStatus.WARNING: frozenset(),
    TokenStatus.CANCELED: frozenset(),
}


def validate_token_transition(current: TokenStatus | str, target: TokenStatus | str) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_token_transition(TokenStatus.RUNNING, TokenStatus.SUCCESS)
        >>> validate_token_transition(TokenStatus.SUCCESS, TokenStatus.RUNNING)
        Traceback (most recent call last):
        ...
        shiftwork.core.errors.InvalidTransitionError: Invalid TokenStatus transition: success → running
    """
    current = TokenStatus(current)
    target = TokenStatus(target)
    if target not in TOKEN_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "TokenStatus")


__all__ = [
    "TokenStatus",
    "TERMINAL_STATUSES",
    "TOKEN_TRANSITIONS",
    "validate_token_transition",
]
