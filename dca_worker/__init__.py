"""Scheduled token purchase worker."""

from .errors import (
    AuthorizationRevoked,
    ConfirmationReverted,
    ConfirmationTimeout,
    InsufficientBalance,
    PhaseExecutionFailed,
    PrecheckFailed,
    ScheduledSwapError,
    UnexpectedFailure,
)

__all__ = [
    "AuthorizationRevoked",
    "ConfirmationReverted",
    "ConfirmationTimeout",
    "InsufficientBalance",
    "PhaseExecutionFailed",
    "PrecheckFailed",
    "ScheduledSwapError",
    "UnexpectedFailure",
]
