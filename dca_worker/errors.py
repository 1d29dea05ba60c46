"""Failure taxonomy raised by the scheduled swap pipeline."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ScheduledSwapError(RuntimeError):
    """Base class for every failure a scheduled swap run can report.

    ``retryable`` marks failures raised before anything could have been
    submitted on-chain, so running the job again straight away is safe.
    """

    code = "SCHEDULED_SWAP_FAILED"
    retryable = False

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context or {})


class InsufficientBalance(ScheduledSwapError):
    """Raised when the owner cannot cover the converted purchase amount."""

    code = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        *,
        address: str,
        symbol: str,
        balance: str,
        required: str,
        purchase_amount: str,
    ) -> None:
        super().__init__(
            f"Not enough balance for account {address} - has {balance} {symbol}, "
            f"needs {required} {symbol} (=${purchase_amount} USD) to DCA",
            context={"balance": balance, "required": required, "symbol": symbol},
        )
        self.balance = balance
        self.required = required


class AuthorizationRevoked(ScheduledSwapError):
    """Raised when the owner no longer permits any version of the app."""

    code = "AUTHORIZATION_REVOKED"

    def __init__(self, *, address: str, stored_version: int) -> None:
        super().__init__(
            f"User {address} revoked permission to run this app. "
            f"Used version to generate: {stored_version}",
            context={"stored_version": stored_version},
        )
        self.stored_version = stored_version


class PrecheckFailed(ScheduledSwapError):
    """Raised when the execution service rejects a phase before submission."""

    code = "PRECHECK_FAILED"
    retryable = True

    def __init__(self, phase: str, reason: Optional[str]) -> None:
        super().__init__(f"{phase} precheck failed: {reason}", context={"phase": phase})
        self.phase = phase
        self.reason = reason


class PhaseExecutionFailed(ScheduledSwapError):
    """Raised when the execution service fails to submit a phase."""

    code = "PHASE_EXECUTION_FAILED"
    retryable = True

    def __init__(self, phase: str, reason: Optional[str]) -> None:
        super().__init__(f"{phase} execution failed: {reason}", context={"phase": phase})
        self.phase = phase
        self.reason = reason


class ConfirmationTimeout(ScheduledSwapError):
    """Raised when an operation is not settled within the polling budget."""

    code = "CONFIRMATION_TIMEOUT"

    def __init__(self, operation_hash: str, timeout: float) -> None:
        super().__init__(
            f"Operation {operation_hash} not confirmed within {timeout:g}s",
            context={"operation_hash": operation_hash},
        )
        self.operation_hash = operation_hash
        self.timeout = timeout


class ConfirmationReverted(ScheduledSwapError):
    """Raised when an operation settled on-chain but did not succeed."""

    code = "CONFIRMATION_REVERTED"

    def __init__(self, operation_hash: str, tx_hash: Optional[str]) -> None:
        super().__init__(
            f"Operation {operation_hash} reverted (tx {tx_hash or 'unknown'})",
            context={"operation_hash": operation_hash, "tx_hash": tx_hash},
        )
        self.operation_hash = operation_hash
        self.tx_hash = tx_hash


class UnexpectedFailure(ScheduledSwapError):
    """Wraps any failure outside the taxonomy above."""

    code = "UNEXPECTED_FAILURE"

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message, context={"retryable": retryable})
        self.retryable = retryable


class ConfigurationError(RuntimeError):
    """Raised when required worker configuration is missing or invalid."""


class StoreError(RuntimeError):
    """Raised when a persistence backend cannot complete an operation."""
