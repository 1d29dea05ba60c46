"""Per-job procedure that turns a due schedule into a settled purchase."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from .chain.handles import OperationHandle
from .conversion import format_units, format_usd, usd_to_token_amount
from .errors import InsufficientBalance, ScheduledSwapError, UnexpectedFailure
from .models import Job, PurchaseRecord, TokenQuote
from .observability import ObservabilityScope, record_execution
from .store import JobStore, PurchaseStore
from .swap import SwapRequest, SwapSubmission
from .versions import resolve_app_version

logger = logging.getLogger(__name__)


class BalanceReader(Protocol):
    async def balance_of(self, token: str, owner: str) -> int:
        ...


class PermissionSource(Protocol):
    async def permitted_version(self, pkp_token_id: str, app_id: int) -> Optional[int]:
        ...


class TokenSource(Protocol):
    async def get_by_address(self, address: str) -> Optional[TokenQuote]:
        ...


class SwapRunner(Protocol):
    async def run(self, request: SwapRequest) -> SwapSubmission:
        ...


class Waiter(Protocol):
    async def wait(self, handle: OperationHandle) -> str:
        ...


@dataclass
class ExecutionDependencies:
    """Collaborators a pipeline run talks to."""

    balances: BalanceReader
    permissions: PermissionSource
    tokens: TokenSource
    orchestrator: SwapRunner
    waiter: Waiter
    purchases: PurchaseStore
    jobs: JobStore
    app_id: int


@dataclass
class _Progress:
    submitting: bool = False


def _breadcrumb(scope: ObservabilityScope, message: Optional[str] = None, **data: Any) -> None:
    try:
        scope.add_breadcrumb(message, data=data)
    except Exception as exc:
        logger.warning("Observability breadcrumb failed: %s", exc)


def _capture(scope: ObservabilityScope, exc: BaseException) -> None:
    try:
        scope.capture_exception(exc)
    except Exception as sink_error:
        logger.warning("Observability capture failed: %s", sink_error)


async def _run(
    job: Job,
    scope: ObservabilityScope,
    deps: ExecutionDependencies,
    progress: _Progress,
) -> PurchaseRecord:
    params = job.params
    eth_address = params.pkp_info.eth_address
    token_in = params.token_in
    token_out = params.token_out

    logger.info(
        "Starting DCA swap job %s for %s: $%s %s -> %s",
        job.id,
        eth_address,
        params.purchase_amount,
        token_in.symbol,
        token_out.symbol,
        extra={"event": "dca.job.started", "job_id": job.id},
    )

    balance, permitted_version, quote = await asyncio.gather(
        deps.balances.balance_of(token_in.address, eth_address),
        deps.permissions.permitted_version(params.pkp_info.token_id, deps.app_id),
        deps.tokens.get_by_address(token_in.address),
    )
    _breadcrumb(
        scope,
        f"User {token_in.symbol} balance",
        tokenInBalance=format_units(balance, token_in.decimals),
        tokenInSymbol=token_in.symbol,
    )

    conversion = usd_to_token_amount(
        params.purchase_amount,
        quote.price if quote else None,
        token_in.decimals,
        symbol=token_in.symbol,
    )
    amount_in = conversion.amount
    _breadcrumb(
        scope,
        "Converted purchase amount",
        purchaseAmountUsd=format_usd(params.purchase_amount),
        tokenInAmount=format_units(amount_in, token_in.decimals),
        price=str(conversion.price) if conversion.used_price else None,
    )

    if balance < amount_in:
        raise InsufficientBalance(
            address=eth_address,
            symbol=token_in.symbol,
            balance=format_units(balance, token_in.decimals),
            required=format_units(amount_in, token_in.decimals),
            purchase_amount=format_usd(params.purchase_amount),
        )

    stored_version = params.app.version
    version_to_run = resolve_app_version(stored_version, permitted_version, address=eth_address)
    _breadcrumb(
        scope,
        app=params.app.model_dump(),
        appVersionToRun=version_to_run,
        userPermittedAppVersion=permitted_version,
    )
    if version_to_run != stored_version:
        params.app = params.app.model_copy(update={"version": version_to_run})
        await asyncio.to_thread(deps.jobs.save, job)

    logger.info(
        "Job details for %s: balance %s %s, permitted version %s",
        job.id,
        format_units(balance, token_in.decimals),
        token_in.symbol,
        permitted_version,
        extra={"event": "dca.job.details", "job_id": job.id},
    )

    progress.submitting = True
    submission = await deps.orchestrator.run(
        SwapRequest(
            token_in=token_in.address,
            token_out=token_out.address,
            amount_in=amount_in,
            delegator_address=eth_address,
        )
    )
    _breadcrumb(
        scope,
        "Swap submitted",
        approvalOperationHash=submission.approval.hash if submission.approval else None,
        swapOperationHash=submission.swap.hash,
    )

    swap_hash = await deps.waiter.wait(submission.swap)
    _breadcrumb(scope, swapHash=swap_hash)

    record = PurchaseRecord(
        eth_address=eth_address,
        coin_address=token_out.address,
        name=token_out.symbol,
        symbol=token_out.symbol,
        purchase_amount=format_usd(params.purchase_amount),
        schedule_id=job.id,
        tx_hash=swap_hash,
    )
    await asyncio.to_thread(deps.purchases.append, record)

    logger.info(
        "Successfully purchased $%s of %s with %s at tx hash %s",
        record.purchase_amount,
        token_out.symbol,
        token_in.symbol,
        swap_hash,
        extra={"event": "dca.job.succeeded", "job_id": job.id},
    )
    return record


async def execute_scheduled_swap(
    job: Job,
    scope: ObservabilityScope,
    deps: ExecutionDependencies,
) -> PurchaseRecord:
    """Run one due job end to end and return the persisted purchase record.

    Every failure is reported to ``scope`` and re-raised. Failures outside
    the :class:`ScheduledSwapError` taxonomy are wrapped in
    :class:`UnexpectedFailure`, retryable only when they happened before the
    swap orchestration started. A failing ``scope`` never interrupts the run.
    """

    progress = _Progress()
    try:
        record = await _run(job, scope, deps, progress)
    except ScheduledSwapError as exc:
        _capture(scope, exc)
        record_execution("failed")
        raise
    except Exception as exc:
        wrapped = UnexpectedFailure(
            f"{type(exc).__name__}: {exc}",
            retryable=not progress.submitting,
        )
        wrapped.__cause__ = exc
        _capture(scope, wrapped)
        record_execution("failed")
        raise wrapped from exc
    record_execution("succeeded")
    return record
