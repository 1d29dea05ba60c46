"""Poll submitted operations until they settle on-chain."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx
from web3.exceptions import Web3Exception

from ..errors import ConfirmationReverted, ConfirmationTimeout
from ..observability import observe_confirmation
from .bundler import BundlerError
from .handles import DirectTransaction, OperationHandle, SponsoredOperation

logger = logging.getLogger(__name__)

Receipt = Dict[str, Any]
ReceiptFetcher = Callable[[str], Awaitable[Optional[Receipt]]]

# Lookup failures while polling; the run only ends when the budget runs out.
_TRANSIENT_ERRORS = (BundlerError, httpx.HTTPError, Web3Exception, OSError)


class UserOperationSource(Protocol):
    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[Receipt]:
        ...


class TransactionSource(Protocol):
    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        ...


@dataclass
class ConfirmationOptions:
    """Polling configuration when waiting for receipts."""

    poll_interval: float = 2.0
    timeout: float = 120.0


def _is_success(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text.startswith("0x"):
            return int(text, 16) == 1
        return text in {"1", "true", "success"}
    if isinstance(value, int):
        return value == 1
    return False


class OperationWaiter:
    """Resolve an operation handle into its settled transaction hash.

    Sponsored handles are resolved through the bundler's user operation
    receipts; direct handles are already transaction hashes and only need a
    mined receipt. Both share one polling loop and one timeout budget.
    """

    def __init__(
        self,
        *,
        chain: TransactionSource,
        bundler: Optional[UserOperationSource] = None,
        options: Optional[ConfirmationOptions] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._chain = chain
        self._bundler = bundler
        self._options = options or ConfirmationOptions()
        self._clock = clock
        self._sleep = sleep

    async def wait(self, handle: OperationHandle) -> str:
        """Block until ``handle`` settles and return the transaction hash."""

        started = self._clock()
        if isinstance(handle, SponsoredOperation):
            if self._bundler is None:
                raise RuntimeError("Sponsored operation received but no bundler is configured")
            receipt = await self._poll(handle.hash, self._bundler.get_user_operation_receipt)
            tx_hash = self._sponsored_tx_hash(receipt) or handle.hash
            succeeded = _is_success(receipt.get("success", True))
            inner = receipt.get("receipt")
            if succeeded and isinstance(inner, dict) and "status" in inner:
                succeeded = _is_success(inner["status"])
            kind = "sponsored"
        elif isinstance(handle, DirectTransaction):
            receipt = await self._poll(handle.hash, self._chain.get_transaction_receipt)
            tx_hash = str(receipt.get("transactionHash") or handle.hash)
            succeeded = _is_success(receipt.get("status", 1))
            kind = "direct"
        else:
            raise TypeError(f"Unsupported operation handle: {handle!r}")

        observe_confirmation(kind, self._clock() - started)
        if not succeeded:
            raise ConfirmationReverted(handle.hash, tx_hash)
        logger.debug("Operation %s settled in tx %s", handle.hash, tx_hash)
        return tx_hash

    async def _poll(self, operation_hash: str, fetch: ReceiptFetcher) -> Receipt:
        deadline = self._clock() + self._options.timeout
        while True:
            try:
                receipt = await fetch(operation_hash)
            except _TRANSIENT_ERRORS as exc:
                logger.warning(
                    "Receipt lookup for %s failed, polling again: %s",
                    operation_hash,
                    exc,
                    extra={"event": "confirmation.poll_failed", "operation_hash": operation_hash},
                )
                receipt = None
            if receipt is not None:
                return receipt
            if self._clock() >= deadline:
                raise ConfirmationTimeout(operation_hash, self._options.timeout)
            await self._sleep(self._options.poll_interval)

    @staticmethod
    def _sponsored_tx_hash(receipt: Receipt) -> Optional[str]:
        # The outer receipt carries the user operation, the inner one the bundle tx.
        inner = receipt.get("receipt")
        if isinstance(inner, dict) and inner.get("transactionHash"):
            return str(inner["transactionHash"])
        if receipt.get("transactionHash"):
            return str(receipt["transactionHash"])
        return None
