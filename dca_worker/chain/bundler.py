"""Async JSON-RPC client for the gas sponsor's ERC-4337 bundler."""

from __future__ import annotations

import itertools
import time
from typing import Any, Dict, Optional

import httpx


class BundlerError(RuntimeError):
    """Raised when the bundler RPC returns an error."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class BundlerClient:
    """Resolve user operation hashes through ``eth_getUserOperationReceipt``."""

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport
        self._ids = itertools.count(int(time.time() * 1000))

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport,
            ) as client:
                response = await client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            raise BundlerError(f"Bundler request failed: {exc}") from exc
        if response.status_code >= 400:
            raise BundlerError(
                f"Bundler responded with HTTP {response.status_code}",
                code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise BundlerError("Bundler returned invalid JSON") from exc
        if "error" in data:
            error = data["error"] or {}
            raise BundlerError(str(error.get("message") or "Bundler error"), code=error.get("code"))
        return data.get("result")

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[Dict[str, Any]]:
        """Return the on-chain receipt for ``user_op_hash`` or ``None`` while pending."""

        result = await self._rpc("eth_getUserOperationReceipt", [user_op_hash])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise BundlerError("Bundler returned an invalid receipt payload")
        return result
