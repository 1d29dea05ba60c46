"""Listed token registry and its time-bounded cache."""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from .config import BASE_CHAIN_ID
from .models import TokenQuote

logger = logging.getLogger(__name__)

# Raw prices are 18-decimal integers; keep four decimals of USD.
_PRICE_DIVISOR = 10**14


class TokenRegistryError(RuntimeError):
    """Raised when the token list cannot be fetched or parsed."""


def _int_from_quantity(value: Any) -> int:
    if value in (None, ""):
        return 0
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("0x"):
            return int(text, 16)
        try:
            return int(text)
        except ValueError:
            return 0
    return 0


def format_raw_price(raw: Any) -> Optional[str]:
    """Convert an 18-decimal raw price into a four-decimal USD string."""

    value = _int_from_quantity(raw)
    if value <= 0:
        return None
    return format(Decimal(value // _PRICE_DIVISOR).scaleb(-4), ".4f")


def parse_token_list(entries: Iterable[Dict[str, Any]], *, chain_id: int = BASE_CHAIN_ID) -> List[TokenQuote]:
    """Keep the listed tokens of ``chain_id`` and normalise their prices."""

    tokens: List[TokenQuote] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if _int_from_quantity(entry.get("chainId", chain_id)) != chain_id or not entry.get("listed"):
            continue
        try:
            tokens.append(
                TokenQuote(
                    address=str(entry["address"]),
                    decimals=int(entry["decimals"]),
                    symbol=str(entry["symbol"]),
                    name=entry.get("name"),
                    price=format_raw_price(entry.get("price")),
                    listed=True,
                )
            )
        except (KeyError, TypeError, ValueError, ValidationError):
            logger.debug("Skipping malformed token entry: %r", entry)
    return tokens


class TokenRegistry:
    """Fetch the listed token set from the configured token list endpoint."""

    def __init__(
        self,
        url: str,
        *,
        chain_id: int = BASE_CHAIN_ID,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._chain_id = chain_id
        self._timeout = timeout
        self._transport = transport

    async def fetch(self) -> List[TokenQuote]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(self._url)
        except httpx.HTTPError as exc:
            raise TokenRegistryError(f"Token list request failed: {exc}") from exc
        if response.status_code >= 400:
            raise TokenRegistryError(f"Token list responded with HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise TokenRegistryError("Token list returned invalid JSON") from exc
        if isinstance(data, dict):
            data = data.get("tokens") or data.get("data") or []
        if not isinstance(data, list):
            raise TokenRegistryError("Token list payload must be a list")
        return parse_token_list(data, chain_id=self._chain_id)


class TokenCache:
    """Read-through cache over a token fetcher with an injectable clock."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[List[TokenQuote]]],
        *,
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._ttl = ttl
        self._clock = clock
        self._tokens: Optional[List[TokenQuote]] = None
        self._fetched_at = 0.0
        self._lock: asyncio.Lock | None = None

    def _ensure_lock(self) -> asyncio.Lock:
        lock = self._lock
        if lock is None:
            lock = asyncio.Lock()
            self._lock = lock
        return lock

    def _fresh(self) -> bool:
        return self._tokens is not None and self._clock() - self._fetched_at < self._ttl

    async def get(self, *, refresh: bool = False) -> List[TokenQuote]:
        """Return the cached token list, fetching when stale or forced."""

        if not refresh and self._fresh():
            return list(self._tokens or [])
        async with self._ensure_lock():
            if not refresh and self._fresh():
                return list(self._tokens or [])
            tokens = await self._fetch()
            self._tokens = list(tokens)
            self._fetched_at = self._clock()
            logger.debug("Token cache refreshed with %d tokens", len(self._tokens))
            return list(self._tokens)

    def invalidate(self) -> None:
        self._tokens = None
        self._fetched_at = 0.0

    async def get_by_address(self, address: str) -> Optional[TokenQuote]:
        """Look a token up by address, ignoring case."""

        target = address.lower()
        for token in await self.get():
            if token.address.lower() == target:
                return token
        return None
