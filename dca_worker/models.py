"""Pydantic models shared by the scheduler, pipeline and stores."""

from __future__ import annotations

import re
import time
import uuid
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
_PURCHASE_AMOUNT = re.compile(r"^\d*\.?\d{1,2}$")
_MIN_PURCHASE_USD = Decimal("1")

_INTERVAL_UNITS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
}
_INTERVAL_ALIASES = {
    "hourly": "1 hour",
    "daily": "1 day",
    "weekly": "1 week",
}
_INTERVAL_PATTERN = re.compile(r"^(?:every\s+)?(\d+(?:\.\d+)?|an?|one)?\s*([a-z]+?)s?$")


class TokenRef(BaseModel):
    """Token identity recorded on a schedule."""

    address: str = Field(..., pattern=_ADDRESS_PATTERN)
    decimals: int = Field(..., ge=0, le=36)
    symbol: str = Field(..., min_length=1)


class PkpInfo(BaseModel):
    """Delegated wallet that owns the schedule."""

    model_config = ConfigDict(populate_by_name=True)

    eth_address: str = Field(..., alias="ethAddress", pattern=_ADDRESS_PATTERN)
    public_key: str = Field(..., alias="publicKey", min_length=1)
    token_id: str = Field(..., alias="tokenId", min_length=1)


class AppData(BaseModel):
    """Application id and the permission version the schedule was created with."""

    id: int = Field(..., gt=0)
    version: int = Field(..., ge=0)


class ScheduleParams(BaseModel):
    """A user's standing instruction to buy ``token_out`` with ``token_in``."""

    model_config = ConfigDict(populate_by_name=True)

    app: AppData
    name: str = "DCASwap"
    pkp_info: PkpInfo = Field(..., alias="pkpInfo")
    purchase_amount: Decimal = Field(..., alias="purchaseAmount")
    purchase_interval_human: str = Field(..., alias="purchaseIntervalHuman", min_length=1)
    token_in: TokenRef = Field(..., alias="tokenIn")
    token_out: TokenRef = Field(..., alias="tokenOut")
    updated_at: float = Field(default_factory=time.time, alias="updatedAt")

    @field_validator("purchase_amount", mode="before")
    @classmethod
    def _check_purchase_amount(cls, value: object) -> Decimal:
        text = str(value).strip()
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            try:
                amount = Decimal(text)
            except InvalidOperation as exc:
                raise ValueError("Must be at least $1.00 USD with up to 2 decimal places") from exc
            text = format(amount, "f")
        if not _PURCHASE_AMOUNT.match(text):
            raise ValueError("Must be at least $1.00 USD with up to 2 decimal places")
        amount = Decimal(text)
        if amount < _MIN_PURCHASE_USD:
            raise ValueError("Must be at least $1.00 USD with up to 2 decimal places")
        return amount

    @field_validator("purchase_interval_human")
    @classmethod
    def _check_interval(cls, value: str) -> str:
        parse_interval(value)
        return value

    @model_validator(mode="after")
    def _distinct_tokens(self) -> "ScheduleParams":
        if self.token_in.address.lower() == self.token_out.address.lower():
            raise ValueError("tokenIn and tokenOut must be different tokens")
        return self


class Job(BaseModel):
    """One scheduled occurrence tracked by the job store."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    params: ScheduleParams
    next_run_at: float = Field(default_factory=time.time)
    last_run_at: Optional[float] = None
    last_finished_at: Optional[float] = None
    last_error: Optional[str] = None
    fail_count: int = Field(default=0, ge=0)
    disabled: bool = False

    def is_due(self, now: float) -> bool:
        return not self.disabled and self.next_run_at <= now


class TokenQuote(BaseModel):
    """Listed token with an optional USD unit price."""

    address: str
    decimals: int = Field(..., ge=0)
    symbol: str
    name: Optional[str] = None
    price: Optional[str] = None
    listed: bool = True


class PurchaseRecord(BaseModel):
    """Durable outcome of one completed scheduled purchase."""

    model_config = ConfigDict(frozen=True)

    eth_address: str
    coin_address: str
    name: str
    symbol: str
    purchase_amount: str = Field(..., pattern=r"^\d+\.\d{2}$")
    schedule_id: str
    tx_hash: str
    created_at: float = Field(default_factory=time.time)


def parse_interval(text: str) -> timedelta:
    """Parse a human interval such as ``"1 day"`` or ``"weekly"``."""

    normalized = " ".join(text.strip().lower().split())
    normalized = _INTERVAL_ALIASES.get(normalized, normalized)
    match = _INTERVAL_PATTERN.match(normalized)
    if not match:
        raise ValueError(f"Unrecognised interval: {text!r}")
    raw_count, unit = match.groups()
    seconds = _INTERVAL_UNITS.get(unit)
    if seconds is None:
        raise ValueError(f"Unrecognised interval unit in {text!r}")
    if raw_count in (None, "a", "an", "one"):
        count = 1.0
    else:
        count = float(raw_count)
    if count <= 0:
        raise ValueError(f"Interval must be positive: {text!r}")
    return timedelta(seconds=count * seconds)
