"""Client for the swap ability execution service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class AbilityServiceError(RuntimeError):
    """Raised when the execution service cannot be reached or answers garbage."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class AbilityAction(str, Enum):
    APPROVE = "approve"
    SWAP = "swap"


@dataclass(frozen=True)
class AbilityParams:
    """Parameters for one approve or swap phase."""

    token_in: str
    token_out: str
    action: AbilityAction
    amount_in: str
    rpc_url: str
    gas_sponsor: bool = False
    gas_sponsor_api_key: Optional[str] = None
    gas_sponsor_policy_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "tokenInAddress": self.token_in,
            "tokenOutAddress": self.token_out,
            "action": self.action.value,
            "amountIn": self.amount_in,
            "rpcUrl": self.rpc_url,
            "alchemyGasSponsor": self.gas_sponsor,
        }
        if self.gas_sponsor:
            payload["alchemyGasSponsorApiKey"] = self.gas_sponsor_api_key
            payload["alchemyGasSponsorPolicyId"] = self.gas_sponsor_policy_id
        return payload


@dataclass(frozen=True)
class AbilityContext:
    """Execution context naming the delegated wallet that acts."""

    delegator_address: str

    def to_payload(self) -> Dict[str, Any]:
        return {"delegatorPkpEthAddress": self.delegator_address}


class AbilityResponse(BaseModel):
    """Precheck or execute response returned by the service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool
    result: Optional[Dict[str, Any]] = None
    runtime_error: Optional[str] = Field(default=None, alias="runtimeError")

    @property
    def reason(self) -> Optional[str]:
        if self.result and self.result.get("reason"):
            return str(self.result["reason"])
        return self.runtime_error


class AbilityClient:
    """Async HTTP client for the ``/precheck`` and ``/execute`` endpoints."""

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport

    async def precheck(self, params: AbilityParams, context: AbilityContext) -> AbilityResponse:
        return await self._post("precheck", params, context)

    async def execute(self, params: AbilityParams, context: AbilityContext) -> AbilityResponse:
        return await self._post("execute", params, context)

    async def _post(self, endpoint: str, params: AbilityParams, context: AbilityContext) -> AbilityResponse:
        request_payload = {"abilityParams": params.to_payload(), "context": context.to_payload()}
        url = f"{self._url}/{endpoint}"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=request_payload)
        except httpx.HTTPError as exc:
            raise AbilityServiceError(f"Ability service {endpoint} request failed: {exc}") from exc
        # Failed prechecks and executions come back as 4xx bodies with success=false.
        if response.status_code >= 500:
            raise AbilityServiceError(
                f"Ability service {endpoint} responded with HTTP {response.status_code}",
                status=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise AbilityServiceError(f"Ability service {endpoint} returned invalid JSON") from exc
        try:
            parsed = AbilityResponse.model_validate(data)
        except ValidationError as exc:
            raise AbilityServiceError(
                f"Ability service {endpoint} returned an invalid payload",
                status=response.status_code,
            ) from exc
        logger.debug("Ability %s %s response: %s", params.action.value, endpoint, data)
        return parsed
