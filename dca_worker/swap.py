"""Two-phase approve then swap orchestration against the ability service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .abilities import AbilityAction, AbilityContext, AbilityParams, AbilityResponse
from .chain.handles import OperationHandle, handle_from_result
from .errors import PhaseExecutionFailed, PrecheckFailed

logger = logging.getLogger(__name__)

_RESULT_PREFIX = {
    AbilityAction.APPROVE: "approval",
    AbilityAction.SWAP: "swap",
}


class AbilityService(Protocol):
    async def precheck(self, params: AbilityParams, context: AbilityContext) -> AbilityResponse:
        ...

    async def execute(self, params: AbilityParams, context: AbilityContext) -> AbilityResponse:
        ...


class Waiter(Protocol):
    async def wait(self, handle: OperationHandle) -> str:
        ...


@dataclass(frozen=True)
class SwapRequest:
    token_in: str
    token_out: str
    amount_in: int
    delegator_address: str


@dataclass(frozen=True)
class SwapSubmission:
    """Handles of the submitted phases; ``approval`` is None when no allowance change was needed."""

    swap: OperationHandle
    approval: Optional[OperationHandle] = None


@dataclass(frozen=True)
class SponsorshipSettings:
    enabled: bool = False
    api_key: Optional[str] = None
    policy_id: Optional[str] = None


class SwapOrchestrator:
    """Grant the allowance, wait for it to settle, then submit the swap.

    Nothing is retried here; a failed phase fails the whole run.
    """

    def __init__(
        self,
        *,
        abilities: AbilityService,
        waiter: Waiter,
        rpc_url: str,
        sponsorship: Optional[SponsorshipSettings] = None,
    ) -> None:
        self._abilities = abilities
        self._waiter = waiter
        self._rpc_url = rpc_url
        self._sponsorship = sponsorship or SponsorshipSettings()

    def _params(self, request: SwapRequest, action: AbilityAction) -> AbilityParams:
        return AbilityParams(
            token_in=request.token_in,
            token_out=request.token_out,
            action=action,
            amount_in=str(request.amount_in),
            rpc_url=self._rpc_url,
            gas_sponsor=self._sponsorship.enabled,
            gas_sponsor_api_key=self._sponsorship.api_key,
            gas_sponsor_policy_id=self._sponsorship.policy_id,
        )

    async def _run_phase(
        self,
        request: SwapRequest,
        action: AbilityAction,
        context: AbilityContext,
    ) -> Optional[OperationHandle]:
        params = self._params(request, action)
        phase = action.value

        precheck = await self._abilities.precheck(params, context)
        if not precheck.success:
            raise PrecheckFailed(phase, precheck.reason)

        execution = await self._abilities.execute(params, context)
        if not execution.success:
            raise PhaseExecutionFailed(phase, execution.reason)
        return handle_from_result(execution.result, _RESULT_PREFIX[action])

    async def run(self, request: SwapRequest) -> SwapSubmission:
        """Perform approve and swap, returning both phases' handles.

        Only the approval is waited on here; settling the swap is the caller's job.
        """

        if request.amount_in <= 0:
            raise ValueError("amount_in must be positive")
        context = AbilityContext(delegator_address=request.delegator_address)

        approve_handle = await self._run_phase(request, AbilityAction.APPROVE, context)
        if approve_handle is not None:
            logger.debug("Waiting for approval %s to be mined...", approve_handle.hash)
            await self._waiter.wait(approve_handle)
            logger.debug("Approval transaction mined successfully")
        else:
            logger.debug("Approval already sufficient, no transaction needed")

        swap_handle = await self._run_phase(request, AbilityAction.SWAP, context)
        if swap_handle is None:
            raise PhaseExecutionFailed("swap", "execution service returned no operation hash")
        return SwapSubmission(swap=swap_handle, approval=approve_handle)
