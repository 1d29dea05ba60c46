import asyncio
from decimal import Decimal
from typing import List, Optional

import pytest

from dca_worker import pipeline
from dca_worker.chain import DirectTransaction, SponsoredOperation
from dca_worker.errors import (
    AuthorizationRevoked,
    ConfirmationTimeout,
    InsufficientBalance,
    PrecheckFailed,
    ScheduledSwapError,
    StoreError,
    UnexpectedFailure,
)
from dca_worker.models import Job, PurchaseRecord, ScheduleParams, TokenQuote
from dca_worker.observability import LoggingScope
from dca_worker.pipeline import ExecutionDependencies, execute_scheduled_swap
from dca_worker.store import MemoryJobStore, MemoryPurchaseStore
from dca_worker.swap import SwapSubmission

USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH = "0x4200000000000000000000000000000000000006"
OWNER = "0x" + "ab" * 20


def _job(amount: str = "25", version: int = 3) -> Job:
    params = ScheduleParams.model_validate(
        {
            "app": {"id": 7, "version": version},
            "pkpInfo": {"ethAddress": OWNER, "publicKey": "0x04abc", "tokenId": "0x2a"},
            "purchaseAmount": amount,
            "purchaseIntervalHuman": "1 day",
            "tokenIn": {"address": USDC, "decimals": 6, "symbol": "USDC"},
            "tokenOut": {"address": WETH, "decimals": 18, "symbol": "WETH"},
        }
    )
    return Job(id="job-1", params=params)


class StubBalances:
    def __init__(self, balance: int, error: Exception | None = None) -> None:
        self.balance = balance
        self.error = error
        self.calls: List[tuple] = []

    async def balance_of(self, token: str, owner: str) -> int:
        self.calls.append((token, owner))
        if self.error is not None:
            raise self.error
        return self.balance


class StubPermissions:
    def __init__(self, version: Optional[int], error: Exception | None = None) -> None:
        self.version = version
        self.error = error
        self.calls: List[tuple] = []

    async def permitted_version(self, pkp_token_id: str, app_id: int) -> Optional[int]:
        self.calls.append((pkp_token_id, app_id))
        if self.error is not None:
            raise self.error
        return self.version


class StubTokens:
    def __init__(self, price: Optional[str] = "1.0000", error: Exception | None = None) -> None:
        self.price = price
        self.error = error

    async def get_by_address(self, address: str) -> Optional[TokenQuote]:
        if self.error is not None:
            raise self.error
        return TokenQuote(address=address, decimals=6, symbol="USDC", price=self.price)


class StubOrchestrator:
    def __init__(self, handle=None, error: Exception | None = None, approval=None) -> None:
        self.handle = handle or SponsoredOperation("0xuserop")
        self.approval = approval
        self.error = error
        self.requests: List = []

    async def run(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return SwapSubmission(swap=self.handle, approval=self.approval)


class StubWaiter:
    def __init__(self, tx_hash: str = "0xsettled", error: Exception | None = None) -> None:
        self.tx_hash = tx_hash
        self.error = error
        self.handles: List = []

    async def wait(self, handle) -> str:
        self.handles.append(handle)
        if self.error is not None:
            raise self.error
        return self.tx_hash


class FailingPurchaseStore(MemoryPurchaseStore):
    def append(self, record: PurchaseRecord) -> None:
        raise StoreError("disk full")


def _deps(
    *,
    balances=None,
    permissions=None,
    tokens=None,
    orchestrator=None,
    waiter=None,
    purchases=None,
    jobs=None,
) -> ExecutionDependencies:
    return ExecutionDependencies(
        balances=balances or StubBalances(100_000_000),
        permissions=permissions or StubPermissions(3),
        tokens=tokens or StubTokens(),
        orchestrator=orchestrator or StubOrchestrator(),
        waiter=waiter or StubWaiter(),
        purchases=purchases if purchases is not None else MemoryPurchaseStore(),
        jobs=jobs if jobs is not None else MemoryJobStore(),
        app_id=7,
    )


def _run(job: Job, deps: ExecutionDependencies, scope: LoggingScope | None = None):
    return asyncio.run(execute_scheduled_swap(job, scope or LoggingScope(job_id=job.id), deps))


def test_successful_run_persists_one_record():
    deps = _deps()
    scope = LoggingScope(job_id="job-1")

    record = _run(_job(), deps, scope)

    assert deps.orchestrator.requests[0].amount_in == 25_000_000
    assert deps.orchestrator.requests[0].delegator_address == OWNER
    assert deps.waiter.handles == [SponsoredOperation("0xuserop")]
    assert record.purchase_amount == "25.00"
    assert record.tx_hash == "0xsettled"
    assert record.coin_address == WETH
    assert record.symbol == "WETH"
    assert record.schedule_id == "job-1"
    assert deps.purchases.list_for(OWNER) == [record]
    assert deps.permissions.calls == [("0x2a", 7)]
    assert scope.captured == []


def test_breadcrumbs_track_intermediate_values():
    scope = LoggingScope(job_id="job-1")
    orchestrator = StubOrchestrator(DirectTransaction("0xswap"), approval=DirectTransaction("0xapprove"))
    _run(_job(), _deps(orchestrator=orchestrator), scope)

    data = [crumb.data for crumb in scope.breadcrumbs]
    assert data[0]["tokenInBalance"] == "100.0"
    assert data[1]["tokenInAmount"] == "25.0"
    assert data[2]["appVersionToRun"] == 3
    assert data[3]["approvalOperationHash"] == "0xapprove"
    assert data[3]["swapOperationHash"] == "0xswap"
    assert data[4]["swapHash"] == "0xsettled"


def test_insufficient_balance_stops_before_execution():
    deps = _deps(balances=StubBalances(10_000_000))
    scope = LoggingScope(job_id="job-1")

    with pytest.raises(InsufficientBalance) as excinfo:
        _run(_job(), deps, scope)

    assert excinfo.value.balance == "10.0"
    assert excinfo.value.required == "25.0"
    assert deps.orchestrator.requests == []
    assert deps.purchases.list_for(OWNER) == []
    assert scope.captured == [excinfo.value]


def test_revoked_authorization_stops_before_any_phase():
    deps = _deps(permissions=StubPermissions(None))

    with pytest.raises(AuthorizationRevoked) as excinfo:
        _run(_job(version=3), deps)

    assert excinfo.value.stored_version == 3
    assert deps.balances.calls
    assert deps.orchestrator.requests == []
    assert deps.purchases.list_for(OWNER) == []


def test_version_upgrade_is_persisted_before_swap():
    jobs = MemoryJobStore()
    deps = _deps(permissions=StubPermissions(5), jobs=jobs)
    job = _job(version=3)

    _run(job, deps)

    stored = jobs.load("job-1")
    assert stored is not None
    assert stored.params.app.version == 5
    assert job.params.app.version == 5


def test_unchanged_version_is_not_saved():
    jobs = MemoryJobStore()
    _run(_job(version=3), _deps(jobs=jobs))
    assert jobs.load("job-1") is None


def test_missing_price_treats_amount_as_token_units():
    deps = _deps(tokens=StubTokens(price=None))

    _run(_job(), deps)

    assert deps.orchestrator.requests[0].amount_in == 25_000_000


def _boom_conversion(*args, **kwargs):
    raise ArithmeticError("conversion exploded")


@pytest.mark.parametrize(
    "step",
    ["balance", "permission", "quote", "conversion", "insufficient", "revoked", "orchestrate", "confirm", "persist"],
)
def test_failure_at_any_step_writes_no_record(step, monkeypatch):
    purchases = FailingPurchaseStore() if step == "persist" else MemoryPurchaseStore()
    overrides = {
        "balance": {"balances": StubBalances(0, error=ConnectionError("rpc down"))},
        "permission": {"permissions": StubPermissions(3, error=ConnectionError("registry down"))},
        "quote": {"tokens": StubTokens(error=ConnectionError("token list down"))},
        "conversion": {},
        "insufficient": {"balances": StubBalances(1)},
        "revoked": {"permissions": StubPermissions(None)},
        "orchestrate": {"orchestrator": StubOrchestrator(error=PrecheckFailed("swap", "no route"))},
        "confirm": {"waiter": StubWaiter(error=ConfirmationTimeout("0xuserop", 1.0))},
        "persist": {},
    }[step]
    if step == "conversion":
        monkeypatch.setattr(pipeline, "usd_to_token_amount", _boom_conversion)
    deps = _deps(purchases=purchases, **overrides)
    scope = LoggingScope(job_id="job-1")

    with pytest.raises(ScheduledSwapError) as excinfo:
        _run(_job(), deps, scope)

    assert purchases.list_for(OWNER) == []
    assert scope.captured == [excinfo.value]


def test_unclassified_errors_are_wrapped():
    original = ConnectionError("rpc down")
    deps = _deps(balances=StubBalances(0, error=original))

    with pytest.raises(UnexpectedFailure) as excinfo:
        _run(_job(), deps)

    assert excinfo.value.__cause__ is original
    assert "ConnectionError" in str(excinfo.value)
    assert excinfo.value.code == "UNEXPECTED_FAILURE"


def test_taxonomy_errors_propagate_unchanged():
    error = ConfirmationTimeout("0xuserop", 120.0)
    deps = _deps(waiter=StubWaiter(error=error))

    with pytest.raises(ConfirmationTimeout) as excinfo:
        _run(_job(), deps)

    assert excinfo.value is error


def test_reads_run_concurrently():
    started: List[str] = []
    gate = asyncio.Event()

    class GatedBalances(StubBalances):
        async def balance_of(self, token: str, owner: str) -> int:
            started.append("balance")
            await gate.wait()
            return self.balance

    class GatedPermissions(StubPermissions):
        async def permitted_version(self, pkp_token_id: str, app_id: int) -> Optional[int]:
            started.append("permission")
            await gate.wait()
            return self.version

    class ReleasingTokens(StubTokens):
        async def get_by_address(self, address: str) -> Optional[TokenQuote]:
            started.append("quote")
            gate.set()
            return await super().get_by_address(address)

    deps = _deps(
        balances=GatedBalances(100_000_000),
        permissions=GatedPermissions(3),
        tokens=ReleasingTokens(),
    )

    record = _run(_job(), deps)

    assert sorted(started) == ["balance", "permission", "quote"]
    assert record.purchase_amount == "25.00"


def test_fractional_purchase_amount_is_formatted():
    deps = _deps()
    record = _run(_job(amount="12.5"), deps)
    assert record.purchase_amount == "12.50"
    assert deps.orchestrator.requests[0].amount_in == int(Decimal("12.5") * 10**6)


class BrokenSinkScope(LoggingScope):
    def __init__(self, fail_on: str) -> None:
        super().__init__(job_id="job-1")
        self.fail_on = fail_on

    def add_breadcrumb(self, message=None, *, data=None, category=None) -> None:
        if self.fail_on == "breadcrumb":
            raise RuntimeError("sink down")
        super().add_breadcrumb(message, data=data, category=category)

    def capture_exception(self, exc: BaseException) -> None:
        raise RuntimeError("sink down")


def test_failing_breadcrumbs_do_not_interrupt_the_run():
    deps = _deps()

    record = _run(_job(), deps, BrokenSinkScope("breadcrumb"))

    assert len(deps.orchestrator.requests) == 1
    assert deps.purchases.list_for(OWNER) == [record]


def test_failing_capture_keeps_the_original_error():
    deps = _deps(balances=StubBalances(1))

    with pytest.raises(InsufficientBalance):
        _run(_job(), deps, BrokenSinkScope("capture"))


@pytest.mark.parametrize(
    "overrides, retryable",
    [
        ({"balances": StubBalances(0, error=ConnectionError("rpc down"))}, True),
        ({"orchestrator": StubOrchestrator(error=ConnectionError("service down"))}, False),
        ({"waiter": StubWaiter(error=ConnectionError("node down"))}, False),
    ],
)
def test_wrapped_failures_are_retryable_only_before_submission(overrides, retryable):
    with pytest.raises(UnexpectedFailure) as excinfo:
        _run(_job(), _deps(**overrides))
    assert excinfo.value.retryable is retryable


def test_taxonomy_retry_flags():
    assert PrecheckFailed("swap", "no route").retryable
    assert not ConfirmationTimeout("0xop", 1.0).retryable
    assert not AuthorizationRevoked(address=OWNER, stored_version=1).retryable
