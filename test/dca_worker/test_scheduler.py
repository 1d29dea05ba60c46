import asyncio
from typing import List

import pytest

from dca_worker.errors import ConfirmationTimeout, PrecheckFailed, UnexpectedFailure
from dca_worker.models import Job, ScheduleParams
from dca_worker.scheduler import JobDispatcher, RetryPolicy, is_retryable
from dca_worker.store import MemoryJobStore

HOUR = 3600.0


def _job(job_id: str = "job-1") -> Job:
    params = ScheduleParams.model_validate(
        {
            "app": {"id": 7, "version": 1},
            "pkpInfo": {"ethAddress": "0x" + "ab" * 20, "publicKey": "0x04", "tokenId": "42"},
            "purchaseAmount": "10",
            "purchaseIntervalHuman": "hourly",
            "tokenIn": {"address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "decimals": 6, "symbol": "USDC"},
            "tokenOut": {"address": "0x4200000000000000000000000000000000000006", "decimals": 18, "symbol": "WETH"},
        }
    )
    return Job(id=job_id, params=params, next_run_at=0.0)


def _dispatcher(jobs: MemoryJobStore, *, concurrency: int = 2, attempts: int = 1) -> JobDispatcher:
    return JobDispatcher(
        jobs=jobs,
        concurrency=concurrency,
        retry=RetryPolicy(attempts=attempts, backoff=0),
        clock=lambda: 500.0,
    )


def test_dispatch_is_single_flight_per_job():
    jobs = MemoryJobStore()
    dispatcher = _dispatcher(jobs)
    release = asyncio.Event()
    runs: List[str] = []

    async def runner(job: Job) -> None:
        runs.append(job.id)
        await release.wait()

    async def scenario():
        first = dispatcher.dispatch(_job(), runner)
        second = dispatcher.dispatch(_job(), runner)
        await asyncio.sleep(0)
        running = dispatcher.is_running("job-1")
        release.set()
        await dispatcher.drain()
        return first, second, running

    assert asyncio.run(scenario()) == (True, False, True)
    assert runs == ["job-1"]
    assert not dispatcher.is_running("job-1")


def test_concurrency_is_bounded():
    dispatcher = _dispatcher(MemoryJobStore(), concurrency=2)
    active = 0
    peak = 0

    async def runner(job: Job) -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    async def scenario() -> None:
        for index in range(6):
            dispatcher.dispatch(_job(f"job-{index}"), runner)
        await dispatcher.drain()

    asyncio.run(scenario())
    assert peak == 2


def test_successful_run_advances_schedule():
    jobs = MemoryJobStore()
    job = _job()
    job.fail_count = 2
    job.last_error = "earlier"

    async def runner(job: Job) -> None:
        return None

    dispatcher = _dispatcher(jobs)

    async def scenario() -> None:
        dispatcher.dispatch(job, runner)
        await dispatcher.drain()

    asyncio.run(scenario())

    saved = jobs.load("job-1")
    assert saved is not None
    assert saved.next_run_at == 500.0 + HOUR
    assert saved.last_run_at == 500.0 and saved.last_finished_at == 500.0
    assert saved.fail_count == 0 and saved.last_error is None


def test_pre_submission_failures_are_retried():
    jobs = MemoryJobStore()
    dispatcher = _dispatcher(jobs, attempts=3)
    calls = 0

    async def runner(job: Job) -> None:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise PrecheckFailed("swap", "no liquidity yet")

    async def scenario() -> None:
        dispatcher.dispatch(_job(), runner)
        await dispatcher.drain()

    asyncio.run(scenario())

    assert calls == 3
    assert dispatcher.failures == {}
    assert jobs.load("job-1").fail_count == 0


@pytest.mark.parametrize(
    "error",
    [ConfirmationTimeout("0xop", 120.0), UnexpectedFailure("RuntimeError: lost", retryable=False)],
)
def test_post_submission_failures_are_never_retried(error):
    jobs = MemoryJobStore()
    dispatcher = _dispatcher(jobs, attempts=5)
    calls = 0

    async def runner(job: Job) -> None:
        nonlocal calls
        calls += 1
        raise error

    async def scenario() -> None:
        dispatcher.dispatch(_job(), runner)
        await dispatcher.drain()

    asyncio.run(scenario())

    assert calls == 1
    assert dispatcher.failures == {"job-1": error}
    saved = jobs.load("job-1")
    assert saved.fail_count == 1
    assert saved.last_error == str(error)
    assert saved.next_run_at == 500.0 + HOUR


def test_retry_budget_is_respected():
    dispatcher = _dispatcher(MemoryJobStore(), attempts=2)
    calls = 0

    async def runner(job: Job) -> None:
        nonlocal calls
        calls += 1
        raise PrecheckFailed("approve", "busy")

    async def scenario() -> None:
        dispatcher.dispatch(_job(), runner)
        await dispatcher.drain()

    asyncio.run(scenario())
    assert calls == 2


def test_retryable_classification():
    assert is_retryable(UnexpectedFailure("x", retryable=True))
    assert not is_retryable(RuntimeError("plain"))
    assert RetryPolicy(backoff=2.0).delay(3) == 8.0


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        JobDispatcher(jobs=MemoryJobStore(), concurrency=0)
