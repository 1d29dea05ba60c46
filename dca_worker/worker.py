"""Composition root: wire clients together and drive due jobs."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional

from .abilities import AbilityClient
from .chain import BundlerClient, ChainClient, ConfirmationOptions, OperationWaiter, build_web3
from .config import WorkerSettings
from .models import Job, PurchaseRecord
from .observability import LoggingScope, ObservabilityScope
from .pipeline import ExecutionDependencies, execute_scheduled_swap
from .scheduler import JobDispatcher, RetryPolicy
from .store import JobStore, get_job_store, get_purchase_store
from .swap import SponsorshipSettings, SwapOrchestrator
from .tokens import TokenCache, TokenRegistry
from .versions import PermissionReader

LOGGER = logging.getLogger(__name__)

ScopeFactory = Callable[[Job], ObservabilityScope]


def _default_scope(job: Job) -> ObservabilityScope:
    return LoggingScope(job_id=job.id)


class DCAWorker:
    """Dispatch due jobs from the job store through the execution pipeline."""

    def __init__(
        self,
        *,
        deps: ExecutionDependencies,
        jobs: JobStore,
        dispatcher: JobDispatcher,
        tokens: TokenCache,
        scope_factory: ScopeFactory = _default_scope,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.deps = deps
        self.jobs = jobs
        self.dispatcher = dispatcher
        self.tokens = tokens
        self._scope_factory = scope_factory
        self._clock = clock

    async def run_job(self, job: Job) -> PurchaseRecord:
        return await execute_scheduled_swap(job, self._scope_factory(job), self.deps)

    async def run_once(self, now: Optional[float] = None) -> int:
        """Dispatch every due job and wait for them; return how many started."""

        now = self._clock() if now is None else now
        due = await asyncio.to_thread(self.jobs.due, now)
        started = sum(1 for job in due if self.dispatcher.dispatch(job, self.run_job))
        await self.dispatcher.drain()
        if started:
            LOGGER.info("Processed %d due job(s)", started)
        return started

    async def run_forever(self, poll_interval: float) -> None:
        LOGGER.info("DCA worker started, polling every %ss", poll_interval)
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                LOGGER.error("Worker iteration failed: %s", exc, exc_info=True)
            await asyncio.sleep(poll_interval)


def build_worker(settings: WorkerSettings) -> DCAWorker:
    """Construct a worker wired to the services named in ``settings``."""

    web3 = build_web3(settings.rpc_url)
    chain = ChainClient(web3)
    bundler = None
    if settings.bundler_url:
        bundler = BundlerClient(settings.bundler_url, headers=settings.bundler_headers)
    waiter = OperationWaiter(
        chain=chain,
        bundler=bundler,
        options=ConfirmationOptions(
            poll_interval=settings.confirm_poll_interval_seconds,
            timeout=settings.confirm_timeout_seconds,
        ),
    )
    orchestrator = SwapOrchestrator(
        abilities=AbilityClient(settings.ability_url, headers=settings.ability_headers),
        waiter=waiter,
        rpc_url=settings.rpc_url,
        sponsorship=SponsorshipSettings(
            enabled=settings.gas_sponsor,
            api_key=settings.gas_sponsor_api_key,
            policy_id=settings.gas_sponsor_policy_id,
        ),
    )
    registry = TokenRegistry(settings.token_list_url, chain_id=settings.chain_id)
    tokens = TokenCache(registry.fetch, ttl=settings.token_cache_ttl_seconds)
    state_dir = Path(settings.state_dir)
    jobs = get_job_store(state_dir)
    deps = ExecutionDependencies(
        balances=chain,
        permissions=PermissionReader(web3, settings.delegation_registry),
        tokens=tokens,
        orchestrator=orchestrator,
        waiter=waiter,
        purchases=get_purchase_store(state_dir),
        jobs=jobs,
        app_id=settings.app_id,
    )
    dispatcher = JobDispatcher(
        jobs=jobs,
        concurrency=settings.concurrency,
        retry=RetryPolicy(attempts=settings.retry_attempts, backoff=settings.retry_backoff_seconds),
    )
    LOGGER.debug("Worker settings: %s", settings.redacted())
    return DCAWorker(deps=deps, jobs=jobs, dispatcher=dispatcher, tokens=tokens)
