"""
Agent Scheduler - periodic driver for scheduled agents.

Each tick does three things:
1. Release: RUNNING runs with no outcome past their agent's
   ``max_runtime_seconds`` are failed so their agents can run again.
2. Enqueue: every ACTIVE agent the trigger evaluator reports as due gets
   a PENDING run via the lifecycle manager.
3. Dispatch: PENDING runs whose ``scheduled_for`` has passed (new runs
   and retries) are claimed and handed to the run executor.

The executor is the signal engine boundary: an async callable that
evaluates the agent's strategy and returns the ids of the signals it
stored. Its wall-clock time is bounded by the agent's
``max_runtime_seconds``; failures and timeouts go through the retry
policy of ``record_run_failure``, and so does a run cancelled by
``stop()``.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import AsyncContextManager, Awaitable, Callable, Optional

from ..core.config import Settings, get_settings
from ..core.errors import AppError, RunAlreadyInProgressError
from ..models.agent import AgentDefinition, AgentRun, AgentStatus, RunOutcome
from ..services.agent_lifecycle import AgentLifecycleManager

logger = logging.getLogger(__name__)

RunExecutor = Callable[[AgentDefinition, AgentRun], Awaitable[list[str]]]

# Yields a lifecycle manager bound to a fresh store/session for one tick
LifecycleFactory = Callable[[], AsyncContextManager[AgentLifecycleManager]]


class AgentScheduler:
    """Enqueues due agents and dispatches their runs to an executor"""

    def __init__(
        self,
        lifecycle_factory: LifecycleFactory,
        executor: RunExecutor,
        settings: Optional[Settings] = None,
    ):
        self._lifecycle_factory = lifecycle_factory
        self._executor = executor
        self._settings = settings or get_settings()
        self._semaphore = asyncio.Semaphore(self._settings.scheduler_max_concurrent_runs)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    # ==================== Loop ====================

    async def start(self) -> None:
        """Start the polling loop in the background."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Agent Scheduler: Started (poll every {self._settings.scheduler_poll_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop the polling loop and wait for it to exit."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Agent Scheduler: Stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Agent Scheduler: tick failed: {e}")
            await asyncio.sleep(self._settings.scheduler_poll_seconds)

    async def tick(self, now: Optional[datetime] = None) -> dict:
        """
        Run one release + enqueue + dispatch pass.

        Returns:
            Counts of released, enqueued and dispatched runs
        """
        now = now or datetime.now(UTC)
        async with self._lifecycle_factory() as lifecycle:
            released = await lifecycle.release_stale_runs(now)
            enqueued = await self.enqueue_due(lifecycle, now)
        dispatched = await self.dispatch_pending(now)
        if released or enqueued or dispatched:
            logger.info(
                f"Agent Scheduler: released={len(released)} "
                f"enqueued={enqueued} dispatched={dispatched}"
            )
        return {"released": len(released), "enqueued": enqueued, "dispatched": dispatched}

    # ==================== Enqueue ====================

    async def enqueue_due(self, lifecycle: AgentLifecycleManager, now: datetime) -> int:
        """Create PENDING runs for every due ACTIVE agent."""
        enqueued = 0
        agents = await lifecycle.store.list_due_agents(
            now, limit=self._settings.scheduler_batch_size
        )
        for agent in agents:
            if not lifecycle.evaluator.is_due(agent, now):
                continue
            try:
                await lifecycle.record_run_start(agent.id, now)
                enqueued += 1
            except RunAlreadyInProgressError:
                logger.debug(f"Agent {agent.id}: run already in flight, not enqueued")
            except AppError as e:
                logger.warning(f"Agent {agent.id}: could not enqueue run: {e.message}")
        return enqueued

    # ==================== Dispatch ====================

    async def dispatch_pending(self, now: datetime) -> int:
        """Claim due PENDING runs and execute them concurrently."""
        async with self._lifecycle_factory() as lifecycle:
            runs = await lifecycle.store.list_pending_runs(
                now, limit=self._settings.scheduler_batch_size
            )

        if not runs:
            return 0

        await asyncio.gather(*(self._execute(run.id) for run in runs))
        return len(runs)

    async def _execute(self, run_id: str) -> None:
        async with self._semaphore:
            async with self._lifecycle_factory() as lifecycle:
                try:
                    await self.execute_run(lifecycle, run_id)
                except AppError:
                    # Already finished or gone; logged by execute_run
                    return

    async def execute_run(self, lifecycle: AgentLifecycleManager, run_id: str) -> AgentRun:
        """
        Execute one run end to end and record its outcome.

        Preconditions are re-checked at execution time: a run whose agent
        is gone from ACTIVE, or whose strategy left the catalog, is
        recorded as SKIPPED.
        """
        try:
            run = await lifecycle.claim_run(run_id, datetime.now(UTC))
        except AppError as e:
            logger.warning(f"Run {run_id}: cannot claim: {e.message}")
            raise

        agent = await lifecycle.store.get_agent(run.agent_id)
        if agent is None or agent.status != AgentStatus.ACTIVE:
            reason = "agent is not active" if agent else "agent no longer exists"
            return await lifecycle.record_run_outcome(
                run.id, RunOutcome.SKIPPED, error_detail=reason, now=datetime.now(UTC)
            )
        if not lifecycle.catalog.contains(agent.strategy_id):
            return await lifecycle.record_run_outcome(
                run.id,
                RunOutcome.SKIPPED,
                error_detail=f"strategy '{agent.strategy_id}' is no longer available",
                now=datetime.now(UTC),
            )

        try:
            signal_ids = await asyncio.wait_for(
                self._executor(agent, run),
                timeout=agent.max_runtime_seconds,
            )
        except asyncio.CancelledError:
            logger.warning(f"Run {run.id}: cancelled during execution")
            await lifecycle.record_run_failure(run.id, "run cancelled", now=datetime.now(UTC))
            raise
        except asyncio.TimeoutError:
            logger.warning(f"Run {run.id}: timed out after {agent.max_runtime_seconds}s")
            return await lifecycle.record_run_failure(
                run.id,
                f"run exceeded {agent.max_runtime_seconds}s",
                now=datetime.now(UTC),
            )
        except Exception as e:
            logger.error(f"Run {run.id}: executor failed: {e}", exc_info=True)
            return await lifecycle.record_run_failure(run.id, str(e), now=datetime.now(UTC))

        return await lifecycle.record_run_outcome(
            run.id,
            RunOutcome.SUCCEEDED,
            signal_ids=list(signal_ids or []),
            now=datetime.now(UTC),
        )


# ==================== Singleton ====================

_scheduler: Optional[AgentScheduler] = None


async def _noop_executor(agent: AgentDefinition, run: AgentRun) -> list[str]:
    """Default executor when no signal engine is wired in"""
    logger.info(f"Run {run.id}: no signal engine configured for agent {agent.id}")
    return []


def get_agent_scheduler(
    executor: Optional[RunExecutor] = None,
    lifecycle_factory: Optional[LifecycleFactory] = None,
) -> AgentScheduler:
    """Get or create the process-wide scheduler backed by the database"""
    global _scheduler
    if _scheduler is None:
        if lifecycle_factory is None:
            from .session_lifecycle import database_lifecycle
            lifecycle_factory = database_lifecycle
        _scheduler = AgentScheduler(
            lifecycle_factory=lifecycle_factory,
            executor=executor or _noop_executor,
        )
    return _scheduler
