"""
Agent Lifecycle Manager.

Owns the agent state machine and run bookkeeping:

    draft ──activate──> active ──pause──> paused
                          ^                 │
                          └─────resume──────┘
    active/paused ──disable──> disabled
    any state ──delete──> (gone, runs and logs cascade)

Runs: at most one pending/running run per agent. ``record_run_start``
goes through the store's compare-and-swap so concurrent callers get
exactly one winner; the rest see ``RunAlreadyInProgressError``.
"""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any, Mapping, Optional

from ..core.config import get_settings
from ..core.errors import (
    AgentNotFoundError,
    AgentNotRunnableError,
    AppError,
    ConcurrentModificationError,
    ErrorCode,
    InvalidTransitionError,
    RunAlreadyFinishedError,
    RunAlreadyInProgressError,
    RunNotFoundError,
)
from ..models.agent import (
    AgentAction,
    AgentDefinition,
    AgentLogEntry,
    AgentRun,
    AgentStatus,
    LogLevel,
    RunOutcome,
    RunTrigger,
)
from .agent_store import AgentStore
from .agent_validator import AgentValidator
from .strategy_catalog import StrategyCatalog, get_strategy_catalog
from .trigger_evaluator import TriggerEvaluator

logger = logging.getLogger(__name__)

# (current status, action) -> new status
TRANSITIONS: dict[tuple[AgentStatus, AgentAction], AgentStatus] = {
    (AgentStatus.DRAFT, AgentAction.ACTIVATE): AgentStatus.ACTIVE,
    (AgentStatus.ACTIVE, AgentAction.PAUSE): AgentStatus.PAUSED,
    (AgentStatus.PAUSED, AgentAction.RESUME): AgentStatus.ACTIVE,
    (AgentStatus.ACTIVE, AgentAction.DISABLE): AgentStatus.DISABLED,
    (AgentStatus.PAUSED, AgentAction.DISABLE): AgentStatus.DISABLED,
}


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(UTC)


class AgentLifecycleManager:
    """State machine and run recorder for scheduled agents"""

    def __init__(
        self,
        store: AgentStore,
        catalog: Optional[StrategyCatalog] = None,
        validator: Optional[AgentValidator] = None,
        evaluator: Optional[TriggerEvaluator] = None,
        max_backoff_seconds: Optional[int] = None,
    ):
        self.store = store
        self.catalog = catalog or get_strategy_catalog()
        self.validator = validator or AgentValidator(self.catalog)
        self.evaluator = evaluator or TriggerEvaluator()
        self.max_backoff_seconds = (
            max_backoff_seconds
            if max_backoff_seconds is not None
            else get_settings().run_retry_max_backoff_seconds
        )

    # ==================== Definitions ====================

    async def create_agent(
        self,
        raw: Mapping[str, Any],
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> AgentDefinition:
        """Validate a submission and store it as a DRAFT agent"""
        agent = self.validator.validate(raw, owner_id, _now(now))
        await self.store.save_agent(agent)
        await self._log(agent.id, f"Agent '{agent.name}' created", now=agent.created_at)
        logger.info(f"Agent {agent.id} created by {owner_id} ({agent.strategy_id}, {agent.schedule})")
        return agent

    async def get_agent(self, agent_id: str, owner_id: Optional[str] = None) -> AgentDefinition:
        """
        Load an agent, enforcing ownership when ``owner_id`` is given.

        Raises:
            AgentNotFoundError: If missing or owned by someone else
        """
        agent = await self.store.get_agent(agent_id)
        if agent is None or (owner_id is not None and agent.owner_id != owner_id):
            raise AgentNotFoundError(agent_id)
        return agent

    async def list_agents(
        self,
        owner_id: str,
        status: Optional[AgentStatus] = None,
    ) -> list[AgentDefinition]:
        return await self.store.list_agents(owner_id=owner_id, status=status)

    async def update_agent(
        self,
        agent_id: str,
        owner_id: str,
        patch: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> AgentDefinition:
        """
        Edit an agent's definition.

        Raises:
            AgentNotFoundError: If missing or not owned
            InvalidTransitionError: If the agent is disabled
            AgentValidationError: If the edited definition is invalid
            ConcurrentModificationError: If the status changed meanwhile
        """
        now = _now(now)
        agent = await self.get_agent(agent_id, owner_id)
        if agent.status == AgentStatus.DISABLED:
            raise InvalidTransitionError(agent.status.value, "edit")

        updated = self.validator.validate_update(agent, patch, now)
        if (updated.schedule, updated.timezone) != (agent.schedule, agent.timezone):
            updated.next_run_at = self._next_run_at(updated, now)

        if not await self.store.save_agent(updated, expected_status=agent.status):
            raise ConcurrentModificationError(agent_id)
        await self._log(agent_id, "Agent definition updated", now=now)
        return updated

    async def delete_agent(self, agent_id: str, owner_id: str) -> None:
        """Delete an agent in any state, cascading its runs and logs"""
        await self.get_agent(agent_id, owner_id)
        if not await self.store.delete_agent(agent_id):
            raise AgentNotFoundError(agent_id)
        logger.info(f"Agent {agent_id} deleted by {owner_id}")

    # ==================== State Machine ====================

    async def transition(
        self,
        agent_id: str,
        action: AgentAction,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> AgentDefinition:
        """
        Apply a lifecycle action.

        Raises:
            AgentNotFoundError: If missing or not owned
            InvalidTransitionError: If the edge is not allowed
            AgentValidationError: If activation finds the definition invalid
            ConcurrentModificationError: If the status changed meanwhile
        """
        now = _now(now)
        action = AgentAction(action)
        agent = await self.get_agent(agent_id, owner_id)

        target = TRANSITIONS.get((agent.status, action))
        if target is None:
            raise InvalidTransitionError(agent.status.value, action.value)

        if action == AgentAction.ACTIVATE:
            # Strategy must still be in the catalog and the rest still valid
            self.catalog.resolve(agent.strategy_id)
            self.validator.check_definition(agent, now)

        previous = agent.status
        updated = agent.model_copy(update={
            "status": target,
            "updated_at": max(now, agent.updated_at),
        })
        if action == AgentAction.ACTIVATE:
            updated.activated_at = now
        elif action == AgentAction.RESUME:
            updated.resumed_at = now

        if target == AgentStatus.ACTIVE:
            updated.next_run_at = self._next_run_at(updated, now)
        else:
            updated.next_run_at = None

        if not await self.store.save_agent(updated, expected_status=previous):
            raise ConcurrentModificationError(agent_id)

        await self._log(
            agent_id,
            f"Status changed {previous.value} -> {target.value}",
            context={"action": action.value},
            now=now,
        )
        logger.info(f"Agent {agent_id}: {previous.value} -> {target.value} ({action.value})")
        return updated

    # ==================== Runs ====================

    async def record_run_start(
        self,
        agent_id: str,
        now: Optional[datetime] = None,
        trigger: RunTrigger = RunTrigger.SCHEDULE,
    ) -> AgentRun:
        """
        Create the agent's next PENDING run.

        Raises:
            AgentNotFoundError: If the agent does not exist
            AgentNotRunnableError: If the agent is not ACTIVE
            RunAlreadyInProgressError: If a run is already pending or running
        """
        now = _now(now)
        agent = await self.get_agent(agent_id)
        if agent.status != AgentStatus.ACTIVE:
            raise AgentNotRunnableError(agent_id, agent.status.value)

        eligible = self.evaluator.earliest_eligible(agent)
        scheduled_for = min(eligible, now) if eligible is not None else now
        run = AgentRun(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            trigger=trigger,
            scheduled_for=scheduled_for,
            started_at=now,
            outcome=RunOutcome.PENDING,
        )

        agent.last_run_at = now
        agent.next_run_at = self._next_run_at(agent, now)
        agent.updated_at = max(now, agent.updated_at)

        if not await self.store.start_run(agent, run):
            current = await self.get_agent(agent_id)
            if current.status != AgentStatus.ACTIVE:
                raise AgentNotRunnableError(agent_id, current.status.value)
            raise RunAlreadyInProgressError(agent_id)

        await self._log(agent_id, "Run started", run_id=run.id, context={"trigger": trigger.value}, now=now)
        return run

    async def claim_run(self, run_id: str, now: Optional[datetime] = None) -> AgentRun:
        """
        Mark a PENDING run as RUNNING for an executor.

        Raises:
            RunNotFoundError: If the run does not exist
            RunAlreadyFinishedError: If the run already has a terminal outcome
        """
        now = _now(now)
        run = await self._get_run(run_id)
        if run.outcome.is_terminal:
            raise RunAlreadyFinishedError(run_id, run.outcome.value, RunOutcome.RUNNING.value)
        if run.outcome == RunOutcome.RUNNING:
            return run

        run.outcome = RunOutcome.RUNNING
        run.attempts += 1
        run.started_at = now
        await self.store.save_run(run)
        return run

    async def record_run_outcome(
        self,
        run_id: str,
        outcome: RunOutcome,
        signal_ids: Optional[list[str]] = None,
        error_detail: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AgentRun:
        """
        Record a run's terminal outcome and release the agent's run slot.

        Recording the same outcome twice is a no-op.

        Raises:
            AppError: If ``outcome`` is not terminal
            RunNotFoundError: If the run does not exist
            RunAlreadyFinishedError: If a different outcome was already recorded
        """
        now = _now(now)
        outcome = RunOutcome(outcome)
        if not outcome.is_terminal:
            raise AppError(
                code=ErrorCode.INVALID_INPUT,
                message=f"'{outcome.value}' is not a terminal run outcome",
                status_code=400,
            )

        run = await self._get_run(run_id)
        if run.outcome.is_terminal:
            if run.outcome == outcome:
                return run
            raise RunAlreadyFinishedError(run_id, run.outcome.value, outcome.value)

        run.outcome = outcome
        run.finished_at = max(now, run.started_at)
        if outcome == RunOutcome.SUCCEEDED:
            run.generated_signal_ids = list(signal_ids or [])
        run.error_detail = error_detail if outcome != RunOutcome.SUCCEEDED else None
        await self.store.finish_run(run)

        level = LogLevel.ERROR if outcome == RunOutcome.FAILED else LogLevel.INFO
        await self._log(
            run.agent_id,
            f"Run {outcome.value}",
            run_id=run_id,
            level=level,
            context={
                "signals": len(run.generated_signal_ids),
                "error": run.error_detail,
            },
            now=now,
        )
        return run

    async def record_run_failure(
        self,
        run_id: str,
        error_detail: str,
        now: Optional[datetime] = None,
    ) -> AgentRun:
        """
        Handle a failed attempt: retry with exponential backoff while the
        agent's ``max_attempts`` allows, otherwise record FAILED.
        """
        now = _now(now)
        run = await self._get_run(run_id)
        if run.outcome.is_terminal:
            raise RunAlreadyFinishedError(run_id, run.outcome.value, RunOutcome.FAILED.value)

        agent = await self.store.get_agent(run.agent_id)
        max_attempts = agent.max_attempts if agent else 1

        if run.attempts < max_attempts:
            backoff = min(self.max_backoff_seconds, 2 ** run.attempts)
            run.outcome = RunOutcome.PENDING
            run.scheduled_for = now + timedelta(seconds=backoff)
            run.error_detail = error_detail
            await self.store.save_run(run)
            await self._log(
                run.agent_id,
                f"Run attempt {run.attempts} failed, retrying in {backoff}s",
                run_id=run_id,
                level=LogLevel.WARN,
                context={"error": error_detail},
                now=now,
            )
            return run

        return await self.record_run_outcome(
            run_id, RunOutcome.FAILED, error_detail=error_detail, now=now
        )

    async def release_stale_runs(self, now: Optional[datetime] = None) -> list[AgentRun]:
        """
        Fail the attempt of every RUNNING run older than its agent's
        ``max_runtime_seconds``.

        Such runs were claimed by an executor that died before recording
        an outcome. Each goes through ``record_run_failure``, so it is
        retried or ends FAILED, and the agent's run slot is not held
        forever.
        """
        now = _now(now)
        released: list[AgentRun] = []
        for run in await self.store.list_running_runs(now):
            agent = await self.store.get_agent(run.agent_id)
            limit = agent.max_runtime_seconds if agent else 0
            if run.started_at + timedelta(seconds=limit) > now:
                continue
            logger.warning(f"Run {run.id}: no outcome {limit}s after claim, releasing")
            released.append(await self.record_run_failure(
                run.id, f"run abandoned after {limit}s without an outcome", now=now
            ))
        return released

    async def list_runs(self, agent_id: str, owner_id: str, limit: int = 10) -> list[AgentRun]:
        await self.get_agent(agent_id, owner_id)
        return await self.store.list_runs(agent_id, limit)

    async def list_logs(self, agent_id: str, owner_id: str, limit: int = 50) -> list[AgentLogEntry]:
        await self.get_agent(agent_id, owner_id)
        return await self.store.list_logs(agent_id, limit)

    # ==================== Helpers ====================

    async def _get_run(self, run_id: str) -> AgentRun:
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _next_run_at(self, agent: AgentDefinition, now: datetime) -> Optional[datetime]:
        if agent.status != AgentStatus.ACTIVE:
            return None
        return self.evaluator.next_run_after(agent, now)

    async def _log(
        self,
        agent_id: str,
        message: str,
        run_id: Optional[str] = None,
        level: LogLevel = LogLevel.INFO,
        context: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> None:
        await self.store.append_log(AgentLogEntry(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            run_id=run_id,
            level=level,
            message=message,
            context=context,
            created_at=_now(now),
        ))
