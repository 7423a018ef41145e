"""
Agent routes - scheduled agent management.

Agent = Strategy + Symbols + Timeframe + Schedule.
Handles CRUD, lifecycle actions, manual runs and run/log history.
Domain errors propagate as AppError and are rendered by the app's
exception handler.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, status
from pydantic import BaseModel

from ...core.dependencies import CurrentOwnerDep, LifecycleDep
from ...models.agent import (
    AgentAction,
    AgentDefinition,
    AgentLogEntry,
    AgentRun,
    AgentStatus,
    AgentSubmission,
    RunTrigger,
)

router = APIRouter(prefix="/agents", tags=["Agents"])
logger = logging.getLogger(__name__)


# ==================== Response Models ====================

class AgentResponse(BaseModel):
    """Agent response model"""
    id: str
    name: str
    strategy_id: str
    symbols: list[str]
    timeframe: str
    schedule: str
    timezone: str
    risk_parameters: dict[str, float] = {}
    min_confidence: int
    max_attempts: int
    max_runtime_seconds: int

    status: str

    # Timestamps
    created_at: str
    updated_at: str
    activated_at: Optional[str] = None
    resumed_at: Optional[str] = None
    last_run_at: Optional[str] = None
    next_run_at: Optional[str] = None


class RunResponse(BaseModel):
    """Agent run response"""
    id: str
    agent_id: str
    trigger: str
    outcome: str
    attempts: int
    scheduled_for: str
    started_at: str
    finished_at: Optional[str] = None
    generated_signal_ids: list[str] = []
    error_detail: Optional[str] = None


class LogResponse(BaseModel):
    """Agent log entry response"""
    id: str
    run_id: Optional[str] = None
    level: str
    message: str
    context: Optional[dict] = None
    created_at: str


class AgentDetailResponse(AgentResponse):
    """Agent with its most recent runs and logs"""
    recent_runs: list[RunResponse] = []
    recent_logs: list[LogResponse] = []


# ==================== Routes ====================

@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def create_agent(
    data: AgentSubmission,
    lifecycle: LifecycleDep,
    owner_id: CurrentOwnerDep,
):
    """
    Create a new agent in draft state.

    Every invalid field is reported at once under ``details.field_errors``.
    """
    agent = await lifecycle.create_agent(data.to_raw(), owner_id)
    return _agent_to_response(agent)


@router.get("", response_model=list[AgentResponse])
async def list_agents(
    lifecycle: LifecycleDep,
    owner_id: CurrentOwnerDep,
    status_filter: Optional[AgentStatus] = Query(default=None, alias="status"),
):
    """List the caller's agents, newest first"""
    agents = await lifecycle.list_agents(owner_id, status=status_filter)
    return [_agent_to_response(a) for a in agents]


@router.get("/{agent_id}", response_model=AgentDetailResponse)
async def get_agent(
    agent_id: str,
    lifecycle: LifecycleDep,
    owner_id: CurrentOwnerDep,
):
    """Get an agent with its recent runs and logs"""
    agent = await lifecycle.get_agent(agent_id, owner_id)
    runs = await lifecycle.list_runs(agent_id, owner_id, limit=10)
    logs = await lifecycle.list_logs(agent_id, owner_id, limit=20)

    base = _agent_to_response(agent)
    return AgentDetailResponse(
        **base.model_dump(),
        recent_runs=[_run_to_response(r) for r in runs],
        recent_logs=[_log_to_response(entry) for entry in logs],
    )


@router.patch("/{agent_id}", response_model=AgentResponse)
async def update_agent(
    agent_id: str,
    data: AgentSubmission,
    lifecycle: LifecycleDep,
    owner_id: CurrentOwnerDep,
):
    """Edit an agent's definition (not allowed once disabled)"""
    agent = await lifecycle.update_agent(agent_id, owner_id, data.to_raw())
    return _agent_to_response(agent)


@router.post("/{agent_id}/actions/{action}", response_model=AgentResponse)
async def apply_action(
    agent_id: str,
    action: AgentAction,
    lifecycle: LifecycleDep,
    owner_id: CurrentOwnerDep,
):
    """Activate, pause, resume or disable an agent"""
    agent = await lifecycle.transition(agent_id, action, owner_id)
    return _agent_to_response(agent)


@router.post("/{agent_id}/run", response_model=RunResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_now(
    agent_id: str,
    lifecycle: LifecycleDep,
    owner_id: CurrentOwnerDep,
):
    """
    Start a manual run.

    The run is queued as pending and picked up by the scheduler. Answers
    409 when a run is already in flight or the agent is not active.
    """
    await lifecycle.get_agent(agent_id, owner_id)
    run = await lifecycle.record_run_start(agent_id, trigger=RunTrigger.MANUAL)
    logger.info(f"Manual run {run.id} queued for agent {agent_id}")
    return _run_to_response(run)


@router.get("/{agent_id}/runs", response_model=list[RunResponse])
async def list_runs(
    agent_id: str,
    lifecycle: LifecycleDep,
    owner_id: CurrentOwnerDep,
    limit: int = Query(default=10, ge=1, le=100),
):
    """Most recent runs, newest first"""
    runs = await lifecycle.list_runs(agent_id, owner_id, limit=limit)
    return [_run_to_response(r) for r in runs]


@router.get("/{agent_id}/logs", response_model=list[LogResponse])
async def list_logs(
    agent_id: str,
    lifecycle: LifecycleDep,
    owner_id: CurrentOwnerDep,
    limit: int = Query(default=50, ge=1, le=200),
):
    """Most recent log entries, newest first"""
    logs = await lifecycle.list_logs(agent_id, owner_id, limit=limit)
    return [_log_to_response(entry) for entry in logs]


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent(
    agent_id: str,
    lifecycle: LifecycleDep,
    owner_id: CurrentOwnerDep,
):
    """Delete an agent in any state along with its runs and logs"""
    await lifecycle.delete_agent(agent_id, owner_id)


# ==================== Converters ====================

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _agent_to_response(agent: AgentDefinition) -> AgentResponse:
    """Convert agent definition to response"""
    return AgentResponse(
        id=agent.id,
        name=agent.name,
        strategy_id=agent.strategy_id,
        symbols=agent.symbols,
        timeframe=agent.timeframe.value,
        schedule=agent.schedule,
        timezone=agent.timezone,
        risk_parameters=agent.risk_parameters,
        min_confidence=agent.min_confidence,
        max_attempts=agent.max_attempts,
        max_runtime_seconds=agent.max_runtime_seconds,
        status=agent.status.value,
        created_at=agent.created_at.isoformat(),
        updated_at=agent.updated_at.isoformat(),
        activated_at=_iso(agent.activated_at),
        resumed_at=_iso(agent.resumed_at),
        last_run_at=_iso(agent.last_run_at),
        next_run_at=_iso(agent.next_run_at),
    )


def _run_to_response(run: AgentRun) -> RunResponse:
    return RunResponse(
        id=run.id,
        agent_id=run.agent_id,
        trigger=run.trigger.value,
        outcome=run.outcome.value,
        attempts=run.attempts,
        scheduled_for=run.scheduled_for.isoformat(),
        started_at=run.started_at.isoformat(),
        finished_at=_iso(run.finished_at),
        generated_signal_ids=run.generated_signal_ids,
        error_detail=run.error_detail,
    )


def _log_to_response(entry: AgentLogEntry) -> LogResponse:
    return LogResponse(
        id=entry.id,
        run_id=entry.run_id,
        level=entry.level.value,
        message=entry.message,
        context=entry.context,
        created_at=entry.created_at.isoformat(),
    )
