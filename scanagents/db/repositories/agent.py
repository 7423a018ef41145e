"""Agent repository for database operations

SQLAlchemy implementation of the AgentStore port. Agents, their runs
and their logs are stored in ``agents``, ``agent_runs`` and ``agent_logs``.
"""

import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ...models.agent import (
    AgentDefinition,
    AgentLogEntry,
    AgentRun,
    AgentStatus,
    RunOutcome,
)
from ...services.agent_store import AgentStore
from ..models import AgentDB, AgentLogDB, AgentRunDB

# Columns a plain save may write; run bookkeeping goes through start_run
_DEFINITION_FIELDS = (
    "owner_id", "name", "strategy_id", "symbols", "timeframe", "schedule",
    "timezone", "risk_parameters", "min_confidence", "max_attempts",
    "max_runtime_seconds", "status", "activated_at", "resumed_at",
    "next_run_at", "created_at", "updated_at",
)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC (SQLite hands back naive datetimes)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _agent_values(agent: AgentDefinition) -> dict:
    values = agent.model_dump(mode="python", include=set(_DEFINITION_FIELDS))
    values["timeframe"] = agent.timeframe.value
    values["status"] = agent.status.value
    for key in ("activated_at", "resumed_at", "next_run_at", "created_at", "updated_at"):
        values[key] = _utc(values[key])
    return values


def _to_agent(row: AgentDB) -> AgentDefinition:
    return AgentDefinition(
        id=str(row.id),
        owner_id=row.owner_id,
        name=row.name,
        strategy_id=row.strategy_id,
        symbols=list(row.symbols or []),
        timeframe=row.timeframe,
        schedule=row.schedule,
        timezone=row.timezone,
        risk_parameters=dict(row.risk_parameters or {}),
        min_confidence=row.min_confidence,
        max_attempts=row.max_attempts,
        max_runtime_seconds=row.max_runtime_seconds,
        status=row.status,
        activated_at=_utc(row.activated_at),
        resumed_at=_utc(row.resumed_at),
        last_run_at=_utc(row.last_run_at),
        next_run_at=_utc(row.next_run_at),
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _to_run(row: AgentRunDB) -> AgentRun:
    return AgentRun(
        id=str(row.id),
        agent_id=str(row.agent_id),
        trigger=row.trigger,
        scheduled_for=_utc(row.scheduled_for),
        started_at=_utc(row.started_at),
        finished_at=_utc(row.finished_at),
        outcome=row.outcome,
        attempts=row.attempts,
        generated_signal_ids=list(row.generated_signal_ids or []),
        error_detail=row.error_detail,
    )


def _to_log(row: AgentLogDB) -> AgentLogEntry:
    return AgentLogEntry(
        id=str(row.id),
        agent_id=str(row.agent_id),
        run_id=str(row.run_id) if row.run_id else None,
        level=row.level,
        message=row.message,
        context=row.context,
        created_at=_utc(row.created_at),
    )


class AgentRepository(AgentStore):
    """Repository for Agent, AgentRun and AgentLog persistence

    With ``commit=True`` every mutation commits immediately, which is
    what the scheduler driver needs; API requests leave committing to
    the ``get_db`` dependency.
    """

    def __init__(self, session: AsyncSession, commit: bool = False):
        self.session = session
        self.commit = commit

    async def _done(self) -> None:
        if self.commit:
            await self.session.commit()
        else:
            await self.session.flush()

    # ==================== Agents ====================

    async def _get_agent_row(self, agent_id: str) -> Optional[AgentDB]:
        try:
            key = uuid.UUID(str(agent_id))
        except ValueError:
            return None
        query = (
            select(AgentDB)
            .where(AgentDB.id == key)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        row = await self._get_agent_row(agent_id)
        return _to_agent(row) if row else None

    async def list_agents(
        self,
        owner_id: Optional[str] = None,
        status: Optional[AgentStatus] = None,
    ) -> list[AgentDefinition]:
        query = select(AgentDB).execution_options(populate_existing=True)
        if owner_id is not None:
            query = query.where(AgentDB.owner_id == owner_id)
        if status is not None:
            query = query.where(AgentDB.status == AgentStatus(status).value)
        # Secondary sort by id for stable ordering when created_at is equal
        query = query.order_by(AgentDB.created_at.desc(), AgentDB.id.desc())

        result = await self.session.execute(query)
        return [_to_agent(row) for row in result.scalars().all()]

    async def list_due_agents(self, now: datetime, limit: int = 100) -> list[AgentDefinition]:
        query = (
            select(AgentDB)
            .execution_options(populate_existing=True)
            .where(AgentDB.status == AgentStatus.ACTIVE.value)
            .where(AgentDB.next_run_at <= _utc(now))
            .order_by(AgentDB.next_run_at.asc(), AgentDB.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return [_to_agent(row) for row in result.scalars().all()]

    async def save_agent(
        self,
        agent: AgentDefinition,
        expected_status: Optional[AgentStatus] = None,
    ) -> bool:
        values = _agent_values(agent)
        key = uuid.UUID(agent.id)

        if expected_status is None and await self._get_agent_row(agent.id) is None:
            self.session.add(AgentDB(
                id=key,
                last_run_at=_utc(agent.last_run_at),
                **values,
            ))
            await self._done()
            return True

        stmt = update(AgentDB).where(AgentDB.id == key)
        if expected_status is not None:
            stmt = stmt.where(AgentDB.status == AgentStatus(expected_status).value)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        result = await self.session.execute(stmt)
        await self._done()
        return result.rowcount > 0

    async def delete_agent(self, agent_id: str) -> bool:
        row = await self._get_agent_row(agent_id)
        if row is None:
            return False
        # Explicit deletes so the cascade does not depend on FK enforcement
        await self.session.execute(delete(AgentLogDB).where(AgentLogDB.agent_id == row.id))
        await self.session.execute(delete(AgentRunDB).where(AgentRunDB.agent_id == row.id))
        await self.session.execute(delete(AgentDB).where(AgentDB.id == row.id))
        await self._done()
        return True

    # ==================== Runs ====================

    async def start_run(self, agent: AgentDefinition, run: AgentRun) -> bool:
        run_key = uuid.UUID(run.id)
        stmt = (
            update(AgentDB)
            .where(AgentDB.id == uuid.UUID(agent.id))
            .where(AgentDB.status == AgentStatus.ACTIVE.value)
            .where(AgentDB.active_run_id.is_(None))
            .values(
                active_run_id=run_key,
                last_run_at=_utc(agent.last_run_at),
                next_run_at=_utc(agent.next_run_at),
                updated_at=_utc(agent.updated_at),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            return False

        self.session.add(AgentRunDB(
            id=run_key,
            agent_id=uuid.UUID(run.agent_id),
            trigger=run.trigger.value,
            outcome=run.outcome.value,
            attempts=run.attempts,
            scheduled_for=_utc(run.scheduled_for),
            started_at=_utc(run.started_at),
            finished_at=_utc(run.finished_at),
            generated_signal_ids=list(run.generated_signal_ids),
            error_detail=run.error_detail,
        ))
        await self._done()
        return True

    async def _get_run_row(self, run_id: str) -> Optional[AgentRunDB]:
        try:
            key = uuid.UUID(str(run_id))
        except ValueError:
            return None
        query = (
            select(AgentRunDB)
            .where(AgentRunDB.id == key)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_run(self, run_id: str) -> Optional[AgentRun]:
        row = await self._get_run_row(run_id)
        return _to_run(row) if row else None

    async def save_run(self, run: AgentRun) -> None:
        row = await self._get_run_row(run.id)
        if row is None:
            return
        row.outcome = run.outcome.value
        row.attempts = run.attempts
        row.scheduled_for = _utc(run.scheduled_for)
        row.started_at = _utc(run.started_at)
        row.finished_at = _utc(run.finished_at)
        row.generated_signal_ids = list(run.generated_signal_ids)
        row.error_detail = run.error_detail
        await self._done()

    async def finish_run(self, run: AgentRun) -> None:
        row = await self._get_run_row(run.id)
        if row is None:
            return
        row.outcome = run.outcome.value
        row.attempts = run.attempts
        row.finished_at = _utc(run.finished_at)
        row.generated_signal_ids = list(run.generated_signal_ids)
        row.error_detail = run.error_detail

        await self.session.execute(
            update(AgentDB)
            .where(AgentDB.id == row.agent_id)
            .where(AgentDB.active_run_id == row.id)
            .values(active_run_id=None)
            .execution_options(synchronize_session=False)
        )
        await self._done()

    async def list_runs(self, agent_id: str, limit: int = 10) -> list[AgentRun]:
        query = (
            select(AgentRunDB)
            .where(AgentRunDB.agent_id == uuid.UUID(agent_id))
            .order_by(AgentRunDB.started_at.desc(), AgentRunDB.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return [_to_run(row) for row in result.scalars().all()]

    async def list_pending_runs(self, now: datetime, limit: int = 5) -> list[AgentRun]:
        query = (
            select(AgentRunDB)
            .where(AgentRunDB.outcome == RunOutcome.PENDING.value)
            .where(AgentRunDB.scheduled_for <= _utc(now))
            .order_by(AgentRunDB.scheduled_for.asc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return [_to_run(row) for row in result.scalars().all()]

    async def list_running_runs(self, started_before: datetime, limit: int = 50) -> list[AgentRun]:
        query = (
            select(AgentRunDB)
            .where(AgentRunDB.outcome == RunOutcome.RUNNING.value)
            .where(AgentRunDB.started_at <= _utc(started_before))
            .order_by(AgentRunDB.started_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return [_to_run(row) for row in result.scalars().all()]

    # ==================== Logs ====================

    async def append_log(self, entry: AgentLogEntry) -> None:
        self.session.add(AgentLogDB(
            id=uuid.UUID(entry.id),
            agent_id=uuid.UUID(entry.agent_id),
            run_id=uuid.UUID(entry.run_id) if entry.run_id else None,
            level=entry.level.value,
            message=entry.message,
            context=entry.context,
            created_at=_utc(entry.created_at),
        ))
        await self._done()

    async def list_logs(self, agent_id: str, limit: int = 50) -> list[AgentLogEntry]:
        query = (
            select(AgentLogDB)
            .where(AgentLogDB.agent_id == uuid.UUID(agent_id))
            .order_by(AgentLogDB.created_at.desc(), AgentLogDB.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return [_to_log(row) for row in result.scalars().all()]
