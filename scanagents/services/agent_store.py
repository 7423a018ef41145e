"""
Persistence port for agents, runs and logs.

The lifecycle manager only talks to ``AgentStore``. Two implementations
exist: ``InMemoryAgentStore`` below (single process, used by tests and
local tooling) and the SQLAlchemy ``AgentRepository`` in ``db``.

``start_run`` is the one compare-and-swap the core relies on: it must
let exactly one caller win while no run is in flight for the agent.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Optional

from ..models.agent import AgentDefinition, AgentLogEntry, AgentRun, AgentStatus, RunOutcome


class AgentStore(ABC):
    """Abstract storage for agent definitions, run history and logs"""

    # ==================== Agents ====================

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        """Load an agent by id"""

    @abstractmethod
    async def list_agents(
        self,
        owner_id: Optional[str] = None,
        status: Optional[AgentStatus] = None,
    ) -> list[AgentDefinition]:
        """List agents, newest first"""

    @abstractmethod
    async def list_due_agents(self, now: datetime, limit: int = 100) -> list[AgentDefinition]:
        """ACTIVE agents whose ``next_run_at`` is at or before ``now``, earliest first"""

    @abstractmethod
    async def save_agent(
        self,
        agent: AgentDefinition,
        expected_status: Optional[AgentStatus] = None,
    ) -> bool:
        """
        Insert or update an agent.

        With ``expected_status`` the write only happens if the stored
        agent still has that status. Returns False if it did not.
        """

    @abstractmethod
    async def delete_agent(self, agent_id: str) -> bool:
        """Delete an agent with its runs and logs"""

    # ==================== Runs ====================

    @abstractmethod
    async def start_run(self, agent: AgentDefinition, run: AgentRun) -> bool:
        """
        Atomically register ``run`` as the agent's in-flight run.

        Also persists the agent's ``last_run_at``/``next_run_at``.
        Returns False if another run is already in flight or the stored
        agent is no longer ACTIVE.
        """

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[AgentRun]:
        """Load a run by id"""

    @abstractmethod
    async def save_run(self, run: AgentRun) -> None:
        """Update an in-flight run"""

    @abstractmethod
    async def finish_run(self, run: AgentRun) -> None:
        """Persist a terminal run and release the agent's in-flight slot"""

    @abstractmethod
    async def list_runs(self, agent_id: str, limit: int = 10) -> list[AgentRun]:
        """Most recent runs of an agent, newest first"""

    @abstractmethod
    async def list_pending_runs(self, now: datetime, limit: int = 5) -> list[AgentRun]:
        """Pending runs scheduled at or before ``now``, oldest first"""

    @abstractmethod
    async def list_running_runs(self, started_before: datetime, limit: int = 50) -> list[AgentRun]:
        """Claimed runs whose ``started_at`` is at or before ``started_before``"""

    # ==================== Logs ====================

    @abstractmethod
    async def append_log(self, entry: AgentLogEntry) -> None:
        """Append a log line"""

    @abstractmethod
    async def list_logs(self, agent_id: str, limit: int = 50) -> list[AgentLogEntry]:
        """Most recent log lines of an agent, newest first"""


class InMemoryAgentStore(AgentStore):
    """
    Process-local store.

    Mutations of a single agent are serialized with a per-agent
    ``asyncio.Lock``; different agents never contend.
    """

    def __init__(self):
        self._agents: dict[str, AgentDefinition] = {}
        self._runs: dict[str, AgentRun] = {}
        self._logs: dict[str, list[AgentLogEntry]] = defaultdict(list)
        self._active_run: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def list_agents(
        self,
        owner_id: Optional[str] = None,
        status: Optional[AgentStatus] = None,
    ) -> list[AgentDefinition]:
        agents = [
            a for a in self._agents.values()
            if (owner_id is None or a.owner_id == owner_id)
            and (status is None or a.status == status)
        ]
        agents.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return [a.model_copy(deep=True) for a in agents]

    async def list_due_agents(self, now: datetime, limit: int = 100) -> list[AgentDefinition]:
        agents = [
            a for a in self._agents.values()
            if a.status == AgentStatus.ACTIVE
            and a.next_run_at is not None
            and a.next_run_at <= now
        ]
        agents.sort(key=lambda a: (a.next_run_at, a.id))
        return [a.model_copy(deep=True) for a in agents[:limit]]

    async def save_agent(
        self,
        agent: AgentDefinition,
        expected_status: Optional[AgentStatus] = None,
    ) -> bool:
        async with self._locks[agent.id]:
            current = self._agents.get(agent.id)
            if expected_status is not None:
                if current is None or current.status != expected_status:
                    return False
            stored = agent.model_copy(deep=True)
            if current is not None:
                # Run bookkeeping is owned by start_run
                stored.last_run_at = current.last_run_at
            self._agents[agent.id] = stored
            return True

    async def delete_agent(self, agent_id: str) -> bool:
        async with self._locks[agent_id]:
            if self._agents.pop(agent_id, None) is None:
                return False
            for run_id in [r.id for r in self._runs.values() if r.agent_id == agent_id]:
                del self._runs[run_id]
            self._logs.pop(agent_id, None)
            self._active_run.pop(agent_id, None)
        self._locks.pop(agent_id, None)
        return True

    async def start_run(self, agent: AgentDefinition, run: AgentRun) -> bool:
        async with self._locks[agent.id]:
            current = self._agents.get(agent.id)
            if current is None or current.status != AgentStatus.ACTIVE:
                return False
            if agent.id in self._active_run:
                return False
            self._active_run[agent.id] = run.id
            self._runs[run.id] = run.model_copy(deep=True)
            current.last_run_at = agent.last_run_at
            current.next_run_at = agent.next_run_at
            current.updated_at = max(current.updated_at, agent.updated_at)
            return True

    async def get_run(self, run_id: str) -> Optional[AgentRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def save_run(self, run: AgentRun) -> None:
        async with self._locks[run.agent_id]:
            if run.id in self._runs:
                self._runs[run.id] = run.model_copy(deep=True)

    async def finish_run(self, run: AgentRun) -> None:
        async with self._locks[run.agent_id]:
            if run.id not in self._runs:
                return
            self._runs[run.id] = run.model_copy(deep=True)
            if self._active_run.get(run.agent_id) == run.id:
                del self._active_run[run.agent_id]

    async def list_runs(self, agent_id: str, limit: int = 10) -> list[AgentRun]:
        runs = [r for r in self._runs.values() if r.agent_id == agent_id]
        runs.sort(key=lambda r: (r.started_at, r.id), reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def list_pending_runs(self, now: datetime, limit: int = 5) -> list[AgentRun]:
        runs = [
            r for r in self._runs.values()
            if r.outcome == RunOutcome.PENDING and r.scheduled_for <= now
        ]
        runs.sort(key=lambda r: r.scheduled_for)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def list_running_runs(self, started_before: datetime, limit: int = 50) -> list[AgentRun]:
        runs = [
            r for r in self._runs.values()
            if r.outcome == RunOutcome.RUNNING and r.started_at <= started_before
        ]
        runs.sort(key=lambda r: r.started_at)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def append_log(self, entry: AgentLogEntry) -> None:
        if entry.agent_id in self._agents:
            self._logs[entry.agent_id].append(entry.model_copy(deep=True))

    async def list_logs(self, agent_id: str, limit: int = 50) -> list[AgentLogEntry]:
        logs = list(reversed(self._logs.get(agent_id, [])))
        return [entry.model_copy(deep=True) for entry in logs[:limit]]
