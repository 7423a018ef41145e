"""Database-backed lifecycle managers for the scheduler"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from ..db.repositories.agent import AgentRepository
from ..services.agent_lifecycle import AgentLifecycleManager


@asynccontextmanager
async def database_lifecycle() -> AsyncIterator[AgentLifecycleManager]:
    """
    Lifecycle manager over its own session.

    The repository commits after every mutation so that run starts made
    by one worker are visible to the others straight away.
    """
    from ..db.database import session_scope

    async with session_scope() as session:
        yield AgentLifecycleManager(AgentRepository(session, commit=True))
