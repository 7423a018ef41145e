"""Workers - periodic driver that starts and dispatches agent runs"""

from .scheduler import AgentScheduler, RunExecutor, get_agent_scheduler

__all__ = [
    "AgentScheduler",
    "RunExecutor",
    "get_agent_scheduler",
]
