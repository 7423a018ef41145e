"""Data models for agents, runs, and strategies"""

from .agent import (
    AgentAction,
    AgentDefinition,
    AgentLogEntry,
    AgentRun,
    AgentStatus,
    AgentSubmission,
    FieldError,
    LogLevel,
    RunOutcome,
    RunTrigger,
    Timeframe,
)
from .strategy import StrategyDescriptor

__all__ = [
    "AgentAction",
    "AgentDefinition",
    "AgentLogEntry",
    "AgentRun",
    "AgentStatus",
    "AgentSubmission",
    "FieldError",
    "LogLevel",
    "RunOutcome",
    "RunTrigger",
    "Timeframe",
    "StrategyDescriptor",
]
