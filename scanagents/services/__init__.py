"""Domain services: strategy catalog, validation, scheduling, lifecycle"""

from .agent_lifecycle import AgentLifecycleManager
from .agent_store import AgentStore, InMemoryAgentStore
from .agent_validator import AgentValidator
from .strategy_catalog import StrategyCatalog, get_strategy_catalog
from .trigger_evaluator import TriggerEvaluator

__all__ = [
    "AgentLifecycleManager",
    "AgentStore",
    "AgentValidator",
    "InMemoryAgentStore",
    "StrategyCatalog",
    "TriggerEvaluator",
    "get_strategy_catalog",
]
