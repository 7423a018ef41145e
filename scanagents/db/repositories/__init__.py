"""Repository layer for database operations"""

from .agent import AgentRepository

__all__ = [
    "AgentRepository",
]
