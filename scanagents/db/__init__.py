"""Database module - SQLAlchemy models and repositories"""

from .models import (
    AgentDB,
    AgentLogDB,
    AgentRunDB,
    Base,
)

__all__ = [
    "AgentDB",
    "AgentLogDB",
    "AgentRunDB",
    "Base",
]
