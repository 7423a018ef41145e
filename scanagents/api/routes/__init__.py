"""API route modules"""

from . import agents, strategies

__all__ = ["agents", "strategies"]
