"""Scheduled market-scanning agents: definitions, lifecycle and scheduling"""

__version__ = "0.1.0"
