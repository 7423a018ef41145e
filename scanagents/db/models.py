"""
SQLAlchemy ORM Models

Database schema for scheduled market-scanning agents.

- Agent: user-defined scanning job (strategy + pairs + timeframe + schedule)
- AgentRun: one execution of an agent, owned by it
- AgentLog: audit trail of lifecycle and run events
"""

import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


class AgentDB(Base):
    """
    Scheduled agent definition.

    ``active_run_id`` is the in-flight run slot. It is only ever set
    through a conditional UPDATE (``WHERE active_run_id IS NULL``) so
    that concurrent run starts have a single winner.
    """
    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    # Opaque id from the identity provider
    owner_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Strategy binding (catalog key, not a foreign key)
    strategy_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Market scope
    symbols: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    timeframe: Mapped[str] = mapped_column(String(8), nullable=False)

    # Cadence
    schedule: Mapped[str] = mapped_column(String(128), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    risk_parameters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    min_confidence: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    # Operational
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    max_runtime_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    # Status: draft, active, paused, disabled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    # Schedule anchors and run bookkeeping
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    active_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False
    )

    # Relationships
    runs: Mapped[list["AgentRunDB"]] = relationship(
        back_populates="agent",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    logs: Mapped[list["AgentLogDB"]] = relationship(
        back_populates="agent",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_agents_status_next_run", "status", "next_run_at"),
    )

    def __repr__(self) -> str:
        return f"<Agent {self.name} ({self.status})>"


class AgentRunDB(Base):
    """
    One execution of an agent.

    outcome: pending, running, succeeded, failed, skipped
    """
    __tablename__ = "agent_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    trigger: Mapped[str] = mapped_column(String(20), nullable=False, default="schedule")
    outcome: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Ordered references to records owned by the signal subsystem
    generated_signal_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    agent: Mapped["AgentDB"] = relationship(back_populates="runs")

    __table_args__ = (
        Index("ix_agent_runs_outcome_scheduled", "outcome", "scheduled_for"),
    )

    def __repr__(self) -> str:
        return f"<AgentRun {self.id} ({self.outcome})>"


class AgentLogDB(Base):
    """Audit log line for an agent, optionally tied to a run"""
    __tablename__ = "agent_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agent_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    level: Mapped[str] = mapped_column(String(10), nullable=False, default="info")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False
    )

    agent: Mapped["AgentDB"] = relationship(back_populates="logs")
