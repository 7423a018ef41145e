"""
Agent models for scheduled market-scanning agents.

An Agent binds a Strategy to a set of trading pairs, a candle timeframe
and a schedule. Each time the schedule fires, a Run evaluates the
strategy and records the signals it produced.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class AgentStatus(str, Enum):
    """Agent lifecycle status"""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"


class AgentAction(str, Enum):
    """Explicit lifecycle actions a user can request"""

    ACTIVATE = "activate"
    PAUSE = "pause"
    RESUME = "resume"
    DISABLE = "disable"


class Timeframe(str, Enum):
    """Supported candle intervals"""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"


class RunOutcome(str, Enum):
    """Run state; pending and running are in flight, the rest terminal"""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunOutcome.PENDING, RunOutcome.RUNNING)


class RunTrigger(str, Enum):
    SCHEDULE = "schedule"
    MANUAL = "manual"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# =============================================================================
# Entities
# =============================================================================


class AgentDefinition(BaseModel):
    """
    Scheduled agent entity (read model).

    Produced by the validator in DRAFT status; afterwards only the
    lifecycle manager changes its status and run bookkeeping.
    """

    id: str
    owner_id: str
    name: str = Field(..., min_length=1, max_length=100)

    # Strategy binding
    strategy_id: str

    # Market scope
    symbols: list[str] = Field(..., min_length=1)
    timeframe: Timeframe

    # Cadence, normalized text (e.g. "15m" or "*/5 * * * *")
    schedule: str
    timezone: str = "UTC"

    # Named numeric risk bounds, e.g. stop_loss_pct
    risk_parameters: dict[str, float] = Field(default_factory=dict)

    # Signals below this confidence are discarded by the signal engine
    min_confidence: int = Field(default=60, ge=0, le=100)

    # Operational
    max_attempts: int = Field(default=3, ge=1, le=10)
    max_runtime_seconds: int = Field(default=60, ge=10, le=300)

    # Status
    status: AgentStatus = Field(default=AgentStatus.DRAFT)

    # Schedule anchors and run bookkeeping
    activated_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None

    # Timestamps
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AgentRun(BaseModel):
    """One execution instance of an agent at a specific due time"""

    id: str
    agent_id: str
    trigger: RunTrigger = RunTrigger.SCHEDULE
    scheduled_for: datetime
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: RunOutcome = RunOutcome.PENDING
    attempts: int = 0
    generated_signal_ids: list[str] = Field(default_factory=list)
    error_detail: Optional[str] = None

    @property
    def in_flight(self) -> bool:
        return not self.outcome.is_terminal


class AgentLogEntry(BaseModel):
    """Audit trail line attached to an agent (and optionally a run)"""

    id: str
    agent_id: str
    run_id: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    message: str
    context: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class FieldError(BaseModel):
    """A single validation problem scoped to one submitted field"""

    field: str
    code: str
    message: str = ""


# =============================================================================
# Request Models
# =============================================================================


class AgentSubmission(BaseModel):
    """
    Raw agent form/API payload.

    Fields are deliberately loose: type and range checks happen in the
    validator so that every problem is reported in one round trip.
    """

    model_config = ConfigDict(extra="ignore")

    name: Any = None
    strategy_id: Any = None
    symbols: Any = None
    timeframe: Any = None
    schedule: Any = None
    timezone: Any = None
    risk_parameters: Any = None
    min_confidence: Any = None
    max_attempts: Any = None
    max_runtime_seconds: Any = None

    # Aliases accepted from the dashboard form
    strategy: Any = None
    pairs: Any = None
    interval_minutes: Any = None

    def to_raw(self) -> dict[str, Any]:
        """Only the fields the submitter actually sent"""
        return self.model_dump(exclude_unset=True)
