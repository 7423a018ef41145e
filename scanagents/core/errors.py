"""
Centralized error handling and sanitization.

Provides:
- Standard error types for the agent subsystem
- Error sanitization for production environments
- Consistent error response formatting
"""

import logging
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException, status

from .config import get_settings
from ..models.agent import FieldError

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standard error codes for the application"""

    # Authentication
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    AUTH_TOKEN_EXPIRED = "AUTH_TOKEN_EXPIRED"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    SCHEDULE_UNPARSEABLE = "SCHEDULE_UNPARSEABLE"

    # Catalog
    UNKNOWN_STRATEGY = "UNKNOWN_STRATEGY"

    # Lookup
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    RUN_NOT_FOUND = "RUN_NOT_FOUND"

    # Lifecycle
    INVALID_TRANSITION = "INVALID_TRANSITION"
    AGENT_NOT_RUNNABLE = "AGENT_NOT_RUNNABLE"

    # Run recording
    RUN_ALREADY_IN_PROGRESS = "RUN_ALREADY_IN_PROGRESS"
    RUN_ALREADY_FINISHED = "RUN_ALREADY_FINISHED"

    # Concurrency
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    # General
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class AppError(Exception):
    """
    Base application error with structured information.

    Every domain error is recoverable at the caller boundary; the
    status code is what the HTTP layer answers with.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        """
        Create an application error.

        Args:
            code: Error code enum for machine-readable identification
            message: User-friendly error message (safe to expose)
            status_code: HTTP status code
            details: Additional structured details
            internal_message: Detailed message for logging only (never exposed)
        """
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.internal_message = internal_message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serializable body for API responses"""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


# ==================== Domain Errors ====================


class UnknownStrategyError(AppError):
    def __init__(self, strategy_id: str):
        self.strategy_id = strategy_id
        super().__init__(
            code=ErrorCode.UNKNOWN_STRATEGY,
            message=f"Unknown strategy '{strategy_id}'",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"strategy_id": strategy_id},
        )


class AgentValidationError(AppError):
    """Submitted agent definition failed validation.

    Carries every field error found, never just the first one.
    """

    def __init__(self, field_errors: list[FieldError]):
        self.field_errors = list(field_errors)
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=f"Agent definition is invalid ({len(self.field_errors)} field errors)",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"field_errors": [e.model_dump() for e in self.field_errors]},
        )

    def codes_for(self, field: str) -> list[str]:
        """Error codes reported for a single field"""
        return [e.code for e in self.field_errors if e.field == field]


class ScheduleUnparseableError(AppError):
    def __init__(self, schedule: str, reason: str = ""):
        self.schedule = schedule
        self.reason = reason
        suffix = f": {reason}" if reason else ""
        super().__init__(
            code=ErrorCode.SCHEDULE_UNPARSEABLE,
            message=f"Cannot parse schedule '{schedule}'{suffix}",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"schedule": schedule},
        )


class AgentNotFoundError(AppError):
    def __init__(self, agent_id: str):
        super().__init__(
            code=ErrorCode.AGENT_NOT_FOUND,
            message="Agent not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"agent_id": agent_id},
        )


class RunNotFoundError(AppError):
    def __init__(self, run_id: str):
        super().__init__(
            code=ErrorCode.RUN_NOT_FOUND,
            message="Run not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"run_id": run_id},
        )


class InvalidTransitionError(AppError):
    """Requested action is not allowed from the agent's current status"""

    def __init__(self, current: str, action: str):
        self.current = current
        self.action = action
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"Cannot {action} agent in '{current}' status",
            status_code=status.HTTP_409_CONFLICT,
            details={"status": current, "action": action},
        )


class AgentNotRunnableError(AppError):
    def __init__(self, agent_id: str, current: str):
        super().__init__(
            code=ErrorCode.AGENT_NOT_RUNNABLE,
            message=f"Cannot start a run for agent in '{current}' status. Agent must be active.",
            status_code=status.HTTP_409_CONFLICT,
            details={"agent_id": agent_id, "status": current},
        )


class RunAlreadyInProgressError(AppError):
    def __init__(self, agent_id: str):
        super().__init__(
            code=ErrorCode.RUN_ALREADY_IN_PROGRESS,
            message="A run is already pending or running for this agent",
            status_code=status.HTTP_409_CONFLICT,
            details={"agent_id": agent_id},
        )


class RunAlreadyFinishedError(AppError):
    def __init__(self, run_id: str, outcome: str, requested: str):
        super().__init__(
            code=ErrorCode.RUN_ALREADY_FINISHED,
            message=f"Run already finished as '{outcome}', cannot record '{requested}'",
            status_code=status.HTTP_409_CONFLICT,
            details={"run_id": run_id, "outcome": outcome, "requested": requested},
        )


class ConcurrentModificationError(AppError):
    def __init__(self, agent_id: str):
        super().__init__(
            code=ErrorCode.CONCURRENT_MODIFICATION,
            message="Agent was modified concurrently. Reload and retry.",
            status_code=status.HTTP_409_CONFLICT,
            details={"agent_id": agent_id},
        )


# ==================== HTTP Helpers ====================


def create_http_exception(
    code: ErrorCode,
    user_message: str,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    internal_error: Optional[Exception] = None,
    log_error: bool = True,
) -> HTTPException:
    """
    Create an HTTPException with sanitized message.

    Args:
        code: Error code for identification
        user_message: User-friendly message (shown in production)
        status_code: HTTP status code
        internal_error: Optional internal exception for logging
        log_error: Whether to log the error

    Returns:
        HTTPException ready to raise
    """
    settings = get_settings()

    if log_error and internal_error:
        logger.error(
            f"[{code.value}] {user_message}: {internal_error}",
            exc_info=True,
        )
    elif log_error:
        logger.error(f"[{code.value}] {user_message}")

    if settings.environment == "production" or internal_error is None:
        detail = user_message
    else:
        detail = f"{user_message}: {internal_error}"

    return HTTPException(
        status_code=status_code,
        detail=detail,
    )


def internal_error(error: Exception, context: str = "") -> HTTPException:
    """Create standardized internal error"""
    ctx = f" ({context})" if context else ""
    return create_http_exception(
        code=ErrorCode.INTERNAL_ERROR,
        user_message=f"An internal error occurred{ctx}. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        internal_error=error,
    )
