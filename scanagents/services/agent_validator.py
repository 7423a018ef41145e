"""
Agent Configuration Validator.

Turns a raw form/API payload into a normalized AgentDefinition. All
rules run on every submission and every violation is collected, so a
submitter sees the full list of problems in one round trip.
"""

import math
import re
import uuid
from datetime import UTC, datetime
from typing import Any, Callable, Mapping, Optional

from ..core.config import get_settings
from ..core.errors import AgentValidationError, ScheduleUnparseableError
from ..models.agent import AgentDefinition, AgentStatus, FieldError, Timeframe
from .schedule import Schedule, parse_schedule, resolve_timezone
from .strategy_catalog import StrategyCatalog, get_strategy_catalog

NAME_MAX_LENGTH = 100

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]{2,10}/[A-Z0-9]{2,10}$")


def _positive(value: float) -> bool:
    return value > 0


# key -> (predicate, human readable range)
RISK_PARAMETER_BOUNDS: dict[str, tuple[Callable[[float], bool], str]] = {
    "max_position_size": (_positive, "> 0"),
    "stop_loss_pct": (lambda v: 0 < v <= 100, "(0, 100]"),
    "take_profit_pct": (lambda v: 0 < v <= 1000, "(0, 1000]"),
    "max_leverage": (lambda v: 1 <= v <= 125, "[1, 125]"),
    "max_open_positions": (lambda v: 1 <= v <= 100, "[1, 100]"),
}

# field -> (default, low, high)
OPERATIONAL_BOUNDS: dict[str, tuple[int, int, int]] = {
    "min_confidence": (60, 0, 100),
    "max_attempts": (3, 1, 10),
    "max_runtime_seconds": (60, 10, 300),
}

DEFAULT_TIMEZONE = "UTC"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class AgentValidator:
    """Validates and normalizes submitted agent definitions"""

    def __init__(
        self,
        catalog: Optional[StrategyCatalog] = None,
        lookahead_days: Optional[int] = None,
    ):
        self.catalog = catalog or get_strategy_catalog()
        self.lookahead_days = lookahead_days or get_settings().schedule_lookahead_days

    # ==================== Public API ====================

    def validate(
        self,
        raw: Mapping[str, Any],
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> AgentDefinition:
        """
        Validate a new agent submission.

        Args:
            raw: Submitted fields (form or JSON payload)
            owner_id: Already-authenticated owner of the new agent
            now: Creation time (defaults to current UTC time)

        Returns:
            Normalized AgentDefinition in DRAFT status

        Raises:
            AgentValidationError: With every field error found
        """
        now = now or datetime.now(UTC)
        fields = self._check(raw, now)
        return AgentDefinition(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            status=AgentStatus.DRAFT,
            created_at=now,
            updated_at=now,
            **fields,
        )

    def validate_update(
        self,
        agent: AgentDefinition,
        patch: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> AgentDefinition:
        """
        Re-validate an agent after applying an edit.

        Identity, status and run bookkeeping are carried over untouched.

        Raises:
            AgentValidationError: With every field error in the merged definition
        """
        now = now or datetime.now(UTC)
        merged: dict[str, Any] = {
            "name": agent.name,
            "strategy_id": agent.strategy_id,
            "symbols": list(agent.symbols),
            "timeframe": agent.timeframe.value,
            "schedule": agent.schedule,
            "timezone": agent.timezone,
            "risk_parameters": dict(agent.risk_parameters),
            "min_confidence": agent.min_confidence,
            "max_attempts": agent.max_attempts,
            "max_runtime_seconds": agent.max_runtime_seconds,
        }
        merged.update(self._canonical_keys(patch))
        fields = self._check(merged, now)
        return agent.model_copy(
            update={**fields, "updated_at": max(now, agent.updated_at)}
        )

    def check_definition(self, agent: AgentDefinition, now: Optional[datetime] = None) -> None:
        """
        Re-run every rule against a stored definition (used on activation).

        Raises:
            AgentValidationError: If the definition no longer validates
        """
        self.validate_update(agent, {}, now)

    # ==================== Rules ====================

    @staticmethod
    def _canonical_keys(raw: Mapping[str, Any]) -> dict[str, Any]:
        """Fold the dashboard's field aliases into canonical names"""
        data = dict(raw)
        if "strategy_id" not in data and "strategy" in data:
            data["strategy_id"] = data.pop("strategy")
        if "symbols" not in data and "pairs" in data:
            data["symbols"] = data.pop("pairs")
        if "schedule" not in data and "interval_minutes" in data:
            data["schedule"] = data.pop("interval_minutes")
        return data

    def _check(self, raw: Mapping[str, Any], now: datetime) -> dict[str, Any]:
        data = self._canonical_keys(raw)
        errors: list[FieldError] = []

        name = self._check_name(data.get("name"), errors)
        strategy_id = self._check_strategy(data.get("strategy_id"), errors)
        symbols = self._check_symbols(data.get("symbols"), errors)
        timeframe = self._check_timeframe(data.get("timeframe"), errors)
        timezone_name = self._check_timezone(data.get("timezone"), errors)
        schedule = self._check_schedule(data.get("schedule"), timezone_name, now, errors)
        risk = self._check_risk(data.get("risk_parameters"), errors)
        operational = {
            key: self._check_bounded_int(key, data.get(key), errors)
            for key in OPERATIONAL_BOUNDS
        }

        if errors:
            raise AgentValidationError(errors)

        return {
            "name": name,
            "strategy_id": strategy_id,
            "symbols": symbols,
            "timeframe": timeframe,
            "schedule": schedule.text,
            "timezone": timezone_name,
            "risk_parameters": risk,
            **operational,
        }

    def _check_name(self, value: Any, errors: list[FieldError]) -> str:
        name = value.strip() if isinstance(value, str) else ""
        if not name:
            errors.append(FieldError(field="name", code="required", message="Name is required"))
        elif len(name) > NAME_MAX_LENGTH:
            errors.append(FieldError(
                field="name",
                code="too_long",
                message=f"Name must be at most {NAME_MAX_LENGTH} characters",
            ))
        return name

    def _check_strategy(self, value: Any, errors: list[FieldError]) -> str:
        strategy_id = value.strip() if isinstance(value, str) else ""
        if not self.catalog.contains(strategy_id):
            errors.append(FieldError(
                field="strategy",
                code="unknown",
                message=f"Unknown strategy '{strategy_id}'",
            ))
        return strategy_id

    def _check_symbols(self, value: Any, errors: list[FieldError]) -> list[str]:
        if isinstance(value, str):
            tokens = value.split(",")
        elif isinstance(value, (list, tuple, set, frozenset)):
            tokens = list(value)
        else:
            tokens = []

        symbols: list[str] = []
        invalid: list[str] = []
        for token in tokens:
            symbol = token.strip().upper() if isinstance(token, str) else ""
            if not symbol and isinstance(token, str):
                continue
            if not SYMBOL_PATTERN.match(symbol):
                invalid.append(str(token))
            elif symbol not in symbols:
                symbols.append(symbol)

        if not symbols and not invalid:
            errors.append(FieldError(
                field="symbols",
                code="empty",
                message="At least one trading pair is required",
            ))
        elif invalid:
            errors.append(FieldError(
                field="symbols",
                code="invalid_format",
                message=f"Trading pairs must look like BASE/QUOTE: {', '.join(invalid)}",
            ))
        return symbols

    def _check_timeframe(self, value: Any, errors: list[FieldError]) -> Optional[Timeframe]:
        try:
            return Timeframe(value)
        except ValueError:
            supported = ", ".join(tf.value for tf in Timeframe)
            errors.append(FieldError(
                field="timeframe",
                code="unsupported",
                message=f"Timeframe must be one of: {supported}",
            ))
            return None

    def _check_timezone(self, value: Any, errors: list[FieldError]) -> str:
        if value is None or value == "":
            return DEFAULT_TIMEZONE
        try:
            resolve_timezone(value)
        except ValueError:
            errors.append(FieldError(
                field="timezone",
                code="unknown_timezone",
                message=f"Unknown timezone '{value}'",
            ))
            return DEFAULT_TIMEZONE
        return value.strip()

    def _check_schedule(
        self,
        value: Any,
        timezone_name: str,
        now: datetime,
        errors: list[FieldError],
    ) -> Optional[Schedule]:
        try:
            schedule = parse_schedule(value)
        except ScheduleUnparseableError as e:
            errors.append(FieldError(field="schedule", code="unparseable", message=e.message))
            return None

        if not schedule.fires_within(now, self.lookahead_days, resolve_timezone(timezone_name)):
            errors.append(FieldError(
                field="schedule",
                code="never_fires",
                message=f"Schedule has no occurrence within {self.lookahead_days} days",
            ))
            return None
        return schedule

    def _check_risk(self, value: Any, errors: list[FieldError]) -> dict[str, float]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            errors.append(FieldError(
                field="risk",
                code="invalid_type",
                message="Risk parameters must be a mapping of names to numbers",
            ))
            return {}

        risk: dict[str, float] = {}
        for key, raw_value in value.items():
            field = f"risk.{key}"
            if key not in RISK_PARAMETER_BOUNDS:
                errors.append(FieldError(
                    field=field, code="unknown", message=f"Unknown risk parameter '{key}'"
                ))
                continue
            if not _is_number(raw_value):
                errors.append(FieldError(
                    field=field, code="invalid_type", message=f"{key} must be a number"
                ))
                continue
            predicate, described = RISK_PARAMETER_BOUNDS[key]
            try:
                number = float(raw_value)
            except OverflowError:
                number = math.inf
            if not math.isfinite(number) or not predicate(number):
                errors.append(FieldError(
                    field=field, code="out_of_range", message=f"{key} must be in {described}"
                ))
                continue
            risk[key] = number
        return risk

    def _check_bounded_int(self, key: str, value: Any, errors: list[FieldError]) -> int:
        default, low, high = OPERATIONAL_BOUNDS[key]
        if value is None:
            return default
        if not _is_number(value) or (isinstance(value, float) and not value.is_integer()):
            errors.append(FieldError(field=key, code="invalid_type", message=f"{key} must be an integer"))
            return default
        number = int(value)
        if not low <= number <= high:
            errors.append(FieldError(
                field=key, code="out_of_range", message=f"{key} must be between {low} and {high}"
            ))
            return default
        return number
