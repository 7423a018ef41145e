"""
Strategy Catalog - the fixed set of strategies an agent may run.

The catalog is compiled into process state at startup and never mutated.
"""

from functools import lru_cache
from typing import Iterable

from ..core.errors import UnknownStrategyError
from ..models.strategy import StrategyDescriptor

DEFAULT_STRATEGIES: tuple[tuple[str, str], ...] = (
    ("momentum", "Momentum"),
    ("mean-reversion", "Mean Reversion"),
    ("breakout", "Breakout"),
    ("support-resistance", "Support/Resistance"),
    ("trend-following", "Trend Following"),
    ("scalping", "Scalping"),
)


class StrategyCatalog:
    """Read-only, ordered registry of strategy descriptors"""

    def __init__(self, descriptors: Iterable[StrategyDescriptor]):
        ordered = tuple(descriptors)
        by_id: dict[str, StrategyDescriptor] = {}
        for descriptor in ordered:
            if descriptor.id in by_id:
                raise ValueError(f"Duplicate strategy id '{descriptor.id}'")
            by_id[descriptor.id] = descriptor
        self._ordered = ordered
        self._by_id = by_id

    def list(self) -> tuple[StrategyDescriptor, ...]:
        """All descriptors in declaration order"""
        return self._ordered

    def resolve(self, strategy_id: str) -> StrategyDescriptor:
        """
        Look up a strategy by id.

        Raises:
            UnknownStrategyError: If no strategy has this id
        """
        try:
            return self._by_id[strategy_id]
        except (KeyError, TypeError):
            raise UnknownStrategyError(str(strategy_id)) from None

    def contains(self, strategy_id: str) -> bool:
        return isinstance(strategy_id, str) and strategy_id in self._by_id

    def __len__(self) -> int:
        return len(self._ordered)


@lru_cache
def get_strategy_catalog() -> StrategyCatalog:
    """Get the process-wide strategy catalog"""
    return StrategyCatalog(
        StrategyDescriptor(id=strategy_id, label=label)
        for strategy_id, label in DEFAULT_STRATEGIES
    )
