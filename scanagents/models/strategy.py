"""Strategy descriptor model"""

from pydantic import BaseModel, ConfigDict, Field


class StrategyDescriptor(BaseModel):
    """Immutable catalog entry: stable key plus human label"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
