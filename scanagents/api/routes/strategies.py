"""Strategy catalog routes"""

from fastapi import APIRouter
from pydantic import BaseModel

from ...core.dependencies import CurrentOwnerDep
from ...services.strategy_catalog import get_strategy_catalog

router = APIRouter(prefix="/strategies", tags=["Strategies"])


class StrategyResponse(BaseModel):
    """Strategy an agent can be bound to"""
    id: str
    label: str


@router.get("", response_model=list[StrategyResponse])
async def list_strategies(owner_id: CurrentOwnerDep):
    """List the available strategies in catalog order"""
    return [
        StrategyResponse(id=descriptor.id, label=descriptor.label)
        for descriptor in get_strategy_catalog().list()
    ]
