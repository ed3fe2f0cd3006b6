from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from core.portfolio.models import RebalanceEvent, RebalanceReason


class TriggerDecision(BaseModel):
    """Outcome of one trigger evaluation; nothing is persisted."""
    portfolio_id: str
    should_rebalance: bool
    reason: Optional[RebalanceReason] = None
    max_drift: Optional[Decimal] = None
    degraded_pricing: bool = False


class RebalanceFailure(BaseModel):
    portfolio_id: Optional[str] = None  # None when the batch itself failed
    error_type: str
    message: str


class RebalanceRunSummary(BaseModel):
    success: bool
    evaluated: int = 0
    rebalanced_count: int = 0
    events: List[RebalanceEvent] = Field(default_factory=list)
    errors: List[RebalanceFailure] = Field(default_factory=list)
