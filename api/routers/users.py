from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_ledger_service
from core.portfolio.models import LedgerTransaction, PositionView
from services.portfolio_ledger.service import PortfolioLedgerService

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/{user_id}/positions", response_model=List[PositionView])
async def list_positions(
    user_id: str,
    ledger: PortfolioLedgerService = Depends(get_ledger_service)
):
    """All of a user's positions, revalued against live prices."""
    return await ledger.list_positions(user_id)


@router.get("/{user_id}/transactions", response_model=List[LedgerTransaction])
async def list_transactions(
    user_id: str,
    portfolio_id: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    ledger: PortfolioLedgerService = Depends(get_ledger_service)
):
    return await ledger.get_transactions(user_id, portfolio_id, limit)
