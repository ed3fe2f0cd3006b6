from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_ledger_service
from api.schemas.requests import InvestRequest, WithdrawRequest
from core.portfolio.models import (
    PerformanceReport,
    PortfolioView,
    Position,
    RebalanceEvent,
    WithdrawalResult,
)
from services.portfolio_ledger.service import PortfolioLedgerService

router = APIRouter(prefix="/portfolios", tags=["Portfolios"])


@router.get("", response_model=List[PortfolioView])
async def list_portfolios(ledger: PortfolioLedgerService = Depends(get_ledger_service)):
    """Active portfolios with live prices."""
    return await ledger.list_portfolios()


@router.get("/{portfolio_id}", response_model=PortfolioView)
async def get_portfolio(
    portfolio_id: str,
    ledger: PortfolioLedgerService = Depends(get_ledger_service)
):
    """Portfolio definition plus live valuation, current weights and NAV per share."""
    return await ledger.get_portfolio(portfolio_id)


@router.get("/{portfolio_id}/performance", response_model=PerformanceReport)
async def get_performance(
    portfolio_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    ledger: PortfolioLedgerService = Depends(get_ledger_service)
):
    """Live NAV and ROI plus the snapshots stored at each rebalance, oldest first."""
    return await ledger.get_portfolio_performance(portfolio_id, limit)


@router.get("/{portfolio_id}/rebalances", response_model=List[RebalanceEvent])
async def get_rebalance_history(
    portfolio_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    ledger: PortfolioLedgerService = Depends(get_ledger_service)
):
    """Most recent rebalance events, newest first."""
    return await ledger.get_rebalance_history(portfolio_id, limit)


@router.post("/{portfolio_id}/invest", response_model=Position)
async def invest(
    portfolio_id: str,
    request: InvestRequest,
    ledger: PortfolioLedgerService = Depends(get_ledger_service)
):
    return await ledger.invest(request.user_id, portfolio_id, request.amount)


@router.post("/{portfolio_id}/withdraw", response_model=WithdrawalResult)
async def withdraw(
    portfolio_id: str,
    request: WithdrawRequest,
    ledger: PortfolioLedgerService = Depends(get_ledger_service)
):
    """Redeem `shares`, or the whole position when omitted."""
    return await ledger.withdraw(request.user_id, portfolio_id, request.shares)
