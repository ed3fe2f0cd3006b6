from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from core.logging import get_ledger_logger_safe
from core.portfolio.models import LedgerTransaction, Portfolio, PortfolioPerformance, Position, RebalanceEvent

from .base import LedgerStore, LedgerUnitOfWork

PositionKey = Tuple[str, str]


class _MemoryUnitOfWork(LedgerUnitOfWork):
    """Stages every write; the store applies them in one step at commit."""

    def __init__(self, store: "InMemoryLedgerStore"):
        self._store = store
        self._portfolios: Dict[str, Portfolio] = {}
        self._positions: Dict[PositionKey, Optional[Position]] = {}  # None marks a delete
        self._transactions: List[LedgerTransaction] = []
        self._events: List[RebalanceEvent] = []
        self._snapshots: List[PortfolioPerformance] = []

    async def load_portfolio(self, portfolio_id: str, for_update: bool = True) -> Optional[Portfolio]:
        portfolio = self._portfolios.get(portfolio_id) or self._store._portfolios.get(portfolio_id)
        return portfolio.model_copy(deep=True) if portfolio else None

    async def load_position(self, user_id: str, portfolio_id: str) -> Optional[Position]:
        key = (user_id, portfolio_id)
        if key in self._positions:
            staged = self._positions[key]
            return staged.model_copy(deep=True) if staged else None
        position = self._store._positions.get(key)
        return position.model_copy(deep=True) if position else None

    async def save_portfolio(self, portfolio: Portfolio) -> None:
        self._portfolios[portfolio.portfolio_id] = portfolio.model_copy(deep=True)

    async def save_position(self, position: Position) -> None:
        self._positions[(position.user_id, position.portfolio_id)] = position.model_copy(deep=True)

    async def delete_position(self, user_id: str, portfolio_id: str) -> None:
        self._positions[(user_id, portfolio_id)] = None

    async def append_transaction(self, transaction: LedgerTransaction) -> None:
        self._transactions.append(transaction)

    async def append_rebalance_event(self, event: RebalanceEvent) -> None:
        self._events.append(event)

    async def append_performance_snapshot(self, snapshot: PortfolioPerformance) -> None:
        self._snapshots.append(snapshot)


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger store used in development and tests."""

    def __init__(self, portfolios: Optional[Iterable[Portfolio]] = None):
        self._portfolios: Dict[str, Portfolio] = {}
        self._positions: Dict[PositionKey, Position] = {}
        self._transactions: List[LedgerTransaction] = []
        self._events: List[RebalanceEvent] = []
        self._snapshots: List[PortfolioPerformance] = []
        self.logger = get_ledger_logger_safe("memory_store")

        for portfolio in portfolios or ():
            self._portfolios[portfolio.portfolio_id] = portfolio.model_copy(deep=True)

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[LedgerUnitOfWork]:
        uow = _MemoryUnitOfWork(self)
        yield uow
        self._commit(uow)

    def _commit(self, uow: _MemoryUnitOfWork) -> None:
        # No awaits here, so readers never see a half-applied unit of work
        self._portfolios.update(uow._portfolios)
        for key, position in uow._positions.items():
            if position is None:
                self._positions.pop(key, None)
            else:
                self._positions[key] = position
        self._transactions.extend(uow._transactions)
        self._events.extend(uow._events)
        self._snapshots.extend(uow._snapshots)
        self.logger.debug(
            "Unit of work committed",
            portfolios=len(uow._portfolios),
            positions=len(uow._positions),
            transactions=len(uow._transactions),
            events=len(uow._events),
            snapshots=len(uow._snapshots),
        )

    async def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        portfolio = self._portfolios.get(portfolio_id)
        return portfolio.model_copy(deep=True) if portfolio else None

    async def list_active_portfolios(self) -> List[Portfolio]:
        return [p.model_copy(deep=True) for p in self._portfolios.values() if p.is_active]

    async def get_position(self, user_id: str, portfolio_id: str) -> Optional[Position]:
        position = self._positions.get((user_id, portfolio_id))
        return position.model_copy(deep=True) if position else None

    async def list_positions(self, user_id: str) -> List[Position]:
        return [
            position.model_copy(deep=True)
            for (owner, _), position in self._positions.items()
            if owner == user_id
        ]

    async def list_transactions(self, user_id: str, portfolio_id: Optional[str] = None,
                                limit: Optional[int] = None) -> List[LedgerTransaction]:
        matches = [
            tx for tx in reversed(self._transactions)
            if tx.user_id == user_id and (portfolio_id is None or tx.portfolio_id == portfolio_id)
        ]
        matches.sort(key=lambda tx: tx.created_at, reverse=True)
        return matches[:limit] if limit is not None else matches

    async def list_rebalance_events(self, portfolio_id: str, limit: int = 20) -> List[RebalanceEvent]:
        matches = [e for e in reversed(self._events) if e.portfolio_id == portfolio_id]
        matches.sort(key=lambda e: e.executed_at, reverse=True)
        return matches[:limit]

    async def list_performance(self, portfolio_id: str, limit: int = 100) -> List[PortfolioPerformance]:
        matches = sorted(
            (s for s in self._snapshots if s.portfolio_id == portfolio_id),
            key=lambda s: s.timestamp,
        )
        return matches[-limit:]
