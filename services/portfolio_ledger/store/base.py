from abc import ABC, abstractmethod
from typing import AsyncContextManager, List, Optional

from core.portfolio.models import LedgerTransaction, Portfolio, PortfolioPerformance, Position, RebalanceEvent


class LedgerUnitOfWork(ABC):
    """
    Reads and writes that commit together.

    Objects returned by the load methods are private copies; changes reach
    the store only through the save/delete/append methods, and only when the
    surrounding unit of work exits without an exception.
    """

    @abstractmethod
    async def load_portfolio(self, portfolio_id: str, for_update: bool = True) -> Optional[Portfolio]:
        pass

    @abstractmethod
    async def load_position(self, user_id: str, portfolio_id: str) -> Optional[Position]:
        pass

    @abstractmethod
    async def save_portfolio(self, portfolio: Portfolio) -> None:
        pass

    @abstractmethod
    async def save_position(self, position: Position) -> None:
        pass

    @abstractmethod
    async def delete_position(self, user_id: str, portfolio_id: str) -> None:
        pass

    @abstractmethod
    async def append_transaction(self, transaction: LedgerTransaction) -> None:
        pass

    @abstractmethod
    async def append_rebalance_event(self, event: RebalanceEvent) -> None:
        pass

    @abstractmethod
    async def append_performance_snapshot(self, snapshot: PortfolioPerformance) -> None:
        pass


class LedgerStore(ABC):
    """Abstract base class for ledger persistence backends."""

    @abstractmethod
    def unit_of_work(self) -> AsyncContextManager[LedgerUnitOfWork]:
        """Commit on clean exit, discard everything on exception.

        Store failures surface as PersistenceError.
        """
        pass

    @abstractmethod
    async def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        pass

    @abstractmethod
    async def list_active_portfolios(self) -> List[Portfolio]:
        pass

    @abstractmethod
    async def get_position(self, user_id: str, portfolio_id: str) -> Optional[Position]:
        pass

    @abstractmethod
    async def list_positions(self, user_id: str) -> List[Position]:
        pass

    @abstractmethod
    async def list_transactions(self, user_id: str, portfolio_id: Optional[str] = None,
                                limit: Optional[int] = None) -> List[LedgerTransaction]:
        """Newest first."""
        pass

    @abstractmethod
    async def list_rebalance_events(self, portfolio_id: str, limit: int = 20) -> List[RebalanceEvent]:
        """Newest first."""
        pass

    @abstractmethod
    async def list_performance(self, portfolio_id: str, limit: int = 100) -> List[PortfolioPerformance]:
        """The most recent `limit` snapshots, oldest first."""
        pass

    async def add_portfolio(self, portfolio: Portfolio) -> None:
        """Create or replace a portfolio definition."""
        async with self.unit_of_work() as uow:
            await uow.save_portfolio(portfolio)

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass
