from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.connection import DatabaseManager
from core.database.models import (
    InvestmentTransactionRecord,
    PortfolioPerformanceRecord,
    PortfolioRecord,
    PositionRecord,
    RebalanceEventRecord,
)
from core.logging import get_database_logger_safe
from core.portfolio.models import (
    Allocation,
    LedgerTransaction,
    Portfolio,
    PortfolioPerformance,
    Position,
    RebalanceEvent,
    Trade,
    TransactionType,
)
from core.utils.exceptions import PersistenceError

from .base import LedgerStore, LedgerUnitOfWork


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _decimal_map(values: Dict[str, Any]) -> Dict[str, Decimal]:
    return {symbol: Decimal(str(amount)) for symbol, amount in (values or {}).items()}


def _json_map(values: Dict[str, Decimal]) -> Dict[str, str]:
    return {symbol: str(amount) for symbol, amount in values.items()}


def portfolio_from_record(record: PortfolioRecord) -> Portfolio:
    return Portfolio(
        portfolio_id=record.portfolio_id,
        name=record.name,
        description=record.description,
        category=record.category,
        risk_level=record.risk_level,
        allocations=[Allocation.model_validate(a) for a in record.allocations],
        rebalance_frequency_seconds=record.rebalance_frequency_seconds,
        last_rebalanced_at=_aware(record.last_rebalanced_at),
        total_invested=record.total_invested,
        current_nav=record.current_nav,
        cash_balance=record.cash_balance,
        holdings=_decimal_map(record.holdings),
        total_shares=record.total_shares,
        is_active=record.is_active,
        created_at=_aware(record.created_at) or datetime.now(timezone.utc),
        updated_at=_aware(record.updated_at) or datetime.now(timezone.utc),
    )


def apply_portfolio(record: PortfolioRecord, portfolio: Portfolio) -> None:
    record.name = portfolio.name
    record.description = portfolio.description
    record.category = portfolio.category
    record.risk_level = portfolio.risk_level
    record.allocations = [a.model_dump(mode="json") for a in portfolio.allocations]
    record.rebalance_frequency_seconds = portfolio.rebalance_frequency_seconds
    record.last_rebalanced_at = portfolio.last_rebalanced_at
    record.total_invested = portfolio.total_invested
    record.current_nav = portfolio.current_nav
    record.cash_balance = portfolio.cash_balance
    record.holdings = _json_map(portfolio.holdings)
    record.total_shares = portfolio.total_shares
    record.is_active = portfolio.is_active
    record.created_at = portfolio.created_at
    record.updated_at = portfolio.updated_at


def position_from_record(record: PositionRecord) -> Position:
    return Position(
        user_id=record.user_id,
        portfolio_id=record.portfolio_id,
        pyusd_amount=record.pyusd_amount,
        shares=record.shares,
        current_value=record.current_value,
        profit_loss=record.profit_loss,
        profit_loss_percent=record.profit_loss_percent,
        invested_at=_aware(record.invested_at),
        last_withdrawal_at=_aware(record.last_withdrawal_at),
        updated_at=_aware(record.updated_at),
    )


def apply_position(record: PositionRecord, position: Position) -> None:
    record.user_id = position.user_id
    record.portfolio_id = position.portfolio_id
    record.pyusd_amount = position.pyusd_amount
    record.shares = position.shares
    record.current_value = position.current_value
    record.profit_loss = position.profit_loss
    record.profit_loss_percent = position.profit_loss_percent
    record.invested_at = position.invested_at
    record.last_withdrawal_at = position.last_withdrawal_at
    record.updated_at = position.updated_at


def transaction_from_record(record: InvestmentTransactionRecord) -> LedgerTransaction:
    return LedgerTransaction(
        transaction_id=record.transaction_id,
        user_id=record.user_id,
        portfolio_id=record.portfolio_id,
        transaction_type=TransactionType(record.transaction_type),
        pyusd_amount=record.pyusd_amount,
        shares_amount=record.shares_amount,
        nav_at_transaction=record.nav_at_transaction,
        profit_loss=record.profit_loss,
        profit_loss_percent=record.profit_loss_percent,
        created_at=_aware(record.created_at),
    )


def event_from_record(record: RebalanceEventRecord) -> RebalanceEvent:
    return RebalanceEvent(
        event_id=record.event_id,
        portfolio_id=record.portfolio_id,
        allocations_before=_decimal_map(record.allocations_before),
        allocations_after=_decimal_map(record.allocations_after),
        total_value=record.total_value,
        reason=record.reason,
        trades=[Trade.model_validate(t) for t in record.trades],
        degraded_pricing=record.degraded_pricing,
        executed_at=_aware(record.executed_at),
    )


def snapshot_from_record(record: PortfolioPerformanceRecord) -> PortfolioPerformance:
    return PortfolioPerformance(
        snapshot_id=record.snapshot_id,
        portfolio_id=record.portfolio_id,
        nav=record.nav,
        total_invested=record.total_invested,
        roi_percent=record.roi_percent,
        nav_per_share=record.nav_per_share,
        token_prices=_decimal_map(record.token_prices),
        degraded_pricing=record.degraded_pricing,
        timestamp=_aware(record.timestamp),
    )


class _DatabaseUnitOfWork(LedgerUnitOfWork):
    """Runs inside one session; rows read for update stay locked until commit."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._portfolio_rows: Dict[str, PortfolioRecord] = {}
        self._position_rows: Dict[tuple, PositionRecord] = {}

    async def load_portfolio(self, portfolio_id: str, for_update: bool = True) -> Optional[Portfolio]:
        stmt = select(PortfolioRecord).where(PortfolioRecord.portfolio_id == portfolio_id)
        if for_update:
            stmt = stmt.with_for_update()
        record = (await self.session.execute(stmt)).scalar_one_or_none()
        if record is None:
            return None
        self._portfolio_rows[portfolio_id] = record
        return portfolio_from_record(record)

    async def load_position(self, user_id: str, portfolio_id: str) -> Optional[Position]:
        stmt = select(PositionRecord).where(
            PositionRecord.user_id == user_id,
            PositionRecord.portfolio_id == portfolio_id,
        ).with_for_update()
        record = (await self.session.execute(stmt)).scalar_one_or_none()
        if record is None:
            return None
        self._position_rows[(user_id, portfolio_id)] = record
        return position_from_record(record)

    async def save_portfolio(self, portfolio: Portfolio) -> None:
        record = self._portfolio_rows.get(portfolio.portfolio_id)
        if record is None:
            record = await self.session.get(PortfolioRecord, portfolio.portfolio_id)
        if record is None:
            record = PortfolioRecord(portfolio_id=portfolio.portfolio_id)
            self.session.add(record)
        apply_portfolio(record, portfolio)
        self._portfolio_rows[portfolio.portfolio_id] = record

    async def save_position(self, position: Position) -> None:
        key = (position.user_id, position.portfolio_id)
        record = self._position_rows.get(key)
        if record is None:
            record = PositionRecord()
            self.session.add(record)
        apply_position(record, position)
        self._position_rows[key] = record

    async def delete_position(self, user_id: str, portfolio_id: str) -> None:
        record = self._position_rows.pop((user_id, portfolio_id), None)
        if record is not None:
            await self.session.delete(record)
            return
        await self.session.execute(
            delete(PositionRecord).where(
                PositionRecord.user_id == user_id,
                PositionRecord.portfolio_id == portfolio_id,
            )
        )

    async def append_transaction(self, transaction: LedgerTransaction) -> None:
        self.session.add(InvestmentTransactionRecord(
            transaction_id=transaction.transaction_id,
            user_id=transaction.user_id,
            portfolio_id=transaction.portfolio_id,
            transaction_type=transaction.transaction_type.value,
            pyusd_amount=transaction.pyusd_amount,
            shares_amount=transaction.shares_amount,
            nav_at_transaction=transaction.nav_at_transaction,
            profit_loss=transaction.profit_loss,
            profit_loss_percent=transaction.profit_loss_percent,
            created_at=transaction.created_at,
        ))

    async def append_rebalance_event(self, event: RebalanceEvent) -> None:
        self.session.add(RebalanceEventRecord(
            event_id=event.event_id,
            portfolio_id=event.portfolio_id,
            allocations_before=_json_map(event.allocations_before),
            allocations_after=_json_map(event.allocations_after),
            total_value=event.total_value,
            reason=event.reason.value,
            trades=[t.model_dump(mode="json") for t in event.trades],
            degraded_pricing=event.degraded_pricing,
            executed_at=event.executed_at,
        ))

    async def append_performance_snapshot(self, snapshot: PortfolioPerformance) -> None:
        self.session.add(PortfolioPerformanceRecord(
            snapshot_id=snapshot.snapshot_id,
            portfolio_id=snapshot.portfolio_id,
            nav=snapshot.nav,
            total_invested=snapshot.total_invested,
            roi_percent=snapshot.roi_percent,
            nav_per_share=snapshot.nav_per_share,
            token_prices=_json_map(snapshot.token_prices),
            degraded_pricing=snapshot.degraded_pricing,
            timestamp=snapshot.timestamp,
        ))


class DatabaseLedgerStore(LedgerStore):
    """Ledger store on async SQLAlchemy; one transaction per unit of work."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = get_database_logger_safe("ledger_store")

    async def initialize(self) -> None:
        await self.db_manager.init()

    async def close(self) -> None:
        await self.db_manager.shutdown()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[LedgerUnitOfWork]:
        try:
            async with self.db_manager.get_session() as session:
                yield _DatabaseUnitOfWork(session)
                await session.commit()
        except SQLAlchemyError as e:
            self.logger.error("Ledger unit of work failed", error=str(e))
            raise PersistenceError(f"Ledger write failed: {e}", operation="unit_of_work") from e

    async def _read(self, operation: str, stmt):
        try:
            async with self.db_manager.get_session() as session:
                return list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            self.logger.error("Ledger read failed", operation=operation, error=str(e))
            raise PersistenceError(f"Ledger read failed: {e}", operation=operation) from e

    async def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        rows = await self._read(
            "get_portfolio",
            select(PortfolioRecord).where(PortfolioRecord.portfolio_id == portfolio_id),
        )
        return portfolio_from_record(rows[0]) if rows else None

    async def list_active_portfolios(self) -> List[Portfolio]:
        rows = await self._read(
            "list_active_portfolios",
            select(PortfolioRecord).where(PortfolioRecord.is_active.is_(True)).order_by(PortfolioRecord.portfolio_id),
        )
        return [portfolio_from_record(r) for r in rows]

    async def get_position(self, user_id: str, portfolio_id: str) -> Optional[Position]:
        rows = await self._read(
            "get_position",
            select(PositionRecord).where(
                PositionRecord.user_id == user_id,
                PositionRecord.portfolio_id == portfolio_id,
            ),
        )
        return position_from_record(rows[0]) if rows else None

    async def list_positions(self, user_id: str) -> List[Position]:
        rows = await self._read(
            "list_positions",
            select(PositionRecord).where(PositionRecord.user_id == user_id).order_by(PositionRecord.id),
        )
        return [position_from_record(r) for r in rows]

    async def list_transactions(self, user_id: str, portfolio_id: Optional[str] = None,
                                limit: Optional[int] = None) -> List[LedgerTransaction]:
        stmt = select(InvestmentTransactionRecord).where(InvestmentTransactionRecord.user_id == user_id)
        if portfolio_id is not None:
            stmt = stmt.where(InvestmentTransactionRecord.portfolio_id == portfolio_id)
        stmt = stmt.order_by(InvestmentTransactionRecord.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [transaction_from_record(r) for r in await self._read("list_transactions", stmt)]

    async def list_rebalance_events(self, portfolio_id: str, limit: int = 20) -> List[RebalanceEvent]:
        stmt = (
            select(RebalanceEventRecord)
            .where(RebalanceEventRecord.portfolio_id == portfolio_id)
            .order_by(RebalanceEventRecord.executed_at.desc())
            .limit(limit)
        )
        return [event_from_record(r) for r in await self._read("list_rebalance_events", stmt)]

    async def list_performance(self, portfolio_id: str, limit: int = 100) -> List[PortfolioPerformance]:
        stmt = (
            select(PortfolioPerformanceRecord)
            .where(PortfolioPerformanceRecord.portfolio_id == portfolio_id)
            .order_by(PortfolioPerformanceRecord.timestamp.desc())
            .limit(limit)
        )
        rows = await self._read("list_performance", stmt)
        return [snapshot_from_record(r) for r in reversed(rows)]
