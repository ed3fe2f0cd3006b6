# Database models for ledger state
from sqlalchemy import (
    Column, Integer, String, Numeric, JSON, Boolean, DateTime, Text, UniqueConstraint, ForeignKey, Index
)
from sqlalchemy.sql import func
from .connection import Base

# Token amounts go down to 1e-18
Amount = Numeric(38, 18)


class PortfolioRecord(Base):
    """Model portfolio and the pool's own cash and token holdings"""
    __tablename__ = "portfolios"

    portfolio_id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    category = Column(String)
    risk_level = Column(Integer)
    allocations = Column(JSON, nullable=False)   # [{"symbol": "BTC", "weight": "60"}]
    rebalance_frequency_seconds = Column(Integer, nullable=False)
    last_rebalanced_at = Column(DateTime(timezone=True))
    total_invested = Column(Amount, nullable=False, default=0)
    current_nav = Column(Amount, nullable=False, default=0)
    cash_balance = Column(Amount, nullable=False, default=0)
    holdings = Column(JSON, nullable=False, default=dict)  # {"BTC": "0.0012"}
    total_shares = Column(Amount, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_portfolios_is_active', 'is_active'),
    )


class PositionRecord(Base):
    """One user's shares in one portfolio; zero-share rows are deleted"""
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    portfolio_id = Column(String, ForeignKey("portfolios.portfolio_id"), nullable=False)
    pyusd_amount = Column(Amount, nullable=False, default=0)
    shares = Column(Amount, nullable=False, default=0)
    current_value = Column(Amount, nullable=False, default=0)
    profit_loss = Column(Amount)
    profit_loss_percent = Column(Amount)
    invested_at = Column(DateTime(timezone=True), nullable=False)
    last_withdrawal_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'portfolio_id', name='uq_position_user_portfolio'),
    )


class InvestmentTransactionRecord(Base):
    """Append-only invest / withdraw log"""
    __tablename__ = "investment_transactions"

    transaction_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    portfolio_id = Column(String, ForeignKey("portfolios.portfolio_id"), nullable=False)
    transaction_type = Column(String, nullable=False)
    pyusd_amount = Column(Amount, nullable=False)
    shares_amount = Column(Amount, nullable=False)
    nav_at_transaction = Column(Amount, nullable=False)
    profit_loss = Column(Amount)
    profit_loss_percent = Column(Amount)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_investment_transactions_user_created', 'user_id', 'created_at'),
    )


class RebalanceEventRecord(Base):
    """Immutable audit record of an executed rebalance"""
    __tablename__ = "rebalance_events"

    event_id = Column(String, primary_key=True)
    portfolio_id = Column(String, ForeignKey("portfolios.portfolio_id"), nullable=False)
    allocations_before = Column(JSON, nullable=False)
    allocations_after = Column(JSON, nullable=False)
    total_value = Column(Amount, nullable=False)
    reason = Column(String, nullable=False)
    trades = Column(JSON, nullable=False)
    degraded_pricing = Column(Boolean, default=False, nullable=False)
    executed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_rebalance_events_portfolio_executed', 'portfolio_id', 'executed_at'),
    )


class PortfolioPerformanceRecord(Base):
    """NAV snapshot written with each rebalance"""
    __tablename__ = "portfolio_performance"

    snapshot_id = Column(String, primary_key=True)
    portfolio_id = Column(String, ForeignKey("portfolios.portfolio_id"), nullable=False)
    nav = Column(Amount, nullable=False)
    total_invested = Column(Amount, nullable=False)
    roi_percent = Column(Amount, nullable=False)
    nav_per_share = Column(Amount)
    token_prices = Column(JSON, nullable=False)  # {"BTC": "67500"}
    degraded_pricing = Column(Boolean, default=False, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_portfolio_performance_portfolio_timestamp', 'portfolio_id', 'timestamp'),
    )
