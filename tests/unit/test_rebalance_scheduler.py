from datetime import timedelta
from decimal import Decimal

import pytest

from core.portfolio.models import RebalanceReason, TradeAction, utc_now
from core.utils.exceptions import NotFoundError, PersistenceError

BALANCED_HOLDINGS = {"BTC": Decimal("0.0012"), "ETH": Decimal("0.016")}


class TestEvaluate:

    @pytest.mark.asyncio
    async def test_never_rebalanced_is_scheduled(self, scheduler, portfolio):
        decision = await scheduler.evaluate(portfolio)
        assert decision.should_rebalance
        assert decision.reason == RebalanceReason.SCHEDULED

    @pytest.mark.asyncio
    async def test_recently_rebalanced_and_balanced(self, scheduler, portfolio_factory):
        now = utc_now()
        p = portfolio_factory(last_rebalanced_at=now - timedelta(seconds=1), holdings=BALANCED_HOLDINGS)

        decision = await scheduler.evaluate(p, now=now)

        assert not decision.should_rebalance
        assert decision.reason is None
        assert decision.max_drift == Decimal("0")

    @pytest.mark.asyncio
    async def test_frequency_elapsed_is_scheduled(self, scheduler, portfolio_factory):
        now = utc_now()
        p = portfolio_factory(
            last_rebalanced_at=now - timedelta(seconds=3600),
            rebalance_frequency_seconds=3600,
            holdings=BALANCED_HOLDINGS,
        )
        decision = await scheduler.evaluate(p, now=now)
        assert decision.reason == RebalanceReason.SCHEDULED

    @pytest.mark.asyncio
    async def test_drift_beyond_threshold(self, scheduler, portfolio_factory, fake_oracle):
        now = utc_now()
        p = portfolio_factory(last_rebalanced_at=now - timedelta(seconds=1), holdings=BALANCED_HOLDINGS)
        fake_oracle.prices["BTC"] = Decimal("75000")  # BTC weight 90/130

        decision = await scheduler.evaluate(p, now=now)

        assert decision.should_rebalance
        assert decision.reason == RebalanceReason.DRIFT
        assert decision.max_drift > Decimal("0.05")

    @pytest.mark.asyncio
    async def test_drift_within_threshold(self, scheduler, portfolio_factory, fake_oracle):
        now = utc_now()
        p = portfolio_factory(last_rebalanced_at=now - timedelta(seconds=1), holdings=BALANCED_HOLDINGS)
        fake_oracle.prices["BTC"] = Decimal("60000")  # BTC weight 72/112, about 4.3% over

        decision = await scheduler.evaluate(p, now=now)
        assert not decision.should_rebalance

    @pytest.mark.asyncio
    async def test_empty_pool_never_drifts(self, scheduler, portfolio_factory):
        now = utc_now()
        p = portfolio_factory(last_rebalanced_at=now - timedelta(seconds=1))
        decision = await scheduler.evaluate(p, now=now)
        assert not decision.should_rebalance


class TestExecuteRebalance:

    @pytest.mark.asyncio
    async def test_first_rebalance_deploys_cash(self, scheduler, ledger, store):
        await ledger.invest("alice", "blue-chip", Decimal("100"))

        event = await scheduler.execute_rebalance("blue-chip", RebalanceReason.SCHEDULED)

        assert [(t.symbol, t.action, t.amount) for t in event.trades] == [
            ("BTC", TradeAction.BUY, Decimal("0.0012")),
            ("ETH", TradeAction.BUY, Decimal("0.016")),
        ]
        assert event.total_value == Decimal("100")
        assert event.allocations_before == {"BTC": Decimal("0"), "ETH": Decimal("0")}
        assert event.allocations_after == {"BTC": Decimal("60"), "ETH": Decimal("40")}
        assert not event.degraded_pricing

        portfolio = await store.get_portfolio("blue-chip")
        assert portfolio.holdings == BALANCED_HOLDINGS
        assert portfolio.cash_balance == Decimal("0")
        assert portfolio.last_rebalanced_at == event.executed_at
        assert portfolio.current_nav == Decimal("100")

        history = await ledger.get_rebalance_history("blue-chip")
        assert [e.event_id for e in history] == [event.event_id]

    @pytest.mark.asyncio
    async def test_rebalance_preserves_total_value(self, scheduler, ledger, fake_oracle):
        await ledger.invest("alice", "blue-chip", Decimal("100"))
        await scheduler.execute_rebalance("blue-chip", RebalanceReason.SCHEDULED)
        fake_oracle.prices["BTC"] = Decimal("75000")

        event = await scheduler.execute_rebalance("blue-chip", RebalanceReason.DRIFT)

        assert event.total_value == Decimal("130")
        assert (await ledger.get_portfolio("blue-chip")).total_value == Decimal("130")
        assert {t.symbol: t.action for t in event.trades} == {"BTC": TradeAction.SELL, "ETH": TradeAction.BUY}

    @pytest.mark.asyncio
    async def test_missing_portfolio(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.execute_rebalance("missing", RebalanceReason.SCHEDULED)

    @pytest.mark.asyncio
    async def test_history_is_newest_first_and_limited(self, scheduler, ledger):
        await ledger.invest("alice", "blue-chip", Decimal("100"))
        events = [
            await scheduler.execute_rebalance("blue-chip", RebalanceReason.SCHEDULED)
            for _ in range(3)
        ]

        history = await ledger.get_rebalance_history("blue-chip", limit=2)
        assert [e.event_id for e in history] == [events[2].event_id, events[1].event_id]

    @pytest.mark.asyncio
    async def test_success_metrics(self, scheduler, ledger, metrics):
        await ledger.invest("alice", "blue-chip", Decimal("100"))
        await scheduler.execute_rebalance("blue-chip", RebalanceReason.SCHEDULED)

        registry = metrics.registry
        assert registry.get_sample_value(
            "rebalances_total", {"reason": "scheduled", "outcome": "success"}) == 1.0
        assert registry.get_sample_value("rebalance_trades_total", {"action": "buy"}) == 2.0


class TestRunAll:

    @pytest.mark.asyncio
    async def test_rebalances_only_due_portfolios(self, scheduler, ledger, store, portfolio_factory):
        await store.add_portfolio(portfolio_factory(
            "fresh", last_rebalanced_at=utc_now(), holdings=BALANCED_HOLDINGS,
        ))
        await ledger.invest("alice", "blue-chip", Decimal("100"))

        summary = await scheduler.run_all()

        assert summary.success
        assert summary.evaluated == 2
        assert summary.rebalanced_count == 1
        assert summary.events[0].portfolio_id == "blue-chip"

    @pytest.mark.asyncio
    async def test_inactive_portfolios_are_skipped(self, scheduler, store, portfolio_factory):
        await store.add_portfolio(portfolio_factory("retired", is_active=False))
        summary = await scheduler.run_all()
        assert summary.evaluated == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_others(self, scheduler, store, portfolio_factory, monkeypatch):
        for pid in ("a", "b", "c"):
            await store.add_portfolio(portfolio_factory(pid))
        original = scheduler.execute_rebalance

        async def flaky(portfolio_id, reason):
            if portfolio_id == "b":
                raise PersistenceError("write failed", operation="append_rebalance_event")
            return await original(portfolio_id, reason)

        monkeypatch.setattr(scheduler, "execute_rebalance", flaky)

        summary = await scheduler.run_all()

        assert not summary.success
        assert summary.rebalanced_count == 3  # blue-chip, a, c
        [failure] = summary.errors
        assert failure.portfolio_id == "b"
        assert failure.error_type == "PersistenceError"

    @pytest.mark.asyncio
    async def test_listing_failure_reports_batch_error(self, scheduler, store, monkeypatch):
        async def broken():
            raise PersistenceError("database unavailable", operation="list_active_portfolios")

        monkeypatch.setattr(store, "list_active_portfolios", broken)

        summary = await scheduler.run_all()

        assert not summary.success
        assert summary.evaluated == 0
        [failure] = summary.errors
        assert failure.portfolio_id is None
        assert "database unavailable" in failure.message
