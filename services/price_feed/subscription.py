import asyncio
import inspect
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

from core.logging import get_market_data_logger_safe, get_error_logger_safe
from core.monitoring.prometheus_metrics import LedgerMetricsCollector

if TYPE_CHECKING:
    from .aggregator import PriceFeedAggregator


class PriceSubscription:
    """
    Cooperative price poller; one task per subscription.

    The first fetch happens immediately, then one per tick. A fetch that
    outlasts the interval causes the missed ticks to be skipped, never
    queued, so fetches never overlap. `cancel()` does not wait: a sleeping
    poller is cancelled outright, an in-flight fetch is left to finish and
    its result is discarded.
    """

    def __init__(
        self,
        aggregator: "PriceFeedAggregator",
        symbols: Iterable[str],
        interval_ms: int,
        on_update: Callable,
        metrics: Optional[LedgerMetricsCollector] = None,
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.aggregator = aggregator
        self.symbols: List[str] = list(dict.fromkeys(s.upper() for s in symbols))
        self.interval_ms = interval_ms
        self.on_update = on_update
        self.metrics = metrics
        self.ticks = 0
        self.skipped_ticks = 0

        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._sleeping = False
        self.logger = get_market_data_logger_safe("price_subscription")
        self.error_logger = get_error_logger_safe("price_subscription_errors")

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"price-subscription-{','.join(self.symbols)}"
        )
        self.logger.info("Price subscription started", symbols=self.symbols, interval_ms=self.interval_ms)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and self._sleeping:
            self._task.cancel()
        self.logger.info("Price subscription cancelled", symbols=self.symbols, ticks=self.ticks)

    async def wait_closed(self) -> None:
        """Wait until the polling task has exited."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.interval_ms / 1000
        next_tick = loop.time()

        while not self._cancelled:
            quotes = await self.aggregator.fetch_many(self.symbols)
            if self._cancelled:
                self._record("discarded")
                break

            self.ticks += 1
            await self._deliver(quotes)
            if self._cancelled:
                break

            next_tick += interval
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // interval) + 1
                self.skipped_ticks += missed
                next_tick += missed * interval
                self._record("skipped")
                self.logger.debug("Skipped price ticks", missed=missed, symbols=self.symbols)

            self._sleeping = True
            try:
                await asyncio.sleep(next_tick - now)
            finally:
                self._sleeping = False

    async def _deliver(self, quotes) -> None:
        try:
            result = self.on_update(quotes)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._record("callback_error")
            self.error_logger.error(
                "Price subscription callback failed",
                symbols=self.symbols,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
        else:
            self._record("delivered")

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_subscription_tick(outcome)
