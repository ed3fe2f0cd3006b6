"""
Client for the Pyth Hermes price service.

Only what valuation needs is parsed: the price mantissa, its exponent, the
confidence interval and the publish time.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from core.config.settings import PriceFeedSettings
from core.logging import get_market_data_logger_safe
from core.portfolio.models import PriceQuote, QuoteSource
from core.utils.exceptions import UpstreamUnavailableError


class PythOracleClient:
    """Fetches one live quote per call from `GET /api/latest_price_feeds`."""

    LATEST_PRICE_PATH = "/api/latest_price_feeds"

    def __init__(self, settings: PriceFeedSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.feed_ids: Dict[str, str] = dict(settings.feed_ids)
        self._client = client
        self._owns_client = client is None
        self.logger = get_market_data_logger_safe("oracle_client")

    def supports(self, symbol: str) -> bool:
        return symbol.upper() in self.feed_ids

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.oracle_base_url,
                timeout=self.settings.request_timeout_seconds,
            )
        return self._client

    async def fetch_quote(self, symbol: str) -> PriceQuote:
        symbol = symbol.upper()
        feed_id = self.feed_ids.get(symbol)
        if feed_id is None:
            raise UpstreamUnavailableError(f"No oracle feed configured for {symbol}", symbol=symbol)

        client = self._get_client()
        try:
            response = await client.get(self.LATEST_PRICE_PATH, params={"ids[]": feed_id})
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError(f"Oracle request for {symbol} timed out", symbol=symbol) from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Oracle request for {symbol} failed: {e}", symbol=symbol) from e

        if not response.is_success:
            raise UpstreamUnavailableError(
                f"Oracle returned HTTP {response.status_code} for {symbol}",
                symbol=symbol,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(f"Oracle returned invalid JSON for {symbol}", symbol=symbol) from e

        return parse_price_payload(symbol, payload)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _to_decimal(value: Any, symbol: str, name: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise UpstreamUnavailableError(f"Oracle payload for {symbol} has no {name}", symbol=symbol)
    try:
        result = Decimal(str(value))
    except InvalidOperation as e:
        raise UpstreamUnavailableError(f"Oracle {name} for {symbol} is not numeric: {value!r}", symbol=symbol) from e
    if not result.is_finite():
        raise UpstreamUnavailableError(f"Oracle {name} for {symbol} is not finite", symbol=symbol)
    return result


def parse_price_payload(symbol: str, payload: Any) -> PriceQuote:
    """
    Turn an oracle response into a live PriceQuote.

    Accepts a list (first entry used) or a single object. The price fields are
    either nested under "price" ({price, conf, expo, publish_time}) or flat
    ({price, exponent, confidence}). Scaled price = |mantissa * 10^exponent|.
    """
    if isinstance(payload, list):
        if not payload:
            raise UpstreamUnavailableError(f"Oracle returned no feeds for {symbol}", symbol=symbol)
        payload = payload[0]
    if not isinstance(payload, dict):
        raise UpstreamUnavailableError(f"Oracle payload for {symbol} is not an object", symbol=symbol)

    price_obj = payload.get("price")
    if isinstance(price_obj, dict):
        mantissa = price_obj.get("price")
        exponent = price_obj.get("expo")
        confidence = price_obj.get("conf")
        publish_time = price_obj.get("publish_time")
    else:
        mantissa = price_obj
        exponent = payload.get("exponent", payload.get("expo"))
        confidence = payload.get("confidence", payload.get("conf"))
        publish_time = payload.get("publish_time")

    mantissa_dec = _to_decimal(mantissa, symbol, "price")
    try:
        expo = int(exponent)
    except (TypeError, ValueError) as e:
        raise UpstreamUnavailableError(f"Oracle exponent for {symbol} is invalid: {exponent!r}", symbol=symbol) from e

    # Sign-corrupted feeds are taken at absolute value
    price = abs(mantissa_dec.scaleb(expo))
    if price == 0:
        raise UpstreamUnavailableError(f"Oracle price for {symbol} is zero", symbol=symbol)

    conf = None
    if confidence is not None:
        conf = abs(_to_decimal(confidence, symbol, "confidence").scaleb(expo))

    timestamp = datetime.now(timezone.utc)
    if isinstance(publish_time, (int, float)) and not isinstance(publish_time, bool):
        timestamp = datetime.fromtimestamp(publish_time, tz=timezone.utc)

    return PriceQuote(
        symbol=symbol,
        price=price,
        confidence=conf,
        timestamp=timestamp,
        source=QuoteSource.LIVE,
    )
