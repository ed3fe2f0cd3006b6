from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from core.config.settings import PriceFeedSettings
from core.portfolio.models import QuoteSource
from core.utils.exceptions import UpstreamUnavailableError
from services.price_feed.oracle_client import PythOracleClient, parse_price_payload

BTC_FEED = "0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43"

NESTED_PAYLOAD = [{
    "id": BTC_FEED[2:],
    "price": {"price": "6543210000000", "conf": "1500000000", "expo": -8, "publish_time": 1700000000},
    "ema_price": {"price": "6540000000000", "conf": "1400000000", "expo": -8, "publish_time": 1700000000},
}]


def _client(handler) -> PythOracleClient:
    transport = httpx.MockTransport(handler)
    http = httpx.AsyncClient(transport=transport, base_url="https://hermes.test")
    return PythOracleClient(PriceFeedSettings(), client=http)


class TestParsePricePayload:

    def test_nested_price_object(self):
        quote = parse_price_payload("BTC", NESTED_PAYLOAD)

        assert quote.price == Decimal("65432.1")
        assert quote.confidence == Decimal("15")
        assert quote.timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert quote.source == QuoteSource.LIVE

    def test_flat_price_object(self):
        quote = parse_price_payload("ETH", {"price": 250012, "exponent": -2, "confidence": 150})
        assert quote.price == Decimal("2500.12")
        assert quote.confidence == Decimal("1.5")

    def test_negative_mantissa_taken_as_absolute(self):
        quote = parse_price_payload("ETH", {"price": "-250000", "expo": -2})
        assert quote.price == Decimal("2500")

    @pytest.mark.parametrize("payload", [
        [],
        "not an object",
        {"price": {"price": "0", "expo": -8}},
        {"price": {"price": "abc", "expo": -8}},
        {"price": {"price": "100"}},
        {"ema_price": {"price": "100", "expo": -2}},
    ])
    def test_unusable_payloads(self, payload):
        with pytest.raises(UpstreamUnavailableError):
            parse_price_payload("BTC", payload)


class TestPythOracleClient:

    @pytest.mark.asyncio
    async def test_requests_configured_feed(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["ids"] = request.url.params.get_list("ids[]")
            return httpx.Response(200, json=NESTED_PAYLOAD)

        client = _client(handler)
        quote = await client.fetch_quote("btc")

        assert seen == {"path": "/api/latest_price_feeds", "ids": [BTC_FEED]}
        assert quote.symbol == "BTC"
        assert quote.price == Decimal("65432.1")

    @pytest.mark.asyncio
    async def test_non_2xx_is_upstream_unavailable(self):
        client = _client(lambda request: httpx.Response(503, text="busy"))
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.fetch_quote("BTC")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_malformed_json_is_upstream_unavailable(self):
        client = _client(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(UpstreamUnavailableError):
            await client.fetch_quote("BTC")

    @pytest.mark.asyncio
    async def test_transport_error_is_upstream_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(UpstreamUnavailableError):
            await client.fetch_quote("BTC")

    @pytest.mark.asyncio
    async def test_unknown_symbol(self):
        client = _client(lambda request: httpx.Response(200, json=NESTED_PAYLOAD))
        assert not client.supports("NOPE")
        with pytest.raises(UpstreamUnavailableError):
            await client.fetch_quote("NOPE")

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        client = PythOracleClient(PriceFeedSettings(), client=http)
        await client.close()
        assert not http.is_closed
        await http.aclose()
