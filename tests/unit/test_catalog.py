from decimal import Decimal
from pathlib import Path

import pytest

from core.utils.exceptions import ConfigurationError
from services.portfolio_ledger.catalog import load_portfolio_catalog, seed_portfolios
from services.portfolio_ledger.store.memory_store import InMemoryLedgerStore

SAMPLE_CATALOG = Path(__file__).resolve().parents[2] / "config" / "portfolios.yaml"

CATALOG = """
portfolios:
  - portfolio_id: blue-chip
    name: Replacement that must not win
    rebalance_frequency_seconds: 86400
    allocations:
      - {symbol: btc, weight: 100}
  - portfolio_id: majors
    name: Majors
    rebalance_frequency_seconds: 86400
    allocations:
      - {symbol: BTC, weight: 50}
      - {symbol: ETH, weight: 30}
      - {symbol: SOL, weight: 20}
"""


def write(tmp_path, text):
    path = tmp_path / "portfolios.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_sample_catalog_loads():
    portfolios = load_portfolio_catalog(SAMPLE_CATALOG)
    ids = [p.portfolio_id for p in portfolios]
    assert "blue-chip" in ids
    for portfolio in portfolios:
        assert sum(a.weight for a in portfolio.allocations) == Decimal("100")


def test_load_normalizes_symbols(tmp_path):
    portfolios = load_portfolio_catalog(write(tmp_path, CATALOG))
    assert portfolios[0].allocations[0].symbol == "BTC"
    assert portfolios[1].cash_balance == Decimal("0")


@pytest.mark.parametrize("text", [
    "portfolios: [unclosed",
    "just a string",
    "portfolios: {blue-chip: 1}",
    "portfolios:\n  - portfolio_id: x\n    name: X\n    rebalance_frequency_seconds: 60\n"
    "    allocations:\n      - {symbol: BTC, weight: 70}\n",
])
def test_invalid_catalogs_raise_configuration_error(tmp_path, text):
    with pytest.raises(ConfigurationError) as exc_info:
        load_portfolio_catalog(write(tmp_path, text))
    assert exc_info.value.config_field == "ledger.portfolios_file"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_portfolio_catalog(tmp_path / "nope.yaml")


@pytest.mark.asyncio
async def test_seeding_keeps_existing_portfolios(tmp_path, portfolio):
    store = InMemoryLedgerStore([portfolio])

    added = await seed_portfolios(store, load_portfolio_catalog(write(tmp_path, CATALOG)))

    assert added == 1
    assert (await store.get_portfolio("blue-chip")).name == portfolio.name
    assert (await store.get_portfolio("majors")) is not None
