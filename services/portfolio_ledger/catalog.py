"""
Model portfolio catalog.

Portfolio definitions live in a YAML file with a top-level ``portfolios``
list; seeding only inserts portfolios the store does not know yet, so
ledger state (cash, holdings, shares) is never overwritten.
"""

from pathlib import Path
from typing import List, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from core.logging import get_ledger_logger_safe
from core.portfolio.models import Portfolio
from core.utils.exceptions import ConfigurationError

from .store.base import LedgerStore

logger = get_ledger_logger_safe("portfolio_catalog")


def load_portfolio_catalog(path: Union[str, Path]) -> List[Portfolio]:
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Cannot read portfolio catalog {path}: {e}",
            config_field="ledger.portfolios_file",
            config_value=str(path),
        ) from e

    entries = document.get("portfolios") if isinstance(document, dict) else None
    if not isinstance(entries, list):
        raise ConfigurationError(
            f"Portfolio catalog {path} must contain a 'portfolios' list",
            config_field="ledger.portfolios_file",
            config_value=str(path),
        )

    portfolios = []
    for index, entry in enumerate(entries):
        try:
            portfolios.append(Portfolio.model_validate(entry))
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Invalid portfolio #{index} in {path}: {e}",
                config_field="ledger.portfolios_file",
                config_value=str(path),
            ) from e
    return portfolios


async def seed_portfolios(store: LedgerStore, portfolios: List[Portfolio]) -> int:
    """Insert unknown portfolios; returns how many were added."""
    added = 0
    for portfolio in portfolios:
        if await store.get_portfolio(portfolio.portfolio_id) is not None:
            logger.debug("Portfolio already present, skipping", portfolio_id=portfolio.portfolio_id)
            continue
        await store.add_portfolio(portfolio)
        added += 1
    logger.info("Portfolio catalog seeded", added=added, skipped=len(portfolios) - added)
    return added
