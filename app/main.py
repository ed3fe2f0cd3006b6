from typing import Optional

from app.containers import AppContainer
from core.config.validator import validate_startup_configuration
from core.logging import configure_logging, get_logger
from core.utils.exceptions import ConfigurationError
from services.portfolio_ledger.catalog import load_portfolio_catalog, seed_portfolios


class ApplicationOrchestrator:
    """Owns the DI container and the startup / shutdown sequence shared by the API and the CLI."""

    def __init__(self, container: Optional[AppContainer] = None):
        self.container = container or AppContainer()
        self.settings = self.container.settings()

        configure_logging(self.settings)
        self.logger = get_logger("pool_ledger.main", component="application")
        self._started = False

    async def startup(self, check_connections: bool = True):
        self.logger.info(
            "Starting Pool Ledger",
            environment=self.settings.environment.value,
            store_backend=self.settings.ledger.store_backend,
            cache_backend=self.settings.price_feed.cache_backend,
        )

        if not await validate_startup_configuration(self.settings, check_connections=check_connections):
            raise ConfigurationError(
                "Configuration validation failed, see log for details",
                config_field="settings",
                config_value=self.settings.environment.value,
            )
        self.logger.info("✅ Configuration validation passed")

        store = self.container.ledger_store()
        await store.initialize()
        self.logger.info("✅ Ledger store initialized", backend=self.settings.ledger.store_backend)

        if self.settings.ledger.portfolios_file:
            portfolios = load_portfolio_catalog(self.settings.ledger.portfolios_file)
            await seed_portfolios(store, portfolios)

        self._started = True

    async def shutdown(self):
        if not self._started:
            return
        self.logger.info("Shutting down Pool Ledger")
        try:
            await self.container.price_feed().close()
        finally:
            await self.container.ledger_store().close()
        self._started = False
        self.logger.info("Shutdown complete")
