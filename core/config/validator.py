"""
Configuration validation at application startup.

Checks that settings are coherent before services start and, for the
backends that are actually enabled, that PostgreSQL and Redis answer.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List
from urllib.parse import urlparse

import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from .settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of a configuration validation check"""
    is_valid: bool
    component: str
    message: str
    severity: str = "error"  # "error", "warning", "info"


class ConfigurationValidator:
    """
    Startup configuration validator.

    Collects one ValidationResult per finding; only "error" results fail
    validation.
    """

    def __init__(self, settings: Settings, check_connections: bool = True):
        self.settings = settings
        self.check_connections = check_connections
        self.validation_results: List[ValidationResult] = []

    async def validate_all(self) -> bool:
        """
        Run all validation checks.

        Returns:
            bool: True if all critical validations pass
        """
        logger.info("🔍 Starting configuration validation...")

        self._validate_logging_settings()
        self._validate_file_paths()
        self._validate_price_feed_settings()
        self._validate_ledger_settings()
        self._validate_rebalance_settings()
        if self.check_connections:
            if self.settings.ledger.store_backend == "database":
                await self._validate_database_connection()
            if self.settings.price_feed.cache_backend == "redis":
                await self._validate_redis_connection()

        errors = [r for r in self.validation_results if r.severity == "error"]
        warnings = [r for r in self.validation_results if r.severity == "warning"]

        if errors:
            logger.error(f"❌ Configuration validation failed: {len(errors)} errors, {len(warnings)} warnings")
            for result in errors:
                logger.error(f"   ERROR [{result.component}]: {result.message}")

        for result in warnings:
            logger.warning(f"   WARNING [{result.component}]: {result.message}")

        if not errors and not warnings:
            logger.info("✅ All configuration validation checks passed")
        elif not errors:
            logger.info(f"✅ Configuration validation passed with {len(warnings)} warnings")

        return len(errors) == 0

    def _add(self, component: str, message: str, severity: str = "error"):
        self.validation_results.append(ValidationResult(
            is_valid=severity != "error",
            component=component,
            message=message,
            severity=severity,
        ))

    def _validate_logging_settings(self):
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.settings.logging.level.upper() not in valid_log_levels:
            self._add("Logging", f"Invalid log level: {self.settings.logging.level}")

    def _validate_file_paths(self):
        if self.settings.logging.file_enabled:
            logs_dir = Path(self.settings.logs_dir).resolve()
            if not logs_dir.parent.exists():
                self._add("File System", f"Parent directory for logs does not exist: {logs_dir.parent}")

        portfolios_file = self.settings.ledger.portfolios_file
        if portfolios_file and not Path(portfolios_file).is_file():
            self._add("File System", f"Portfolios file not found: {portfolios_file}")

    def _validate_price_feed_settings(self):
        feed = self.settings.price_feed
        parsed = urlparse(feed.oracle_base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            self._add("Price Feed", f"Oracle base URL must be an http(s) URL: {feed.oracle_base_url}")
        if feed.request_timeout_seconds <= 0:
            self._add("Price Feed", "Oracle request timeout must be positive")
        if feed.cache_ttl_seconds < 0:
            self._add("Price Feed", "Price cache TTL cannot be negative")
        if feed.subscription_interval_ms <= 0:
            self._add("Price Feed", "Subscription interval must be positive")
        if feed.breaker_failure_threshold < 1:
            self._add("Price Feed", "Circuit breaker failure threshold must be at least 1")
        if feed.default_fallback_price <= 0:
            self._add("Price Feed", "Default fallback price must be positive")

        bad_fallbacks = [symbol for symbol, price in feed.fallback_prices.items() if price <= 0]
        if bad_fallbacks:
            self._add("Price Feed", f"Fallback prices must be positive: {sorted(bad_fallbacks)}")

        bad_ids = [
            symbol for symbol, feed_id in feed.feed_ids.items()
            if not (feed_id.startswith("0x") and len(feed_id) == 66)
        ]
        if bad_ids:
            self._add("Price Feed", f"Malformed oracle feed ids for: {sorted(bad_ids)}")

        if not feed.feed_ids:
            self._add("Price Feed", "No oracle feed ids configured; every quote will use fallback prices",
                      severity="warning")

    def _validate_ledger_settings(self):
        if self.settings.ledger.minimum_investment <= 0:
            self._add("Ledger", "Minimum investment must be positive")

    def _validate_rebalance_settings(self):
        rebalance = self.settings.rebalance
        if not Decimal("0") < rebalance.drift_threshold < Decimal("1"):
            self._add("Rebalance", "Drift threshold must be a fraction between 0 and 1")
        if rebalance.dust_threshold < 0:
            self._add("Rebalance", "Dust threshold cannot be negative")
        if rebalance.max_concurrency < 1:
            self._add("Rebalance", "Max concurrency must be at least 1")
        if rebalance.history_limit < 1:
            self._add("Rebalance", "History limit must be at least 1")
        if rebalance.performance_history_limit < 1:
            self._add("Rebalance", "Performance history limit must be at least 1")
        if rebalance.max_concurrency > self.settings.database.pool_size and \
                self.settings.ledger.store_backend == "database":
            self._add("Rebalance", "Max concurrency exceeds the database pool size", severity="warning")

    async def _validate_database_connection(self):
        try:
            engine = create_async_engine(self.settings.database.postgres_url)
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            await engine.dispose()
            self._add("Database", "Database connection successful", severity="info")
        except Exception as e:
            self._add("Database", f"Cannot connect to database: {e}")

    async def _validate_redis_connection(self):
        try:
            redis_client = redis.from_url(self.settings.redis.url, socket_connect_timeout=5)
            await redis_client.ping()
            await redis_client.aclose()
            self._add("Redis", "Redis connection successful", severity="info")
        except Exception as e:
            self._add("Redis", f"Cannot connect to Redis: {e}")

    def get_validation_summary(self) -> Dict[str, Any]:
        """Get a summary of validation results"""
        errors = [r for r in self.validation_results if r.severity == "error"]
        warnings = [r for r in self.validation_results if r.severity == "warning"]

        return {
            "total_checks": len(self.validation_results),
            "errors": len(errors),
            "warnings": len(warnings),
            "is_valid": len(errors) == 0,
            "error_details": [{"component": r.component, "message": r.message} for r in errors],
            "warning_details": [{"component": r.component, "message": r.message} for r in warnings]
        }


async def validate_startup_configuration(settings: Settings, check_connections: bool = True) -> bool:
    """
    Convenience function to run startup configuration validation.

    Args:
        settings: Application settings to validate
        check_connections: Also ping the enabled database / Redis backends

    Returns:
        bool: True if validation passes (no critical errors)
    """
    validator = ConfigurationValidator(settings, check_connections=check_connections)
    return await validator.validate_all()
