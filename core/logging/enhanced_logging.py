# Enhanced structured logging with multi-channel support
import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Optional
import structlog

from core.config.settings import Settings
from .correlation import add_correlation_id
from .channels import (
    LogChannel,
    get_channel_for_component,
    get_channel_config,
    create_log_directory_structure
)

# Global logger manager instance
_logger_manager: Optional['EnhancedLoggerManager'] = None

# Global flag to prevent duplicate configuration
_enhanced_logging_configured = False


def _foreign_pre_chain() -> list:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


class ChannelFilter(logging.Filter):
    """Route records to a handler only when their structured `channel` matches.

    Records without a channel are accepted when the logger name starts with one
    of the allowed prefixes (e.g. uvicorn, sqlalchemy).
    """

    def __init__(self, expected_channel: str, allowed_logger_prefixes: Optional[list[str]] = None):
        super().__init__()
        self.expected_channel = expected_channel
        self.allowed_logger_prefixes = allowed_logger_prefixes or []

    def filter(self, record: logging.LogRecord) -> bool:
        event = record.msg if isinstance(record.msg, dict) else {}
        ch = event.get("channel") or getattr(record, "channel", None)
        if ch is not None:
            return str(ch) == self.expected_channel
        name = getattr(record, "name", "")
        return any(name.startswith(prefix) for prefix in self.allowed_logger_prefixes)


class EnhancedLoggerManager:
    """Logging manager with console, file and per-channel handlers."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.channel_handlers: Dict[LogChannel, logging.Handler] = {}
        self.configured_loggers: Dict[str, structlog.BoundLogger] = {}

        self._setup_logging()

    def _setup_logging(self) -> None:
        if self.settings.logging.file_enabled:
            create_log_directory_structure(self.settings.logs_dir)

        self._setup_console_logging()

        if self.settings.logging.file_enabled:
            self._setup_file_logging()

        if self.settings.logging.multi_channel_enabled:
            self._setup_multi_channel_logging()

        for name in ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool"):
            logging.getLogger(name).setLevel(self.settings.logging.database_level.upper())

        self._configure_structlog()

    def _level(self) -> int:
        return getattr(logging, self.settings.logging.level.upper())

    def _setup_console_logging(self) -> None:
        """Setup console logging with configurable format."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())

        if not self.settings.logging.console_enabled:
            for handler in list(root_logger.handlers):
                if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) == sys.stdout:
                    root_logger.removeHandler(handler)
            return

        console_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.console_json_format
            else structlog.dev.ConsoleRenderer()
        )
        formatter = structlog.stdlib.ProcessorFormatter(
            processor=console_processor,
            foreign_pre_chain=_foreign_pre_chain(),
        )

        # Reconfigure a console handler installed earlier (e.g. by uvicorn)
        for handler in root_logger.handlers:
            if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) == sys.stdout:
                handler.setLevel(self._level())
                handler.setFormatter(formatter)
                return

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self._level())
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    def _file_formatter(self) -> logging.Formatter:
        file_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.json_format
            else structlog.processors.KeyValueRenderer(key_order=["event", "level", "timestamp"])
        )
        return structlog.stdlib.ProcessorFormatter(
            processor=file_processor,
            foreign_pre_chain=_foreign_pre_chain(),
        )

    def _setup_file_logging(self) -> None:
        """Setup the combined application log file."""
        log_file = Path(self.settings.logs_dir) / "pool_ledger.log"
        root_logger = logging.getLogger()

        for handler in root_logger.handlers:
            if (isinstance(handler, logging.handlers.RotatingFileHandler) and
                    Path(handler.baseFilename) == log_file.resolve()):
                return

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=self._parse_size(self.settings.logging.file_max_size),
            backupCount=self.settings.logging.file_backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(self._level())
        file_handler.setFormatter(self._file_formatter())
        root_logger.addHandler(file_handler)

    def _setup_multi_channel_logging(self) -> None:
        """Setup dedicated files per channel (requires file logging)."""
        if not self.settings.logging.file_enabled:
            return

        root_logger = logging.getLogger()
        for channel in LogChannel:
            config = get_channel_config(channel)
            handler = logging.handlers.RotatingFileHandler(
                filename=config.get_file_path(self.settings.logs_dir),
                maxBytes=self._parse_size(config.max_bytes),
                backupCount=config.backup_count,
                encoding="utf-8",
            )
            handler.setLevel(getattr(logging, config.level.upper()))
            handler.setFormatter(self._file_formatter())
            if channel == LogChannel.API:
                handler.addFilter(ChannelFilter(channel.value, ["uvicorn", "fastapi"]))
            elif channel == LogChannel.DATABASE:
                handler.addFilter(ChannelFilter(channel.value, ["sqlalchemy"]))
            elif channel != LogChannel.ERROR:
                # ERROR captures every ERROR+ record regardless of channel
                handler.addFilter(ChannelFilter(channel.value))
            root_logger.addHandler(handler)
            self.channel_handlers[channel] = handler

    def _parse_size(self, size_str: str) -> int:
        """Parse sizes like '100MB' into bytes."""
        size_str = size_str.upper().strip()
        for suffix, factor in (("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024)):
            if size_str.endswith(suffix):
                return int(float(size_str[:-len(suffix)]) * factor)
        return int(size_str)

    def _configure_structlog(self) -> None:
        """Configure structlog with appropriate processors."""

        def add_standard_context(logger, name, event_dict):
            """Bind standard context fields once from settings."""
            event_dict.setdefault('env', self.settings.environment.value)
            event_dict.setdefault('service', self.settings.app_name)
            event_dict.setdefault('version', self.settings.version)
            return event_dict

        keys_to_redact = {key.lower() for key in self.settings.logging.redact_keys}

        def redact_sensitive(logger, name, event_dict):
            """Redact sensitive fields from event dict recursively."""
            def _redact(obj):
                if isinstance(obj, dict):
                    return {
                        k: '[REDACTED]' if isinstance(k, str) and k.lower() in keys_to_redact else _redact(v)
                        for k, v in obj.items()
                    }
                if isinstance(obj, list):
                    return [_redact(v) for v in obj]
                return obj

            return _redact(event_dict)

        processors = [
            add_standard_context,
            add_correlation_id,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive,
            # Defer final rendering to handlers via ProcessorFormatter
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ]

        structlog.configure(
            processors=processors,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str, component: Optional[str] = None) -> structlog.BoundLogger:
        """Get a structured logger for a component."""
        key = f"{name}:{component}"
        if key in self.configured_loggers:
            return self.configured_loggers[key]

        logger = structlog.get_logger(name)
        if component:
            logger = logger.bind(component=component, channel=get_channel_for_component(component).value)

        self.configured_loggers[key] = logger
        return logger


def configure_enhanced_logging(settings: Settings) -> None:
    """Configure enhanced logging system."""
    global _logger_manager, _enhanced_logging_configured

    if _enhanced_logging_configured:
        return

    _logger_manager = EnhancedLoggerManager(settings)
    _enhanced_logging_configured = True


def get_enhanced_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger; works before configure_enhanced_logging is called."""
    if _logger_manager is None:
        logger = structlog.get_logger(name)
        if component:
            logger = logger.bind(component=component)
        return logger
    return _logger_manager.get_logger(name, component)


def get_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    """Get a logger bound to a specific channel."""
    return get_enhanced_logger(name).bind(channel=channel.value)

