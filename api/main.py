from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.containers import AppContainer
from app.main import ApplicationOrchestrator
from api.middleware.error_handling import ErrorHandlingMiddleware, register_exception_handlers
from api.middleware.request_ids import RequestIdMiddleware
from api.routers import portfolios, rebalance, system, users
from core.config.settings import Environment
from core.logging import get_api_logger_safe

logger = get_api_logger_safe("api.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    orchestrator: ApplicationOrchestrator = app.state.orchestrator
    logger.info("Starting Pool Ledger API server")
    await orchestrator.startup()
    try:
        yield
    finally:
        logger.info("Shutting down Pool Ledger API server")
        await orchestrator.shutdown()


def _build_uvicorn_log_config() -> dict:
    """Levels only; handlers stay as wired by configure_logging."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "loggers": {
            "uvicorn": {"level": "INFO", "propagate": False},
            "uvicorn.error": {"level": "INFO", "propagate": False},
            "uvicorn.access": {"level": "INFO", "propagate": False},
            "fastapi": {"level": "INFO", "propagate": False},
        },
    }


def create_app(container: Optional[AppContainer] = None) -> FastAPI:
    """Creates and configures the FastAPI application"""
    orchestrator = ApplicationOrchestrator(container)
    container = orchestrator.container
    settings = orchestrator.settings

    app = FastAPI(
        title="Pool Ledger API",
        version=settings.version,
        description="Pooled crypto portfolios: invest, withdraw, valuation and rebalancing.",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.orchestrator = orchestrator

    container.wire(modules=["api.dependencies"])

    # Order matters: last added is outermost
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestIdMiddleware)

    cors_origins = settings.api.cors_origins
    if settings.environment == Environment.PRODUCTION and "*" in cors_origins:
        raise ValueError(
            "CORS wildcard (*) not allowed in production. "
            "Specify exact origins in API__CORS_ORIGINS environment variable."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(portfolios.router, prefix="/api/v1")
    app.include_router(users.router, prefix="/api/v1")
    app.include_router(rebalance.router, prefix="/api/v1")
    app.include_router(system.router)

    return app


def run(host: Optional[str] = None, port: Optional[int] = None):
    import uvicorn

    app = create_app()
    settings = app.state.orchestrator.settings
    uvicorn.run(
        app,
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_config=_build_uvicorn_log_config(),
    )
