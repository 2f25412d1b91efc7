# ==== DISCOUNT ENGINE MAIN APPLICATION MODULE ==== #

"""
Main FastAPI application for the discount automation engine.

This module wires logging, tracing, metrics, the database and the discount
application coordinator into a FastAPI app with correlation and owner
context middleware and consistent JSON error responses.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.exc import SQLAlchemyError

from discount_engine.business.errors import DiscountEngineError, ValidationError
from discount_engine.middleware.correlation import CorrelationMiddleware
from discount_engine.middleware.ownership import OwnerContextMiddleware
from discount_engine.observability.logging import get_logger, init_logging
from discount_engine.observability.metrics import init_metrics, metrics_router
from discount_engine.observability.tracing import init_tracing
from discount_engine.resilience.retry_policies import create_side_effect_retry_policy
from discount_engine.routes import discounts
from discount_engine.services.coordinator import DiscountApplicationCoordinator
from discount_engine.settings import settings
from discount_engine.storage.db import check_database, close_database, create_schema, init_database
from discount_engine.storage.repository import SqlAlchemyDiscountRepository


logger = get_logger(__name__)


# ==== APPLICATION LIFECYCLE MANAGEMENT ==== #


def build_coordinator(repository) -> DiscountApplicationCoordinator:
    """Assemble the coordinator and its collaborators from settings."""
    return DiscountApplicationCoordinator(
        repository=repository,
        retry_policy=create_side_effect_retry_policy(),
        max_reevaluations=settings.DISCOUNT_MAX_REEVALUATIONS
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup and shutdown operations.

    Collaborators already placed on app.state (e.g. by tests) are kept.
    """
    # --► STARTUP SEQUENCE
    init_logging(settings.LOG_LEVEL, settings.LOG_TO_FILES)
    init_tracing(settings)

    if settings.AUTO_CREATE_SCHEMA:
        await create_schema()

    if getattr(app.state, "repository", None) is None:
        app.state.repository = SqlAlchemyDiscountRepository(init_database())
    if getattr(app.state, "coordinator", None) is None:
        app.state.coordinator = build_coordinator(app.state.repository)

    logger.info("Discount engine started", environment=settings.APP_ENV)

    yield

    # --► SHUTDOWN SEQUENCE
    await close_database()


# ==== APPLICATION FACTORY ==== #


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Discount Engine",
        description="Discount rule evaluation and application for CRM invoices",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.APP_ENV == "dev" else None,
        redoc_url="/redoc" if settings.APP_ENV == "dev" else None
    )

    # --► OBSERVABILITY INITIALIZATION
    init_metrics(app)

    # --► MIDDLEWARE STACK CONFIGURATION
    # Starlette runs the last-added middleware first
    app.add_middleware(OwnerContextMiddleware, header_name=settings.OWNER_HEADER)
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )

    _register_health_endpoints(app)
    _register_routers(app)
    _register_exception_handlers(app)

    # --► OPENTELEMETRY INSTRUMENTATION
    FastAPIInstrumentor.instrument_app(app)

    return app


# ==== ENDPOINT REGISTRATION HELPERS ==== #


def _register_health_endpoints(app: FastAPI) -> None:
    """
    Register health check endpoints for liveness and readiness probes.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        """Liveness probe endpoint."""
        return {
            "status": "ok",
            "service": settings.SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/readyz", tags=["health"])
    async def readiness_check() -> JSONResponse:
        """Readiness probe endpoint; checks database connectivity."""
        try:
            await check_database()
            database_status = "connected"
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Readiness check failed", error=str(e))
            database_status = "disconnected"

        ready = database_status == "connected"
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "ready" if ready else "not_ready",
                "service": settings.SERVICE_NAME,
                "environment": settings.APP_ENV,
                "database_status": database_status
            }
        )


def _register_routers(app: FastAPI) -> None:
    """
    Register application routers with prefixes and tags.

    Args:
        app (FastAPI): FastAPI application instance
    """
    app.include_router(metrics_router, prefix="", tags=["monitoring"])
    app.include_router(discounts.router, prefix="/api/discounts", tags=["discounts"])


# ==== EXCEPTION HANDLERS ==== #


def _error_response(request: Request, status_code: int, content: dict) -> JSONResponse:
    content["correlation_id"] = getattr(request.state, "correlation_id", "unknown")
    return JSONResponse(status_code=status_code, content=content)


def _register_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers mapping domain errors to JSON responses.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.exception_handler(DiscountEngineError)
    async def discount_engine_error_handler(
        request: Request,
        exc: DiscountEngineError
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Discount request failed", code=exc.code, error=exc.message)
        else:
            logger.info("Discount request rejected", code=exc.code, error=exc.message)
        return _error_response(request, exc.status_code, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request,
        exc: RequestValidationError
    ) -> JSONResponse:
        error = ValidationError(
            "Invalid request data",
            details={"errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                for err in exc.errors()
            ]}
        )
        return _error_response(request, error.status_code, error.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request,
        exc: Exception
    ) -> JSONResponse:
        """Unhandled errors become a 500 carrying the correlation id."""
        logger.exception("Unhandled error", error=str(exc), path=request.url.path)
        return _error_response(
            request,
            500,
            {
                "success": False,
                "error": "Internal server error",
                "code": "INTERNAL_ERROR"
            }
        )


# ==== APPLICATION INSTANCE ==== #


# Create application instance for deployment
app = create_app()
