"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_engine.api.routes import router
from credit_engine.config import settings
from credit_engine.db.session import close_engines, create_schema, get_engine, get_session_factory
from credit_engine.models.api import QualityTier
from credit_engine.models.domain import ProviderQuota
from credit_engine.observability import get_logger, metrics, setup_logging, setup_tracing
from credit_engine.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from credit_engine.services.cost_calculator import CostCalculator, CostConfig
from credit_engine.services.expiration import ExpirationEngine
from credit_engine.services.http_provider import HttpImageProvider
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.processing import ProcessingService
from credit_engine.services.provider_adapter import ProviderAdapter
from credit_engine.services.provider_router import ProviderRouter
from credit_engine.services.quota import QuotaTracker
from credit_engine.services.rate_limiter import RateLimiter
from credit_engine.services.stripe_events import StripeEventVerifier
from credit_engine.services.subscription_policy import SubscriptionPolicyResolver
from credit_engine.services.webhook_processor import WebhookEventProcessor

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

AdapterFactory = Callable[[QuotaTracker], list[ProviderAdapter]]


def build_http_adapters(quota_tracker: QuotaTracker, client: httpx.AsyncClient) -> list[ProviderAdapter]:
    """Gemini on its free tier first, Replicate as the paid fallback."""
    return [
        HttpImageProvider(
            name="gemini",
            endpoint=settings.gemini_endpoint,
            api_key=settings.gemini_api_key,
            priority=1,
            quota_tracker=quota_tracker,
            client=client,
            quota=ProviderQuota(
                daily_requests=settings.gemini_daily_request_limit,
                monthly_credits=settings.gemini_monthly_credit_limit,
                hard_limit=True,
            ),
            fallback_provider="replicate",
            supported_tiers=[
                QualityTier.AUTO,
                QualityTier.QUICK,
                QualityTier.FAST_EDIT,
                QualityTier.BUDGET_EDIT,
            ],
        ),
        HttpImageProvider(
            name="replicate",
            endpoint=settings.replicate_endpoint,
            api_key=settings.replicate_api_key,
            priority=2,
            quota_tracker=quota_tracker,
            client=client,
        ),
    ]


def attach_services(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    adapter_factory: AdapterFactory,
) -> None:
    """Build the credit engine components and store them on app.state."""
    resolver = SubscriptionPolicyResolver()
    ledger = CreditLedger(session_factory, free_credits=settings.free_user_initial_credits)
    calculator = CostCalculator(
        CostConfig(
            minimum_cost=settings.credit_minimum_cost,
            maximum_cost=settings.credit_maximum_cost,
        )
    )
    rate_limiter = RateLimiter(resolver)
    quota_tracker = QuotaTracker(session_factory)
    provider_router = ProviderRouter(
        adapter_factory(quota_tracker),
        ledger,
        quota_tracker,
        timeout_seconds=settings.provider_timeout_seconds,
    )

    app.state.session_factory = session_factory
    app.state.resolver = resolver
    app.state.ledger = ledger
    app.state.calculator = calculator
    app.state.expiration_engine = ExpirationEngine(resolver)
    app.state.rate_limiter = rate_limiter
    app.state.quota_tracker = quota_tracker
    app.state.provider_router = provider_router
    app.state.processing = ProcessingService(ledger, calculator, rate_limiter, provider_router)
    app.state.webhook_processor = WebhookEventProcessor(
        session_factory,
        ledger,
        resolver,
        StripeEventVerifier(
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        ),
        retry_attempts=settings.webhook_retry_attempts,
        retry_initial_delay=settings.webhook_retry_initial_delay,
        retry_max_delay=settings.webhook_retry_max_delay,
        claim_lease_seconds=settings.webhook_claim_lease_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    engine = get_engine()
    instrument_sqlalchemy(engine)
    if settings.is_sqlite:
        await create_schema(engine)
        logger.info("sqlite_schema_created")

    async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
        attach_services(
            app,
            get_session_factory(),
            lambda tracker: build_http_adapters(tracker, client),
        )
        yield

    # Shutdown
    logger.info("application_shutting_down")
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may hold exception objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    logger.info("request_started", method=method, path=endpoint, request_id=request_id)
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )
        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "credit_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
