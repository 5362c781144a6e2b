"""
FastAPI Dependencies - API key authentication and service handles.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac

from fastapi import Header, HTTPException, Request, status
from structlog import get_logger

from credit_engine.config import settings
from credit_engine.services.cost_calculator import CostCalculator
from credit_engine.services.expiration import ExpirationEngine
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.processing import ProcessingService
from credit_engine.services.provider_router import ProviderRouter
from credit_engine.services.rate_limiter import RateLimiter
from credit_engine.services.subscription_policy import SubscriptionPolicyResolver
from credit_engine.services.webhook_processor import WebhookEventProcessor

logger = get_logger(__name__)


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    Open when no API key is configured (local development).

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    expected = settings.api_key
    if not expected:
        return

    if x_api_key is None or not hmac.compare_digest(x_api_key, expected):
        logger.warning("api_key_rejected", key_present=x_api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


# ============================================================================
# Service handles (built once in the application lifespan)
# ============================================================================


def get_ledger(request: Request) -> CreditLedger:
    ledger: CreditLedger = request.app.state.ledger
    return ledger


def get_resolver(request: Request) -> SubscriptionPolicyResolver:
    resolver: SubscriptionPolicyResolver = request.app.state.resolver
    return resolver


def get_calculator(request: Request) -> CostCalculator:
    calculator: CostCalculator = request.app.state.calculator
    return calculator


def get_expiration_engine(request: Request) -> ExpirationEngine:
    engine: ExpirationEngine = request.app.state.expiration_engine
    return engine


def get_rate_limiter(request: Request) -> RateLimiter:
    rate_limiter: RateLimiter = request.app.state.rate_limiter
    return rate_limiter


def get_router(request: Request) -> ProviderRouter:
    provider_router: ProviderRouter = request.app.state.provider_router
    return provider_router


def get_processing_service(request: Request) -> ProcessingService:
    service: ProcessingService = request.app.state.processing
    return service


def get_webhook_processor(request: Request) -> WebhookEventProcessor:
    processor: WebhookEventProcessor = request.app.state.webhook_processor
    return processor
