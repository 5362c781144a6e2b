"""
API Routes - FastAPI endpoints for the credit engine.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from credit_engine.api.dependencies import (
    get_calculator,
    get_expiration_engine,
    get_ledger,
    get_processing_service,
    get_rate_limiter,
    get_resolver,
    get_router,
    get_webhook_processor,
    require_api_key,
)
from credit_engine.exceptions import (
    AccountNotFoundError,
    AllProvidersExhaustedError,
    BatchLimitExceededError,
    ConcurrencyError,
    DataIntegrityError,
    DuplicateRequestError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidWebhookSignatureError,
    RateLimitExceededError,
    WriteVerificationError,
)
from credit_engine.models.api import (
    BalanceResponse,
    CostEstimateRequest,
    CostEstimateResponse,
    CreditPackResponse,
    CreditRequest,
    DebitRequest,
    ExpirationWarningResponse,
    HealthResponse,
    LedgerResponse,
    PlanResponse,
    ProcessRequest,
    ProcessResponse,
    ProviderUsageResponse,
    RateLimitResponse,
    ReconciliationResponse,
    RefundRequest,
    TransactionItem,
    TransactionListResponse,
    WebhookAckResponse,
)
from credit_engine.models.domain import AdditionalOptions, LedgerResult
from credit_engine.services.cost_calculator import CostCalculator
from credit_engine.services.expiration import ExpirationEngine
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.processing import ProcessingService
from credit_engine.services.provider_router import ProviderRouter
from credit_engine.services.rate_limiter import RateLimiter
from credit_engine.services.subscription_policy import SubscriptionPolicyResolver
from credit_engine.services.webhook_processor import WebhookEventProcessor

logger = get_logger(__name__)

router = APIRouter()


def _ledger_response(result: LedgerResult) -> LedgerResponse:
    return LedgerResponse(
        user_id=result.user_id,
        transaction_id=result.transaction_id,
        amount=result.amount,
        subscription_balance=result.balance.subscription_balance,
        purchased_balance=result.balance.purchased_balance,
        total=result.balance.total,
        replayed=result.replayed,
    )


# =============================================================================
# Ledger
# =============================================================================


@router.get(
    "/v1/credits/{user_id}",
    response_model=BalanceResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_balance(
    user_id: str,
    ledger: CreditLedger = Depends(get_ledger),
) -> BalanceResponse:
    """
    Get both credit pools for a user.

    Auto-creates new accounts with free credits on first read.
    """
    account = await ledger.get_or_create_account(user_id)
    return BalanceResponse(
        user_id=account.user_id,
        subscription_balance=account.balance.subscription_balance,
        purchased_balance=account.balance.purchased_balance,
        total=account.balance.total,
        plan_key=account.plan_key,
    )


@router.post(
    "/v1/credits/{user_id}/debit",
    response_model=LedgerResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def debit_credits(
    user_id: str,
    request: DebitRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> LedgerResponse:
    """
    Reserve and debit credits, subscription pool first.

    Idempotent by reference_id.
    """
    try:
        result = await ledger.reserve_and_debit(
            user_id, request.amount, request.reference_id, request.type
        )
        return _ledger_response(result)

    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc

    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient credits. Balance: {exc.balance}, Required: {exc.required}",
        ) from exc

    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc

    except ConcurrencyError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent modification, retry the request",
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


@router.post(
    "/v1/credits/{user_id}/credit",
    response_model=LedgerResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def add_credits(
    user_id: str,
    request: CreditRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> LedgerResponse:
    """Add credits to a user's account (bonus, purchase, subscription)."""
    try:
        result = await ledger.credit(
            user_id,
            request.amount,
            request.type,
            reference_id=request.reference_id,
            description=request.description,
        )
        return _ledger_response(result)

    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


@router.post(
    "/v1/credits/{user_id}/refund",
    response_model=LedgerResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def refund_credits(
    user_id: str,
    request: RefundRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> LedgerResponse:
    """Return credits for a failed processing request to the purchased pool."""
    try:
        result = await ledger.refund(user_id, request.amount, request.reference_id)
        return _ledger_response(result)

    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc


@router.get(
    "/v1/credits/{user_id}/transactions",
    response_model=TransactionListResponse,
    dependencies=[Depends(require_api_key)],
)
async def list_transactions(
    user_id: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ledger: CreditLedger = Depends(get_ledger),
) -> TransactionListResponse:
    """Transaction history, most recent first."""
    page = await ledger.get_transaction_history(user_id, limit=limit, offset=offset)
    return TransactionListResponse(
        transactions=[
            TransactionItem(
                id=t.id,
                amount=t.amount,
                type=t.type,
                reference_id=t.reference_id,
                pool=t.pool,
                description=t.description,
                created_at=t.created_at.isoformat(),
            )
            for t in page.transactions
        ],
        total=page.total,
        has_more=page.has_more,
    )


@router.get(
    "/v1/credits/{user_id}/reconcile",
    response_model=ReconciliationResponse,
    dependencies=[Depends(require_api_key)],
)
async def reconcile_account(
    user_id: str,
    ledger: CreditLedger = Depends(get_ledger),
) -> ReconciliationResponse:
    """Compare the live balance with the transaction log."""
    try:
        report = await ledger.reconcile(user_id)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc

    return ReconciliationResponse(
        user_id=report.user_id,
        live_total=report.live_total,
        ledger_total=report.ledger_total,
        drift=report.drift,
        consistent=report.consistent,
    )


# =============================================================================
# Pricing and plans
# =============================================================================


@router.post("/v1/credits/estimate", response_model=CostEstimateResponse)
async def estimate_cost(
    request: CostEstimateRequest,
    calculator: CostCalculator = Depends(get_calculator),
) -> CostEstimateResponse:
    """Credit cost of a processing request; auto tier returns the band maximum."""
    scales = calculator.supported_scales(request.quality_tier)
    if scales and request.scale not in scales:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Scale {request.scale}x is not supported by tier {request.quality_tier.value}",
        )

    estimate = calculator.calculate(
        request.quality_tier,
        request.scale,
        AdditionalOptions(
            smart_analysis=request.smart_analysis,
            priority_processing=request.priority_processing,
        ),
    )
    return CostEstimateResponse(
        cost=estimate.cost,
        is_estimate=estimate.is_estimate,
        band_min=estimate.band_min,
        band_max=estimate.band_max,
    )


@router.get("/v1/plans", response_model=list[PlanResponse])
async def list_plans(
    resolver: SubscriptionPolicyResolver = Depends(get_resolver),
) -> list[PlanResponse]:
    """Enabled subscription plans in display order."""
    return [
        PlanResponse(
            key=plan.key,
            name=plan.name,
            external_price_id=plan.external_price_id,
            credits_per_cycle=plan.credits_per_cycle,
            max_rollover=resolver.effective_max_rollover(plan),
            expiration_mode=plan.expiration_mode,
            batch_limit=plan.batch_limit,
            hourly_limit=plan.hourly_limit,
            recommended=plan.recommended,
            price_minor=plan.price_minor,
        )
        for plan in resolver.list_enabled_plans()
    ]


@router.get("/v1/credit-packs", response_model=list[CreditPackResponse])
async def list_credit_packs(
    resolver: SubscriptionPolicyResolver = Depends(get_resolver),
) -> list[CreditPackResponse]:
    """Enabled one-off credit packs."""
    return [
        CreditPackResponse(
            key=pack.key,
            name=pack.name,
            credits=pack.credits,
            price_minor=pack.price_minor,
            external_price_id=pack.external_price_id,
            popular=pack.popular,
        )
        for pack in resolver.list_enabled_packs()
    ]


@router.get(
    "/v1/rate-limits/{user_id}",
    response_model=RateLimitResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_rate_limits(
    user_id: str,
    ledger: CreditLedger = Depends(get_ledger),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitResponse:
    """Hourly usage for a user; unknown users get the free limits."""
    try:
        plan_key = (await ledger.get_account(user_id)).plan_key
    except AccountNotFoundError:
        plan_key = None

    usage = rate_limiter.usage(user_id, plan_key)
    return RateLimitResponse(
        user_id=user_id,
        plan_key=plan_key,
        used=usage.used,
        limit=usage.limit,
        remaining=usage.remaining,
        batch_limit=usage.batch_limit,
        reset_at=usage.reset_at.isoformat() if usage.reset_at else None,
    )


@router.get(
    "/v1/expirations/warnings",
    response_model=list[ExpirationWarningResponse],
    dependencies=[Depends(require_api_key)],
)
async def expiration_warnings(
    ledger: CreditLedger = Depends(get_ledger),
    engine: ExpirationEngine = Depends(get_expiration_engine),
) -> list[ExpirationWarningResponse]:
    """Accounts whose subscription credits expire inside their plan's warning window."""
    now = datetime.now(UTC)
    cutoff = now + timedelta(days=engine.longest_warning_window() + 1)
    accounts = await ledger.list_expiring_accounts(cutoff)

    return [
        ExpirationWarningResponse(
            user_id=warning.user_id,
            plan_key=warning.plan_key,
            expiring_credits=warning.expiring_credits,
            days_until_expiration=warning.days_until_expiration,
            expires_at=warning.expires_at.isoformat(),
        )
        for warning in engine.find_accounts_to_warn(accounts, now=now)
    ]


# =============================================================================
# Processing
# =============================================================================


@router.post(
    "/v1/process",
    response_model=ProcessResponse,
    dependencies=[Depends(require_api_key)],
)
async def process_image(
    request: ProcessRequest,
    service: ProcessingService = Depends(get_processing_service),
) -> ProcessResponse:
    """
    Run an image through the provider chain.

    Credits are reserved up front and refunded if every provider fails.
    """
    try:
        processing_request = service.build_request(
            user_id=request.user_id,
            image_url=request.image_url,
            quality_tier=request.quality_tier,
            scale=request.scale,
            options=AdditionalOptions(
                smart_analysis=request.smart_analysis,
                priority_processing=request.priority_processing,
            ),
            batch_size=request.batch_size,
            request_id=request.request_id,
        )
        outcome = await service.process(processing_request)

    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    except BatchLimitExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
        ) from exc

    except RateLimitExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc

    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient credits. Balance: {exc.balance}, Required: {exc.required}",
        ) from exc

    except (IdempotencyConflictError, DuplicateRequestError) as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc

    except AllProvidersExhaustedError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc

    return ProcessResponse(
        request_id=outcome.request_id,
        provider=outcome.provider,
        output_url=outcome.output_url,
        credits_reserved=outcome.credits_reserved,
        credits_charged=outcome.credits_charged,
        balance=outcome.balance.total,
    )


@router.get(
    "/v1/providers/usage",
    response_model=list[ProviderUsageResponse],
    dependencies=[Depends(require_api_key)],
)
async def provider_usage(
    provider_router: ProviderRouter = Depends(get_router),
) -> list[ProviderUsageResponse]:
    """Free-tier usage per provider in fallback order."""
    responses = []
    for adapter, available in await provider_router.usage():
        usage = await adapter.get_usage()
        responses.append(
            ProviderUsageResponse(
                provider=adapter.name,
                priority=adapter.priority,
                available=available,
                today_requests=usage.today_requests,
                month_requests=usage.month_requests,
                month_credits=usage.month_credits,
            )
        )
    return responses


# =============================================================================
# Webhooks
# =============================================================================


@router.post("/v1/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    processor: WebhookEventProcessor = Depends(get_webhook_processor),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Returns 200 for applied, duplicate, stale, ignored and malformed events,
    400 for a bad signature. Failures after retries propagate as 500 so
    Stripe redelivers.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        outcome = await processor.process(payload, signature)
    except InvalidWebhookSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except (SQLAlchemyError, ConcurrencyError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed, event will be retried",
        ) from exc

    logger.info(
        "stripe_webhook_acknowledged",
        event_id=outcome.event_id,
        event_type=outcome.event_type,
        outcome=outcome.status.value,
    )
    return WebhookAckResponse(status=outcome.status, event_id=outcome.event_id)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
