"""
Processing Service - Request pipeline from limits to provider result.

rate limit slot -> reserve -> dispatch (refund on failure); the slot is released
unless the request completes
"""

from uuid import uuid4

from credit_engine.exceptions import DuplicateRequestError
from credit_engine.models.api import QualityTier
from credit_engine.models.domain import AdditionalOptions, ProcessingOutcome, ProcessingRequest
from credit_engine.observability import get_logger, log_context
from credit_engine.services.cost_calculator import CostCalculator
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.provider_router import ProviderRouter
from credit_engine.services.rate_limiter import RateLimiter

logger = get_logger(__name__)


class ProcessingService:
    """Per-request handle composing the credit engine components."""

    def __init__(
        self,
        ledger: CreditLedger,
        calculator: CostCalculator,
        rate_limiter: RateLimiter,
        router: ProviderRouter,
    ) -> None:
        self.ledger = ledger
        self.calculator = calculator
        self.rate_limiter = rate_limiter
        self.router = router

    def build_request(
        self,
        user_id: str,
        image_url: str,
        quality_tier: QualityTier,
        scale: int,
        options: AdditionalOptions,
        batch_size: int = 1,
        request_id: str | None = None,
    ) -> ProcessingRequest:
        """
        Validate tier/scale and attach the computed cost.

        Raises:
            ValueError: If the tier does not accept the scale factor
        """
        scales = self.calculator.supported_scales(quality_tier)
        if scales and scale not in scales:
            raise ValueError(
                f"Scale {scale}x is not supported by tier {quality_tier.value} "
                f"(supported: {', '.join(f'{s}x' for s in scales)})"
            )

        estimate = self.calculator.calculate(quality_tier, scale, options)
        return ProcessingRequest(
            user_id=user_id,
            request_id=request_id or f"job_{uuid4().hex}",
            image_url=image_url,
            quality_tier=quality_tier,
            scale=scale,
            options=options,
            batch_size=batch_size,
            cost=estimate.cost,
        )

    async def process(self, request: ProcessingRequest) -> ProcessingOutcome:
        """
        Run one request end to end.

        Raises:
            BatchLimitExceededError / RateLimitExceededError: Before any debit
            InsufficientCreditsError: Reservation failed, nothing debited
            DuplicateRequestError: request_id was already reserved
            AllProvidersExhaustedError: Every provider failed, reservation refunded
        """
        with log_context(request_id=request.request_id, user_id=request.user_id):
            account = await self.ledger.get_or_create_account(request.user_id)
            slot = self.rate_limiter.acquire(request.user_id, account.plan_key, request.batch_size)
            try:
                reservation = await self.ledger.reserve_and_debit(
                    request.user_id, request.cost, request.request_id
                )
                if reservation.replayed:
                    # One dispatch per reservation
                    logger.warning("processing_request_replayed")
                    raise DuplicateRequestError(request.request_id)

                dispatch = await self.router.dispatch(request, request.cost, request.request_id)
            except BaseException:
                # Only completed requests count against the hourly window
                self.rate_limiter.release(request.user_id, slot)
                raise

            balance = await self.ledger.get_balance(request.user_id)
            logger.info(
                "processing_request_completed",
                provider=dispatch.result.provider,
                reserved=dispatch.reserved,
                charged=dispatch.charged,
                balance_after=balance.total,
            )

        return ProcessingOutcome(
            request_id=request.request_id,
            provider=dispatch.result.provider,
            output_url=dispatch.result.output_url,
            credits_reserved=dispatch.reserved,
            credits_charged=dispatch.charged,
            balance=balance,
        )
