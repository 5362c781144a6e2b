"""
Tests for ProcessingService, the end-to-end request pipeline.
"""

import asyncio

import pytest

from credit_engine.exceptions import (
    AllProvidersExhaustedError,
    BatchLimitExceededError,
    DuplicateRequestError,
    InsufficientCreditsError,
    ProviderUnavailableError,
    RateLimitExceededError,
)
from credit_engine.models.api import QualityTier, TransactionType
from credit_engine.models.domain import AdditionalOptions
from credit_engine.services.cost_calculator import CostCalculator
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.processing import ProcessingService
from credit_engine.services.provider_router import ProviderRouter
from credit_engine.services.quota import QuotaTracker
from credit_engine.services.rate_limiter import RateLimiter
from tests.conftest import FakeAdapter

IMAGE_URL = "https://images.example.com/in.png"


class DelayedAdapter(FakeAdapter):
    """Adapter that keeps each request in flight for a short while."""

    async def process_image(self, user_id, image_url, options):
        await asyncio.sleep(0.05)
        return await super().process_image(user_id, image_url, options)


class BrokenAvailabilityAdapter(FakeAdapter):
    """Adapter whose availability lookup itself fails."""

    async def is_available(self) -> bool:
        raise RuntimeError("quota store down")


@pytest.fixture
def adapters() -> list[FakeAdapter]:
    return [FakeAdapter("a", 1), FakeAdapter("b", 2)]


@pytest.fixture
def service(
    ledger: CreditLedger,
    calculator: CostCalculator,
    rate_limiter: RateLimiter,
    quota_tracker: QuotaTracker,
    adapters: list[FakeAdapter],
) -> ProcessingService:
    router = ProviderRouter(adapters, ledger, quota_tracker)
    return ProcessingService(ledger, calculator, rate_limiter, router)


class TestBuildRequest:
    """Tests for request validation and costing."""

    def test_cost_attached(self, service: ProcessingService) -> None:
        request = service.build_request(
            "user-1", IMAGE_URL, QualityTier.ULTRA, 2, AdditionalOptions(priority_processing=True)
        )

        assert request.cost == 9
        assert request.request_id.startswith("job_")

    def test_explicit_request_id(self, service: ProcessingService) -> None:
        request = service.build_request(
            "user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions(), request_id="req-42"
        )

        assert request.request_id == "req-42"

    def test_unsupported_scale(self, service: ProcessingService) -> None:
        with pytest.raises(ValueError, match="not supported"):
            service.build_request("user-1", IMAGE_URL, QualityTier.QUICK, 8, AdditionalOptions())

    def test_edit_tier_accepts_any_scale(self, service: ProcessingService) -> None:
        request = service.build_request(
            "user-1", IMAGE_URL, QualityTier.FAST_EDIT, 4, AdditionalOptions()
        )

        assert request.cost == 2


class TestProcess:
    """Tests for the full pipeline."""

    async def test_successful_request(
        self, service: ProcessingService, rate_limiter: RateLimiter
    ) -> None:
        request = service.build_request(
            "user-1", IMAGE_URL, QualityTier.HD_UPSCALE, 4, AdditionalOptions()
        )

        outcome = await service.process(request)

        assert outcome.provider == "a"
        assert outcome.credits_charged == 4
        assert outcome.balance.total == 6
        assert rate_limiter.usage("user-1", None).used == 1

    async def test_auto_tier_settles_real_cost(
        self, service: ProcessingService, adapters: list[FakeAdapter], ledger: CreditLedger
    ) -> None:
        adapters[0].credits_used = 2
        request = service.build_request("user-1", IMAGE_URL, QualityTier.AUTO, 2, AdditionalOptions())

        outcome = await service.process(request)

        assert outcome.credits_reserved == 6
        assert outcome.credits_charged == 2
        assert outcome.balance.total == 8
        assert (await ledger.reconcile("user-1")).consistent

    async def test_insufficient_credits_dispatches_nothing(
        self, service: ProcessingService, adapters: list[FakeAdapter], ledger: CreditLedger
    ) -> None:
        await ledger.get_or_create_account("user-1")
        await ledger.reserve_and_debit("user-1", 5, "earlier")
        request = service.build_request(
            "user-1", IMAGE_URL, QualityTier.ULTRA, 2, AdditionalOptions()
        )

        with pytest.raises(InsufficientCreditsError):
            await service.process(request)

        assert adapters[0].calls == []
        assert (await ledger.get_balance("user-1")).total == 5

    async def test_batch_limit_checked_before_debit(
        self, service: ProcessingService, ledger: CreditLedger
    ) -> None:
        request = service.build_request(
            "user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions(), batch_size=2
        )

        with pytest.raises(BatchLimitExceededError):
            await service.process(request)

        assert (await ledger.get_balance("user-1")).total == 10

    async def test_hourly_limit_checked_before_debit(
        self, service: ProcessingService, rate_limiter: RateLimiter, ledger: CreditLedger
    ) -> None:
        rate_limiter.record("user-1", count=10)
        request = service.build_request("user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions())

        with pytest.raises(RateLimitExceededError):
            await service.process(request)

        assert (await ledger.get_balance("user-1")).total == 10

    async def test_all_providers_fail(
        self,
        service: ProcessingService,
        adapters: list[FakeAdapter],
        ledger: CreditLedger,
        rate_limiter: RateLimiter,
        failing_error: ProviderUnavailableError,
    ) -> None:
        for adapter in adapters:
            adapter.error = failing_error
        request = service.build_request("user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions())

        with pytest.raises(AllProvidersExhaustedError):
            await service.process(request)

        assert (await ledger.get_balance("user-1")).total == 10
        assert rate_limiter.usage("user-1", None).used == 0

    async def test_resubmitted_request_id_rejected(
        self, service: ProcessingService, adapters: list[FakeAdapter], ledger: CreditLedger
    ) -> None:
        request = service.build_request(
            "user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions(), request_id="req-1"
        )
        await service.process(request)

        with pytest.raises(DuplicateRequestError):
            await service.process(request)

        assert len(adapters[0].calls) == 1
        assert (await ledger.get_balance("user-1")).total == 9

    async def test_plan_limits_apply(
        self, service: ProcessingService, ledger: CreditLedger
    ) -> None:
        await ledger.update_subscription(
            "user-1", event_id="evt_1", event_created=1, status="active", plan_key="pro"
        )
        request = service.build_request(
            "user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions(), batch_size=8
        )

        outcome = await service.process(request)

        assert outcome.credits_charged == 1


class TestHourlyWindowUnderLoad:
    """In-flight requests hold their slot in the hourly window."""

    async def test_concurrent_requests_stop_at_hourly_limit(
        self,
        ledger: CreditLedger,
        calculator: CostCalculator,
        rate_limiter: RateLimiter,
        quota_tracker: QuotaTracker,
    ) -> None:
        """Free users get 10 per hour even when 25 arrive at once."""
        adapter = DelayedAdapter("a", 1)
        service = ProcessingService(
            ledger, calculator, rate_limiter, ProviderRouter([adapter], ledger, quota_tracker)
        )
        await ledger.credit("user-1", 100, TransactionType.BONUS, reference_id="topup")
        requests = [
            service.build_request("user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions())
            for _ in range(25)
        ]

        results = await asyncio.gather(
            *(service.process(request) for request in requests), return_exceptions=True
        )

        succeeded = [r for r in results if not isinstance(r, BaseException)]
        limited = [r for r in results if isinstance(r, RateLimitExceededError)]
        assert len(succeeded) == 10
        assert len(limited) == 15
        assert len(adapter.calls) == 10
        assert rate_limiter.usage("user-1", None).used == 10
        assert (await ledger.get_balance("user-1")).total == 100

    async def test_rejected_request_frees_its_slot(
        self, service: ProcessingService, ledger: CreditLedger, rate_limiter: RateLimiter
    ) -> None:
        await ledger.get_or_create_account("user-1")
        await ledger.reserve_and_debit("user-1", 10, "earlier")
        request = service.build_request("user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions())

        with pytest.raises(InsufficientCreditsError):
            await service.process(request)

        assert rate_limiter.usage("user-1", None).used == 0

    async def test_resubmitted_request_frees_its_slot(
        self, service: ProcessingService, rate_limiter: RateLimiter
    ) -> None:
        request = service.build_request(
            "user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions(), request_id="req-1"
        )
        await service.process(request)

        with pytest.raises(DuplicateRequestError):
            await service.process(request)

        assert rate_limiter.usage("user-1", None).used == 1


class TestReservationRecovery:
    """Failures after the debit return the reservation."""

    async def test_failing_availability_check_refunds(
        self,
        ledger: CreditLedger,
        calculator: CostCalculator,
        rate_limiter: RateLimiter,
        quota_tracker: QuotaTracker,
    ) -> None:
        router = ProviderRouter([BrokenAvailabilityAdapter("a", 1)], ledger, quota_tracker)
        service = ProcessingService(ledger, calculator, rate_limiter, router)
        request = service.build_request("user-1", IMAGE_URL, QualityTier.QUICK, 2, AdditionalOptions())

        with pytest.raises(AllProvidersExhaustedError):
            await service.process(request)

        assert (await ledger.get_balance("user-1")).total == 10
        assert rate_limiter.usage("user-1", None).used == 0
