"""
Provider Router - Quota-aware fallback across AI backends.

Credits are reserved before dispatch; the router always ends a request
Completed (usage counted, cost reconciled) or Refunded (full reservation
returned, AllProvidersExhaustedError raised). A dispatch that is cancelled
or fails before a provider returns is refunded and the error re-raised.
Provider calls run outside any ledger lock.
"""

import asyncio
import time
from collections.abc import Iterable

from credit_engine.exceptions import (
    AllProvidersExhaustedError,
    InsufficientCreditsError,
    ProviderUnavailableError,
)
from credit_engine.models.domain import DispatchResult, ProcessingRequest, ProviderResult
from credit_engine.observability import get_logger, get_tracer, metrics
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.provider_adapter import ProviderAdapter, ProviderOptions
from credit_engine.services.quota import QuotaTracker

logger = get_logger(__name__)
tracer = get_tracer(__name__)


def build_chain(adapters: Iterable[ProviderAdapter]) -> list[ProviderAdapter]:
    """
    Enabled adapters by priority, each followed by its named fallback.

    A fallback is pulled forward only once; later references keep its slot.
    """
    ordered = sorted((a for a in adapters if a.enabled), key=lambda a: a.priority)
    by_name = {a.name: a for a in ordered}
    chain: list[ProviderAdapter] = []
    placed: set[str] = set()

    for adapter in ordered:
        if adapter.name in placed:
            continue
        chain.append(adapter)
        placed.add(adapter.name)

        fallback = by_name.get(adapter.fallback_provider or "")
        if fallback is not None and fallback.name not in placed:
            chain.append(fallback)
            placed.add(fallback.name)

    return chain


class ProviderRouter:
    """Dispatches a reserved request along the fallback chain."""

    def __init__(
        self,
        adapters: Iterable[ProviderAdapter],
        ledger: CreditLedger,
        quota_tracker: QuotaTracker,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.adapters = list(adapters)
        self.ledger = ledger
        self.quota_tracker = quota_tracker
        self.timeout_seconds = timeout_seconds

    async def dispatch(
        self, request: ProcessingRequest, reserved: int, reference_id: str
    ) -> DispatchResult:
        """
        Run the request on the first provider that is available and succeeds.

        Args:
            request: Processing request (cost already reserved)
            reserved: Credits debited for this request
            reference_id: Reference used for the reservation

        Returns:
            DispatchResult with the credits finally charged

        Raises:
            AllProvidersExhaustedError: After refunding the reservation
        """
        options = ProviderOptions(
            quality_tier=request.quality_tier,
            scale=request.scale,
            smart_analysis=request.options.smart_analysis,
            priority_processing=request.options.priority_processing,
            estimated_cost=reserved,
        )
        attempted: list[str] = []

        try:
            completed = await self._run_chain(request, options, attempted)
        except BaseException as exc:
            # Cancelled or failed before any provider finished the work
            await self.ledger.refund(request.user_id, reserved, reference_id)
            logger.error(
                "provider_dispatch_aborted",
                user_id=request.user_id,
                request_id=request.request_id,
                attempted=attempted,
                refunded=reserved,
                error=type(exc).__name__,
            )
            raise

        if completed is None:
            await self.ledger.refund(request.user_id, reserved, reference_id)
            metrics.provider_exhausted_total.inc()
            logger.error(
                "all_providers_exhausted",
                user_id=request.user_id,
                request_id=request.request_id,
                attempted=attempted,
                refunded=reserved,
            )
            raise AllProvidersExhaustedError(attempted=attempted, refunded=reserved)

        adapter, result = completed
        await self.quota_tracker.increment(adapter.name, result.credits_used, adapter.quota)
        charged = await self._reconcile_cost(request, reserved, result, reference_id)

        logger.info(
            "provider_dispatch_completed",
            provider=adapter.name,
            request_id=request.request_id,
            reserved=reserved,
            charged=charged,
            attempted=attempted,
        )
        return DispatchResult(
            result=result, reserved=reserved, charged=charged, attempted=tuple(attempted)
        )

    async def _run_chain(
        self, request: ProcessingRequest, options: ProviderOptions, attempted: list[str]
    ) -> tuple[ProviderAdapter, ProviderResult] | None:
        """First adapter in the chain to return a result, or None when all fail."""
        for adapter in build_chain(self.adapters):
            if not adapter.supports(request.quality_tier):
                continue
            if not await self._available(adapter):
                logger.info("provider_skipped_unavailable", provider=adapter.name)
                metrics.record_provider_dispatch(adapter.name, "skipped", 0.0)
                continue

            attempted.append(adapter.name)
            started = time.monotonic()
            try:
                result = await self._call(adapter, request, options)
            except ProviderUnavailableError as exc:
                metrics.record_provider_dispatch(
                    adapter.name, "failed", time.monotonic() - started
                )
                logger.warning(
                    "provider_dispatch_failed",
                    provider=adapter.name,
                    reason=exc.reason,
                    request_id=request.request_id,
                )
                continue

            metrics.record_provider_dispatch(adapter.name, "completed", time.monotonic() - started)
            return adapter, result

        return None

    async def _available(self, adapter: ProviderAdapter) -> bool:
        """Availability check; an adapter whose check fails counts as unavailable."""
        try:
            return await adapter.is_available()
        except Exception as exc:
            logger.warning(
                "provider_availability_check_failed",
                provider=adapter.name,
                error=f"{type(exc).__name__}: {exc}",
            )
            return False

    async def _call(
        self, adapter: ProviderAdapter, request: ProcessingRequest, options: ProviderOptions
    ) -> ProviderResult:
        """Call one provider; every failure, including timeout, becomes ProviderUnavailableError."""
        try:
            with tracer.start_as_current_span("provider.process_image") as span:
                span.set_attribute("provider", adapter.name)
                span.set_attribute("quality_tier", request.quality_tier.value)
                async with asyncio.timeout(self.timeout_seconds):
                    return await adapter.process_image(request.user_id, request.image_url, options)
        except ProviderUnavailableError:
            raise
        except TimeoutError as exc:
            raise ProviderUnavailableError(
                adapter.name, f"timed out after {self.timeout_seconds}s"
            ) from exc
        except Exception as exc:
            # Backends are opaque; any error is a failed dispatch
            raise ProviderUnavailableError(adapter.name, f"{type(exc).__name__}: {exc}") from exc

    async def _reconcile_cost(
        self,
        request: ProcessingRequest,
        reserved: int,
        result: ProviderResult,
        reference_id: str,
    ) -> int:
        """Settle the difference between the reservation and the provider's real cost."""
        actual = result.credits_used
        if actual == reserved:
            return reserved

        adjust_reference = f"{reference_id}:adjust"
        if actual < reserved:
            await self.ledger.refund(request.user_id, reserved - actual, adjust_reference)
            logger.info(
                "provider_cost_refunded",
                request_id=request.request_id,
                reserved=reserved,
                actual=actual,
            )
            return actual

        try:
            await self.ledger.reserve_and_debit(
                request.user_id, actual - reserved, adjust_reference
            )
        except InsufficientCreditsError:
            # Work is done; the reservation was the user's upper bound
            logger.warning(
                "provider_cost_overrun_absorbed",
                request_id=request.request_id,
                reserved=reserved,
                actual=actual,
            )
            return reserved
        return actual

    async def usage(self) -> list[tuple[ProviderAdapter, bool]]:
        """Adapters in chain order with their availability."""
        return [(adapter, await self._available(adapter)) for adapter in build_chain(self.adapters)]
