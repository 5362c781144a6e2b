"""
HTTP Image Provider - Adapter for AI backends reachable over HTTP.

NO DICTIONARIES - Provider responses are validated into typed models.
"""

from collections.abc import Iterable

import httpx
from pydantic import BaseModel, Field, ValidationError

from credit_engine.exceptions import ProviderUnavailableError
from credit_engine.models.api import QualityTier
from credit_engine.models.domain import ProviderQuota, ProviderResult, ProviderUsage
from credit_engine.observability import get_logger
from credit_engine.services.provider_adapter import ProviderOptions
from credit_engine.services.quota import QuotaTracker

logger = get_logger(__name__)


class ProviderResponseBody(BaseModel):
    """Expected JSON body of a successful backend call."""

    output_url: str = Field(..., min_length=1)
    credits_used: int | None = Field(None, ge=0)
    model_id: str | None = None


class HttpImageProvider:
    """
    Provider adapter posting jobs to an HTTP endpoint.

    Implements the ProviderAdapter protocol.
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        api_key: str,
        priority: int,
        quota_tracker: QuotaTracker,
        client: httpx.AsyncClient,
        quota: ProviderQuota | None = None,
        enabled: bool = True,
        fallback_provider: str | None = None,
        supported_tiers: Iterable[QualityTier] | None = None,
    ) -> None:
        """
        Initialize HTTP provider.

        Args:
            name: Provider name used for quota tracking and logs
            endpoint: URL accepting processing jobs
            api_key: Bearer token for the backend
            priority: Lower is tried first
            quota_tracker: Shared usage counters
            client: Shared HTTP client
            quota: Free-tier ceilings (unlimited by default)
            enabled: Explicit on/off switch
            fallback_provider: Provider to try right after this one
            supported_tiers: Tiers this backend can run (all when None)
        """
        self.name = name
        self.endpoint = endpoint
        self.api_key = api_key
        self.priority = priority
        self.quota = quota or ProviderQuota()
        self.enabled = enabled and bool(endpoint)
        self.fallback_provider = fallback_provider
        self._tracker = quota_tracker
        self._client = client
        self._supported = frozenset(supported_tiers) if supported_tiers is not None else None

    def supports(self, tier: QualityTier) -> bool:
        return self._supported is None or tier in self._supported

    async def process_image(
        self, user_id: str, image_url: str, options: ProviderOptions
    ) -> ProviderResult:
        """
        Submit a job and wait for its result.

        Raises:
            ProviderUnavailableError: On HTTP errors or an unusable response
        """
        logger.info(
            "provider_request_started",
            provider=self.name,
            user_id=user_id,
            tier=options.quality_tier.value,
            scale=options.scale,
        )

        try:
            response = await self._client.post(
                self.endpoint,
                json={
                    "image_url": image_url,
                    "quality_tier": options.quality_tier.value,
                    "scale": options.scale,
                    "smart_analysis": options.smart_analysis,
                    "priority": options.priority_processing,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            body = ProviderResponseBody.model_validate(response.json())
        except httpx.HTTPStatusError as exc:
            raise ProviderUnavailableError(
                self.name, f"HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(self.name, f"{type(exc).__name__}: {exc}") from exc
        except (ValueError, ValidationError) as exc:
            raise ProviderUnavailableError(self.name, f"invalid response: {exc}") from exc

        credits_used = (
            body.credits_used if body.credits_used is not None else options.estimated_cost
        )
        logger.info(
            "provider_request_completed",
            provider=self.name,
            user_id=user_id,
            model_id=body.model_id,
            credits_used=credits_used,
        )
        return ProviderResult(
            provider=self.name,
            output_url=body.output_url,
            credits_used=credits_used,
            model_id=body.model_id,
        )

    async def is_available(self) -> bool:
        if not self.enabled:
            return False
        return await self._tracker.has_capacity(self.name, self.quota)

    async def get_usage(self) -> ProviderUsage:
        return await self._tracker.get_usage(self.name)
