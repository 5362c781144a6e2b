"""
Provider Adapter Protocol - Backend-agnostic image processing interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol

from credit_engine.models.api import QualityTier
from credit_engine.models.domain import ProviderQuota, ProviderResult, ProviderUsage


@dataclass(frozen=True)
class ProviderOptions:
    """
    Processing options forwarded to a provider.

    estimated_cost is what the ledger reserved; providers with
    model-specific pricing report their own cost in ProviderResult.
    """

    quality_tier: QualityTier
    scale: int
    smart_analysis: bool
    priority_processing: bool
    estimated_cost: int


class ProviderAdapter(Protocol):
    """
    AI backend protocol.

    Each backend implements this interface independently; the router
    composes adapters into a priority-ordered fallback chain.
    """

    name: str
    priority: int
    enabled: bool
    fallback_provider: str | None
    quota: ProviderQuota

    def supports(self, tier: QualityTier) -> bool:
        """Whether this backend can run a quality tier."""
        ...

    async def process_image(
        self, user_id: str, image_url: str, options: ProviderOptions
    ) -> ProviderResult:
        """
        Run one processing job.

        Args:
            user_id: Requesting user
            image_url: Input image location
            options: Tier, scale and add-ons

        Returns:
            Provider result with output location and credits actually used

        Raises:
            Any exception on failure; the router treats it as a failed dispatch
        """
        ...

    async def is_available(self) -> bool:
        """True when enabled and its free-tier quota is not exhausted."""
        ...

    async def get_usage(self) -> ProviderUsage:
        """Today's requests plus this month's requests and credits."""
        ...
