"""
Cost Calculator - Credit cost of a processing request.

Pure functions over static configuration; no side effects.
"""

import math
from dataclasses import dataclass, field

from credit_engine.models.api import QualityTier
from credit_engine.models.domain import AdditionalOptions, CostEstimate

# Fixed per-tier cost. AUTO is variable and priced from the auto band.
TIER_CREDITS: dict[QualityTier, int] = {
    QualityTier.QUICK: 1,
    QualityTier.FACE_RESTORE: 2,
    QualityTier.FAST_EDIT: 2,
    QualityTier.BUDGET_EDIT: 3,
    QualityTier.SEEDREAM_EDIT: 4,
    QualityTier.ANIME_UPSCALE: 1,
    QualityTier.HD_UPSCALE: 4,
    QualityTier.FACE_PRO: 6,
    QualityTier.ULTRA: 8,
}

TIER_SCALES: dict[QualityTier, tuple[int, ...]] = {
    QualityTier.AUTO: (2, 4, 8),
    QualityTier.QUICK: (2, 4),
    QualityTier.FACE_RESTORE: (2, 4),
    QualityTier.FAST_EDIT: (),
    QualityTier.BUDGET_EDIT: (),
    QualityTier.SEEDREAM_EDIT: (),
    QualityTier.ANIME_UPSCALE: (2, 4),
    QualityTier.HD_UPSCALE: (2, 4, 8),
    QualityTier.FACE_PRO: (),
    QualityTier.ULTRA: (2, 4),
}


@dataclass(frozen=True)
class CostConfig:
    """Cost bounds, multipliers and surcharges."""

    minimum_cost: int = 1
    maximum_cost: int = 20
    auto_band_min: int = 2
    auto_band_max: int = 6
    smart_analysis_surcharge: int = 1
    priority_processing_surcharge: int = 1
    scale_multipliers: dict[int, float] = field(
        default_factory=lambda: {2: 1.0, 4: 1.0, 8: 1.0}
    )

    def __post_init__(self) -> None:
        """Validate cost bounds."""
        if self.minimum_cost < 0 or self.maximum_cost < self.minimum_cost:
            raise ValueError(
                f"Invalid cost bounds: [{self.minimum_cost}, {self.maximum_cost}]"
            )
        if self.auto_band_min > self.auto_band_max:
            raise ValueError("auto_band_min must not exceed auto_band_max")


class CostCalculator:
    """
    Computes the credit cost of a request.

    The AUTO tier reserves the upper edge of its band; the provider that
    eventually runs the job reports the real cost and the router reconciles.
    """

    def __init__(self, config: CostConfig | None = None) -> None:
        self.config = config or CostConfig()

    def calculate(
        self,
        tier: QualityTier,
        scale: int,
        options: AdditionalOptions | None = None,
    ) -> CostEstimate:
        """
        Calculate the credit cost for tier, scale and add-ons.

        Args:
            tier: Quality tier
            scale: Scale factor (2, 4 or 8)
            options: Add-ons that carry surcharges

        Returns:
            Cost clamped to [minimum_cost, maximum_cost]
        """
        options = options or AdditionalOptions()
        is_auto = tier == QualityTier.AUTO

        base = self.config.auto_band_max if is_auto else TIER_CREDITS[tier]
        multiplier = self.config.scale_multipliers.get(scale, 1.0)
        cost = math.ceil(base * multiplier)

        # AUTO already includes analysis
        if options.smart_analysis and not is_auto:
            cost += self.config.smart_analysis_surcharge
        if options.priority_processing:
            cost += self.config.priority_processing_surcharge

        cost = self._clamp(cost)

        if is_auto:
            return CostEstimate(
                cost=cost,
                is_estimate=True,
                band_min=self._clamp(self.config.auto_band_min),
                band_max=cost,
            )
        return CostEstimate(cost=cost, is_estimate=False, band_min=cost, band_max=cost)

    def supported_scales(self, tier: QualityTier) -> tuple[int, ...]:
        """Scale factors a tier accepts; empty for edit-only tiers."""
        return TIER_SCALES[tier]

    def _clamp(self, cost: int) -> int:
        return max(self.config.minimum_cost, min(cost, self.config.maximum_cost))
