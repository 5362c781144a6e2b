"""
Subscription Policy Resolver - Plan, credit pack and rate-limit lookups.

Read-only over static configuration loaded at startup.
FAIL FAST - an invalid catalog raises ConfigurationError on construction.
"""

import re
from collections.abc import Iterable

from credit_engine.config import ConfigurationError
from credit_engine.exceptions import CreditPackNotFoundError, PlanNotFoundError
from credit_engine.models.api import ExpirationMode
from credit_engine.models.domain import CreditPack, RateLimits, SubscriptionPlan

PRICE_ID_PATTERN = re.compile(r"^price_[A-Za-z0-9]+$")

FREE_PLAN_KEY = "free"

# Default row for unauthenticated and free users
FREE_LIMITS = RateLimits(batch_limit=1, hourly_limit=10)

DEFAULT_PLANS: tuple[SubscriptionPlan, ...] = (
    SubscriptionPlan(
        key="hobby",
        name="Hobby",
        external_price_id="price_1SZmVyALMLhQocpf0H7n5ls8",
        credits_per_cycle=200,
        max_rollover=None,
        rollover_multiplier=6,
        expiration_mode=ExpirationMode.END_OF_CYCLE,
        warning_days_before_expiration=7,
        batch_limit=4,
        hourly_limit=50,
        display_order=1,
        price_minor=900,
    ),
    SubscriptionPlan(
        key="pro",
        name="Professional",
        external_price_id="price_1SZmVzALMLhQocpfPyRX2W8D",
        credits_per_cycle=1000,
        max_rollover=None,
        rollover_multiplier=6,
        expiration_mode=ExpirationMode.END_OF_CYCLE,
        warning_days_before_expiration=7,
        batch_limit=8,
        hourly_limit=50,
        display_order=2,
        price_minor=2900,
        recommended=True,
    ),
    SubscriptionPlan(
        key="business",
        name="Business",
        external_price_id="price_1SZmVzALMLhQocpfqPk9spg4",
        credits_per_cycle=5000,
        max_rollover=None,
        rollover_multiplier=6,
        expiration_mode=ExpirationMode.END_OF_CYCLE,
        warning_days_before_expiration=7,
        batch_limit=16,
        hourly_limit=50,
        display_order=3,
        price_minor=9900,
    ),
)

DEFAULT_CREDIT_PACKS: tuple[CreditPack, ...] = (
    CreditPack(
        key="small",
        name="Starter Pack",
        credits=50,
        price_minor=499,
        external_price_id="price_1SbAASALMLhQocpfGUg3wLXM",
    ),
    CreditPack(
        key="medium",
        name="Pro Pack",
        credits=200,
        price_minor=1499,
        external_price_id="price_1SbAASALMLhQocpf7nw3wRj7",
        popular=True,
    ),
    CreditPack(
        key="large",
        name="Power Pack",
        credits=600,
        price_minor=3999,
        external_price_id="price_1SbAASALMLhQocpfCrD7P7TW",
    ),
)


class SubscriptionPolicyResolver:
    """Lookup over the plan and credit pack catalog."""

    def __init__(
        self,
        plans: Iterable[SubscriptionPlan] = DEFAULT_PLANS,
        packs: Iterable[CreditPack] = DEFAULT_CREDIT_PACKS,
        free_limits: RateLimits = FREE_LIMITS,
    ) -> None:
        self._plans = tuple(plans)
        self._packs = tuple(packs)
        self._free_limits = free_limits
        self._validate()

        self._plans_by_key = {p.key: p for p in self._plans}
        self._plans_by_price = {p.external_price_id: p for p in self._plans}
        self._packs_by_key = {p.key: p for p in self._packs}
        self._packs_by_price = {p.external_price_id: p for p in self._packs}

    def _validate(self) -> None:
        errors: list[str] = []

        recommended = [p.key for p in self._plans if p.recommended]
        if len(recommended) > 1:
            errors.append(f"More than one recommended plan: {', '.join(recommended)}")

        for plan in self._plans:
            if plan.enabled and not PRICE_ID_PATTERN.match(plan.external_price_id):
                errors.append(f"Plan {plan.key} has invalid price id: {plan.external_price_id}")
        for pack in self._packs:
            if pack.enabled and not PRICE_ID_PATTERN.match(pack.external_price_id):
                errors.append(f"Pack {pack.key} has invalid price id: {pack.external_price_id}")

        for label, values in (
            ("plan key", [p.key for p in self._plans]),
            ("pack key", [p.key for p in self._packs]),
            (
                "price id",
                [p.external_price_id for p in self._plans]
                + [p.external_price_id for p in self._packs],
            ),
        ):
            duplicates = sorted({v for v in values if values.count(v) > 1})
            if duplicates:
                errors.append(f"Duplicate {label}: {', '.join(duplicates)}")

        if FREE_PLAN_KEY in {p.key for p in self._plans}:
            errors.append(f"Plan key '{FREE_PLAN_KEY}' is reserved for the free tier")

        if errors:
            raise ConfigurationError("Invalid plan catalog: " + "; ".join(errors))

    # ========================================================================
    # Plans
    # ========================================================================

    def resolve_by_price_id(self, price_id: str) -> SubscriptionPlan:
        """Plan for a billing provider price id."""
        plan = self._plans_by_price.get(price_id)
        if plan is None:
            raise PlanNotFoundError(price_id)
        return plan

    def resolve_by_key(self, key: str) -> SubscriptionPlan:
        """Plan for an internal plan key."""
        plan = self._plans_by_key.get(key)
        if plan is None:
            raise PlanNotFoundError(key)
        return plan

    def find_by_key(self, key: str | None) -> SubscriptionPlan | None:
        """Like resolve_by_key, but None for missing or unknown keys."""
        if key is None:
            return None
        return self._plans_by_key.get(key)

    def list_enabled_plans(self) -> list[SubscriptionPlan]:
        """Enabled plans sorted by display order."""
        return sorted((p for p in self._plans if p.enabled), key=lambda p: p.display_order)

    def resolve_recommended(self) -> SubscriptionPlan | None:
        """The recommended enabled plan, if any."""
        for plan in self._plans:
            if plan.recommended and plan.enabled:
                return plan
        return None

    @staticmethod
    def effective_max_rollover(plan: SubscriptionPlan) -> int:
        """Explicit rollover cap, or credits_per_cycle x rollover_multiplier."""
        if plan.max_rollover is not None:
            return plan.max_rollover
        return plan.credits_per_cycle * plan.rollover_multiplier

    # ========================================================================
    # Credit packs
    # ========================================================================

    def resolve_pack_by_key(self, key: str) -> CreditPack:
        pack = self._packs_by_key.get(key)
        if pack is None:
            raise CreditPackNotFoundError(key)
        return pack

    def resolve_pack_by_price_id(self, price_id: str) -> CreditPack:
        pack = self._packs_by_price.get(price_id)
        if pack is None:
            raise CreditPackNotFoundError(price_id)
        return pack

    def list_enabled_packs(self) -> list[CreditPack]:
        return [p for p in self._packs if p.enabled]

    # ========================================================================
    # Rate limits
    # ========================================================================

    def limits_for(self, plan_key: str | None) -> RateLimits:
        """Batch and hourly ceilings for a plan; unknown or free keys get the free row."""
        plan = self.find_by_key(plan_key)
        if plan is None:
            return self._free_limits
        return RateLimits(batch_limit=plan.batch_limit, hourly_limit=plan.hourly_limit)
