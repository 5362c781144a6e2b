"""
Expiration Engine - Combines an old subscription balance with a new allocation.

Pure functions; the ledger writes the results atomically.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from credit_engine.models.api import ExpirationMode
from credit_engine.models.domain import AccountData, RenewalResult, SubscriptionPlan
from credit_engine.services.subscription_policy import SubscriptionPolicyResolver


def apply_renewal(
    current_balance: int,
    new_allocation: int,
    expiration_mode: ExpirationMode,
    max_rollover: int | None,
) -> RenewalResult:
    """
    Compute the balance after a cycle renewal.

    never: the allocation is added and the result capped at max_rollover
    (None means no cap). Nothing expires; the part of the allocation above
    the cap is simply not granted and is reported as capped_amount.
    end_of_cycle / rolling_window: the prior balance is forfeited and replaced
    by the allocation. The two modes differ only in when renewal runs.

    Args:
        current_balance: Unused credits in the pool
        new_allocation: Credits granted for the new cycle
        expiration_mode: Plan expiration mode
        max_rollover: Cap for never-expiring balances

    Returns:
        RenewalResult with new_balance and expired_amount
    """
    if current_balance < 0 or new_allocation < 0:
        raise ValueError("Balances cannot be negative")

    if expiration_mode == ExpirationMode.NEVER:
        combined = current_balance + new_allocation
        new_balance = combined if max_rollover is None else min(combined, max_rollover)
        granted = max(0, new_balance - current_balance)
        return RenewalResult(
            new_balance=new_balance,
            # Only non-zero when the balance already sat above a lowered cap
            expired_amount=max(0, current_balance - new_balance),
            capped_amount=new_allocation - granted,
        )

    return RenewalResult(new_balance=new_allocation, expired_amount=current_balance)


def should_warn(plan: SubscriptionPlan | None, days_until_expiration: int) -> bool:
    """True when the plan's credits expire and the expiry is within the warning window."""
    if plan is None:
        return False
    if plan.expiration_mode == ExpirationMode.NEVER or not plan.send_expiration_warning:
        return False
    return 0 <= days_until_expiration <= plan.warning_days_before_expiration


@dataclass(frozen=True)
class ExpirationWarning:
    """An account whose subscription credits expire soon."""

    user_id: str
    plan_key: str
    expiring_credits: int
    days_until_expiration: int
    expires_at: datetime


class ExpirationEngine:
    """Renewal arithmetic plus the expiration warning scan."""

    def __init__(self, resolver: SubscriptionPolicyResolver) -> None:
        self.resolver = resolver

    def apply_renewal(
        self,
        current_balance: int,
        new_allocation: int,
        expiration_mode: ExpirationMode,
        max_rollover: int | None,
    ) -> RenewalResult:
        return apply_renewal(current_balance, new_allocation, expiration_mode, max_rollover)

    def renew_for_plan(self, current_balance: int, plan: SubscriptionPlan) -> RenewalResult:
        """Renewal using the plan's allocation, mode and effective rollover cap."""
        return apply_renewal(
            current_balance,
            plan.credits_per_cycle,
            plan.expiration_mode,
            self.resolver.effective_max_rollover(plan),
        )

    def should_warn(self, plan_key: str | None, days_until_expiration: int) -> bool:
        return should_warn(self.resolver.find_by_key(plan_key), days_until_expiration)

    def longest_warning_window(self) -> int:
        """Widest warning window, in days, across enabled plans that expire credits."""
        return max(
            (
                plan.warning_days_before_expiration
                for plan in self.resolver.list_enabled_plans()
                if plan.expiration_mode != ExpirationMode.NEVER and plan.send_expiration_warning
            ),
            default=0,
        )

    def find_accounts_to_warn(
        self, accounts: Iterable[AccountData], now: datetime | None = None
    ) -> list[ExpirationWarning]:
        """Accounts with expiring subscription credits inside their plan's warning window."""
        now = now or datetime.now(UTC)
        warnings: list[ExpirationWarning] = []

        for account in accounts:
            if account.current_period_end is None or account.plan_key is None:
                continue
            if account.balance.subscription_balance <= 0:
                continue

            expires_at = account.current_period_end
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=UTC)
            days = (expires_at - now).days

            if self.should_warn(account.plan_key, days):
                warnings.append(
                    ExpirationWarning(
                        user_id=account.user_id,
                        plan_key=account.plan_key,
                        expiring_credits=account.balance.subscription_balance,
                        days_until_expiration=days,
                        expires_at=expires_at,
                    )
                )

        return warnings
