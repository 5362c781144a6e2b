"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime

from credit_engine.models.api import (
    CreditPool,
    ExpirationMode,
    QualityTier,
    TransactionType,
    WebhookOutcomeStatus,
)


@dataclass(frozen=True)
class BalanceSnapshot:
    """Immutable balance state of both pools."""

    subscription_balance: int
    purchased_balance: int

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.subscription_balance < 0:
            raise ValueError(f"Subscription balance cannot be negative: {self.subscription_balance}")
        if self.purchased_balance < 0:
            raise ValueError(f"Purchased balance cannot be negative: {self.purchased_balance}")

    @property
    def total(self) -> int:
        """Total spendable credits."""
        return self.subscription_balance + self.purchased_balance


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a ledger mutation."""

    user_id: str
    transaction_id: int
    amount: int
    balance: BalanceSnapshot
    replayed: bool = False


@dataclass(frozen=True)
class CreditTransactionData:
    """Persisted transaction, read back from the ledger."""

    id: int
    user_id: str
    amount: int
    type: TransactionType
    reference_id: str | None
    pool: CreditPool
    description: str | None
    created_at: datetime


@dataclass(frozen=True)
class TransactionPage:
    """A page of transaction history."""

    transactions: tuple[CreditTransactionData, ...]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.transactions) < self.total


@dataclass(frozen=True)
class AccountData:
    """Account state returned from the ledger."""

    user_id: str
    balance: BalanceSnapshot
    plan_key: str | None
    subscription_id: str | None
    subscription_status: str
    billing_customer_id: str | None
    cycle_anchor_date: datetime | None
    current_period_end: datetime | None
    version: int


@dataclass(frozen=True)
class ReconciliationReport:
    """Live total compared with the sum of the transaction log."""

    user_id: str
    live_total: int
    ledger_total: int

    @property
    def drift(self) -> int:
        return self.live_total - self.ledger_total

    @property
    def consistent(self) -> bool:
        return self.drift == 0


# ============================================================================
# Plans and Packs
# ============================================================================


@dataclass(frozen=True)
class SubscriptionPlan:
    """Static configuration of a subscription plan."""

    key: str
    name: str
    external_price_id: str
    credits_per_cycle: int
    max_rollover: int | None
    rollover_multiplier: int
    expiration_mode: ExpirationMode
    warning_days_before_expiration: int
    batch_limit: int
    hourly_limit: int
    display_order: int
    price_minor: int = 0
    recommended: bool = False
    enabled: bool = True
    send_expiration_warning: bool = True

    def __post_init__(self) -> None:
        """Validate plan constraints."""
        if self.credits_per_cycle <= 0:
            raise ValueError(f"credits_per_cycle must be positive: {self.credits_per_cycle}")
        if self.max_rollover is not None and self.max_rollover < 0:
            raise ValueError(f"max_rollover cannot be negative: {self.max_rollover}")
        if self.batch_limit <= 0 or self.hourly_limit <= 0:
            raise ValueError("batch_limit and hourly_limit must be positive")


@dataclass(frozen=True)
class CreditPack:
    """One-off purchasable credit pack."""

    key: str
    name: str
    credits: int
    price_minor: int
    external_price_id: str
    popular: bool = False
    enabled: bool = True

    def __post_init__(self) -> None:
        """Validate pack constraints."""
        if self.credits <= 0:
            raise ValueError(f"Pack credits must be positive: {self.credits}")


@dataclass(frozen=True)
class RateLimits:
    """Batch and hourly ceilings for a plan."""

    batch_limit: int
    hourly_limit: int


@dataclass(frozen=True)
class RateLimitStatus:
    """Hourly usage of one user."""

    used: int
    limit: int
    batch_limit: int
    reset_at: datetime | None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


# ============================================================================
# Cost and Renewal
# ============================================================================


@dataclass(frozen=True)
class AdditionalOptions:
    """Optional add-ons that affect the credit cost."""

    smart_analysis: bool = False
    priority_processing: bool = False


@dataclass(frozen=True)
class CostEstimate:
    """Credit cost of a request; estimates are upper bounds for reservation."""

    cost: int
    is_estimate: bool
    band_min: int
    band_max: int


@dataclass(frozen=True)
class RenewalResult:
    """Balance after combining the old pool with a new cycle allocation."""

    new_balance: int
    expired_amount: int
    capped_amount: int = 0

    def __post_init__(self) -> None:
        if min(self.new_balance, self.expired_amount, self.capped_amount) < 0:
            raise ValueError("Renewal amounts cannot be negative")


@dataclass(frozen=True)
class RenewalOutcome:
    """Result of applying a renewal to an account."""

    user_id: str
    balance: BalanceSnapshot
    expired_amount: int
    allocated: int
    capped_amount: int = 0
    replayed: bool = False


# ============================================================================
# Processing and Providers
# ============================================================================


@dataclass(frozen=True)
class ProcessingRequest:
    """A single processing request, alive only for its own lifecycle."""

    user_id: str
    request_id: str
    image_url: str
    quality_tier: QualityTier
    scale: int
    options: AdditionalOptions = field(default_factory=AdditionalOptions)
    batch_size: int = 1
    cost: int = 0

    def __post_init__(self) -> None:
        """Validate request constraints."""
        if self.scale not in (2, 4, 8):
            raise ValueError(f"Unsupported scale factor: {self.scale}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive: {self.batch_size}")
        if self.cost < 0:
            raise ValueError(f"cost cannot be negative: {self.cost}")


@dataclass(frozen=True)
class ProviderResult:
    """What a provider adapter returns on success."""

    provider: str
    output_url: str
    credits_used: int
    model_id: str | None = None


@dataclass(frozen=True)
class ProviderUsage:
    """Quota counters for one provider."""

    provider: str
    today_requests: int
    month_requests: int
    month_credits: int


@dataclass(frozen=True)
class ProviderQuota:
    """Free-tier ceilings of one provider. None means unlimited."""

    daily_requests: int | None = None
    monthly_requests: int | None = None
    monthly_credits: int | None = None
    hard_limit: bool = False


@dataclass(frozen=True)
class DispatchResult:
    """Successful dispatch with cost reconciliation."""

    result: ProviderResult
    reserved: int
    charged: int
    attempted: tuple[str, ...]


@dataclass(frozen=True)
class ProcessingOutcome:
    """Completed processing request."""

    request_id: str
    provider: str
    output_url: str
    credits_reserved: int
    credits_charged: int
    balance: BalanceSnapshot


@dataclass(frozen=True)
class WebhookOutcome:
    """Acknowledged webhook delivery."""

    status: WebhookOutcomeStatus
    event_id: str | None
    event_type: str | None = None
