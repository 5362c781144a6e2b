"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class TransactionType(str, Enum):
    """Credit transaction type enumeration."""

    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    EXPIRATION = "expiration"


# Types that remove credits / add credits
DEBIT_TRANSACTION_TYPES = frozenset({TransactionType.USAGE, TransactionType.EXPIRATION})
CREDIT_TRANSACTION_TYPES = frozenset(
    {
        TransactionType.PURCHASE,
        TransactionType.SUBSCRIPTION,
        TransactionType.REFUND,
        TransactionType.BONUS,
    }
)


class CreditPool(str, Enum):
    """Which balance pool a transaction touched."""

    SUBSCRIPTION = "subscription"
    PURCHASED = "purchased"
    MIXED = "mixed"


class QualityTier(str, Enum):
    """Processing quality tiers offered to users."""

    AUTO = "auto"
    QUICK = "quick"
    FACE_RESTORE = "face-restore"
    FAST_EDIT = "fast-edit"
    BUDGET_EDIT = "budget-edit"
    SEEDREAM_EDIT = "seedream-edit"
    ANIME_UPSCALE = "anime-upscale"
    HD_UPSCALE = "hd-upscale"
    FACE_PRO = "face-pro"
    ULTRA = "ultra"


class ExpirationMode(str, Enum):
    """What happens to unused subscription credits at renewal."""

    NEVER = "never"
    END_OF_CYCLE = "end_of_cycle"
    ROLLING_WINDOW = "rolling_window"


class WebhookEventStatus(str, Enum):
    """Persisted processing status of a billing webhook event."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNRECOVERABLE = "unrecoverable"


class WebhookOutcomeStatus(str, Enum):
    """Result of handling one webhook delivery."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    MALFORMED = "malformed"


ScaleFactor = Literal[2, 4, 8]


# ============================================================================
# Ledger Models
# ============================================================================


class BalanceResponse(BaseModel):
    """Current balance of both credit pools."""

    user_id: str
    subscription_balance: int
    purchased_balance: int
    total: int
    plan_key: str | None = None


class DebitRequest(BaseModel):
    """POST /v1/credits/{user_id}/debit request body."""

    amount: int = Field(..., gt=0, description="Credits to reserve and debit")
    reference_id: str = Field(..., min_length=1, max_length=255)
    type: TransactionType = TransactionType.USAGE

    @field_validator("type")
    @classmethod
    def validate_debit_type(cls, v: TransactionType) -> TransactionType:
        """Only debit-type transactions can remove credits."""
        if v not in DEBIT_TRANSACTION_TYPES:
            raise ValueError(f"Transaction type {v.value} cannot be used for a debit")
        return v


class CreditRequest(BaseModel):
    """POST /v1/credits/{user_id}/credit request body."""

    amount: int = Field(..., gt=0, description="Credits to add")
    type: TransactionType = TransactionType.BONUS
    reference_id: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=500)

    @field_validator("type")
    @classmethod
    def validate_credit_type(cls, v: TransactionType) -> TransactionType:
        """Only credit-type transactions can add credits."""
        if v not in CREDIT_TRANSACTION_TYPES:
            raise ValueError(f"Transaction type {v.value} cannot be used for a credit")
        return v


class RefundRequest(BaseModel):
    """POST /v1/credits/{user_id}/refund request body."""

    amount: int = Field(..., gt=0)
    reference_id: str = Field(..., min_length=1, max_length=255)


class LedgerResponse(BaseModel):
    """Result of a ledger mutation."""

    user_id: str
    transaction_id: int
    amount: int
    subscription_balance: int
    purchased_balance: int
    total: int
    replayed: bool = False


class TransactionItem(BaseModel):
    """Single ledger transaction."""

    id: int
    amount: int
    type: TransactionType
    reference_id: str | None
    pool: CreditPool
    description: str | None
    created_at: str


class TransactionListResponse(BaseModel):
    """Paginated transaction history, most recent first."""

    transactions: list[TransactionItem]
    total: int
    has_more: bool


class ReconciliationResponse(BaseModel):
    """Live balance compared to the sum of the transaction log."""

    user_id: str
    live_total: int
    ledger_total: int
    drift: int
    consistent: bool


# ============================================================================
# Cost / Catalog Models
# ============================================================================


class CostEstimateRequest(BaseModel):
    """POST /v1/credits/estimate request body."""

    quality_tier: QualityTier = QualityTier.AUTO
    scale: ScaleFactor = 2
    smart_analysis: bool = False
    priority_processing: bool = False


class CostEstimateResponse(BaseModel):
    """Credit cost of a processing request."""

    cost: int
    is_estimate: bool
    band_min: int
    band_max: int


class PlanResponse(BaseModel):
    """Subscription plan exposed to clients."""

    key: str
    name: str
    external_price_id: str
    credits_per_cycle: int
    max_rollover: int
    expiration_mode: ExpirationMode
    batch_limit: int
    hourly_limit: int
    recommended: bool
    price_minor: int


class CreditPackResponse(BaseModel):
    """One-off credit pack exposed to clients."""

    key: str
    name: str
    credits: int
    price_minor: int
    external_price_id: str
    popular: bool


class RateLimitResponse(BaseModel):
    """Hourly usage against the plan limit."""

    user_id: str
    plan_key: str | None
    used: int
    limit: int
    remaining: int
    batch_limit: int
    reset_at: str | None


class ExpirationWarningResponse(BaseModel):
    """Account whose subscription credits expire inside the plan warning window."""

    user_id: str
    plan_key: str
    expiring_credits: int
    days_until_expiration: int
    expires_at: str


# ============================================================================
# Processing Models
# ============================================================================


class ProcessRequest(BaseModel):
    """POST /v1/process request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    image_url: str = Field(..., min_length=1, max_length=2048)
    quality_tier: QualityTier = QualityTier.AUTO
    scale: ScaleFactor = 2
    smart_analysis: bool = False
    priority_processing: bool = False
    batch_size: int = Field(1, ge=1, le=100)
    request_id: str | None = Field(None, min_length=1, max_length=255)


class ProcessResponse(BaseModel):
    """Result of a completed processing request."""

    request_id: str
    provider: str
    output_url: str
    credits_reserved: int
    credits_charged: int
    balance: int


class ProviderUsageResponse(BaseModel):
    """Free-tier usage of one AI provider."""

    provider: str
    priority: int
    available: bool
    today_requests: int
    month_requests: int
    month_credits: int


# ============================================================================
# Webhook / Health Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the billing provider."""

    status: WebhookOutcomeStatus
    event_id: str | None


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
