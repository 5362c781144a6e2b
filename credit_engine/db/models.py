"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from credit_engine.models.api import CreditPool, TransactionType, WebhookEventStatus

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _str_enum(enum_cls: type, name: str, length: int) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class CreditAccount(Base):
    """
    ORM model for credit_accounts table.

    Holds both credit pools and the subscription state of one user.
    """

    __tablename__ = "credit_accounts"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Balances
    subscription_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    purchased_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Subscription
    plan_key: Mapped[str | None] = mapped_column(String(50), nullable=True)
    billing_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_status: Mapped[str] = mapped_column(String(30), nullable=False, default="none")
    cycle_anchor_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Epoch seconds of the newest applied subscription event (out-of-order guard)
    last_subscription_event_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Bumped on every balance change
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("subscription_balance >= 0", name="ck_subscription_balance_non_negative"),
        CheckConstraint("purchased_balance >= 0", name="ck_purchased_balance_non_negative"),
        Index("idx_credit_accounts_customer", "billing_customer_id"),
        Index("idx_credit_accounts_subscription", "subscription_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditAccount(user_id={self.user_id}, subscription={self.subscription_balance}, "
            f"purchased={self.purchased_balance}, plan={self.plan_key})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only. The sum of amounts per user equals the live total balance.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("credit_accounts.user_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Signed amount: positive adds credits, negative removes them
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        _str_enum(TransactionType, "credit_transaction_type", 20), nullable=False
    )
    pool: Mapped[CreditPool] = mapped_column(_str_enum(CreditPool, "credit_pool", 20), nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Balance snapshots after the write (denormalized for replay and auditing)
    subscription_balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    purchased_balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_transaction_amount_non_zero"),
        UniqueConstraint("user_id", "type", "reference_id", name="uq_transaction_reference"),
        Index("idx_credit_transactions_user_id", "user_id", "id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, type={self.type}, reference_id={self.reference_id})>"
        )


class WebhookEventRecord(Base):
    """
    ORM model for webhook_events table.

    One row per billing event id; inserting the row is the dedup claim.
    claimed_at is refreshed on every reclaim and bounds a processing lease.
    """

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[WebhookEventStatus] = mapped_column(
        _str_enum(WebhookEventStatus, "webhook_event_status", 20), nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    claimed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_webhook_events_status", "status"),
        Index("idx_webhook_events_status_claimed", "status", "claimed_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<WebhookEventRecord(event_id={self.event_id}, status={self.status})>"


class ProviderQuotaUsage(Base):
    """
    ORM model for provider_quota_usage table.

    Monthly row per provider; daily counters reset when usage_day changes.
    """

    __tablename__ = "provider_quota_usage"

    provider: Mapped[str] = mapped_column(String(50), primary_key=True)
    usage_month: Mapped[str] = mapped_column(String(7), primary_key=True)  # YYYY-MM
    usage_day: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    daily_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("daily_requests >= 0", name="ck_quota_daily_non_negative"),
        CheckConstraint("monthly_requests >= 0", name="ck_quota_monthly_non_negative"),
        CheckConstraint("monthly_credits >= 0", name="ck_quota_credits_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ProviderQuotaUsage(provider={self.provider}, month={self.usage_month}, "
            f"day={self.usage_day}, daily={self.daily_requests}, credits={self.monthly_credits})>"
        )
