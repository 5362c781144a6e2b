"""
Credit Ledger - Two credit pools per user with an append-only transaction log.

NO DICTIONARIES - All operations use strongly typed domain models.

Every mutation runs in its own transaction and is serialized per user:
an in-process lock, a row lock (SELECT ... FOR UPDATE), and a guarded
compare-and-swap UPDATE on the account version. Each balance change appends
exactly one transaction row, so the transaction sum always equals the live total.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from weakref import WeakValueDictionary

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_engine.db.models import CreditAccount, CreditTransaction
from credit_engine.exceptions import (
    AccountNotFoundError,
    ConcurrencyError,
    DataIntegrityError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    StaleWebhookEventError,
    WriteVerificationError,
)
from credit_engine.models.api import (
    CREDIT_TRANSACTION_TYPES,
    DEBIT_TRANSACTION_TYPES,
    CreditPool,
    TransactionType,
)
from credit_engine.models.domain import (
    AccountData,
    BalanceSnapshot,
    CreditTransactionData,
    LedgerResult,
    ReconciliationReport,
    RenewalOutcome,
    SubscriptionPlan,
    TransactionPage,
)
from credit_engine.observability import get_logger, metrics
from credit_engine.services.expiration import apply_renewal
from credit_engine.services.subscription_policy import SubscriptionPolicyResolver

logger = get_logger(__name__)

SIGNUP_REFERENCE = "signup"
MAX_HISTORY_LIMIT = 100


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; all stored timestamps are UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class CreditLedger:
    """
    Owns both credit pools and the transaction log.

    Debits drain the subscription pool before the purchased pool.
    Credits of type subscription land in the subscription pool; all others
    land in the purchased pool, which never expires.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        free_credits: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self.free_credits = free_credits
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_balance(self, user_id: str) -> BalanceSnapshot:
        """
        Current balance of both pools.

        Raises:
            AccountNotFoundError: If the account doesn't exist
        """
        async with self._session_factory() as session:
            account = await session.get(CreditAccount, user_id)
            if account is None:
                raise AccountNotFoundError(user_id)
            return self._snapshot(account)

    async def get_account(self, user_id: str) -> AccountData:
        """Account with subscription state."""
        async with self._session_factory() as session:
            account = await session.get(CreditAccount, user_id)
            if account is None:
                raise AccountNotFoundError(user_id)
            return self._account_to_domain(account)

    async def get_transaction_history(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> TransactionPage:
        """Transactions for a user, most recent first."""
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        offset = max(0, offset)

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count())
                .select_from(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
            )
            rows = await session.scalars(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.id.desc())
                .limit(limit)
                .offset(offset)
            )
            transactions = tuple(self._transaction_to_domain(t) for t in rows.all())

        return TransactionPage(
            transactions=transactions, total=total or 0, limit=limit, offset=offset
        )

    async def reconcile(self, user_id: str) -> ReconciliationReport:
        """Compare the live total with the sum of the transaction log."""
        async with self._session_factory() as session:
            account = await session.get(CreditAccount, user_id)
            if account is None:
                raise AccountNotFoundError(user_id)
            ledger_total = await session.scalar(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                    CreditTransaction.user_id == user_id
                )
            )

        report = ReconciliationReport(
            user_id=user_id,
            live_total=account.subscription_balance + account.purchased_balance,
            ledger_total=int(ledger_total or 0),
        )
        if not report.consistent:
            logger.error(
                "ledger_drift_detected",
                user_id=user_id,
                live_total=report.live_total,
                ledger_total=report.ledger_total,
                drift=report.drift,
            )
        return report

    async def list_expiring_accounts(self, before: datetime) -> list[AccountData]:
        """Accounts with subscription credits whose period ends before a cutoff."""
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(CreditAccount)
                .where(
                    CreditAccount.current_period_end.is_not(None),
                    CreditAccount.current_period_end <= before,
                    CreditAccount.subscription_balance > 0,
                )
                .order_by(CreditAccount.current_period_end)
            )
            return [self._account_to_domain(a) for a in rows.all()]

    # ========================================================================
    # Account lifecycle
    # ========================================================================

    async def get_or_create_account(self, user_id: str) -> AccountData:
        """
        Get the account, creating it with the free starting grant on first access.

        Concurrent first accesses race on the primary key; the loser re-reads.
        """
        async with self._session_factory() as session:
            account = await session.get(CreditAccount, user_id)
            if account is not None:
                return self._account_to_domain(account)

            try:
                account = CreditAccount(
                    user_id=user_id,
                    subscription_balance=0,
                    purchased_balance=self.free_credits,
                    subscription_status="none",
                    version=1,
                )
                session.add(account)
                await session.flush()

                if self.free_credits > 0:
                    session.add(
                        self._new_transaction(
                            account,
                            amount=self.free_credits,
                            type=TransactionType.BONUS,
                            pool=CreditPool.PURCHASED,
                            reference_id=SIGNUP_REFERENCE,
                            description="Free starting credits",
                        )
                    )
                    await session.flush()
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("account_creation_race", user_id=user_id)
                account = await session.get(CreditAccount, user_id)
                if account is None:
                    raise
                return self._account_to_domain(account)

            metrics.accounts_created_total.inc()
            logger.info("account_created", user_id=user_id, free_credits=self.free_credits)
            return self._account_to_domain(account)

    async def delete_account(self, user_id: str) -> None:
        """Remove an account together with its transaction log."""
        async with self._user_lock(user_id):
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(CreditTransaction).where(CreditTransaction.user_id == user_id)
                    )
                    result = await session.execute(
                        delete(CreditAccount).where(CreditAccount.user_id == user_id)
                    )
                    if result.rowcount == 0:
                        raise AccountNotFoundError(user_id)
        logger.info("account_deleted", user_id=user_id)

    # ========================================================================
    # Mutations
    # ========================================================================

    async def reserve_and_debit(
        self,
        user_id: str,
        amount: int,
        reference_id: str,
        type: TransactionType = TransactionType.USAGE,
    ) -> LedgerResult:
        """
        Debit credits, subscription pool first, all-or-nothing.

        A repeated call with an already recorded reference_id returns the prior
        result without debiting again.

        Raises:
            InsufficientCreditsError: If total balance < amount (nothing debited)
            AccountNotFoundError: If the account doesn't exist
            IdempotencyConflictError: If reference_id was used for another amount
        """
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive: {amount}")
        if type not in DEBIT_TRANSACTION_TYPES:
            raise ValueError(f"Transaction type {type.value} cannot debit credits")

        try:
            async with self._locked_account(user_id) as (session, account):
                existing = await self._find_transaction(session, user_id, type, reference_id)
                if existing is not None:
                    return self._replay(existing, -amount)

                total = account.subscription_balance + account.purchased_balance
                if total < amount:
                    metrics.record_debit(False, amount, "insufficient_credits")
                    logger.info(
                        "debit_rejected_insufficient_credits",
                        user_id=user_id,
                        balance=total,
                        required=amount,
                        reference_id=reference_id,
                    )
                    raise InsufficientCreditsError(balance=total, required=amount)

                from_subscription = min(account.subscription_balance, amount)
                from_purchased = amount - from_subscription
                if from_purchased == 0:
                    pool = CreditPool.SUBSCRIPTION
                elif from_subscription == 0:
                    pool = CreditPool.PURCHASED
                else:
                    pool = CreditPool.MIXED

                await self._change_balance(session, account, -from_subscription, -from_purchased)
                transaction = await self._append(
                    session,
                    account,
                    amount=-amount,
                    type=type,
                    pool=pool,
                    reference_id=reference_id,
                    description=None,
                )
                result = self._result(transaction, account)
        except IntegrityError:
            return await self._replay_after_conflict(user_id, type, reference_id, -amount)

        metrics.record_debit(True, amount)
        logger.info(
            "credits_debited",
            user_id=user_id,
            amount=amount,
            from_subscription=from_subscription,
            from_purchased=from_purchased,
            reference_id=reference_id,
            balance_after=result.balance.total,
        )
        return result

    async def credit(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        reference_id: str | None = None,
        description: str | None = None,
        pool: CreditPool | None = None,
    ) -> LedgerResult:
        """
        Add credits. Never fails on balance caps.

        Idempotent when reference_id is given. Creates the account if needed.
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive: {amount}")
        if type not in CREDIT_TRANSACTION_TYPES:
            raise ValueError(f"Transaction type {type.value} cannot add credits")
        if pool is None:
            pool = CreditPool.SUBSCRIPTION if type == TransactionType.SUBSCRIPTION else CreditPool.PURCHASED
        if pool == CreditPool.MIXED:
            raise ValueError("Credits must target a single pool")

        await self.get_or_create_account(user_id)

        try:
            async with self._locked_account(user_id) as (session, account):
                if reference_id is not None:
                    existing = await self._find_transaction(session, user_id, type, reference_id)
                    if existing is not None:
                        return self._replay(existing, amount)

                if pool == CreditPool.SUBSCRIPTION:
                    await self._change_balance(session, account, amount, 0)
                else:
                    await self._change_balance(session, account, 0, amount)

                transaction = await self._append(
                    session,
                    account,
                    amount=amount,
                    type=type,
                    pool=pool,
                    reference_id=reference_id,
                    description=description,
                )
                result = self._result(transaction, account)
        except IntegrityError:
            if reference_id is None:
                raise
            return await self._replay_after_conflict(user_id, type, reference_id, amount)

        metrics.record_credit(type.value, amount)
        logger.info(
            "credits_added",
            user_id=user_id,
            amount=amount,
            type=type.value,
            pool=pool.value,
            reference_id=reference_id,
            balance_after=result.balance.total,
        )
        return result

    async def refund(self, user_id: str, amount: int, reference_id: str) -> LedgerResult:
        """Return reserved credits after a failed dispatch."""
        return await self.credit(
            user_id,
            amount,
            TransactionType.REFUND,
            reference_id=reference_id,
            description="Refund for failed processing",
        )

    async def clawback(self, user_id: str, amount: int, reference_id: str) -> LedgerResult | None:
        """
        Remove credits from a refunded purchase, purchased pool first.

        Bounded by the current balance; returns None when nothing is left.
        """
        if amount <= 0:
            raise ValueError(f"Clawback amount must be positive: {amount}")

        async with self._locked_account(user_id) as (session, account):
            existing = await self._find_transaction(
                session, user_id, TransactionType.PURCHASE, reference_id
            )
            if existing is not None:
                return self._result(existing, account, replayed=True)

            from_purchased = min(account.purchased_balance, amount)
            from_subscription = min(account.subscription_balance, amount - from_purchased)
            removed = from_purchased + from_subscription
            if removed == 0:
                logger.warning("clawback_nothing_to_remove", user_id=user_id, amount=amount)
                return None

            await self._change_balance(session, account, -from_subscription, -from_purchased)
            transaction = await self._append(
                session,
                account,
                amount=-removed,
                type=TransactionType.PURCHASE,
                pool=CreditPool.PURCHASED if from_subscription == 0 else CreditPool.MIXED,
                reference_id=reference_id,
                description="Clawback for refunded charge",
            )
            result = self._result(transaction, account)

        logger.warning(
            "credits_clawed_back",
            user_id=user_id,
            requested=amount,
            removed=removed,
            reference_id=reference_id,
        )
        return result

    async def apply_renewal(
        self,
        user_id: str,
        plan: SubscriptionPlan,
        reference_id: str,
        resolver: SubscriptionPolicyResolver,
        allocation: int | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> RenewalOutcome:
        """
        Renew the subscription pool for a new cycle in one transaction.

        Only the subscription pool is subject to expiration; purchased
        credits carry over untouched.
        """
        allocation = plan.credits_per_cycle if allocation is None else allocation
        await self.get_or_create_account(user_id)

        async with self._locked_account(user_id) as (session, account):
            granted_row = await self._find_transaction(
                session, user_id, TransactionType.SUBSCRIPTION, reference_id
            )
            expired_row = await self._find_transaction(
                session, user_id, TransactionType.EXPIRATION, reference_id
            )
            if granted_row is not None or expired_row is not None:
                return RenewalOutcome(
                    user_id=user_id,
                    balance=self._snapshot(account),
                    expired_amount=-expired_row.amount if expired_row else 0,
                    allocated=granted_row.amount if granted_row else 0,
                    replayed=True,
                )

            renewal = apply_renewal(
                account.subscription_balance,
                allocation,
                plan.expiration_mode,
                resolver.effective_max_rollover(plan),
            )

            account.plan_key = plan.key
            if period_start is not None:
                account.cycle_anchor_date = period_start
            if period_end is not None:
                account.current_period_end = period_end
            await session.flush()

            if renewal.expired_amount > 0:
                await self._change_balance(session, account, -renewal.expired_amount, 0)
                await self._append(
                    session,
                    account,
                    amount=-renewal.expired_amount,
                    type=TransactionType.EXPIRATION,
                    pool=CreditPool.SUBSCRIPTION,
                    reference_id=reference_id,
                    description=f"Subscription credits expired at renewal ({plan.expiration_mode.value})",
                )

            granted = renewal.new_balance - account.subscription_balance
            if granted > 0:
                description = f"{plan.name} plan renewal"
                if renewal.capped_amount:
                    description += f" (capped by rollover limit, {renewal.capped_amount} not granted)"
                await self._change_balance(session, account, granted, 0)
                await self._append(
                    session,
                    account,
                    amount=granted,
                    type=TransactionType.SUBSCRIPTION,
                    pool=CreditPool.SUBSCRIPTION,
                    reference_id=reference_id,
                    description=description,
                )

            if account.subscription_balance != renewal.new_balance:
                raise DataIntegrityError(
                    f"Renewal balance mismatch: expected {renewal.new_balance}, "
                    f"got {account.subscription_balance}"
                )

            outcome = RenewalOutcome(
                user_id=user_id,
                balance=self._snapshot(account),
                expired_amount=renewal.expired_amount,
                allocated=max(granted, 0),
                capped_amount=renewal.capped_amount,
            )

        metrics.record_expiration(outcome.expired_amount)
        metrics.record_credit(TransactionType.SUBSCRIPTION.value, outcome.allocated)
        logger.info(
            "subscription_renewed",
            user_id=user_id,
            plan=plan.key,
            allocated=outcome.allocated,
            expired=outcome.expired_amount,
            capped=outcome.capped_amount,
            reference_id=reference_id,
            balance_after=outcome.balance.total,
        )
        return outcome

    async def expire_subscription_credits(
        self, user_id: str, reason: str, reference_id: str
    ) -> RenewalOutcome:
        """Forfeit the whole subscription pool (cancellation, window end)."""
        async with self._locked_account(user_id) as (session, account):
            existing = await self._find_transaction(
                session, user_id, TransactionType.EXPIRATION, reference_id
            )
            if existing is not None:
                return RenewalOutcome(
                    user_id=user_id,
                    balance=self._snapshot(account),
                    expired_amount=-existing.amount,
                    allocated=0,
                    replayed=True,
                )

            expired = account.subscription_balance
            if expired > 0:
                await self._change_balance(session, account, -expired, 0)
                await self._append(
                    session,
                    account,
                    amount=-expired,
                    type=TransactionType.EXPIRATION,
                    pool=CreditPool.SUBSCRIPTION,
                    reference_id=reference_id,
                    description=f"Subscription credits expired: {reason}",
                )
            outcome = RenewalOutcome(
                user_id=user_id,
                balance=self._snapshot(account),
                expired_amount=expired,
                allocated=0,
            )

        metrics.record_expiration(expired)
        logger.info(
            "subscription_credits_expired",
            user_id=user_id,
            expired=expired,
            reason=reason,
            reference_id=reference_id,
        )
        return outcome

    async def update_subscription(
        self,
        user_id: str,
        *,
        event_id: str,
        event_created: int,
        subscription_id: str | None = None,
        status: str | None = None,
        plan_key: str | None = None,
        customer_id: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        clear_plan: bool = False,
    ) -> AccountData:
        """
        Write subscription state from a billing event.

        Raises:
            StaleWebhookEventError: If a newer subscription event was already applied
        """
        await self.get_or_create_account(user_id)

        async with self._locked_account(user_id) as (session, account):
            last = account.last_subscription_event_at
            if last is not None and event_created < last:
                logger.warning(
                    "subscription_event_stale",
                    user_id=user_id,
                    event_id=event_id,
                    event_created=event_created,
                    last_applied=last,
                )
                raise StaleWebhookEventError(event_id, subscription_id or account.subscription_id)

            if subscription_id is not None:
                account.subscription_id = subscription_id
            if status is not None:
                account.subscription_status = status
            if clear_plan:
                account.plan_key = None
            elif plan_key is not None:
                account.plan_key = plan_key
            if customer_id is not None:
                account.billing_customer_id = customer_id
            if period_start is not None:
                account.cycle_anchor_date = period_start
            if period_end is not None:
                account.current_period_end = period_end
            account.last_subscription_event_at = event_created
            await session.flush()
            data = self._account_to_domain(account)

        logger.info(
            "subscription_state_updated",
            user_id=user_id,
            event_id=event_id,
            subscription_id=data.subscription_id,
            status=data.subscription_status,
            plan=data.plan_key,
        )
        return data

    async def find_user_by_customer(self, customer_id: str) -> str | None:
        """User id linked to a billing customer id."""
        async with self._session_factory() as session:
            return await session.scalar(
                select(CreditAccount.user_id).where(
                    CreditAccount.billing_customer_id == customer_id
                )
            )

    async def link_customer(self, user_id: str, customer_id: str) -> None:
        """Attach a billing customer id without touching subscription state."""
        await self.get_or_create_account(user_id)
        async with self._locked_account(user_id) as (session, account):
            if account.billing_customer_id == customer_id:
                return
            account.billing_customer_id = customer_id
            await session.flush()
        logger.info("billing_customer_linked", user_id=user_id, customer_id=customer_id)

    async def credited_amount(self, user_id: str, reference_id: str) -> int:
        """Credits granted under a reference by purchases and subscription allocations."""
        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                    CreditTransaction.user_id == user_id,
                    CreditTransaction.reference_id == reference_id,
                    CreditTransaction.type.in_(
                        [TransactionType.PURCHASE, TransactionType.SUBSCRIPTION]
                    ),
                    CreditTransaction.amount > 0,
                )
            )
        return int(total or 0)

    async def clawed_back_amount(self, user_id: str, reference_prefix: str) -> int:
        """Credits already removed by clawbacks whose reference starts with reference_prefix."""
        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                    CreditTransaction.user_id == user_id,
                    CreditTransaction.reference_id.startswith(reference_prefix, autoescape=True),
                    CreditTransaction.type == TransactionType.PURCHASE,
                    CreditTransaction.amount < 0,
                )
            )
        return -int(total or 0)

    # ========================================================================
    # Private helpers
    # ========================================================================

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def _locked_account(
        self, user_id: str
    ) -> AsyncIterator[tuple[AsyncSession, CreditAccount]]:
        """Open a transaction holding the per-user lock and the account row lock."""
        async with self._user_lock(user_id):
            async with self._session_factory() as session:
                async with session.begin():
                    account = await self._lock_account_for_update(session, user_id)
                    if account is None:
                        raise AccountNotFoundError(user_id)
                    yield session, account

    async def _lock_account_for_update(
        self, session: AsyncSession, user_id: str
    ) -> CreditAccount | None:
        """Select the account with a row-level lock (no-op on SQLite)."""
        result = await session.execute(
            select(CreditAccount).where(CreditAccount.user_id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def _change_balance(
        self,
        session: AsyncSession,
        account: CreditAccount,
        subscription_delta: int,
        purchased_delta: int,
    ) -> None:
        """
        Compare-and-swap balance update guarded by version and non-negativity.

        Reads the row back afterwards and verifies the write.
        """
        expected_subscription = account.subscription_balance + subscription_delta
        expected_purchased = account.purchased_balance + purchased_delta

        result = await session.execute(
            update(CreditAccount)
            .where(
                CreditAccount.user_id == account.user_id,
                CreditAccount.version == account.version,
                CreditAccount.subscription_balance + subscription_delta >= 0,
                CreditAccount.purchased_balance + purchased_delta >= 0,
            )
            .values(
                subscription_balance=CreditAccount.subscription_balance + subscription_delta,
                purchased_balance=CreditAccount.purchased_balance + purchased_delta,
                version=CreditAccount.version + 1,
                updated_at=_utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            metrics.record_error("ConcurrencyError", "change_balance")
            raise ConcurrencyError(f"credit_account:{account.user_id}")

        await session.refresh(account)
        if (
            account.subscription_balance != expected_subscription
            or account.purchased_balance != expected_purchased
        ):
            raise DataIntegrityError(
                f"Balance mismatch for {account.user_id}: expected "
                f"({expected_subscription}, {expected_purchased}), got "
                f"({account.subscription_balance}, {account.purchased_balance})"
            )

    def _new_transaction(
        self,
        account: CreditAccount,
        *,
        amount: int,
        type: TransactionType,
        pool: CreditPool,
        reference_id: str | None,
        description: str | None,
    ) -> CreditTransaction:
        return CreditTransaction(
            user_id=account.user_id,
            amount=amount,
            type=type,
            pool=pool,
            reference_id=reference_id,
            description=description,
            subscription_balance_after=account.subscription_balance,
            purchased_balance_after=account.purchased_balance,
            created_at=_utc_now(),
        )

    async def _append(
        self,
        session: AsyncSession,
        account: CreditAccount,
        *,
        amount: int,
        type: TransactionType,
        pool: CreditPool,
        reference_id: str | None,
        description: str | None,
    ) -> CreditTransaction:
        transaction = self._new_transaction(
            account,
            amount=amount,
            type=type,
            pool=pool,
            reference_id=reference_id,
            description=description,
        )
        session.add(transaction)
        await session.flush()
        if transaction.id is None:
            raise WriteVerificationError("Transaction was not assigned an id")
        return transaction

    async def _find_transaction(
        self,
        session: AsyncSession,
        user_id: str,
        type: TransactionType,
        reference_id: str,
    ) -> CreditTransaction | None:
        result = await session.execute(
            select(CreditTransaction).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.type == type,
                CreditTransaction.reference_id == reference_id,
            )
        )
        return result.scalar_one_or_none()

    async def _replay_after_conflict(
        self, user_id: str, type: TransactionType, reference_id: str, amount: int
    ) -> LedgerResult:
        """Another writer recorded the same reference first; return its result."""
        async with self._session_factory() as session:
            existing = await self._find_transaction(session, user_id, type, reference_id)
            if existing is None:
                raise ConcurrencyError(f"credit_transaction:{user_id}:{reference_id}")
            return self._replay(existing, amount)

    def _replay(self, existing: CreditTransaction, amount: int) -> LedgerResult:
        if existing.amount != amount:
            raise IdempotencyConflictError(
                existing.reference_id or "", existing.amount, amount
            )
        logger.info(
            "ledger_operation_replayed",
            user_id=existing.user_id,
            type=existing.type.value,
            reference_id=existing.reference_id,
        )
        return LedgerResult(
            user_id=existing.user_id,
            transaction_id=existing.id,
            amount=existing.amount,
            balance=BalanceSnapshot(
                subscription_balance=existing.subscription_balance_after,
                purchased_balance=existing.purchased_balance_after,
            ),
            replayed=True,
        )

    def _result(
        self, transaction: CreditTransaction, account: CreditAccount, replayed: bool = False
    ) -> LedgerResult:
        return LedgerResult(
            user_id=account.user_id,
            transaction_id=transaction.id,
            amount=transaction.amount,
            balance=self._snapshot(account),
            replayed=replayed,
        )

    def _snapshot(self, account: CreditAccount) -> BalanceSnapshot:
        return BalanceSnapshot(
            subscription_balance=account.subscription_balance,
            purchased_balance=account.purchased_balance,
        )

    def _account_to_domain(self, account: CreditAccount) -> AccountData:
        """Convert ORM model to domain model."""
        return AccountData(
            user_id=account.user_id,
            balance=self._snapshot(account),
            plan_key=account.plan_key,
            subscription_id=account.subscription_id,
            subscription_status=account.subscription_status,
            billing_customer_id=account.billing_customer_id,
            cycle_anchor_date=_as_utc(account.cycle_anchor_date),
            current_period_end=_as_utc(account.current_period_end),
            version=account.version,
        )

    def _transaction_to_domain(self, transaction: CreditTransaction) -> CreditTransactionData:
        return CreditTransactionData(
            id=transaction.id,
            user_id=transaction.user_id,
            amount=transaction.amount,
            type=transaction.type,
            reference_id=transaction.reference_id,
            pool=transaction.pool,
            description=transaction.description,
            created_at=_as_utc(transaction.created_at) or _utc_now(),
        )
