"""
Tests for CreditLedger against a temporary SQLite database.

Covers pool ordering, all-or-nothing debits, idempotent references,
renewal and expiration, subscription state and reconciliation.
"""

import asyncio
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from credit_engine.exceptions import (
    AccountNotFoundError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    StaleWebhookEventError,
)
from credit_engine.models.api import CreditPool, ExpirationMode, TransactionType
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.subscription_policy import SubscriptionPolicyResolver


async def grant_subscription(
    ledger: CreditLedger, resolver: SubscriptionPolicyResolver, user_id: str, reference_id: str
) -> None:
    await ledger.apply_renewal(user_id, resolver.resolve_by_key("hobby"), reference_id, resolver)


class TestAccountLifecycle:
    """Tests for account creation and deletion."""

    async def test_signup_grants_free_credits(self, ledger: CreditLedger) -> None:
        """New accounts receive the free grant in the purchased pool."""
        account = await ledger.get_or_create_account("user-1")

        assert account.balance.purchased_balance == 10
        assert account.balance.subscription_balance == 0
        assert account.subscription_status == "none"

        history = await ledger.get_transaction_history("user-1")
        assert history.total == 1
        assert history.transactions[0].type == TransactionType.BONUS
        assert history.transactions[0].reference_id == "signup"

    async def test_get_or_create_is_idempotent(self, ledger: CreditLedger) -> None:
        await ledger.get_or_create_account("user-1")
        await ledger.get_or_create_account("user-1")

        balance = await ledger.get_balance("user-1")
        history = await ledger.get_transaction_history("user-1")
        assert balance.total == 10
        assert history.total == 1

    async def test_zero_free_credits_writes_no_transaction(self, empty_ledger: CreditLedger) -> None:
        account = await empty_ledger.get_or_create_account("user-1")

        assert account.balance.total == 0
        assert (await empty_ledger.get_transaction_history("user-1")).total == 0

    async def test_missing_account_raises(self, ledger: CreditLedger) -> None:
        with pytest.raises(AccountNotFoundError) as exc_info:
            await ledger.get_balance("ghost")

        assert exc_info.value.user_id == "ghost"

    async def test_delete_account(self, ledger: CreditLedger) -> None:
        await ledger.get_or_create_account("user-1")

        await ledger.delete_account("user-1")

        with pytest.raises(AccountNotFoundError):
            await ledger.get_account("user-1")
        assert (await ledger.get_transaction_history("user-1")).total == 0

    async def test_delete_missing_account_raises(self, ledger: CreditLedger) -> None:
        with pytest.raises(AccountNotFoundError):
            await ledger.delete_account("ghost")


class TestDebit:
    """Tests for reserve_and_debit."""

    async def test_debit_decrements_balance(self, ledger: CreditLedger) -> None:
        """Balance drops by exactly the debited amount."""
        await ledger.get_or_create_account("user-1")

        result = await ledger.reserve_and_debit("user-1", 4, "req-1")

        assert result.amount == -4
        assert result.balance.total == 6
        assert result.replayed is False
        assert (await ledger.get_balance("user-1")).total == 6

    async def test_subscription_pool_drains_first(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        await ledger.get_or_create_account("user-1")
        await grant_subscription(ledger, resolver, "user-1", "invoice_1")

        result = await ledger.reserve_and_debit("user-1", 150, "req-1")

        assert result.balance.subscription_balance == 50
        assert result.balance.purchased_balance == 10

    async def test_debit_spanning_both_pools(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        await ledger.get_or_create_account("user-1")
        await grant_subscription(ledger, resolver, "user-1", "invoice_1")

        result = await ledger.reserve_and_debit("user-1", 205, "req-1")

        assert result.balance.subscription_balance == 0
        assert result.balance.purchased_balance == 5
        history = await ledger.get_transaction_history("user-1", limit=1)
        assert history.transactions[0].pool == CreditPool.MIXED

    async def test_insufficient_credits_leaves_balance_unchanged(self, ledger: CreditLedger) -> None:
        """A failed debit changes nothing and writes no transaction."""
        await ledger.get_or_create_account("user-1")

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.reserve_and_debit("user-1", 11, "req-1")

        assert exc_info.value.balance == 10
        assert exc_info.value.required == 11
        assert (await ledger.get_balance("user-1")).total == 10
        assert (await ledger.get_transaction_history("user-1")).total == 1

    async def test_debit_exact_balance(self, ledger: CreditLedger) -> None:
        await ledger.get_or_create_account("user-1")

        result = await ledger.reserve_and_debit("user-1", 10, "req-1")

        assert result.balance.total == 0

    async def test_debit_missing_account(self, ledger: CreditLedger) -> None:
        with pytest.raises(AccountNotFoundError):
            await ledger.reserve_and_debit("ghost", 1, "req-1")

    async def test_repeated_reference_is_replayed(self, ledger: CreditLedger) -> None:
        """The same reference debits once."""
        await ledger.get_or_create_account("user-1")

        first = await ledger.reserve_and_debit("user-1", 3, "req-1")
        second = await ledger.reserve_and_debit("user-1", 3, "req-1")

        assert second.replayed is True
        assert second.transaction_id == first.transaction_id
        assert (await ledger.get_balance("user-1")).total == 7

    async def test_reference_reused_with_other_amount(self, ledger: CreditLedger) -> None:
        await ledger.get_or_create_account("user-1")
        await ledger.reserve_and_debit("user-1", 3, "req-1")

        with pytest.raises(IdempotencyConflictError) as exc_info:
            await ledger.reserve_and_debit("user-1", 5, "req-1")

        assert exc_info.value.existing_amount == -3
        assert exc_info.value.requested_amount == -5

    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amount_rejected(self, ledger: CreditLedger, amount: int) -> None:
        with pytest.raises(ValueError):
            await ledger.reserve_and_debit("user-1", amount, "req-1")

    async def test_credit_type_cannot_debit(self, ledger: CreditLedger) -> None:
        with pytest.raises(ValueError):
            await ledger.reserve_and_debit("user-1", 1, "req-1", type=TransactionType.PURCHASE)

    async def test_concurrent_debits_never_overdraw(self, ledger: CreditLedger) -> None:
        """floor(balance / amount) of N concurrent debits succeed."""
        await ledger.get_or_create_account("user-1")

        results = await asyncio.gather(
            *(ledger.reserve_and_debit("user-1", 3, f"req-{i}") for i in range(8)),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, BaseException)]
        rejected = [r for r in results if isinstance(r, InsufficientCreditsError)]
        assert len(succeeded) == 3
        assert len(rejected) == 5
        assert (await ledger.get_balance("user-1")).total == 1
        assert (await ledger.reconcile("user-1")).consistent


class TestCredit:
    """Tests for credit, refund and clawback."""

    async def test_purchase_lands_in_purchased_pool(self, ledger: CreditLedger) -> None:
        result = await ledger.credit("user-1", 200, TransactionType.PURCHASE, reference_id="pi_1")

        assert result.balance.purchased_balance == 210
        assert result.balance.subscription_balance == 0

    async def test_subscription_credit_lands_in_subscription_pool(self, ledger: CreditLedger) -> None:
        result = await ledger.credit(
            "user-1", 50, TransactionType.SUBSCRIPTION, reference_id="manual-1"
        )

        assert result.balance.subscription_balance == 50

    async def test_credit_is_idempotent(self, ledger: CreditLedger) -> None:
        await ledger.credit("user-1", 200, TransactionType.PURCHASE, reference_id="pi_1")
        replay = await ledger.credit("user-1", 200, TransactionType.PURCHASE, reference_id="pi_1")

        assert replay.replayed is True
        assert (await ledger.get_balance("user-1")).total == 210

    async def test_credit_without_reference_always_applies(self, ledger: CreditLedger) -> None:
        await ledger.credit("user-1", 5, TransactionType.BONUS)
        await ledger.credit("user-1", 5, TransactionType.BONUS)

        assert (await ledger.get_balance("user-1")).total == 20

    async def test_usage_type_cannot_credit(self, ledger: CreditLedger) -> None:
        with pytest.raises(ValueError):
            await ledger.credit("user-1", 5, TransactionType.USAGE)

    async def test_mixed_pool_rejected(self, ledger: CreditLedger) -> None:
        with pytest.raises(ValueError):
            await ledger.credit("user-1", 5, TransactionType.BONUS, pool=CreditPool.MIXED)

    async def test_refund_restores_debit(self, ledger: CreditLedger) -> None:
        await ledger.get_or_create_account("user-1")
        await ledger.reserve_and_debit("user-1", 6, "req-1")

        result = await ledger.refund("user-1", 6, "req-1")

        assert result.balance.total == 10
        assert (await ledger.refund("user-1", 6, "req-1")).replayed is True
        assert (await ledger.get_balance("user-1")).total == 10

    async def test_clawback_removes_purchased_first(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        await ledger.credit("user-1", 200, TransactionType.PURCHASE, reference_id="pi_1")
        await grant_subscription(ledger, resolver, "user-1", "invoice_1")

        result = await ledger.clawback("user-1", 150, "refund_ch_1")

        assert result is not None
        assert result.amount == -150
        assert result.balance.purchased_balance == 60
        assert result.balance.subscription_balance == 200

    async def test_clawback_bounded_by_balance(self, ledger: CreditLedger) -> None:
        await ledger.get_or_create_account("user-1")

        result = await ledger.clawback("user-1", 500, "refund_ch_1")

        assert result is not None
        assert result.amount == -10
        assert result.balance.total == 0

    async def test_clawback_is_idempotent(self, ledger: CreditLedger) -> None:
        await ledger.credit("user-1", 200, TransactionType.PURCHASE, reference_id="pi_1")
        await ledger.clawback("user-1", 100, "refund_ch_1")

        replay = await ledger.clawback("user-1", 100, "refund_ch_1")

        assert replay is not None
        assert replay.replayed is True
        assert (await ledger.get_balance("user-1")).total == 110

    async def test_clawback_with_nothing_left(self, empty_ledger: CreditLedger) -> None:
        await empty_ledger.get_or_create_account("user-1")

        assert await empty_ledger.clawback("user-1", 10, "refund_ch_1") is None

    async def test_credited_amount_ignores_clawbacks(self, ledger: CreditLedger) -> None:
        await ledger.credit("user-1", 200, TransactionType.PURCHASE, reference_id="pi_1")
        await ledger.clawback("user-1", 50, "refund_ch_1")

        assert await ledger.credited_amount("user-1", "pi_1") == 200
        assert await ledger.credited_amount("user-1", "pi_unknown") == 0

    async def test_clawed_back_amount_sums_by_prefix(self, ledger: CreditLedger) -> None:
        await ledger.credit("user-1", 200, TransactionType.PURCHASE, reference_id="pi_1")
        await ledger.clawback("user-1", 50, "refund_ch_1:500")
        await ledger.clawback("user-1", 30, "refund_ch_1:800")
        await ledger.clawback("user-1", 20, "refund_chX1:100")

        assert await ledger.clawed_back_amount("user-1", "refund_ch_1:") == 80
        assert await ledger.clawed_back_amount("user-1", "refund_ch_2:") == 0


class TestRenewal:
    """Tests for apply_renewal and expire_subscription_credits."""

    async def test_renewal_keeps_purchased_credits(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        """Only the subscription pool expires at renewal."""
        await ledger.credit("user-1", 200, TransactionType.PURCHASE, reference_id="pi_1")
        await grant_subscription(ledger, resolver, "user-1", "invoice_1")
        await ledger.reserve_and_debit("user-1", 50, "req-1")

        outcome = await ledger.apply_renewal(
            "user-1", resolver.resolve_by_key("hobby"), "invoice_2", resolver
        )

        assert outcome.expired_amount == 150
        assert outcome.allocated == 200
        assert outcome.balance.subscription_balance == 200
        assert outcome.balance.purchased_balance == 210

    async def test_renewal_sets_plan_and_period(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        period_end = datetime(2026, 11, 19, tzinfo=UTC)

        await ledger.apply_renewal(
            "user-1",
            resolver.resolve_by_key("pro"),
            "invoice_1",
            resolver,
            period_start=datetime(2026, 10, 19, tzinfo=UTC),
            period_end=period_end,
        )

        account = await ledger.get_account("user-1")
        assert account.plan_key == "pro"
        assert account.current_period_end == period_end
        assert account.balance.subscription_balance == 1000

    async def test_renewal_replay(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        plan = resolver.resolve_by_key("hobby")
        await ledger.apply_renewal("user-1", plan, "invoice_1", resolver)

        replay = await ledger.apply_renewal("user-1", plan, "invoice_1", resolver)

        assert replay.replayed is True
        assert replay.allocated == 200
        assert (await ledger.get_balance("user-1")).subscription_balance == 200

    async def test_never_mode_rollover_cap(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        plan = replace(resolver.resolve_by_key("hobby"), expiration_mode=ExpirationMode.NEVER)
        await ledger.credit("user-1", 1100, TransactionType.SUBSCRIPTION, reference_id="seed")

        outcome = await ledger.apply_renewal("user-1", plan, "invoice_1", resolver)

        assert outcome.balance.subscription_balance == 1200
        assert outcome.allocated == 100
        assert outcome.capped_amount == 100
        assert outcome.expired_amount == 0

    async def test_expire_subscription_credits(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        await grant_subscription(ledger, resolver, "user-1", "invoice_1")

        outcome = await ledger.expire_subscription_credits(
            "user-1", "subscription_canceled", "cancel_sub_1"
        )
        replay = await ledger.expire_subscription_credits(
            "user-1", "subscription_canceled", "cancel_sub_1"
        )

        assert outcome.expired_amount == 200
        assert outcome.balance.subscription_balance == 0
        assert outcome.balance.purchased_balance == 10
        assert replay.replayed is True
        assert replay.expired_amount == 200

    async def test_list_expiring_accounts(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        plan = resolver.resolve_by_key("hobby")
        soon = datetime(2026, 10, 22, tzinfo=UTC)
        await ledger.apply_renewal("soon", plan, "invoice_1", resolver, period_end=soon)
        await ledger.apply_renewal(
            "later", plan, "invoice_2", resolver, period_end=soon + timedelta(days=30)
        )

        accounts = await ledger.list_expiring_accounts(datetime(2026, 10, 26, tzinfo=UTC))

        assert [a.user_id for a in accounts] == ["soon"]


class TestSubscriptionState:
    """Tests for update_subscription and customer linking."""

    async def test_update_subscription(self, ledger: CreditLedger) -> None:
        account = await ledger.update_subscription(
            "user-1",
            event_id="evt_1",
            event_created=100,
            subscription_id="sub_1",
            status="active",
            plan_key="hobby",
            customer_id="cus_1",
        )

        assert account.subscription_id == "sub_1"
        assert account.plan_key == "hobby"
        assert await ledger.find_user_by_customer("cus_1") == "user-1"

    async def test_older_event_is_stale(self, ledger: CreditLedger) -> None:
        """Events created before the last applied one are rejected."""
        await ledger.update_subscription(
            "user-1", event_id="evt_2", event_created=200, status="canceled", clear_plan=True
        )

        with pytest.raises(StaleWebhookEventError):
            await ledger.update_subscription(
                "user-1", event_id="evt_1", event_created=100, status="active", plan_key="pro"
            )

        account = await ledger.get_account("user-1")
        assert account.subscription_status == "canceled"
        assert account.plan_key is None

    async def test_same_second_event_applies(self, ledger: CreditLedger) -> None:
        await ledger.update_subscription("user-1", event_id="evt_1", event_created=100, status="active")

        account = await ledger.update_subscription(
            "user-1", event_id="evt_2", event_created=100, status="past_due"
        )

        assert account.subscription_status == "past_due"

    async def test_link_customer(self, ledger: CreditLedger) -> None:
        await ledger.link_customer("user-1", "cus_9")

        assert await ledger.find_user_by_customer("cus_9") == "user-1"
        assert await ledger.find_user_by_customer("cus_unknown") is None


class TestHistoryAndReconciliation:
    """Tests for transaction history and drift detection."""

    async def test_history_is_newest_first_and_paginated(self, ledger: CreditLedger) -> None:
        await ledger.get_or_create_account("user-1")
        for i in range(3):
            await ledger.reserve_and_debit("user-1", 1, f"req-{i}")

        page = await ledger.get_transaction_history("user-1", limit=2, offset=0)

        assert page.total == 4
        assert page.has_more is True
        assert [t.reference_id for t in page.transactions] == ["req-2", "req-1"]

        last = await ledger.get_transaction_history("user-1", limit=2, offset=2)
        assert [t.reference_id for t in last.transactions] == ["req-0", "signup"]
        assert last.has_more is False

    async def test_history_limit_is_clamped(self, ledger: CreditLedger) -> None:
        page = await ledger.get_transaction_history("user-1", limit=1000)

        assert page.limit == 100

    async def test_reconcile_after_mixed_operations(
        self, ledger: CreditLedger, resolver: SubscriptionPolicyResolver
    ) -> None:
        """The transaction sum equals the live total after any sequence."""
        await ledger.credit("user-1", 200, TransactionType.PURCHASE, reference_id="pi_1")
        await grant_subscription(ledger, resolver, "user-1", "invoice_1")
        await ledger.reserve_and_debit("user-1", 250, "req-1")
        await ledger.refund("user-1", 20, "req-1")
        await ledger.clawback("user-1", 30, "refund_ch_1")
        await grant_subscription(ledger, resolver, "user-1", "invoice_2")
        await ledger.expire_subscription_credits("user-1", "subscription_canceled", "cancel_1")

        report = await ledger.reconcile("user-1")

        assert report.drift == 0
        assert report.live_total == report.ledger_total

    async def test_reconcile_missing_account(self, ledger: CreditLedger) -> None:
        with pytest.raises(AccountNotFoundError):
            await ledger.reconcile("ghost")
