"""
Webhook Event Processor - Applies billing provider events to the ledger.

Received -> SignatureValidated -> Deduplicated -> Applied -> Acknowledged.

Each event id is claimed once by inserting its webhook_events row. A
delivery may reclaim it when the earlier attempt failed, or when that
attempt has sat in processing past the claim lease (the worker died). Transient database
failures are retried with exponential backoff; once retries are exhausted
the event is marked failed and the error propagates so the provider
redelivers it.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from credit_engine.db.models import WebhookEventRecord
from credit_engine.exceptions import (
    AccountNotFoundError,
    ConcurrencyError,
    CreditPackNotFoundError,
    DuplicateWebhookEventError,
    MalformedWebhookEventError,
    PlanNotFoundError,
    StaleWebhookEventError,
)
from credit_engine.models.api import TransactionType, WebhookEventStatus, WebhookOutcomeStatus
from credit_engine.models.domain import SubscriptionPlan, WebhookOutcome
from credit_engine.observability import get_logger, log_context, metrics
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.stripe_events import (
    BillingEvent,
    ChargeRefunded,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    StripeEventVerifier,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnhandledEvent,
)
from credit_engine.services.subscription_policy import SubscriptionPolicyResolver

logger = get_logger(__name__)

CANCELED_STATUS = "canceled"
PAST_DUE_STATUS = "past_due"
CANCELLATION_REASON = "subscription_canceled"

# Errors no redelivery can fix
_UNRECOVERABLE_ERRORS = (
    AccountNotFoundError,
    PlanNotFoundError,
    CreditPackNotFoundError,
    MalformedWebhookEventError,
)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "webhook_apply_retrying",
        attempt=retry_state.attempt_number,
        error=str(exc),
        error_type=type(exc).__name__,
    )


class WebhookEventProcessor:
    """Verifies, deduplicates and applies billing webhook deliveries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
        resolver: SubscriptionPolicyResolver,
        verifier: StripeEventVerifier,
        retry_attempts: int = 3,
        retry_initial_delay: float = 0.2,
        retry_max_delay: float = 5.0,
        claim_lease_seconds: int = 300,
    ) -> None:
        self._session_factory = session_factory
        self.ledger = ledger
        self.resolver = resolver
        self.verifier = verifier
        self.retry_attempts = retry_attempts
        self.retry_initial_delay = retry_initial_delay
        self.retry_max_delay = retry_max_delay
        self.claim_lease_seconds = claim_lease_seconds

    async def process(self, payload: bytes, signature: str | None) -> WebhookOutcome:
        """
        Handle one webhook delivery.

        Returns:
            WebhookOutcome to acknowledge with HTTP 200

        Raises:
            InvalidWebhookSignatureError: Signature missing or invalid (nothing recorded)
            SQLAlchemyError / ConcurrencyError: Retries exhausted (event marked failed)
        """
        try:
            event = self.verifier.verify(payload, signature)
        except MalformedWebhookEventError as exc:
            logger.error("webhook_event_malformed", event_id=exc.event_id, error=exc.message)
            metrics.record_webhook("unknown", WebhookOutcomeStatus.MALFORMED.value)
            if exc.event_id is not None:
                await self._record_unrecoverable(exc.event_id, "unknown", exc.message)
            return WebhookOutcome(status=WebhookOutcomeStatus.MALFORMED, event_id=exc.event_id)

        with log_context(event_id=event.event_id, event_type=event.event_type):
            outcome = await self._process_event(event)

        metrics.record_webhook(event.event_type, outcome.status.value)
        return outcome

    async def _process_event(self, event: BillingEvent) -> WebhookOutcome:
        try:
            await self._claim(event)
        except DuplicateWebhookEventError:
            logger.info("webhook_event_duplicate")
            return self._outcome(event, WebhookOutcomeStatus.DUPLICATE)

        if isinstance(event, UnhandledEvent):
            logger.warning("webhook_event_unhandled")
            await self._mark(
                event.event_id,
                WebhookEventStatus.UNRECOVERABLE,
                f"Unhandled event type: {event.event_type}",
            )
            return self._outcome(event, WebhookOutcomeStatus.IGNORED)

        try:
            status = await self._apply_with_retry(event)
        except StaleWebhookEventError as exc:
            logger.info("webhook_event_stale", subscription_id=exc.subscription_id)
            await self._mark(event.event_id, WebhookEventStatus.COMPLETED, str(exc))
            return self._outcome(event, WebhookOutcomeStatus.STALE)
        except _UNRECOVERABLE_ERRORS as exc:
            logger.error("webhook_event_unrecoverable", error=str(exc), error_type=type(exc).__name__)
            await self._mark(event.event_id, WebhookEventStatus.UNRECOVERABLE, str(exc))
            if isinstance(exc, MalformedWebhookEventError):
                return self._outcome(event, WebhookOutcomeStatus.MALFORMED)
            return self._outcome(event, WebhookOutcomeStatus.IGNORED)
        except Exception as exc:
            logger.error("webhook_event_failed", error=str(exc), error_type=type(exc).__name__)
            metrics.record_webhook(event.event_type, "failed")
            await self._mark(event.event_id, WebhookEventStatus.FAILED, str(exc))
            raise

        await self._mark(event.event_id, WebhookEventStatus.COMPLETED)
        logger.info("webhook_event_processed", outcome=status.value)
        return self._outcome(event, status)

    async def _apply_with_retry(self, event: BillingEvent) -> WebhookOutcomeStatus:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((SQLAlchemyError, ConcurrencyError)),
            wait=wait_exponential(multiplier=self.retry_initial_delay, max=self.retry_max_delay),
            stop=stop_after_attempt(self.retry_attempts),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                status = await self._apply(event)
        return status

    async def _apply(self, event: BillingEvent) -> WebhookOutcomeStatus:
        if isinstance(event, CheckoutCompleted):
            return await self._handle_checkout(event)
        if isinstance(event, SubscriptionChanged):
            return await self._handle_subscription_changed(event)
        if isinstance(event, SubscriptionDeleted):
            return await self._handle_subscription_deleted(event)
        if isinstance(event, InvoicePaid):
            return await self._handle_invoice_paid(event)
        if isinstance(event, InvoicePaymentFailed):
            return await self._handle_invoice_failed(event)
        if isinstance(event, ChargeRefunded):
            return await self._handle_charge_refunded(event)
        return WebhookOutcomeStatus.IGNORED

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _handle_checkout(self, event: CheckoutCompleted) -> WebhookOutcomeStatus:
        user_id = await self._resolve_user(event.event_id, event.user_id, event.customer_id)

        if event.mode == "payment":
            return await self._handle_pack_purchase(event, user_id)

        plan = self.resolver.resolve_by_price_id(event.price_id) if event.price_id else None
        try:
            await self.ledger.update_subscription(
                user_id,
                event_id=event.event_id,
                event_created=event.created,
                subscription_id=event.subscription_id,
                status="active",
                plan_key=plan.key if plan else None,
                customer_id=event.customer_id,
            )
        except StaleWebhookEventError:
            # A later lifecycle event already set the state; the allocation still applies
            logger.info("checkout_subscription_state_already_newer", user_id=user_id)

        if plan is None:
            # Allocation arrives with invoice.paid under the same invoice reference
            logger.info("checkout_without_price", user_id=user_id, session_id=event.session_id)
            return WebhookOutcomeStatus.APPLIED

        # Shared with the matching invoice.paid so the cycle is allocated once
        reference_id = event.invoice_id or event.session_id
        await self.ledger.apply_renewal(user_id, plan, reference_id, self.resolver)
        return WebhookOutcomeStatus.APPLIED

    async def _handle_pack_purchase(
        self, event: CheckoutCompleted, user_id: str
    ) -> WebhookOutcomeStatus:
        credits = event.credits
        pack_key = event.pack_key
        if credits is None:
            if pack_key:
                pack = self.resolver.resolve_pack_by_key(pack_key)
            elif event.price_id:
                pack = self.resolver.resolve_pack_by_price_id(event.price_id)
            else:
                raise MalformedWebhookEventError(
                    event.event_id, "payment checkout carries no credits, pack_key or price_id"
                )
            credits = pack.credits
            pack_key = pack.key
        if credits <= 0:
            raise MalformedWebhookEventError(event.event_id, f"invalid credits: {credits}")

        if event.customer_id:
            await self.ledger.link_customer(user_id, event.customer_id)

        reference_id = event.payment_intent_id or event.session_id
        await self.ledger.credit(
            user_id,
            credits,
            TransactionType.PURCHASE,
            reference_id=reference_id,
            description=f"Credit pack purchase - {pack_key or 'unknown'} - {credits} credits",
        )
        return WebhookOutcomeStatus.APPLIED

    async def _handle_subscription_changed(
        self, event: SubscriptionChanged
    ) -> WebhookOutcomeStatus:
        user_id = await self._resolve_user(event.event_id, event.user_id, event.customer_id)
        plan = self.resolver.resolve_by_price_id(event.price_id) if event.price_id else None

        await self.ledger.update_subscription(
            user_id,
            event_id=event.event_id,
            event_created=event.created,
            subscription_id=event.subscription_id,
            status=event.status,
            plan_key=plan.key if plan else None,
            customer_id=event.customer_id,
            period_start=event.period_start,
            period_end=event.period_end,
        )
        return WebhookOutcomeStatus.APPLIED

    async def _handle_subscription_deleted(
        self, event: SubscriptionDeleted
    ) -> WebhookOutcomeStatus:
        user_id = await self._resolve_user(event.event_id, event.user_id, event.customer_id)

        await self.ledger.update_subscription(
            user_id,
            event_id=event.event_id,
            event_created=event.created,
            subscription_id=event.subscription_id,
            status=CANCELED_STATUS,
            clear_plan=True,
        )
        await self.ledger.expire_subscription_credits(
            user_id, CANCELLATION_REASON, f"cancel_{event.subscription_id}"
        )
        return WebhookOutcomeStatus.APPLIED

    async def _handle_invoice_paid(self, event: InvoicePaid) -> WebhookOutcomeStatus:
        if event.subscription_id is None:
            logger.info("invoice_not_for_subscription", invoice_id=event.invoice_id)
            return WebhookOutcomeStatus.IGNORED

        user_id = await self._resolve_user(event.event_id, None, event.customer_id)
        account = await self.ledger.get_account(user_id)
        if (
            account.subscription_status == CANCELED_STATUS
            and account.subscription_id == event.subscription_id
        ):
            raise StaleWebhookEventError(event.event_id, event.subscription_id)

        plan = self._plan_for_invoice(event, account.plan_key)
        await self.ledger.apply_renewal(
            user_id,
            plan,
            event.invoice_id,
            self.resolver,
            period_start=event.period_start,
            period_end=event.period_end,
        )
        return WebhookOutcomeStatus.APPLIED

    async def _handle_invoice_failed(self, event: InvoicePaymentFailed) -> WebhookOutcomeStatus:
        user_id = await self._resolve_user(event.event_id, None, event.customer_id)
        await self.ledger.update_subscription(
            user_id,
            event_id=event.event_id,
            event_created=event.created,
            subscription_id=event.subscription_id,
            status=PAST_DUE_STATUS,
        )
        return WebhookOutcomeStatus.APPLIED

    async def _handle_charge_refunded(self, event: ChargeRefunded) -> WebhookOutcomeStatus:
        if event.amount_refunded <= 0:
            logger.info("charge_without_refund_amount", charge_id=event.charge_id)
            return WebhookOutcomeStatus.IGNORED

        user_id = await self._resolve_user(event.event_id, None, event.customer_id)
        original_reference = event.invoice_id or event.payment_intent_id
        if original_reference is None:
            logger.warning("charge_refund_without_reference", charge_id=event.charge_id)
            return WebhookOutcomeStatus.IGNORED

        granted = await self.ledger.credited_amount(user_id, original_reference)
        if granted == 0:
            logger.warning(
                "charge_refund_without_credits",
                charge_id=event.charge_id,
                reference_id=original_reference,
            )
            return WebhookOutcomeStatus.IGNORED

        # amount_refunded is cumulative; claw back a proportional share of it,
        # rounded down, less what earlier refunds of this charge already removed
        if event.amount > 0:
            target = granted * min(event.amount_refunded, event.amount) // event.amount
        else:
            target = granted
        prefix = f"refund_{event.charge_id}:"
        already = await self.ledger.clawed_back_amount(user_id, prefix)
        to_remove = target - already
        if to_remove <= 0:
            logger.info(
                "charge_refund_already_clawed_back",
                charge_id=event.charge_id,
                target=target,
                already=already,
            )
            return WebhookOutcomeStatus.IGNORED

        # One reference per cumulative refund total of the charge
        await self.ledger.clawback(user_id, to_remove, f"{prefix}{event.amount_refunded}")
        return WebhookOutcomeStatus.APPLIED

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _resolve_user(
        self, event_id: str, user_id: str | None, customer_id: str | None
    ) -> str:
        """Metadata user id first, then the account linked to the billing customer."""
        if user_id:
            return user_id
        if customer_id:
            linked = await self.ledger.find_user_by_customer(customer_id)
            if linked is not None:
                return linked
            raise AccountNotFoundError(f"customer:{customer_id}")
        raise MalformedWebhookEventError(event_id, "event identifies neither user nor customer")

    def _plan_for_invoice(self, event: InvoicePaid, current_plan: str | None) -> SubscriptionPlan:
        if event.price_id:
            return self.resolver.resolve_by_price_id(event.price_id)
        if current_plan:
            return self.resolver.resolve_by_key(current_plan)
        raise MalformedWebhookEventError(event.event_id, "invoice carries no plan price")

    async def _claim(self, event: BillingEvent) -> None:
        """
        Insert the event row, or take over a failed or abandoned earlier claim.

        Raises:
            DuplicateWebhookEventError: Event already claimed, completed or unrecoverable
        """
        now = _utc_now()
        lease_expired = now - timedelta(seconds=self.claim_lease_seconds)
        async with self._session_factory() as session:
            try:
                session.add(
                    WebhookEventRecord(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        status=WebhookEventStatus.PROCESSING,
                        attempts=1,
                        claimed_at=now,
                    )
                )
                await session.commit()
                return
            except IntegrityError:
                await session.rollback()

            result = await session.execute(
                update(WebhookEventRecord)
                .where(
                    WebhookEventRecord.event_id == event.event_id,
                    or_(
                        WebhookEventRecord.status == WebhookEventStatus.FAILED,
                        and_(
                            WebhookEventRecord.status == WebhookEventStatus.PROCESSING,
                            WebhookEventRecord.claimed_at < lease_expired,
                        ),
                    ),
                )
                .values(
                    status=WebhookEventStatus.PROCESSING,
                    attempts=WebhookEventRecord.attempts + 1,
                    claimed_at=now,
                    error_message=None,
                    completed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            raise DuplicateWebhookEventError(event.event_id)
        logger.info("webhook_event_reclaimed")

    async def _mark(
        self, event_id: str, status: WebhookEventStatus, error_message: str | None = None
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookEventRecord)
                .where(WebhookEventRecord.event_id == event_id)
                .values(status=status, error_message=error_message, completed_at=_utc_now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def _record_unrecoverable(self, event_id: str, event_type: str, message: str) -> None:
        async with self._session_factory() as session:
            try:
                session.add(
                    WebhookEventRecord(
                        event_id=event_id,
                        event_type=event_type,
                        status=WebhookEventStatus.UNRECOVERABLE,
                        attempts=1,
                        error_message=message,
                        completed_at=_utc_now(),
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("webhook_event_already_recorded", event_id=event_id)

    def _outcome(self, event: BillingEvent, status: WebhookOutcomeStatus) -> WebhookOutcome:
        return WebhookOutcome(status=status, event_id=event.event_id, event_type=event.event_type)
