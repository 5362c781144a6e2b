"""
Tests for Stripe webhook verification and event parsing.
"""

import json
import time
from datetime import UTC, datetime

import pytest

from credit_engine.exceptions import InvalidWebhookSignatureError, MalformedWebhookEventError
from credit_engine.services.stripe_events import (
    ChargeRefunded,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    StripeEventVerifier,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnhandledEvent,
    parse_event,
)
from tests.conftest import HOBBY_PRICE, PRO_PRICE, sign_payload, stripe_event


def envelope(event_type: str, obj: dict, **overrides) -> dict:
    raw = {
        "id": "evt_1",
        "object": "event",
        "type": event_type,
        "created": 1_760_000_000,
        "data": {"object": obj},
    }
    raw.update(overrides)
    return raw


class TestSignatureVerification:
    """Tests for StripeEventVerifier."""

    def test_valid_signature(self, verifier: StripeEventVerifier) -> None:
        payload = stripe_event("customer.created", {"id": "cus_1"})

        event = verifier.verify(payload, sign_payload(payload))

        assert isinstance(event, UnhandledEvent)
        assert event.event_id == "evt_test_1"

    def test_missing_signature(self, verifier: StripeEventVerifier) -> None:
        payload = stripe_event("customer.created", {"id": "cus_1"})

        with pytest.raises(InvalidWebhookSignatureError, match="Missing"):
            verifier.verify(payload, None)

    def test_wrong_secret(self, verifier: StripeEventVerifier) -> None:
        payload = stripe_event("customer.created", {"id": "cus_1"})

        with pytest.raises(InvalidWebhookSignatureError):
            verifier.verify(payload, sign_payload(payload, secret="whsec_other"))

    def test_tampered_payload(self, verifier: StripeEventVerifier) -> None:
        payload = stripe_event("customer.created", {"id": "cus_1"})
        signature = sign_payload(payload)

        with pytest.raises(InvalidWebhookSignatureError):
            verifier.verify(payload.replace(b"cus_1", b"cus_2"), signature)

    def test_expired_timestamp(self, verifier: StripeEventVerifier) -> None:
        payload = stripe_event("customer.created", {"id": "cus_1"})
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidWebhookSignatureError):
            verifier.verify(payload, signature)

    def test_garbage_header(self, verifier: StripeEventVerifier) -> None:
        payload = stripe_event("customer.created", {"id": "cus_1"})

        with pytest.raises(InvalidWebhookSignatureError):
            verifier.verify(payload, "not-a-signature")

    def test_unconfigured_secret(self) -> None:
        payload = stripe_event("customer.created", {"id": "cus_1"})

        with pytest.raises(InvalidWebhookSignatureError, match="not configured"):
            StripeEventVerifier("").verify(payload, sign_payload(payload))

    def test_signed_but_malformed(self, verifier: StripeEventVerifier) -> None:
        """A valid signature over an unusable event is malformed, not forged."""
        payload = json.dumps({"id": "evt_1", "object": "event", "type": "invoice.paid"}).encode()

        with pytest.raises(MalformedWebhookEventError) as exc_info:
            verifier.verify(payload, sign_payload(payload))

        assert exc_info.value.event_id == "evt_1"


class TestEnvelope:
    """Tests for the event envelope."""

    def test_not_an_object(self) -> None:
        with pytest.raises(MalformedWebhookEventError):
            parse_event([1, 2, 3])

    def test_missing_id(self) -> None:
        raw = envelope("invoice.paid", {"id": "in_1"})
        del raw["id"]

        with pytest.raises(MalformedWebhookEventError) as exc_info:
            parse_event(raw)

        assert exc_info.value.event_id is None

    def test_missing_created(self) -> None:
        with pytest.raises(MalformedWebhookEventError, match="created"):
            parse_event(envelope("invoice.paid", {"id": "in_1"}, created="yesterday"))

    def test_unhandled_type(self) -> None:
        event = parse_event(envelope("payment_method.attached", {"id": "pm_1"}))

        assert isinstance(event, UnhandledEvent)
        assert event.event_type == "payment_method.attached"


class TestCheckoutParsing:
    """Tests for checkout.session.completed."""

    def test_pack_purchase(self) -> None:
        event = parse_event(
            envelope(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "mode": "payment",
                    "customer": "cus_1",
                    "payment_intent": "pi_1",
                    "metadata": {"user_id": "user-1", "pack_key": "medium", "credits": "200"},
                },
            )
        )

        assert isinstance(event, CheckoutCompleted)
        assert event.mode == "payment"
        assert event.user_id == "user-1"
        assert event.credits == 200
        assert event.pack_key == "medium"
        assert event.payment_intent_id == "pi_1"

    def test_client_reference_id_fallback(self) -> None:
        event = parse_event(
            envelope(
                "checkout.session.completed",
                {"id": "cs_1", "mode": "subscription", "client_reference_id": "user-9"},
            )
        )

        assert event.user_id == "user-9"
        assert event.credits is None

    def test_expanded_objects(self) -> None:
        event = parse_event(
            envelope(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "mode": "subscription",
                    "customer": {"id": "cus_1", "object": "customer"},
                    "subscription": {"id": "sub_1", "object": "subscription"},
                    "invoice": "in_1",
                    "metadata": {"user_id": "user-1", "price_id": HOBBY_PRICE},
                },
            )
        )

        assert event.customer_id == "cus_1"
        assert event.subscription_id == "sub_1"
        assert event.invoice_id == "in_1"
        assert event.price_id == HOBBY_PRICE

    def test_unknown_mode(self) -> None:
        with pytest.raises(MalformedWebhookEventError, match="mode"):
            parse_event(envelope("checkout.session.completed", {"id": "cs_1", "mode": "setup"}))

    def test_non_integer_credits(self) -> None:
        with pytest.raises(MalformedWebhookEventError, match="credits"):
            parse_event(
                envelope(
                    "checkout.session.completed",
                    {"id": "cs_1", "mode": "payment", "metadata": {"credits": "lots"}},
                )
            )


class TestSubscriptionParsing:
    """Tests for customer.subscription.* events."""

    def test_subscription_updated(self) -> None:
        event = parse_event(
            envelope(
                "customer.subscription.updated",
                {
                    "id": "sub_1",
                    "customer": "cus_1",
                    "status": "active",
                    "metadata": {"user_id": "user-1"},
                    "items": {
                        "data": [
                            {
                                "price": {"id": PRO_PRICE},
                                "current_period_start": 1_760_000_000,
                                "current_period_end": 1_762_592_000,
                            }
                        ]
                    },
                },
            )
        )

        assert isinstance(event, SubscriptionChanged)
        assert event.price_id == PRO_PRICE
        assert event.status == "active"
        assert event.period_end == datetime.fromtimestamp(1_762_592_000, tz=UTC)

    def test_subscription_period_on_root(self) -> None:
        event = parse_event(
            envelope(
                "customer.subscription.created",
                {
                    "id": "sub_1",
                    "customer": "cus_1",
                    "status": "incomplete",
                    "current_period_start": 1_760_000_000,
                    "items": {"data": [{"plan": {"id": HOBBY_PRICE}}]},
                },
            )
        )

        assert event.price_id == HOBBY_PRICE
        assert event.period_start == datetime.fromtimestamp(1_760_000_000, tz=UTC)
        assert event.period_end is None

    def test_subscription_without_customer(self) -> None:
        with pytest.raises(MalformedWebhookEventError, match="customer"):
            parse_event(
                envelope("customer.subscription.updated", {"id": "sub_1", "status": "active"})
            )

    def test_subscription_deleted(self) -> None:
        event = parse_event(
            envelope("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})
        )

        assert isinstance(event, SubscriptionDeleted)
        assert event.subscription_id == "sub_1"


class TestInvoiceParsing:
    """Tests for invoice events."""

    def test_invoice_paid(self) -> None:
        event = parse_event(
            envelope(
                "invoice.paid",
                {
                    "id": "in_1",
                    "customer": "cus_1",
                    "subscription": "sub_1",
                    "lines": {
                        "data": [
                            {"type": "invoiceitem", "price": {"id": "price_addon"}},
                            {
                                "type": "subscription",
                                "price": {"id": HOBBY_PRICE},
                                "period": {"start": 1_760_000_000, "end": 1_762_592_000},
                            },
                        ]
                    },
                },
            )
        )

        assert isinstance(event, InvoicePaid)
        assert event.price_id == HOBBY_PRICE
        assert event.subscription_id == "sub_1"
        assert event.period_start == datetime.fromtimestamp(1_760_000_000, tz=UTC)

    def test_invoice_paid_new_api_shape(self) -> None:
        """Newer API versions nest the subscription and price."""
        event = parse_event(
            envelope(
                "invoice.payment_succeeded",
                {
                    "id": "in_1",
                    "customer": "cus_1",
                    "parent": {"subscription_details": {"subscription": "sub_1"}},
                    "lines": {
                        "data": [{"pricing": {"price_details": {"price": PRO_PRICE}}}]
                    },
                },
            )
        )

        assert event.subscription_id == "sub_1"
        assert event.price_id == PRO_PRICE
        assert event.period_end is None

    def test_one_off_invoice(self) -> None:
        event = parse_event(envelope("invoice.paid", {"id": "in_1", "customer": "cus_1"}))

        assert event.subscription_id is None
        assert event.price_id is None

    def test_invoice_payment_failed(self) -> None:
        event = parse_event(
            envelope(
                "invoice.payment_failed",
                {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"},
            )
        )

        assert isinstance(event, InvoicePaymentFailed)
        assert event.subscription_id == "sub_1"


class TestChargeParsing:
    """Tests for charge.refunded."""

    def test_charge_refunded(self) -> None:
        event = parse_event(
            envelope(
                "charge.refunded",
                {
                    "id": "ch_1",
                    "customer": "cus_1",
                    "amount": 1499,
                    "amount_refunded": 1499,
                    "payment_intent": "pi_1",
                },
            )
        )

        assert isinstance(event, ChargeRefunded)
        assert event.amount_refunded == 1499
        assert event.invoice_id is None
        assert event.payment_intent_id == "pi_1"

    def test_amount_must_be_integer(self) -> None:
        with pytest.raises(MalformedWebhookEventError, match="amount"):
            parse_event(
                envelope(
                    "charge.refunded",
                    {"id": "ch_1", "amount": "14.99", "amount_refunded": 1499},
                )
            )
