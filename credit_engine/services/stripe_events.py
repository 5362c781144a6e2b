"""
Stripe Events - Signature verification and typed parsing of billing webhooks.

NO DICTIONARIES - Raw event payloads are validated into tagged dataclasses
before any handler sees them.
"""

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import stripe

from credit_engine.exceptions import InvalidWebhookSignatureError, MalformedWebhookEventError
from credit_engine.observability import get_logger

logger = get_logger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


# ============================================================================
# Event variants
# ============================================================================


@dataclass(frozen=True)
class CheckoutCompleted:
    """checkout.session.completed"""

    event_id: str
    event_type: str
    created: int
    session_id: str
    mode: str
    user_id: str | None
    customer_id: str | None
    subscription_id: str | None
    invoice_id: str | None
    payment_intent_id: str | None
    price_id: str | None
    pack_key: str | None
    credits: int | None


@dataclass(frozen=True)
class SubscriptionChanged:
    """customer.subscription.created / customer.subscription.updated"""

    event_id: str
    event_type: str
    created: int
    subscription_id: str
    customer_id: str
    status: str
    price_id: str | None
    user_id: str | None
    period_start: datetime | None
    period_end: datetime | None


@dataclass(frozen=True)
class SubscriptionDeleted:
    """customer.subscription.deleted"""

    event_id: str
    event_type: str
    created: int
    subscription_id: str
    customer_id: str
    user_id: str | None


@dataclass(frozen=True)
class InvoicePaid:
    """invoice.paid / invoice.payment_succeeded"""

    event_id: str
    event_type: str
    created: int
    invoice_id: str
    customer_id: str
    subscription_id: str | None
    price_id: str | None
    period_start: datetime | None
    period_end: datetime | None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    """invoice.payment_failed"""

    event_id: str
    event_type: str
    created: int
    invoice_id: str
    customer_id: str
    subscription_id: str | None


@dataclass(frozen=True)
class ChargeRefunded:
    """charge.refunded"""

    event_id: str
    event_type: str
    created: int
    charge_id: str
    customer_id: str | None
    amount: int
    amount_refunded: int
    invoice_id: str | None
    payment_intent_id: str | None


@dataclass(frozen=True)
class UnhandledEvent:
    """Any event type the engine does not act on."""

    event_id: str
    event_type: str
    created: int


BillingEvent = (
    CheckoutCompleted
    | SubscriptionChanged
    | SubscriptionDeleted
    | InvoicePaid
    | InvoicePaymentFailed
    | ChargeRefunded
    | UnhandledEvent
)


# ============================================================================
# Verification
# ============================================================================


class StripeEventVerifier:
    """Verifies the Stripe-Signature header and parses the event body."""

    def __init__(
        self, webhook_secret: str, tolerance: int = DEFAULT_TOLERANCE_SECONDS
    ) -> None:
        """
        Initialize verifier.

        Args:
            webhook_secret: Stripe webhook signing secret (whsec_...)
            tolerance: Maximum age of a signature timestamp in seconds
        """
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def verify(self, payload: bytes, signature: str | None) -> BillingEvent:
        """
        Verify and parse a webhook delivery.

        Args:
            payload: Raw request body, exactly as received
            signature: Stripe-Signature header value

        Returns:
            Typed event variant

        Raises:
            InvalidWebhookSignatureError: If the signature is missing or invalid
            MalformedWebhookEventError: If a signed event lacks required data
        """
        if not signature:
            raise InvalidWebhookSignatureError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise InvalidWebhookSignatureError("Webhook secret is not configured")

        try:
            stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise InvalidWebhookSignatureError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise InvalidWebhookSignatureError(f"Failed to parse Stripe webhook: {exc}") from exc

        try:
            raw = json.loads(payload)
        except ValueError as exc:
            raise InvalidWebhookSignatureError(f"Failed to parse Stripe webhook: {exc}") from exc

        event = parse_event(raw)
        logger.info(
            "stripe_webhook_verified",
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return event


# ============================================================================
# Parsing
# ============================================================================


def parse_event(raw: Any) -> BillingEvent:
    """
    Validate a decoded Stripe event into its variant.

    Raises:
        MalformedWebhookEventError: If required fields are missing or mistyped
    """
    if not isinstance(raw, Mapping):
        raise MalformedWebhookEventError(None, "event body is not an object")

    event_id = raw.get("id")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedWebhookEventError(None, "event id is missing")

    event_type = _string(raw, "type", event_id)
    created = _integer(raw, "created", event_id)

    data = raw.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise MalformedWebhookEventError(event_id, "data.object is missing")

    parser = _PARSERS.get(event_type)
    if parser is None:
        return UnhandledEvent(event_id=event_id, event_type=event_type, created=created)
    return parser(obj, event_id, event_type, created)


def _parse_checkout(
    obj: Mapping[str, Any], event_id: str, event_type: str, created: int
) -> CheckoutCompleted:
    metadata = _metadata(obj)
    mode = _string(obj, "mode", event_id)
    if mode not in ("subscription", "payment"):
        raise MalformedWebhookEventError(event_id, f"unexpected checkout mode {mode!r}")

    credits_raw = metadata.get("credits")
    credits = None
    if credits_raw not in (None, ""):
        try:
            credits = int(credits_raw)
        except (TypeError, ValueError) as exc:
            raise MalformedWebhookEventError(
                event_id, f"metadata.credits is not an integer: {credits_raw!r}"
            ) from exc

    return CheckoutCompleted(
        event_id=event_id,
        event_type=event_type,
        created=created,
        session_id=_string(obj, "id", event_id),
        mode=mode,
        user_id=metadata.get("user_id") or _optional_id(obj.get("client_reference_id")),
        customer_id=_optional_id(obj.get("customer")),
        subscription_id=_optional_id(obj.get("subscription")),
        invoice_id=_optional_id(obj.get("invoice")),
        payment_intent_id=_optional_id(obj.get("payment_intent")),
        price_id=metadata.get("price_id"),
        pack_key=metadata.get("pack_key"),
        credits=credits,
    )


def _parse_subscription_changed(
    obj: Mapping[str, Any], event_id: str, event_type: str, created: int
) -> SubscriptionChanged:
    first_item = _first_item(obj)
    period_start = obj.get("current_period_start", first_item.get("current_period_start"))
    period_end = obj.get("current_period_end", first_item.get("current_period_end"))
    return SubscriptionChanged(
        event_id=event_id,
        event_type=event_type,
        created=created,
        subscription_id=_string(obj, "id", event_id),
        customer_id=_required_id(obj, "customer", event_id),
        status=_string(obj, "status", event_id),
        price_id=_price_of(first_item),
        user_id=_metadata(obj).get("user_id"),
        period_start=_timestamp(period_start),
        period_end=_timestamp(period_end),
    )


def _parse_subscription_deleted(
    obj: Mapping[str, Any], event_id: str, event_type: str, created: int
) -> SubscriptionDeleted:
    return SubscriptionDeleted(
        event_id=event_id,
        event_type=event_type,
        created=created,
        subscription_id=_string(obj, "id", event_id),
        customer_id=_required_id(obj, "customer", event_id),
        user_id=_metadata(obj).get("user_id"),
    )


def _parse_invoice_paid(
    obj: Mapping[str, Any], event_id: str, event_type: str, created: int
) -> InvoicePaid:
    line = _subscription_line(obj)
    period = line.get("period") if isinstance(line.get("period"), Mapping) else {}
    return InvoicePaid(
        event_id=event_id,
        event_type=event_type,
        created=created,
        invoice_id=_string(obj, "id", event_id),
        customer_id=_required_id(obj, "customer", event_id),
        subscription_id=_invoice_subscription(obj),
        price_id=_price_of(line),
        period_start=_timestamp(period.get("start")),
        period_end=_timestamp(period.get("end")),
    )


def _parse_invoice_failed(
    obj: Mapping[str, Any], event_id: str, event_type: str, created: int
) -> InvoicePaymentFailed:
    return InvoicePaymentFailed(
        event_id=event_id,
        event_type=event_type,
        created=created,
        invoice_id=_string(obj, "id", event_id),
        customer_id=_required_id(obj, "customer", event_id),
        subscription_id=_invoice_subscription(obj),
    )


def _parse_charge_refunded(
    obj: Mapping[str, Any], event_id: str, event_type: str, created: int
) -> ChargeRefunded:
    return ChargeRefunded(
        event_id=event_id,
        event_type=event_type,
        created=created,
        charge_id=_string(obj, "id", event_id),
        customer_id=_optional_id(obj.get("customer")),
        amount=_integer(obj, "amount", event_id),
        amount_refunded=_integer(obj, "amount_refunded", event_id),
        invoice_id=_optional_id(obj.get("invoice")),
        payment_intent_id=_optional_id(obj.get("payment_intent")),
    )


_PARSERS: dict[str, Callable[[Mapping[str, Any], str, str, int], BillingEvent]] = {
    "checkout.session.completed": _parse_checkout,
    "customer.subscription.created": _parse_subscription_changed,
    "customer.subscription.updated": _parse_subscription_changed,
    "customer.subscription.deleted": _parse_subscription_deleted,
    "invoice.paid": _parse_invoice_paid,
    "invoice.payment_succeeded": _parse_invoice_paid,
    "invoice.payment_failed": _parse_invoice_failed,
    "charge.refunded": _parse_charge_refunded,
}


# ============================================================================
# Field helpers
# ============================================================================


def _string(obj: Mapping[str, Any], key: str, event_id: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedWebhookEventError(event_id, f"{key} is missing")
    return value


def _integer(obj: Mapping[str, Any], key: str, event_id: str) -> int:
    value = obj.get(key)
    # bool is an int subclass
    if not isinstance(value, int) or isinstance(value, bool):
        raise MalformedWebhookEventError(event_id, f"{key} must be an integer")
    return value


def _optional_id(value: Any) -> str | None:
    """Stripe fields hold either an id string or an expanded object."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, Mapping) and isinstance(value.get("id"), str):
        return value["id"]
    return None


def _required_id(obj: Mapping[str, Any], key: str, event_id: str) -> str:
    value = _optional_id(obj.get(key))
    if value is None:
        raise MalformedWebhookEventError(event_id, f"{key} is missing")
    return value


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=UTC)
    return None


def _first_item(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    items = obj.get("items")
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def _price_of(line: Mapping[str, Any]) -> str | None:
    """Price id from a subscription item or invoice line, old or new API shape."""
    for key in ("price", "plan"):
        price = _optional_id(line.get(key))
        if price is not None:
            return price
    pricing = line.get("pricing")
    if isinstance(pricing, Mapping):
        details = pricing.get("price_details")
        if isinstance(details, Mapping):
            return _optional_id(details.get("price"))
    return None


def _subscription_line(invoice: Mapping[str, Any]) -> Mapping[str, Any]:
    """The line carrying the plan: a subscription line, else the first priced line."""
    lines = invoice.get("lines")
    data = lines.get("data") if isinstance(lines, Mapping) else None
    if not isinstance(data, list):
        return {}
    priced = [line for line in data if isinstance(line, Mapping) and _price_of(line)]
    for line in priced:
        if line.get("type") == "subscription":
            return line
    return priced[0] if priced else {}


def _invoice_subscription(invoice: Mapping[str, Any]) -> str | None:
    subscription = _optional_id(invoice.get("subscription"))
    if subscription is not None:
        return subscription
    parent = invoice.get("parent")
    if isinstance(parent, Mapping):
        details = parent.get("subscription_details")
        if isinstance(details, Mapping):
            return _optional_id(details.get("subscription"))
    return None
