"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class BillingError(Exception):
    """Base exception for all credit engine errors."""

    pass


# ============================================================================
# Ledger
# ============================================================================


class InsufficientCreditsError(BillingError):
    """Raised when a reservation exceeds the available balance."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class AccountNotFoundError(BillingError):
    """Raised when account doesn't exist."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Account not found: {user_id}")


class IdempotencyConflictError(BillingError):
    """Raised when a reference id is reused with a different amount."""

    def __init__(self, reference_id: str, existing_amount: int, requested_amount: int) -> None:
        self.reference_id = reference_id
        self.existing_amount = existing_amount
        self.requested_amount = requested_amount
        super().__init__(
            f"Idempotency conflict for {reference_id}: "
            f"recorded {existing_amount}, requested {requested_amount}"
        )


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class ConcurrencyError(BillingError):
    """Raised when concurrent modification detected."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


# ============================================================================
# Catalog
# ============================================================================


class PlanNotFoundError(BillingError):
    """Raised when no plan matches a key or price id."""

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"Subscription plan not found: {identifier}")


class CreditPackNotFoundError(BillingError):
    """Raised when no credit pack matches a key or price id."""

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"Credit pack not found: {identifier}")


# ============================================================================
# Rate limiting
# ============================================================================


class BatchLimitExceededError(BillingError):
    """Raised when a batch is larger than the plan allows."""

    def __init__(self, batch_size: int, limit: int) -> None:
        self.batch_size = batch_size
        self.limit = limit
        super().__init__(f"Batch limit exceeded. Requested: {batch_size}, Limit: {limit}")


class RateLimitExceededError(BillingError):
    """Raised when the hourly request ceiling is reached."""

    def __init__(self, limit: int, retry_after_seconds: int) -> None:
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Rate limit exceeded. Limit: {limit}/hour, retry after {retry_after_seconds}s"
        )


# ============================================================================
# Providers
# ============================================================================


class DuplicateRequestError(BillingError):
    """Raised when a processing request id was already reserved."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Processing request already submitted: {request_id}")


class ProviderUnavailableError(BillingError):
    """Raised internally when a provider cannot serve a request."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"Provider {provider} unavailable: {reason}")


class AllProvidersExhaustedError(BillingError):
    """Raised when every provider in the chain was skipped or failed."""

    def __init__(self, attempted: list[str], refunded: int) -> None:
        self.attempted = attempted
        self.refunded = refunded
        tried = ", ".join(attempted) if attempted else "none"
        super().__init__(f"All providers exhausted (tried: {tried}). Refunded {refunded} credits")


# ============================================================================
# Webhooks
# ============================================================================


class InvalidWebhookSignatureError(BillingError):
    """Raised when webhook signature verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class DuplicateWebhookEventError(BillingError):
    """Raised when a webhook event id was already claimed."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Webhook event already processed: {event_id}")


class StaleWebhookEventError(BillingError):
    """Raised when an event is older than the last applied subscription state."""

    def __init__(self, event_id: str, subscription_id: str | None) -> None:
        self.event_id = event_id
        self.subscription_id = subscription_id
        super().__init__(f"Stale webhook event {event_id} for subscription {subscription_id}")


class MalformedWebhookEventError(BillingError):
    """Raised when a validly signed event is missing required data."""

    def __init__(self, event_id: str | None, message: str) -> None:
        self.event_id = event_id
        self.message = message
        super().__init__(f"Malformed webhook event {event_id}: {message}")
