"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- Temporary SQLite database (aiosqlite) with the full schema
- Ledger, resolver, calculator, rate limiter and quota tracker
- Fake provider adapters with scripted behavior
- Stripe webhook payload signing
- API test client wired to the test database
"""

import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set required environment variables BEFORE importing credit_engine modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("WEBHOOK_RETRY_INITIAL_DELAY", "0")
os.environ.setdefault("WEBHOOK_RETRY_MAX_DELAY", "0")

from credit_engine.db.session import build_engine, build_session_factory, create_schema
from credit_engine.exceptions import ProviderUnavailableError
from credit_engine.models.api import QualityTier
from credit_engine.models.domain import ProviderQuota, ProviderResult, ProviderUsage
from credit_engine.services.cost_calculator import CostCalculator
from credit_engine.services.ledger import CreditLedger
from credit_engine.services.provider_adapter import ProviderOptions
from credit_engine.services.quota import QuotaTracker
from credit_engine.services.rate_limiter import RateLimiter
from credit_engine.services.stripe_events import StripeEventVerifier
from credit_engine.services.subscription_policy import SubscriptionPolicyResolver
from credit_engine.services.webhook_processor import WebhookEventProcessor

WEBHOOK_SECRET = "whsec_test_fake_secret"

HOBBY_PRICE = "price_1SZmVyALMLhQocpf0H7n5ls8"
PRO_PRICE = "price_1SZmVzALMLhQocpfPyRX2W8D"
MEDIUM_PACK_PRICE = "price_1SbAASALMLhQocpf7nw3wRj7"


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with all tables created."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'credit_engine.db'}")
    await create_schema(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return build_session_factory(engine)


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def resolver() -> SubscriptionPolicyResolver:
    """Resolver over the default plan and pack catalog."""
    return SubscriptionPolicyResolver()


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> CreditLedger:
    """Ledger granting the default 10 free credits on signup."""
    return CreditLedger(session_factory, free_credits=10)


@pytest.fixture
def empty_ledger(session_factory: async_sessionmaker[AsyncSession]) -> CreditLedger:
    """Ledger whose new accounts start at zero."""
    return CreditLedger(session_factory, free_credits=0)


@pytest.fixture
def calculator() -> CostCalculator:
    """Calculator with default cost configuration."""
    return CostCalculator()


class FakeClock:
    """Manually advanced clock for time-window tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Fake epoch clock."""
    return FakeClock()


@pytest.fixture
def rate_limiter(resolver: SubscriptionPolicyResolver, clock: FakeClock) -> RateLimiter:
    """Rate limiter on the fake clock."""
    return RateLimiter(resolver, clock=clock)


@pytest.fixture
def quota_tracker(session_factory: async_sessionmaker[AsyncSession]) -> QuotaTracker:
    """Quota tracker pinned to a fixed day."""
    return QuotaTracker(session_factory, clock=lambda: datetime(2026, 10, 19, 12, 0, tzinfo=UTC))


# ============================================================================
# Provider Fixtures
# ============================================================================


class FakeAdapter:
    """
    Scripted provider adapter.

    Fails when `error` is set, reports `credits_used` when given, and records
    every call it receives.
    """

    def __init__(
        self,
        name: str,
        priority: int,
        *,
        enabled: bool = True,
        available: bool = True,
        error: Exception | None = None,
        credits_used: int | None = None,
        fallback_provider: str | None = None,
        quota: ProviderQuota | None = None,
        supported_tiers: set[QualityTier] | None = None,
    ) -> None:
        self.name = name
        self.priority = priority
        self.enabled = enabled
        self.available = available
        self.error = error
        self.credits_used = credits_used
        self.fallback_provider = fallback_provider
        self.quota = quota or ProviderQuota()
        self.supported_tiers = supported_tiers
        self.calls: list[ProviderOptions] = []

    def supports(self, tier: QualityTier) -> bool:
        return self.supported_tiers is None or tier in self.supported_tiers

    async def process_image(
        self, user_id: str, image_url: str, options: ProviderOptions
    ) -> ProviderResult:
        self.calls.append(options)
        if self.error is not None:
            raise self.error
        return ProviderResult(
            provider=self.name,
            output_url=f"https://cdn.example.com/{self.name}/{user_id}.png",
            credits_used=(
                self.credits_used if self.credits_used is not None else options.estimated_cost
            ),
        )

    async def is_available(self) -> bool:
        return self.enabled and self.available

    async def get_usage(self) -> ProviderUsage:
        return ProviderUsage(
            provider=self.name, today_requests=len(self.calls), month_requests=len(self.calls), month_credits=0
        )


@pytest.fixture
def failing_error() -> ProviderUnavailableError:
    """Typical provider failure."""
    return ProviderUnavailableError("test", "HTTP 503")


# ============================================================================
# Webhook Fixtures
# ============================================================================


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(
    event_type: str, obj: dict[str, Any], event_id: str = "evt_test_1", created: int = 1_760_000_000
) -> bytes:
    """Serialize a Stripe event envelope."""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "data": {"object": obj},
        }
    ).encode()


@pytest.fixture
def verifier() -> StripeEventVerifier:
    """Verifier using the test webhook secret."""
    return StripeEventVerifier(WEBHOOK_SECRET)


@pytest.fixture
def webhook_processor(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: CreditLedger,
    resolver: SubscriptionPolicyResolver,
    verifier: StripeEventVerifier,
) -> WebhookEventProcessor:
    """Processor with immediate retries."""
    return WebhookEventProcessor(
        session_factory,
        ledger,
        resolver,
        verifier,
        retry_attempts=3,
        retry_initial_delay=0,
        retry_max_delay=0,
    )


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def adapters() -> list[FakeAdapter]:
    """Default provider chain used by the API tests."""
    return [FakeAdapter("gemini", 1, fallback_provider="replicate"), FakeAdapter("replicate", 2)]


@pytest.fixture
def app(
    session_factory: async_sessionmaker[AsyncSession], adapters: list[FakeAdapter]
) -> FastAPI:
    """Application with services attached to the test database."""
    from credit_engine.main import app as main_app
    from credit_engine.main import attach_services

    attach_services(main_app, session_factory, lambda tracker: list(adapters))
    return main_app


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async test client for async tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
