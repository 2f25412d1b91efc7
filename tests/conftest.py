# ==== SHARED TEST FIXTURES AND CONFIGURATION ==== #

"""
Shared test fixtures and configuration.

Provides the in-memory repository and data factory, a zero-delay retry
policy, fake payment adapters and notification transports, and the
FastAPI application wired to the in-memory repository.
"""

import os
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport


# ==== FORCE ENVIRONMENT SETUP BEFORE ANY IMPORTS ==== #

# Set environment variables BEFORE importing any discount_engine modules
os.environ.update({
    "APP_ENV": "test",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "LOG_LEVEL": "WARNING",
    "SIDE_EFFECT_RETRY_MAX_ATTEMPTS": "2",
    "SIDE_EFFECT_RETRY_BASE_DELAY": "0",
    "SIDE_EFFECT_RETRY_MAX_DELAY": "0",
    "SIDE_EFFECT_TIMEOUT_SECONDS": "1",
})

from discount_engine.business.models import NotificationChannel, ProviderType
from discount_engine.resilience.retry_policies import ExponentialBackoffPolicy, RetryConfig
from discount_engine.services.coordinator import DiscountApplicationCoordinator
from discount_engine.services.notifications import NotificationDispatcher, NotificationTransport
from discount_engine.services.payment_providers import PaymentProviderAdapter

from factories.data_factories import DiscountDataFactory, InMemoryDiscountRepository


OWNER_ID = "owner-1"


# ==== FAKE COLLABORATORS ==== #


class FakeProviderAdapter(PaymentProviderAdapter):
    """Records sync requests; optionally fails with a configured error."""

    provider_type = ProviderType.STRIPE

    def __init__(self, error: Exception = None):
        super().__init__("http://provider.test")
        self.error = error
        self.requests = []

    async def reflect_discount(self, request) -> None:
        self.requests.append(request)
        if self.error is not None:
            raise self.error


class FakeTransport(NotificationTransport):
    """Notification transport backed by an AsyncMock."""

    def __init__(self, channel: NotificationChannel, error: Exception = None):
        super().__init__("http://notify.test", "key")
        self.channel = channel
        self.send_mock = AsyncMock(side_effect=error)

    async def send(self, address, client_name, subject, message) -> None:
        await self.send_mock(address, client_name, subject, message)


# ==== CORE FIXTURES ==== #


@pytest.fixture
def owner_id():
    return OWNER_ID


@pytest.fixture
def repository():
    """Fresh in-memory repository per test."""
    return InMemoryDiscountRepository()


@pytest.fixture
def factory(repository):
    return DiscountDataFactory(repository=repository, owner_id=OWNER_ID)


@pytest.fixture
def fast_retry_policy():
    """Three attempts, no backoff delay, one second per-call timeout."""
    return ExponentialBackoffPolicy(
        RetryConfig(max_attempts=3, base_delay=0, max_delay=0, timeout=1.0),
        service_name="test"
    )


@pytest.fixture
def provider_adapter():
    return FakeProviderAdapter()


@pytest.fixture
def email_transport():
    return FakeTransport(NotificationChannel.EMAIL)


@pytest.fixture
def whatsapp_transport():
    return FakeTransport(NotificationChannel.WHATSAPP)


@pytest.fixture
def dispatcher(email_transport, whatsapp_transport, fast_retry_policy):
    return NotificationDispatcher(
        {
            NotificationChannel.EMAIL: email_transport,
            NotificationChannel.WHATSAPP: whatsapp_transport,
        },
        fast_retry_policy
    )


@pytest.fixture
def coordinator(repository, dispatcher, provider_adapter, fast_retry_policy):
    """Coordinator whose provider resolver returns the fake adapter when configured."""
    return DiscountApplicationCoordinator(
        repository=repository,
        dispatcher=dispatcher,
        provider_resolver=lambda settings_row: provider_adapter if settings_row else None,
        retry_policy=fast_retry_policy,
        max_reevaluations=3
    )


# ==== APPLICATION FIXTURES ==== #


@pytest.fixture
def app(repository, coordinator):
    """FastAPI app wired to the in-memory repository (lifespan not run)."""
    from discount_engine.main import create_app

    application = create_app()
    application.state.repository = repository
    application.state.coordinator = coordinator
    return application


@pytest_asyncio.fixture
async def client(app):
    """HTTP client sending the owner header by default."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Owner-Id": OWNER_ID}
    ) as ac:
        yield ac
