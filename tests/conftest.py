"""Shared test fixtures."""

import pytest
import pytest_asyncio

from payment_engine.collaborators.orders import SqlOrderService
from payment_engine.database import create_session_factory, init_db
from payment_engine.engine.orchestrator import PaymentEngine
from payment_engine.engine.state_machine import PaymentStateMachine
from payment_engine.models.enums import NotificationKind, PaymentMethod
from payment_engine.models.payment import Order
from payment_engine.providers import (
    CashAdapter,
    DirectCaptureAdapter,
    EmbeddedFormAdapter,
    HostedPageAdapter,
    RedirectPollAdapter,
)
from payment_engine.providers.mock_gateways import (
    MockCardGateway,
    MockEmbeddedGateway,
    MockHostedPageGateway,
    MockRedirectGateway,
)
from payment_engine.routing.provider_router import ProviderRouter


class RecordingNotifier:
    """Notifier that keeps every message for assertions."""

    def __init__(self):
        self.messages: list[tuple[NotificationKind, str]] = []

    async def notify(self, kind: NotificationKind, message: str) -> None:
        self.messages.append((kind, message))

    def of(self, kind: NotificationKind) -> list[str]:
        return [message for k, message in self.messages if k is kind]


class RecordingLauncher:
    def __init__(self):
        self.urls: list[str] = []

    def __call__(self, url: str) -> None:
        self.urls.append(url)


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh file-backed SQLite database per test; yields the session factory."""
    engine, session_factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await init_db(engine)
    yield session_factory
    await engine.dispose()


@pytest_asyncio.fixture
async def orders(db):
    """Sample orders, mirroring the seed data."""
    async with db() as session:
        session.add_all([
            Order(id="ORD-1001", total_amount=100.50, currency="USD"),
            Order(id="ORD-1002", total_amount=42.00, currency="USD"),
            Order(id="ORD-2001", total_amount=1250.00, currency="TRY"),
            Order(id="ORD-9001", total_amount=0.0, currency="USD"),
        ])
        await session.commit()
    return SqlOrderService(db)


@pytest.fixture
def card_gateway():
    return MockCardGateway(failure_rate=0.0, latency_ms=0)


@pytest.fixture
def embedded_gateway():
    return MockEmbeddedGateway(failure_rate=0.0, latency_ms=0)


@pytest.fixture
def redirect_gateway():
    return MockRedirectGateway(failure_rate=0.0, latency_ms=0)


@pytest.fixture
def hosted_gateway():
    return MockHostedPageGateway(failure_rate=0.0, latency_ms=0)


@pytest.fixture
def launcher():
    return RecordingLauncher()


@pytest.fixture
def router(card_gateway, embedded_gateway, redirect_gateway, hosted_gateway, launcher):
    router = ProviderRouter()
    router.register(PaymentMethod.CASH, CashAdapter())
    router.register(PaymentMethod.DIRECT_CARD, DirectCaptureAdapter(card_gateway, timeout=1.0))
    router.register(PaymentMethod.EMBEDDED_FORM_PROVIDER, EmbeddedFormAdapter(embedded_gateway, timeout=1.0))
    router.register(
        PaymentMethod.REDIRECT_PROVIDER,
        RedirectPollAdapter(redirect_gateway, launcher=launcher, timeout=1.0),
    )
    router.register(PaymentMethod.HOSTED_PAGE_PROVIDER, HostedPageAdapter(hosted_gateway, timeout=1.0))
    return router


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def engine(db, orders, router, notifier):
    """Payment engine with fast polling and a three-attempt cap."""
    payment_engine = PaymentEngine(
        db,
        router,
        orders,
        notifier=notifier,
        state_machine=PaymentStateMachine(max_attempts=3),
        poll_interval=0.02,
        poll_timeout=1.0,
    )
    yield payment_engine
    await payment_engine.shutdown()
