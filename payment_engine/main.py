"""
Payment Engine - Order Payment Orchestration API.

Collects payment for orders across heterogeneous providers (cash, direct
card capture, embedded checkout, hosted redirect checkout), with
jurisdiction-based provider routing, at most one successful payment per
order, out-of-band confirmation polling and an immutable audit trail.

Start the server:
    uvicorn payment_engine.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_engine.api.health import router as health_router
from payment_engine.api.payments import router as payments_router
from payment_engine.api.webhooks import router as webhooks_router
from payment_engine.collaborators.notifications import LogNotifier, Notifier
from payment_engine.collaborators.orders import SqlOrderService
from payment_engine.config import settings
from payment_engine.database import async_session, engine, init_db
from payment_engine.engine.orchestrator import PaymentEngine
from payment_engine.models.enums import PaymentMethod
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

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger("payment_engine.main")


def build_router() -> ProviderRouter:
    """Register one adapter per payment method, backed by the simulated gateways."""
    router = ProviderRouter()
    router.register(PaymentMethod.CASH, CashAdapter())
    router.register(PaymentMethod.DIRECT_CARD, DirectCaptureAdapter(MockCardGateway()))
    router.register(PaymentMethod.EMBEDDED_FORM_PROVIDER, EmbeddedFormAdapter(MockEmbeddedGateway()))
    router.register(PaymentMethod.REDIRECT_PROVIDER, RedirectPollAdapter(MockRedirectGateway()))
    router.register(PaymentMethod.HOSTED_PAGE_PROVIDER, HostedPageAdapter(MockHostedPageGateway()))
    return router


def build_engine(
    session_factory: async_sessionmaker[AsyncSession],
    router: Optional[ProviderRouter] = None,
    notifier: Optional[Notifier] = None,
    **options,
) -> PaymentEngine:
    return PaymentEngine(
        session_factory,
        router or build_router(),
        SqlOrderService(session_factory),
        notifier=notifier or LogNotifier(),
        **options,
    )


def create_app(
    db_engine: AsyncEngine = engine,
    session_factory: async_sessionmaker[AsyncSession] = async_session,
    router: Optional[ProviderRouter] = None,
    notifier: Optional[Notifier] = None,
    **engine_options,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize the database and engine on startup; stop pollers on shutdown."""
        await init_db(db_engine)
        app.state.session_factory = session_factory
        app.state.engine = build_engine(session_factory, router, notifier, **engine_options)

        swept = await app.state.engine.reconcile_completed()
        if swept:
            logger.warning("Startup sweep marked %d orders paid", swept)
        yield
        await app.state.engine.shutdown()

    app = FastAPI(
        title="Payment Engine",
        description=(
            "Payment orchestration for orders: provider routing by method and jurisdiction, "
            "one successful payment per order, out-of-band confirmation polling, "
            "categorized provider failures and immutable audit trails."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health_router)
    app.include_router(payments_router, prefix="/api")
    app.include_router(webhooks_router, prefix="/api")
    return app


app = create_app()
