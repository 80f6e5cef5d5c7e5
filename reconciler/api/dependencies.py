"""
Composition root.

Components are plain objects wired once per app; FastAPI's ``Depends`` is only
used to hand the container to the routes (and to swap it in tests).
"""
from typing import Optional

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from reconciler.config import Settings, get_settings
from reconciler.core import (
    CheckoutOrchestrator,
    OrderLedger,
    SignatureVerifier,
    SubscriptionLedger,
    WebhookDispatcher,
)
from reconciler.database.connection import build_engine, close_db, create_session_factory
from reconciler.database.stores import (
    SqlAlchemyCatalog,
    SqlAlchemyOrderStore,
    SqlAlchemySubscriberStore,
)
from reconciler.integrations import GatewayHolder, MercadoPagoGateway
from reconciler.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


class Container:
    """All service components, wired explicitly."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayHolder,
        engine: Optional[AsyncEngine] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.engine = engine
        self.session_factory = session_factory
        self.catalog = SqlAlchemyCatalog(session_factory)
        self.order_store = SqlAlchemyOrderStore(session_factory)
        self.subscriber_store = SqlAlchemySubscriberStore(session_factory)

        self.order_ledger = OrderLedger(self.order_store, self.catalog)
        self.subscription_ledger = SubscriptionLedger(self.subscriber_store)
        self.checkout = CheckoutOrchestrator(
            catalog=self.catalog,
            order_ledger=self.order_ledger,
            subscription_ledger=self.subscription_ledger,
            gateway=gateway,
        )
        self.webhooks = WebhookDispatcher(
            verifier=SignatureVerifier(),
            order_ledger=self.order_ledger,
            subscription_ledger=self.subscription_ledger,
            gateway=gateway,
            webhook_secret=settings.webhook_secret,
            enforce_signatures=settings.is_production,
        )
        self.health = HealthCheck(gateway, session_factory)

    async def close(self) -> None:
        """Close the gateway client, then the engine if this container built it."""
        try:
            await self.gateway.close()
        finally:
            if self.engine is not None:
                await close_db(self.engine)


def build_container(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[GatewayHolder] = None,
) -> Container:
    """
    Wire the service from one ``Settings`` instance.

    Without a session factory the container builds, and later disposes of,
    its own engine for ``settings.database_url``. The gateway client is built
    lazily on first use.
    """
    settings = settings or get_settings()
    if gateway is None:
        if settings.gateway_configured:
            gateway = GatewayHolder(lambda: MercadoPagoGateway.from_settings(settings))
        else:
            logger.warning("gateway_access_token_missing", app_env=settings.app_env)
            gateway = GatewayHolder()

    engine = None
    if session_factory is None:
        engine = build_engine(settings)
        session_factory = create_session_factory(engine)
    return Container(settings, session_factory, gateway, engine=engine)


def get_container(request: Request) -> Container:
    """Dependency returning the container the app was created with."""
    return request.app.state.container
