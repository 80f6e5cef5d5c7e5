"""Lazily constructed payment gateway client."""
from typing import Callable, Optional

import structlog

from reconciler.core.errors import GatewayNotConfigured
from reconciler.core.ports import PaymentGateway

logger = structlog.get_logger(__name__)


class GatewayHolder:
    """
    Holds the gateway client, built on first use.

    Missing credentials do not stop the process from starting; instead every
    entry point calls ``ensure_configured()`` and fails with
    GatewayNotConfigured until a client can be built.
    """

    def __init__(self, factory: Optional[Callable[[], PaymentGateway]] = None):
        self._factory = factory
        self._gateway: Optional[PaymentGateway] = None

    @classmethod
    def of(cls, gateway: PaymentGateway) -> "GatewayHolder":
        holder = cls()
        holder._gateway = gateway
        return holder

    @property
    def is_configured(self) -> bool:
        return self._gateway is not None or self._factory is not None

    @property
    def current(self) -> Optional[PaymentGateway]:
        """The client if it has been built, without building it."""
        return self._gateway

    def ensure_configured(self) -> PaymentGateway:
        if self._gateway is None:
            if self._factory is None:
                logger.warning("gateway_not_configured")
                raise GatewayNotConfigured()
            self._gateway = self._factory()
            logger.info("gateway_client_initialized")
        return self._gateway

    async def close(self) -> None:
        """Close the client if one was built and it holds connections."""
        close = getattr(self._gateway, "close", None)
        if close is not None:
            await close()
