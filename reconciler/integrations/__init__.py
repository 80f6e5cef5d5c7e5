"""External integrations for the payment reconciler."""
from .gateway import GatewayHolder
from .mercadopago_client import CircuitBreaker, MercadoPagoGateway

__all__ = ["CircuitBreaker", "GatewayHolder", "MercadoPagoGateway"]
