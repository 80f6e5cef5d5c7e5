"""Payment event reconciliation: checkout, gateway webhooks and order/subscription ledgers."""

__version__ = "1.0.0"
