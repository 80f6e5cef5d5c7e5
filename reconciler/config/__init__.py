"""Configuration package for the payment reconciler."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
