"""Database package for the payment reconciler."""
from .connection import build_engine, close_db, create_session_factory, init_db, session_scope
from .models import (
    Base,
    OrderItemRecord,
    OrderRecord,
    ProductRecord,
    SubscriberRecord,
)
from .stores import SqlAlchemyCatalog, SqlAlchemyOrderStore, SqlAlchemySubscriberStore

__all__ = [
    "Base",
    "OrderItemRecord",
    "OrderRecord",
    "ProductRecord",
    "SubscriberRecord",
    "SqlAlchemyCatalog",
    "SqlAlchemyOrderStore",
    "SqlAlchemySubscriberStore",
    "close_db",
    "build_engine",
    "create_session_factory",
    "init_db",
    "session_scope",
]
