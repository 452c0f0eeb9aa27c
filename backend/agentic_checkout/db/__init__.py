"""
Database package for Agentic Checkout.

Exports engine creation, table initialization and ORM models.
"""
from .init_db import create_engine, create_session_factory, initialize_database
from .models import (
    Base,
    CheckoutSessionModel,
    OrderModel,
    DelegatedTokenModel,
    IdempotencyRecordModel,
)

__all__ = [
    "create_engine",
    "create_session_factory",
    "initialize_database",
    "Base",
    "CheckoutSessionModel",
    "OrderModel",
    "DelegatedTokenModel",
    "IdempotencyRecordModel",
]
