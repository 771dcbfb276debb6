"""
Database package for the order ledger.

Exports database initialization, models, and session management.
"""
from .init_db import initialize_database, create_engine_for, create_session_factory
from .models import (
    Base,
    OrderModel,
    OrderObservationModel,
)

__all__ = [
    "initialize_database",
    "create_engine_for",
    "create_session_factory",
    "Base",
    "OrderModel",
    "OrderObservationModel",
]
