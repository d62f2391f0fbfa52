"""Persistence layer."""

from .database import Base, Database, utc_now
from .transaction_store import TransactionStore
from .counterparts import CounterpartService, SqlCounterpartService

__all__ = [
    "Base",
    "Database",
    "utc_now",
    "TransactionStore",
    "CounterpartService",
    "SqlCounterpartService",
]
