"""
Record, tenant configuration and notification stores.
"""
from .base import LogNotifier, Notifier, RecordStore, TenantConfigStore
from .memory import InMemoryStore
from .postgres import PostgresStore

__all__ = [
    "InMemoryStore",
    "LogNotifier",
    "Notifier",
    "PostgresStore",
    "RecordStore",
    "TenantConfigStore",
]
