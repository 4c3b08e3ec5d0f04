from .models import Base, KeyValueEntry
from .store import (
    COMPLIANCE_KEY,
    CONVERSATION_HISTORY_KEY,
    MEDICATIONS_KEY,
    PENDING_CONFIRMATIONS_KEY,
    DocumentStore,
    InMemoryKeyValueStore,
    KeyedLocks,
    KeyValueStore,
    SqlKeyValueStore,
    StorageError,
    create_store_engine,
)

__all__ = [
    "Base",
    "COMPLIANCE_KEY",
    "CONVERSATION_HISTORY_KEY",
    "DocumentStore",
    "InMemoryKeyValueStore",
    "KeyValueEntry",
    "KeyValueStore",
    "KeyedLocks",
    "MEDICATIONS_KEY",
    "PENDING_CONFIRMATIONS_KEY",
    "SqlKeyValueStore",
    "StorageError",
    "create_store_engine",
]
