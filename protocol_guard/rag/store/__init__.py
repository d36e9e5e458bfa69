"""Protocol store adapters sharing the ProtocolStore interface."""

from .base import ProtocolStore, SearchFilters, StoreHit, StoreStats
from .file_store import FileProtocolStore
from .memory_store import InMemoryProtocolStore
from .sql_store import SqlProtocolStore

__all__ = [
    "ProtocolStore",
    "SearchFilters",
    "StoreHit",
    "StoreStats",
    "FileProtocolStore",
    "InMemoryProtocolStore",
    "SqlProtocolStore",
]
