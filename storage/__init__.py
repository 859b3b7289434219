"""
Wrangler Storage Layer
======================
Public API for the ordered key-value store the model engine runs on.

Usage:
    from storage import MemoryStore, LogStore, Keyspace, WriteBatch
    from storage import NotFoundError, StoreIOError
"""

from storage.kvstore import (
    KVStore, BatchOp, OpType, WriteBatch,
    StoreError, NotFoundError, StoreIOError,
)
from storage.memory import MemoryStore
from storage.logstore import LogStore, LOG_MAGIC, LOG_FORMAT_VERSION
from storage.namespace import Keyspace

__all__ = [
    "KVStore", "BatchOp", "OpType", "WriteBatch",
    "StoreError", "NotFoundError", "StoreIOError",
    "MemoryStore",
    "LogStore", "LOG_MAGIC", "LOG_FORMAT_VERSION",
    "Keyspace",
]
