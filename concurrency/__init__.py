"""
Wrangler Concurrency Module
===========================
Per-key exclusive locking for index and record writes.

Components:
  - lock_manager: KeyLockManager (FIFO waiters, sorted acquisition)
"""

from concurrency.lock_manager import (
    KeyLockManager, LockResult, index_resource, record_resource,
)

__all__ = ["KeyLockManager", "LockResult", "index_resource", "record_resource"]
