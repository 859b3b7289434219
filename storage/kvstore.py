"""
Wrangler Key-Value Store Contract
=================================
The ordered key-value interface the model engine is written against.

Contract:
  - Keys and values are bytes. Keys are ordered bytewise (memcmp order).
  - get() raises NotFoundError on a miss (never returns a sentinel).
  - batch() applies a list of BatchOp atomically: either every op is
    visible afterwards or none is.
  - scan() is a lazy, ordered iterator over [start, end). Closing the
    generator stops the scan; implementations must not materialize the
    whole range up front.

Adapters:
  - storage.memory.MemoryStore   (volatile, sorted in-memory)
  - storage.logstore.LogStore    (durable, append-only CRC32 log)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Tuple


# ─── Errors ─────────────────────────────────────────────────────────────────

class StoreError(Exception):
    """Base class for failures raised by a store adapter."""
    pass


class NotFoundError(StoreError, KeyError):
    """Lookup miss. Callers commonly treat this as control flow."""

    def __init__(self, key: bytes):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"Key not found: {self.key!r}"


class StoreIOError(StoreError, OSError):
    """The underlying medium failed (disk, corrupt log, closed store)."""
    pass


# ─── Batch operations ───────────────────────────────────────────────────────

class OpType(Enum):
    PUT = "put"
    DELETE = "del"


@dataclass(frozen=True)
class BatchOp:
    """One write inside an atomic batch."""
    type: OpType
    key: bytes
    value: Optional[bytes] = None


class WriteBatch:
    """
    Collects ops for a single atomic store.batch() call.

    Later ops on the same key win when the batch is applied, which lets
    index reconciliation queue a delete and a put for one key safely.
    """

    def __init__(self):
        self._ops: List[BatchOp] = []

    def put(self, key: bytes, value: bytes) -> "WriteBatch":
        self._ops.append(BatchOp(OpType.PUT, key, value))
        return self

    def delete(self, key: bytes) -> "WriteBatch":
        self._ops.append(BatchOp(OpType.DELETE, key))
        return self

    def extend(self, ops: Iterable[BatchOp]) -> "WriteBatch":
        self._ops.extend(ops)
        return self

    @property
    def ops(self) -> List[BatchOp]:
        return list(self._ops)

    def __len__(self) -> int:
        return len(self._ops)

    def __bool__(self) -> bool:
        return bool(self._ops)

    def __repr__(self) -> str:
        return f"WriteBatch(ops={len(self._ops)})"


# ─── Store contract ─────────────────────────────────────────────────────────

class KVStore(ABC):
    """Ordered key-value store consumed by the model engine."""

    @abstractmethod
    def get(self, key: bytes) -> bytes:
        """Return the value for key. Raises NotFoundError on a miss."""

    @abstractmethod
    def put(self, key: bytes, value: bytes) -> None:
        ...

    @abstractmethod
    def delete(self, key: bytes) -> None:
        """Delete key. Deleting a missing key is a no-op."""

    @abstractmethod
    def batch(self, ops: Iterable[BatchOp]) -> None:
        """Apply all ops atomically."""

    @abstractmethod
    def scan(self, start: Optional[bytes] = None,
             end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        """Yield (key, value) pairs with start <= key < end, in key order."""

    def close(self) -> None:
        pass

    def stats(self) -> dict:
        return {}

    def write(self, batch: WriteBatch) -> None:
        """Commit a WriteBatch. Empty batches are skipped."""
        if batch:
            self.batch(batch.ops)

    def __enter__(self) -> "KVStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
