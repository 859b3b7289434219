"""
Wrangler Memory Store
=====================
Volatile ordered key-value store: a sorted key list plus a dict.

Safety guarantees:
  - All state guarded by one RLock; batch() applies every op while
    holding it, so readers never observe half a batch.
  - scan() is a cursor: each step re-seeks past the last yielded key
    with bisect, so the range is never copied and concurrent writes
    are tolerated (a key inserted behind the cursor is simply skipped).

Also the in-memory half of LogStore, which logs first and then applies
through the same _apply_* helpers.
"""

import bisect
import logging
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from storage.kvstore import (
    BatchOp, KVStore, NotFoundError, OpType, StoreIOError,
)

logger = logging.getLogger(__name__)


class MemoryStore(KVStore):
    """Sorted in-memory store implementing the KVStore contract."""

    def __init__(self):
        self._lock = threading.RLock()
        self._keys: List[bytes] = []
        self._data: Dict[bytes, bytes] = {}
        self._closed = False
        self._stats = {"gets": 0, "puts": 0, "deletes": 0,
                       "batches": 0, "scans": 0}

    # ─── Reads ───────────────────────────────────────────────────────────

    def get(self, key: bytes) -> bytes:
        with self._lock:
            self._ensure_open()
            self._stats["gets"] += 1
            try:
                return self._data[key]
            except KeyError:
                raise NotFoundError(key) from None

    def scan(self, start: Optional[bytes] = None,
             end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        with self._lock:
            self._ensure_open()
            self._stats["scans"] += 1
            pos = 0 if start is None else bisect.bisect_left(self._keys, start)

        last: Optional[bytes] = None
        while True:
            with self._lock:
                self._ensure_open()
                if last is not None:
                    pos = bisect.bisect_right(self._keys, last)
                if pos >= len(self._keys):
                    return
                key = self._keys[pos]
                if end is not None and key >= end:
                    return
                value = self._data[key]
            last = key
            yield key, value

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def __contains__(self, key: bytes) -> bool:
        with self._lock:
            return key in self._data

    # ─── Writes ──────────────────────────────────────────────────────────

    def put(self, key: bytes, value: bytes) -> None:
        with self._lock:
            self._ensure_open()
            self._stats["puts"] += 1
            self._apply_put(key, value)

    def delete(self, key: bytes) -> None:
        with self._lock:
            self._ensure_open()
            self._stats["deletes"] += 1
            self._apply_delete(key)

    def batch(self, ops: Iterable[BatchOp]) -> None:
        ops = list(ops)
        with self._lock:
            self._ensure_open()
            self._stats["batches"] += 1
            self._apply_ops(ops)

    # ─── Lifecycle / introspection ───────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                logger.debug("%r closed", self)
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> dict:
        with self._lock:
            result = dict(self._stats)
            result["keys"] = len(self._keys)
            return result

    # ─── Internal (must hold _lock) ──────────────────────────────────────

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreIOError(f"{type(self).__name__} is closed")

    def _apply_ops(self, ops: List[BatchOp]) -> None:
        # Validate everything first: a rejected op must not leave a prefix applied
        for op in ops:
            _check_op(op)
        for op in ops:
            if op.type == OpType.PUT:
                self._apply_put(op.key, op.value)
            else:
                self._apply_delete(op.key)

    def _apply_put(self, key: bytes, value: bytes) -> None:
        _check_op(BatchOp(OpType.PUT, key, value))
        if key not in self._data:
            bisect.insort(self._keys, key)
        self._data[key] = value

    def _apply_delete(self, key: bytes) -> None:
        if key in self._data:
            del self._data[key]
            idx = bisect.bisect_left(self._keys, key)
            self._keys.pop(idx)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(keys={len(self._keys)})"


def _check_op(op: BatchOp) -> None:
    """Reject malformed ops before anything is applied or logged."""
    if not isinstance(op.key, bytes) or not op.key:
        raise TypeError(f"keys must be non-empty bytes, got {op.key!r}")
    if op.type == OpType.PUT and not isinstance(op.value, bytes):
        raise TypeError(f"PUT value must be bytes for key {op.key!r}")
