"""
Wrangler Change Log
===================
Per-instance ordered log of pending attribute mutations.

Invariants:
  - At most one ChangeRecord per attribute key.
  - Re-pushing a key replaces the entry IN PLACE (position kept), keeps
    the ORIGINAL old_value and takes the new new_value.
  - pop() is LIFO over insertion order.
No I/O.
"""

import threading
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional

from models.errors import EmptyLogError


@dataclass
class ChangeRecord:
    """One pending mutation of one attribute."""
    key: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    indexed: bool = False


class ChangeLog:
    """Ordered, key-unique collection of ChangeRecord."""

    def __init__(self):
        self._changes: List[ChangeRecord] = []
        self._lock = threading.Lock()

    def push(self, record: ChangeRecord) -> bool:
        """
        Add or coalesce a record.
        Returns False if the key is pending with the same new_value.
        """
        with self._lock:
            pos = self._position(record.key)
            if pos is None:
                self._changes.append(record)
                return True

            existing = self._changes[pos]
            if existing.new_value == record.new_value:
                return False

            self._changes[pos] = ChangeRecord(
                key=record.key,
                old_value=existing.old_value,
                new_value=record.new_value,
                indexed=record.indexed,
            )
            return True

    def pop(self) -> ChangeRecord:
        """Remove and return the latest record."""
        with self._lock:
            if not self._changes:
                raise EmptyLogError("pop from empty change log")
            return self._changes.pop()

    def length(self) -> int:
        return len(self._changes)

    def clear(self) -> None:
        """Drop all pending records without persisting them."""
        with self._lock:
            self._changes.clear()

    def get(self, key: str) -> Optional[ChangeRecord]:
        with self._lock:
            pos = self._position(key)
            return None if pos is None else self._changes[pos]

    def keys(self) -> List[str]:
        with self._lock:
            return [c.key for c in self._changes]

    def snapshot(self) -> List[ChangeRecord]:
        """Copy of the pending records, oldest first."""
        with self._lock:
            return list(self._changes)

    def discard(self, records: Iterable[ChangeRecord]) -> int:
        """
        Remove exactly these record objects (by identity) after they were
        committed. A key that was pushed again since the snapshot stays
        pending, rebased so its old_value is the committed value.
        """
        committed = {r.key: r for r in records}
        with self._lock:
            kept: List[ChangeRecord] = []
            for change in self._changes:
                done = committed.get(change.key)
                if done is change:
                    continue
                if done is not None:
                    change.old_value = done.new_value
                kept.append(change)
            removed = len(self._changes) - len(kept)
            self._changes = kept
            return removed

    def _position(self, key: Optional[str]) -> Optional[int]:
        for i, change in enumerate(self._changes):
            if change.key == key:
                return i
        return None

    def __len__(self) -> int:
        return len(self._changes)

    def __iter__(self) -> Iterator[ChangeRecord]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        return f"ChangeLog({self.keys()})"
