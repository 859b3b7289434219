"""
Wrangler Keyspaces
==================
Prefix-partitioned views over one physical KVStore.

A Keyspace owns every key that starts with its prefix. Child keyspaces
append `name + sep`, so partitions nest and never overlap:

  root                    b""
  root.sub("user")        b"user\\xff"
  .sub("record")          b"user\\xffrecord\\xff"   (primary records)
  .sub("index")           b"user\\xffindex\\xff"    (secondary indices)

Bounds: every relative key is non-empty UTF-8 or encoded index text,
whose first byte is never 0xFF, so [prefix, prefix + 0xFF) spans exactly
one partition.
"""

from typing import Iterator, Optional, Tuple

from storage.kvstore import KVStore, WriteBatch

UPPER_BOUND_BYTE = b"\xff"


def to_bytes(value) -> bytes:
    """Accept str or bytes key parts; str is UTF-8 encoded."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    raise TypeError(f"key parts must be str or bytes, got {type(value).__name__}")


class Keyspace:
    """A key-prefix partition of a store."""

    __slots__ = ("_store", "_prefix", "_sep")

    def __init__(self, store: KVStore, prefix: bytes = b"", sep: bytes = b"\xff"):
        if not sep:
            raise ValueError("Keyspace separator must be non-empty")
        self._store = store
        self._prefix = prefix
        self._sep = sep

    @property
    def store(self) -> KVStore:
        return self._store

    @property
    def prefix(self) -> bytes:
        return self._prefix

    @property
    def sep(self) -> bytes:
        return self._sep

    def sub(self, name) -> "Keyspace":
        """Return the child partition `prefix + name + sep`."""
        part = to_bytes(name)
        if not part or self._sep in part:
            raise ValueError(f"Invalid keyspace name: {name!r}")
        return Keyspace(self._store, self._prefix + part + self._sep, self._sep)

    # ─── Key mapping ─────────────────────────────────────────────────────

    def key(self, rel) -> bytes:
        """Absolute store key for a relative key."""
        return self._prefix + to_bytes(rel)

    def relative(self, abs_key: bytes) -> bytes:
        if not abs_key.startswith(self._prefix):
            raise ValueError(f"Key {abs_key!r} is outside keyspace {self._prefix!r}")
        return abs_key[len(self._prefix):]

    def bounds(self) -> Tuple[bytes, bytes]:
        return self._prefix, self._prefix + UPPER_BOUND_BYTE

    # ─── Store operations on relative keys ───────────────────────────────

    def get(self, rel) -> bytes:
        return self._store.get(self.key(rel))

    def put(self, rel, value: bytes) -> None:
        self._store.put(self.key(rel), value)

    def delete(self, rel) -> None:
        self._store.delete(self.key(rel))

    def queue_put(self, batch: WriteBatch, rel, value: bytes) -> None:
        batch.put(self.key(rel), value)

    def queue_delete(self, batch: WriteBatch, rel) -> None:
        batch.delete(self.key(rel))

    def scan(self, start: Optional[bytes] = None,
             end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        """
        Lazily yield (relative_key, value) pairs inside this partition,
        optionally narrowed to relative [start, end).
        """
        lo, hi = self.bounds()
        if start is not None:
            lo = max(lo, self._prefix + start)
        if end is not None:
            hi = min(hi, self._prefix + end)
        plen = len(self._prefix)
        it = self._store.scan(lo, hi)
        try:
            for abs_key, value in it:
                yield abs_key[plen:], value
        finally:
            close = getattr(it, "close", None)
            if close is not None:
                close()

    def __repr__(self) -> str:
        return f"Keyspace(prefix={self._prefix!r})"
