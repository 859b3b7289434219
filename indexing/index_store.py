"""
Wrangler Index Store
====================
Secondary indices for one model kind, kept in a dedicated Keyspace.

Entry layout:
  key   = attr + SEP + encode_value(value)      (see key_encoding.py)
  value = record id (UTF-8)

Rules:
  - NULLs are not indexed: reconcile() with new=None only unlinks.
  - Index writes are queued into the caller's WriteBatch so they commit
    together with the record write; nothing here writes on its own.
  - Uniqueness is checked by the caller (lookup before reconcile) while
    holding the per-key locks from concurrency.lock_manager.
  - A store miss on lookup is control flow (returns None), never an error.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional

from indexing.key_encoding import IndexKeyCodec, decode_value, same_value
from storage.kvstore import NotFoundError, WriteBatch
from storage.namespace import Keyspace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexEntry:
    """One (value → id) mapping produced by a range scan."""
    attr: str
    value: Any
    id: str


class IndexStore:
    """
    Usage:
        index = IndexStore(keyspace.sub("index"), IndexKeyCodec(sep))
        owner = index.lookup("username", "chas")
        batch = WriteBatch()
        index.reconcile(batch, "username", None, "chas", model_id)
        store.write(batch)
    """

    def __init__(self, keyspace: Keyspace, codec: IndexKeyCodec):
        self._ks = keyspace
        self._codec = codec

    @property
    def keyspace(self) -> Keyspace:
        return self._ks

    @property
    def codec(self) -> IndexKeyCodec:
        return self._codec

    def key(self, attr: str, value: Any) -> bytes:
        """Relative composite key. Raises ValueError if value is not indexable."""
        return self._codec.index_key(attr, value)

    # ─── Reads ───────────────────────────────────────────────────────────

    def lookup(self, attr: str, value: Any) -> Optional[str]:
        """Return the id owning (attr, value), or None."""
        if value is None:
            return None
        try:
            raw = self._ks.get(self.key(attr, value))
        except NotFoundError:
            return None
        return raw.decode("utf-8")

    def scan_ids(self, attr: str, start: Any = None,
                 end: Any = None) -> Iterator[IndexEntry]:
        """
        Lazily yield IndexEntry for attr in value order, optionally
        restricted to start <= value < end. Restartable: each call opens a
        fresh scan. Closing the generator stops the underlying store scan.
        """
        lo, hi = self._codec.attr_range(attr, start, end)
        prefix_len = len(self._codec.attr_prefix(attr))
        it = self._ks.scan(lo, hi)
        try:
            for rel_key, raw_id in it:
                yield IndexEntry(attr=attr,
                                 value=decode_value(rel_key[prefix_len:]),
                                 id=raw_id.decode("utf-8"))
        finally:
            it.close()

    def entries(self, attr: str) -> List[IndexEntry]:
        """All entries for attr (materialized; for tests and tooling)."""
        return list(self.scan_ids(attr))

    # ─── Writes (queued) ─────────────────────────────────────────────────

    def reconcile(self, batch: WriteBatch, attr: str, old_value: Any,
                  new_value: Any, model_id: str, unlink_old: bool = True) -> None:
        """
        Queue the index update for one attribute change:
          1. delete (attr, old_value) if old_value is not None and differs
             (skipped when unlink_old is False, e.g. it belongs to another id)
          2. put (attr, new_value) → model_id if new_value is not None
        """
        if old_value is not None and not same_value(old_value, new_value) and unlink_old:
            self.unlink(batch, attr, old_value)
        if new_value is not None:
            self._ks.queue_put(batch, self.key(attr, new_value),
                               model_id.encode("utf-8"))
        logger.debug("Queued index reconcile %s: %r -> %r (%s)",
                     attr, old_value, new_value, model_id)

    def unlink(self, batch: WriteBatch, attr: str, value: Any) -> None:
        """Queue deletion of the (attr, value) entry."""
        if value is None:
            return
        self._ks.queue_delete(batch, self.key(attr, value))

    def __repr__(self) -> str:
        return f"IndexStore({self._ks!r})"
