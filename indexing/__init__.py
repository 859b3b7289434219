"""
Wrangler Indexing Module
========================
Secondary indices over the ordered key-value store.

Components:
  - key_encoding: order-preserving value encoding + composite index keys
  - index_store: lookup / reconcile / range scan over one kind's index keyspace
"""

from indexing.key_encoding import (
    IndexKeyCodec, encode_value, decode_value, is_indexable, same_value,
)
from indexing.index_store import IndexStore, IndexEntry

__all__ = [
    "IndexKeyCodec", "encode_value", "decode_value", "is_indexable", "same_value",
    "IndexStore", "IndexEntry",
]
