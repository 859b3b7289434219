"""
Wrangler Identity
=================
Identity and index-key generation for one model kind. Composed into
both Factory (id minting, lookups) and ModelInstance (save/remove).
"""

import uuid
from typing import Any

from concurrency.lock_manager import Resource, index_resource, record_resource
from indexing.key_encoding import IndexKeyCodec
from models.errors import ValidationError


class Identity:

    __slots__ = ("_kind", "_codec")

    def __init__(self, kind: str, codec: IndexKeyCodec):
        self._kind = kind
        self._codec = codec

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def codec(self) -> IndexKeyCodec:
        return self._codec

    @staticmethod
    def mint_id() -> str:
        """New time-based RFC 4122 id. Minted once per instance."""
        return str(uuid.uuid1())

    def index_key(self, attr: str, value: Any) -> bytes:
        """Composite index key; unindexable values are a ValidationError."""
        try:
            return self._codec.index_key(attr, value)
        except ValueError as e:
            raise ValidationError(f"Cannot index {self._kind}.{attr}: {e}") from e

    def index_lock(self, attr: str, value: Any) -> Resource:
        return index_resource(self._kind, self.index_key(attr, value))

    def record_lock(self, model_id: str) -> Resource:
        return record_resource(self._kind, model_id)

    def __repr__(self) -> str:
        return f"Identity(kind='{self._kind}')"
