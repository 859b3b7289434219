"""
Wrangler Record
===============
Durable form of a model instance: a stable id plus a flat attribute map.

Stored value (UTF-8 JSON):
  {"id": "<id>", "<attr>": <value>, ...}

The id travels inside the document so a record read from a range scan
can be reconstructed without its key.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from models.errors import MissingId, ValidationError
from storage.kvstore import StoreIOError

ID_FIELD = "id"


@dataclass
class Record:
    id: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {ID_FIELD: self.id}
        d.update(self.attributes)
        return d

    def to_bytes(self) -> bytes:
        try:
            text = json.dumps(self.to_dict(), separators=(",", ":"),
                              ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Record {self.id} is not serializable: {e}") from e
        return text.encode("utf-8")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Record":
        record_id = data.get(ID_FIELD)
        if not record_id:
            raise MissingId("deserialize")
        attrs = {k: v for k, v in data.items() if k != ID_FIELD}
        return cls(id=str(record_id), attributes=attrs)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Record":
        try:
            parsed = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise StoreIOError(f"Corrupt record: {e}") from e
        if not isinstance(parsed, dict):
            raise StoreIOError(f"Corrupt record: expected an object, got {type(parsed).__name__}")
        return cls.from_dict(parsed)
