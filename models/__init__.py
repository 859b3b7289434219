"""
Wrangler Models Module
======================
Schema-driven documents with change tracking, secondary indices and an
in-process cache.

Components:
  - schema: Schema / SchemaAttribute definitions
  - change_log: ordered, key-unique pending mutations
  - record: durable JSON form of an instance
  - identity: id minting, index keys and lock resources per kind
  - signals: change / save / remove notifications
  - instance: ModelInstance (get / set / save / remove)
  - factory: Factory (create / find / find_all / find_by + cache)
"""

from models.errors import (
    WranglerError, ValidationError, UnknownAttribute, ReservedKeyConflict,
    MissingRequired, IndexCollision, MissingId, InstanceRemoved, NotInCache,
    EmptyLogError, LockTimeoutError,
)
from models.schema import Schema, SchemaAttribute
from models.change_log import ChangeLog, ChangeRecord
from models.record import Record
from models.identity import Identity
from models.signals import ChangeEvent, Signal
from models.instance import InstanceState, ModelBinding, ModelInstance, RESERVED_KEYS
from models.factory import Factory

__all__ = [
    "WranglerError", "ValidationError", "UnknownAttribute", "ReservedKeyConflict",
    "MissingRequired", "IndexCollision", "MissingId", "InstanceRemoved",
    "NotInCache", "EmptyLogError", "LockTimeoutError",
    "Schema", "SchemaAttribute",
    "ChangeLog", "ChangeRecord",
    "Record",
    "Identity",
    "ChangeEvent", "Signal",
    "InstanceState", "ModelBinding", "ModelInstance", "RESERVED_KEYS",
    "Factory",
]
