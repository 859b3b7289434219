"""
Wrangler Model Errors
=====================
Error taxonomy of the model engine. Store failures (NotFoundError,
StoreIOError) come from storage.kvstore and propagate unchanged.

  WranglerError
  ├── ValidationError (also a ValueError)
  │   ├── UnknownAttribute
  │   ├── ReservedKeyConflict
  │   └── MissingRequired
  ├── IndexCollision
  ├── MissingId
  ├── InstanceRemoved
  ├── NotInCache
  ├── EmptyLogError
  └── LockTimeoutError
"""

from typing import Any


class WranglerError(Exception):
    """Base class for model-engine errors."""
    pass


class ValidationError(WranglerError, ValueError):
    """Invalid input. Raised synchronously, never retried."""
    pass


class UnknownAttribute(ValidationError):
    def __init__(self, key: str, kind: str = ""):
        where = f" on model '{kind}'" if kind else ""
        super().__init__(f"Unknown attribute '{key}'{where}")
        self.key = key
        self.kind = kind


class ReservedKeyConflict(ValidationError):
    def __init__(self, key: str):
        super().__init__(f"Property '{key}' conflicts with a reserved model member")
        self.key = key


class MissingRequired(ValidationError):
    def __init__(self, key: str, kind: str = ""):
        where = f" of model '{kind}'" if kind else ""
        super().__init__(f"Required attribute '{key}'{where} has no value")
        self.key = key
        self.kind = kind


class IndexCollision(WranglerError):
    """An indexed value is already owned by a different record."""

    def __init__(self, attr: str, value: Any, owner_id: str):
        super().__init__(
            f"Index already exists: {{ {attr} : {value!r} }} (owned by {owner_id})"
        )
        self.attr = attr
        self.value = value
        self.owner_id = owner_id


class MissingId(WranglerError):
    def __init__(self, operation: str):
        super().__init__(f"{operation} requires a model id")
        self.operation = operation


class InstanceRemoved(WranglerError):
    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} has been removed")
        self.model_id = model_id


class NotInCache(WranglerError):
    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} is not in the cache")
        self.model_id = model_id


class EmptyLogError(WranglerError, IndexError):
    """pop() on an empty ChangeLog."""
    pass


class LockTimeoutError(WranglerError):
    def __init__(self, kind: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for '{kind}' write locks")
        self.kind = kind
        self.timeout = timeout
