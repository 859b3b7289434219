"""
Wrangler
========
Top-level handle: one store, one lock manager, and a registry of model
factories.

Registry layout:
  _meta SEP models → JSON list of registered kinds (registration order)

Usage:
    with Wrangler.open("data/app.log") as db:
        users = db.create_factory("user", {"username": {"indexed": True}})
        chas = users.create({"username": "chas"})
        chas.save()
"""

import json
import logging
import threading
from typing import Dict, List, Optional, Union

from catalog.config import WranglerConfig, configure_logging
from concurrency.lock_manager import KeyLockManager
from models.errors import ValidationError
from models.factory import Factory
from models.schema import Schema, validate_name
from storage.kvstore import KVStore, NotFoundError, StoreIOError
from storage.logstore import LogStore
from storage.namespace import Keyspace

logger = logging.getLogger(__name__)

META_PARTITION = "_meta"
MODELS_KEY = "models"


class Wrangler:

    def __init__(self, store: KVStore, config: Optional[WranglerConfig] = None):
        self.config = (config or WranglerConfig()).validate()
        if self.config.log_level:
            configure_logging(self.config.log_level)

        self._store = store
        self._meta = Keyspace(store, b"", self.config.sep).sub(META_PARTITION)
        self._lock_manager = KeyLockManager()
        self._factories: Dict[str, Factory] = {}
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, path: str, config: Optional[WranglerConfig] = None) -> "Wrangler":
        """Open (or create) a durable database backed by a LogStore file."""
        config = config or WranglerConfig()
        store = LogStore(path, sync=config.sync)
        logger.info("Opened %s", path)
        return cls(store, config)

    @property
    def store(self) -> KVStore:
        return self._store

    @property
    def lock_manager(self) -> KeyLockManager:
        return self._lock_manager

    # ─── Factories ───────────────────────────────────────────────────────

    def create_factory(self, kind: str, schema: Union[Schema, dict]) -> Factory:
        """Register a model kind and return its Factory."""
        validate_name(kind, "Model")
        with self._lock:
            self._ensure_open()
            if kind in self._factories:
                raise ValidationError(f"Model '{kind}' is already defined")

            factory = Factory(
                self._store, kind, schema,
                sep=self.config.sep,
                lock_manager=self._lock_manager,
                lock_timeout=self.config.lock_timeout,
                refresh_on_hit=self.config.refresh_on_hit,
                refresh_workers=self.config.refresh_workers,
            )
            kinds = self._read_registry()
            if kind not in kinds:
                kinds.append(kind)
                self._meta.put(MODELS_KEY, json.dumps(kinds).encode("utf-8"))
            self._factories[kind] = factory

        logger.debug("Registered model %s (%d attributes)", kind, len(factory.schema))
        return factory

    def factory(self, kind: str) -> Factory:
        try:
            return self._factories[kind]
        except KeyError:
            raise ValidationError(f"Model '{kind}' has no factory in this session") from None

    def models(self) -> List[str]:
        """Every kind ever registered in this store."""
        return self._read_registry()

    def _read_registry(self) -> List[str]:
        try:
            raw = self._meta.get(MODELS_KEY)
        except NotFoundError:
            return []
        try:
            kinds = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise StoreIOError(f"Corrupt model registry: {e}") from e
        return list(kinds)

    # ─── Lifecycle ───────────────────────────────────────────────────────

    def close(self) -> None:
        """Close every factory, then the store."""
        if self._closed:
            return
        self._closed = True
        for factory in self._factories.values():
            factory.close()
        self._store.close()
        logger.debug("Closed wrangler (%d factories)", len(self._factories))

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreIOError("Wrangler is closed")

    def __enter__(self) -> "Wrangler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Wrangler(store={self._store!r}, models={sorted(self._factories)})"
