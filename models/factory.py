"""
Wrangler Factory
================
Per-kind entry point: builds instances, persists them, finds them again,
and keeps an in-process cache of live instances coherent with the store.

Store layout for kind K (SEP configurable, default 0xFF):
  K SEP record SEP <id>                      → Record JSON
  K SEP index  SEP <attr> SEP <enc(value)>   → <id>

Cache discipline:
  - find() hit      → cached instance returned at once; with
                      refresh_on_hit a background refresh reloads it
                      (skipped while it has pending changes, evicted if
                      the record is gone).
  - find() miss     → one store read; cached when cache=True.
  - cache=False     → always one store read, cache untouched.
  - remove()        → record and index entries deleted, entry evicted.
  - find_all()      → streams the record partition, never touches the cache.
"""

import copy
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from concurrency.lock_manager import KeyLockManager
from indexing.index_store import IndexStore
from indexing.key_encoding import IndexKeyCodec
from models.errors import (
    InstanceRemoved, MissingId, MissingRequired, NotInCache,
    ReservedKeyConflict, UnknownAttribute, ValidationError,
)
from models.identity import Identity
from models.instance import (
    RESERVED_KEYS, InstanceState, ModelBinding, ModelInstance,
)
from models.record import ID_FIELD, Record
from models.schema import Schema, validate_name
from storage.kvstore import KVStore, NotFoundError
from storage.namespace import Keyspace

logger = logging.getLogger(__name__)

RECORD_PARTITION = "record"
INDEX_PARTITION = "index"


class Factory:
    """
    Usage:
        users = Factory(store, "user", {"username": {"indexed": True}})
        chas = users.create({"username": "chas"})
        users.save(chas)
        users.find(chas.id) is chas          # cache hit
        users.find_by("username", "chas")    # index lookup
    """

    def __init__(self, store: KVStore, kind: str,
                 schema: Union[Schema, dict],
                 *,
                 sep: bytes = b"\xff",
                 lock_manager: Optional[KeyLockManager] = None,
                 lock_timeout: Optional[float] = None,
                 refresh_on_hit: bool = True,
                 refresh_workers: int = 1):
        validate_name(kind, "Model")
        if sep in kind.encode("utf-8"):
            raise ValidationError(f"Model name {kind!r} contains the key separator")
        if not isinstance(schema, Schema):
            schema = Schema(schema)
        for name in schema.names():
            if name in RESERVED_KEYS:
                raise ReservedKeyConflict(name)
            if sep in name.encode("utf-8"):
                raise ValidationError(f"Attribute name {name!r} contains the key separator")
        schema.freeze()

        codec = IndexKeyCodec(sep)
        root = Keyspace(store, b"", sep).sub(kind)
        self._binding = ModelBinding(
            kind=kind,
            schema=schema,
            identity=Identity(kind, codec),
            records=root.sub(RECORD_PARTITION),
            index=IndexStore(root.sub(INDEX_PARTITION), codec),
            lock_manager=lock_manager or KeyLockManager(),
            lock_timeout=lock_timeout,
        )

        self._cache: List[ModelInstance] = []
        self._cache_lock = threading.RLock()

        self.refresh_on_hit = refresh_on_hit
        self._refresh_workers = refresh_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._refreshing: Dict[str, Future] = {}
        self._closed = False

    # ─── Properties ──────────────────────────────────────────────────────

    @property
    def kind(self) -> str:
        return self._binding.kind

    @property
    def schema(self) -> Schema:
        return self._binding.schema

    @property
    def store(self) -> KVStore:
        return self._binding.store

    @property
    def index(self) -> IndexStore:
        return self._binding.index

    @property
    def identity(self) -> Identity:
        return self._binding.identity

    @property
    def lock_manager(self) -> KeyLockManager:
        return self._binding.lock_manager

    @property
    def cache(self) -> tuple:
        """Snapshot of the cached instances, in insertion order."""
        with self._cache_lock:
            return tuple(self._cache)

    # ─── Create / save / remove ──────────────────────────────────────────

    def create(self, props: Optional[Mapping[str, Any]] = None,
               cache: bool = True) -> ModelInstance:
        """Build a NEW instance from props. Nothing is written."""
        schema = self.schema
        values: Dict[str, Any] = {}
        extras: Dict[str, Any] = {}

        for key, value in (props or {}).items():
            if not isinstance(key, str):
                raise ValidationError(f"Property names must be strings, got {key!r}")
            if key in RESERVED_KEYS:
                raise ReservedKeyConflict(key)
            if key in schema:
                values[key] = copy.deepcopy(value)
            elif key.startswith("_") or callable(value):
                extras[key] = value
            else:
                raise UnknownAttribute(key, self.kind)

        for attr in schema:
            if attr.required and values.get(attr.name) is None and attr.default is None:
                raise MissingRequired(attr.name, self.kind)

        model = ModelInstance(self._binding, Identity.mint_id(), values,
                              extras=extras)
        if cache:
            self._push_to_cache(model)
        logger.debug("Created %s %s", self.kind, model.id)
        return model

    def save(self, model: ModelInstance) -> Record:
        """Persist model's pending changes; returns the written Record."""
        self._check_model(model, "save")
        return model._commit()

    def remove(self, model: ModelInstance) -> None:
        self._check_model(model, "remove")
        model.remove()
        self.evict(model)

    # ─── Find ────────────────────────────────────────────────────────────

    def find(self, model_id: str, cache: bool = True) -> ModelInstance:
        """
        Return the instance for model_id. Raises NotFoundError if the
        record does not exist.
        """
        if not model_id:
            raise MissingId("find")

        if cache:
            with self._cache_lock:
                idx = self._find_cache_index(model_id)
                hit = self._cache[idx] if idx >= 0 else None
            if hit is not None:
                if self.refresh_on_hit:
                    self._schedule_refresh(hit)
                return hit

        model = self.deserialize(self._read(model_id))
        if not cache:
            return model

        with self._cache_lock:
            # Another thread may have cached it while we were reading
            idx = self._find_cache_index(model_id)
            if idx >= 0:
                return self._cache[idx]
            self._cache.append(model)
        return model

    def find_all(self) -> Iterator[ModelInstance]:
        """
        Lazily yield every stored instance of this kind in id order.
        Never reads or populates the cache.
        """
        it = self._binding.records.scan()
        try:
            for _, raw in it:
                yield self.deserialize(Record.from_bytes(raw))
        finally:
            it.close()

    def find_by(self, attr: str, value: Any, cache: bool = True) -> ModelInstance:
        """Resolve an indexed attribute value to its instance."""
        self._check_indexed(attr)
        key = self.identity.index_key(attr, value)
        model_id = self.index.lookup(attr, value)
        if model_id is None:
            raise NotFoundError(self.index.keyspace.key(key))
        return self.find(model_id, cache=cache)

    def find_all_by(self, attr: str, start: Any = None,
                    end: Any = None) -> Iterator[ModelInstance]:
        """
        Lazily yield instances in index order of attr, restricted to
        start <= value < end when given. Bypasses the cache.
        """
        self._check_indexed(attr)
        entries = self.index.scan_ids(attr, start, end)
        try:
            for entry in entries:
                try:
                    raw = self._binding.records.get(entry.id)
                except NotFoundError:
                    # removed between the index read and the record read
                    logger.debug("Index %s.%s=%r points at missing record %s",
                                 self.kind, attr, entry.value, entry.id)
                    continue
                yield self.deserialize(Record.from_bytes(raw))
        finally:
            entries.close()

    # ─── Serialization ───────────────────────────────────────────────────

    def serialize(self, model: ModelInstance) -> dict:
        """Plain dict of the persisted form (id + enumerable attributes)."""
        data = model.to_record().to_dict()
        return {
            k: v for k, v in data.items()
            if k == ID_FIELD or (not k.startswith("_") and not callable(v))
        }

    def deserialize(self, record: Union[Record, Mapping[str, Any]]) -> ModelInstance:
        """Rebuild a SAVED instance from its durable form."""
        if not isinstance(record, Record):
            record = Record.from_dict(copy.deepcopy(dict(record)))
        if not record.id:
            raise MissingId("deserialize")

        values = {}
        for key, value in record.attributes.items():
            if key in self.schema:
                values[key] = value
            else:
                logger.debug("Ignoring stored attribute %s.%s not in schema",
                             self.kind, key)
        return ModelInstance(self._binding, record.id, values,
                             state=InstanceState.SAVED)

    # ─── Cache ───────────────────────────────────────────────────────────

    def evict(self, model: Union[ModelInstance, str]) -> bool:
        """Drop an entry from the cache. Returns False if it was absent."""
        try:
            self._remove_from_cache(model)
        except NotInCache:
            return False
        return True

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def _find_cache_index(self, model: Union[ModelInstance, str]) -> int:
        model_id = model if isinstance(model, str) else model.id
        with self._cache_lock:
            for i, cached in enumerate(self._cache):
                if cached.id == model_id:
                    return i
        return -1

    def _push_to_cache(self, model: ModelInstance) -> None:
        """Insert or replace the entry for model.id."""
        with self._cache_lock:
            idx = self._find_cache_index(model)
            if idx >= 0:
                self._cache[idx] = model
            else:
                self._cache.append(model)

    def _remove_from_cache(self, model: Union[ModelInstance, str]) -> ModelInstance:
        with self._cache_lock:
            idx = self._find_cache_index(model)
            if idx < 0:
                model_id = model if isinstance(model, str) else model.id
                raise NotInCache(model_id)
            return self._cache.pop(idx)

    # ─── Background refresh ──────────────────────────────────────────────

    def _schedule_refresh(self, model: ModelInstance) -> None:
        if self._closed:
            return
        with self._cache_lock:
            pending = self._refreshing.get(model.id)
            if pending is not None and not pending.done():
                return
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._refresh_workers,
                    thread_name_prefix=f"wrangler-refresh-{self.kind}",
                )
            self._refreshing[model.id] = self._executor.submit(self._refresh, model)

    def _refresh(self, model: ModelInstance) -> bool:
        try:
            reloaded = model.refresh()
        except (NotFoundError, InstanceRemoved):
            logger.debug("Evicting %s %s: record is gone", self.kind, model.id)
            self.evict(model)
            return False
        except Exception as e:
            logger.warning("Background refresh of %s %s failed: %s",
                           self.kind, model.id, e)
            raise
        if not reloaded:
            logger.debug("Skipped refresh of %s %s: pending changes",
                         self.kind, model.id)
        return reloaded

    def wait_for_refresh(self, timeout: Optional[float] = None) -> None:
        """
        Block until scheduled refreshes finish. Re-raises the first
        background failure.
        """
        with self._cache_lock:
            futures = list(self._refreshing.values())
            self._refreshing.clear()
        done, _ = wait(futures, timeout=timeout)
        for future in done:
            future.result()

    def close(self) -> None:
        """Stop background refreshes and drop the cache. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self.clear_cache()
        logger.debug("Closed factory %s", self.kind)

    # ─── Helpers ─────────────────────────────────────────────────────────

    def _read(self, model_id: str) -> Record:
        return Record.from_bytes(self._binding.records.get(model_id))

    def _check_model(self, model: ModelInstance, operation: str) -> None:
        if not isinstance(model, ModelInstance):
            raise ValidationError(f"{operation} expects a ModelInstance, got {model!r}")
        if not model.id:
            raise MissingId(operation)
        if model.kind != self.kind:
            raise ValidationError(
                f"Cannot {operation} a '{model.kind}' model with the '{self.kind}' factory"
            )

    def _check_indexed(self, attr: str) -> None:
        definition = self.schema.get(attr)
        if definition is None:
            raise UnknownAttribute(attr, self.kind)
        if not definition.indexed:
            raise ValidationError(f"Attribute '{self.kind}.{attr}' is not indexed")

    def __repr__(self) -> str:
        return f"Factory(kind='{self.kind}', cached={len(self._cache)})"
