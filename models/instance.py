"""
Wrangler Model Instance
=======================
A live, mutable model bound to its kind's schema and store.

State machine:
  NEW ──set──▶ DIRTY ──save──▶ SAVED ──set──▶ DIRTY ── ... ──remove──▶ REMOVED

Save protocol (exclusive per instance):
  1. Check required attributes; snapshot the ChangeLog and values.
  2. Build the Record (fails fast on unserializable values).
  3. Lock the record id, then read the stored record: old indexed values
     come from it, not from this handle, so a stale handle never leaves
     an orphaned entry. Every writer of an id holds its record lock, so
     the stored record cannot move underneath. Then lock every touched
     index key (old and new values) in sorted order
     (concurrency.lock_manager). A waiter on a record lock holds nothing
     else, so the two steps cannot deadlock.
  4. Collision check: every new indexed value must be free or already
     owned by this id. Any conflict aborts before anything is queued.
  5. One WriteBatch: index reconciliation, then the record put.
  6. On success drop the committed ChangeLog entries. On failure the
     ChangeLog is untouched so save() can be retried.

Remove deletes the record and every index entry of its stored values
that still points at this id, in one batch. No orphaned entries remain.
"""

import copy
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from concurrency.lock_manager import KeyLockManager, LockResult, Resource
from indexing.index_store import IndexStore
from indexing.key_encoding import same_value
from models.change_log import ChangeLog, ChangeRecord
from models.errors import (
    IndexCollision, InstanceRemoved, LockTimeoutError, MissingRequired,
    UnknownAttribute,
)
from models.identity import Identity
from models.record import Record
from models.schema import Schema
from models.signals import ChangeEvent, Signal
from storage.kvstore import KVStore, NotFoundError, WriteBatch
from storage.namespace import Keyspace

logger = logging.getLogger(__name__)


class InstanceState(Enum):
    NEW = "NEW"
    DIRTY = "DIRTY"
    SAVED = "SAVED"
    REMOVED = "REMOVED"


@dataclass
class ModelBinding:
    """Run-time wiring shared by every instance of one model kind."""
    kind: str
    schema: Schema
    identity: Identity
    records: Keyspace
    index: IndexStore
    lock_manager: KeyLockManager
    lock_timeout: Optional[float] = None

    @property
    def store(self) -> KVStore:
        return self.records.store


class ModelInstance:
    """
    Usage (through a Factory):
        user = users.create({"username": "chas"})
        user.set("email", "chas@example.com")
        user.save()
        user.get("username")     # → "chas"
    """

    def __init__(self, binding: ModelBinding, model_id: str,
                 values: Optional[Dict[str, Any]] = None, *,
                 state: InstanceState = InstanceState.NEW,
                 extras: Optional[Dict[str, Any]] = None):
        self._binding = binding
        self._id = model_id
        self._values: Dict[str, Any] = {}
        self._changes = ChangeLog()
        self._state = state
        self._extras: Dict[str, Any] = dict(extras or {})
        self._state_lock = threading.RLock()
        self._save_lock = threading.RLock()

        self._changed = Signal()
        self._saved = Signal()
        self._removed = Signal()
        self._key_signals: Dict[str, Signal] = {}

        values = values or {}
        for attr in binding.schema:
            if attr.name in values:
                value = values[attr.name]
            else:
                value = attr.default_value()
            self._values[attr.name] = value
            # New instances log an "add" record per attribute
            if state == InstanceState.NEW:
                self._changes.push(ChangeRecord(
                    key=attr.name, old_value=None,
                    new_value=value, indexed=attr.indexed,
                ))

    # ─── Properties ──────────────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self._id

    @property
    def kind(self) -> str:
        return self._binding.kind

    @property
    def schema(self) -> Schema:
        return self._binding.schema

    @property
    def state(self) -> InstanceState:
        return self._state

    @property
    def changes(self) -> ChangeLog:
        return self._changes

    @property
    def attributes(self) -> Dict[str, Any]:
        """Deep copy of the current attribute values."""
        with self._state_lock:
            return copy.deepcopy(self._values)

    @property
    def extras(self) -> Dict[str, Any]:
        """Transient members (private or callable props); never persisted."""
        return dict(self._extras)

    @property
    def is_dirty(self) -> bool:
        return len(self._changes) > 0

    # ─── Attribute access ────────────────────────────────────────────────

    def get(self, key: str) -> Any:
        if key not in self._values:
            raise UnknownAttribute(key, self.kind)
        return self._values[key]

    def set(self, key: str, value: Any) -> bool:
        """
        Set a schema attribute. Returns False if the change log already
        held the same pending value for this key.
        """
        self._ensure_live()
        attr = self._binding.schema.get(key)
        if attr is None:
            raise UnknownAttribute(key, self.kind)

        value = copy.deepcopy(value)
        with self._state_lock:
            changed = self._changes.push(ChangeRecord(
                key=key, old_value=self._values[key],
                new_value=value, indexed=attr.indexed,
            ))
            self._values[key] = value
            if self._state in (InstanceState.NEW, InstanceState.SAVED):
                self._state = InstanceState.DIRTY

        if not attr.silent:
            event = ChangeEvent(key=key, value=value)
            signal = self._key_signals.get(key)
            if signal is not None:
                signal.emit(event)
            self._changed.emit(event)
        return changed

    # ─── Notifications ───────────────────────────────────────────────────

    def on_change(self, key: str, callback: Callable[[ChangeEvent], None]) -> Callable[[], bool]:
        """Subscribe to changes of one attribute. Returns a disconnect function."""
        if key not in self._binding.schema:
            raise UnknownAttribute(key, self.kind)
        signal = self._key_signals.setdefault(key, Signal())
        return signal.connect(callback)

    def on_any_change(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], bool]:
        return self._changed.connect(callback)

    def on_save(self, callback: Callable[[Record], None]) -> Callable[[], bool]:
        return self._saved.connect(callback)

    def on_remove(self, callback: Callable[[str], None]) -> Callable[[], bool]:
        return self._removed.connect(callback)

    # ─── Persistence ─────────────────────────────────────────────────────

    def to_record(self) -> Record:
        """Flattened durable form: enumerable attributes only."""
        with self._state_lock:
            return self._build_record(copy.deepcopy(self._values))

    def save(self) -> str:
        """Persist pending changes. Returns the (stable) model id."""
        self._commit()
        return self._id

    def _commit(self) -> Record:
        """Run the save protocol; returns the Record that was written."""
        with self._save_lock:
            self._ensure_live()
            b = self._binding

            with self._state_lock:
                pending = self._changes.snapshot()
                values = copy.deepcopy(self._values)

            self._check_required(values)
            record = self._build_record(values)
            payload = record.to_bytes()

            owner = _LockOwner(self._id)
            self._acquire(owner, {b.identity.record_lock(self._id)})
            try:
                stored = self._read_stored()
                moves = self._index_moves(stored, values, pending)
                resources: Set[Resource] = set()
                for key, old, new in moves:
                    for value in (old, new):
                        if value is not None:
                            resources.add(b.identity.index_lock(key, value))
                self._acquire(owner, resources)
                unlink_old = self._check_collisions(moves)

                batch = WriteBatch()
                for key, old, new in moves:
                    b.index.reconcile(batch, key, old, new, self._id,
                                      unlink_old=unlink_old.get(key, False))
                b.records.queue_put(batch, self._id, payload)
                b.store.write(batch)
            finally:
                b.lock_manager.release_all(owner)

            with self._state_lock:
                self._changes.discard(pending)
                self._state = (InstanceState.DIRTY if len(self._changes)
                               else InstanceState.SAVED)

            logger.debug("Saved %s %s (%d changes, %d index moves)",
                         self.kind, self._id, len(pending), len(moves))
            self._saved.emit(record)
            return record

    def remove(self) -> None:
        """Delete the record and its index entries. Terminal."""
        with self._save_lock:
            self._ensure_live()
            b = self._binding

            owner = _LockOwner(self._id)
            self._acquire(owner, {b.identity.record_lock(self._id)})
            try:
                entries = self._stored_index_values(self._read_stored())
                self._acquire(owner, {b.identity.index_lock(k, v) for k, v in entries})
                batch = WriteBatch()
                for key, value in entries:
                    if b.index.lookup(key, value) == self._id:
                        b.index.unlink(batch, key, value)
                b.records.queue_delete(batch, self._id)
                b.store.write(batch)
            finally:
                b.lock_manager.release_all(owner)

            with self._state_lock:
                self._changes.clear()
                self._state = InstanceState.REMOVED

            logger.debug("Removed %s %s (%d index entries)",
                         self.kind, self._id, len(entries))
            self._removed.emit(self._id)

    def refresh(self) -> bool:
        """
        Reload attribute values from the stored record. Skipped (returns
        False) while changes are pending or the instance was never saved.
        Raises NotFoundError if the record no longer exists.
        """
        with self._save_lock:
            self._ensure_live()
            with self._state_lock:
                if len(self._changes) or self._state == InstanceState.NEW:
                    return False
            stored = self._read_stored()
            if stored is None:
                raise NotFoundError(self._binding.records.key(self._id))
            with self._state_lock:
                if len(self._changes):
                    return False
                for attr in self._binding.schema:
                    if attr.name in stored.attributes:
                        self._values[attr.name] = stored.attributes[attr.name]
                self._state = InstanceState.SAVED
            return True

    # ─── Helpers ─────────────────────────────────────────────────────────

    def _ensure_live(self) -> None:
        if self._state == InstanceState.REMOVED:
            raise InstanceRemoved(self._id)

    def _check_required(self, values: Dict[str, Any]) -> None:
        for name in self._binding.schema.required_names():
            if values.get(name) is None:
                raise MissingRequired(name, self.kind)

    def _build_record(self, values: Dict[str, Any]) -> Record:
        attrs = {
            attr.name: values[attr.name]
            for attr in self._binding.schema
            if attr.enumerable
        }
        return Record(id=self._id, attributes=attrs)

    def _acquire(self, owner: "_LockOwner", resources: Set[Resource]) -> None:
        b = self._binding
        result = b.lock_manager.acquire_all(owner, resources, timeout=b.lock_timeout)
        if result != LockResult.GRANTED:
            raise LockTimeoutError(self.kind, b.lock_timeout)

    def _index_moves(self, stored: Optional[Record], values: Dict[str, Any],
                     pending: List[ChangeRecord]) -> List[Tuple[str, Any, Any]]:
        """
        (key, old, new) for every indexed attribute whose entry must change.
        Persisted attributes take the old value from the stored record, so a
        stale handle still unlinks what is actually indexed. Attributes that
        are not persisted fall back to this handle's change log.
        """
        stored_attrs = stored.attributes if stored is not None else {}
        logged = {c.key: c for c in pending if c.indexed}
        moves = []
        for attr in self._binding.schema:
            if not attr.indexed:
                continue
            new = values[attr.name]
            if attr.enumerable:
                old = stored_attrs.get(attr.name)
            elif attr.name in logged:
                old = logged[attr.name].old_value
            else:
                continue
            if not same_value(old, new):
                moves.append((attr.name, old, new))
        return moves

    def _check_collisions(self, moves: List[Tuple[str, Any, Any]]) -> Dict[str, bool]:
        """
        Verify every new indexed value is free or ours. Returns, per key,
        whether the old entry still belongs to this id (safe to unlink).
        Must hold the index locks.
        """
        index = self._binding.index
        unlink_old: Dict[str, bool] = {}
        for key, old, new in moves:
            if new is not None:
                owner_id = index.lookup(key, new)
                if owner_id is not None and owner_id != self._id:
                    logger.warning("Index collision on %s.%s=%r (owned by %s)",
                                   self.kind, key, new, owner_id)
                    raise IndexCollision(key, new, owner_id)
            if old is not None and not same_value(old, new):
                unlink_old[key] = index.lookup(key, old) == self._id
        return unlink_old

    def _read_stored(self) -> Optional[Record]:
        try:
            raw = self._binding.records.get(self._id)
        except NotFoundError:
            return None
        return Record.from_bytes(raw)

    def _stored_index_values(self, stored: Optional[Record]) -> List[tuple]:
        if stored is None:
            return []
        entries = []
        for name in self._binding.schema.indexed_names():
            value = stored.attributes.get(name)
            if value is not None:
                entries.append((name, value))
        return entries

    # ─── Dunder ──────────────────────────────────────────────────────────

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ModelInstance):
            return NotImplemented
        return (self.kind == other.kind and self._id == other._id
                and self._values == other._values)

    def __hash__(self) -> int:
        return hash((self.kind, self._id))

    def __repr__(self) -> str:
        return (f"ModelInstance(kind='{self.kind}', id='{self._id}', "
                f"state={self._state.value})")


class _LockOwner:
    """Unique lock-owner token for one save/remove attempt."""
    __slots__ = ("model_id",)

    def __init__(self, model_id: str):
        self.model_id = model_id

    def __repr__(self) -> str:
        return f"_LockOwner({self.model_id})"


RESERVED_KEYS = frozenset(
    name for name in dir(ModelInstance) if not name.startswith("_")
)
