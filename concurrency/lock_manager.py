"""
Wrangler Key Lock Manager
=========================
Exclusive per-key locks that serialize index and record writes.

Design rules:
  - Resource granularity: one index key (kind, attr + SEP + value) or one
    record id (kind, id). Only EXCLUSIVE locks: a save must own every
    index value it checks and writes.
  - FIFO wait queue per resource (starvation prevention)
  - Deadlock avoidance instead of detection: acquire_all() takes
    resources in sorted order, so no wait-for cycle can form. Callers
    holding one record lock first may then acquire_all() index locks,
    since a record-lock waiter holds nothing else.
  - Re-entrant per owner: re-acquiring a held resource is a no-op grant.
  - No timeout by default; a timed-out acquire_all() rolls back the
    locks it already took.
  - release_all() is atomic under the global mutex and wakes waiters.

Thread safety: all state guarded by threading.Lock.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, Iterable, List, Optional, Set, Tuple


class LockResult(Enum):
    GRANTED = "GRANTED"
    TIMEOUT = "TIMEOUT"


# ─── Resource key helpers ────────────────────────────────────────────────

Resource = Tuple[str, str, bytes]


def index_resource(kind: str, index_key: bytes) -> Resource:
    """Resource key for one secondary-index value of a model kind."""
    return ("index", kind, index_key)


def record_resource(kind: str, record_id: str) -> Resource:
    """Resource key for one primary record of a model kind."""
    return ("record", kind, record_id.encode("utf-8"))


# ─── Lock request ────────────────────────────────────────────────────────

@dataclass
class LockRequest:
    """A pending lock request."""
    owner: Hashable
    granted: bool = False
    event: threading.Event = field(default_factory=threading.Event)


# ─── Per-resource lock state ─────────────────────────────────────────────

class _ResourceLock:
    """
    Tracks lock state for a single resource.
    holder: owner currently holding the lock (None = free).
    wait_queue: FIFO list of LockRequest waiting to be granted.
    """
    __slots__ = ("holder", "wait_queue")

    def __init__(self):
        self.holder: Optional[Hashable] = None
        self.wait_queue: List[LockRequest] = []

    def is_free(self) -> bool:
        return self.holder is None

    def has_waiters(self) -> bool:
        return len(self.wait_queue) > 0


# ─── Lock Manager ────────────────────────────────────────────────────────

class KeyLockManager:
    """
    Central lock table for one Wrangler instance.

    All public methods are thread-safe.
    """

    def __init__(self):
        self._mutex = threading.Lock()
        self._resources: Dict[Resource, _ResourceLock] = {}
        self._owner_locks: Dict[Hashable, Set[Resource]] = {}

    # ─── Public API ──────────────────────────────────────────────────────

    def acquire(self, owner: Hashable, resource: Resource,
                timeout: Optional[float] = None) -> LockResult:
        """
        Acquire an exclusive lock. Blocks while another owner holds it.

        Returns:
          GRANTED  lock acquired (or already held by owner)
          TIMEOUT  timed out waiting (only when timeout is not None)
        """
        with self._mutex:
            res = self._get_or_create_resource(resource)

            if res.holder == owner:
                return LockResult.GRANTED

            # FIFO: grant immediately only if nobody is queued ahead
            if res.is_free() and not res.has_waiters():
                self._grant(res, resource, owner)
                return LockResult.GRANTED

            request = LockRequest(owner=owner)
            res.wait_queue.append(request)

        granted = request.event.wait(timeout=timeout)

        with self._mutex:
            if granted or request.granted:
                return LockResult.GRANTED

            res = self._resources.get(resource)
            if res is not None and request in res.wait_queue:
                res.wait_queue.remove(request)
                self._cleanup(res, resource)
            return LockResult.TIMEOUT

    def acquire_all(self, owner: Hashable, resources: Iterable[Resource],
                    timeout: Optional[float] = None) -> LockResult:
        """
        Acquire every resource in sorted order (deadlock-free).
        On TIMEOUT, locks taken by this call are released again.
        """
        taken: List[Resource] = []
        for resource in sorted(set(resources)):
            already = self.holds(owner, resource)
            result = self.acquire(owner, resource, timeout=timeout)
            if result != LockResult.GRANTED:
                for r in reversed(taken):
                    self.release(owner, r)
                return result
            if not already:
                taken.append(resource)
        return LockResult.GRANTED

    def release(self, owner: Hashable, resource: Resource) -> bool:
        """Release one resource. Returns False if owner did not hold it."""
        with self._mutex:
            res = self._resources.get(resource)
            if res is None or res.holder != owner:
                return False
            res.holder = None
            held = self._owner_locks.get(owner)
            if held is not None:
                held.discard(resource)
                if not held:
                    del self._owner_locks[owner]
            self._try_grant_next(res, resource)
            self._cleanup(res, resource)
            return True

    def release_all(self, owner: Hashable) -> int:
        """
        Release all locks held by owner. Returns number released.
        Atomic: holds the global mutex for the whole operation.
        """
        with self._mutex:
            resources = self._owner_locks.pop(owner, set())
            count = 0
            for resource in resources:
                res = self._resources.get(resource)
                if res is None or res.holder != owner:
                    continue
                res.holder = None
                count += 1
                self._try_grant_next(res, resource)
                self._cleanup(res, resource)
            return count

    # ─── Introspection API ───────────────────────────────────────────────

    def holds(self, owner: Hashable, resource: Resource) -> bool:
        with self._mutex:
            res = self._resources.get(resource)
            return res is not None and res.holder == owner

    def get_holder(self, resource: Resource) -> Optional[Hashable]:
        with self._mutex:
            res = self._resources.get(resource)
            return res.holder if res else None

    def get_locks(self, owner: Hashable) -> List[Resource]:
        with self._mutex:
            return sorted(self._owner_locks.get(owner, set()))

    def get_wait_queue(self, resource: Resource) -> List[Hashable]:
        with self._mutex:
            res = self._resources.get(resource)
            if res is None:
                return []
            return [r.owner for r in res.wait_queue]

    def active_count(self) -> int:
        """Number of resources with a holder or waiters."""
        with self._mutex:
            return len(self._resources)

    # ─── Internal (must hold _mutex) ─────────────────────────────────────

    def _get_or_create_resource(self, resource: Resource) -> _ResourceLock:
        if resource not in self._resources:
            self._resources[resource] = _ResourceLock()
        return self._resources[resource]

    def _grant(self, res: _ResourceLock, resource: Resource,
               owner: Hashable) -> None:
        res.holder = owner
        self._owner_locks.setdefault(owner, set()).add(resource)

    def _try_grant_next(self, res: _ResourceLock, resource: Resource) -> None:
        """Hand a free resource to the head of its FIFO queue."""
        if res.is_free() and res.wait_queue:
            request = res.wait_queue.pop(0)
            self._grant(res, resource, request.owner)
            request.granted = True
            request.event.set()

    def _cleanup(self, res: _ResourceLock, resource: Resource) -> None:
        if res.is_free() and not res.wait_queue:
            self._resources.pop(resource, None)
