"""
Wrangler Model Instance Tests
=============================
  ✔ create seeds one "add" change per attribute
  ✔ set / get, unknown attributes rejected
  ✔ state machine NEW → DIRTY → SAVED → DIRTY → REMOVED
  ✔ save writes record + index entries in one batch
  ✔ index entry moves when an indexed value changes
  ✔ collisions abort the whole save and keep the change log
  ✔ remove deletes record and index entries (no orphans)
  ✔ change / save / remove signals
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import (
    ChangeEvent, Factory, IndexCollision, InstanceRemoved, InstanceState,
    MissingRequired, Record, UnknownAttribute, ValidationError,
)
from storage import MemoryStore, NotFoundError, StoreIOError


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

USER_SCHEMA = {
    "username": {"indexed": True},
    "email": {"indexed": True},
    "name": None,
    "visits": 0,
    "session": {"silent": True},
}


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def users(store):
    factory = Factory(store, "user", USER_SCHEMA, refresh_on_hit=False)
    yield factory
    factory.close()


# ═══════════════════════════════════════════════════════════════════════════
# 1. Attributes and change tracking
# ═══════════════════════════════════════════════════════════════════════════

class TestAttributes:

    def test_new_instance_seeds_change_log(self, users):
        model = users.create({"username": "chas"})
        assert model.state == InstanceState.NEW
        assert model.changes.keys() == list(USER_SCHEMA)
        record = model.changes.get("username")
        assert record.old_value is None
        assert record.new_value == "chas"
        assert record.indexed

    def test_defaults_applied(self, users):
        model = users.create()
        assert model.get("visits") == 0
        assert model.get("name") is None

    def test_set_get(self, users):
        model = users.create()
        model.set("name", "Chas")
        assert model.get("name") == "Chas"
        assert model.state == InstanceState.DIRTY

    def test_unknown_attribute(self, users):
        model = users.create()
        with pytest.raises(UnknownAttribute):
            model.set("nope", 1)
        with pytest.raises(UnknownAttribute):
            model.get("nope")

    def test_set_copies_value(self, users):
        model = users.create()
        tags = {"roles": ["admin"]}
        model.set("name", tags)
        tags["roles"].append("root")
        assert model.get("name") == {"roles": ["admin"]}

    def test_attributes_is_a_copy(self, users):
        model = users.create({"name": ["a"]})
        model.attributes["name"].append("b")
        assert model.get("name") == ["a"]

    def test_set_after_save_coalesces_from_saved_value(self, users):
        model = users.create({"name": "a"})
        model.save()
        model.set("name", "b")
        model.set("name", "c")
        record = model.changes.get("name")
        assert (record.old_value, record.new_value) == ("a", "c")
        assert len(model.changes) == 1


# ═══════════════════════════════════════════════════════════════════════════
# 2. Save
# ═══════════════════════════════════════════════════════════════════════════

class TestSave:

    def test_save_returns_stable_id(self, users):
        model = users.create({"username": "chas"})
        model_id = model.save()
        assert model_id == model.id
        assert model.save() == model_id
        assert model.state == InstanceState.SAVED
        assert len(model.changes) == 0

    def test_save_is_one_batch(self, store, users):
        model = users.create({"username": "chas", "email": "c@x"})
        model.save()
        stats = store.stats()
        assert stats["batches"] == 1
        assert stats["puts"] == 0

    def test_record_layout(self, store, users):
        model = users.create({"username": "chas", "session": "tok"})
        model.save()
        raw = store.get(b"user\xffrecord\xff" + model.id.encode())
        record = Record.from_bytes(raw)
        assert record.id == model.id
        assert record.attributes["username"] == "chas"
        # silent attributes are not enumerable, so not persisted
        assert "session" not in record.attributes

    def test_index_entries_written(self, store, users):
        model = users.create({"username": "chas", "email": "c@x"})
        model.save()
        assert store.get(b"user\xffindex\xffusername\xffschas") == model.id.encode()
        assert users.index.lookup("email", "c@x") == model.id

    def test_null_not_indexed(self, users):
        model = users.create({"username": "chas"})
        model.save()
        assert users.index.entries("email") == []

    def test_index_moves_on_change(self, users):
        model = users.create({"username": "chas"})
        model.save()
        model.set("username", "charles")
        model.save()
        assert users.index.lookup("username", "chas") is None
        assert users.index.lookup("username", "charles") == model.id
        assert len(users.index.entries("username")) == 1

    def test_index_cleared_on_none(self, users):
        model = users.create({"username": "chas"})
        model.save()
        model.set("username", None)
        model.save()
        assert users.index.entries("username") == []

    def test_collision_aborts_save(self, store, users):
        first = users.create({"username": "chas"})
        first.save()
        second = users.create({"username": "other", "email": "o@x"})
        second.save()

        second.set("email", "new@x")
        second.set("username", "chas")
        batches = store.stats()["batches"]
        with pytest.raises(IndexCollision) as exc:
            second.save()
        assert exc.value.owner_id == first.id
        assert exc.value.attr == "username"

        # nothing written: email index untouched, record unchanged
        assert store.stats()["batches"] == batches
        assert users.index.lookup("email", "new@x") is None
        assert users.index.lookup("email", "o@x") == second.id
        assert users.find(second.id, cache=False).get("username") == "other"
        # change log intact for a retry
        assert set(second.changes.keys()) == {"email", "username"}

    def test_retry_after_collision(self, users):
        users.create({"username": "chas"}).save()
        model = users.create({"username": "chas"})
        with pytest.raises(IndexCollision):
            model.save()
        model.set("username", "chas2")
        model.save()
        assert users.index.lookup("username", "chas2") == model.id

    def test_collision_does_not_steal_old_entry(self, users):
        a = users.create({"username": "chas"})
        a.save()
        b = users.create({"username": "b"})
        b.save()
        # b moves away from a value it never owned: only its own entry is touched
        b.set("username", "bee")
        b.save()
        assert users.index.lookup("username", "chas") == a.id

    def test_stale_handle_moves_stored_entry(self, users):
        model = users.create({"username": "x"})
        model.save()
        stale = users.find(model.id, cache=False)
        model.set("username", "y")
        model.save()

        stale.set("username", "z")
        stale.save()
        assert [(e.value, e.id) for e in users.index.entries("username")] == [
            ("z", model.id)]
        with pytest.raises(NotFoundError):
            users.find_by("username", "y")

        # the freed value is usable again and remove leaves nothing behind
        users.create({"username": "y"}).save()
        stale.remove()
        assert [e.value for e in users.index.entries("username")] == ["y"]

    def test_stale_handle_rewrites_untouched_index(self, users):
        model = users.create({"username": "chas", "email": "old@x"})
        model.save()
        stale = users.find(model.id, cache=False)
        model.set("email", "new@x")
        model.save()

        # the stale handle writes its whole record back, index follows it
        stale.set("name", "Chas")
        stale.save()
        assert users.index.lookup("email", "new@x") is None
        assert users.index.lookup("email", "old@x") == model.id
        assert users.find(model.id, cache=False).get("email") == "old@x"

    def test_int_to_float_moves_index_entry(self, store):
        scores = Factory(store, "score", {"points": {"indexed": True}},
                         refresh_on_hit=False)
        model = scores.create({"points": 1})
        model.save()
        model.set("points", 1.0)
        model.save()
        assert [e.value for e in scores.index.entries("points")] == [1.0]
        assert isinstance(scores.index.entries("points")[0].value, float)
        scores.close()

    def test_unindexable_value_rejected(self, users):
        model = users.create({"username": ["not", "indexable"]})
        with pytest.raises(ValidationError):
            model.save()
        assert len(list(users.find_all())) == 0

    def test_unserializable_value_rejected(self, users):
        model = users.create({"name": object()})
        with pytest.raises(ValidationError):
            model.save()
        assert len(model.changes) == len(USER_SCHEMA)

    def test_required_checked_on_save(self, store):
        accounts = Factory(store, "account", {"owner": {"required": True, "default": "x"}})
        model = accounts.create()
        model.set("owner", None)
        with pytest.raises(MissingRequired):
            model.save()
        accounts.close()

    def test_store_failure_keeps_change_log(self, store, users):
        model = users.create({"username": "chas"})
        store.close()
        with pytest.raises(StoreIOError):
            model.save()
        assert len(model.changes) == len(USER_SCHEMA)
        assert model.state == InstanceState.NEW


# ═══════════════════════════════════════════════════════════════════════════
# 3. Remove
# ═══════════════════════════════════════════════════════════════════════════

class TestRemove:

    def test_remove_deletes_record_and_index(self, store, users):
        model = users.create({"username": "chas", "email": "c@x"})
        model.save()
        model.remove()
        assert model.state == InstanceState.REMOVED
        assert len(model.changes) == 0
        assert users.index.entries("username") == []
        assert users.index.entries("email") == []
        assert list(users.find_all()) == []

    def test_remove_unsaved_is_harmless(self, users):
        model = users.create({"username": "chas"})
        model.remove()
        assert model.state == InstanceState.REMOVED

    def test_remove_uses_stored_values(self, users):
        model = users.create({"username": "chas"})
        model.save()
        model.set("username", "unsaved")
        model.remove()
        assert users.index.entries("username") == []

    def test_removed_instance_is_terminal(self, users):
        model = users.create({"username": "chas"})
        model.save()
        model.remove()
        with pytest.raises(InstanceRemoved):
            model.set("name", "x")
        with pytest.raises(InstanceRemoved):
            model.save()
        with pytest.raises(InstanceRemoved):
            model.remove()

    def test_value_free_after_remove(self, users):
        first = users.create({"username": "chas"})
        first.save()
        first.remove()
        second = users.create({"username": "chas"})
        second.save()
        assert users.index.lookup("username", "chas") == second.id

    def test_stale_handle_removes_current_entries(self, users):
        model = users.create({"username": "chas"})
        model.save()
        stale = users.find(model.id, cache=False)
        model.set("username", "charles")
        model.save()

        stale.remove()
        assert stale.state == InstanceState.REMOVED
        assert users.index.entries("username") == []
        with pytest.raises(NotFoundError):
            users.find(model.id, cache=False)


# ═══════════════════════════════════════════════════════════════════════════
# 4. Signals
# ═══════════════════════════════════════════════════════════════════════════

class TestSignals:

    def test_change_signals(self, users):
        model = users.create()
        per_key, any_key = [], []
        model.on_change("name", per_key.append)
        model.on_any_change(any_key.append)

        model.set("name", "Chas")
        model.set("visits", 1)
        assert per_key == [ChangeEvent("name", "Chas")]
        assert [e.key for e in any_key] == ["name", "visits"]

    def test_silent_attribute_emits_nothing(self, users):
        model = users.create()
        events = []
        model.on_any_change(events.append)
        model.set("session", "tok")
        assert events == []
        assert model.get("session") == "tok"

    def test_disconnect(self, users):
        model = users.create()
        events = []
        disconnect = model.on_any_change(events.append)
        assert disconnect()
        model.set("name", "x")
        assert events == []

    def test_on_change_unknown_attribute(self, users):
        with pytest.raises(UnknownAttribute):
            users.create().on_change("nope", print)

    def test_saved_and_removed(self, users):
        model = users.create({"username": "chas"})
        saved, removed = [], []
        model.on_save(saved.append)
        model.on_remove(removed.append)
        model.save()
        model.remove()
        assert saved[0].id == model.id
        assert saved[0].attributes["username"] == "chas"
        assert removed == [model.id]

    def test_callback_error_propagates(self, users):
        model = users.create()

        def boom(event):
            raise RuntimeError("listener failed")

        model.on_any_change(boom)
        with pytest.raises(RuntimeError):
            model.set("name", "x")


# ═══════════════════════════════════════════════════════════════════════════
# 5. Refresh
# ═══════════════════════════════════════════════════════════════════════════

class TestRefresh:

    def test_refresh_reloads_saved_values(self, users):
        model = users.create({"name": "a"})
        model.save()
        other = users.find(model.id, cache=False)
        other.set("name", "b")
        other.save()
        assert model.refresh()
        assert model.get("name") == "b"

    def test_refresh_skipped_with_pending_changes(self, users):
        model = users.create({"name": "a"})
        model.save()
        model.set("name", "local")
        assert model.refresh() is False
        assert model.get("name") == "local"

    def test_refresh_of_unsaved_instance_is_skipped(self, users):
        model = users.create({"name": "draft"})
        assert model.refresh() is False
        assert model.state == InstanceState.NEW
        assert model.get("name") == "draft"

    def test_refresh_of_deleted_record_raises(self, users):
        model = users.create({"name": "a"})
        model.save()
        users.find(model.id, cache=False).remove()
        with pytest.raises(NotFoundError):
            model.refresh()
