"""
Wrangler Indexing Tests
=======================
  ✔ encoded values sort like the values they encode
  ✔ unindexable values are rejected
  ✔ composite keys split back into (attr, value)
  ✔ IndexStore lookup / reconcile / unlink
  ✔ range scans stay inside one attribute and honour [start, end)
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from indexing import IndexEntry, IndexKeyCodec, IndexStore, decode_value, encode_value, is_indexable
from storage import Keyspace, MemoryStore, WriteBatch


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def index(store):
    codec = IndexKeyCodec()
    return IndexStore(Keyspace(store).sub("user").sub("index"), codec)


def _link(store, index, attr, value, model_id):
    batch = WriteBatch()
    index.reconcile(batch, attr, None, value, model_id)
    store.write(batch)


# ═══════════════════════════════════════════════════════════════════════════
# 1. Value encoding
# ═══════════════════════════════════════════════════════════════════════════

class TestValueEncoding:

    def test_int_order(self):
        values = [-(2 ** 63), -1000, -1, 0, 1, 42, 2 ** 63 - 1]
        encoded = [encode_value(v) for v in values]
        assert encoded == sorted(encoded)

    def test_float_order(self):
        values = [float("-inf"), -1e10, -1.5, -0.0, 0.0, 1e-9, 2.5, float("inf")]
        encoded = [encode_value(v) for v in values]
        assert encoded == sorted(encoded)

    def test_negative_zero_normalized(self):
        assert encode_value(-0.0) == encode_value(0.0)

    def test_string_order(self):
        values = ["", "a", "ab", "b", "é", "日本"]
        encoded = [encode_value(v) for v in values]
        assert encoded == sorted(encoded)

    def test_bool_is_not_int(self):
        assert encode_value(True) != encode_value(1)
        assert decode_value(encode_value(True)) is True

    def test_decode(self):
        for v in [-7, 0, 123456789, -2.25, "chas", False]:
            assert decode_value(encode_value(v)) == v

    @pytest.mark.parametrize("value", [None, float("nan"), 2 ** 63, [1], {"a": 1}, b"raw"])
    def test_unindexable(self, value):
        assert not is_indexable(value)
        with pytest.raises(ValueError):
            encode_value(value)


class TestIndexKeyCodec:

    def test_index_key_layout(self):
        codec = IndexKeyCodec()
        assert codec.index_key("username", "chas") == b"username\xffschas"

    def test_split(self):
        codec = IndexKeyCodec()
        assert codec.split(codec.index_key("age", 30)) == ("age", 30)

    def test_attr_range_default_bounds(self):
        codec = IndexKeyCodec()
        assert codec.attr_range("age") == (b"age\xff\x00", b"age\xff\xff")

    def test_custom_separator(self):
        codec = IndexKeyCodec(b"\x1f")
        assert codec.index_key("a", "x") == b"a\x1fsx"

    def test_value_containing_custom_separator_rejected(self):
        codec = IndexKeyCodec(b"|")
        with pytest.raises(ValueError):
            codec.index_key("name", "a|b")

    def test_attr_name_with_separator_rejected(self):
        with pytest.raises(ValueError):
            IndexKeyCodec(b"|").attr_prefix("a|b")

    def test_empty_separator_rejected(self):
        with pytest.raises(ValueError):
            IndexKeyCodec(b"")


# ═══════════════════════════════════════════════════════════════════════════
# 2. IndexStore
# ═══════════════════════════════════════════════════════════════════════════

class TestIndexStore:

    def test_lookup_miss_is_none(self, index):
        assert index.lookup("username", "nobody") is None

    def test_lookup_none_value(self, index):
        assert index.lookup("username", None) is None

    def test_reconcile_insert(self, store, index):
        _link(store, index, "username", "chas", "id-1")
        assert index.lookup("username", "chas") == "id-1"

    def test_reconcile_update_moves_entry(self, store, index):
        _link(store, index, "username", "chas", "id-1")
        batch = WriteBatch()
        index.reconcile(batch, "username", "chas", "charles", "id-1")
        store.write(batch)
        assert index.lookup("username", "chas") is None
        assert index.lookup("username", "charles") == "id-1"

    def test_reconcile_to_none_only_unlinks(self, store, index):
        _link(store, index, "username", "chas", "id-1")
        batch = WriteBatch()
        index.reconcile(batch, "username", "chas", None, "id-1")
        store.write(batch)
        assert index.entries("username") == []

    def test_reconcile_keeps_old_when_told(self, store, index):
        _link(store, index, "username", "chas", "id-other")
        batch = WriteBatch()
        index.reconcile(batch, "username", "chas", "new", "id-1", unlink_old=False)
        store.write(batch)
        assert index.lookup("username", "chas") == "id-other"
        assert index.lookup("username", "new") == "id-1"

    def test_same_value_is_single_put(self, store, index):
        _link(store, index, "username", "chas", "id-1")
        batch = WriteBatch()
        index.reconcile(batch, "username", "chas", "chas", "id-1")
        assert len(batch) == 1
        store.write(batch)
        assert index.lookup("username", "chas") == "id-1"

    def test_unlink(self, store, index):
        _link(store, index, "username", "chas", "id-1")
        batch = WriteBatch()
        index.unlink(batch, "username", "chas")
        store.write(batch)
        assert index.lookup("username", "chas") is None

    def test_scan_ids_in_value_order(self, store, index):
        for i, age in enumerate([40, -3, 17, 0]):
            _link(store, index, "age", age, f"id-{i}")
        entries = list(index.scan_ids("age"))
        assert [e.value for e in entries] == [-3, 0, 17, 40]
        assert entries[0] == IndexEntry(attr="age", value=-3, id="id-1")

    def test_scan_ids_stays_in_attribute(self, store, index):
        _link(store, index, "age", 1, "id-a")
        _link(store, index, "ag", 2, "id-b")
        _link(store, index, "agent", 3, "id-c")
        assert [e.id for e in index.scan_ids("age")] == ["id-a"]

    def test_scan_ids_range(self, store, index):
        for i in range(10):
            _link(store, index, "age", i, f"id-{i}")
        assert [e.value for e in index.scan_ids("age", 3, 6)] == [3, 4, 5]
        assert [e.value for e in index.scan_ids("age", start=8)] == [8, 9]
        assert [e.value for e in index.scan_ids("age", end=2)] == [0, 1]

    def test_scan_ids_close(self, store, index):
        for i in range(3):
            _link(store, index, "age", i, f"id-{i}")
        it = index.scan_ids("age")
        next(it)
        it.close()
        assert list(it) == []
