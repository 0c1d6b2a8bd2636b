import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from biscuit_qc.storage import KeyValueStore, MemoryStore


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path):
    if request.param == "sqlite":
        return KeyValueStore(tmp_path / "nested" / "store.db")
    return MemoryStore()


def test_get_set_and_remove(store):
    assert store.get_item("missing") is None
    store.set_item("lock", 15)
    assert store.get_item("lock") == "15"
    store.set_item("lock", "30")
    assert store.get_item("lock") == "30"
    store.remove_item("lock")
    assert store.get_item("lock") is None
    # removing twice is harmless
    store.remove_item("lock")


def test_keys_filter_by_prefix(store):
    store.set_item("tables_P-2", "{}")
    store.set_item("tables_P-1", "{}")
    store.set_item("lock", "0")
    assert store.keys() == ["lock", "tables_P-1", "tables_P-2"]
    assert store.keys("tables_") == ["tables_P-1", "tables_P-2"]


def test_sqlite_store_persists_across_instances(tmp_path):
    path = tmp_path / "store.db"
    KeyValueStore(path).set_item("namespace", "value")
    assert KeyValueStore(path).get_item("namespace") == "value"
