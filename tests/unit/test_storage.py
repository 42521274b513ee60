"""Tests for key-value store backends and the store factory."""

import pytest

from cardrefinery.config import RefineryConfig
from cardrefinery.errors import ConfigError
from cardrefinery.storage import InMemoryKeyValueStore, SQLiteKeyValueStore, get_store
from cardrefinery.storage.postgres import PostgresKeyValueStore


@pytest.mark.asyncio
async def test_inmemory_store_crud():
    store = InMemoryKeyValueStore()
    assert await store.get("missing") is None
    await store.set("b", "2")
    await store.set("a", "1")
    await store.set("a", "3")
    assert await store.get("a") == "3"
    assert await store.keys() == ["a", "b"]
    await store.remove("a")
    await store.remove("a")
    assert await store.keys() == ["b"]


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_instances(tmp_path):
    db_path = tmp_path / "nested" / "store.db"
    store = SQLiteKeyValueStore(db_path)
    await store.set("sessions", '{"a": 1}')
    await store.set("sessions", '{"a": 2}')
    await store.disconnect()

    reopened = SQLiteKeyValueStore(db_path)
    assert await reopened.get("sessions") == '{"a": 2}'
    assert await reopened.keys() == ["sessions"]
    await reopened.remove("sessions")
    assert await reopened.get("sessions") is None
    await reopened.disconnect()


@pytest.mark.asyncio
async def test_sqlite_namespaces_are_isolated(tmp_path):
    db_path = tmp_path / "store.db"
    first = SQLiteKeyValueStore(db_path, namespace="one")
    second = SQLiteKeyValueStore(db_path, namespace="two")
    await first.set("key", "first")
    await second.set("key", "second")
    assert await first.get("key") == "first"
    assert await second.get("key") == "second"
    await second.remove("key")
    assert await first.keys() == ["key"]


def test_get_store_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("CARDREFINERY_STORAGE_URL", raising=False)
    config = RefineryConfig()
    assert isinstance(get_store(config=config), InMemoryKeyValueStore)

    store = get_store(f"sqlite:///{tmp_path}/kv.db", config)
    assert isinstance(store, SQLiteKeyValueStore)
    assert store.description.startswith("sqlite://")

    store = get_store("postgresql://user:pw@localhost/db", config)
    assert isinstance(store, PostgresKeyValueStore)
    assert store.namespace == "cardrefinery"

    with pytest.raises(ConfigError):
        get_store("mongodb://localhost", config)


def test_env_url_overrides_config(tmp_path, monkeypatch):
    monkeypatch.setenv("CARDREFINERY_STORAGE_URL", f"sqlite:///{tmp_path}/env.db")
    store = get_store(config=RefineryConfig())
    assert isinstance(store, SQLiteKeyValueStore)
    assert store.db_path == f"{tmp_path}/env.db"
