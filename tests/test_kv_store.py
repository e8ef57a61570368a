"""Tests for the shared key-value store backends."""
from unittest.mock import MagicMock

import pytest
from redis import exceptions as redis_exceptions

from core.config import StoreConfig
from core.exceptions import StoreUnavailable
from infra.kv_store import InMemoryKeyValueStore, RedisKeyValueStore, create_kv_store_from_config
from tests.helpers import FakeClock


class TestInMemoryKeyValueStore:

    def test_set_if_absent(self):
        store = InMemoryKeyValueStore()
        assert store.set_if_absent("k", "one", ttl_seconds=60)
        assert not store.set_if_absent("k", "two", ttl_seconds=60)
        assert store.get("k") == "one"

    def test_entries_expire(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(clock=clock)
        store.set("k", "v", ttl_seconds=10)

        clock.advance(9)
        assert store.get("k") == "v"
        clock.advance(1)
        assert store.get("k") is None
        assert store.set_if_absent("k", "again", ttl_seconds=10)

    def test_set_without_ttl_never_expires(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(clock=clock)
        store.set("k", "v")
        clock.advance(10 ** 9)
        assert store.get("k") == "v"

    def test_delete_if_equals(self):
        store = InMemoryKeyValueStore()
        store.set("k", "mine")

        assert not store.delete_if_equals("k", "theirs")
        assert store.get("k") == "mine"
        assert store.delete_if_equals("k", "mine")
        assert store.get("k") is None
        assert not store.delete_if_equals("k", "mine")

    def test_incr(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(clock=clock)
        assert store.incr("c", ttl_seconds=100) == 1
        assert store.incr("c", ttl_seconds=100) == 2

        clock.advance(100)
        assert store.incr("c", ttl_seconds=100) == 1

    def test_unavailable_store_raises(self):
        store = InMemoryKeyValueStore()
        store.available = False

        with pytest.raises(StoreUnavailable):
            store.get("k")
        with pytest.raises(StoreUnavailable):
            store.set_if_absent("k", "v", ttl_seconds=1)
        with pytest.raises(StoreUnavailable):
            store.incr("k", ttl_seconds=1)


class TestRedisKeyValueStore:

    def make_store(self):
        client = MagicMock()
        script = MagicMock(return_value=1)
        client.register_script.return_value = script
        return RedisKeyValueStore(client=client), client, script

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisKeyValueStore()

    def test_set_if_absent_uses_nx_ex(self):
        store, client, _ = self.make_store()
        client.set.return_value = True

        assert store.set_if_absent("lock:x", "id-1", ttl_seconds=300)
        client.set.assert_called_once_with("lock:x", "id-1", nx=True, ex=300)

        client.set.return_value = None
        assert not store.set_if_absent("lock:x", "id-2", ttl_seconds=300)

    def test_delete_if_equals_runs_script(self):
        store, _, script = self.make_store()

        assert store.delete_if_equals("lock:x", "id-1")
        script.assert_called_once_with(keys=["lock:x"], args=["id-1"])

        script.return_value = 0
        assert not store.delete_if_equals("lock:x", "id-1")

    def test_incr_arms_expiry_in_one_pipeline(self):
        store, client, _ = self.make_store()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [4, True]

        assert store.incr("budget:x", ttl_seconds=86_400) == 4
        pipe.incr.assert_called_once_with("budget:x")
        pipe.expire.assert_called_once_with("budget:x", 86_400)

    def test_get_decodes_bytes(self):
        store, client, _ = self.make_store()
        client.get.return_value = b"123"
        assert store.get("k") == "123"

    def test_redis_errors_become_store_unavailable(self):
        store, client, _ = self.make_store()
        client.get.side_effect = redis_exceptions.ConnectionError("refused")

        with pytest.raises(StoreUnavailable) as excinfo:
            store.get("k")
        assert excinfo.value.operation == "get"


def test_factory_defaults_to_memory():
    store = create_kv_store_from_config(StoreConfig())
    assert isinstance(store, InMemoryKeyValueStore)
