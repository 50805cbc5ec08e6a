import json
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from authcore.storage.errors import ConstraintViolation, StoreError
from authcore.storage.models import Identity
from authcore.storage.redis_store import RedisStore


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def store(client):
    return RedisStore(client=client)


def test_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisStore()


def test_get_decodes_json(store, client):
    client.get.return_value = json.dumps({"v": 1})
    assert store.get("k") == {"v": 1}
    client.get.assert_called_once_with("authcore:kv:k")


def test_corrupt_record_reads_as_missing(store, client):
    client.get.return_value = "not-json"
    assert store.get("k") is None


def test_put_passes_ttl(store, client):
    store.put("k", {"v": 1}, ttl_seconds=30)
    client.set.assert_called_once_with("authcore:kv:k", json.dumps({"v": 1}), ex=30)


def test_pop_uses_getdel(store, client):
    client.getdel.return_value = json.dumps({"token": "t"})
    assert store.pop("k") == {"token": "t"}
    client.getdel.assert_called_once_with("authcore:kv:k")


def test_redis_error_becomes_store_error(store, client):
    client.get.side_effect = RedisConnectionError("down")
    with pytest.raises(StoreError):
        store.get("k")


def test_verify_connection_failure(store, client):
    client.ping.side_effect = RedisConnectionError("down")
    with pytest.raises(StoreError):
        store.verify_connection()


def test_scan_strips_prefix(store, client):
    client.scan_iter.return_value = iter(["authcore:kv:session:a", "authcore:kv:session:b"])
    assert store.scan("session:") == ["session:a", "session:b"]
    client.scan_iter.assert_called_once_with(match="authcore:kv:session:*")


class TestUpdate:
    def test_retries_on_watch_error(self, store, client):
        pipe = client.pipeline.return_value
        pipe.get.return_value = json.dumps({"count": 1})
        pipe.execute.side_effect = [WatchError(), [True]]
        calls = []

        def _increment(current):
            calls.append(current)
            return {"count": current["count"] + 1}

        assert store.update("k", _increment, ttl_seconds=60) == {"count": 2}
        assert len(calls) == 2
        pipe.set.assert_called_with("authcore:kv:k", json.dumps({"count": 2}), ex=60)
        pipe.reset.assert_called_once()

    def test_keeps_ttl_when_not_given(self, store, client):
        pipe = client.pipeline.return_value
        pipe.get.return_value = json.dumps({"count": 1})
        store.update("k", lambda cur: {"count": 5})
        pipe.set.assert_called_once_with("authcore:kv:k", json.dumps({"count": 5}), keepttl=True)

    def test_none_deletes(self, store, client):
        pipe = client.pipeline.return_value
        pipe.get.return_value = None
        assert store.update("k", lambda cur: None) is None
        pipe.delete.assert_called_once_with("authcore:kv:k")

    def test_contention_gives_up(self, store, client):
        pipe = client.pipeline.return_value
        pipe.get.return_value = None
        pipe.execute.side_effect = WatchError()
        with pytest.raises(StoreError):
            store.update("k", lambda cur: {"n": 1})
        assert pipe.execute.call_count == RedisStore.MAX_TRANSACTION_RETRIES


class TestIdentities:
    def test_duplicate_username_rejected(self, store, client):
        client.set.side_effect = lambda key, value, nx=False: None if "identity_username" in key else True
        client.get.side_effect = lambda key: "someone-else" if "identity_username" in key else None
        identity = Identity(id="u1", username="alice", display_name="Alice", email="a@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_identity(identity)
        client.pipeline.return_value.execute.assert_not_called()

    def test_index_keys_claimed_with_set_nx(self, store, client):
        client.set.return_value = True
        identity = Identity(id="u1", username="Alice", display_name="Alice", email="A@example.com")
        store.create_identity(identity)
        client.set.assert_any_call("authcore:identity_username:alice", "u1", nx=True)
        client.set.assert_any_call("authcore:identity_email:a@example.com", "u1", nx=True)
        client.get.assert_not_called()
        client.pipeline.return_value.execute.assert_called_once()

    def test_email_conflict_releases_claimed_username(self, store, client):
        client.set.side_effect = lambda key, value, nx=False: None if "identity_email" in key else True
        client.get.return_value = "someone-else"
        identity = Identity(id="u1", username="alice", display_name="Alice", email="a@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_identity(identity)
        client.delete.assert_called_once_with("authcore:identity_username:alice")

    def test_recreating_own_identity_is_allowed(self, store, client):
        client.set.return_value = None
        client.get.return_value = "u1"
        identity = Identity(id="u1", username="alice", display_name="Alice", email="a@example.com")
        assert store.create_identity(identity) is identity
        client.delete.assert_not_called()

    def test_lookup_by_username_uses_index(self, store, client):
        record = {"id": "u1", "username": "alice", "display_name": "Alice", "email": "a@example.com"}
        values = {
            "authcore:identity_username:alice": "u1",
            "authcore:identity:u1": json.dumps(record),
        }
        client.get.side_effect = values.get
        identity = store.get_identity_by_username("  Alice ")
        assert identity.id == "u1"
        assert identity.role == "viewer"
