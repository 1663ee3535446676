import json
from unittest import mock

import pytest
import redis

from cache import RedisCache


@pytest.fixture
def unreachable_cache():
    # Nothing listens on port 1
    return RedisCache("redis://127.0.0.1:1/0", socket_timeout=0.05)


@pytest.fixture
def mocked_cache():
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = mock.Mock()
    return cache


def test_unreachable_server_behaves_as_a_miss(unreachable_cache):
    assert unreachable_cache.try_get("rec:feed:alice:1:20") == (False, None)
    assert unreachable_cache.try_set("rec:feed:alice:1:20", {"posts": []}, 600) is False
    assert unreachable_cache.delete("rec:feed:alice:1:20") is False
    assert unreachable_cache.ping() is False


def test_hit_decodes_json(mocked_cache):
    mocked_cache.client.get.return_value = json.dumps({"epoch": "e1", "vector": [0.5, 0.5]})

    assert mocked_cache.try_get("rec:feat:post:p1") == (True, {"epoch": "e1", "vector": [0.5, 0.5]})


def test_missing_key_is_a_miss(mocked_cache):
    mocked_cache.client.get.return_value = None

    assert mocked_cache.try_get("rec:feat:post:p1") == (False, None)


def test_undecodable_payload_is_discarded(mocked_cache):
    mocked_cache.client.get.return_value = "{not json"

    assert mocked_cache.try_get("rec:vocab:hashtags") == (False, None)


def test_timeout_is_a_miss(mocked_cache):
    mocked_cache.client.get.side_effect = redis.TimeoutError("Timeout reading from socket")
    mocked_cache.client.set.side_effect = redis.TimeoutError("Timeout writing to socket")

    assert mocked_cache.try_get("k") == (False, None)
    assert mocked_cache.try_set("k", 1, 60) is False


def test_set_writes_json_with_ttl(mocked_cache):
    assert mocked_cache.try_set("rec:feed:alice:1:20", {"total": 3}, 600) is True

    mocked_cache.client.set.assert_called_once_with("rec:feed:alice:1:20", json.dumps({"total": 3}), ex=600)


def test_delete_without_keys_skips_the_server(mocked_cache):
    assert mocked_cache.delete() is True
    mocked_cache.client.delete.assert_not_called()


def test_delete_passes_all_keys(mocked_cache):
    assert mocked_cache.delete("a", "b") is True
    mocked_cache.client.delete.assert_called_once_with("a", "b")
