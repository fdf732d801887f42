"""Unit tests for store/kv.py -- CredentialStore primitives.

Covers:
- string set/get/getdel and TTL expiry driven by the injected clock
- incr creates counters and rejects non-integer values
- hash helpers: hset created-count, hsetnx, hcompare_and_set, hreplace with
  and without a prefix, hdel compare-and-remove
- sets, lists (LPUSH/LRANGE/LTRIM semantics) and keys(prefix) escaping
- SQLAlchemy failures surface as StoreUnavailable
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from core.errors import MalformedStoredData, StoreUnavailable

# ---------------------------------------------------------------------------
# Strings, counters and expiry
# ---------------------------------------------------------------------------


class TestStrings:
    def test_set_get_roundtrip(self, store):
        store.set("k", "v")
        assert store.get("k") == "v"
        assert store.get("missing") is None

    def test_set_replaces_value_and_ttl(self, store, clock):
        store.set("k", "old", ttl=10)
        store.set("k", "new")
        clock.advance(60)
        assert store.get("k") == "new"
        assert store.ttl("k") is None

    def test_value_expires_after_ttl(self, store, clock):
        store.set("challenge", "abc", ttl=300)
        clock.advance(299)
        assert store.get("challenge") == "abc"
        clock.advance(2)
        assert store.get("challenge") is None
        assert store.exists("challenge") is False

    def test_getdel_returns_value_once(self, store):
        store.set("challenge", "abc", ttl=300)
        assert store.getdel("challenge") == "abc"
        assert store.getdel("challenge") is None
        assert store.get("challenge") is None

    def test_getdel_on_expired_key_returns_none(self, store, clock):
        store.set("challenge", "abc", ttl=5)
        clock.advance(6)
        assert store.getdel("challenge") is None

    def test_mget_preserves_order_and_missing(self, store):
        store.set("a", "1")
        store.set("c", "3")
        assert store.mget(["a", "b", "c"]) == ["1", None, "3"]


class TestCounters:
    def test_incr_creates_then_increments(self, store):
        assert store.incr("n") == 1
        assert store.incr("n") == 2
        assert store.incr("n", 5) == 7
        assert store.get("n") == "7"

    def test_incr_non_integer_raises_malformed(self, store):
        store.set("n", "not-a-number")
        with pytest.raises(MalformedStoredData):
            store.incr("n")

    def test_expire_and_ttl(self, store, clock):
        store.incr("n")
        assert store.expire("n", 900) is True
        assert store.ttl("n") == pytest.approx(900)
        clock.advance(100)
        assert store.ttl("n") == pytest.approx(800)
        clock.advance(801)
        assert store.get("n") is None

    def test_expire_missing_key_returns_false(self, store):
        assert store.expire("nope", 10) is False


# ---------------------------------------------------------------------------
# Hashes
# ---------------------------------------------------------------------------


class TestHashes:
    def test_hset_reports_created_fields(self, store):
        assert store.hset("h", {"a": "1", "b": "2"}) == 2
        assert store.hset("h", {"a": "10", "c": "3"}) == 1
        assert store.hgetall("h") == {"a": "10", "b": "2", "c": "3"}
        assert store.hmget("h", "a", "zz") == ["10", None]

    def test_hsetnx_only_creates_once(self, store):
        assert store.hsetnx("h", "f", "first") is True
        assert store.hsetnx("h", "f", "second") is False
        assert store.hget("h", "f") == "first"

    def test_hcompare_and_set(self, store):
        store.hset("h", {"f": "v1"})
        assert store.hcompare_and_set("h", "f", "v1", "v2") is True
        # Stale expectation loses.
        assert store.hcompare_and_set("h", "f", "v1", "v3") is False
        assert store.hget("h", "f") == "v2"

    def test_hreplace_whole_hash(self, store):
        store.hset("h", {"a": "1", "b": "2"})
        store.hreplace("h", {"c": "3"})
        assert store.hgetall("h") == {"c": "3"}

    def test_hreplace_prefix_keeps_other_fields(self, store):
        store.hset("h", {"secret": "s", "backup:1": "x", "backup:2": "y"})
        store.hreplace("h", {"backup:3": "z"}, prefix="backup:")
        assert store.hgetall("h") == {"secret": "s", "backup:3": "z"}

    def test_hkeys_prefix_escapes_wildcards(self, store):
        store.hset("h", {"backup:a": "1", "backupXa": "2", "back%": "3"})
        assert store.hkeys("h", "backup:") == ["backup:a"]
        assert store.hkeys("h", "back%") == ["back%"]

    def test_hdel_removes_once(self, store):
        store.hset("h", {"code": "x"})
        assert store.hdel("h", "code") == 1
        assert store.hdel("h", "code") == 0


# ---------------------------------------------------------------------------
# Sets, lists and keys
# ---------------------------------------------------------------------------


class TestSets:
    def test_sadd_srem_membership(self, store):
        assert store.sadd("s", "a", "b") == 2
        assert store.sadd("s", "a") == 0
        assert store.sismember("s", "a") is True
        assert store.scard("s") == 2
        assert store.srem("s", "a") == 1
        assert store.smembers("s") == {"b"}


class TestLists:
    def test_lpush_puts_newest_first(self, store):
        store.lpush("l", "1")
        assert store.lpush("l", "2", "3") == 3
        assert store.lrange("l", 0, -1) == ["3", "2", "1"]
        assert store.lrange("l", 0, 0) == ["3"]
        assert store.lrange("l", -2, -1) == ["2", "1"]

    def test_ltrim_keeps_head(self, store):
        for i in range(10):
            store.lpush("l", str(i))
        store.ltrim("l", 0, 2)
        assert store.lrange("l", 0, -1) == ["9", "8", "7"]
        assert store.llen("l") == 3

    def test_ltrim_general_range(self, store):
        for i in range(5):
            store.lpush("l", str(i))
        store.ltrim("l", 1, 2)
        assert store.lrange("l", 0, -1) == ["3", "2"]


class TestKeys:
    def test_keys_prefix_and_expiry(self, store, clock):
        store.set("user_action:u1:login:1", "1")
        store.set("user_action:u1:login:2", "1", ttl=10)
        store.set("user_action:u10:login:1", "1")
        assert store.keys("user_action:u1:login:") == ["user_action:u1:login:1", "user_action:u1:login:2"]
        clock.advance(11)
        assert store.keys("user_action:u1:login:") == ["user_action:u1:login:1"]

    def test_delete_counts_existing(self, store):
        store.set("a", "1")
        store.sadd("b", "x")
        assert store.delete("a", "b", "c") == 2
        assert store.exists("a") is False

    def test_purge_expired(self, store, clock):
        store.set("a", "1", ttl=1)
        store.set("b", "1")
        clock.advance(2)
        assert store.purge_expired() == 1
        assert store.get("b") == "1"


# ---------------------------------------------------------------------------
# Failure translation
# ---------------------------------------------------------------------------


def test_driver_error_becomes_store_unavailable(store):
    broken = MagicMock()
    broken.begin.side_effect = OperationalError("SELECT 1", {}, Exception("database is locked"))
    store.engine = broken
    with pytest.raises(StoreUnavailable) as exc_info:
        store.get("k")
    assert exc_info.value.operation == "get"
