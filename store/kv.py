"""
store/kv.py -- SQLAlchemy Core key-value store for credentials and counters.

Pattern: Repository. CredentialStore exposes the small set of data-structure
primitives the security services need (strings, counters, hashes, sets, lists,
per-key TTL) and hides SQL entirely. Every public method is one transaction,
so every public method is atomic with respect to other instances sharing the
same database.

Atomicity contract (relied on by security/):
  getdel()  -- compare-and-delete. Of two concurrent callers at most one
               receives the value; WebAuthn challenges are consumed with it.
  hdel()    -- returns the number of fields this call actually removed. A
               backup code is redeemed only by the caller that got 1.
  incr()    -- compare-and-swap loop; concurrent increments are never lost.
  hreplace()-- delete + insert in one transaction; readers never observe a
               half-written MFA record.
  hsetnx()  -- insert-if-absent; a credential ID is registered once.
  hcompare_and_set()
            -- conditional overwrite; of two assertions carrying the same
               WebAuthn counter only one can advance the stored device.

Expiry: kv_expiry holds one absolute deadline per key. Every read and write
checks it first and purges the key when the deadline has passed, so TTLs are
enforced by the store itself and survive process restarts.

Security:
  All queries use bound parameters. No f-strings in SQL. Prefix scans escape
  LIKE wildcards.

Layer rule: no imports from security/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from core.errors import MalformedStoredData, StoreUnavailable

logger = logging.getLogger("trustgate.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'trustgate_credentials.db'}"

# Attempts for compare-and-swap loops before giving up with StoreUnavailable.
_CAS_RETRIES = 8

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_strings = Table(
    "kv_strings",
    _metadata,
    Column("key", String(512), primary_key=True),
    Column("value", Text, nullable=False),
)

_hashes = Table(
    "kv_hashes",
    _metadata,
    Column("key", String(512), primary_key=True),
    Column("field", String(512), primary_key=True),
    Column("value", Text, nullable=False),
)

_sets = Table(
    "kv_sets",
    _metadata,
    Column("key", String(512), primary_key=True),
    Column("member", String(512), primary_key=True),
)

_lists = Table(
    "kv_lists",
    _metadata,
    # Monotonic id gives list order: the highest id is the head (newest push).
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key", String(512), nullable=False, index=True),
    Column("value", Text, nullable=False),
)

_expiry = Table(
    "kv_expiry",
    _metadata,
    Column("key", String(512), primary_key=True),
    Column("expires_at", Float, nullable=False),  # epoch seconds
)

_DATA_TABLES = (_strings, _hashes, _sets, _lists)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _redis_slice(items: list, start: int, stop: int) -> list:
    """Apply inclusive, negative-aware [start, stop] indices the way LRANGE does."""
    n = len(items)
    if start < 0:
        start = max(n + start, 0)
    if stop < 0:
        stop = n + stop
    if start > stop or start >= n:
        return []
    return items[start : stop + 1]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Key-value store backed by any SQLAlchemy database URL.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        store.set("webauthn:challenge:u1", "abc", ttl=300)
        store.getdel("webauthn:challenge:u1")   # "abc", then gone
        store.close()

    clock is injectable so tests can move time forward without sleeping.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Callable[[], float] = time.time) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self._clock = clock
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        try:
            _metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("schema setup") from exc

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _tx(self, operation: str) -> Iterator[Connection]:
        """Run one atomic unit of work, translating driver errors.

        Only SQLAlchemyError is translated to StoreUnavailable. Anything else
        (e.g. MalformedStoredData raised by a parser) rolls the transaction
        back and propagates unchanged.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.warning("Credential store %s failed: %s", operation, exc)
            raise StoreUnavailable(operation) from exc

    def _insert_ignore(self, table: Table):
        """Return an INSERT that silently skips rows violating the primary key."""
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            return sqlite.insert(table).on_conflict_do_nothing()
        if dialect == "postgresql":
            return postgresql.insert(table).on_conflict_do_nothing()
        return table.insert().prefix_with("IGNORE")

    def _live(self, conn: Connection, key: str) -> bool:
        """Return False (after purging) when key carries a passed deadline."""
        row = conn.execute(select(_expiry.c.expires_at).where(_expiry.c.key == key)).fetchone()
        if row is None or row.expires_at > self._clock():
            return True
        self._purge(conn, key)
        return False

    def _purge(self, conn: Connection, key: str) -> None:
        for table in _DATA_TABLES:
            conn.execute(table.delete().where(table.c.key == key))
        conn.execute(_expiry.delete().where(_expiry.c.key == key))

    def _exists(self, conn: Connection, key: str) -> bool:
        for table in _DATA_TABLES:
            if conn.execute(select(table.c.key).where(table.c.key == key).limit(1)).fetchone() is not None:
                return True
        return False

    def _set_deadline(self, conn: Connection, key: str, seconds: float) -> None:
        conn.execute(_expiry.delete().where(_expiry.c.key == key))
        conn.execute(_expiry.insert().values(key=key, expires_at=self._clock() + seconds))

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def delete(self, *keys: str) -> int:
        """Remove keys of any type. Returns how many existed."""
        removed = 0
        with self._tx("delete") as conn:
            for key in keys:
                if self._live(conn, key) and self._exists(conn, key):
                    removed += 1
                self._purge(conn, key)
        return removed

    def exists(self, key: str) -> bool:
        with self._tx("exists") as conn:
            return self._live(conn, key) and self._exists(conn, key)

    def expire(self, key: str, seconds: float) -> bool:
        """Attach a TTL to an existing key. Returns False if the key is absent."""
        with self._tx("expire") as conn:
            if not (self._live(conn, key) and self._exists(conn, key)):
                return False
            self._set_deadline(conn, key, seconds)
            return True

    def ttl(self, key: str) -> float | None:
        """Seconds until key expires, or None when it has no TTL or is absent."""
        with self._tx("ttl") as conn:
            if not self._live(conn, key):
                return None
            row = conn.execute(select(_expiry.c.expires_at).where(_expiry.c.key == key)).fetchone()
        return None if row is None else max(row.expires_at - self._clock(), 0.0)

    def keys(self, prefix: str) -> list[str]:
        """Enumerate live keys starting with prefix, sorted."""
        pattern = _escape_like(prefix) + "%"
        found: set[str] = set()
        with self._tx("keys") as conn:
            for table in _DATA_TABLES:
                rows = conn.execute(select(table.c.key).where(table.c.key.like(pattern, escape="\\")).distinct())
                found.update(row.key for row in rows)
            live = [key for key in sorted(found) if self._live(conn, key)]
        return live

    # ------------------------------------------------------------------
    # Strings and counters
    # ------------------------------------------------------------------

    def _get_string(self, conn: Connection, key: str) -> str | None:
        if not self._live(conn, key):
            return None
        row = conn.execute(select(_strings.c.value).where(_strings.c.key == key)).fetchone()
        return row.value if row is not None else None

    def get(self, key: str) -> str | None:
        with self._tx("get") as conn:
            return self._get_string(conn, key)

    def mget(self, keys: list[str]) -> list[str | None]:
        with self._tx("mget") as conn:
            return [self._get_string(conn, key) for key in keys]

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        """Store a string value, replacing any previous value and TTL."""
        with self._tx("set") as conn:
            self._live(conn, key)
            conn.execute(_strings.delete().where(_strings.c.key == key))
            conn.execute(_expiry.delete().where(_expiry.c.key == key))
            conn.execute(_strings.insert().values(key=key, value=value))
            if ttl is not None:
                self._set_deadline(conn, key, ttl)

    def getdel(self, key: str) -> str | None:
        """Atomically read and delete a string value.

        The delete is conditioned on the value just read, so when two callers
        race only the one whose DELETE affected a row gets the value back.
        """
        with self._tx("getdel") as conn:
            value = self._get_string(conn, key)
            if value is None:
                return None
            result = conn.execute(_strings.delete().where((_strings.c.key == key) & (_strings.c.value == value)))
            conn.execute(_expiry.delete().where(_expiry.c.key == key))
        return value if result.rowcount == 1 else None

    def incr(self, key: str, amount: int = 1) -> int:
        """Atomically add amount to an integer counter, creating it at 0."""
        for _ in range(_CAS_RETRIES):
            with self._tx("incr") as conn:
                current = self._get_string(conn, key)
                if current is None:
                    result = conn.execute(self._insert_ignore(_strings).values(key=key, value=str(amount)))
                    if result.rowcount == 1:
                        return amount
                    continue
                try:
                    updated = int(current) + amount
                except ValueError:
                    raise MalformedStoredData(key, "counter is not an integer") from None
                result = conn.execute(
                    _strings.update()
                    .where((_strings.c.key == key) & (_strings.c.value == current))
                    .values(value=str(updated))
                )
                if result.rowcount == 1:
                    return updated
        logger.warning("incr on %s lost the compare-and-swap race %d times", key, _CAS_RETRIES)
        raise StoreUnavailable("incr")

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    def hget(self, key: str, field: str) -> str | None:
        return self.hmget(key, field)[0]

    def hmget(self, key: str, *fields: str) -> list[str | None]:
        mapping = self.hgetall(key)
        return [mapping.get(f) for f in fields]

    def hgetall(self, key: str) -> dict[str, str]:
        with self._tx("hgetall") as conn:
            if not self._live(conn, key):
                return {}
            rows = conn.execute(select(_hashes.c.field, _hashes.c.value).where(_hashes.c.key == key)).fetchall()
        return {row.field: row.value for row in rows}

    def hkeys(self, key: str, prefix: str = "") -> list[str]:
        with self._tx("hkeys") as conn:
            if not self._live(conn, key):
                return []
            stmt = select(_hashes.c.field).where(_hashes.c.key == key)
            if prefix:
                stmt = stmt.where(_hashes.c.field.like(_escape_like(prefix) + "%", escape="\\"))
            rows = conn.execute(stmt.order_by(_hashes.c.field)).fetchall()
        return [row.field for row in rows]

    def hset(self, key: str, mapping: dict[str, str]) -> int:
        """Set fields on a hash. Returns how many fields were newly created."""
        created = 0
        with self._tx("hset") as conn:
            self._live(conn, key)
            for field, value in mapping.items():
                result = conn.execute(_hashes.delete().where((_hashes.c.key == key) & (_hashes.c.field == field)))
                if result.rowcount == 0:
                    created += 1
                conn.execute(_hashes.insert().values(key=key, field=field, value=value))
        return created

    def hsetnx(self, key: str, field: str, value: str) -> bool:
        """Create field only if it does not exist yet. Returns True if created."""
        with self._tx("hsetnx") as conn:
            self._live(conn, key)
            result = conn.execute(self._insert_ignore(_hashes).values(key=key, field=field, value=value))
        return result.rowcount == 1

    def hcompare_and_set(self, key: str, field: str, expected: str, value: str) -> bool:
        """Overwrite field only while it still holds expected.

        Two callers that read the same old value cannot both win; the loser
        gets False and the field keeps the winner's value.
        """
        with self._tx("hcompare_and_set") as conn:
            if not self._live(conn, key):
                return False
            result = conn.execute(
                _hashes.update()
                .where((_hashes.c.key == key) & (_hashes.c.field == field) & (_hashes.c.value == expected))
                .values(value=value)
            )
        return result.rowcount == 1

    def hreplace(self, key: str, mapping: dict[str, str], prefix: str = "") -> None:
        """Replace every field starting with prefix (all fields when "") by mapping.

        One transaction: concurrent readers see either the old fields or the
        new ones, never a mix.
        """
        with self._tx("hreplace") as conn:
            self._live(conn, key)
            stmt = _hashes.delete().where(_hashes.c.key == key)
            if prefix:
                stmt = stmt.where(_hashes.c.field.like(_escape_like(prefix) + "%", escape="\\"))
            conn.execute(stmt)
            for field, value in mapping.items():
                conn.execute(_hashes.insert().values(key=key, field=field, value=value))

    def hdel(self, key: str, *fields: str) -> int:
        """Delete fields. Returns how many this call removed (compare-and-remove)."""
        removed = 0
        with self._tx("hdel") as conn:
            if not self._live(conn, key):
                return 0
            for field in fields:
                result = conn.execute(_hashes.delete().where((_hashes.c.key == key) & (_hashes.c.field == field)))
                removed += result.rowcount
        return removed

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    def sadd(self, key: str, *members: str) -> int:
        """Add members to a set. Returns how many were not already present."""
        added = 0
        with self._tx("sadd") as conn:
            self._live(conn, key)
            for member in members:
                result = conn.execute(self._insert_ignore(_sets).values(key=key, member=member))
                added += max(result.rowcount, 0)
        return added

    def srem(self, key: str, *members: str) -> int:
        removed = 0
        with self._tx("srem") as conn:
            if not self._live(conn, key):
                return 0
            for member in members:
                result = conn.execute(_sets.delete().where((_sets.c.key == key) & (_sets.c.member == member)))
                removed += result.rowcount
        return removed

    def sismember(self, key: str, member: str) -> bool:
        with self._tx("sismember") as conn:
            if not self._live(conn, key):
                return False
            row = conn.execute(
                select(_sets.c.member).where((_sets.c.key == key) & (_sets.c.member == member))
            ).fetchone()
        return row is not None

    def smembers(self, key: str) -> set[str]:
        with self._tx("smembers") as conn:
            if not self._live(conn, key):
                return set()
            rows = conn.execute(select(_sets.c.member).where(_sets.c.key == key)).fetchall()
        return {row.member for row in rows}

    def scard(self, key: str) -> int:
        return len(self.smembers(key))

    # ------------------------------------------------------------------
    # Lists (head = most recent push)
    # ------------------------------------------------------------------

    def lpush(self, key: str, *values: str) -> int:
        """Push values onto the head of a list. Returns the new length."""
        with self._tx("lpush") as conn:
            self._live(conn, key)
            for value in values:
                conn.execute(_lists.insert().values(key=key, value=value))
            rows = conn.execute(select(_lists.c.id).where(_lists.c.key == key)).fetchall()
        return len(rows)

    def lrange(self, key: str, start: int, stop: int) -> list[str]:
        with self._tx("lrange") as conn:
            if not self._live(conn, key):
                return []
            rows = conn.execute(
                select(_lists.c.value).where(_lists.c.key == key).order_by(_lists.c.id.desc())
            ).fetchall()
        return _redis_slice([row.value for row in rows], start, stop)

    def llen(self, key: str) -> int:
        return len(self.lrange(key, 0, -1))

    def ltrim(self, key: str, start: int, stop: int) -> None:
        """Keep only the elements in [start, stop] (inclusive, head first)."""
        with self._tx("ltrim") as conn:
            if not self._live(conn, key):
                return
            if start == 0 and stop >= 0:
                # Common case (bounded log): drop everything older than index stop.
                cutoff = conn.execute(
                    select(_lists.c.id)
                    .where(_lists.c.key == key)
                    .order_by(_lists.c.id.desc())
                    .offset(stop + 1)
                    .limit(1)
                ).fetchone()
                if cutoff is not None:
                    conn.execute(_lists.delete().where((_lists.c.key == key) & (_lists.c.id <= cutoff.id)))
                return
            ids = [
                row.id
                for row in conn.execute(
                    select(_lists.c.id).where(_lists.c.key == key).order_by(_lists.c.id.desc())
                ).fetchall()
            ]
            keep = set(_redis_slice(ids, start, stop))
            drop = [i for i in ids if i not in keep]
            if drop:
                conn.execute(_lists.delete().where(_lists.c.id.in_(drop)))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete every key whose deadline has passed. Returns keys removed.

        Reads already ignore expired keys; this only reclaims space.
        """
        with self._tx("purge_expired") as conn:
            rows = conn.execute(select(_expiry.c.key).where(_expiry.c.expires_at <= self._clock())).fetchall()
            for row in rows:
                self._purge(conn, row.key)
        return len(rows)

    def close(self) -> None:
        self.engine.dispose()
