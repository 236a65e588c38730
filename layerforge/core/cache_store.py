"""Shared, content-addressed cache of compiled dependency closures.

Entries are keyed by the digest of a ``CacheKey`` and point at blobs in a
``ContentAddressedStore``. The index lives in SQLite so that several pipeline
invocations, in threads or in separate processes, can share it:

- Reads are concurrent (WAL journal mode).
- Writes are single-writer per key. Within a process a per-key lock
  serializes builders; across processes a claim row inserted inside a
  ``BEGIN IMMEDIATE`` transaction does. Waiters poll until the entry appears,
  the claim is released, or the claim is older than ``claim_timeout``.
- Entries are insert-only. An entry is never updated once written.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path

from layerforge.models.artifacts import CacheEntry, CacheKey

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_ENTRIES = """
CREATE TABLE IF NOT EXISTS cache_entries (
    cache_key       TEXT PRIMARY KEY,
    fingerprint     TEXT NOT NULL,
    profile         TEXT NOT NULL,
    features_json   TEXT NOT NULL DEFAULT '[]',
    extra_flags     TEXT NOT NULL DEFAULT '',
    artifacts_json  TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL
);
"""

_CREATE_CLAIMS = """
CREATE TABLE IF NOT EXISTS cache_claims (
    cache_key   TEXT PRIMARY KEY,
    owner       TEXT NOT NULL,
    claimed_at  REAL NOT NULL
);
"""

_CREATE_IDX_FINGERPRINT = """
CREATE INDEX IF NOT EXISTS idx_fingerprint ON cache_entries(fingerprint);
"""

_ENTRY_COLUMNS = (
    "cache_key, fingerprint, profile, features_json, extra_flags, "
    "artifacts_json, created_at"
)


class CacheStoreError(RuntimeError):
    """Raised when the cache index cannot be read or written."""


class DependencyCacheStore:
    """Insert-only cache index with cache-on-miss coordination.

    Parameters
    ----------
    db_path:
        Path to the SQLite index. Created if it does not exist.
    claim_timeout:
        Seconds after which another builder's claim is considered abandoned.
    poll_interval:
        Seconds between checks while waiting on another builder's claim.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        claim_timeout: float = 3600.0,
        poll_interval: float = 0.5,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._claim_timeout = claim_timeout
        self._poll_interval = poll_interval
        self._locks_guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute(_CREATE_ENTRIES)
            conn.execute(_CREATE_CLAIMS)
            conn.execute(_CREATE_IDX_FINGERPRINT)

    @staticmethod
    @contextmanager
    def _immediate(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Run a block inside a write-locking transaction."""
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def lookup(self, cache_key: str) -> CacheEntry | None:
        """Return the entry for a cache key digest, or None."""
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM cache_entries WHERE cache_key = ?",
                (cache_key,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def entries(self, fingerprint: str | None = None) -> list[CacheEntry]:
        """Return all entries, oldest first, optionally for one fingerprint."""
        query = f"SELECT {_ENTRY_COLUMNS} FROM cache_entries"
        params: tuple[str, ...] = ()
        if fingerprint is not None:
            query += " WHERE fingerprint = ?"
            params = (fingerprint,)
        with closing(self._connect()) as conn:
            rows = conn.execute(query + " ORDER BY created_at ASC", params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def pending_claims(self) -> list[tuple[str, str]]:
        """Return (cache_key, owner) for every outstanding claim."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT cache_key, owner FROM cache_claims ORDER BY claimed_at"
            ).fetchall()
        return [(row[0], row[1]) for row in rows]

    # ------------------------------------------------------------------
    # Cache-on-miss
    # ------------------------------------------------------------------

    def get_or_create(
        self, key: CacheKey, build: Callable[[], dict[str, str]]
    ) -> tuple[CacheEntry, bool]:
        """Return the entry for *key*, building it at most once on a miss.

        *build* is called only by the single builder that wins the claim for
        this key and must return the unit name -> content address mapping.
        Returns ``(entry, reused)``; ``reused`` is False only for the caller
        whose *build* produced the entry.
        """
        digest = key.digest
        entry = self.lookup(digest)
        if entry is not None:
            return entry, True

        with self._key_lock(digest):
            entry = self.lookup(digest)
            if entry is not None:
                return entry, True

            owner = f"{os.getpid()}:{threading.get_ident()}:{uuid.uuid4().hex[:8]}"
            entry = self._claim(digest, owner)
            if entry is not None:
                return entry, True

            try:
                artifacts = build()
            except BaseException:
                self._release(digest, owner)
                raise
            return self._publish(key, artifacts, owner), False

    def _key_lock(self, digest: str) -> threading.Lock:
        with self._locks_guard:
            return self._key_locks.setdefault(digest, threading.Lock())

    def _claim(self, digest: str, owner: str) -> CacheEntry | None:
        """Claim *digest* for building, or return the entry another builder made."""
        waited = False
        while True:
            with closing(self._connect()) as conn, self._immediate(conn):
                row = conn.execute(
                    f"SELECT {_ENTRY_COLUMNS} FROM cache_entries WHERE cache_key = ?",
                    (digest,),
                ).fetchone()
                if row:
                    return self._row_to_entry(row)

                claim = conn.execute(
                    "SELECT owner, claimed_at FROM cache_claims WHERE cache_key = ?",
                    (digest,),
                ).fetchone()
                now = time.time()
                if claim is None or now - claim[1] > self._claim_timeout:
                    if claim is not None:
                        logger.warning(
                            "Taking over stale cache claim %s held by %s",
                            digest[:19],
                            claim[0],
                        )
                    conn.execute(
                        "INSERT OR REPLACE INTO cache_claims (cache_key, owner, claimed_at) "
                        "VALUES (?, ?, ?)",
                        (digest, owner, now),
                    )
                    return None

            if not waited:
                logger.info(
                    "Cache key %s is being built by %s; waiting", digest[:19], claim[0]
                )
                waited = True
            time.sleep(self._poll_interval)

    def _publish(
        self, key: CacheKey, artifacts: dict[str, str], owner: str
    ) -> CacheEntry:
        entry = CacheEntry(
            cache_key=key.digest,
            fingerprint=key.fingerprint,
            profile=key.profile,
            features=key.features,
            extra_flags=key.extra_flags,
            artifacts=dict(artifacts),
        )
        with closing(self._connect()) as conn, self._immediate(conn):
            conn.execute(
                f"INSERT OR IGNORE INTO cache_entries ({_ENTRY_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.cache_key,
                    entry.fingerprint,
                    entry.profile,
                    json.dumps(list(entry.features)),
                    entry.extra_flags,
                    json.dumps(entry.artifacts, sort_keys=True),
                    entry.created_at.isoformat(),
                ),
            )
            conn.execute(
                "DELETE FROM cache_claims WHERE cache_key = ? AND owner = ?",
                (entry.cache_key, owner),
            )
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM cache_entries WHERE cache_key = ?",
                (entry.cache_key,),
            ).fetchone()
        if row is None:
            raise CacheStoreError(f"Cache entry {entry.cache_key} vanished after insert")
        # A builder that took over a stale claim may lose to the original one;
        # the first insert wins and is what every caller sees.
        return self._row_to_entry(row)

    def _release(self, digest: str, owner: str) -> None:
        with closing(self._connect()) as conn, self._immediate(conn):
            conn.execute(
                "DELETE FROM cache_claims WHERE cache_key = ? AND owner = ?",
                (digest, owner),
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> CacheEntry:
        (
            cache_key,
            fingerprint,
            profile,
            features_json,
            extra_flags,
            artifacts_json,
            created_at,
        ) = row
        return CacheEntry(
            cache_key=cache_key,
            fingerprint=fingerprint,
            profile=profile,
            features=tuple(json.loads(features_json)),
            extra_flags=extra_flags,
            artifacts=json.loads(artifacts_json),
            created_at=datetime.fromisoformat(created_at)
            if created_at
            else datetime.now(timezone.utc),
        )
