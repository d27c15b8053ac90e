"""DuckDB store for matches, session snapshots and remembered patterns.

One writable database file holds:

* ``matches``: committed matches per session, keyed ``reference::path``
* ``sessions``: full ``SelectionState`` snapshots as JSON
* ``patterns``: match lists remembered under a pattern text

Every write is an upsert, so retrying a save is harmless.
``SessionPersistence`` wraps the store for the matching engine: its calls are
async and never raise, because a lost save only costs durability.
"""
from __future__ import annotations

import asyncio
import importlib
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import orjson

from docmatch.match_types import Match

# Dynamic DuckDB import for pyright compatibility
_duckdb_mod = importlib.import_module("duckdb")

log = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"
_SCHEMA_KEY = "matches"


class SchemaVersionError(RuntimeError):
    """Raised when a store's schema version does not match expected."""


def _json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def _now() -> str:
    return datetime.now(UTC).isoformat()


def match_id(reference: str, path: str) -> str:
    return f"{reference}::{path}"


_SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS _schema_version (
    table_name VARCHAR PRIMARY KEY,
    version VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS matches (
    session_id VARCHAR NOT NULL,
    match_id VARCHAR NOT NULL,
    reference VARCHAR NOT NULL,
    path VARCHAR NOT NULL,
    score DOUBLE NOT NULL,
    method VARCHAR NOT NULL,
    matched_at VARCHAR NOT NULL,
    original_date VARCHAR,
    original_reference VARCHAR,
    position INTEGER NOT NULL,
    saved_at VARCHAR NOT NULL
);

-- (session_id, match_id) is unique, enforced by save_matches

CREATE TABLE IF NOT EXISTS sessions (
    session_id VARCHAR PRIMARY KEY,
    snapshot VARCHAR NOT NULL,
    match_count INTEGER NOT NULL DEFAULT 0,
    created_at VARCHAR NOT NULL,
    updated_at VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS patterns (
    pattern VARCHAR PRIMARY KEY,
    matches VARCHAR NOT NULL,
    match_count INTEGER NOT NULL DEFAULT 0,
    last_used VARCHAR NOT NULL
)
"""


class MatchStore:
    """Read/write interface to a ``matches.duckdb`` file."""

    def __init__(
        self,
        db_path: Path | str,
        *,
        create_if_missing: bool = False,
    ) -> None:
        self._db_path = Path(db_path)
        if not self._db_path.exists() and not create_if_missing:
            raise FileNotFoundError(f"Match database not found: {self._db_path}")
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Any = _duckdb_mod.connect(str(self._db_path))
        try:
            self._create_schema()
        except Exception:
            self._conn.close()
            raise

    def _create_schema(self) -> None:
        for stmt in _SCHEMA_DDL.split(";"):
            stmt = stmt.strip()
            if stmt:
                self._conn.execute(stmt)

        row = self._conn.execute(
            "SELECT version FROM _schema_version WHERE table_name = ?",
            [_SCHEMA_KEY],
        ).fetchone()
        if row is not None and str(row[0]) != SCHEMA_VERSION:
            raise SchemaVersionError(
                f"Schema version mismatch in {self._db_path}: "
                f"expected {SCHEMA_VERSION}, got {row[0]}"
            )
        if row is None:
            self._conn.execute(
                "INSERT INTO _schema_version (table_name, version) VALUES (?, ?)",
                [_SCHEMA_KEY, SCHEMA_VERSION],
            )

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ── matches ──────────────────────────────────────────────────────────

    def save_matches(self, matches: Iterable[Match], session_id: str) -> int:
        """Replace the stored matches of *session_id* with *matches*.

        Duplicate ``reference::path`` pairs keep their first occurrence.
        Returns the number of rows written.
        """
        saved_at = _now()
        rows: list[list[Any]] = []
        seen: set[str] = set()
        for match in matches:
            key = match_id(match.reference, match.path)
            if key in seen:
                continue
            seen.add(key)
            rows.append([
                session_id,
                key,
                match.reference,
                match.path,
                float(match.score),
                match.method,
                match.timestamp,
                match.original_date,
                match.original_reference,
                len(rows),
                saved_at,
            ])

        self._conn.execute("BEGIN TRANSACTION")
        try:
            self._conn.execute("DELETE FROM matches WHERE session_id = ?", [session_id])
            if rows:
                self._conn.executemany(
                    """
                    INSERT INTO matches
                    (session_id, match_id, reference, path, score, method,
                     matched_at, original_date, original_reference, position, saved_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
            self._conn.execute("COMMIT")
        except Exception:
            self._conn.execute("ROLLBACK")
            raise
        return len(rows)

    def load_matches(self, session_id: str) -> list[Match]:
        rows = self._conn.execute(
            """
            SELECT reference, path, score, method, matched_at,
                   original_date, original_reference
            FROM matches WHERE session_id = ?
            ORDER BY position
            """,
            [session_id],
        ).fetchall()
        return [
            Match(
                reference=r[0],
                path=r[1],
                score=float(r[2]),
                method=r[3],
                timestamp=r[4],
                session_id=session_id,
                original_date=r[5],
                original_reference=r[6],
            )
            for r in rows
        ]

    # ── sessions ─────────────────────────────────────────────────────────

    def save_session(self, snapshot: dict[str, Any]) -> str:
        """Upsert a session snapshot (``SelectionState.to_snapshot()``).

        Raises:
            ValueError: the snapshot has no ``session_id``.
        """
        session_id = str(snapshot.get("session_id") or "")
        if not session_id:
            raise ValueError("session snapshot has no session_id")
        now = _now()
        self._conn.execute(
            """
            INSERT INTO sessions (session_id, snapshot, match_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (session_id) DO UPDATE SET
                snapshot = excluded.snapshot,
                match_count = excluded.match_count,
                updated_at = excluded.updated_at
            """,
            [
                session_id,
                _json_dumps(snapshot),
                len(snapshot.get("matches") or []),
                now,
                now,
            ],
        )
        return session_id

    def load_session(self, session_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT snapshot FROM sessions WHERE session_id = ?",
            [session_id],
        ).fetchone()
        if row is None:
            return None
        return orjson.loads(row[0])

    def recent_sessions(self, limit: int = 10) -> list[dict[str, Any]]:
        """Newest-first session summaries (no snapshot bodies)."""
        rows = self._conn.execute(
            """
            SELECT session_id, match_count, created_at, updated_at
            FROM sessions ORDER BY updated_at DESC LIMIT ?
            """,
            [limit],
        ).fetchall()
        cols = ["session_id", "match_count", "created_at", "updated_at"]
        return [dict(zip(cols, r, strict=True)) for r in rows]

    def delete_session(self, session_id: str) -> None:
        """Remove a session snapshot together with its stored matches."""
        self._conn.execute("DELETE FROM matches WHERE session_id = ?", [session_id])
        self._conn.execute("DELETE FROM sessions WHERE session_id = ?", [session_id])

    # ── patterns ─────────────────────────────────────────────────────────

    def save_pattern(self, pattern: str, matches: Iterable[Match | dict[str, Any]]) -> None:
        items = [m.to_dict() if isinstance(m, Match) else dict(m) for m in matches]
        self._conn.execute(
            """
            INSERT INTO patterns (pattern, matches, match_count, last_used)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (pattern) DO UPDATE SET
                matches = excluded.matches,
                match_count = excluded.match_count,
                last_used = excluded.last_used
            """,
            [pattern, _json_dumps(items), len(items), _now()],
        )

    def get_pattern(self, pattern: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT pattern, matches, match_count, last_used FROM patterns WHERE pattern = ?",
            [pattern],
        ).fetchone()
        if row is None:
            return None
        return {
            "pattern": row[0],
            "matches": orjson.loads(row[1]),
            "match_count": int(row[2]),
            "last_used": row[3],
        }

    # ── housekeeping ─────────────────────────────────────────────────────

    def cleanup(self, days_old: int = 30) -> int:
        """Delete sessions (with their matches) and patterns idle for *days_old* days.

        Returns the number of rows deleted across all tables.
        """
        cutoff = (datetime.now(UTC) - timedelta(days=days_old)).isoformat()
        stale = [
            r[0]
            for r in self._conn.execute(
                "SELECT session_id FROM sessions WHERE updated_at < ?",
                [cutoff],
            ).fetchall()
        ]
        deleted = 0
        for session_id in stale:
            count = self._conn.execute(
                "SELECT COUNT(*) FROM matches WHERE session_id = ?",
                [session_id],
            ).fetchone()
            deleted += int(count[0]) + 1
            self.delete_session(session_id)

        pattern_count = self._conn.execute(
            "SELECT COUNT(*) FROM patterns WHERE last_used < ?",
            [cutoff],
        ).fetchone()
        self._conn.execute("DELETE FROM patterns WHERE last_used < ?", [cutoff])
        deleted += int(pattern_count[0])
        if deleted:
            log.info("cleanup removed %d rows older than %d days", deleted, days_old)
        return deleted

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> MatchStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class SessionPersistence:
    """Async, failure-tolerant facade over ``MatchStore``.

    Each call runs the store operation in a worker thread, one at a time.
    Failures are logged and turned into ``False``/``None``/``[]``; in-memory
    matching state is never touched.
    """

    def __init__(self, store: MatchStore | None) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    async def _call(
        self,
        what: str,
        fn: Callable[..., Any],
        *args: Any,
        default: Any = None,
    ) -> Any:
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except Exception as exc:
                log.warning("persistence %s failed: %s", what, exc)
                return default

    async def save_matches(self, matches: Iterable[Match], session_id: str) -> bool:
        store = self._store
        if store is None:
            return False
        written = await self._call(
            "save_matches", store.save_matches, list(matches), session_id, default=None
        )
        return written is not None

    async def load_matches(self, session_id: str) -> list[Match]:
        store = self._store
        if store is None:
            return []
        return await self._call("load_matches", store.load_matches, session_id, default=[])

    async def save_session(self, snapshot: dict[str, Any]) -> bool:
        store = self._store
        if store is None:
            return False
        saved = await self._call("save_session", store.save_session, snapshot, default=None)
        return saved is not None

    async def load_session(self, session_id: str) -> dict[str, Any] | None:
        store = self._store
        if store is None:
            return None
        return await self._call("load_session", store.load_session, session_id)

    async def save_pattern(self, pattern: str, matches: Iterable[Match]) -> bool:
        store = self._store
        if store is None:
            return False
        result = await self._call(
            "save_pattern", _save_pattern_ok, store, pattern, list(matches), default=False
        )
        return bool(result)

    async def get_pattern(self, pattern: str) -> dict[str, Any] | None:
        store = self._store
        if store is None:
            return None
        return await self._call("get_pattern", store.get_pattern, pattern)


def _save_pattern_ok(store: MatchStore, pattern: str, matches: list[Match]) -> bool:
    store.save_pattern(pattern, matches)
    return True



def open_store(db_path: Path | str, *, create_if_missing: bool = False) -> MatchStore | None:
    """Open a ``MatchStore``, or return ``None`` when it cannot be used.

    A missing, corrupt, locked or wrong-version store is logged as a warning;
    callers carry on with persistence disabled.
    """
    try:
        return MatchStore(db_path, create_if_missing=create_if_missing)
    except (OSError, RuntimeError, _duckdb_mod.Error) as exc:
        log.warning("match store %s unavailable, persistence disabled: %s", db_path, exc)
        return None
