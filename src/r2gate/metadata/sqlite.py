"""SQLite-backed metadata store for r2gate.

Implements the MetadataStore protocol using aiosqlite for async access.
All tables use CREATE TABLE IF NOT EXISTS for schema idempotency.
Permissions, IP allowlists and audit details are stored as JSON text.

The one-active-grant rule is enforced by a partial unique index. Quota
counters are backed by the stored_objects ledger, and every ledger change
runs in one IMMEDIATE transaction. All writes share a single connection,
so they are serialized by a write lock to keep one task from committing
or rolling back another task's statements.
"""

import asyncio
import logging
import secrets
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from r2gate.errors import ConflictError, NotFoundError, QuotaExceededError

logger = logging.getLogger(__name__)

_GRANT_COLUMNS = (
    "user_id",
    "bucket_name",
    "region",
    "endpoint",
    "access_key_id",
    "secret_hash",
    "path_prefix",
    "permissions",
    "max_storage_bytes",
    "max_file_count",
    "current_storage_bytes",
    "current_file_count",
    "is_readonly",
    "is_active",
    "expires_at",
    "last_used_at",
    "created_at",
    "updated_at",
)

# Columns update_grant may touch; user_id and id are immutable.
_GRANT_MUTABLE = frozenset(_GRANT_COLUMNS) - {"user_id", "created_at"}

_TOKEN_COLUMNS = (
    "user_id",
    "grant_id",
    "token_hash",
    "token_hint",
    "scope",
    "ip_whitelist",
    "expires_at",
    "usage_count",
    "last_used_at",
    "is_revoked",
    "created_at",
    "revoked_at",
)

_ACCESS_LOG_COLUMNS = (
    "user_id",
    "grant_id",
    "operation",
    "resource_path",
    "status_code",
    "bytes_transferred",
    "response_time_ms",
    "ip_address",
    "user_agent",
    "error_message",
    "created_at",
)

_AUDIT_COLUMNS = (
    "user_id",
    "grant_id",
    "event_type",
    "risk_level",
    "details",
    "ip_address",
    "user_agent",
    "created_at",
)


def _now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _insert_sql(table: str, columns: tuple[str, ...]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


class SQLiteMetadataStore:
    """Metadata store backed by a local SQLite database.

    Attributes:
        db_path: Path to the SQLite database file.
        _db: The aiosqlite connection, set after init_db().
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the SQLite metadata store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Use ':memory:' for an in-memory database (useful in tests).
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def init_db(self) -> None:
        """Open the database and create tables if they do not exist.

        Sets WAL journal mode, NORMAL synchronous, enables foreign keys,
        and sets a 5-second busy timeout. Idempotent.
        """
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute("PRAGMA synchronous = NORMAL")
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.execute("PRAGMA busy_timeout = 5000")

        await self._create_tables()

    async def _create_tables(self) -> None:
        """Create all tables and indexes if they do not already exist.

        Checks sqlite_master first to skip DDL on warm starts.
        """
        assert self._db is not None

        async with self._db.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name='stored_objects'"
        ) as cursor:
            if await cursor.fetchone() is not None:
                return

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS access_grants (
                id                     INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id                INTEGER NOT NULL,
                bucket_name            TEXT NOT NULL,
                region                 TEXT NOT NULL,
                endpoint               TEXT NOT NULL,
                access_key_id          TEXT NOT NULL UNIQUE,
                secret_hash            TEXT NOT NULL,
                path_prefix            TEXT NOT NULL,
                permissions            TEXT NOT NULL DEFAULT '[]',
                max_storage_bytes      INTEGER NOT NULL,
                max_file_count         INTEGER NOT NULL,
                current_storage_bytes  INTEGER NOT NULL DEFAULT 0,
                current_file_count     INTEGER NOT NULL DEFAULT 0,
                is_readonly            INTEGER NOT NULL DEFAULT 1,
                is_active              INTEGER NOT NULL DEFAULT 1,
                expires_at             TEXT,
                last_used_at           TEXT,
                created_at             TEXT NOT NULL,
                updated_at             TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_grants_one_active
                ON access_grants(user_id) WHERE is_active = 1;
            CREATE INDEX IF NOT EXISTS idx_grants_user
                ON access_grants(user_id);

            CREATE TABLE IF NOT EXISTS access_tokens (
                id            INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id       INTEGER NOT NULL,
                grant_id      INTEGER NOT NULL,
                token_hash    TEXT NOT NULL UNIQUE,
                token_hint    TEXT NOT NULL,
                scope         TEXT NOT NULL,
                ip_whitelist  TEXT NOT NULL DEFAULT '[]',
                expires_at    TEXT,
                usage_count   INTEGER NOT NULL DEFAULT 0,
                last_used_at  TEXT,
                is_revoked    INTEGER NOT NULL DEFAULT 0,
                created_at    TEXT NOT NULL,
                revoked_at    TEXT,

                FOREIGN KEY (grant_id) REFERENCES access_grants(id)
            );

            CREATE INDEX IF NOT EXISTS idx_tokens_user
                ON access_tokens(user_id);

            CREATE TABLE IF NOT EXISTS access_logs (
                id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id            INTEGER,
                grant_id           INTEGER,
                operation          TEXT NOT NULL,
                resource_path      TEXT NOT NULL,
                status_code        INTEGER NOT NULL,
                bytes_transferred  INTEGER NOT NULL DEFAULT 0,
                response_time_ms   INTEGER NOT NULL DEFAULT 0,
                ip_address         TEXT,
                user_agent         TEXT,
                error_message      TEXT,
                created_at         TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_access_logs_user
                ON access_logs(user_id, id);

            CREATE TABLE IF NOT EXISTS audit_logs (
                id           INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id      INTEGER,
                grant_id     INTEGER,
                event_type   TEXT NOT NULL,
                risk_level   TEXT NOT NULL,
                details      TEXT NOT NULL DEFAULT '{}',
                ip_address   TEXT,
                user_agent   TEXT,
                created_at   TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_logs_user
                ON audit_logs(user_id, id);

            CREATE TABLE IF NOT EXISTS stored_objects (
                key        TEXT PRIMARY KEY,
                grant_id   INTEGER NOT NULL,
                size       INTEGER NOT NULL,
                charge_id  TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_stored_objects_grant
                ON stored_objects(grant_id);

            CREATE TABLE IF NOT EXISTS schema_version (
                version    INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );
        """)

        async with self._db.execute(
            "SELECT version FROM schema_version"
        ) as cursor:
            applied = {r["version"] for r in await cursor.fetchall()}
        for version in (1, 2):
            if version not in applied:
                await self._db.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (version, _now_iso()),
                )

        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def ping(self) -> None:
        """Run ``SELECT 1``; raises if the connection is unusable."""
        assert self._db is not None
        async with self._db.execute("SELECT 1") as cursor:
            await cursor.fetchone()

    async def _fetch_one(self, sql: str, params: tuple | dict) -> dict[str, Any] | None:
        assert self._db is not None
        async with self._db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row is not None else None

    async def _fetch_all(self, sql: str, params: tuple | dict) -> list[dict[str, Any]]:
        assert self._db is not None
        async with self._db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    @asynccontextmanager
    async def _transaction(self):
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                await self._db.rollback()
                raise
            else:
                await self._db.commit()

    async def _write(self, sql: str, params: tuple) -> aiosqlite.Cursor:
        assert self._db is not None
        async with self._write_lock:
            try:
                cursor = await self._db.execute(sql, params)
            except sqlite3.Error:
                await self._db.rollback()
                raise
            await self._db.commit()
            return cursor

    async def _insert(self, table: str, columns: tuple[str, ...], record: dict[str, Any]) -> int:
        cursor = await self._write(
            _insert_sql(table, columns), tuple(record.get(c) for c in columns)
        )
        return cursor.lastrowid

    # -- Grants ----------------------------------------------------------------

    async def create_grant(self, record: dict[str, Any]) -> int:
        """Insert a new active grant.

        Raises:
            ConflictError: If the user already has an active grant.
        """
        assert self._db is not None
        row = dict(record)
        row.setdefault("is_active", 1)
        row.setdefault("current_storage_bytes", 0)
        row.setdefault("current_file_count", 0)
        try:
            return await self._insert("access_grants", _GRANT_COLUMNS, row)
        except sqlite3.IntegrityError as exc:
            if "access_grants.user_id" in str(exc):
                raise ConflictError() from exc
            raise

    async def get_grant(self, grant_id: int) -> dict[str, Any] | None:
        return await self._fetch_one("SELECT * FROM access_grants WHERE id = ?", (grant_id,))

    async def get_active_grant(self, user_id: int) -> dict[str, Any] | None:
        return await self._fetch_one(
            "SELECT * FROM access_grants WHERE user_id = ? AND is_active = 1", (user_id,)
        )

    async def get_grant_by_access_key(self, access_key_id: str) -> dict[str, Any] | None:
        return await self._fetch_one(
            "SELECT * FROM access_grants WHERE access_key_id = ?", (access_key_id,)
        )

    async def update_grant(self, grant_id: int, fields: dict[str, Any]) -> None:
        """Overwrite the given columns on a grant.

        Raises:
            ValueError: If a column is unknown or immutable.
        """
        unknown = set(fields) - _GRANT_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update grant columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{col} = ?" for col in fields)
        await self._write(
            f"UPDATE access_grants SET {assignments} WHERE id = ?",
            (*fields.values(), grant_id),
        )

    async def count_active_grants(self) -> int:
        row = await self._fetch_one(
            "SELECT COUNT(*) AS n FROM access_grants WHERE is_active = 1", ()
        )
        return row["n"] if row else 0

    # -- Object usage ledger -----------------------------------------------------

    async def _apply_usage(
        self, db: aiosqlite.Connection, grant_id: int, bytes_delta: int, files_delta: int, now: str
    ) -> None:
        await db.execute(
            """UPDATE access_grants
               SET current_storage_bytes = MAX(0, current_storage_bytes + ?),
                   current_file_count = MAX(0, current_file_count + ?),
                   updated_at = ?
               WHERE id = ?""",
            (bytes_delta, files_delta, now, grant_id),
        )

    async def _ledger_entry(self, key: str) -> dict[str, Any] | None:
        return await self._fetch_one(
            "SELECT grant_id, size, charge_id FROM stored_objects WHERE key = ?", (key,)
        )

    async def _put_entry(
        self, db: aiosqlite.Connection, key: str, entry: dict[str, Any], now: str
    ) -> None:
        await db.execute(
            "INSERT OR REPLACE INTO stored_objects (key, grant_id, size, charge_id, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (key, entry["grant_id"], entry["size"], entry["charge_id"], now),
        )

    async def charge_object(
        self, grant_id: int, key: str, size: int, now: str
    ) -> dict[str, Any]:
        """Charge a write inside one IMMEDIATE transaction.

        Raises:
            QuotaExceededError: If a ceiling would be exceeded.
            NotFoundError: If the grant is missing or inactive.
        """
        async with self._transaction() as db:
            row = await self.get_grant(grant_id)
            if row is None or not row["is_active"]:
                raise NotFoundError("No active access grant.")
            previous = await self._ledger_entry(key)
            charged = previous if previous and previous["grant_id"] == grant_id else None
            bytes_delta = size - (charged["size"] if charged else 0)
            files_delta = 0 if charged else 1
            if bytes_delta > 0 and row["current_storage_bytes"] + bytes_delta > row["max_storage_bytes"]:
                raise QuotaExceededError("storage")
            if files_delta > 0 and row["current_file_count"] + files_delta > row["max_file_count"]:
                raise QuotaExceededError("file_count")
            charge_id = secrets.token_hex(8)
            await self._apply_usage(db, grant_id, bytes_delta, files_delta, now)
            await self._put_entry(
                db, key, {"grant_id": grant_id, "size": size, "charge_id": charge_id}, now
            )
            grant = await self.get_grant(grant_id)
        return {
            "charge_id": charge_id,
            "bytes_delta": bytes_delta,
            "files_delta": files_delta,
            "previous": previous,
            "grant": grant,
        }

    async def revert_charge(
        self, grant_id: int, key: str, charge: dict[str, Any], now: str
    ) -> bool:
        async with self._transaction() as db:
            entry = await self._ledger_entry(key)
            if entry is None or entry["charge_id"] != charge["charge_id"]:
                return False
            if charge["previous"] is None:
                await db.execute("DELETE FROM stored_objects WHERE key = ?", (key,))
            else:
                await self._put_entry(db, key, charge["previous"], now)
            await self._apply_usage(db, grant_id, -charge["bytes_delta"], -charge["files_delta"], now)
        return True

    async def discharge_object(self, grant_id: int, key: str, now: str) -> int | None:
        async with self._transaction() as db:
            entry = await self._ledger_entry(key)
            if entry is None:
                return None
            await db.execute("DELETE FROM stored_objects WHERE key = ?", (key,))
            if entry["grant_id"] != grant_id:
                return None
            await self._apply_usage(db, grant_id, -entry["size"], -1, now)
        return entry["size"]

    async def replace_objects(
        self, grant_id: int, prefix: str, objects: dict[str, int], now: str
    ) -> dict[str, Any]:
        """Rebuild the ledger under ``prefix`` and set the counters to its totals.

        Raises:
            NotFoundError: If the grant does not exist.
        """
        async with self._transaction() as db:
            if await self.get_grant(grant_id) is None:
                raise NotFoundError("No access grant.")
            await db.execute(
                "DELETE FROM stored_objects WHERE substr(key, 1, ?) = ?", (len(prefix), prefix)
            )
            await db.executemany(
                "INSERT INTO stored_objects (key, grant_id, size, charge_id, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [(k, grant_id, s, secrets.token_hex(8), now) for k, s in objects.items()],
            )
            await db.execute(
                "UPDATE access_grants SET current_storage_bytes = ?, current_file_count = ?, "
                "updated_at = ? WHERE id = ?",
                (sum(objects.values()), len(objects), now, grant_id),
            )
            row = await self.get_grant(grant_id)
        assert row is not None
        return row

    # -- Tokens ----------------------------------------------------------------

    async def create_token(self, record: dict[str, Any]) -> int:
        row = dict(record)
        row.setdefault("usage_count", 0)
        row.setdefault("is_revoked", 0)
        return await self._insert("access_tokens", _TOKEN_COLUMNS, row)

    async def get_token(self, token_id: int) -> dict[str, Any] | None:
        return await self._fetch_one("SELECT * FROM access_tokens WHERE id = ?", (token_id,))

    async def get_token_by_hash(self, token_hash: str) -> dict[str, Any] | None:
        return await self._fetch_one(
            "SELECT * FROM access_tokens WHERE token_hash = ?", (token_hash,)
        )

    async def list_tokens(self, user_id: int) -> list[dict[str, Any]]:
        return await self._fetch_all(
            "SELECT * FROM access_tokens WHERE user_id = ? ORDER BY id DESC", (user_id,)
        )

    async def revoke_token(self, token_id: int, now: str) -> bool:
        cursor = await self._write(
            "UPDATE access_tokens SET is_revoked = 1, revoked_at = ? "
            "WHERE id = ? AND is_revoked = 0",
            (now, token_id),
        )
        return cursor.rowcount > 0

    async def revoke_tokens_for_user(self, user_id: int, now: str) -> int:
        cursor = await self._write(
            "UPDATE access_tokens SET is_revoked = 1, revoked_at = ? "
            "WHERE user_id = ? AND is_revoked = 0",
            (now, user_id),
        )
        return cursor.rowcount

    async def record_token_use(self, token_id: int, now: str) -> None:
        await self._write(
            "UPDATE access_tokens SET usage_count = usage_count + 1, last_used_at = ? "
            "WHERE id = ?",
            (now, token_id),
        )

    # -- Access logs -----------------------------------------------------------

    async def append_access_log(self, record: dict[str, Any]) -> int:
        row = dict(record)
        row["created_at"] = row.get("created_at") or _now_iso()
        return await self._insert("access_logs", _ACCESS_LOG_COLUMNS, row)

    async def list_access_logs(
        self, user_id: int, limit: int, offset: int = 0
    ) -> list[dict[str, Any]]:
        return await self._fetch_all(
            "SELECT * FROM access_logs WHERE user_id = ? ORDER BY id DESC LIMIT ? OFFSET ?",
            (user_id, limit, offset),
        )

    async def count_access_logs(self, user_id: int) -> int:
        row = await self._fetch_one(
            "SELECT COUNT(*) AS n FROM access_logs WHERE user_id = ?", (user_id,)
        )
        return row["n"] if row else 0

    async def access_log_summary(self, user_id: int) -> dict[str, Any]:
        totals = await self._fetch_one(
            """SELECT COUNT(*) AS total,
                      COALESCE(SUM(bytes_transferred), 0) AS bytes,
                      COALESCE(AVG(response_time_ms), 0) AS avg_response_ms,
                      COALESCE(SUM(CASE WHEN status_code >= 400 THEN 1 ELSE 0 END), 0) AS errors
               FROM access_logs WHERE user_id = ?""",
            (user_id,),
        )
        ops = await self._fetch_all(
            "SELECT operation, COUNT(*) AS n FROM access_logs WHERE user_id = ? "
            "GROUP BY operation",
            (user_id,),
        )
        assert totals is not None
        totals["operations"] = {r["operation"]: r["n"] for r in ops}
        return totals

    # -- Audit events ----------------------------------------------------------

    async def append_audit_event(self, record: dict[str, Any]) -> int:
        row = dict(record)
        row["created_at"] = row.get("created_at") or _now_iso()
        return await self._insert("audit_logs", _AUDIT_COLUMNS, row)

    async def list_audit_events(self, user_id: int, limit: int = 50) -> list[dict[str, Any]]:
        return await self._fetch_all(
            "SELECT * FROM audit_logs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
