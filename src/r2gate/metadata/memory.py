"""In-memory metadata store for r2gate.

Useful for testing and ephemeral deployments. Data is lost on restart.
"""

import asyncio
import secrets
from datetime import datetime, timezone
from typing import Any

from r2gate.errors import ConflictError, NotFoundError, QuotaExceededError


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class MemoryMetadataStore:
    """In-memory metadata store using Python dicts.

    Rows have the same shape as the SQLite store's. Grant creation and
    every ledger charge or credit run under one asyncio.Lock.
    """

    def __init__(self) -> None:
        self._grants: dict[int, dict[str, Any]] = {}
        self._tokens: dict[int, dict[str, Any]] = {}
        self._access_logs: list[dict[str, Any]] = []
        self._audit_events: list[dict[str, Any]] = []
        self._objects: dict[str, dict[str, Any]] = {}
        self._next_id = {"grant": 1, "token": 1, "log": 1, "audit": 1}
        self._lock = asyncio.Lock()

    def _allocate(self, kind: str) -> int:
        value = self._next_id[kind]
        self._next_id[kind] = value + 1
        return value

    async def init_db(self) -> None:
        pass

    async def close(self) -> None:
        self._grants.clear()
        self._objects.clear()
        self._tokens.clear()
        self._access_logs.clear()
        self._audit_events.clear()

    async def ping(self) -> None:
        pass

    # -- Grants ----------------------------------------------------------------

    async def create_grant(self, record: dict[str, Any]) -> int:
        async with self._lock:
            user_id = record["user_id"]
            for row in self._grants.values():
                if row["user_id"] == user_id and row["is_active"]:
                    raise ConflictError()
            grant_id = self._allocate("grant")
            row = {
                "current_storage_bytes": 0,
                "current_file_count": 0,
                "is_active": 1,
                "last_used_at": None,
                **record,
                "id": grant_id,
            }
            self._grants[grant_id] = row
            return grant_id

    async def get_grant(self, grant_id: int) -> dict[str, Any] | None:
        row = self._grants.get(grant_id)
        return dict(row) if row is not None else None

    async def get_active_grant(self, user_id: int) -> dict[str, Any] | None:
        for row in self._grants.values():
            if row["user_id"] == user_id and row["is_active"]:
                return dict(row)
        return None

    async def get_grant_by_access_key(self, access_key_id: str) -> dict[str, Any] | None:
        for row in self._grants.values():
            if row["access_key_id"] == access_key_id:
                return dict(row)
        return None

    async def update_grant(self, grant_id: int, fields: dict[str, Any]) -> None:
        if {"id", "user_id", "created_at"} & set(fields):
            raise ValueError("Cannot update immutable grant columns")
        row = self._grants.get(grant_id)
        if row is not None:
            row.update(fields)

    def _apply_usage(
        self, row: dict[str, Any], bytes_delta: int, files_delta: int, now: str
    ) -> None:
        row["current_storage_bytes"] = max(0, row["current_storage_bytes"] + bytes_delta)
        row["current_file_count"] = max(0, row["current_file_count"] + files_delta)
        row["updated_at"] = now

    async def count_active_grants(self) -> int:
        return sum(1 for row in self._grants.values() if row["is_active"])

    # -- Object usage ledger -----------------------------------------------------

    async def charge_object(
        self, grant_id: int, key: str, size: int, now: str
    ) -> dict[str, Any]:
        async with self._lock:
            row = self._grants.get(grant_id)
            if row is None or not row["is_active"]:
                raise NotFoundError("No active access grant.")
            previous = self._objects.get(key)
            charged = previous if previous and previous["grant_id"] == grant_id else None
            bytes_delta = size - (charged["size"] if charged else 0)
            files_delta = 0 if charged else 1
            if bytes_delta > 0 and row["current_storage_bytes"] + bytes_delta > row["max_storage_bytes"]:
                raise QuotaExceededError("storage")
            if files_delta > 0 and row["current_file_count"] + files_delta > row["max_file_count"]:
                raise QuotaExceededError("file_count")
            charge_id = secrets.token_hex(8)
            self._apply_usage(row, bytes_delta, files_delta, now)
            self._objects[key] = {"grant_id": grant_id, "size": size, "charge_id": charge_id}
            return {
                "charge_id": charge_id,
                "bytes_delta": bytes_delta,
                "files_delta": files_delta,
                "previous": dict(previous) if previous else None,
                "grant": dict(row),
            }

    async def revert_charge(
        self, grant_id: int, key: str, charge: dict[str, Any], now: str
    ) -> bool:
        async with self._lock:
            entry = self._objects.get(key)
            if entry is None or entry["charge_id"] != charge["charge_id"]:
                return False
            if charge["previous"] is None:
                del self._objects[key]
            else:
                self._objects[key] = dict(charge["previous"])
            row = self._grants.get(grant_id)
            if row is not None:
                self._apply_usage(row, -charge["bytes_delta"], -charge["files_delta"], now)
            return True

    async def discharge_object(self, grant_id: int, key: str, now: str) -> int | None:
        async with self._lock:
            entry = self._objects.get(key)
            if entry is None:
                return None
            del self._objects[key]
            row = self._grants.get(grant_id)
            if entry["grant_id"] != grant_id or row is None:
                return None
            self._apply_usage(row, -entry["size"], -1, now)
            return entry["size"]

    async def replace_objects(
        self, grant_id: int, prefix: str, objects: dict[str, int], now: str
    ) -> dict[str, Any]:
        async with self._lock:
            row = self._grants.get(grant_id)
            if row is None:
                raise NotFoundError("No access grant.")
            for key in [k for k in self._objects if k.startswith(prefix)]:
                del self._objects[key]
            for key, size in objects.items():
                self._objects[key] = {
                    "grant_id": grant_id, "size": size, "charge_id": secrets.token_hex(8),
                }
            row["current_storage_bytes"] = sum(objects.values())
            row["current_file_count"] = len(objects)
            row["updated_at"] = now
            return dict(row)

    # -- Tokens ----------------------------------------------------------------

    async def create_token(self, record: dict[str, Any]) -> int:
        token_id = self._allocate("token")
        self._tokens[token_id] = {
            "usage_count": 0,
            "is_revoked": 0,
            "last_used_at": None,
            "revoked_at": None,
            **record,
            "id": token_id,
        }
        return token_id

    async def get_token(self, token_id: int) -> dict[str, Any] | None:
        row = self._tokens.get(token_id)
        return dict(row) if row is not None else None

    async def get_token_by_hash(self, token_hash: str) -> dict[str, Any] | None:
        for row in self._tokens.values():
            if row["token_hash"] == token_hash:
                return dict(row)
        return None

    async def list_tokens(self, user_id: int) -> list[dict[str, Any]]:
        rows = [dict(r) for r in self._tokens.values() if r["user_id"] == user_id]
        return sorted(rows, key=lambda r: r["id"], reverse=True)

    async def revoke_token(self, token_id: int, now: str) -> bool:
        row = self._tokens.get(token_id)
        if row is None or row["is_revoked"]:
            return False
        row["is_revoked"] = 1
        row["revoked_at"] = now
        return True

    async def revoke_tokens_for_user(self, user_id: int, now: str) -> int:
        count = 0
        for row in self._tokens.values():
            if row["user_id"] == user_id and not row["is_revoked"]:
                row["is_revoked"] = 1
                row["revoked_at"] = now
                count += 1
        return count

    async def record_token_use(self, token_id: int, now: str) -> None:
        row = self._tokens.get(token_id)
        if row is not None:
            row["usage_count"] += 1
            row["last_used_at"] = now

    # -- Access logs -----------------------------------------------------------

    async def append_access_log(self, record: dict[str, Any]) -> int:
        log_id = self._allocate("log")
        row = dict(record)
        row["id"] = log_id
        row["created_at"] = row.get("created_at") or _now_iso()
        self._access_logs.append(row)
        return log_id

    def _user_logs(self, user_id: int) -> list[dict[str, Any]]:
        return [r for r in reversed(self._access_logs) if r.get("user_id") == user_id]

    async def list_access_logs(
        self, user_id: int, limit: int, offset: int = 0
    ) -> list[dict[str, Any]]:
        return [dict(r) for r in self._user_logs(user_id)[offset : offset + limit]]

    async def count_access_logs(self, user_id: int) -> int:
        return len(self._user_logs(user_id))

    async def access_log_summary(self, user_id: int) -> dict[str, Any]:
        rows = self._user_logs(user_id)
        operations: dict[str, int] = {}
        for r in rows:
            operations[r["operation"]] = operations.get(r["operation"], 0) + 1
        total = len(rows)
        return {
            "total": total,
            "bytes": sum(r.get("bytes_transferred") or 0 for r in rows),
            "avg_response_ms": (
                sum(r.get("response_time_ms") or 0 for r in rows) / total if total else 0
            ),
            "errors": sum(1 for r in rows if r["status_code"] >= 400),
            "operations": operations,
        }

    # -- Audit events ----------------------------------------------------------

    async def append_audit_event(self, record: dict[str, Any]) -> int:
        event_id = self._allocate("audit")
        row = dict(record)
        row["id"] = event_id
        row["created_at"] = row.get("created_at") or _now_iso()
        self._audit_events.append(row)
        return event_id

    async def list_audit_events(self, user_id: int, limit: int = 50) -> list[dict[str, Any]]:
        rows = [dict(r) for r in reversed(self._audit_events) if r.get("user_id") == user_id]
        return rows[:limit]
