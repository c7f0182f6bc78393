"""Tests for the metadata store backends (SQLite and in-memory).

Every test runs against both backends through the parametrized ``store``
fixture, so the two implementations stay interchangeable.
"""

import asyncio

import pytest

from r2gate.errors import ConflictError, NotFoundError, QuotaExceededError
from r2gate.metadata import create_metadata_store
from r2gate.metadata.memory import MemoryMetadataStore
from r2gate.metadata.sqlite import SQLiteMetadataStore
from r2gate.config import MetadataConfig, SQLiteConfig

NOW = "2026-01-15T12:00:00.000000Z"


@pytest.fixture(params=["sqlite", "memory"])
async def store(request, tmp_path):
    if request.param == "sqlite":
        backend = SQLiteMetadataStore(str(tmp_path / "meta.db"))
    else:
        backend = MemoryMetadataStore()
    await backend.init_db()
    yield backend
    await backend.close()


def grant_record(user_id=1, key="AKID1", **overrides):
    record = {
        "user_id": user_id,
        "bucket_name": "news-storage",
        "region": "auto",
        "endpoint": "https://example.r2",
        "access_key_id": key,
        "secret_hash": "0" * 64,
        "path_prefix": f"user-{user_id}/",
        "permissions": "[]",
        "max_storage_bytes": 100,
        "max_file_count": 3,
        "current_storage_bytes": 0,
        "current_file_count": 0,
        "is_readonly": 0,
        "is_active": 1,
        "expires_at": None,
        "last_used_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    record.update(overrides)
    return record


def token_record(user_id, grant_id, token_hash="h1", **overrides):
    record = {
        "user_id": user_id,
        "grant_id": grant_id,
        "token_hash": token_hash,
        "token_hint": "r2t_abcdef",
        "scope": "r2:read",
        "ip_whitelist": "[]",
        "expires_at": "2026-01-15T13:00:00.000000Z",
        "usage_count": 0,
        "last_used_at": None,
        "is_revoked": 0,
        "created_at": NOW,
        "revoked_at": None,
    }
    record.update(overrides)
    return record


def log_record(user_id, operation="read", status=200, bytes_=10, ms=4):
    return {
        "user_id": user_id,
        "grant_id": 1,
        "operation": operation,
        "resource_path": f"user-{user_id}/a.txt",
        "status_code": status,
        "bytes_transferred": bytes_,
        "response_time_ms": ms,
        "ip_address": "10.0.0.1",
        "user_agent": "pytest",
        "error_message": None,
        "created_at": NOW,
    }


class TestFactory:
    """Tests for create_metadata_store."""

    def test_sqlite(self, tmp_path):
        """The sqlite engine builds a SQLite store at the configured path."""
        cfg = MetadataConfig(engine="sqlite", sqlite=SQLiteConfig(path=str(tmp_path / "x.db")))
        assert isinstance(create_metadata_store(cfg), SQLiteMetadataStore)

    def test_memory(self):
        """The memory engine builds the in-memory store."""
        assert isinstance(create_metadata_store(MetadataConfig(engine="memory")), MemoryMetadataStore)

    def test_unknown(self):
        """Unknown engines are refused."""
        with pytest.raises(ValueError):
            create_metadata_store(MetadataConfig(engine="cassandra"))


class TestLifecycle:
    """Tests for init_db idempotence and ping."""

    async def test_ping(self, store):
        """A started store answers ping."""
        await store.ping()

    async def test_reopen_keeps_data(self, tmp_path):
        """Reopening a SQLite file keeps existing rows (warm start skips DDL)."""
        path = str(tmp_path / "meta.db")
        first = SQLiteMetadataStore(path)
        await first.init_db()
        grant_id = await first.create_grant(grant_record())
        await first.close()

        second = SQLiteMetadataStore(path)
        await second.init_db()
        row = await second.get_grant(grant_id)
        await second.close()
        assert row["access_key_id"] == "AKID1"

    async def test_reopen_adds_object_ledger(self, tmp_path):
        """A database created before the object ledger gains it on the next start."""
        path = str(tmp_path / "meta.db")
        first = SQLiteMetadataStore(path)
        await first.init_db()
        grant_id = await first.create_grant(grant_record())
        await first._db.execute("DROP TABLE stored_objects")
        await first._db.execute("DELETE FROM schema_version WHERE version = 2")
        await first._db.commit()
        await first.close()

        second = SQLiteMetadataStore(path)
        await second.init_db()
        charge = await second.charge_object(grant_id, "user-1/a.txt", 10, NOW)
        versions = await second._fetch_all("SELECT version FROM schema_version", ())
        await second.close()
        assert charge["files_delta"] == 1
        assert sorted(v["version"] for v in versions) == [1, 2]


class TestGrants:
    """Tests for grant rows."""

    async def test_create_and_lookup(self, store):
        """A created grant is found by id, user and access key."""
        grant_id = await store.create_grant(grant_record())
        assert (await store.get_grant(grant_id))["user_id"] == 1
        assert (await store.get_active_grant(1))["id"] == grant_id
        assert (await store.get_grant_by_access_key("AKID1"))["id"] == grant_id
        assert await store.get_grant(9999) is None
        assert await store.get_grant_by_access_key("nope") is None

    async def test_one_active_grant_per_user(self, store):
        """A second active grant for the same user conflicts."""
        await store.create_grant(grant_record())
        with pytest.raises(ConflictError):
            await store.create_grant(grant_record(key="AKID2"))

    async def test_new_grant_after_deactivation(self, store):
        """Deactivated grants are kept and do not block a new one."""
        old = await store.create_grant(grant_record())
        await store.update_grant(old, {"is_active": 0, "updated_at": NOW})
        assert await store.get_active_grant(1) is None
        new = await store.create_grant(grant_record(key="AKID2"))
        assert new != old
        assert (await store.get_active_grant(1))["id"] == new
        assert (await store.get_grant(old))["is_active"] == 0

    async def test_concurrent_creates_one_wins(self, store):
        """Racing creates for one user leave exactly one active grant."""
        results = await asyncio.gather(
            *(store.create_grant(grant_record(key=f"AK{i}")) for i in range(5)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, int)) == 1
        assert all(isinstance(r, (int, ConflictError)) for r in results)

    async def test_update_rejects_unknown_columns(self, store):
        """Only mutable columns can be updated."""
        grant_id = await store.create_grant(grant_record())
        with pytest.raises(ValueError):
            await store.update_grant(grant_id, {"user_id": 2})

    async def test_count_active(self, store):
        """Only active grants are counted."""
        a = await store.create_grant(grant_record(1, "A1"))
        await store.create_grant(grant_record(2, "A2"))
        await store.update_grant(a, {"is_active": 0})
        assert await store.count_active_grants() == 1


class TestUsage:
    """Tests for the object usage ledger behind the quota counters."""

    async def test_charge_within_quota(self, store):
        """A new object is charged its size and one file."""
        grant_id = await store.create_grant(grant_record())
        charge = await store.charge_object(grant_id, "user-1/a.txt", 60, NOW)
        assert (charge["bytes_delta"], charge["files_delta"]) == (60, 1)
        assert charge["previous"] is None
        assert charge["grant"]["current_storage_bytes"] == 60
        assert charge["grant"]["current_file_count"] == 1

    async def test_storage_ceiling(self, store):
        """A charge past the byte ceiling is refused and nothing changes."""
        grant_id = await store.create_grant(grant_record())
        await store.charge_object(grant_id, "user-1/a.txt", 60, NOW)
        with pytest.raises(QuotaExceededError) as exc_info:
            await store.charge_object(grant_id, "user-1/b.txt", 41, NOW)
        assert exc_info.value.resource == "storage"
        row = await store.get_grant(grant_id)
        assert (row["current_storage_bytes"], row["current_file_count"]) == (60, 1)
        assert await store.discharge_object(grant_id, "user-1/b.txt", NOW) is None

    async def test_exact_fill_allowed(self, store):
        """Reaching the byte ceiling exactly is allowed."""
        grant_id = await store.create_grant(grant_record())
        charge = await store.charge_object(grant_id, "user-1/a.txt", 100, NOW)
        assert charge["grant"]["current_storage_bytes"] == 100

    async def test_file_ceiling(self, store):
        """A fourth distinct object is refused when three are allowed."""
        grant_id = await store.create_grant(grant_record())
        for name in ("a", "b", "c"):
            await store.charge_object(grant_id, f"user-1/{name}.txt", 1, NOW)
        with pytest.raises(QuotaExceededError) as exc_info:
            await store.charge_object(grant_id, "user-1/d.txt", 1, NOW)
        assert exc_info.value.resource == "file_count"

    async def test_overwrite_charges_difference(self, store):
        """Rewriting a key charges only the size change and no extra file."""
        grant_id = await store.create_grant(grant_record())
        await store.charge_object(grant_id, "user-1/a.txt", 60, NOW)
        grown = await store.charge_object(grant_id, "user-1/a.txt", 90, NOW)
        assert (grown["bytes_delta"], grown["files_delta"]) == (30, 0)
        shrunk = await store.charge_object(grant_id, "user-1/a.txt", 10, NOW)
        assert shrunk["grant"]["current_storage_bytes"] == 10
        assert shrunk["grant"]["current_file_count"] == 1

    async def test_overwrite_at_file_ceiling(self, store):
        """Rewriting an existing key is allowed when the file ceiling is reached."""
        grant_id = await store.create_grant(grant_record())
        for name in ("a", "b", "c"):
            await store.charge_object(grant_id, f"user-1/{name}.txt", 1, NOW)
        charge = await store.charge_object(grant_id, "user-1/a.txt", 5, NOW)
        assert charge["grant"]["current_file_count"] == 3

    async def test_entry_of_old_grant_counts_as_new(self, store):
        """A key charged to a previous grant is a new file for the current one."""
        old = await store.create_grant(grant_record(1, "OLD"))
        await store.charge_object(old, "user-1/a.txt", 40, NOW)
        await store.update_grant(old, {"is_active": 0})
        new = await store.create_grant(grant_record(1, "NEW"))
        charge = await store.charge_object(new, "user-1/a.txt", 40, NOW)
        assert (charge["bytes_delta"], charge["files_delta"]) == (40, 1)

    async def test_revert_restores_previous(self, store):
        """Reverting an overwrite restores the earlier size."""
        grant_id = await store.create_grant(grant_record())
        await store.charge_object(grant_id, "user-1/a.txt", 20, NOW)
        charge = await store.charge_object(grant_id, "user-1/a.txt", 70, NOW)
        assert await store.revert_charge(grant_id, "user-1/a.txt", charge, NOW)
        row = await store.get_grant(grant_id)
        assert (row["current_storage_bytes"], row["current_file_count"]) == (20, 1)
        assert await store.discharge_object(grant_id, "user-1/a.txt", NOW) == 20

    async def test_revert_new_object(self, store):
        """Reverting the first write of a key removes its entry and file."""
        grant_id = await store.create_grant(grant_record())
        charge = await store.charge_object(grant_id, "user-1/a.txt", 20, NOW)
        assert await store.revert_charge(grant_id, "user-1/a.txt", charge, NOW)
        row = await store.get_grant(grant_id)
        assert (row["current_storage_bytes"], row["current_file_count"]) == (0, 0)
        assert await store.discharge_object(grant_id, "user-1/a.txt", NOW) is None

    async def test_superseded_charge_is_not_reverted(self, store):
        """A revert after a later write to the same key changes nothing."""
        grant_id = await store.create_grant(grant_record())
        first = await store.charge_object(grant_id, "user-1/a.txt", 20, NOW)
        await store.charge_object(grant_id, "user-1/a.txt", 30, NOW)
        assert not await store.revert_charge(grant_id, "user-1/a.txt", first, NOW)
        row = await store.get_grant(grant_id)
        assert (row["current_storage_bytes"], row["current_file_count"]) == (30, 1)

    async def test_discharge_credits_once(self, store):
        """Discharging a key twice credits its size and file only once."""
        grant_id = await store.create_grant(grant_record())
        await store.charge_object(grant_id, "user-1/a.txt", 20, NOW)
        await store.charge_object(grant_id, "user-1/b.txt", 30, NOW)
        assert await store.discharge_object(grant_id, "user-1/a.txt", NOW) == 20
        assert await store.discharge_object(grant_id, "user-1/a.txt", NOW) is None
        row = await store.get_grant(grant_id)
        assert (row["current_storage_bytes"], row["current_file_count"]) == (30, 1)

    async def test_concurrent_discharges_credit_once(self, store):
        """Racing discharges of one key credit it exactly once."""
        grant_id = await store.create_grant(grant_record())
        await store.charge_object(grant_id, "user-1/a.txt", 20, NOW)
        await store.charge_object(grant_id, "user-1/b.txt", 30, NOW)
        credited = await asyncio.gather(
            *(store.discharge_object(grant_id, "user-1/a.txt", NOW) for _ in range(5))
        )
        assert sorted(credited, key=lambda c: c is None) == [20, None, None, None, None]
        row = await store.get_grant(grant_id)
        assert (row["current_storage_bytes"], row["current_file_count"]) == (30, 1)

    async def test_inactive_grant(self, store):
        """Charging an inactive or missing grant is NotFound."""
        grant_id = await store.create_grant(grant_record())
        await store.update_grant(grant_id, {"is_active": 0})
        with pytest.raises(NotFoundError):
            await store.charge_object(grant_id, "user-1/a.txt", 1, NOW)
        with pytest.raises(NotFoundError):
            await store.charge_object(9999, "user-1/a.txt", 1, NOW)

    async def test_concurrent_charges_never_exceed(self, store):
        """Racing charges of distinct keys admit exactly as many as fit."""
        grant_id = await store.create_grant(grant_record(max_file_count=100))

        async def charge(n):
            try:
                await store.charge_object(grant_id, f"user-1/{n}.txt", 30, NOW)
                return True
            except QuotaExceededError:
                return False

        outcomes = await asyncio.gather(*(charge(n) for n in range(10)))
        assert outcomes.count(True) == 3
        row = await store.get_grant(grant_id)
        assert (row["current_storage_bytes"], row["current_file_count"]) == (90, 3)

    async def test_concurrent_first_writes_of_one_key(self, store):
        """Racing first charges of the same key count it as one file."""
        grant_id = await store.create_grant(grant_record())
        await asyncio.gather(
            *(store.charge_object(grant_id, "user-1/a.txt", 25, NOW) for _ in range(4))
        )
        row = await store.get_grant(grant_id)
        assert (row["current_storage_bytes"], row["current_file_count"]) == (25, 1)

    async def test_replace_objects(self, store):
        """replace_objects rebuilds the ledger under a prefix and sets the totals."""
        grant_id = await store.create_grant(grant_record())
        await store.charge_object(grant_id, "user-1/stale.txt", 50, NOW)
        row = await store.replace_objects(
            grant_id, "user-1/", {"user-1/a.txt": 10, "user-1/b.txt": 5}, NOW
        )
        assert (row["current_storage_bytes"], row["current_file_count"]) == (15, 2)
        assert await store.discharge_object(grant_id, "user-1/stale.txt", NOW) is None
        assert await store.discharge_object(grant_id, "user-1/a.txt", NOW) == 10

    async def test_replace_objects_keeps_other_prefixes(self, store):
        """Entries outside the prefix are left alone."""
        one = await store.create_grant(grant_record(1, "A1"))
        two = await store.create_grant(grant_record(2, "A2"))
        await store.charge_object(two, "user-2/a.txt", 7, NOW)
        await store.replace_objects(one, "user-1/", {}, NOW)
        assert await store.discharge_object(two, "user-2/a.txt", NOW) == 7

    async def test_replace_objects_missing_grant(self, store):
        """replace_objects on an unknown grant is NotFound."""
        with pytest.raises(NotFoundError):
            await store.replace_objects(9999, "user-1/", {}, NOW)


class TestTokens:
    """Tests for token rows."""

    async def test_create_and_lookup(self, store):
        """Tokens are found by id and by digest."""
        grant_id = await store.create_grant(grant_record())
        token_id = await store.create_token(token_record(1, grant_id))
        assert (await store.get_token(token_id))["scope"] == "r2:read"
        assert (await store.get_token_by_hash("h1"))["id"] == token_id
        assert await store.get_token_by_hash("missing") is None

    async def test_list_newest_first(self, store):
        """Tokens are listed newest first and only for their owner."""
        grant_id = await store.create_grant(grant_record())
        first = await store.create_token(token_record(1, grant_id, "h1"))
        second = await store.create_token(token_record(1, grant_id, "h2"))
        other_grant = await store.create_grant(grant_record(2, "AK2"))
        await store.create_token(token_record(2, other_grant, "h3"))
        assert [t["id"] for t in await store.list_tokens(1)] == [second, first]

    async def test_revoke_is_idempotent(self, store):
        """Revoking twice reports a change only the first time."""
        grant_id = await store.create_grant(grant_record())
        token_id = await store.create_token(token_record(1, grant_id))
        assert await store.revoke_token(token_id, NOW) is True
        assert await store.revoke_token(token_id, NOW) is False
        row = await store.get_token(token_id)
        assert row["is_revoked"] == 1
        assert row["revoked_at"] == NOW

    async def test_revoke_for_user(self, store):
        """All of a user's live tokens are revoked at once."""
        grant_id = await store.create_grant(grant_record())
        await store.create_token(token_record(1, grant_id, "h1"))
        await store.create_token(token_record(1, grant_id, "h2"))
        assert await store.revoke_tokens_for_user(1, NOW) == 2
        assert await store.revoke_tokens_for_user(1, NOW) == 0

    async def test_record_use(self, store):
        """Each use bumps the counter and timestamp."""
        grant_id = await store.create_grant(grant_record())
        token_id = await store.create_token(token_record(1, grant_id))
        await store.record_token_use(token_id, NOW)
        await store.record_token_use(token_id, NOW)
        row = await store.get_token(token_id)
        assert row["usage_count"] == 2
        assert row["last_used_at"] == NOW


class TestAccessLogs:
    """Tests for access-log rows."""

    async def test_pagination_newest_first(self, store):
        """Logs page newest first with limit and offset."""
        for i in range(5):
            await store.append_access_log(log_record(1, bytes_=i))
        await store.append_access_log(log_record(2))
        page = await store.list_access_logs(1, 2, 0)
        assert [r["bytes_transferred"] for r in page] == [4, 3]
        page = await store.list_access_logs(1, 2, 4)
        assert [r["bytes_transferred"] for r in page] == [0]
        assert await store.count_access_logs(1) == 5

    async def test_summary(self, store):
        """The summary aggregates totals, errors and operation counts."""
        await store.append_access_log(log_record(1, "read", 200, 100, 10))
        await store.append_access_log(log_record(1, "write", 413, 0, 20))
        await store.append_access_log(log_record(1, "read", 200, 50, 30))
        summary = await store.access_log_summary(1)
        assert summary["total"] == 3
        assert summary["bytes"] == 150
        assert summary["errors"] == 1
        assert summary["avg_response_ms"] == pytest.approx(20)
        assert summary["operations"] == {"read": 2, "write": 1}

    async def test_summary_empty(self, store):
        """A user with no logs gets zeros."""
        summary = await store.access_log_summary(42)
        assert summary["total"] == 0
        assert summary["bytes"] == 0
        assert summary["operations"] == {}


class TestAuditEvents:
    """Tests for audit rows."""

    async def test_append_and_list(self, store):
        """Audit events are listed newest first per user."""
        for event in ("access_created", "token_created"):
            await store.append_audit_event(
                {
                    "user_id": 1,
                    "grant_id": 1,
                    "event_type": event,
                    "risk_level": "low",
                    "details": "{}",
                    "ip_address": None,
                    "user_agent": None,
                    "created_at": NOW,
                }
            )
        events = await store.list_audit_events(1)
        assert [e["event_type"] for e in events] == ["token_created", "access_created"]
        assert await store.list_audit_events(2) == []
