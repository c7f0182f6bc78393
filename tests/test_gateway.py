"""Tests for ObjectStoreGateway."""

import asyncio

import pytest

from r2gate.audit import AccessLogger
from r2gate.errors import StoreError
from r2gate.gateway import DIRECTORY_MARKER, ObjectStoreGateway
from r2gate.models import INVALID_ACCESS_MESSAGE, ClientCredentials, GrantSettings, RequestInfo
from r2gate.service import AccessControlService

READWRITE = [{"resource": "user-{userId}/*", "actions": ["read", "write", "delete", "list", "head"]}]


async def credentials_for(service, user_id, **settings):
    settings.setdefault("permissions", READWRITE)
    settings.setdefault("is_readonly", False)
    issued = await service.create_user_access(user_id, GrantSettings(**settings))
    return ClientCredentials(
        access_key_id=issued.grant.access_key_id,
        secret_access_key=issued.secret_access_key,
    )


class SlowStorage:
    """Wraps a backend, sleeping before every call and optionally failing puts.

    A zero delay still yields to the event loop, so concurrent operations
    interleave between their store calls.
    """

    def __init__(self, inner, delay=0.0, fail_put=False):
        self.inner = inner
        self.delay = delay
        self.fail_put = fail_put

    async def init(self):
        await self.inner.init()

    async def close(self):
        await self.inner.close()

    async def put(self, key, data, content_type="application/octet-stream"):
        await asyncio.sleep(self.delay)
        if self.fail_put:
            raise OSError("bucket unavailable")
        return await self.inner.put(key, data, content_type)

    async def get(self, key):
        await asyncio.sleep(self.delay)
        return await self.inner.get(key)

    async def head(self, key):
        await asyncio.sleep(self.delay)
        return await self.inner.head(key)

    async def delete(self, key):
        await asyncio.sleep(self.delay)
        await self.inner.delete(key)

    async def list(self, prefix):
        await asyncio.sleep(self.delay)
        return await self.inner.list(prefix)


class TestPutObject:
    """Tests for put_object."""

    async def test_write_charges_quota(self, gateway, service, writer):
        """A write stores the bytes and charges size and count."""
        result = await gateway.put_object(writer, "user-7/notes/a.txt", b"hello", "text/plain")
        assert result.success
        assert result.status_code == 200
        assert result.object.size == 5
        grant = await service.get_user_access(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (5, 1)

    async def test_path_normalized(self, gateway, storage, writer):
        """The stored key is the normalized path."""
        result = await gateway.put_object(writer, "user-7//notes\\a.txt", b"x")
        assert result.path == "user-7/notes/a.txt"
        assert await storage.get("user-7/notes/a.txt") == b"x"

    async def test_overwrite_charges_difference(self, gateway, service, writer):
        """Overwriting charges only the size change and no extra file."""
        await gateway.put_object(writer, "user-7/a.txt", b"x" * 10)
        await gateway.put_object(writer, "user-7/a.txt", b"x" * 4)
        grant = await service.get_user_access(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (4, 1)

    async def test_quota_exceeded(self, gateway, service, storage):
        """A write past the storage ceiling is refused before the store is touched."""
        creds = await credentials_for(service, 7, max_storage_bytes=10)
        result = await gateway.put_object(creds, "user-7/a.txt", b"x" * 11)
        assert not result.success
        assert result.status_code == 413
        assert result.error_code == "QuotaExceeded"
        assert await storage.head("user-7/a.txt") is None

    async def test_file_count_exceeded(self, gateway, service):
        """A write past the file-count ceiling is refused."""
        creds = await credentials_for(service, 7, max_file_count=1)
        assert (await gateway.put_object(creds, "user-7/a.txt", b"1")).success
        result = await gateway.put_object(creds, "user-7/b.txt", b"2")
        assert result.status_code == 413
        # overwriting the existing file still works
        assert (await gateway.put_object(creds, "user-7/a.txt", b"3")).success

    async def test_max_file_size(self, gateway, writer, config):
        """Bodies above the global limit are refused."""
        config.file_validation.max_file_size = 8
        result = await gateway.put_object(writer, "user-7/a.txt", b"x" * 9)
        assert result.status_code == 413
        assert result.error_code == "EntityTooLarge"

    async def test_denied_is_generic(self, gateway, writer):
        """Cross-user writes get the generic denial."""
        result = await gateway.put_object(writer, "user-8/a.txt", b"x")
        assert result.status_code == 403
        assert result.error == INVALID_ACCESS_MESSAGE

    async def test_readonly_grant(self, gateway, service):
        """Read-only grants cannot write."""
        creds = await credentials_for(service, 7, is_readonly=True)
        result = await gateway.put_object(creds, "user-7/a.txt", b"x")
        assert result.status_code == 403

    async def test_invalid_path(self, gateway, writer):
        """Traversal and dangerous extensions are 400s."""
        assert (await gateway.put_object(writer, "user-7/../user-8/a.txt", b"x")).status_code == 400
        assert (await gateway.put_object(writer, "user-7/run.exe", b"x")).status_code == 400

    async def test_condition_uses_body_size(self, gateway, service):
        """maxSize conditions see the real body size."""
        creds = await credentials_for(
            service,
            7,
            permissions=[
                {"resource": "user-{userId}/*", "actions": ["write"], "conditions": {"maxSize": 3}}
            ],
        )
        assert (await gateway.put_object(creds, "user-7/a.txt", b"abc")).success
        assert (await gateway.put_object(creds, "user-7/b.txt", b"abcd")).status_code == 403

    async def test_content_type_condition(self, gateway, service):
        """allowedContentTypes sees the declared content type."""
        creds = await credentials_for(
            service,
            7,
            permissions=[
                {
                    "resource": "user-{userId}/*",
                    "actions": ["write"],
                    "conditions": {"allowedContentTypes": ["image/*"]},
                }
            ],
        )
        assert (await gateway.put_object(creds, "user-7/a.png", b"x", "image/png")).success
        assert (await gateway.put_object(creds, "user-7/a.txt", b"x", "text/plain")).status_code == 403

    async def test_concurrent_writes_respect_quota(self, gateway, service):
        """Parallel writes never push usage past the ceiling."""
        creds = await credentials_for(service, 7, max_storage_bytes=100, max_file_count=100)
        results = await asyncio.gather(
            *(gateway.put_object(creds, f"user-7/f{i}.bin", b"x" * 30) for i in range(8))
        )
        assert sum(1 for r in results if r.success) == 3
        assert all(r.status_code in (200, 413) for r in results)
        grant = await service.get_user_access(7)
        assert grant.current_storage_bytes == 90
        assert grant.current_file_count == 3

    async def test_store_failure_reverts_charge(self, service, storage, access_logger, config):
        """A failed store write raises StoreError and reverts its charge."""
        gateway = ObjectStoreGateway(service, SlowStorage(storage, fail_put=True), access_logger, config)
        creds = await credentials_for(service, 7)
        with pytest.raises(StoreError) as exc_info:
            await gateway.put_object(creds, "user-7/a.txt", b"hello")
        assert exc_info.value.http_status == 502
        assert exc_info.value.retryable is False
        grant = await service.get_user_access(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (0, 0)

    async def test_failed_overwrite_keeps_previous_charge(
        self, gateway, service, storage, access_logger, config, writer
    ):
        """A failed overwrite leaves the earlier size charged and still credits on delete."""
        await gateway.put_object(writer, "user-7/a.txt", b"x" * 10)
        failing = ObjectStoreGateway(
            service, SlowStorage(storage, fail_put=True), access_logger, config
        )
        with pytest.raises(StoreError):
            await failing.put_object(writer, "user-7/a.txt", b"x" * 40)
        grant = await service.get_user_access(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (10, 1)
        await gateway.delete_object(writer, "user-7/a.txt")
        grant = await service.get_user_access(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (0, 0)

    async def test_store_timeout(self, service, storage, access_logger, config):
        """A store call past the timeout raises a 504 StoreError."""
        config.store.request_timeout_seconds = 0.01
        gateway = ObjectStoreGateway(service, SlowStorage(storage, delay=0.5), access_logger, config)
        creds = await credentials_for(service, 7)
        with pytest.raises(StoreError) as exc_info:
            await gateway.put_object(creds, "user-7/a.txt", b"hello")
        assert exc_info.value.timed_out
        assert exc_info.value.http_status == 504
        assert exc_info.value.code == "StoreTimeout"


class TestReadOperations:
    """Tests for get_object, head_object and list_objects."""

    async def test_get(self, gateway, writer):
        """Reads return the bytes and metadata."""
        await gateway.put_object(writer, "user-7/a.txt", b"hello", "text/plain")
        result = await gateway.get_object(writer, "user-7/a.txt")
        assert result.success
        assert result.data == b"hello"
        assert result.object.content_type == "text/plain"

    async def test_get_missing(self, gateway, writer):
        """Missing objects are 404."""
        result = await gateway.get_object(writer, "user-7/nope.txt")
        assert result.status_code == 404
        assert result.error_code == "NoSuchKey"

    async def test_denied_before_existence(self, gateway, writer, service, storage):
        """Another user's existing object is a 403, not a 404."""
        other = await credentials_for(service, 8)
        await gateway.put_object(other, "user-8/secret.txt", b"x")
        result = await gateway.get_object(writer, "user-8/secret.txt")
        assert result.status_code == 403

    async def test_head(self, gateway, writer):
        """Head returns metadata only."""
        await gateway.put_object(writer, "user-7/a.txt", b"hello")
        result = await gateway.head_object(writer, "user-7/a.txt")
        assert result.success
        assert result.object.size == 5
        assert result.data is None

    async def test_list_filters_to_own_namespace(self, gateway, writer, service, storage):
        """Listing never returns another user's keys."""
        await gateway.put_object(writer, "user-7/a.txt", b"1")
        await gateway.put_object(writer, "user-7/docs/b.txt", b"2")
        await storage.put("user-70/c.txt", b"3")
        result = await gateway.list_objects(writer, "user-7/")
        assert [o.key for o in result.objects] == ["user-7/a.txt", "user-7/docs/b.txt"]
        body = result.to_public()
        assert [o["key"] for o in body["objects"]] == ["user-7/a.txt", "user-7/docs/b.txt"]

    async def test_list_other_prefix_denied(self, gateway, writer):
        """Listing another namespace is denied."""
        result = await gateway.list_objects(writer, "user-8/")
        assert result.status_code == 403

    async def test_token_access(self, gateway, writer, service):
        """Bearer tokens authorize within their scope."""
        await gateway.put_object(writer, "user-7/a.txt", b"hello")
        issued = await service.create_access_token(7, scope="r2:read")
        creds = ClientCredentials(token=issued.raw_token)
        assert (await gateway.get_object(creds, "user-7/a.txt")).data == b"hello"
        assert (await gateway.put_object(creds, "user-7/b.txt", b"x")).status_code == 403


class TestDeleteObject:
    """Tests for delete_object."""

    async def test_delete_credits_quota(self, gateway, service, writer, storage):
        """Deleting removes the object and credits size and count."""
        await gateway.put_object(writer, "user-7/a.txt", b"hello")
        result = await gateway.delete_object(writer, "user-7/a.txt")
        assert result.success
        assert await storage.head("user-7/a.txt") is None
        grant = await service.get_user_access(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (0, 0)

    async def test_delete_missing(self, gateway, writer):
        """Deleting a missing object is 404."""
        assert (await gateway.delete_object(writer, "user-7/nope.txt")).status_code == 404


class TestDirectoryMarkers:
    """Directory markers are never charged and never credited."""

    async def test_marker_delete_not_credited(self, gateway, service, writer):
        """Deleting a seeded marker leaves the usage counters alone."""
        await gateway.create_user_directory(7)
        await gateway.put_object(writer, "user-7/a.txt", b"hello")
        result = await gateway.delete_object(writer, f"user-7/news/{DIRECTORY_MARKER}")
        assert result.success
        grant = await service.get_user_access(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (5, 1)

    async def test_marker_delete_frees_no_file_slot(self, gateway, service):
        """Deleting a marker does not let a grant store more files than its ceiling."""
        creds = await credentials_for(service, 7, max_file_count=2)
        await gateway.create_user_directory(7)
        assert (await gateway.put_object(creds, "user-7/a.txt", b"1")).success
        assert (await gateway.put_object(creds, "user-7/b.txt", b"2")).success
        assert (await gateway.delete_object(creds, f"user-7/{DIRECTORY_MARKER}")).success
        result = await gateway.put_object(creds, "user-7/c.txt", b"3")
        assert result.status_code == 413
        grant = await service.get_user_access(7)
        assert grant.current_file_count == 2

    async def test_nonempty_marker_rejected(self, gateway, writer, storage):
        """A marker key with content is refused and nothing is stored."""
        result = await gateway.put_object(writer, f"user-7/docs/{DIRECTORY_MARKER}", b"payload")
        assert result.status_code == 400
        assert result.error_code == "InvalidArgument"
        assert await storage.head(f"user-7/docs/{DIRECTORY_MARKER}") is None

    async def test_empty_marker_not_charged(self, gateway, service):
        """Writing an empty marker costs nothing against either ceiling."""
        creds = await credentials_for(service, 7, max_file_count=1)
        result = await gateway.put_object(creds, f"user-7/docs/{DIRECTORY_MARKER}", b"")
        assert result.success
        grant = await service.get_user_access(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (0, 0)
        assert (await gateway.put_object(creds, "user-7/a.txt", b"1")).success


class TestAccessLogging:
    """Every operation writes one access-log record."""

    async def test_success_logged(self, gateway, writer, metadata):
        """Successful operations are logged with bytes and caller info."""
        request = RequestInfo(ip_address="10.1.1.1", user_agent="pytest")
        await gateway.put_object(writer, "user-7/a.txt", b"hello", request=request)
        [entry] = await metadata.list_access_logs(7, 10)
        assert entry["operation"] == "write"
        assert entry["status_code"] == 200
        assert entry["bytes_transferred"] == 5
        assert entry["ip_address"] == "10.1.1.1"
        assert entry["grant_id"] is not None

    async def test_denial_logged(self, gateway, writer, metadata):
        """Denied operations are logged under the path's namespace."""
        await gateway.get_object(writer, "user-8/a.txt")
        [entry] = await metadata.list_access_logs(8, 10)
        assert entry["status_code"] == 403
        assert entry["grant_id"] is None

    async def test_store_error_logged(self, service, storage, access_logger, config, metadata):
        """Operations that raise are still logged."""
        gateway = ObjectStoreGateway(service, SlowStorage(storage, fail_put=True), access_logger, config)
        creds = await credentials_for(service, 7)
        with pytest.raises(StoreError):
            await gateway.put_object(creds, "user-7/a.txt", b"x")
        [entry] = await metadata.list_access_logs(7, 10)
        assert entry["status_code"] == 502

    async def test_log_failure_does_not_fail_operation(self, gateway, writer, metadata):
        """A broken access-log store does not fail the request."""

        async def boom(record):
            raise RuntimeError("disk full")

        metadata.append_access_log = boom
        assert (await gateway.put_object(writer, "user-7/a.txt", b"x")).success


class TestNamespaceManagement:
    """Tests for directory seeding and usage sync."""

    async def test_create_directory(self, gateway, storage):
        """Markers are written for the root and default subdirectories."""
        keys = await gateway.create_user_directory(7)
        assert keys == [f"user-7/{DIRECTORY_MARKER}", f"user-7/news/{DIRECTORY_MARKER}"]
        assert await storage.head(keys[0]) is not None
        assert await gateway.user_directory_exists(7)
        assert not await gateway.user_directory_exists(8)

    async def test_usage_excludes_markers(self, gateway, writer):
        """Measured usage ignores directory markers."""
        await gateway.create_user_directory(7)
        await gateway.put_object(writer, "user-7/a.txt", b"hello")
        assert await gateway.get_user_storage_usage(7) == (5, 1)
        assert len(await gateway.list_user_files(7)) == 3

    async def test_sync(self, gateway, writer, service, storage):
        """Sync replaces drifted counters with measured figures."""
        await gateway.put_object(writer, "user-7/a.txt", b"hello")
        await storage.put("user-7/out-of-band.txt", b"1234567")
        grant = await gateway.sync_user_usage(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (12, 2)

    async def test_sync_then_delete_credits_measured_size(self, gateway, writer, service, storage):
        """Objects found by sync are credited at their measured size when deleted."""
        await gateway.create_user_directory(7)
        await storage.put("user-7/out-of-band.txt", b"1234567")
        await gateway.sync_user_usage(7)
        await gateway.delete_object(writer, "user-7/out-of-band.txt")
        await gateway.delete_object(writer, f"user-7/{DIRECTORY_MARKER}")
        grant = await service.get_user_access(7)
        assert (grant.current_storage_bytes, grant.current_file_count) == (0, 0)


class TestConcurrentAccounting:
    """Interleaved operations against the SQLite store keep usage exact."""

    @pytest.fixture
    def service(self, sqlite_metadata, config, clock):
        return AccessControlService(
            sqlite_metadata, config, AccessLogger(sqlite_metadata, clock=clock), clock
        )

    @pytest.fixture
    def gateway(self, service, storage, config):
        return ObjectStoreGateway(service, SlowStorage(storage), service.access_logger, config)

    async def usage(self, service):
        grant = await service.get_user_access(7)
        return grant.current_storage_bytes, grant.current_file_count

    async def test_parallel_distinct_writes(self, gateway, service):
        """N parallel writes of new keys add exactly N times their size."""
        creds = await credentials_for(service, 7, max_file_count=100)
        await gateway.put_object(creds, "user-7/seed.txt", b"x" * 5)
        results = await asyncio.gather(
            *(gateway.put_object(creds, f"user-7/f{i}.bin", b"y" * 7) for i in range(10))
        )
        assert all(r.success for r in results)
        assert await self.usage(service) == (5 + 10 * 7, 11)

    async def test_parallel_writes_admit_what_fits(self, gateway, service, storage):
        """Parallel writes past the ceiling admit exactly floor(max / size)."""
        creds = await credentials_for(service, 7, max_storage_bytes=100, max_file_count=100)
        results = await asyncio.gather(
            *(gateway.put_object(creds, f"user-7/f{i}.bin", b"x" * 30) for i in range(8))
        )
        assert sum(1 for r in results if r.success) == 3
        assert all(r.status_code in (200, 413) for r in results)
        assert await self.usage(service) == (90, 3)
        assert len(await storage.list("user-7/")) == 3

    async def test_parallel_deletes_of_one_key(self, gateway, service, storage):
        """Racing deletes of one key credit it once."""
        creds = await credentials_for(service, 7)
        await gateway.put_object(creds, "user-7/a.txt", b"x" * 5)
        await gateway.put_object(creds, "user-7/b.txt", b"x" * 7)
        results = await asyncio.gather(
            *(gateway.delete_object(creds, "user-7/a.txt") for _ in range(3))
        )
        assert any(r.success for r in results)
        assert await self.usage(service) == (7, 1)
        assert await storage.head("user-7/a.txt") is None

    async def test_parallel_first_writes_of_one_key(self, gateway, service):
        """Racing first writes of one key count as one file of its size."""
        creds = await credentials_for(service, 7)
        results = await asyncio.gather(
            *(gateway.put_object(creds, "user-7/a.txt", b"z" * 9) for _ in range(4))
        )
        assert all(r.success for r in results)
        assert await self.usage(service) == (9, 1)

    async def test_parallel_overwrites(self, gateway, service):
        """Racing overwrites leave one file charged at one of the written sizes."""
        creds = await credentials_for(service, 7)
        await gateway.put_object(creds, "user-7/a.txt", b"x")
        await asyncio.gather(
            *(gateway.put_object(creds, "user-7/a.txt", b"x" * n) for n in (10, 20, 30))
        )
        storage_bytes, file_count = await self.usage(service)
        assert storage_bytes in (10, 20, 30)
        assert file_count == 1
