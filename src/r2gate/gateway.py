"""Object store gateway for r2gate.

``ObjectStoreGateway`` is the only path from a caller to the storage
backend. Each operation validates the path, authenticates and authorizes
the caller through the access-control service, charges each write to
the usage ledger, calls the backend under a timeout, and writes one access-log
record whatever the outcome.

Validation, permission and quota denials come back as an
``OperationResult``. Backend failures raise ``StoreError``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from r2gate import metrics as _metrics
from r2gate.audit import AccessLogger
from r2gate.config import R2GateConfig
from r2gate.errors import AccessControlError, QuotaExceededError, StoreError
from r2gate.models import (
    INVALID_ACCESS_MESSAGE,
    AccessGrant,
    AccessValidation,
    ClientCredentials,
    RequestInfo,
)
from r2gate.paths import extract_user_id, path_extension, user_prefix, validate_path
from r2gate.permissions import AccessContext, Action
from r2gate.service import AccessControlService
from r2gate.storage.backend import StorageBackend, StoredObject

logger = logging.getLogger(__name__)

T = TypeVar("T")

DIRECTORY_MARKER = ".gitkeep"
DEFAULT_SUBDIRECTORIES = ("news",)

# Store operations that are safe to retry.
_IDEMPOTENT_OPERATIONS = frozenset({"read", "head", "list"})


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a gateway operation.

    Attributes:
        success: Whether the operation was performed.
        operation: ``write``, ``read``, ``head``, ``delete`` or ``list``.
        path: The normalized path (or the raw input if it did not validate).
        status_code: HTTP-equivalent status.
        data: Object bytes, for reads.
        object: Object metadata, for write/read/head/delete.
        objects: Listing results.
        error: Caller-safe error message.
        error_code: Machine-readable error code.
    """

    success: bool
    operation: str
    path: str
    status_code: int
    data: bytes | None = None
    object: StoredObject | None = None
    objects: list[StoredObject] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    def to_public(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "operation": self.operation,
            "path": self.path,
        }
        if self.object is not None:
            body["object"] = self.object.to_public()
        if self.operation == "list" and self.success:
            body["objects"] = [o.to_public() for o in self.objects]
        if self.error is not None:
            body["error"] = {"code": self.error_code, "message": self.error}
        return body


@dataclass
class _Trace:
    """Mutable facts about an in-flight operation, written to the access log."""

    path: str
    user_id: int | None = None
    access_id: int | None = None
    status: int = 500
    bytes: int = 0
    error: str | None = None


def _fail(operation: str, path: str, status: int, code: str, message: str) -> OperationResult:
    return OperationResult(
        success=False,
        operation=operation,
        path=path,
        status_code=status,
        error=message,
        error_code=code,
    )


def _denied(operation: str, path: str) -> OperationResult:
    return _fail(operation, path, 403, "AccessDenied", INVALID_ACCESS_MESSAGE)


def _is_marker(key: str) -> bool:
    return key.rsplit("/", 1)[-1] == DIRECTORY_MARKER


class ObjectStoreGateway:
    """Authorizing, quota-enforcing front for a storage backend.

    Attributes:
        service: Authenticates callers and owns quota counters.
        storage: The backend holding object bytes.
        access_logger: Receives one record per operation.
        config: Timeouts and global file limits.
    """

    def __init__(
        self,
        service: AccessControlService,
        storage: StorageBackend,
        access_logger: AccessLogger,
        config: R2GateConfig,
    ) -> None:
        self.service = service
        self.storage = storage
        self.access_logger = access_logger
        self.config = config

    # -- Plumbing ----------------------------------------------------------------

    async def _call(self, operation: str, path: str, awaitable: Awaitable[T]) -> T:
        """Await a backend call under the configured timeout.

        Raises:
            StoreError: On timeout or any backend failure. Never retried here.
        """
        retryable = operation in _IDEMPOTENT_OPERATIONS
        try:
            result = await asyncio.wait_for(
                awaitable, timeout=self.config.store.request_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            self._count_store(operation, "timeout")
            logger.error("Store %s on %s timed out", operation, path)
            raise StoreError(operation, path, retryable=retryable, timed_out=True) from exc
        except Exception as exc:
            self._count_store(operation, "error")
            logger.exception("Store %s on %s failed", operation, path)
            raise StoreError(operation, path, cause=exc, retryable=retryable) from exc
        self._count_store(operation, "ok")
        return result

    @staticmethod
    def _count_store(operation: str, status: str) -> None:
        if _metrics.store_operations_total is not None:
            _metrics.store_operations_total.labels(operation=operation, status=status).inc()

    @staticmethod
    def _count_bytes(direction: str, amount: int) -> None:
        if _metrics.bytes_transferred_total is not None and amount:
            _metrics.bytes_transferred_total.labels(direction=direction).inc(amount)

    async def _run(
        self,
        operation: str,
        path: str,
        request: RequestInfo | None,
        body: Callable[[_Trace], Awaitable[OperationResult]],
    ) -> OperationResult:
        """Run one operation and record it in the access log in all cases."""
        trace = _Trace(path=path if isinstance(path, str) else "")
        trace.user_id = extract_user_id(trace.path)
        started = time.monotonic()
        try:
            result = await body(trace)
            trace.status = result.status_code
            trace.error = result.error
            return result
        except AccessControlError as exc:
            trace.status = exc.http_status
            trace.error = exc.message
            raise
        except Exception as exc:
            trace.status = 500
            trace.error = str(exc)
            raise
        finally:
            await self.access_logger.log_access(
                trace.user_id,
                trace.access_id,
                operation,
                resource_path=trace.path,
                status_code=trace.status,
                bytes_transferred=trace.bytes,
                response_time_ms=int((time.monotonic() - started) * 1000),
                request=request,
                error=trace.error,
            )

    async def _authorize(
        self,
        credentials: ClientCredentials,
        path: str,
        action: Action,
        context: AccessContext,
        request: RequestInfo | None,
    ) -> AccessValidation:
        if credentials.token:
            return await self.service.validate_access_token(
                credentials.token, path, action, context, request
            )
        return await self.service.validate_access(
            credentials.access_key_id or "",
            credentials.secret_access_key or "",
            path,
            action,
            context,
            request,
        )

    def _context(
        self,
        path: str,
        request: RequestInfo | None,
        file_size: int | None = None,
        content_type: str | None = None,
    ) -> AccessContext:
        request = request or RequestInfo()
        return AccessContext(
            file_size=file_size,
            extension=path_extension(path),
            content_type=content_type,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
        )

    async def _prepare(
        self,
        trace: _Trace,
        operation: str,
        credentials: ClientCredentials,
        path: str,
        action: Action,
        request: RequestInfo | None,
        file_size: int | None = None,
        content_type: str | None = None,
    ) -> OperationResult | None:
        """Validate the path and authorize; return a failure result or None."""
        validation = validate_path(path, self.config.file_validation.blocked_extensions)
        if not validation.is_valid:
            return _fail(operation, trace.path, 400, "InvalidArgument", validation.error or "")
        trace.path = validation.normalized_path or ""

        context = self._context(trace.path, request, file_size, content_type)
        auth = await self._authorize(credentials, trace.path, action, context, request)
        if not auth.is_valid:
            return _denied(operation, trace.path)
        trace.user_id = auth.user_id
        trace.access_id = auth.grant_id
        return None

    # -- Authorized operations -----------------------------------------------------

    async def put_object(
        self,
        credentials: ClientCredentials,
        path: str,
        data: bytes,
        content_type: str | None = None,
        request: RequestInfo | None = None,
    ) -> OperationResult:
        """Write an object after authorization and a quota charge.

        The charge is recorded in the usage ledger before the backend write
        and reverted if the write fails. Overwrites are charged the size
        difference. Directory markers must be empty and are never charged.
        """
        content_type = content_type or "application/octet-stream"

        async def body(trace: _Trace) -> OperationResult:
            size = len(data)
            if size > self.config.file_validation.max_file_size:
                return _fail(
                    "write", trace.path, 413, "EntityTooLarge",
                    f"File exceeds the maximum size of {self.config.file_validation.max_file_size} bytes",
                )
            denied = await self._prepare(
                trace, "write", credentials, path, Action.WRITE, request, size, content_type
            )
            if denied is not None:
                return denied

            assert trace.access_id is not None
            if _is_marker(trace.path):
                if size:
                    return _fail(
                        "write", trace.path, 400, "InvalidArgument",
                        "Directory markers must be empty",
                    )
                stored = await self._call(
                    "write", trace.path, self.storage.put(trace.path, data, content_type)
                )
                return OperationResult(
                    success=True, operation="write", path=trace.path, status_code=200, object=stored
                )

            try:
                charge = await self.service.charge_write(trace.access_id, trace.path, size)
            except QuotaExceededError as exc:
                return _fail("write", trace.path, exc.http_status, exc.code, exc.message)

            try:
                stored = await self._call(
                    "write", trace.path, self.storage.put(trace.path, data, content_type)
                )
            except StoreError:
                await self.service.revert_write(trace.access_id, trace.path, charge)
                raise

            trace.bytes = size
            self._count_bytes("in", size)
            return OperationResult(
                success=True, operation="write", path=trace.path, status_code=200, object=stored
            )

        return await self._run("write", path, request, body)

    async def get_object(
        self,
        credentials: ClientCredentials,
        path: str,
        request: RequestInfo | None = None,
    ) -> OperationResult:
        """Read an object's bytes and metadata."""

        async def body(trace: _Trace) -> OperationResult:
            denied = await self._prepare(trace, "read", credentials, path, Action.READ, request)
            if denied is not None:
                return denied
            meta = await self._call("head", trace.path, self.storage.head(trace.path))
            data = None
            if meta is not None:
                data = await self._call("read", trace.path, self.storage.get(trace.path))
            if meta is None or data is None:
                return _fail("read", trace.path, 404, "NoSuchKey", "Object not found")
            trace.bytes = len(data)
            self._count_bytes("out", len(data))
            return OperationResult(
                success=True,
                operation="read",
                path=trace.path,
                status_code=200,
                data=data,
                object=meta,
            )

        return await self._run("read", path, request, body)

    async def head_object(
        self,
        credentials: ClientCredentials,
        path: str,
        request: RequestInfo | None = None,
    ) -> OperationResult:
        """Return an object's metadata without its bytes."""

        async def body(trace: _Trace) -> OperationResult:
            denied = await self._prepare(trace, "head", credentials, path, Action.HEAD, request)
            if denied is not None:
                return denied
            meta = await self._call("head", trace.path, self.storage.head(trace.path))
            if meta is None:
                return _fail("head", trace.path, 404, "NoSuchKey", "Object not found")
            return OperationResult(
                success=True, operation="head", path=trace.path, status_code=200, object=meta
            )

        return await self._run("head", path, request, body)

    async def delete_object(
        self,
        credentials: ClientCredentials,
        path: str,
        request: RequestInfo | None = None,
    ) -> OperationResult:
        """Delete an object and credit its size and count back to the quota."""

        async def body(trace: _Trace) -> OperationResult:
            denied = await self._prepare(trace, "delete", credentials, path, Action.DELETE, request)
            if denied is not None:
                return denied
            assert trace.access_id is not None
            meta = await self._call("head", trace.path, self.storage.head(trace.path))
            if meta is None:
                return _fail("delete", trace.path, 404, "NoSuchKey", "Object not found")
            await self._call("delete", trace.path, self.storage.delete(trace.path))
            await self.service.credit_delete(trace.access_id, trace.path)
            return OperationResult(
                success=True, operation="delete", path=trace.path, status_code=200, object=meta
            )

        return await self._run("delete", path, request, body)

    async def list_objects(
        self,
        credentials: ClientCredentials,
        prefix: str,
        request: RequestInfo | None = None,
    ) -> OperationResult:
        """List objects under ``prefix``.

        Results are filtered to the caller's own namespace regardless of
        what the backend returns.
        """

        async def body(trace: _Trace) -> OperationResult:
            denied = await self._prepare(trace, "list", credentials, prefix, Action.LIST, request)
            if denied is not None:
                return denied
            assert trace.user_id is not None
            own = user_prefix(trace.user_id)
            objects = await self._call("list", trace.path, self.storage.list(trace.path))
            objects = [o for o in objects if o.key.startswith(own)]
            return OperationResult(
                success=True, operation="list", path=trace.path, status_code=200, objects=objects
            )

        return await self._run("list", prefix, request, body)

    # -- Namespace management ------------------------------------------------------

    async def create_user_directory(self, user_id: int) -> list[str]:
        """Seed empty marker objects under the user's prefix.

        Markers are not charged to the user's quota.

        Returns:
            The keys written.
        """
        prefix = user_prefix(user_id)
        keys = [f"{prefix}{DIRECTORY_MARKER}"] + [
            f"{prefix}{sub}/{DIRECTORY_MARKER}" for sub in DEFAULT_SUBDIRECTORIES
        ]
        for key in keys:
            await self._call("write", key, self.storage.put(key, b"", "text/plain"))
        logger.info("Created storage directory for user %s", user_id)
        return keys

    async def user_directory_exists(self, user_id: int) -> bool:
        prefix = user_prefix(user_id)
        marker = await self._call(
            "head", prefix, self.storage.head(f"{prefix}{DIRECTORY_MARKER}")
        )
        if marker is not None:
            return True
        return bool(await self.list_user_files(user_id))

    async def list_user_files(self, user_id: int) -> list[StoredObject]:
        """List every object in the user's namespace, markers included."""
        prefix = user_prefix(user_id)
        objects = await self._call("list", prefix, self.storage.list(prefix))
        return [o for o in objects if o.key.startswith(prefix)]

    async def measure_user_objects(self, user_id: int) -> dict[str, int]:
        """Map each object key in the user's namespace to its size, excluding markers."""
        return {
            o.key: o.size for o in await self.list_user_files(user_id) if not _is_marker(o.key)
        }

    async def get_user_storage_usage(self, user_id: int) -> tuple[int, int]:
        """Measure ``(bytes, file_count)`` in the user's namespace, excluding markers."""
        objects = await self.measure_user_objects(user_id)
        return sum(objects.values()), len(objects)

    async def sync_user_usage(self, user_id: int) -> AccessGrant:
        """Reconcile the grant's counters with what the store actually holds."""
        return await self.service.sync_usage(user_id, await self.measure_user_objects(user_id))
