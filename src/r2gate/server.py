"""FastAPI application factory and route setup for r2gate."""

import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from r2gate import metrics as _metrics
from r2gate.audit import AccessLogger
from r2gate.config import R2GateConfig
from r2gate.errors import (
    AccessControlError,
    AuthenticationRequired,
    PermissionDenied,
    StoreError,
    ValidationError,
)
from r2gate.gateway import ObjectStoreGateway, OperationResult
from r2gate.metadata import MetadataStore, create_metadata_store
from r2gate.models import ClientCredentials, Clock, GrantSettings, RequestInfo, utc_now
from r2gate.service import AccessControlService
from r2gate.storage.backend import StorageBackend
from r2gate.storage.local import LocalStorageBackend

logger = logging.getLogger(__name__)

USER_ID_HEADER = "x-user-id"
USER_ROLE_HEADER = "x-user-role"
ACCESS_KEY_HEADER = "x-access-key-id"
SECRET_KEY_HEADER = "x-secret-access-key"

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus collectors in the global registry.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics"],
        )
    return _instrumentator


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


def create_storage_backend(config: R2GateConfig) -> StorageBackend:
    """Create a storage backend instance based on configuration.

    Supports 'local', 'memory' and 'r2' backends.

    Raises:
        ValueError: If the backend is unknown or required config is missing.
        ImportError: If the r2 backend is selected without aiobotocore.
    """
    backend = config.storage.backend
    if backend == "local":
        return LocalStorageBackend(config.storage.local.root_dir)
    elif backend == "memory":
        from r2gate.storage.memory import MemoryStorageBackend

        return MemoryStorageBackend()
    elif backend == "r2":
        r2 = config.storage.r2
        if not r2.bucket:
            raise ValueError("storage.r2.bucket is required when backend is 'r2'")
        try:
            from r2gate.storage.r2 import R2StorageBackend
        except ImportError as exc:
            raise ImportError(
                "aiobotocore is required for the r2 backend. "
                "Install with: pip install r2gate[r2]"
            ) from exc
        return R2StorageBackend(
            bucket_name=r2.bucket,
            endpoint_url=r2.endpoint_url,
            region=r2.region,
            prefix=r2.prefix,
            access_key_id=r2.access_key_id,
            secret_access_key=r2.secret_access_key,
        )
    else:
        raise ValueError(f"Unknown storage backend: {backend}")


class Runtime:
    """Owns the stores and the services built on them.

    Construct once per process (or per test) and pass to ``create_app``.
    ``start`` and ``stop`` open and close the metadata store and storage
    backend; both are idempotent.

    Attributes:
        config: The loaded configuration.
        metadata: The metadata store.
        storage: The storage backend.
        access_logger: Access log and audit writer.
        service: The access-control service.
        gateway: The object store gateway.
    """

    def __init__(
        self,
        config: R2GateConfig,
        metadata: MetadataStore | None = None,
        storage: StorageBackend | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.metadata = metadata if metadata is not None else create_metadata_store(config.metadata)
        self.storage = storage if storage is not None else create_storage_backend(config)
        self.access_logger = AccessLogger(
            self.metadata, enabled=config.observability.access_logging, clock=clock
        )
        self.service = AccessControlService(self.metadata, config, self.access_logger, clock)
        self.gateway = ObjectStoreGateway(self.service, self.storage, self.access_logger, config)
        self._started = False

    async def start(self) -> None:
        """Open the metadata store and storage backend.

        Every startup is a recovery: schema creation is idempotent and the
        local backend cleans orphan temp files.
        """
        if self._started:
            return
        await self.metadata.init_db()
        await self.storage.init()
        if _metrics.active_grants is not None:
            _metrics.active_grants.set(await self.metadata.count_active_grants())
        self._started = True
        logger.info(
            "Runtime started: metadata=%s storage=%s",
            self.config.metadata.engine,
            self.config.storage.backend,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        await self.storage.close()
        await self.metadata.close()
        self._started = False
        logger.info("Metadata store and storage backend closed")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config: R2GateConfig, runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the r2gate FastAPI application.

    The runtime is built eagerly and stored on ``app.state.runtime``; the
    lifespan hook starts it on startup and stops it on shutdown.

    Args:
        config: The loaded r2gate configuration.
        runtime: A prebuilt runtime (tests inject one with in-memory stores).

    Returns:
        A configured FastAPI application ready to run.
    """
    runtime = runtime if runtime is not None else Runtime(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        yield
        await runtime.stop()

    app = FastAPI(
        title="r2gate",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.runtime = runtime

    _register_exception_handlers(app)
    _register_middleware(app)

    if config.observability.metrics:
        _metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="r2gate").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app, config)
    return app


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _error_response(request: Request, status: int, body: dict[str, Any]) -> Response:
    if request.method == "HEAD":
        return Response(status_code=status)
    return JSONResponse(status_code=status, content={"success": False, "error": body})


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(AccessControlError)
    async def access_error_handler(request: Request, exc: AccessControlError) -> Response:
        """Render an AccessControlError as JSON with its own status."""
        return _error_response(request, exc.http_status, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        """Map FastAPI validation errors to 400 InvalidArgument."""
        messages = []
        for err in exc.errors():
            loc = " -> ".join(str(p) for p in err.get("loc", []))
            msg = err.get("msg", "Invalid value")
            messages.append(f"{loc}: {msg}" if loc else msg)
        combined = "; ".join(messages) or "Invalid request parameters"
        return _error_response(request, 400, {"code": "InvalidArgument", "message": combined})

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return InternalError."""
        logger.exception("Unhandled exception in request handler")
        return _error_response(
            request,
            500,
            {"code": "InternalError", "message": "We encountered an internal error."},
        )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _register_middleware(app: FastAPI) -> None:
    """Register the request-id and request-logging middleware."""

    # Paths to suppress from per-request logging
    _QUIET_PATHS = {"/metrics", "/health"}

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next) -> Response:
        """Assign a request id, time the request and log one line for it."""
        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        response.headers["X-Request-Id"] = request_id
        response.headers["Server"] = "r2gate"

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "%s %s %d %.2fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                },
            )
        return response


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


class GrantSettingsBody(BaseModel):
    """Body of create/update access requests."""

    model_config = ConfigDict(populate_by_name=True)

    permissions: list[dict[str, Any]] | None = None
    max_storage_bytes: int | None = Field(default=None, alias="maxStorageBytes")
    max_file_count: int | None = Field(default=None, alias="maxFileCount")
    expires_in_seconds: int | None = Field(default=None, alias="expiresInSeconds")
    is_readonly: bool | None = Field(default=None, alias="isReadonly")

    def to_settings(self) -> GrantSettings:
        return GrantSettings(
            permissions=self.permissions,
            max_storage_bytes=self.max_storage_bytes,
            max_file_count=self.max_file_count,
            expires_in_seconds=self.expires_in_seconds,
            is_readonly=self.is_readonly,
        )


class TokenBody(BaseModel):
    """Body of token creation requests."""

    model_config = ConfigDict(populate_by_name=True)

    access_id: int | None = Field(default=None, alias="accessId")
    scope: str | None = None
    expires_in_seconds: int | None = Field(default=None, alias="expiresInSeconds")
    ip_whitelist: list[str] | None = Field(default=None, alias="ipWhitelist")


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _caller_id(request: Request) -> int:
    """Return the caller's user id from the upstream identity header.

    Raises:
        AuthenticationRequired: If the header is missing.
        ValidationError: If it is not a non-negative integer.
    """
    raw = request.headers.get(USER_ID_HEADER)
    if raw is None or not raw.strip():
        raise AuthenticationRequired()
    if not raw.strip().isdigit():
        raise ValidationError("X-User-Id must be a non-negative integer")
    return int(raw.strip())


def _request_info(request: Request) -> RequestInfo:
    forwarded = None
    if request.app.state.config.server.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",", 1)[0].strip()
    else:
        ip = request.client.host if request.client else None
    return RequestInfo(ip_address=ip, user_agent=request.headers.get("user-agent"))


def _client_credentials(request: Request) -> ClientCredentials:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return ClientCredentials(token=auth[7:].strip())
    return ClientCredentials(
        access_key_id=request.headers.get(ACCESS_KEY_HEADER),
        secret_access_key=request.headers.get(SECRET_KEY_HEADER),
    )


def _ok(data: Any, status: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status, content={"success": True, "data": data})


def _result_response(result: OperationResult) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=result.to_public())


async def _optional_body(request: Request, model: type[BaseModel]) -> Any:
    raw = await request.body()
    if not raw.strip():
        return model()
    try:
        return model.model_validate_json(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid request body: {exc}") from exc


async def _check_metadata(runtime: Runtime) -> dict:
    try:
        start = time.monotonic()
        await runtime.metadata.ping()
        return {"status": "ok", "latency_ms": round((time.monotonic() - start) * 1000, 1)}
    except Exception as exc:
        return {"status": "error", "error": str(exc), "latency_ms": 0}


async def _check_storage(runtime: Runtime) -> dict:
    try:
        start = time.monotonic()
        await runtime.storage.head(".r2gate-health")
        return {"status": "ok", "latency_ms": round((time.monotonic() - start) * 1000, 1)}
    except Exception as exc:
        return {"status": "error", "error": str(exc), "latency_ms": 0}


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _setup_routes(app: FastAPI, config: R2GateConfig) -> None:
    """Register process, management and object routes."""

    health_check_enabled = config.observability.health_check

    @app.get("/health")
    async def health_check(request: Request) -> Response:
        """Return process health.

        When health_check is enabled, probe metadata and storage and
        return 503 if either fails.
        """
        if not health_check_enabled:
            return JSONResponse(content={"status": "ok"})
        runtime = _runtime(request)
        meta_check = await _check_metadata(runtime)
        storage_check = await _check_storage(runtime)
        all_ok = meta_check["status"] == "ok" and storage_check["status"] == "ok"
        return JSONResponse(
            status_code=200 if all_ok else 503,
            content={
                "status": "ok" if all_ok else "degraded",
                "checks": {"metadata": meta_check, "storage": storage_check},
            },
        )

    # -- Access configuration ------------------------------------------------

    @app.get("/user/r2-access")
    async def get_access(request: Request) -> Response:
        grant = await _runtime(request).service.get_user_access(_caller_id(request))
        return _ok(grant.to_public() if grant else None)

    @app.post("/user/r2-access")
    async def create_access(request: Request) -> Response:
        """Create the caller's grant and seed their storage directory.

        The secret access key appears in this response only.
        """
        runtime = _runtime(request)
        user_id = _caller_id(request)
        body = await _optional_body(request, GrantSettingsBody)
        issued = await runtime.service.create_user_access(
            user_id, body.to_settings(), _request_info(request)
        )
        try:
            await runtime.gateway.create_user_directory(user_id)
        except StoreError:
            logger.warning("Could not seed storage directory for user %s", user_id)
        return _ok(issued.to_public(), status=201)

    @app.put("/user/r2-access")
    async def update_access(request: Request) -> Response:
        body = await _optional_body(request, GrantSettingsBody)
        grant = await _runtime(request).service.update_user_access(
            _caller_id(request), body.to_settings(), _request_info(request)
        )
        return _ok(grant.to_public())

    @app.delete("/user/r2-access")
    async def delete_access(request: Request) -> Response:
        await _runtime(request).service.delete_user_access(
            _caller_id(request), _request_info(request)
        )
        return _ok({"deleted": True})

    @app.post("/user/r2-access/credentials")
    async def regenerate_credentials(request: Request) -> Response:
        issued = await _runtime(request).service.regenerate_credentials(
            _caller_id(request), _request_info(request)
        )
        return _ok(issued.to_public())

    @app.post("/user/r2-access/sync")
    async def sync_usage(request: Request) -> Response:
        grant = await _runtime(request).gateway.sync_user_usage(_caller_id(request))
        return _ok(grant.to_public())

    # -- Tokens ----------------------------------------------------------------

    @app.post("/user/r2-access/tokens")
    async def create_token(request: Request) -> Response:
        body = await _optional_body(request, TokenBody)
        issued = await _runtime(request).service.create_access_token(
            _caller_id(request),
            access_id=body.access_id,
            scope=body.scope,
            expires_in_seconds=body.expires_in_seconds,
            ip_whitelist=body.ip_whitelist,
            request=_request_info(request),
        )
        return _ok(issued.to_public(), status=201)

    @app.get("/user/r2-access/tokens")
    async def list_tokens(request: Request) -> Response:
        tokens = await _runtime(request).service.list_access_tokens(_caller_id(request))
        return _ok([t.to_public() for t in tokens])

    @app.delete("/user/r2-access/tokens/{token_id}")
    async def revoke_token(request: Request, token_id: int) -> Response:
        token = await _runtime(request).service.revoke_access_token(
            _caller_id(request), token_id, _request_info(request)
        )
        return _ok(token.to_public())

    # -- Reporting ---------------------------------------------------------------

    @app.get("/user/r2-access/logs")
    async def access_logs(
        request: Request,
        page: int = Query(default=1),
        limit: int = Query(default=20),
    ) -> Response:
        log_page = await _runtime(request).service.get_access_logs(
            _caller_id(request), page=page, limit=limit
        )
        return _ok(log_page.to_public())

    @app.get("/user/r2-access/statistics")
    async def statistics(request: Request) -> Response:
        stats = await _runtime(request).service.get_usage_statistics(_caller_id(request))
        return _ok(stats.to_public())

    @app.get("/user/r2-access/health")
    async def access_health(request: Request) -> Response:
        report = await _runtime(request).service.get_health(_caller_id(request))
        return _ok(report.to_public())

    # -- Admin -----------------------------------------------------------------

    @app.post("/admin/r2-access/{user_id}/reset")
    async def reset_usage(request: Request, user_id: int) -> Response:
        """Reset a user's usage counters and revoke their tokens (admin only)."""
        admin_id = _caller_id(request)
        if request.headers.get(USER_ROLE_HEADER, "").lower() != "admin":
            raise PermissionDenied()
        grant = await _runtime(request).service.reset_usage(
            user_id, admin_id=admin_id, request=_request_info(request)
        )
        return _ok(grant.to_public())

    # -- Objects ---------------------------------------------------------------

    @app.get("/objects")
    async def list_objects(request: Request, prefix: str = Query(...)) -> Response:
        result = await _runtime(request).gateway.list_objects(
            _client_credentials(request), prefix, _request_info(request)
        )
        return _result_response(result)

    @app.put("/objects/{path:path}")
    async def put_object(request: Request, path: str) -> Response:
        data = await request.body()
        result = await _runtime(request).gateway.put_object(
            _client_credentials(request),
            path,
            data,
            content_type=request.headers.get("content-type"),
            request=_request_info(request),
        )
        return _result_response(result)

    @app.get("/objects/{path:path}")
    async def get_object(request: Request, path: str) -> Response:
        result = await _runtime(request).gateway.get_object(
            _client_credentials(request), path, _request_info(request)
        )
        if not result.success or result.object is None:
            return _result_response(result)
        return Response(
            content=result.data or b"",
            media_type=result.object.content_type,
            headers={"ETag": f'"{result.object.etag}"'},
        )

    @app.head("/objects/{path:path}")
    async def head_object(request: Request, path: str) -> Response:
        result = await _runtime(request).gateway.head_object(
            _client_credentials(request), path, _request_info(request)
        )
        if not result.success or result.object is None:
            return Response(status_code=result.status_code)
        return Response(
            status_code=200,
            headers={
                "Content-Length": str(result.object.size),
                "Content-Type": result.object.content_type,
                "ETag": f'"{result.object.etag}"',
            },
        )

    @app.delete("/objects/{path:path}")
    async def delete_object(request: Request, path: str) -> Response:
        result = await _runtime(request).gateway.delete_object(
            _client_credentials(request), path, _request_info(request)
        )
        return _result_response(result)
