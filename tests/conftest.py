"""Shared pytest fixtures for r2gate tests.

A single FastAPI app is created per test session to avoid duplicate
Prometheus metric registration errors (the instrumentator registers
collectors in the global prometheus_client registry).

Each test gets a fresh ``Runtime`` with in-memory stores, swapped onto
``app.state.runtime`` and started by hand, since the lifespan does not
run under ASGITransport.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from r2gate.audit import AccessLogger
from r2gate.config import (
    AccessConfig,
    MetadataConfig,
    R2GateConfig,
    ServerConfig,
    StorageConfig,
)
from r2gate.gateway import ObjectStoreGateway
from r2gate.metadata.memory import MemoryMetadataStore
from r2gate.metadata.sqlite import SQLiteMetadataStore
from r2gate.models import ClientCredentials, GrantSettings
from r2gate.server import Runtime, create_app
from r2gate.service import AccessControlService
from r2gate.storage.memory import MemoryStorageBackend

READWRITE = [{"resource": "user-{userId}/*", "actions": ["read", "write", "delete", "list", "head"]}]


class FakeClock:
    """A settable clock for expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_config(**access) -> R2GateConfig:
    return R2GateConfig(
        server=ServerConfig(host="127.0.0.1", port=9109),
        access=AccessConfig(**access),
        metadata=MetadataConfig(engine="memory"),
        storage=StorageConfig(backend="memory"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> R2GateConfig:
    return make_config()


@pytest.fixture
async def metadata():
    """A started in-memory metadata store."""
    store = MemoryMetadataStore()
    await store.init_db()
    yield store
    await store.close()


@pytest.fixture
async def sqlite_metadata(tmp_path):
    """A started SQLite metadata store in a temp directory."""
    store = SQLiteMetadataStore(str(tmp_path / "r2gate.db"))
    await store.init_db()
    yield store
    await store.close()


@pytest.fixture
async def storage():
    backend = MemoryStorageBackend()
    await backend.init()
    yield backend
    await backend.close()


@pytest.fixture
def access_logger(metadata, clock) -> AccessLogger:
    return AccessLogger(metadata, clock=clock)


@pytest.fixture
def service(metadata, config, access_logger, clock) -> AccessControlService:
    return AccessControlService(metadata, config, access_logger, clock)


@pytest.fixture
def gateway(service, storage, access_logger, config) -> ObjectStoreGateway:
    return ObjectStoreGateway(service, storage, access_logger, config)


@pytest.fixture
async def writer(service):
    """Issue read-write credentials for user 7 and return them."""
    issued = await service.create_user_access(
        7, GrantSettings(permissions=READWRITE, is_readonly=False)
    )
    return ClientCredentials(
        access_key_id=issued.grant.access_key_id,
        secret_access_key=issued.secret_access_key,
    )


# -- HTTP app ------------------------------------------------------------------


@pytest.fixture(scope="session")
def app():
    """Create a single test FastAPI application for the whole session."""
    return create_app(make_config())


@pytest.fixture
async def runtime(app, clock):
    """A fresh started runtime with in-memory stores installed on the app."""
    rt = Runtime(
        app.state.config,
        metadata=MemoryMetadataStore(),
        storage=MemoryStorageBackend(),
        clock=clock,
    )
    await rt.start()
    app.state.runtime = rt
    yield rt
    await rt.stop()


@pytest.fixture
async def client(app, runtime) -> AsyncClient:
    """Create an async test client for the r2gate app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def provision(client):
    """Return a helper that creates read-write access for user 7 over HTTP.

    The helper returns the header pair for the new credentials.
    """

    async def _provision(headers=None, **body):
        body.setdefault("permissions", READWRITE)
        body.setdefault("isReadonly", False)
        resp = await client.post(
            "/user/r2-access", json=body, headers=headers or {"X-User-Id": "7"}
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        return {
            "X-Access-Key-Id": data["accessKeyId"],
            "X-Secret-Access-Key": data["secretAccessKey"],
        }

    return _provision
