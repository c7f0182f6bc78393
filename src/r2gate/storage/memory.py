"""In-memory storage backend for r2gate.

Holds every object in a dict. Useful for tests and ephemeral deployments;
data is lost on restart.
"""

import hashlib
import logging
from datetime import datetime, timezone

from r2gate.storage.backend import StoredObject

logger = logging.getLogger(__name__)


class MemoryStorageBackend:
    """Storage backend that keeps objects in a dictionary keyed by object key."""

    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, StoredObject]] = {}

    async def init(self) -> None:
        logger.info("Memory storage backend initialized")

    async def close(self) -> None:
        self._objects.clear()

    async def put(
        self, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> StoredObject:
        meta = StoredObject(
            key=key,
            size=len(data),
            etag=hashlib.md5(data).hexdigest(),
            content_type=content_type,
            last_modified=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
        )
        self._objects[key] = (bytes(data), meta)
        return meta

    async def get(self, key: str) -> bytes | None:
        entry = self._objects.get(key)
        return entry[0] if entry is not None else None

    async def head(self, key: str) -> StoredObject | None:
        entry = self._objects.get(key)
        return entry[1] if entry is not None else None

    async def delete(self, key: str) -> None:
        self._objects.pop(key, None)

    async def list(self, prefix: str) -> list[StoredObject]:
        return [meta for key, (_, meta) in sorted(self._objects.items()) if key.startswith(prefix)]
