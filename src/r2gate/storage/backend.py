"""Abstract storage backend protocol for r2gate."""

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class StoredObject:
    """Metadata describing one stored object.

    Attributes:
        key: Full object key, e.g. ``user-7/notes/a.md``.
        size: Size in bytes.
        etag: Opaque version tag. R2 reports the content MD5; the local
            backend derives it from modification time and size.
        content_type: MIME type recorded at write time (or guessed).
        last_modified: ISO 8601 timestamp.
    """

    key: str
    size: int
    etag: str = ""
    content_type: str = "application/octet-stream"
    last_modified: str = ""

    def to_public(self) -> dict:
        return {
            "key": self.key,
            "size": self.size,
            "etag": self.etag,
            "contentType": self.content_type,
            "lastModified": self.last_modified,
        }


class StorageBackend(Protocol):
    """Protocol defining the object storage backend interface.

    All user objects live in one shared bucket and are addressed by key.
    Backends store raw bytes only; access control happens before any call
    reaches them.
    """

    async def init(self) -> None:
        """Initialize the storage backend (create directories, connect, etc.)."""
        ...

    async def close(self) -> None:
        """Release resources held by the storage backend."""
        ...

    async def put(
        self, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> StoredObject:
        """Store an object's bytes, replacing any existing object.

        Returns:
            Metadata of the stored object.
        """
        ...

    async def get(self, key: str) -> bytes | None:
        """Retrieve an object's bytes, or None if it does not exist."""
        ...

    async def head(self, key: str) -> StoredObject | None:
        """Retrieve an object's metadata, or None if it does not exist."""
        ...

    async def delete(self, key: str) -> None:
        """Delete an object. Missing objects are ignored."""
        ...

    async def list(self, prefix: str) -> list[StoredObject]:
        """List objects whose key starts with ``prefix``, sorted by key."""
        ...
