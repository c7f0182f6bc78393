"""Object storage backends for r2gate."""

from r2gate.storage.backend import StorageBackend, StoredObject

__all__ = ["StorageBackend", "StoredObject"]
