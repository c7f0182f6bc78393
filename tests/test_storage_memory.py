"""Unit tests for the in-memory storage backend."""

import hashlib

from r2gate.storage.memory import MemoryStorageBackend


class TestMemoryStorage:
    """Tests for MemoryStorageBackend."""

    async def test_put_get_head(self, storage):
        """Stored bytes and metadata are returned."""
        meta = await storage.put("user-7/a.txt", b"hello", "text/plain")
        assert meta.etag == hashlib.md5(b"hello").hexdigest()
        assert await storage.get("user-7/a.txt") == b"hello"
        head = await storage.head("user-7/a.txt")
        assert head.size == 5
        assert head.content_type == "text/plain"

    async def test_missing(self, storage):
        """Missing keys return None."""
        assert await storage.get("user-7/x") is None
        assert await storage.head("user-7/x") is None

    async def test_stored_copy(self, storage):
        """Mutating the source buffer does not change the stored object."""
        buf = bytearray(b"abc")
        await storage.put("user-7/a.bin", buf)
        buf[0] = ord("z")
        assert await storage.get("user-7/a.bin") == b"abc"

    async def test_delete(self, storage):
        """delete() removes the key and ignores missing keys."""
        await storage.put("user-7/a.txt", b"x")
        await storage.delete("user-7/a.txt")
        await storage.delete("user-7/a.txt")
        assert await storage.head("user-7/a.txt") is None

    async def test_list(self, storage):
        """list() filters by prefix and sorts by key."""
        await storage.put("user-7/b", b"")
        await storage.put("user-7/a", b"")
        await storage.put("user-70/a", b"")
        assert [o.key for o in await storage.list("user-7/")] == ["user-7/a", "user-7/b"]

    async def test_close_clears(self):
        """close() drops every object."""
        backend = MemoryStorageBackend()
        await backend.init()
        await backend.put("user-7/a", b"x")
        await backend.close()
        assert await backend.list("") == []
