"""Local filesystem storage backend for r2gate.

Objects are stored under ``{root}/{key}``, so a user's namespace
``user-{id}/`` maps to a directory of the same name.

Crash-only design:
    - Atomic writes via temp-fsync-rename pattern.
    - Never acknowledge before data is fsync'd to disk.
    - Startup cleans orphan temp files.

Content types are not persisted; ``head`` and ``list`` derive them from
the key's extension. ETags are derived from the file's mtime and size, so
metadata calls never read object bytes.

File I/O runs synchronously inside the async methods, so a call in
progress is not interrupted by the gateway timeout.
"""

import logging
import mimetypes
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

from r2gate.storage.backend import StoredObject

logger = logging.getLogger(__name__)

_TMP_MARKER = ".tmp."


def _guess_type(key: str) -> str:
    return mimetypes.guess_type(key)[0] or "application/octet-stream"


def _etag(st: os.stat_result) -> str:
    return f"{st.st_mtime_ns:x}-{st.st_size:x}"


def _timestamp(st: os.stat_result) -> str:
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%S.000Z"
    )


class LocalStorageBackend:
    """Storage backend that persists objects on the local filesystem.

    Attributes:
        root: The root directory for all stored data.
    """

    def __init__(self, root: str | Path) -> None:
        """Initialize the local storage backend.

        Args:
            root: Root directory path for object storage.
        """
        self.root = Path(root)

    def _object_path(self, key: str) -> Path:
        """Return the filesystem path for a stored object.

        Raises:
            ValueError: If the key would resolve outside the root.
        """
        path = (self.root / key).resolve()
        root = self.root.resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    async def init(self) -> None:
        """Create the root directory and clean up orphan temp files.

        Every startup is a recovery: leftover ``.tmp.*`` files from
        interrupted writes are removed.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        self._clean_temp_files()
        logger.info("Local storage backend initialized at %s", self.root)

    def _clean_temp_files(self) -> None:
        """Remove orphan temp files left by interrupted atomic writes."""
        count = 0
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for fname in filenames:
                if _TMP_MARKER in fname:
                    try:
                        os.unlink(os.path.join(dirpath, fname))
                        count += 1
                    except OSError:
                        logger.warning("Could not remove temp file %s", fname)
        if count > 0:
            logger.info("Cleaned %d orphan temp files on startup", count)

    async def close(self) -> None:
        """No-op for local filesystem backend."""
        pass

    def _stat(self, key: str, path: Path) -> StoredObject:
        st = path.stat()
        return StoredObject(
            key=key,
            size=st.st_size,
            etag=_etag(st),
            content_type=_guess_type(key),
            last_modified=_timestamp(st),
        )

    async def put(
        self, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> StoredObject:
        """Store an object's bytes on the local filesystem.

        Uses the atomic temp-fsync-rename pattern for crash safety.
        """
        path = self._object_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Atomic write: temp file -> fsync -> rename
        tmp = path.with_name(f"{path.name}{_TMP_MARKER}{uuid.uuid4().hex[:8]}")
        try:
            fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
            try:
                os.write(fd, data)
                os.fsync(fd)
            finally:
                os.close(fd)
            tmp.rename(path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise

        st = path.stat()
        return StoredObject(
            key=key,
            size=st.st_size,
            etag=_etag(st),
            content_type=content_type,
            last_modified=_timestamp(st),
        )

    async def get(self, key: str) -> bytes | None:
        path = self._object_path(key)
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError):
            return None

    async def head(self, key: str) -> StoredObject | None:
        path = self._object_path(key)
        if not path.is_file():
            return None
        return self._stat(key, path)

    async def delete(self, key: str) -> None:
        """Delete an object from the local filesystem.

        Silently ignores missing files. Cleans up empty parent directories
        up to the root.
        """
        path = self._object_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return

        root = self.root.resolve()
        parent = path.parent
        while parent != root:
            try:
                parent.rmdir()  # Only removes empty dirs
            except OSError:
                break
            parent = parent.parent

    async def list(self, prefix: str) -> list[StoredObject]:
        """List objects under ``prefix`` by walking the nearest directory."""
        root = self.root.resolve()
        base_dir = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        start = self._object_path(base_dir) if base_dir else root
        if not start.is_dir():
            return []

        results: list[StoredObject] = []
        for dirpath, _dirnames, filenames in os.walk(start):
            for fname in filenames:
                if _TMP_MARKER in fname:
                    continue
                path = Path(dirpath) / fname
                key = path.relative_to(root).as_posix()
                if key.startswith(prefix):
                    results.append(self._stat(key, path))
        return sorted(results, key=lambda o: o.key)
