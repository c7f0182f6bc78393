"""Resource path validation for r2gate.

Every user's objects live under ``user-{id}/`` in the shared bucket. The
helpers here normalize and sanitize caller-supplied paths before any
permission check or store call sees them, and derive or verify the
per-user namespace prefix.

Validation functions never raise for bad input; they return a
``PathValidation`` result. ``build_user_path`` is the exception: it is used
to construct paths from trusted parts and raises ``ValidationError``.
"""

from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass
from typing import Iterable

from r2gate.errors import ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_PATH_LENGTH = 1024
MAX_FILENAME_LENGTH = 255
MAX_USER_ID = 2**63 - 1

# Executables and server-side scripts. Enforced regardless of any grant's
# own extension allowlist and cannot be switched off by configuration.
DANGEROUS_EXTENSIONS = frozenset(
    {
        "exe", "bat", "cmd", "com", "scr", "pif", "jar", "app", "deb", "rpm",
        "dmg", "pkg", "msi", "iso", "bin", "sh", "py", "php", "asp", "jsp",
    }
)

_ILLEGAL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f<>:"|?*;&]')
_REPEATED_SLASH_RE = re.compile(r"/+")
_USER_PREFIX_RE = re.compile(r"^user-(\d+)/$")
_LEADING_USER_RE = re.compile(r"^user-(\d+)/")
_UNSAFE_FILENAME_RE = re.compile(r'[<>:"|?*]')
_WHITESPACE_RE = re.compile(r"\s+")

_SENSITIVE_PATTERNS = (
    re.compile(r"\.ht(access|passwd)", re.IGNORECASE),
    re.compile(r"\.env", re.IGNORECASE),
    re.compile(r"config\.php", re.IGNORECASE),
    re.compile(r"wp-config\.php", re.IGNORECASE),
    re.compile(r"\.git", re.IGNORECASE),
    re.compile(r"\.svn", re.IGNORECASE),
    re.compile(r"node_modules", re.IGNORECASE),
)


@dataclass(frozen=True)
class PathValidation:
    """Outcome of a path check.

    Attributes:
        is_valid: Whether the input passed every rule.
        normalized_path: The normalized form, set only when valid.
        error: Reason for rejection, set only when invalid.
        user_id: The namespace owner, set by prefix validation.
    """

    is_valid: bool
    normalized_path: str | None = None
    error: str | None = None
    user_id: int | None = None


def _invalid(error: str) -> PathValidation:
    return PathValidation(is_valid=False, error=error)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_path(path: str) -> str:
    """Trim, convert backslashes to slashes, and collapse repeated slashes."""
    normalized = path.strip().replace("\\", "/")
    return _REPEATED_SLASH_RE.sub("/", normalized)


def path_extension(path: str) -> str | None:
    """Return the lower-cased extension of the last path segment, if any."""
    name = path.rstrip("/").rsplit("/", 1)[-1]
    stem, dot, ext = name.rpartition(".")
    if not dot or not ext or not stem.strip("."):
        return None
    return ext.lower()


def validate_path(
    path: str, blocked_extensions: Iterable[str] | None = None
) -> PathValidation:
    """Normalize and sanitize a resource path.

    Traversal is checked on the normalized string, since converting
    backslashes can itself produce a ``../`` sequence.

    Args:
        path: The caller-supplied path.
        blocked_extensions: Extra extensions to reject on top of
            ``DANGEROUS_EXTENSIONS``.

    Returns:
        A PathValidation with ``normalized_path`` set on success.
    """
    if not isinstance(path, str) or not path.strip():
        return _invalid("path must not be empty")

    normalized = normalize_path(path)

    if "../" in normalized or "..\\" in normalized or ".." in normalized.split("/"):
        return _invalid("path traversal is not allowed")

    if normalized.startswith("/"):
        return _invalid("path must not start with '/'")

    if _ILLEGAL_CHARS_RE.search(normalized):
        return _invalid("path contains illegal characters")

    if len(normalized) > MAX_PATH_LENGTH:
        return _invalid(f"path exceeds {MAX_PATH_LENGTH} characters")

    ext = path_extension(normalized)
    if ext is not None:
        if ext in DANGEROUS_EXTENSIONS:
            return _invalid(f"file type '{ext}' is not allowed")
        if blocked_extensions and ext in {e.lower().lstrip(".") for e in blocked_extensions}:
            return _invalid(f"file type '{ext}' is not allowed")

    return PathValidation(is_valid=True, normalized_path=normalized)


def validate_user_prefix(prefix: str) -> PathValidation:
    """Validate a ``user-{digits}/`` namespace prefix.

    A missing trailing slash is added before matching.

    Returns:
        A PathValidation whose ``normalized_path`` is the prefix and whose
        ``user_id`` is the extracted owner id.
    """
    result = validate_path(prefix)
    if not result.is_valid:
        return result

    normalized = result.normalized_path or ""
    if not normalized.endswith("/"):
        normalized += "/"

    match = _USER_PREFIX_RE.match(normalized)
    if match is None:
        return _invalid("prefix must have the form user-{id}/")

    user_id = int(match.group(1))
    if user_id < 0 or user_id > MAX_USER_ID:
        return _invalid("user id out of range")

    return PathValidation(is_valid=True, normalized_path=normalized, user_id=user_id)


def extract_user_id(path: str) -> int | None:
    """Parse the leading ``user-{digits}/`` segment without full validation.

    Returns:
        The user id, or None on any mismatch. Never raises.
    """
    if not isinstance(path, str):
        return None
    match = _LEADING_USER_RE.match(path)
    if match is None:
        return None
    user_id = int(match.group(1))
    if user_id > MAX_USER_ID:
        return None
    return user_id


def is_path_allowed(resource_path: str, allowed_prefix: str) -> bool:
    """Return True if ``resource_path`` lies under ``allowed_prefix``.

    Both inputs must validate on their own before containment is tested.
    """
    resource = validate_path(resource_path)
    prefix = validate_path(allowed_prefix)
    if not resource.is_valid or not prefix.is_valid:
        return False

    final_prefix = prefix.normalized_path or ""
    if not final_prefix.endswith("/"):
        final_prefix += "/"
    return (resource.normalized_path or "").startswith(final_prefix)


def user_prefix(user_id: int) -> str:
    """Return the namespace prefix for a user id.

    Raises:
        ValidationError: If the id is not a non-negative integer.
    """
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        raise ValidationError("user id must be an integer")
    if user_id < 0 or user_id > MAX_USER_ID:
        raise ValidationError("user id out of range")
    return f"user-{user_id}/"


def build_user_path(user_id: int, sub_path: str | None = None) -> str:
    """Join a user's namespace prefix with a validated sub-path.

    Raises:
        ValidationError: If the user id or sub-path is invalid.
    """
    prefix = user_prefix(user_id)
    if sub_path is None or not sub_path.strip():
        return prefix

    result = validate_path(sub_path)
    if not result.is_valid:
        raise ValidationError(f"invalid sub-path: {result.error}")
    return f"{prefix}{result.normalized_path}"


def validate_file_extension(
    filename: str, allowed_extensions: Iterable[str] | None = None
) -> PathValidation:
    """Check a file name's extension against the denylist and an allowlist.

    Returns:
        A PathValidation whose ``normalized_path`` is the extension on success.
    """
    ext = path_extension(filename) if isinstance(filename, str) else None
    if ext is None:
        return _invalid("file has no extension")
    if ext in DANGEROUS_EXTENSIONS:
        return _invalid(f"file type '{ext}' is not allowed")
    if allowed_extensions:
        allowed = {e.lower().lstrip(".") for e in allowed_extensions}
        if ext not in allowed:
            return _invalid(f"file type '{ext}' is not in the allowed list")
    return PathValidation(is_valid=True, normalized_path=ext)


def generate_safe_filename(original_name: str) -> str:
    """Derive a unique, storage-safe file name from an uploaded name.

    Directory components are dropped, unsafe characters and whitespace
    become ``_``, and a millisecond timestamp plus random suffix is
    inserted before the extension.
    """
    filename = original_name.replace("\\", "/").rsplit("/", 1)[-1]
    filename = _UNSAFE_FILENAME_RE.sub("_", filename)
    filename = _WHITESPACE_RE.sub("_", filename)
    filename = filename.strip(".")[:MAX_FILENAME_LENGTH]

    stamp = int(time.time() * 1000)
    if not filename.strip():
        filename = f"file_{stamp}"

    suffix = secrets.token_hex(3)
    base, dot, ext = filename.rpartition(".")
    if dot and base:
        return f"{base}_{stamp}_{suffix}.{ext}"
    return f"{filename}_{stamp}_{suffix}"


def check_path_security(resource_path: str, user_id: int) -> PathValidation:
    """Validate a path, confirm it belongs to ``user_id``, and refuse
    well-known sensitive files (VCS metadata, dotenv, server config).
    """
    result = validate_path(resource_path)
    if not result.is_valid:
        return result

    normalized = result.normalized_path or ""
    if extract_user_id(normalized) != user_id:
        return _invalid("path does not belong to this user")

    for pattern in _SENSITIVE_PATTERNS:
        if pattern.search(normalized):
            return _invalid("access to sensitive files is denied")

    return PathValidation(is_valid=True, normalized_path=normalized, user_id=user_id)
