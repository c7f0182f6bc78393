"""Credential and capability-token generation for r2gate.

All randomness comes from :mod:`secrets`. Secrets and tokens are stored
only as SHA-256 digests and verified with a constant-time comparison.
"""

import hashlib
import hmac
import secrets
import string

ACCESS_KEY_ID_LENGTH = 20
SECRET_ACCESS_KEY_LENGTH = 40
TOKEN_PREFIX = "r2t_"

_KEY_ID_ALPHABET = string.ascii_uppercase + string.digits
_SECRET_ALPHABET = string.ascii_letters + string.digits + "+/"

REDACTED = "********"


def generate_access_key_id() -> str:
    """Return a new 20-character upper-case access key id."""
    return "".join(secrets.choice(_KEY_ID_ALPHABET) for _ in range(ACCESS_KEY_ID_LENGTH))


def generate_secret_access_key() -> str:
    """Return a new 40-character secret access key."""
    return "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(SECRET_ACCESS_KEY_LENGTH))


def generate_token() -> str:
    """Return a new bearer token, e.g. ``r2t_<43 url-safe chars>``."""
    return TOKEN_PREFIX + secrets.token_urlsafe(32)


def hash_secret(value: str) -> str:
    """Return the hex SHA-256 digest used to store a secret or token."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def verify_secret(candidate: str, stored_hash: str) -> bool:
    """Check a presented secret against its stored digest in constant time."""
    if not isinstance(candidate, str) or not stored_hash:
        return False
    return hmac.compare_digest(hash_secret(candidate), stored_hash)


def token_hint(token: str) -> str:
    """Return the non-secret leading characters shown when listing tokens."""
    return token[: len(TOKEN_PREFIX) + 6]
