"""Tests for credential generation, hashing and public rendering."""

import re
from datetime import datetime, timedelta, timezone

from r2gate.credentials import (
    REDACTED,
    TOKEN_PREFIX,
    generate_access_key_id,
    generate_secret_access_key,
    generate_token,
    hash_secret,
    token_hint,
    verify_secret,
)
from r2gate.models import (
    AccessGrant,
    AccessValidation,
    IssuedCredentials,
    LogPage,
    parse_iso,
    to_iso,
)


class TestGeneration:
    """Tests for key, secret and token generation."""

    def test_access_key_id_format(self):
        """Access key ids are 20 upper-case alphanumerics."""
        assert re.fullmatch(r"[A-Z0-9]{20}", generate_access_key_id())

    def test_secret_length(self):
        """Secrets are 40 characters."""
        assert len(generate_secret_access_key()) == 40

    def test_values_are_unique(self):
        """Repeated generation does not repeat values."""
        assert len({generate_access_key_id() for _ in range(50)}) == 50
        assert len({generate_token() for _ in range(50)}) == 50

    def test_token_prefix_and_hint(self):
        """Tokens carry the prefix; the hint is a short leading slice."""
        token = generate_token()
        assert token.startswith(TOKEN_PREFIX)
        hint = token_hint(token)
        assert token.startswith(hint)
        assert len(hint) == len(TOKEN_PREFIX) + 6


class TestHashing:
    """Tests for hash_secret and verify_secret."""

    def test_hash_is_hex_sha256(self):
        """Digests are 64 hex characters and never the input."""
        digest = hash_secret("s3cret")
        assert re.fullmatch(r"[0-9a-f]{64}", digest)
        assert digest != "s3cret"

    def test_verify(self):
        """The matching secret verifies; others do not."""
        digest = hash_secret("s3cret")
        assert verify_secret("s3cret", digest)
        assert not verify_secret("s3cret ", digest)
        assert not verify_secret("", digest)

    def test_verify_bad_inputs(self):
        """Non-string candidates and empty digests never verify."""
        assert not verify_secret(None, hash_secret("x"))
        assert not verify_secret("x", "")


def _grant(**overrides) -> AccessGrant:
    row = {
        "id": 1,
        "user_id": 5,
        "bucket_name": "news-storage",
        "region": "auto",
        "endpoint": "https://example.r2",
        "access_key_id": "AKID",
        "secret_hash": hash_secret("secret"),
        "path_prefix": "user-5/",
        "permissions": '[{"resource": "user-5/*", "actions": ["read"]}]',
        "max_storage_bytes": 200,
        "max_file_count": 8,
        "current_storage_bytes": 50,
        "current_file_count": 2,
        "is_readonly": 1,
        "is_active": 1,
        "expires_at": None,
        "last_used_at": None,
        "created_at": "2026-01-01T00:00:00.000000Z",
        "updated_at": "2026-01-01T00:00:00.000000Z",
    }
    row.update(overrides)
    return AccessGrant.from_row(row)


class TestPublicRendering:
    """Tests that secrets never leak through to_public."""

    def test_grant_redacts_secret(self):
        """The stored grant renders a redacted secret and no digest."""
        body = _grant().to_public()
        assert body["secretAccessKey"] == REDACTED
        assert hash_secret("secret") not in body.values()
        assert body["permissions"] == [{"resource": "user-5/*", "actions": ["read"]}]

    def test_issued_credentials_show_secret_once(self):
        """Only the issue-time container carries the plaintext secret."""
        issued = IssuedCredentials(grant=_grant(), secret_access_key="plain")
        assert issued.to_public()["secretAccessKey"] == "plain"

    def test_usage_percent(self):
        """Usage percentages are computed against the ceilings."""
        grant = _grant()
        assert grant.storage_usage_percent == 25.0
        assert grant.file_usage_percent == 25.0

    def test_expiry(self):
        """A grant is expired at and after expires_at."""
        grant = _grant(expires_at="2026-02-01T00:00:00.000000Z")
        at = datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert grant.is_expired(at)
        assert not grant.is_expired(at - timedelta(seconds=1))
        assert not _grant().is_expired(at)

    def test_validation_public_form_is_generic(self):
        """A rejected validation never exposes its reason."""
        body = AccessValidation(is_valid=False, reason="secret mismatch").to_public()
        assert "secret mismatch" not in str(body)
        assert body["isValid"] is False

    def test_log_page_total_pages(self):
        """Total pages rounds up."""
        assert LogPage(entries=[], page=1, limit=20, total=41).total_pages == 3
        assert LogPage(entries=[], page=1, limit=20, total=0).total_pages == 0


class TestTimestamps:
    """Tests for to_iso and parse_iso."""

    def test_round_trip(self):
        """Formatting then parsing yields the same instant."""
        when = datetime(2026, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)
        assert to_iso(when) == "2026-03-04T05:06:07.890000Z"
        assert parse_iso(to_iso(when)) == when

    def test_naive_treated_as_utc(self):
        """Naive datetimes are assumed to be UTC."""
        assert to_iso(datetime(2026, 1, 1)) == "2026-01-01T00:00:00.000000Z"

    def test_none_passes_through(self):
        """None and empty strings stay None."""
        assert to_iso(None) is None
        assert parse_iso("") is None
