"""Abstract metadata store protocol for r2gate."""

from typing import Any, Protocol


class MetadataStore(Protocol):
    """Protocol defining the metadata store interface.

    The metadata store is the sole source of truth for grant state and
    quota counters. Rows are exchanged as plain dicts whose keys match the
    column names; timestamps are ISO 8601 strings and JSON columns
    (``permissions``, ``ip_whitelist``, ``details``) are JSON text.

    Usage counters are backed by an object ledger holding the bytes charged
    for each stored key, so a write or delete is charged or credited exactly
    once however calls interleave.
    """

    async def init_db(self) -> None:
        """Initialize the schema. Must be idempotent."""
        ...

    async def close(self) -> None:
        """Close the store and release resources."""
        ...

    async def ping(self) -> None:
        """Run a trivial query; raise if the store is unreachable."""
        ...

    # -- Grants ----------------------------------------------------------------

    async def create_grant(self, record: dict[str, Any]) -> int:
        """Insert a new active grant.

        Args:
            record: Column values, excluding ``id``.

        Returns:
            The new grant id.

        Raises:
            ConflictError: If the user already has an active grant.
        """
        ...

    async def get_grant(self, grant_id: int) -> dict[str, Any] | None:
        """Fetch a grant by id, active or not."""
        ...

    async def get_active_grant(self, user_id: int) -> dict[str, Any] | None:
        """Fetch the user's active grant, or None."""
        ...

    async def get_grant_by_access_key(self, access_key_id: str) -> dict[str, Any] | None:
        """Fetch a grant by its access key id, active or not."""
        ...

    async def update_grant(self, grant_id: int, fields: dict[str, Any]) -> None:
        """Overwrite the given columns on a grant."""
        ...

    async def count_active_grants(self) -> int:
        """Return the number of active grants."""
        ...

    # -- Object usage ledger -----------------------------------------------------

    async def charge_object(
        self, grant_id: int, key: str, size: int, now: str
    ) -> dict[str, Any]:
        """Record ``key`` at ``size`` bytes and charge the change to the grant.

        Reading the previous entry, checking both ceilings, updating the
        counters and writing the new entry happen as one atomic step. An
        entry owned by another grant counts as absent.

        Returns:
            A charge dict: ``charge_id``, ``bytes_delta``, ``files_delta``,
            ``previous`` (the replaced entry or None) and ``grant`` (the
            updated grant row).

        Raises:
            QuotaExceededError: If a ceiling would be exceeded; nothing changes.
            NotFoundError: If the grant is missing or inactive.
        """
        ...

    async def revert_charge(self, grant_id: int, key: str, charge: dict[str, Any], now: str) -> bool:
        """Undo a charge whose store write failed.

        Only applies while the entry still carries ``charge["charge_id"]``;
        a later charge of the same key already accounts for this one.

        Returns:
            True if the charge was undone.
        """
        ...

    async def discharge_object(self, grant_id: int, key: str, now: str) -> int | None:
        """Remove the entry for ``key`` and credit its size and one file.

        Returns:
            The bytes credited, or None if no entry was charged to the grant.
        """
        ...

    async def replace_objects(
        self, grant_id: int, prefix: str, objects: dict[str, int], now: str
    ) -> dict[str, Any]:
        """Replace every entry under ``prefix`` and reset the counters to match.

        Returns:
            The updated grant row.
        """
        ...

    # -- Tokens ----------------------------------------------------------------

    async def create_token(self, record: dict[str, Any]) -> int:
        """Insert a token record and return its id."""
        ...

    async def get_token(self, token_id: int) -> dict[str, Any] | None:
        """Fetch a token by id."""
        ...

    async def get_token_by_hash(self, token_hash: str) -> dict[str, Any] | None:
        """Fetch a token by the digest of its bearer value."""
        ...

    async def list_tokens(self, user_id: int) -> list[dict[str, Any]]:
        """List a user's tokens, newest first."""
        ...

    async def revoke_token(self, token_id: int, now: str) -> bool:
        """Revoke one token. Returns True if it was not already revoked."""
        ...

    async def revoke_tokens_for_user(self, user_id: int, now: str) -> int:
        """Revoke every unrevoked token of a user. Returns the count."""
        ...

    async def record_token_use(self, token_id: int, now: str) -> None:
        """Increment a token's usage count and stamp ``last_used_at``."""
        ...

    # -- Access logs -----------------------------------------------------------

    async def append_access_log(self, record: dict[str, Any]) -> int:
        """Append an access-log row and return its id."""
        ...

    async def list_access_logs(
        self, user_id: int, limit: int, offset: int = 0
    ) -> list[dict[str, Any]]:
        """List a user's access-log rows, newest first."""
        ...

    async def count_access_logs(self, user_id: int) -> int:
        """Return the number of access-log rows for a user."""
        ...

    async def access_log_summary(self, user_id: int) -> dict[str, Any]:
        """Aggregate a user's access logs.

        Returns:
            A dict with ``total``, ``bytes``, ``avg_response_ms``,
            ``errors`` and ``operations`` (operation -> count).
        """
        ...

    # -- Audit events ----------------------------------------------------------

    async def append_audit_event(self, record: dict[str, Any]) -> int:
        """Append an audit event row and return its id."""
        ...

    async def list_audit_events(self, user_id: int, limit: int = 50) -> list[dict[str, Any]]:
        """List a user's audit events, newest first."""
        ...
