"""Credential and access-configuration service for r2gate.

``AccessControlService`` owns each user's access grant: it issues and
rotates credential pairs, derives capability tokens, enforces quotas and
expiry, and delegates path decisions to the permission checker. The
metadata store is the only source of truth; nothing is cached between
calls, so revocation and deactivation take effect on the next request.

Validation entry points (``validate_access`` and
``validate_access_token``) never raise for a rejected request. They
return an ``AccessValidation`` whose public form does not say which check
failed.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from datetime import timedelta
from typing import Any

from r2gate import metrics as _metrics
from r2gate.audit import AccessLogger
from r2gate.config import R2GateConfig
from r2gate.credentials import (
    generate_access_key_id,
    generate_secret_access_key,
    generate_token,
    hash_secret,
    token_hint,
    verify_secret,
)
from r2gate.errors import (
    ConflictError,
    ExpiredError,
    MalformedGrantError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from r2gate.metadata.store import MetadataStore
from r2gate.models import (
    AccessGrant,
    AccessLogEntry,
    AccessToken,
    AccessValidation,
    Clock,
    GrantSettings,
    HealthReport,
    HealthStatus,
    IssuedCredentials,
    IssuedToken,
    LogPage,
    RequestInfo,
    UsageStatistics,
    to_iso,
    utc_now,
)
from r2gate.paths import user_prefix
from r2gate.permissions import (
    MUTATING_ACTIONS,
    AccessContext,
    Action,
    PermissionChecker,
    parse_permissions,
    validate_permission_config,
)

logger = logging.getLogger(__name__)

_READ_ACTIONS = frozenset({Action.READ, Action.LIST, Action.HEAD})

# Token scope -> actions it permits
TOKEN_SCOPES: dict[str, frozenset[Action]] = {
    "r2:read": _READ_ACTIONS,
    "r2:write": _READ_ACTIONS | {Action.WRITE},
    "r2:delete": _READ_ACTIONS | {Action.WRITE, Action.DELETE},
    "r2:admin": frozenset(Action),
    "r2:*": frozenset(Action),
}

RECENT_LOG_LIMIT = 50
MAX_LOG_PAGE_SIZE = 100


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer")
    return value


def _count(outcome: str, action: Action | str) -> None:
    if _metrics.access_checks_total is not None:
        label = action.value if isinstance(action, Action) else "unknown"
        _metrics.access_checks_total.labels(action=label, outcome=outcome).inc()


class AccessControlService:
    """Manages access grants, tokens, quota accounting and validation.

    Attributes:
        metadata: The metadata store.
        config: The r2gate configuration (store coordinates and policy).
        access_logger: Receives audit events.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        config: R2GateConfig,
        access_logger: AccessLogger,
        clock: Clock = utc_now,
    ) -> None:
        self.metadata = metadata
        self.config = config
        self.access_logger = access_logger
        self._clock = clock

    # -- Helpers -----------------------------------------------------------------

    def _now_iso(self) -> str:
        return to_iso(self._clock()) or ""

    async def _require_grant(self, user_id: int) -> AccessGrant:
        row = await self.metadata.get_active_grant(user_id)
        if row is None:
            raise NotFoundError("No active access configuration for this user.")
        return AccessGrant.from_row(row)

    def _default_permissions(self) -> list[dict[str, Any]]:
        return [
            t.model_dump(exclude_none=True) for t in self.config.access.default_permissions
        ]

    def _checked_permissions(self, raw: Any, user_id: int) -> list[dict[str, Any]]:
        """Expand ``{userId}`` and validate a permission list.

        Raises:
            ValidationError: If any entry is malformed or escapes the user's prefix.
        """
        report = validate_permission_config(raw, user_id=user_id)
        if not report.is_valid:
            raise ValidationError("Invalid permissions", errors=report.errors)
        for warning in report.warnings:
            logger.info("Permission config warning for user %s: %s", user_id, warning)
        return [g.to_dict() for g in parse_permissions(raw, user_id=user_id)]

    def _expiry_from(self, seconds: int | None) -> str | None:
        if seconds is None or seconds == 0:
            return None
        if seconds < 0:
            raise ValidationError("expiresInSeconds must not be negative")
        return to_iso(self._clock() + timedelta(seconds=seconds))

    async def _refresh_active_gauge(self) -> None:
        if _metrics.active_grants is not None:
            _metrics.active_grants.set(await self.metadata.count_active_grants())

    def _authorize_grant(
        self,
        grant: AccessGrant,
        path: str,
        action: Action,
        context: AccessContext | None,
    ) -> str | None:
        """Run every grant-level check.

        Returns:
            None when authorized, otherwise the internal denial reason.
        """
        if not grant.is_active:
            return "grant inactive"
        if grant.is_expired(self._clock()):
            return "grant expired"
        if grant.is_readonly and action in MUTATING_ACTIONS:
            return "grant is read-only"
        try:
            checker = PermissionChecker(
                grant.user_id,
                parse_permissions(grant.permissions, user_id=grant.user_id),
                blocked_extensions=self.config.file_validation.blocked_extensions,
            )
        except MalformedGrantError as exc:
            logger.error("Stored permissions for grant %s are malformed: %s", grant.id, exc.message)
            return "malformed grant"
        result = checker.check(path, action, context)
        if not result.has_permission:
            return result.reason or "denied"
        return None

    async def _reject(
        self,
        reason: str,
        action: Action | str,
        path: str,
        event_type: str,
        user_id: int | None = None,
        access_id: int | None = None,
        request: RequestInfo | None = None,
    ) -> AccessValidation:
        _count("denied", action)
        logger.warning(
            "Access rejected: %s",
            reason,
            extra={"user_id": user_id, "access_id": access_id, "resource_path": path},
        )
        await self.access_logger.log_audit_event(
            user_id,
            event_type,
            access_id=access_id,
            details={"reason": reason, "path": path, "action": str(getattr(action, "value", action))},
            request=request,
        )
        return AccessValidation(is_valid=False, reason=reason)

    # -- Grant lifecycle ---------------------------------------------------------

    async def create_user_access(
        self,
        user_id: int,
        settings: GrantSettings | None = None,
        request: RequestInfo | None = None,
    ) -> IssuedCredentials:
        """Create the user's access grant and issue a credential pair.

        Raises:
            ValidationError: If the user id or any setting is invalid.
            ConflictError: If the user already has an active grant.
        """
        settings = settings or GrantSettings()
        prefix = user_prefix(user_id)
        policy = self.config.access

        raw_permissions = (
            settings.permissions
            if settings.permissions is not None
            else self._default_permissions()
        )
        permissions = self._checked_permissions(raw_permissions, user_id)
        max_bytes = _positive_int(
            "maxStorageBytes",
            settings.max_storage_bytes
            if settings.max_storage_bytes is not None
            else policy.default_max_storage_bytes,
        )
        max_files = _positive_int(
            "maxFileCount",
            settings.max_file_count
            if settings.max_file_count is not None
            else policy.default_max_file_count,
        )
        expires_at = self._expiry_from(
            settings.expires_in_seconds
            if settings.expires_in_seconds is not None
            else policy.default_expiry_seconds
        )
        is_readonly = (
            settings.is_readonly if settings.is_readonly is not None else policy.default_readonly
        )

        # Fast path; the store's unique index is the authoritative check.
        if await self.metadata.get_active_grant(user_id) is not None:
            raise ConflictError()

        access_key_id = generate_access_key_id()
        secret = generate_secret_access_key()
        now = self._now_iso()
        grant_id = await self.metadata.create_grant(
            {
                "user_id": user_id,
                "bucket_name": self.config.store.bucket_name,
                "region": self.config.store.region,
                "endpoint": self.config.store.endpoint,
                "access_key_id": access_key_id,
                "secret_hash": hash_secret(secret),
                "path_prefix": prefix,
                "permissions": json.dumps(permissions),
                "max_storage_bytes": max_bytes,
                "max_file_count": max_files,
                "current_storage_bytes": 0,
                "current_file_count": 0,
                "is_readonly": 1 if is_readonly else 0,
                "is_active": 1,
                "expires_at": expires_at,
                "last_used_at": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        row = await self.metadata.get_grant(grant_id)
        assert row is not None
        grant = AccessGrant.from_row(row)

        logger.info("Created access grant %s for user %s", grant_id, user_id)
        await self.access_logger.log_audit_event(
            user_id,
            "access_created",
            access_id=grant_id,
            details={"maxStorageBytes": max_bytes, "maxFileCount": max_files},
            request=request,
        )
        await self._refresh_active_gauge()
        return IssuedCredentials(grant=grant, secret_access_key=secret)

    async def get_user_access(self, user_id: int) -> AccessGrant | None:
        """Return the user's active grant, or None. Inactive grants are never returned."""
        row = await self.metadata.get_active_grant(user_id)
        return AccessGrant.from_row(row) if row is not None else None

    async def update_user_access(
        self,
        user_id: int,
        settings: GrantSettings,
        request: RequestInfo | None = None,
    ) -> AccessGrant:
        """Merge permission, quota, expiry and read-only changes into the active grant.

        A ceiling below current usage is rejected, or raised to current
        usage when ``access.quota_decrease_policy`` is ``clamp``.

        Raises:
            NotFoundError: If the user has no active grant.
            ValidationError: If a change is invalid.
        """
        grant = await self._require_grant(user_id)
        clamp = self.config.access.quota_decrease_policy == "clamp"
        fields: dict[str, Any] = {}

        if settings.permissions is not None:
            fields["permissions"] = json.dumps(
                self._checked_permissions(settings.permissions, user_id)
            )

        if settings.max_storage_bytes is not None:
            value = _positive_int("maxStorageBytes", settings.max_storage_bytes)
            if value < grant.current_storage_bytes:
                if not clamp:
                    raise ValidationError(
                        "maxStorageBytes cannot be lower than current usage",
                        currentStorageBytes=grant.current_storage_bytes,
                    )
                value = grant.current_storage_bytes
            fields["max_storage_bytes"] = value

        if settings.max_file_count is not None:
            value = _positive_int("maxFileCount", settings.max_file_count)
            if value < grant.current_file_count:
                if not clamp:
                    raise ValidationError(
                        "maxFileCount cannot be lower than current usage",
                        currentFileCount=grant.current_file_count,
                    )
                value = grant.current_file_count
            fields["max_file_count"] = value

        if settings.expires_in_seconds is not None:
            fields["expires_at"] = self._expiry_from(settings.expires_in_seconds)

        if settings.is_readonly is not None:
            fields["is_readonly"] = 1 if settings.is_readonly else 0

        if fields:
            fields["updated_at"] = self._now_iso()
            await self.metadata.update_grant(grant.id, fields)
            await self.access_logger.log_audit_event(
                user_id,
                "access_updated",
                access_id=grant.id,
                details={"fields": sorted(k for k in fields if k != "updated_at")},
                request=request,
            )

        row = await self.metadata.get_grant(grant.id)
        assert row is not None
        return AccessGrant.from_row(row)

    async def delete_user_access(self, user_id: int, request: RequestInfo | None = None) -> None:
        """Soft-delete: deactivate the grant and revoke all of the user's tokens.

        Raises:
            NotFoundError: If the user has no active grant.
        """
        grant = await self._require_grant(user_id)
        now = self._now_iso()
        await self.metadata.update_grant(grant.id, {"is_active": 0, "updated_at": now})
        revoked = await self.metadata.revoke_tokens_for_user(user_id, now)
        logger.info("Deactivated grant %s for user %s (%d tokens revoked)", grant.id, user_id, revoked)
        await self.access_logger.log_audit_event(
            user_id,
            "access_deleted",
            access_id=grant.id,
            details={"tokensRevoked": revoked},
            request=request,
        )
        await self._refresh_active_gauge()

    async def regenerate_credentials(
        self, user_id: int, request: RequestInfo | None = None
    ) -> IssuedCredentials:
        """Replace the credential pair; the old pair stops working immediately.

        Raises:
            NotFoundError: If the user has no active grant.
        """
        grant = await self._require_grant(user_id)
        access_key_id = generate_access_key_id()
        secret = generate_secret_access_key()
        await self.metadata.update_grant(
            grant.id,
            {
                "access_key_id": access_key_id,
                "secret_hash": hash_secret(secret),
                "updated_at": self._now_iso(),
            },
        )
        await self.access_logger.log_audit_event(
            user_id,
            "credentials_regenerated",
            access_id=grant.id,
            details={"previousAccessKeyId": grant.access_key_id},
            request=request,
        )
        row = await self.metadata.get_grant(grant.id)
        assert row is not None
        return IssuedCredentials(grant=AccessGrant.from_row(row), secret_access_key=secret)

    async def reset_usage(
        self,
        user_id: int,
        admin_id: int | None = None,
        request: RequestInfo | None = None,
    ) -> AccessGrant:
        """Zero the usage counters and revoke the user's tokens.

        Raises:
            NotFoundError: If the user has no active grant.
        """
        grant = await self._require_grant(user_id)
        now = self._now_iso()
        await self.metadata.replace_objects(grant.id, user_prefix(user_id), {}, now)
        revoked = await self.metadata.revoke_tokens_for_user(user_id, now)
        await self.access_logger.log_audit_event(
            user_id,
            "usage_reset",
            access_id=grant.id,
            details={
                "adminId": admin_id,
                "previousStorageBytes": grant.current_storage_bytes,
                "previousFileCount": grant.current_file_count,
                "tokensRevoked": revoked,
            },
            request=request,
        )
        row = await self.metadata.get_grant(grant.id)
        assert row is not None
        return AccessGrant.from_row(row)

    # -- Validation --------------------------------------------------------------

    async def validate_access(
        self,
        access_key_id: str,
        secret_access_key: str,
        path: str,
        action: Action | str,
        context: AccessContext | None = None,
        request: RequestInfo | None = None,
    ) -> AccessValidation:
        """Authenticate a credential pair and authorize ``action`` on ``path``.

        Every failure yields the same public result.
        """
        try:
            action = Action.parse(action)
        except MalformedGrantError:
            return await self._reject("unknown action", action, path, "access_denied", request=request)

        row = None
        if isinstance(access_key_id, str) and access_key_id:
            row = await self.metadata.get_grant_by_access_key(access_key_id)
        if row is None:
            return await self._reject("unknown access key", action, path, "invalid_key", request=request)

        grant = AccessGrant.from_row(row)
        if not verify_secret(secret_access_key, grant.secret_hash):
            return await self._reject(
                "secret mismatch", action, path, "invalid_key", grant.user_id, grant.id, request
            )

        reason = self._authorize_grant(grant, path, action, context)
        if reason is not None:
            return await self._reject(
                reason, action, path, "access_denied", grant.user_id, grant.id, request
            )

        await self.metadata.update_grant(grant.id, {"last_used_at": self._now_iso()})
        _count("allowed", action)
        return AccessValidation(is_valid=True, user_id=grant.user_id, grant_id=grant.id)

    # -- Tokens ------------------------------------------------------------------

    async def create_access_token(
        self,
        user_id: int,
        access_id: int | None = None,
        scope: str | None = None,
        expires_in_seconds: int | None = None,
        ip_whitelist: list[str] | None = None,
        request: RequestInfo | None = None,
    ) -> IssuedToken:
        """Derive a short-lived bearer token from the user's active grant.

        The token never outlives its grant.

        Raises:
            NotFoundError: If there is no matching active grant.
            ExpiredError: If the grant has expired.
            ValidationError: On an unknown scope, bad expiry or bad address.
        """
        grant = await self._require_grant(user_id)
        if access_id is not None and access_id != grant.id:
            raise NotFoundError("No active access configuration with that id.")
        now = self._clock()
        if grant.is_expired(now):
            raise ExpiredError("Access configuration has expired.")

        policy = self.config.access
        scope = scope or policy.token_default_scope
        if scope not in TOKEN_SCOPES:
            raise ValidationError(f"Unknown token scope: {scope}")

        seconds = (
            expires_in_seconds
            if expires_in_seconds is not None
            else policy.token_default_expiry_seconds
        )
        if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds <= 0:
            raise ValidationError("expiresInSeconds must be a positive integer")
        if seconds > policy.max_token_expiry_seconds:
            raise ValidationError(
                f"expiresInSeconds must not exceed {policy.max_token_expiry_seconds}"
            )
        expires_at = now + timedelta(seconds=seconds)
        if grant.expires_at is not None and grant.expires_at < expires_at:
            expires_at = grant.expires_at

        networks: list[str] = []
        for entry in ip_whitelist or []:
            try:
                networks.append(str(ipaddress.ip_network(str(entry), strict=False)))
            except ValueError:
                raise ValidationError(f"Invalid IP whitelist entry: {entry}") from None

        raw = generate_token()
        token_id = await self.metadata.create_token(
            {
                "user_id": user_id,
                "grant_id": grant.id,
                "token_hash": hash_secret(raw),
                "token_hint": token_hint(raw),
                "scope": scope,
                "ip_whitelist": json.dumps(networks),
                "expires_at": to_iso(expires_at),
                "usage_count": 0,
                "last_used_at": None,
                "is_revoked": 0,
                "created_at": to_iso(now),
                "revoked_at": None,
            }
        )
        await self.access_logger.log_audit_event(
            user_id,
            "token_created",
            access_id=grant.id,
            details={"tokenId": token_id, "scope": scope, "expiresAt": to_iso(expires_at)},
            request=request,
        )
        row = await self.metadata.get_token(token_id)
        assert row is not None
        return IssuedToken(token=AccessToken.from_row(row), raw_token=raw)

    async def list_access_tokens(self, user_id: int) -> list[AccessToken]:
        """List the user's tokens, newest first, including revoked ones."""
        return [AccessToken.from_row(r) for r in await self.metadata.list_tokens(user_id)]

    async def revoke_access_token(
        self, user_id: int, token_id: int, request: RequestInfo | None = None
    ) -> AccessToken:
        """Revoke one of the user's tokens. Revoking twice is a no-op.

        Raises:
            NotFoundError: If the token does not exist or belongs to another user.
        """
        row = await self.metadata.get_token(token_id)
        if row is None or row["user_id"] != user_id:
            raise NotFoundError("Token not found.")
        if await self.metadata.revoke_token(token_id, self._now_iso()):
            await self.access_logger.log_audit_event(
                user_id,
                "token_revoked",
                access_id=row["grant_id"],
                details={"tokenId": token_id},
                request=request,
            )
        row = await self.metadata.get_token(token_id)
        assert row is not None
        return AccessToken.from_row(row)

    async def validate_access_token(
        self,
        token: str,
        path: str,
        action: Action | str,
        context: AccessContext | None = None,
        request: RequestInfo | None = None,
    ) -> AccessValidation:
        """Authenticate a bearer token and authorize ``action`` on ``path``.

        The token's scope narrows, and never widens, what its parent grant
        permits.
        """
        try:
            action = Action.parse(action)
        except MalformedGrantError:
            return await self._reject("unknown action", action, path, "access_denied", request=request)

        row = None
        if isinstance(token, str) and token:
            row = await self.metadata.get_token_by_hash(hash_secret(token))
        if row is None:
            return await self._reject("unknown token", action, path, "invalid_key", request=request)

        record = AccessToken.from_row(row)
        deny = None
        if record.is_revoked:
            deny = "token revoked"
        elif record.is_expired(self._clock()):
            deny = "token expired"
        elif record.ip_whitelist and not self._ip_allowed(request, record.ip_whitelist):
            deny = "ip not allowed"
        elif action not in TOKEN_SCOPES.get(record.scope, frozenset()):
            deny = "scope does not permit action"
        if deny is not None:
            return await self._reject(
                deny, action, path, "access_denied", record.user_id, record.grant_id, request
            )

        grant_row = await self.metadata.get_grant(record.grant_id)
        if grant_row is None:
            return await self._reject(
                "parent grant missing", action, path, "access_denied", record.user_id, None, request
            )
        grant = AccessGrant.from_row(grant_row)
        reason = self._authorize_grant(grant, path, action, context)
        if reason is not None:
            return await self._reject(
                reason, action, path, "access_denied", grant.user_id, grant.id, request
            )

        await self.metadata.record_token_use(record.id, self._now_iso())
        _count("allowed", action)
        return AccessValidation(
            is_valid=True, user_id=grant.user_id, grant_id=grant.id, token_id=record.id
        )

    @staticmethod
    def _ip_allowed(request: RequestInfo | None, whitelist: list[str]) -> bool:
        if request is None or not request.ip_address:
            return False
        try:
            addr = ipaddress.ip_address(request.ip_address)
        except ValueError:
            return False
        return any(addr in ipaddress.ip_network(n, strict=False) for n in whitelist)

    # -- Quota accounting --------------------------------------------------------

    async def charge_write(self, grant_id: int, key: str, size: int) -> dict[str, Any]:
        """Charge a write of ``size`` bytes at ``key`` against the grant's ceilings.

        An overwrite is charged only the size difference. The returned charge
        can be handed to :meth:`revert_write` if the write then fails.

        Raises:
            QuotaExceededError: If a ceiling would be exceeded; nothing changes.
            NotFoundError: If the grant is no longer active.
        """
        try:
            return await self.metadata.charge_object(grant_id, key, size, self._now_iso())
        except QuotaExceededError as exc:
            if _metrics.quota_rejections_total is not None:
                _metrics.quota_rejections_total.labels(resource=exc.resource).inc()
            logger.warning(
                "Quota exceeded (%s) for grant %s", exc.resource, grant_id,
                extra={"access_id": grant_id},
            )
            raise

    async def revert_write(self, grant_id: int, key: str, charge: dict[str, Any]) -> bool:
        """Undo a charge unless a later write to the same key replaced it."""
        return await self.metadata.revert_charge(grant_id, key, charge, self._now_iso())

    async def credit_delete(self, grant_id: int, key: str) -> int | None:
        """Credit a deleted object back to the grant, at most once per charge."""
        return await self.metadata.discharge_object(grant_id, key, self._now_iso())

    async def sync_usage(self, user_id: int, objects: dict[str, int]) -> AccessGrant:
        """Rebuild usage from the object sizes measured in the object store.

        Raises:
            NotFoundError: If the user has no active grant.
        """
        grant = await self._require_grant(user_id)
        row = await self.metadata.replace_objects(
            grant.id, user_prefix(user_id), objects, self._now_iso()
        )
        logger.info(
            "Synced usage for user %s: %d bytes, %d files",
            user_id, row["current_storage_bytes"], row["current_file_count"],
        )
        return AccessGrant.from_row(row)

    # -- Reporting ---------------------------------------------------------------

    async def get_access_logs(self, user_id: int, page: int = 1, limit: int = 20) -> LogPage:
        """Return one page of the user's access log, newest first.

        Raises:
            ValidationError: If ``page`` < 1 or ``limit`` is outside 1..100.
        """
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1 or limit > MAX_LOG_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_LOG_PAGE_SIZE}")
        rows = await self.metadata.list_access_logs(user_id, limit, (page - 1) * limit)
        total = await self.metadata.count_access_logs(user_id)
        return LogPage(
            entries=[AccessLogEntry.from_row(r) for r in rows],
            page=page,
            limit=limit,
            total=total,
        )

    async def get_usage_statistics(self, user_id: int) -> UsageStatistics:
        summary = await self.metadata.access_log_summary(user_id)
        recent = await self.metadata.list_access_logs(user_id, RECENT_LOG_LIMIT)
        grant = await self.get_user_access(user_id)
        return UsageStatistics(
            total_accesses=summary["total"],
            total_bytes_transferred=summary["bytes"],
            average_response_time_ms=round(float(summary["avg_response_ms"]), 2),
            error_count=summary["errors"],
            operation_counts=summary["operations"],
            recent_logs=[AccessLogEntry.from_row(r) for r in recent],
            storage_usage_percent=grant.storage_usage_percent if grant else 0.0,
            file_usage_percent=grant.file_usage_percent if grant else 0.0,
        )

    async def get_health(self, user_id: int) -> HealthReport:
        """Report the user's access status.

        The first matching condition wins: expired, storage full, file
        limit reached, otherwise healthy.
        """
        grant = await self.get_user_access(user_id)
        if grant is None:
            return HealthReport(status=HealthStatus.NOT_CONFIGURED)

        now = self._clock()
        details: dict[str, Any] = {
            "storageUsagePercent": grant.storage_usage_percent,
            "fileUsagePercent": grant.file_usage_percent,
            "expiresAt": to_iso(grant.expires_at),
            "daysUntilExpiry": (
                (grant.expires_at - now).days if grant.expires_at is not None else None
            ),
            "lastUsedAt": to_iso(grant.last_used_at),
            "isReadonly": grant.is_readonly,
        }
        if grant.is_expired(now):
            status = HealthStatus.EXPIRED
        elif grant.current_storage_bytes >= grant.max_storage_bytes:
            status = HealthStatus.STORAGE_FULL
        elif grant.current_file_count >= grant.max_file_count:
            status = HealthStatus.FILE_LIMIT_REACHED
        else:
            status = HealthStatus.HEALTHY
        return HealthReport(status=status, details=details)
