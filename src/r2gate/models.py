"""Data model types for r2gate.

These dataclasses represent the records kept in the metadata store
(access grants, capability tokens, access-log entries, audit events) and
the result containers returned by the access-control service. Records are
built from plain row dicts with ``from_row`` and rendered for HTTP
responses with ``to_public``, which never includes secret material.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from r2gate.credentials import REDACTED

Clock = Callable[[], datetime]

INVALID_ACCESS_MESSAGE = "Invalid credentials or insufficient permissions"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Render a datetime as an ISO 8601 UTC string (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso(value: str | datetime | None) -> datetime | None:
    """Parse a stored ISO 8601 timestamp into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _json_field(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


@dataclass
class AccessGrant:
    """A user's access configuration for the shared bucket.

    Attributes:
        id: Store-assigned identifier (the "access id").
        user_id: Owning user, immutable.
        bucket_name: Target bucket.
        region: Target region.
        endpoint: Target endpoint URL.
        access_key_id: Public half of the credential pair.
        secret_hash: SHA-256 digest of the secret access key.
        path_prefix: The user's namespace, ``user-{id}/``.
        permissions: Permission entries in JSON form.
        max_storage_bytes: Storage ceiling.
        max_file_count: File-count ceiling.
        current_storage_bytes: Live storage usage.
        current_file_count: Live file count.
        is_readonly: When set, write and delete are refused.
        is_active: Cleared on soft delete; inactive grants are kept.
        expires_at: Hard expiry, or None for no expiry.
        last_used_at: Last successful validation.
        created_at: Creation timestamp.
        updated_at: Last modification timestamp.
    """

    id: int
    user_id: int
    bucket_name: str
    region: str
    endpoint: str
    access_key_id: str
    secret_hash: str
    path_prefix: str
    permissions: list[dict[str, Any]] = field(default_factory=list)
    max_storage_bytes: int = 0
    max_file_count: int = 0
    current_storage_bytes: int = 0
    current_file_count: int = 0
    is_readonly: bool = True
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AccessGrant":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            bucket_name=row["bucket_name"],
            region=row["region"],
            endpoint=row["endpoint"],
            access_key_id=row["access_key_id"],
            secret_hash=row["secret_hash"],
            path_prefix=row["path_prefix"],
            permissions=_json_field(row.get("permissions"), []),
            max_storage_bytes=row["max_storage_bytes"],
            max_file_count=row["max_file_count"],
            current_storage_bytes=row["current_storage_bytes"],
            current_file_count=row["current_file_count"],
            is_readonly=bool(row["is_readonly"]),
            is_active=bool(row["is_active"]),
            expires_at=parse_iso(row.get("expires_at")),
            last_used_at=parse_iso(row.get("last_used_at")),
            created_at=parse_iso(row.get("created_at")),
            updated_at=parse_iso(row.get("updated_at")),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    @property
    def storage_usage_percent(self) -> float:
        if self.max_storage_bytes <= 0:
            return 0.0
        return round(self.current_storage_bytes * 100.0 / self.max_storage_bytes, 2)

    @property
    def file_usage_percent(self) -> float:
        if self.max_file_count <= 0:
            return 0.0
        return round(self.current_file_count * 100.0 / self.max_file_count, 2)

    def to_public(self) -> dict[str, Any]:
        """Render for API responses; the secret is always redacted."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "bucketName": self.bucket_name,
            "region": self.region,
            "endpoint": self.endpoint,
            "accessKeyId": self.access_key_id,
            "secretAccessKey": REDACTED,
            "pathPrefix": self.path_prefix,
            "permissions": self.permissions,
            "maxStorageBytes": self.max_storage_bytes,
            "maxFileCount": self.max_file_count,
            "currentStorageBytes": self.current_storage_bytes,
            "currentFileCount": self.current_file_count,
            "isReadonly": self.is_readonly,
            "isActive": self.is_active,
            "expiresAt": to_iso(self.expires_at),
            "lastUsedAt": to_iso(self.last_used_at),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


@dataclass
class AccessToken:
    """A short-lived capability derived from an access grant.

    Only the token's digest and a short non-secret hint are stored.
    """

    id: int
    user_id: int
    grant_id: int
    token_hash: str
    token_hint: str
    scope: str
    ip_whitelist: list[str] = field(default_factory=list)
    expires_at: datetime | None = None
    usage_count: int = 0
    last_used_at: datetime | None = None
    is_revoked: bool = False
    created_at: datetime | None = None
    revoked_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AccessToken":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            grant_id=row["grant_id"],
            token_hash=row["token_hash"],
            token_hint=row["token_hint"],
            scope=row["scope"],
            ip_whitelist=_json_field(row.get("ip_whitelist"), []),
            expires_at=parse_iso(row.get("expires_at")),
            usage_count=row.get("usage_count") or 0,
            last_used_at=parse_iso(row.get("last_used_at")),
            is_revoked=bool(row.get("is_revoked")),
            created_at=parse_iso(row.get("created_at")),
            revoked_at=parse_iso(row.get("revoked_at")),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "accessId": self.grant_id,
            "tokenHint": self.token_hint,
            "scope": self.scope,
            "ipWhitelist": self.ip_whitelist,
            "expiresAt": to_iso(self.expires_at),
            "usageCount": self.usage_count,
            "lastUsedAt": to_iso(self.last_used_at),
            "isRevoked": self.is_revoked,
            "createdAt": to_iso(self.created_at),
            "revokedAt": to_iso(self.revoked_at),
        }


@dataclass(frozen=True)
class AccessLogEntry:
    """One immutable access-log record."""

    user_id: int | None
    grant_id: int | None
    operation: str
    resource_path: str
    status_code: int
    bytes_transferred: int = 0
    response_time_ms: int = 0
    ip_address: str | None = None
    user_agent: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    id: int | None = None

    @property
    def success(self) -> bool:
        return 200 <= self.status_code < 400

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AccessLogEntry":
        return cls(
            id=row.get("id"),
            user_id=row.get("user_id"),
            grant_id=row.get("grant_id"),
            operation=row["operation"],
            resource_path=row["resource_path"],
            status_code=row["status_code"],
            bytes_transferred=row.get("bytes_transferred") or 0,
            response_time_ms=row.get("response_time_ms") or 0,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            error_message=row.get("error_message"),
            created_at=parse_iso(row.get("created_at")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "grant_id": self.grant_id,
            "operation": self.operation,
            "resource_path": self.resource_path,
            "status_code": self.status_code,
            "bytes_transferred": self.bytes_transferred,
            "response_time_ms": self.response_time_ms,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "error_message": self.error_message,
            "created_at": to_iso(self.created_at),
        }

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation,
            "resourcePath": self.resource_path,
            "statusCode": self.status_code,
            "success": self.success,
            "bytesTransferred": self.bytes_transferred,
            "responseTimeMs": self.response_time_ms,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "errorMessage": self.error_message,
            "createdAt": to_iso(self.created_at),
        }


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class AuditEvent:
    """A security-relevant change or rejection, kept apart from access logs."""

    user_id: int | None
    event_type: str
    risk_level: RiskLevel
    grant_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AuditEvent":
        return cls(
            id=row.get("id"),
            user_id=row.get("user_id"),
            grant_id=row.get("grant_id"),
            event_type=row["event_type"],
            risk_level=RiskLevel(row["risk_level"]),
            details=_json_field(row.get("details"), {}),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=parse_iso(row.get("created_at")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "grant_id": self.grant_id,
            "event_type": self.event_type,
            "risk_level": self.risk_level.value,
            "details": json.dumps(self.details, default=str),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_iso(self.created_at),
        }


# -- Service results -----------------------------------------------------------


@dataclass(frozen=True)
class GrantSettings:
    """Caller-supplied grant settings for create and update.

    ``None`` means "use the default" on create and "leave unchanged" on
    update. ``expires_in_seconds=0`` means the grant never expires.
    """

    permissions: list[dict[str, Any]] | None = None
    max_storage_bytes: int | None = None
    max_file_count: int | None = None
    expires_in_seconds: int | None = None
    is_readonly: bool | None = None


@dataclass(frozen=True)
class RequestInfo:
    """Caller network attributes recorded with logs and audit events."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class IssuedCredentials:
    """A grant together with its secret, returned only at issue time."""

    grant: AccessGrant
    secret_access_key: str

    def to_public(self) -> dict[str, Any]:
        body = self.grant.to_public()
        body["secretAccessKey"] = self.secret_access_key
        return body


@dataclass(frozen=True)
class IssuedToken:
    """A token record plus the raw bearer value, returned only at issue time."""

    token: AccessToken
    raw_token: str

    def to_public(self) -> dict[str, Any]:
        body = self.token.to_public()
        body["token"] = self.raw_token
        return body


@dataclass(frozen=True)
class AccessValidation:
    """Outcome of credential or token validation.

    ``reason`` is for process logs only and is never rendered to callers.
    """

    is_valid: bool
    user_id: int | None = None
    grant_id: int | None = None
    token_id: int | None = None
    reason: str | None = None

    def to_public(self) -> dict[str, Any]:
        if self.is_valid:
            return {"isValid": True, "userId": self.user_id, "accessId": self.grant_id}
        return {"isValid": False, "error": INVALID_ACCESS_MESSAGE}


class HealthStatus(str, Enum):
    NOT_CONFIGURED = "not_configured"
    HEALTHY = "healthy"
    EXPIRED = "expired"
    STORAGE_FULL = "storage_full"
    FILE_LIMIT_REACHED = "file_limit_reached"


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    details: dict[str, Any] = field(default_factory=dict)

    def to_public(self) -> dict[str, Any]:
        return {"status": self.status.value, "details": self.details}


@dataclass(frozen=True)
class UsageStatistics:
    """Aggregated access-log and quota figures for one user."""

    total_accesses: int
    total_bytes_transferred: int
    average_response_time_ms: float
    error_count: int
    operation_counts: dict[str, int]
    recent_logs: list[AccessLogEntry]
    storage_usage_percent: float
    file_usage_percent: float

    def to_public(self) -> dict[str, Any]:
        return {
            "totalAccesses": self.total_accesses,
            "totalBytesTransferred": self.total_bytes_transferred,
            "averageResponseTimeMs": self.average_response_time_ms,
            "errorCount": self.error_count,
            "operationCounts": self.operation_counts,
            "recentLogs": [e.to_public() for e in self.recent_logs],
            "storageUsagePercent": self.storage_usage_percent,
            "fileUsagePercent": self.file_usage_percent,
        }


@dataclass(frozen=True)
class LogPage:
    entries: list[AccessLogEntry]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def to_public(self) -> dict[str, Any]:
        return {
            "logs": [e.to_public() for e in self.entries],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "totalPages": self.total_pages,
            },
        }


@dataclass(frozen=True)
class ClientCredentials:
    """Credentials presented on an object request: a key pair or a bearer token."""

    access_key_id: str | None = None
    secret_access_key: str | None = None
    token: str | None = None
