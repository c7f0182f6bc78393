"""Fine-grained permission evaluation for r2gate.

A user's access grant carries an ordered list of ``PermissionGrant`` entries,
each pairing a compiled resource pattern with a set of actions and optional
conditions. ``PermissionChecker`` evaluates a ``(path, action, context)``
request against those entries.

Evaluation is pure and synchronous, so it is safe to run from concurrent
request handlers without locking. A normal denial is returned as a
``PermissionCheckResult``; only malformed grant data raises
``MalformedGrantError``.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Union

from r2gate.errors import MalformedGrantError
from r2gate.paths import extract_user_id, normalize_path, path_extension, validate_path

logger = logging.getLogger(__name__)

USER_ID_PLACEHOLDERS = ("{userId}", "{user_id}")


class Action(str, Enum):
    """An operation that can be performed on a resource path."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    LIST = "list"
    HEAD = "head"

    @classmethod
    def parse(cls, value: "Action | str") -> "Action":
        """Coerce a string to an Action.

        Raises:
            MalformedGrantError: If the value is not a known action.
        """
        if isinstance(value, Action):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise MalformedGrantError(f"unknown action: {value!r}") from None


MUTATING_ACTIONS = frozenset({Action.WRITE, Action.DELETE})


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MaxSize:
    """Reject writes whose declared size exceeds ``limit`` bytes."""

    limit: int


@dataclass(frozen=True)
class ExtensionAllow:
    """Only allow objects whose extension is in ``extensions``."""

    extensions: frozenset[str]


@dataclass(frozen=True)
class ExtensionDeny:
    """Refuse objects whose extension is in ``extensions``."""

    extensions: frozenset[str]


@dataclass(frozen=True)
class ContentTypeAllow:
    """Only allow declared content types matching one of ``patterns``.

    A pattern may end in ``/*`` to match a whole family (``image/*``).
    """

    patterns: tuple[str, ...]


@dataclass(frozen=True)
class IpAllow:
    """Only allow requests from addresses inside ``networks``."""

    networks: tuple[Union[ipaddress.IPv4Network, ipaddress.IPv6Network], ...]


Condition = Union[MaxSize, ExtensionAllow, ExtensionDeny, ContentTypeAllow, IpAllow]


@dataclass(frozen=True)
class AccessContext:
    """Request attributes that conditions are evaluated against."""

    file_size: int | None = None
    extension: str | None = None
    content_type: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def _extension_set(value: Any, key: str) -> frozenset[str]:
    if not isinstance(value, (list, tuple, set, frozenset)) or not value:
        raise MalformedGrantError(f"{key} must be a non-empty list")
    return frozenset(str(v).lower().lstrip(".") for v in value)


def _parse_networks(value: Any) -> tuple:
    if not isinstance(value, (list, tuple)) or not value:
        raise MalformedGrantError("ipWhitelist must be a non-empty list")
    try:
        return tuple(ipaddress.ip_network(str(v), strict=False) for v in value)
    except ValueError as exc:
        raise MalformedGrantError(f"invalid ipWhitelist entry: {exc}") from None


def parse_conditions(raw: dict[str, Any] | None) -> tuple[Condition, ...]:
    """Parse a JSON-style conditions mapping into Condition values.

    Accepts both camelCase keys (as stored by older clients) and
    snake_case keys.

    Raises:
        MalformedGrantError: On unknown keys or ill-typed values.
    """
    if not raw:
        return ()
    if not isinstance(raw, dict):
        raise MalformedGrantError("conditions must be an object")

    conditions: list[Condition] = []
    for key, value in raw.items():
        if key in ("maxSize", "max_size"):
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise MalformedGrantError("maxSize must be a positive integer")
            conditions.append(MaxSize(value))
        elif key in ("allowedExtensions", "allowed_extensions"):
            conditions.append(ExtensionAllow(_extension_set(value, key)))
        elif key in ("blockedExtensions", "blocked_extensions", "forbiddenExtensions"):
            conditions.append(ExtensionDeny(_extension_set(value, key)))
        elif key in ("allowedContentTypes", "allowed_content_types"):
            if not isinstance(value, (list, tuple)) or not value:
                raise MalformedGrantError(f"{key} must be a non-empty list")
            conditions.append(ContentTypeAllow(tuple(str(v).lower() for v in value)))
        elif key in ("ipWhitelist", "ip_whitelist"):
            conditions.append(IpAllow(_parse_networks(value)))
        else:
            raise MalformedGrantError(f"unknown condition: {key}")
    return tuple(conditions)


def conditions_to_dict(conditions: Iterable[Condition]) -> dict[str, Any]:
    """Serialize conditions back to the camelCase JSON form."""
    out: dict[str, Any] = {}
    for condition in conditions:
        match condition:
            case MaxSize(limit=limit):
                out["maxSize"] = limit
            case ExtensionAllow(extensions=exts):
                out["allowedExtensions"] = sorted(exts)
            case ExtensionDeny(extensions=exts):
                out["blockedExtensions"] = sorted(exts)
            case ContentTypeAllow(patterns=patterns):
                out["allowedContentTypes"] = list(patterns)
            case IpAllow(networks=networks):
                out["ipWhitelist"] = [str(n) for n in networks]
            case _:
                raise MalformedGrantError(f"unsupported condition: {condition!r}")
    return out


def _content_type_matches(content_type: str, pattern: str) -> bool:
    content_type = content_type.split(";", 1)[0].strip().lower()
    if pattern.endswith("/*"):
        return content_type.startswith(pattern[:-1])
    return content_type == pattern


def evaluate_condition(
    condition: Condition, path: str, action: Action, context: AccessContext
) -> str | None:
    """Evaluate one condition.

    Returns:
        None if the condition passes, otherwise the failing attribute name.
    """
    match condition:
        case MaxSize(limit=limit):
            if context.file_size is not None and context.file_size > limit:
                return "fileSize"
            return None
        case ExtensionAllow(extensions=exts):
            if action is Action.LIST:
                return None
            ext = path_extension(path) or (context.extension or "").lower().lstrip(".") or None
            if ext is None or ext not in exts:
                return "extension"
            return None
        case ExtensionDeny(extensions=exts):
            ext = path_extension(path) or (context.extension or "").lower().lstrip(".") or None
            if ext is not None and ext in exts:
                return "extension"
            return None
        case ContentTypeAllow(patterns=patterns):
            if context.content_type is None:
                return None
            if not any(_content_type_matches(context.content_type, p) for p in patterns):
                return "contentType"
            return None
        case IpAllow(networks=networks):
            if context.ip_address is None:
                return "ipAddress"
            try:
                addr = ipaddress.ip_address(context.ip_address)
            except ValueError:
                return "ipAddress"
            if not any(addr in net for net in networks):
                return "ipAddress"
            return None
        case _:
            raise MalformedGrantError(f"unsupported condition: {condition!r}")


# ---------------------------------------------------------------------------
# Resource patterns
# ---------------------------------------------------------------------------


class _Wildcard:
    """Marker for ``*`` in a compiled pattern."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "*"


WILDCARD = _Wildcard()


@dataclass(frozen=True)
class ResourcePattern:
    """A glob resource pattern compiled into literal and wildcard parts.

    ``*`` matches any run of characters, including ``/``, so
    ``user-1/docs/*`` covers the whole ``docs`` subtree. No other
    character is special.

    Attributes:
        raw: The normalized pattern text.
        parts: Alternating literal strings and ``WILDCARD`` markers.
    """

    raw: str
    parts: tuple[Any, ...]

    @classmethod
    def compile(cls, pattern: str) -> "ResourcePattern":
        """Compile a pattern string.

        Raises:
            MalformedGrantError: If the pattern is empty, absolute, or
                contains a traversal segment.
        """
        if not isinstance(pattern, str) or not pattern.strip():
            raise MalformedGrantError("resource pattern must not be empty")
        normalized = normalize_path(pattern)
        if normalized.startswith("/"):
            raise MalformedGrantError(f"resource pattern must be relative: {pattern}")
        if ".." in normalized.split("/"):
            raise MalformedGrantError(f"resource pattern contains traversal: {pattern}")

        parts: list[Any] = []
        for i, chunk in enumerate(normalized.split("*")):
            if i > 0 and (not parts or parts[-1] is not WILDCARD):
                parts.append(WILDCARD)
            if chunk:
                parts.append(chunk)
        return cls(raw=normalized, parts=tuple(parts))

    @property
    def literal_prefix(self) -> str:
        """Text before the first wildcard."""
        if self.parts and isinstance(self.parts[0], str):
            return self.parts[0]
        return ""

    @property
    def owner_id(self) -> int | None:
        """The user whose namespace this pattern is confined to, if any."""
        prefix = self.literal_prefix
        user_id = extract_user_id(prefix)
        if user_id is None or not prefix.startswith(f"user-{user_id}/"):
            return None
        return user_id

    @property
    def specificity(self) -> tuple[int, int, int]:
        """Sort key: longer literal prefix, then more literal text, then fewer wildcards."""
        literal_chars = sum(len(p) for p in self.parts if isinstance(p, str))
        wildcards = sum(1 for p in self.parts if p is WILDCARD)
        return (len(self.literal_prefix), literal_chars, -wildcards)

    def matches(self, path: str) -> bool:
        """Return True if the whole of ``path`` matches the pattern."""
        parts = self.parts
        if not parts:
            return path == ""

        pos = 0
        first = 0
        if isinstance(parts[0], str):
            if not path.startswith(parts[0]):
                return False
            pos = len(parts[0])
            first = 1
            if len(parts) == 1:
                return pos == len(path)

        last = len(parts)
        tail = ""
        if isinstance(parts[-1], str) and last - 1 >= first:
            tail = parts[-1]
            last -= 1

        for part in parts[first:last]:
            if part is WILDCARD:
                continue
            idx = path.find(part, pos)
            if idx < 0:
                return False
            pos = idx + len(part)

        if tail:
            return len(path) - len(tail) >= pos and path.endswith(tail)
        # Pattern ends in a wildcard, which absorbs the remainder.
        return parts[-1] is WILDCARD or pos == len(path)


def expand_user_placeholder(resource: str, user_id: int) -> str:
    """Substitute ``{userId}`` in a template resource pattern."""
    for placeholder in USER_ID_PLACEHOLDERS:
        resource = resource.replace(placeholder, str(user_id))
    return resource


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionGrant:
    """One permission entry: a resource pattern, actions, and conditions."""

    resource: ResourcePattern
    actions: frozenset[Action]
    conditions: tuple[Condition, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any], user_id: int | None = None) -> "PermissionGrant":
        """Build a grant from its JSON form.

        Args:
            raw: ``{"resource": ..., "actions": [...], "conditions": {...}}``.
            user_id: If given, ``{userId}`` placeholders are expanded.

        Raises:
            MalformedGrantError: On missing or ill-typed fields.
        """
        if not isinstance(raw, dict):
            raise MalformedGrantError("permission entry must be an object")
        resource = raw.get("resource", raw.get("resourcePattern"))
        if not isinstance(resource, str):
            raise MalformedGrantError("permission entry is missing 'resource'")
        if user_id is not None:
            resource = expand_user_placeholder(resource, user_id)

        actions_raw = raw.get("actions")
        if not isinstance(actions_raw, (list, tuple, set, frozenset)):
            raise MalformedGrantError("permission entry 'actions' must be a list")
        actions = frozenset(Action.parse(a) for a in actions_raw)

        return cls(
            resource=ResourcePattern.compile(resource),
            actions=actions,
            conditions=parse_conditions(raw.get("conditions")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON form accepted by ``from_dict``."""
        out: dict[str, Any] = {
            "resource": self.resource.raw,
            "actions": sorted(a.value for a in self.actions),
        }
        if self.conditions:
            out["conditions"] = conditions_to_dict(self.conditions)
        return out


def parse_permissions(
    raw: Iterable[dict[str, Any]] | None, user_id: int | None = None
) -> list[PermissionGrant]:
    """Parse a list of JSON permission entries.

    Raises:
        MalformedGrantError: If any entry is malformed.
    """
    if raw is None:
        return []
    if isinstance(raw, (str, bytes, dict)):
        raise MalformedGrantError("permissions must be a list")
    return [PermissionGrant.from_dict(entry, user_id=user_id) for entry in raw]


@dataclass(frozen=True)
class PermissionCheckResult:
    """Outcome of a permission check.

    Attributes:
        has_permission: Whether the action is authorized.
        matched_grant: The authorizing grant, when allowed.
        reason: A short, non-sensitive reason, when denied.
    """

    has_permission: bool
    matched_grant: PermissionGrant | None = None
    reason: str | None = None


def _deny(reason: str) -> PermissionCheckResult:
    return PermissionCheckResult(has_permission=False, reason=reason)


class PermissionChecker:
    """Evaluates requests against one user's permission grants.

    Grants are compiled once and ordered most-specific first. Every grant
    must be confined to the owner's ``user-{id}/`` namespace; a grant that
    is not is treated as malformed.

    Attributes:
        owner_id: The user that owns the grants.
        grants: The grants, sorted by descending specificity.
    """

    def __init__(
        self,
        owner_id: int,
        grants: Iterable[PermissionGrant],
        blocked_extensions: Iterable[str] = (),
    ) -> None:
        """Initialize the checker.

        Args:
            owner_id: The grant owner.
            grants: Permission grants in configured order.
            blocked_extensions: Extra extensions refused by path validation.

        Raises:
            MalformedGrantError: If a grant escapes the owner's namespace.
        """
        self.owner_id = owner_id
        self.blocked_extensions = tuple(blocked_extensions)
        grants = list(grants)
        for grant in grants:
            if grant.resource.owner_id != owner_id:
                raise MalformedGrantError(
                    f"resource pattern {grant.resource.raw!r} is not confined to user-{owner_id}/"
                )
        # sorted() is stable, so equally specific grants keep configured order
        self.grants = sorted(grants, key=lambda g: g.resource.specificity, reverse=True)

    def check(
        self,
        path: str,
        action: Action | str,
        context: AccessContext | None = None,
    ) -> PermissionCheckResult:
        """Decide whether ``action`` on ``path`` is authorized.

        The path is validated first (including the dangerous-extension
        denylist), then checked for cross-user access, and only then
        matched against grants. Access is allowed if any matching grant
        includes the action and all of its conditions pass.
        """
        try:
            action = Action.parse(action)
        except MalformedGrantError:
            return _deny(f"unknown action: {action}")
        context = context or AccessContext()

        validation = validate_path(path, self.blocked_extensions)
        if not validation.is_valid:
            return _deny(f"invalid path: {validation.error}")
        normalized = validation.normalized_path or ""

        if extract_user_id(normalized) != self.owner_id:
            return _deny("cross-user access denied")

        if not self.grants:
            return _deny("no permissions configured")

        reason: str | None = None
        for grant in self.grants:
            if not grant.resource.matches(normalized):
                continue
            if action not in grant.actions:
                reason = reason or f"action not permitted: {action.value}"
                continue
            failed = None
            for condition in grant.conditions:
                failed = evaluate_condition(condition, normalized, action, context)
                if failed is not None:
                    break
            if failed is not None:
                reason = reason or f"condition failed: {failed}"
                continue
            return PermissionCheckResult(has_permission=True, matched_grant=grant)

        return _deny(reason or "no matching resource pattern")


def check_access(
    grants: Iterable[PermissionGrant],
    path: str,
    action: Action | str,
    context: AccessContext | None = None,
    owner_id: int | None = None,
) -> PermissionCheckResult:
    """One-shot permission check.

    When ``owner_id`` is omitted it is taken from the grants themselves;
    grants that disagree about their owner are malformed.

    Raises:
        MalformedGrantError: If the grant data is inconsistent.
    """
    grants = list(grants)
    if owner_id is None:
        owners = {g.resource.owner_id for g in grants}
        if None in owners or len(owners) > 1:
            raise MalformedGrantError("grants must all be confined to one user namespace")
        if not owners:
            return _deny("no permissions configured")
        owner_id = owners.pop()
    return PermissionChecker(owner_id, grants).check(path, action, context)


# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------


@dataclass
class PermissionConfigReport:
    """Result of ``validate_permission_config``."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_permission_config(
    raw: Any, user_id: int | None = None
) -> PermissionConfigReport:
    """Check a submitted permission list without raising.

    Errors make the list unusable; warnings flag entries that duplicate
    the same resource and action.
    """
    report = PermissionConfigReport()
    if not isinstance(raw, list):
        report.errors.append("permissions must be a list")
        return report

    parsed: list[tuple[int, PermissionGrant]] = []
    for i, entry in enumerate(raw, start=1):
        try:
            grant = PermissionGrant.from_dict(entry, user_id=user_id)
        except MalformedGrantError as exc:
            report.errors.append(f"permission {i}: {exc.message}")
            continue
        if not grant.actions:
            report.errors.append(f"permission {i}: actions must not be empty")
        if user_id is not None and grant.resource.owner_id != user_id:
            report.errors.append(
                f"permission {i}: resource must be under user-{user_id}/"
            )
        parsed.append((i, grant))

    for a, (i, first) in enumerate(parsed):
        for j, second in parsed[a + 1 :]:
            if first.resource.raw == second.resource.raw and first.actions & second.actions:
                report.warnings.append(f"permissions {i} and {j} overlap")
    return report


def permission_templates(user_id: int) -> dict[str, list[dict[str, Any]]]:
    """Return example permission sets for a user."""
    prefix = f"user-{user_id}/"
    return {
        "readonly": [{"resource": f"{prefix}*", "actions": ["read", "list", "head"]}],
        "readwrite": [
            {"resource": f"{prefix}*", "actions": ["read", "write", "list", "head"]}
        ],
        "restricted": [
            {
                "resource": f"{prefix}documents/*",
                "actions": ["read", "write", "list", "head"],
                "conditions": {
                    "maxSize": 10485760,
                    "allowedExtensions": ["txt", "md", "pdf", "doc", "docx"],
                },
            },
            {
                "resource": f"{prefix}images/*",
                "actions": ["read", "write", "list", "head"],
                "conditions": {
                    "maxSize": 5242880,
                    "allowedExtensions": ["jpg", "jpeg", "png", "gif", "webp"],
                },
            },
        ],
    }
