"""Configuration loading and Pydantic models for r2gate."""

from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """Server binding and runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 9100
    log_level: str = "INFO"
    log_format: str = "text"
    shutdown_timeout: int = 30
    # Honour X-Forwarded-For only behind a proxy that overwrites it.
    trust_forwarded_for: bool = False


class StoreConfig(BaseModel):
    """Coordinates of the shared bucket handed out with every grant."""

    bucket_name: str = "news-storage"
    region: str = "auto"
    endpoint: str = "https://your-account.r2.cloudflarestorage.com"
    request_timeout_seconds: float = 30.0


class PermissionTemplate(BaseModel):
    """A default permission entry; ``{userId}`` is expanded per user."""

    resource: str
    actions: list[str]
    conditions: dict[str, Any] | None = None


def _default_permissions() -> list[PermissionTemplate]:
    return [PermissionTemplate(resource="user-{userId}/*", actions=["read", "list", "head"])]


class AccessConfig(BaseModel):
    """Grant and token policy defaults."""

    default_max_storage_bytes: int = 104857600  # 100 MiB
    default_max_file_count: int = 1000
    default_expiry_seconds: int = 31536000  # 1 year, 0 disables expiry
    default_readonly: bool = True
    default_permissions: list[PermissionTemplate] = Field(default_factory=_default_permissions)
    quota_decrease_policy: str = "reject"
    token_default_scope: str = "r2:read"
    token_default_expiry_seconds: int = 3600
    max_token_expiry_seconds: int = 2592000  # 30 days


class FileValidationConfig(BaseModel):
    """Global write limits enforced by the gateway."""

    max_file_size: int = 52428800  # 50 MiB
    blocked_extensions: list[str] = Field(default_factory=list)


class SQLiteConfig(BaseModel):
    """SQLite metadata engine settings."""

    path: str = "./data/r2gate.db"


class MetadataConfig(BaseModel):
    """Metadata store configuration."""

    engine: str = "sqlite"
    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)


class LocalStorageConfig(BaseModel):
    """Local filesystem backend settings."""

    root_dir: str = "./data/objects"


class R2StorageConfig(BaseModel):
    """R2 / S3-compatible backend settings."""

    bucket: str = ""
    endpoint_url: str = ""
    region: str = "auto"
    prefix: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""


class StorageConfig(BaseModel):
    """Object storage backend configuration."""

    backend: str = "local"
    local: LocalStorageConfig = Field(default_factory=LocalStorageConfig)
    r2: R2StorageConfig = Field(default_factory=R2StorageConfig)


class ObservabilityConfig(BaseModel):
    """Metrics, health probe and access-log persistence switches."""

    metrics: bool = True
    health_check: bool = True
    access_logging: bool = True


class R2GateConfig(BaseModel):
    """Top-level r2gate configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    access: AccessConfig = Field(default_factory=AccessConfig)
    file_validation: FileValidationConfig = Field(default_factory=FileValidationConfig)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_metadata(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the metadata section from YAML data.

    Handles nested structure: metadata.sqlite.path
    """
    if data is None:
        return {}
    result: dict[str, Any] = {"engine": data.get("engine", "sqlite")}
    sqlite_section = data.get("sqlite")
    if isinstance(sqlite_section, dict):
        result["sqlite"] = {"path": sqlite_section.get("path", "./data/r2gate.db")}
    return result


def _parse_storage(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the storage section from YAML data.

    Handles nested structure: storage.local.root_dir, storage.r2.*
    """
    if data is None:
        return {}
    result: dict[str, Any] = {"backend": data.get("backend", "local")}
    local_section = data.get("local")
    if isinstance(local_section, dict):
        result["local"] = local_section
    r2_section = data.get("r2")
    if isinstance(r2_section, dict):
        result["r2"] = r2_section
    return result


def load_config(path: Path) -> R2GateConfig:
    """Load an R2GateConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated R2GateConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return R2GateConfig(
        server=ServerConfig(**(raw.get("server") or {})),
        store=StoreConfig(**(raw.get("store") or {})),
        access=AccessConfig(**(raw.get("access") or {})),
        file_validation=FileValidationConfig(**(raw.get("file_validation") or {})),
        metadata=MetadataConfig(**_parse_metadata(raw.get("metadata"))),
        storage=StorageConfig(**_parse_storage(raw.get("storage"))),
        observability=ObservabilityConfig(**(raw.get("observability") or {})),
    )


# Environment variable -> (section, field, converter)
_ENV_MAPPING: dict[str, tuple[str, str, Any]] = {
    "R2_BUCKET_NAME": ("store", "bucket_name", str),
    "R2_REGION": ("store", "region", str),
    "R2_ENDPOINT": ("store", "endpoint", str),
    "USER_DEFAULT_STORAGE_BYTES": ("access", "default_max_storage_bytes", int),
    "USER_DEFAULT_FILE_COUNT": ("access", "default_max_file_count", int),
    "USER_DEFAULT_EXPIRY_SECONDS": ("access", "default_expiry_seconds", int),
    "PROXY_REQUEST_TIMEOUT_MS": ("store", "request_timeout_seconds", lambda v: int(v) / 1000),
    "FILE_MAX_SIZE_BYTES": ("file_validation", "max_file_size", int),
}


def apply_env_overrides(config: R2GateConfig, environ: Mapping[str, str]) -> R2GateConfig:
    """Apply environment-variable overrides on top of a loaded config.

    Args:
        config: The config to update in place.
        environ: Usually ``os.environ``.

    Returns:
        The same config instance, for chaining.

    Raises:
        ValueError: If a numeric variable cannot be parsed.
    """
    for name, (section, field, convert) in _ENV_MAPPING.items():
        value = environ.get(name)
        if value is None or value == "":
            continue
        setattr(getattr(config, section), field, convert(value))

    blocked = environ.get("BLOCKED_EXTENSIONS")
    if blocked:
        config.file_validation.blocked_extensions = [
            ext.strip().lower().lstrip(".") for ext in blocked.split(",") if ext.strip()
        ]
    return config


def validate_config(config: R2GateConfig) -> tuple[list[str], list[str]]:
    """Sanity-check a config.

    Returns:
        A ``(errors, warnings)`` pair. The config is usable when errors is empty.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not config.store.bucket_name.strip():
        errors.append("store.bucket_name must not be empty")
    if not config.store.endpoint.strip():
        errors.append("store.endpoint must not be empty")
    if config.store.request_timeout_seconds <= 0:
        errors.append("store.request_timeout_seconds must be greater than 0")
    if config.access.default_max_storage_bytes <= 0:
        errors.append("access.default_max_storage_bytes must be greater than 0")
    if config.access.default_max_file_count <= 0:
        errors.append("access.default_max_file_count must be greater than 0")
    if config.access.default_expiry_seconds < 0:
        errors.append("access.default_expiry_seconds must not be negative")
    if config.access.quota_decrease_policy not in ("reject", "clamp"):
        errors.append("access.quota_decrease_policy must be 'reject' or 'clamp'")
    if config.file_validation.max_file_size <= 0:
        errors.append("file_validation.max_file_size must be greater than 0")

    if config.access.default_max_storage_bytes > 1073741824:
        warnings.append("access.default_max_storage_bytes is larger than 1 GiB")
    if config.access.default_max_file_count > 10000:
        warnings.append("access.default_max_file_count is larger than 10000")
    if config.store.request_timeout_seconds > 300:
        warnings.append("store.request_timeout_seconds is longer than 5 minutes")

    return errors, warnings
