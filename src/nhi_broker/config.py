"""Configuration management for the NHI credential broker."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1024, le=65535)
    trust_forwarded_headers: bool = Field(default=False)
    rate_limit_per_ip: int = Field(default=600, ge=1, description="Requests per minute")
    max_body_size_kb: int = Field(default=64, ge=1)


class TrustSettings(BaseModel):
    config_path: str = Field(default="./trust.yaml", description="Path to trust.yaml")


class RegistrySettings(BaseModel):
    path: str = Field(default="./registry.yaml", description="Path to registry.yaml")


class StorageSettings(BaseModel):
    audit_sqlite_path: str = Field(default="./data/audit.sqlite")
    audit_sqlite_wal: bool = Field(default=True)


class LeaseSettings(BaseModel):
    sweep_interval_seconds: float = Field(default=15.0, ge=0.1, le=3600)
    pending_timeout_seconds: int = Field(default=120, ge=1, le=3600)
    archive_max_entries: int = Field(default=10_000, ge=1, le=1_000_000)


class IssuanceSettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    call_timeout_seconds: float = Field(default=10.0, ge=0.1, le=120)
    backoff_seconds: float = Field(default=0.5, ge=0, le=30)
    checkout_timeout_seconds: float = Field(default=45.0, ge=1, le=600)


class AWSSettings(BaseModel):
    sts_region: str = Field(default="us-east-1")
    revoke_via_iam: bool = Field(
        default=True,
        description="Attach a deny policy to the role when a lease's credential is revoked.",
    )


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    trust: TrustSettings = Field(default_factory=TrustSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    leases: LeaseSettings = Field(default_factory=LeaseSettings)
    issuance: IssuanceSettings = Field(default_factory=IssuanceSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)


ENV_KEYS = {
    "host": "BROKER_HOST",
    "port": "BROKER_PORT",
    "trust_forwarded_headers": "BROKER_TRUST_FORWARDED_HEADERS",
    "rate_limit_per_ip": "RATE_LIMIT_PER_IP",
    "max_body_size_kb": "MAX_BODY_SIZE_KB",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "trust_config_path": "TRUST_CONFIG_PATH",
    "registry_path": "REGISTRY_PATH",
    "audit_sqlite_path": "AUDIT_SQLITE_PATH",
    "audit_sqlite_wal": "AUDIT_SQLITE_WAL",
    "sweep_interval": "LEASE_SWEEP_INTERVAL_SECONDS",
    "pending_timeout": "LEASE_PENDING_TIMEOUT_SECONDS",
    "archive_max_entries": "LEASE_ARCHIVE_MAX_ENTRIES",
    "max_attempts": "ISSUANCE_MAX_ATTEMPTS",
    "call_timeout": "ISSUANCE_CALL_TIMEOUT_SECONDS",
    "backoff": "ISSUANCE_BACKOFF_SECONDS",
    "checkout_timeout": "CHECKOUT_TIMEOUT_SECONDS",
    "sts_region": "AWS_STS_REGION",
    "revoke_via_iam": "AWS_REVOKE_VIA_IAM",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "trust_forwarded_headers": _env_bool(
                ENV_KEYS["trust_forwarded_headers"],
                ServerSettings().trust_forwarded_headers,
            ),
            "rate_limit_per_ip": _env_int(
                ENV_KEYS["rate_limit_per_ip"], ServerSettings().rate_limit_per_ip
            ),
            "max_body_size_kb": _env_int(
                ENV_KEYS["max_body_size_kb"], ServerSettings().max_body_size_kb
            ),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "trust": {
            "config_path": _resolve_path(
                os.getenv(ENV_KEYS["trust_config_path"], TrustSettings().config_path)
            ),
        },
        "registry": {
            "path": _resolve_path(os.getenv(ENV_KEYS["registry_path"], RegistrySettings().path)),
        },
        "storage": {
            "audit_sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["audit_sqlite_path"], StorageSettings().audit_sqlite_path)
            ),
            "audit_sqlite_wal": _env_bool(
                ENV_KEYS["audit_sqlite_wal"], StorageSettings().audit_sqlite_wal
            ),
        },
        "leases": {
            "sweep_interval_seconds": _env_float(
                ENV_KEYS["sweep_interval"], LeaseSettings().sweep_interval_seconds
            ),
            "pending_timeout_seconds": _env_int(
                ENV_KEYS["pending_timeout"], LeaseSettings().pending_timeout_seconds
            ),
            "archive_max_entries": _env_int(
                ENV_KEYS["archive_max_entries"], LeaseSettings().archive_max_entries
            ),
        },
        "issuance": {
            "max_attempts": _env_int(ENV_KEYS["max_attempts"], IssuanceSettings().max_attempts),
            "call_timeout_seconds": _env_float(
                ENV_KEYS["call_timeout"], IssuanceSettings().call_timeout_seconds
            ),
            "backoff_seconds": _env_float(ENV_KEYS["backoff"], IssuanceSettings().backoff_seconds),
            "checkout_timeout_seconds": _env_float(
                ENV_KEYS["checkout_timeout"], IssuanceSettings().checkout_timeout_seconds
            ),
        },
        "aws": {
            "sts_region": os.getenv(ENV_KEYS["sts_region"], AWSSettings().sts_region),
            "revoke_via_iam": _env_bool(ENV_KEYS["revoke_via_iam"], AWSSettings().revoke_via_iam),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    if settings.issuance.call_timeout_seconds >= settings.issuance.checkout_timeout_seconds:
        raise RuntimeError(
            "Invalid configuration: ISSUANCE_CALL_TIMEOUT_SECONDS must be lower than "
            "CHECKOUT_TIMEOUT_SECONDS"
        )

    Path(settings.storage.audit_sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
