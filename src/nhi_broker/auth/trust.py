"""Trust configuration: the OIDC issuer the broker accepts assertions from."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

_DEFAULT_ALGORITHMS = ("RS256", "ES256")


@dataclass(frozen=True)
class JWKSCacheConfig:
    """JWKS cache configuration."""

    ttl_seconds: int = 3600
    refresh_before_seconds: int = 300
    failure_backoff_seconds: int = 60
    max_retries: int = 3


@dataclass(frozen=True)
class TrustConfig:
    """Immutable, versioned trust configuration.

    Loaded once at process start and shared read-only between requests.
    """

    issuer: str
    audiences: tuple[str, ...]
    validation_window_seconds: int = 300
    jwks_uri: str | None = None
    allowed_algorithms: tuple[str, ...] = _DEFAULT_ALGORITHMS
    clock_skew_seconds: int = 30
    jwks_cache: JWKSCacheConfig = field(default_factory=JWKSCacheConfig)
    version: str = "1"

    def __post_init__(self) -> None:
        if not self.issuer:
            raise ValueError("trust.issuer is required")
        if not self.audiences:
            raise ValueError("trust.audiences must contain at least one audience")
        if self.validation_window_seconds <= 0:
            raise ValueError("trust.validation_window_seconds must be positive")
        if self.clock_skew_seconds < 0:
            raise ValueError("trust.clock_skew_seconds must not be negative")
        if any(alg.lower() == "none" for alg in self.allowed_algorithms):
            raise ValueError("trust.allowed_algorithms must not include 'none'")
        if any(alg.upper().startswith("HS") for alg in self.allowed_algorithms):
            raise ValueError("trust.allowed_algorithms must be asymmetric (no HS*)")

    def get_normalized_issuer(self) -> str:
        """Return issuer with trailing slash removed."""
        return self.issuer.rstrip("/")

    def get_audience_set(self) -> frozenset[str]:
        return frozenset(self.audiences)


def _substitute_env_vars(value: str) -> str:
    """Substitute ${VAR} and $VAR patterns with environment variables."""

    def replace(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    pattern = r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)"
    return re.sub(pattern, replace, value)


_MAX_ENV_VAR_DEPTH = 20


def process_env_vars(obj: Any, _depth: int = 0) -> Any:
    """Recursively substitute environment variables in strings."""
    if _depth > _MAX_ENV_VAR_DEPTH:
        return obj
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: process_env_vars(v, _depth + 1) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [process_env_vars(item, _depth + 1) for item in obj]
    return obj


def _project_root() -> Path:
    """Resolve project root by locating pyproject.toml."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return current.parents[3]


def _as_str_tuple(raw: Any, field_name: str) -> tuple[str, ...]:
    if isinstance(raw, str):
        raw = [part.strip() for part in raw.split(",")]
    if not isinstance(raw, list):
        raise ValueError(f"{field_name} must be a list of strings")
    values = tuple(str(item).strip() for item in raw if str(item).strip())
    return values


def parse_trust_config(data: dict[str, Any]) -> TrustConfig:
    """Build a TrustConfig from an already env-substituted mapping."""
    trust_data = data.get("trust", data)
    if not isinstance(trust_data, dict):
        raise ValueError("trust section must be a mapping")

    issuer = trust_data.get("issuer")
    if not issuer or not isinstance(issuer, str):
        raise ValueError("trust.issuer is required")
    if "${" in issuer:
        raise ValueError(f"trust.issuer has an unresolved environment variable: {issuer}")

    audiences = _as_str_tuple(trust_data.get("audiences", []), "trust.audiences")
    algorithms = _as_str_tuple(
        trust_data.get("allowed_algorithms", list(_DEFAULT_ALGORITHMS)),
        "trust.allowed_algorithms",
    )

    jwks_data = trust_data.get("jwks_cache", {}) or {}
    jwks_cache = JWKSCacheConfig(
        ttl_seconds=int(jwks_data.get("ttl_seconds", 3600)),
        refresh_before_seconds=int(jwks_data.get("refresh_before_seconds", 300)),
        failure_backoff_seconds=int(jwks_data.get("failure_backoff_seconds", 60)),
        max_retries=int(jwks_data.get("max_retries", 3)),
    )
    if jwks_cache.max_retries < 1:
        raise ValueError("trust.jwks_cache.max_retries must be at least 1")

    return TrustConfig(
        issuer=issuer.strip(),
        audiences=audiences,
        validation_window_seconds=int(trust_data.get("validation_window_seconds", 300)),
        jwks_uri=trust_data.get("jwks_uri"),
        allowed_algorithms=algorithms,
        clock_skew_seconds=int(trust_data.get("clock_skew_seconds", 30)),
        jwks_cache=jwks_cache,
        version=str(trust_data.get("version", "1")),
    )


def load_trust_config(config_path: str | Path) -> TrustConfig:
    """Load trust configuration from a YAML file."""
    load_dotenv(dotenv_path=_project_root() / ".env")
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Trust config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw_data = yaml.safe_load(f) or {}

    return parse_trust_config(process_env_vars(raw_data))
