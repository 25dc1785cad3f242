from __future__ import annotations

import pytest

from nhi_broker import config


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(config, "load_dotenv", lambda **_: None)
    for key in config.ENV_KEYS.values():
        monkeypatch.delenv(key, raising=False)
    config._load_settings_cached.cache_clear()
    yield
    config._load_settings_cached.cache_clear()


def test_resolve_path_absolute_inside_project() -> None:
    root = str(config._project_root().resolve())
    absolute = f"{root}/config/registry.yaml"
    assert config._resolve_path(absolute) == absolute


@pytest.mark.parametrize("path", ["/tmp/example", "../../outside.yaml"])
def test_resolve_path_outside_project_rejected(path: str) -> None:
    with pytest.raises(ValueError, match="Path traversal detected"):
        config._resolve_path(path)


def test_env_int_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_INVALID", "not_a_number")
    assert config._env_int("TEST_INT_INVALID", 42) == 42


def test_env_float_uses_default_for_blank(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_FLOAT_VALUE", "")
    assert config._env_float("TEST_FLOAT_VALUE", 1.5) == 1.5


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("1", True), ("TRUE", True), (" yes ", True), ("0", False), ("off", False)],
)
def test_env_bool(monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool) -> None:
    monkeypatch.setenv("TEST_BOOL_VALUE", raw)
    assert config._env_bool("TEST_BOOL_VALUE", not expected) is expected


def test_defaults() -> None:
    settings = config.load_settings()

    assert settings.server.host == "127.0.0.1"
    assert settings.server.trust_forwarded_headers is False
    assert settings.leases.sweep_interval_seconds == 15.0
    assert settings.issuance.max_attempts == 3
    assert settings.aws.revoke_via_iam is True
    assert settings.trust.config_path.endswith("trust.yaml")
    assert settings.storage.audit_sqlite_path.startswith(str(config._project_root()))
    assert config.load_settings() is settings


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BROKER_PORT", "9090")
    monkeypatch.setenv("RATE_LIMIT_PER_IP", "5")
    monkeypatch.setenv("TRUST_CONFIG_PATH", "config/trust.yaml")
    monkeypatch.setenv("LEASE_SWEEP_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("AWS_REVOKE_VIA_IAM", "false")

    settings = config.load_settings()

    assert settings.server.port == 9090
    assert settings.server.rate_limit_per_ip == 5
    assert settings.trust.config_path == str(config._project_root() / "config" / "trust.yaml")
    assert settings.leases.sweep_interval_seconds == 2.5
    assert settings.aws.revoke_via_iam is False


def test_load_settings_raises_runtime_error_on_validation(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    # Minimum is 1.
    monkeypatch.setenv("ISSUANCE_MAX_ATTEMPTS", "0")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()


def test_call_timeout_must_be_below_checkout_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ISSUANCE_CALL_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("CHECKOUT_TIMEOUT_SECONDS", "20")

    with pytest.raises(RuntimeError, match="CHECKOUT_TIMEOUT_SECONDS"):
        config.load_settings()


def test_registry_path_traversal_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REGISTRY_PATH", "/etc/registry.yaml")

    with pytest.raises(ValueError, match="Path traversal detected"):
        config.load_settings()
