"""Tests for trust configuration loading."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest
import yaml

from nhi_broker.auth.trust import (
    TrustConfig,
    load_trust_config,
    parse_trust_config,
    process_env_vars,
)


def _base_config() -> dict:
    return {
        "trust": {
            "version": 4,
            "issuer": "https://token.actions.example.com/",
            "audiences": ["nhi-broker"],
            "validation_window_seconds": 120,
            "jwks_cache": {"ttl_seconds": 600, "max_retries": 2},
        }
    }


def _write_config(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "trust.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_load_trust_config(tmp_path: Path) -> None:
    trust = load_trust_config(_write_config(tmp_path, _base_config()))

    assert trust.version == "4"
    assert trust.get_normalized_issuer() == "https://token.actions.example.com"
    assert trust.get_audience_set() == frozenset({"nhi-broker"})
    assert trust.validation_window_seconds == 120
    assert trust.allowed_algorithms == ("RS256", "ES256")
    assert trust.jwks_cache.ttl_seconds == 600
    assert trust.jwks_cache.max_retries == 2


def test_load_trust_config_substitutes_env(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("BROKER_OIDC_ISSUER", "https://issuer.example.com")
    data = _base_config()
    data["trust"]["issuer"] = "${BROKER_OIDC_ISSUER}"

    trust = load_trust_config(_write_config(tmp_path, data))

    assert trust.issuer == "https://issuer.example.com"


def test_unresolved_issuer_is_rejected(monkeypatch) -> None:
    monkeypatch.delenv("BROKER_OIDC_ISSUER", raising=False)
    data = process_env_vars({"issuer": "${BROKER_OIDC_ISSUER}", "audiences": ["a"]})

    with pytest.raises(ValueError, match="unresolved environment variable"):
        parse_trust_config(data)


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_trust_config(tmp_path / "missing.yaml")


def test_audiences_accept_csv() -> None:
    trust = parse_trust_config({"issuer": "https://iss", "audiences": "a, b,,"})
    assert trust.audiences == ("a", "b")


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"audiences": []}, "audiences"),
        ({"allowed_algorithms": ["none"]}, "none"),
        ({"allowed_algorithms": ["HS256"]}, "asymmetric"),
        ({"validation_window_seconds": 0}, "validation_window_seconds"),
        ({"clock_skew_seconds": -1}, "clock_skew_seconds"),
        ({"jwks_cache": {"max_retries": 0}}, "max_retries"),
        ({"issuer": ""}, "issuer"),
    ],
)
def test_invalid_trust_config(overrides: dict, message: str) -> None:
    data = _base_config()["trust"]
    data.update(overrides)

    with pytest.raises(ValueError, match=message):
        parse_trust_config(data)


def test_trust_config_is_immutable() -> None:
    trust = TrustConfig(issuer="https://iss", audiences=("a",))
    with pytest.raises(FrozenInstanceError):
        trust.issuer = "https://evil"  # type: ignore[misc]


def test_process_env_vars_recurses(monkeypatch) -> None:
    monkeypatch.setenv("AUD", "svc")
    assert process_env_vars({"a": ["$AUD", {"b": "${AUD}-x"}], "n": 3}) == {
        "a": ["svc", {"b": "svc-x"}],
        "n": 3,
    }
