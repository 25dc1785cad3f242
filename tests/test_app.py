from __future__ import annotations

import pytest
import yaml

from nhi_broker.app import build_broker_context
from nhi_broker.config import RegistrySettings, Settings, StorageSettings, TrustSettings
from nhi_broker.credentials.sts_provider import STSCredentialProvider

from .conftest import ISSUER, FakeProvider


@pytest.fixture
def settings(tmp_path, registry_data) -> Settings:
    trust_path = tmp_path / "trust.yaml"
    trust_path.write_text(
        yaml.safe_dump(
            {
                "trust": {
                    "version": "3",
                    "issuer": ISSUER,
                    "audiences": ["nhi-broker"],
                    "jwks_uri": f"{ISSUER}/jwks",
                }
            }
        )
    )
    registry_path = tmp_path / "registry.yaml"
    registry_path.write_text(yaml.safe_dump(registry_data))
    return Settings(
        trust=TrustSettings(config_path=str(trust_path)),
        registry=RegistrySettings(path=str(registry_path)),
        storage=StorageSettings(audit_sqlite_path=str(tmp_path / "audit.sqlite")),
    )


def test_build_context_wires_components(settings: Settings) -> None:
    provider = FakeProvider()
    ctx = build_broker_context(settings, provider=provider)
    try:
        assert ctx.trust.version == "3"
        assert ctx.broker.registry.version == "7"
        assert ctx.provider is provider
    finally:
        ctx.store.close()


def test_default_provider_is_sts(settings: Settings) -> None:
    ctx = build_broker_context(settings)
    try:
        assert isinstance(ctx.provider, STSCredentialProvider)
    finally:
        ctx.store.close()


@pytest.mark.asyncio
async def test_reload_registry_reads_file(settings: Settings, registry_data) -> None:
    ctx = build_broker_context(settings, provider=FakeProvider())
    try:
        registry_data["version"] = "8"
        with open(settings.registry.path, "w", encoding="utf-8") as handle:
            yaml.safe_dump(registry_data, handle)

        revoked = await ctx.reload_registry()

        assert revoked == []
        assert ctx.broker.registry.version == "8"
    finally:
        ctx.store.close()


def test_missing_registry_file(settings: Settings, tmp_path) -> None:
    settings.registry.path = str(tmp_path / "absent.yaml")
    with pytest.raises(FileNotFoundError):
        build_broker_context(settings)
