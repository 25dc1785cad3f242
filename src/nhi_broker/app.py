"""Broker context assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from nhi_broker.audit.db import SqliteAuditStore
from nhi_broker.audit.logger import AuditLogger
from nhi_broker.auth.jwks import JWKSClient
from nhi_broker.auth.token_validator import TokenValidator
from nhi_broker.auth.trust import TrustConfig, load_trust_config
from nhi_broker.broker import CredentialBroker
from nhi_broker.config import Settings, load_settings
from nhi_broker.credentials.issuer import CredentialIssuer
from nhi_broker.credentials.provider import CredentialProvider
from nhi_broker.credentials.sts_provider import STSCredentialProvider
from nhi_broker.leases.manager import LeaseManager
from nhi_broker.leases.models import Lease
from nhi_broker.leases.sweeper import LeaseSweeper
from nhi_broker.registry.loader import load_registry

logger = logging.getLogger(__name__)


@dataclass
class BrokerContext:
    """Process-wide dependency container.

    Built once at startup. Trust configuration is immutable for the life of
    the process; the registry can be reloaded through ``reload_registry``.
    """

    settings: Settings
    trust: TrustConfig
    store: SqliteAuditStore
    audit: AuditLogger
    leases: LeaseManager
    provider: CredentialProvider
    issuer: CredentialIssuer
    broker: CredentialBroker
    sweeper: LeaseSweeper

    async def reload_registry(self) -> list[Lease]:
        """Re-read the registry file and apply it to the running broker."""
        registry = load_registry(self.settings.registry.path)
        return await self.broker.reload_registry(registry)


def build_broker_context(
    settings: Settings,
    provider: CredentialProvider | None = None,
) -> BrokerContext:
    trust = load_trust_config(settings.trust.config_path)
    registry = load_registry(settings.registry.path)
    logger.info(
        "Loaded trust config v%s (issuer=%s) and registry v%s (%d identities, %d profiles)",
        trust.version,
        trust.get_normalized_issuer(),
        registry.version,
        len(registry.identities),
        len(registry.profiles),
    )

    store = SqliteAuditStore(
        settings.storage.audit_sqlite_path, wal=settings.storage.audit_sqlite_wal
    )
    audit = AuditLogger(store)

    jwks = JWKSClient(trust.get_normalized_issuer(), trust.jwks_cache, jwks_uri=trust.jwks_uri)
    validator = TokenValidator(
        jwks,
        allowed_algorithms=trust.allowed_algorithms,
        clock_skew_seconds=trust.clock_skew_seconds,
    )

    leases = LeaseManager(
        audit,
        pending_timeout_seconds=settings.leases.pending_timeout_seconds,
        archive_max_entries=settings.leases.archive_max_entries,
    )
    if provider is None:
        provider = STSCredentialProvider(
            region=settings.aws.sts_region, iam_enabled=settings.aws.revoke_via_iam
        )
    issuer = CredentialIssuer(
        provider,
        leases,
        audit,
        max_attempts=settings.issuance.max_attempts,
        call_timeout_seconds=settings.issuance.call_timeout_seconds,
        backoff_seconds=settings.issuance.backoff_seconds,
    )
    broker = CredentialBroker(
        trust,
        validator,
        registry,
        leases,
        issuer,
        audit,
        checkout_timeout_seconds=settings.issuance.checkout_timeout_seconds,
    )
    sweeper = LeaseSweeper(leases, issuer, settings.leases.sweep_interval_seconds)

    return BrokerContext(
        settings=settings,
        trust=trust,
        store=store,
        audit=audit,
        leases=leases,
        provider=provider,
        issuer=issuer,
        broker=broker,
        sweeper=sweeper,
    )


@lru_cache(maxsize=1)
def get_broker_context() -> BrokerContext:
    """Get or create the cached process-wide broker context."""
    return build_broker_context(load_settings())
