from __future__ import annotations

import asyncio
import copy
import itertools
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from nhi_broker.audit.db import SqliteAuditStore
from nhi_broker.audit.logger import AuditLogger
from nhi_broker.auth.token_validator import TokenValidator
from nhi_broker.auth.trust import TrustConfig
from nhi_broker.broker import CredentialBroker
from nhi_broker.credentials.issuer import CredentialIssuer
from nhi_broker.credentials.provider import (
    CredentialProvider,
    CredentialScope,
    MintedCredential,
)
from nhi_broker.errors import InvalidSignatureError
from nhi_broker.leases.manager import LeaseManager
from nhi_broker.registry.models import Registry
from nhi_broker.utils.time import utc_now

ISSUER = "https://issuer.example.com"
AUDIENCE = "nhi-broker"
KID = "test-key-1"
DEPLOY_SUBJECT = "repo:acme/deploy:ref:refs/heads/main"
S3_ROLE_ARN = "arn:aws:iam::123456789012:role/broker-s3-readonly"
DEPLOY_ROLE_ARN = "arn:aws:iam::123456789012:role/broker-deploy"

REGISTRY_DATA: dict[str, Any] = {
    "version": "7",
    "identities": [
        {
            "id": "ci-deployer",
            "subject_patterns": [DEPLOY_SUBJECT],
            "profiles": ["s3-readonly", "deploy"],
        },
        {
            "id": "nightly-report",
            "subject_patterns": ["system:serviceaccount:reports:{name}"],
            "profiles": ["s3-readonly"],
        },
    ],
    "profiles": [
        {
            "name": "s3-readonly",
            "target": {"provider": "aws", "role_arn": S3_ROLE_ARN},
            "max_ttl_seconds": 3600,
            "policy": "artifacts-read",
        },
        {
            "name": "deploy",
            "target": {"role_arn": DEPLOY_ROLE_ARN},
            "max_ttl_seconds": 1800,
        },
        {
            "name": "billing-read",
            "target": {"role_arn": "arn:aws:iam::123456789012:role/billing-read"},
            "max_ttl_seconds": 3600,
        },
    ],
    "policies": [
        {
            "name": "artifacts-read",
            "allowed_actions": ["s3:GetObject", "s3:ListBucket"],
            "allowed_resources": [
                "arn:aws:s3:::example-artifacts",
                "arn:aws:s3:::example-artifacts/*",
            ],
        }
    ],
}


class StaticKeyResolver:
    """Serves one public key under ``KID``."""

    def __init__(self, key: Any) -> None:
        self.key = key
        self.calls: list[str | None] = []

    async def get_signing_key(self, kid: str | None) -> Any:
        self.calls.append(kid)
        if kid != KID:
            raise InvalidSignatureError(f"Signing key not found for kid={kid}", "key_not_found")
        return self.key


class FakeProvider(CredentialProvider):
    """In-memory provider. Raises queued ``failures`` before minting."""

    name = "fake"

    def __init__(self, failures: list[BaseException] | None = None, delay: float = 0.0) -> None:
        self.failures = list(failures or [])
        self.delay = delay
        self.minted: list[tuple[CredentialScope, int, str]] = []
        self.revoked: list[str] = []
        self._counter = itertools.count(1)

    async def mint_credential(
        self,
        scope: CredentialScope,
        ttl_seconds: int,
        session_name: str,
    ) -> MintedCredential:
        self.minted.append((scope, ttl_seconds, session_name))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        n = next(self._counter)
        return MintedCredential(
            credential_ref=f"fake#{n}",
            expires_at=utc_now() + timedelta(seconds=ttl_seconds),
            material={
                "access_key_id": f"ASIAFAKE{n:04d}",
                "secret_access_key": "fake-secret",
                "session_token": "fake-session-token",
            },
        )

    async def revoke_credential(self, credential_ref: str) -> None:
        self.revoked.append(credential_ref)


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def key_resolver(rsa_private_key: rsa.RSAPrivateKey) -> StaticKeyResolver:
    return StaticKeyResolver(rsa_private_key.public_key())


@pytest.fixture
def token_factory(rsa_private_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    """Build signed assertions. Pass ``claim=None`` to drop a claim."""

    def _create_jwt(
        subject: str = DEPLOY_SUBJECT,
        *,
        now: datetime | None = None,
        kid: str = KID,
        key: Any = None,
        algorithm: str = "RS256",
        **overrides: Any,
    ) -> str:
        issued = now or datetime.now(tz=timezone.utc)
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "sub": subject,
            "aud": AUDIENCE,
            "iat": int(issued.timestamp()),
            "exp": int((issued + timedelta(minutes=10)).timestamp()),
            "jti": uuid.uuid4().hex,
            "ref": "refs/heads/main",
        }
        claims.update(overrides)
        claims = {name: value for name, value in claims.items() if value is not None}
        return jwt.encode(
            claims,
            key if key is not None else rsa_private_key,
            algorithm=algorithm,
            headers={"kid": kid},
        )

    return _create_jwt


@pytest.fixture
def registry_data() -> dict[str, Any]:
    return copy.deepcopy(REGISTRY_DATA)


@pytest.fixture
def registry(registry_data: dict[str, Any]) -> Registry:
    return Registry.model_validate(registry_data)


@pytest.fixture
def trust() -> TrustConfig:
    return TrustConfig(issuer=ISSUER, audiences=(AUDIENCE,), version="3")


@pytest.fixture
def audit_store(tmp_path):
    store = SqliteAuditStore(str(tmp_path / "audit.sqlite"))
    yield store
    store.close()


@pytest.fixture
def audit(audit_store: SqliteAuditStore) -> AuditLogger:
    return AuditLogger(audit_store)


@pytest.fixture
def leases(audit: AuditLogger) -> LeaseManager:
    return LeaseManager(audit)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_broker(
    trust: TrustConfig,
    registry: Registry,
    audit: AuditLogger,
    key_resolver: StaticKeyResolver,
) -> Callable[..., CredentialBroker]:
    """Assemble a broker around fakes; keyword arguments override parts."""

    def _make(
        provider: CredentialProvider | None = None,
        *,
        leases: LeaseManager | None = None,
        registry_override: Registry | None = None,
        max_attempts: int = 3,
        call_timeout_seconds: float = 5.0,
        checkout_timeout_seconds: float = 10.0,
    ) -> CredentialBroker:
        lease_manager = leases or LeaseManager(audit)
        issuer = CredentialIssuer(
            provider or FakeProvider(),
            lease_manager,
            audit,
            max_attempts=max_attempts,
            call_timeout_seconds=call_timeout_seconds,
            backoff_seconds=0,
        )
        validator = TokenValidator(key_resolver, allowed_algorithms=trust.allowed_algorithms)
        return CredentialBroker(
            trust,
            validator,
            registry_override or registry,
            lease_manager,
            issuer,
            audit,
            checkout_timeout_seconds=checkout_timeout_seconds,
        )

    return _make
