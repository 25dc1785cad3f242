"""Downstream credential provider contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType

from ..policy.models import Constraints
from ..registry.models import ResourceTarget


@dataclass(frozen=True)
class CredentialScope:
    """What a minted credential may touch. Never broader than the decision's
    constraints."""

    target: ResourceTarget
    actions: tuple[str, ...] = ()
    resources: tuple[str, ...] = ()

    @classmethod
    def from_constraints(
        cls, target: ResourceTarget, constraints: Constraints
    ) -> "CredentialScope":
        return cls(target=target, actions=constraints.actions, resources=constraints.resources)

    @property
    def resource_id(self) -> str:
        return self.target.resource_id


@dataclass(frozen=True)
class MintedCredential:
    """Provider output. ``material`` is secret and never logged."""

    credential_ref: str
    expires_at: datetime
    material: Mapping[str, str] = field(repr=False, default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "material", MappingProxyType(dict(self.material)))


@dataclass(frozen=True)
class EphemeralCredential:
    """Credential handed to the caller. The broker keeps no copy of ``material``."""

    lease_id: str
    resource: str
    expires_at: datetime
    scope: Constraints
    material: Mapping[str, str] = field(repr=False, default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "material", MappingProxyType(dict(self.material)))


class ProviderError(Exception):
    """Raised when the downstream provider cannot mint or revoke."""

    def __init__(self, message: str, code: str, transient: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.transient = transient


class CredentialProvider(ABC):
    """Opaque minting capability of the downstream resource system."""

    name = "provider"

    @abstractmethod
    async def mint_credential(
        self,
        scope: CredentialScope,
        ttl_seconds: int,
        session_name: str,
    ) -> MintedCredential:
        """Mint a credential valid for at most ``ttl_seconds``."""

    @abstractmethod
    async def revoke_credential(self, credential_ref: str) -> None:
        """Invalidate a previously minted credential. Must be idempotent."""
