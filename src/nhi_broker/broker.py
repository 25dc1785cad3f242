"""The credential broker pipeline.

assertion -> validate -> resolve -> authorize -> lease -> issue, with one audit
record per stage attempt.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any

from .audit.logger import AuditLogger
from .audit.models import (
    ASSERTION_VALIDATE,
    BROKER_FAULT,
    DENIED,
    FAILURE,
    FEDERATION_RESOLVE,
    LEASE_CHECKIN,
    POLICY_AUTHORIZE,
    SUCCESS,
    UNKNOWN_ACTOR,
    AuditEvent,
)
from .auth.federation import FederationMapper, FederationMatch
from .auth.token_validator import TokenValidator, ValidatedClaims
from .auth.trust import TrustConfig
from .credentials.issuer import CredentialIssuer
from .credentials.provider import EphemeralCredential
from .errors import (
    AccessDeniedError,
    AssertionRejectedError,
    AuditWriteError,
    BrokerError,
    InternalFaultError,
    InvalidSignatureError,
    IssuanceFailedError,
    PolicyDeniedError,
    UnknownLeaseError,
)
from .leases.manager import LeaseManager
from .leases.models import Lease, RevokeReason
from .policy.engine import PolicyEngine
from .policy.models import Decision, ScopeRequest
from .registry.models import Registry, ServiceIdentity
from .utils.hashing import token_fingerprint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _RegistryView:
    """Registry with its derived matchers, swapped as one unit on reload."""

    registry: Registry
    mapper: FederationMapper
    policy: PolicyEngine

    @classmethod
    def build(cls, registry: Registry) -> "_RegistryView":
        return cls(registry, FederationMapper(registry.identities), PolicyEngine(registry))


class CredentialBroker:
    def __init__(
        self,
        trust: TrustConfig,
        validator: TokenValidator,
        registry: Registry,
        leases: LeaseManager,
        issuer: CredentialIssuer,
        audit: AuditLogger,
        *,
        checkout_timeout_seconds: float = 45.0,
    ) -> None:
        self._trust = trust
        self._validator = validator
        self._leases = leases
        self._issuer = issuer
        self._audit = audit
        self._checkout_timeout = checkout_timeout_seconds
        self._view = _RegistryView.build(registry)
        self._reload_lock = threading.Lock()

    @property
    def trust(self) -> TrustConfig:
        return self._trust

    @property
    def registry(self) -> Registry:
        return self._view.registry

    @property
    def leases(self) -> LeaseManager:
        return self._leases

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    async def checkout(
        self,
        assertion: str,
        profile_name: str,
        *,
        ttl_seconds: int | None = None,
        requested_scope: ScopeRequest | None = None,
    ) -> EphemeralCredential:
        """Exchange an identity assertion for an ephemeral credential."""
        if ttl_seconds is not None and ttl_seconds < 1:
            raise ValueError("ttl_seconds must be positive")

        view = self._view
        actor = UNKNOWN_ACTOR
        lease: Lease | None = None
        try:
            claims = await self._validate(assertion)
            match = await self._resolve(view, claims)
            actor = match.identity.id
            decision = await self._authorize(
                view, match.identity, profile_name, claims, requested_scope
            )
            if decision.profile is None:
                raise InternalFaultError(f"Allowed decision for {profile_name} has no profile")
            lease = await self._leases.checkout(
                match.identity, decision.profile, decision, ttl_seconds
            )
            try:
                return await asyncio.wait_for(
                    self._issuer.issue(lease, decision), timeout=self._checkout_timeout
                )
            except asyncio.TimeoutError as exc:
                raise IssuanceFailedError(
                    f"Checkout timed out after {self._checkout_timeout}s"
                ) from exc
        except asyncio.CancelledError:
            if lease is not None:
                await self._leases.revoke(lease.lease_id, RevokeReason.CANCELLED)
            raise
        except BrokerError:
            # Only an audit failure can leave the lease live here.
            if lease is not None:
                await self._rollback(lease.lease_id)
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected fault during checkout (actor=%s, profile=%s)", actor, profile_name
            )
            if lease is not None:
                await self._rollback(lease.lease_id)
            await self._record_fault("checkout", actor, lease, exc)
            raise InternalFaultError("Internal fault during checkout") from exc

    async def check_in(self, lease_id: str) -> Lease:
        """End a lease. Safe to retry: a closed lease is returned unchanged."""
        try:
            try:
                result = await self._leases.check_in(lease_id)
            except UnknownLeaseError as exc:
                await self._audit.record(
                    AuditEvent(
                        event_type=LEASE_CHECKIN,
                        outcome=FAILURE,
                        lease_id=lease_id,
                        reason=exc.code,
                    )
                )
                raise
            if result.transitioned:
                await self._issuer.revoke(result.lease)
            return result.lease
        except BrokerError:
            raise
        except Exception as exc:
            logger.exception("Unexpected fault during check-in of lease %s", lease_id)
            await self._record_fault("check_in", UNKNOWN_ACTOR, None, exc)
            raise InternalFaultError("Internal fault during check-in") from exc

    async def revoke(
        self, lease_id: str, reason: RevokeReason | str = RevokeReason.ADMINISTRATIVE
    ) -> Lease | None:
        """Force a lease to ``revoked``; returns None if it was already closed."""
        reason = RevokeReason(reason)
        if self._leases.get(lease_id) is None:
            raise UnknownLeaseError(f"Unknown lease {lease_id}")
        revoked = await self._leases.revoke(lease_id, reason)
        if revoked is not None:
            await self._issuer.revoke(revoked)
        return revoked

    async def reject_missing_assertion(self) -> AssertionRejectedError:
        """Audit a checkout that arrived without an assertion; returns the error to report."""
        try:
            await self._validate("")
        except AssertionRejectedError as exc:
            return exc
        raise InternalFaultError("Empty assertion passed validation")

    async def reload_registry(self, registry: Registry) -> list[Lease]:
        """Swap in a new registry.

        Live leases keep running unless their identity or profile is gone, or
        the identity may no longer request the profile; those are revoked
        with ``registry_changed``.
        """
        view = _RegistryView.build(registry)
        with self._reload_lock:
            previous, self._view = self._view, view

        revoked: list[Lease] = []
        for lease in self._leases.live_leases():
            identity = registry.get_identity(lease.identity_id)
            if (
                identity is not None
                and registry.get_profile(lease.profile_name) is not None
                and identity.may_request(lease.profile_name)
            ):
                continue
            closed = await self._leases.revoke(lease.lease_id, RevokeReason.REGISTRY_CHANGED)
            if closed is None:
                continue
            revoked.append(closed)
            try:
                await self._issuer.revoke(closed)
            except AuditWriteError:
                logger.exception("Audit write failed revoking credential of %s", closed.lease_id)

        logger.info(
            "Registry reloaded (version %s -> %s); %d lease(s) revoked",
            previous.registry.version,
            registry.version,
            len(revoked),
        )
        return revoked

    async def _validate(self, assertion: str) -> ValidatedClaims:
        detail: dict[str, Any] = {"fingerprint": token_fingerprint(assertion or "")}
        trust = self._trust
        try:
            if not assertion:
                raise InvalidSignatureError("Missing identity assertion", "missing_assertion")
            claims = await self._validator.validate(
                assertion,
                trust.get_normalized_issuer(),
                trust.get_audience_set(),
                trust.validation_window_seconds,
            )
        except AssertionRejectedError as exc:
            await self._audit.record(
                AuditEvent(
                    event_type=ASSERTION_VALIDATE,
                    outcome=DENIED,
                    reason=exc.code,
                    detail=detail,
                )
            )
            raise
        except InternalFaultError as exc:
            await self._audit.record(
                AuditEvent(
                    event_type=ASSERTION_VALIDATE,
                    outcome=FAILURE,
                    reason=exc.code,
                    detail=detail,
                )
            )
            raise

        detail.update({"subject": claims.subject, "jti": claims.jti})
        await self._audit.record(
            AuditEvent(
                event_type=ASSERTION_VALIDATE,
                outcome=SUCCESS,
                resource=claims.issuer,
                detail=detail,
            )
        )
        return claims

    async def _resolve(self, view: _RegistryView, claims: ValidatedClaims) -> FederationMatch:
        try:
            match = view.mapper.match(claims.subject)
        except AccessDeniedError as exc:
            await self._audit.record(
                AuditEvent(
                    event_type=FEDERATION_RESOLVE,
                    outcome=DENIED,
                    reason=exc.code,
                    detail={"subject": claims.subject},
                )
            )
            raise

        await self._audit.record(
            AuditEvent(
                event_type=FEDERATION_RESOLVE,
                outcome=SUCCESS,
                actor=match.identity.id,
                detail={"subject": claims.subject, "pattern": match.pattern.text},
            )
        )
        return match

    async def _authorize(
        self,
        view: _RegistryView,
        identity: ServiceIdentity,
        profile_name: str,
        claims: ValidatedClaims,
        requested_scope: ScopeRequest | None,
    ) -> Decision:
        decision = view.policy.authorize(
            identity,
            profile_name,
            claims=claims.raw_claims,
            requested_scope=requested_scope,
        )
        if not decision.allowed:
            await self._audit.record(
                AuditEvent(
                    event_type=POLICY_AUTHORIZE,
                    outcome=DENIED,
                    actor=identity.id,
                    resource=profile_name,
                    reason=decision.reason,
                    detail={"policy": decision.policy_name},
                )
            )
            raise PolicyDeniedError(
                f"Identity {identity.id} may not check out {profile_name}: {decision.reason}",
                decision.reason or "denied",
            )

        await self._audit.record(
            AuditEvent(
                event_type=POLICY_AUTHORIZE,
                outcome=SUCCESS,
                actor=identity.id,
                resource=profile_name,
                detail=_decision_detail(decision),
            )
        )
        return decision

    async def _rollback(self, lease_id: str) -> None:
        revoked = await self._leases.revoke(lease_id, RevokeReason.INTERNAL_FAULT)
        if revoked is not None:
            await self._issuer.revoke(revoked)

    async def _record_fault(
        self, operation: str, actor: str, lease: Lease | None, exc: BaseException
    ) -> None:
        try:
            await self._audit.record(
                AuditEvent(
                    event_type=BROKER_FAULT,
                    outcome=FAILURE,
                    actor=actor,
                    lease_id=lease.lease_id if lease is not None else None,
                    reason="internal_fault",
                    detail={"operation": operation, "error_type": type(exc).__name__},
                )
            )
        except AuditWriteError:
            logger.exception("Audit write failed while recording a %s fault", operation)


def _decision_detail(decision: Decision) -> dict[str, Any]:
    return {
        "policy": decision.policy_name,
        "max_ttl_seconds": decision.max_ttl_seconds,
        "actions": list(decision.constraints.actions),
        "resources": list(decision.constraints.resources),
        "max_concurrent_leases": decision.constraints.max_concurrent_leases,
    }
