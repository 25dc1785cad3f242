"""Credential issuance for active leases, with bounded retries and rollback."""

from __future__ import annotations

import asyncio
import logging
import math

from ..audit.logger import AuditLogger
from ..audit.models import CREDENTIAL_ISSUE, CREDENTIAL_REVOKE, FAILURE, SUCCESS, AuditEvent
from ..errors import AuditWriteError, IssuanceFailedError
from ..leases.manager import LeaseManager
from ..leases.models import Lease, LeaseState, RevokeReason
from ..policy.models import Decision
from ..utils.time import Clock, utc_now
from .provider import (
    CredentialProvider,
    CredentialScope,
    EphemeralCredential,
    MintedCredential,
    ProviderError,
)

logger = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 10.0


class CredentialIssuer:
    """Mints the credential for an active lease.

    The lease is never left active without a credential: any failure revokes
    it with ``issuance_failed`` (or ``cancelled``) before the error surfaces.
    A mint that completes after its attempt was abandoned is revoked at once.
    """

    def __init__(
        self,
        provider: CredentialProvider,
        leases: LeaseManager,
        audit: AuditLogger,
        *,
        max_attempts: int = 3,
        call_timeout_seconds: float = 10.0,
        backoff_seconds: float = 0.5,
        clock: Clock = utc_now,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._provider = provider
        self._leases = leases
        self._audit = audit
        self._max_attempts = max_attempts
        self._call_timeout = call_timeout_seconds
        self._backoff = backoff_seconds
        self._clock = clock
        self._background: set[asyncio.Future] = set()

    @property
    def provider(self) -> CredentialProvider:
        return self._provider

    async def issue(self, lease: Lease, decision: Decision) -> EphemeralCredential:
        if lease.state is not LeaseState.ACTIVE or lease.expires_at is None:
            raise IssuanceFailedError(f"Lease {lease.lease_id} is not active")
        if decision.profile is None:
            raise IssuanceFailedError("Decision carries no access profile")

        scope = CredentialScope.from_constraints(decision.profile.target, decision.constraints)
        session_name = f"nhi-{lease.identity_id}-{lease.lease_id[:12]}"

        try:
            minted = await self._mint_with_retry(lease, scope, session_name)
        except asyncio.CancelledError:
            await self._leases.revoke(lease.lease_id, RevokeReason.CANCELLED)
            await self._record_issue(lease, FAILURE, reason="cancelled")
            raise
        except ProviderError as exc:
            await self._record_issue(
                lease, FAILURE, reason=exc.code, detail={"transient": exc.transient}
            )
            await self._leases.revoke(lease.lease_id, RevokeReason.ISSUANCE_FAILED)
            raise IssuanceFailedError(f"Credential issuance failed: {exc}") from exc

        try:
            self._leases.attach_credential(lease.lease_id, minted.credential_ref)
        except IssuanceFailedError:
            # The lease closed while minting; the fresh credential must not outlive it.
            await self._record_issue(lease, FAILURE, reason="lease_closed")
            await self._revoke_ref(lease, minted.credential_ref)
            raise

        expires_at = min(minted.expires_at, lease.expires_at)
        await self._record_issue(
            lease,
            SUCCESS,
            detail={
                "provider": self._provider.name,
                "expires_at": expires_at.isoformat(),
                "actions": list(scope.actions),
                "resources": list(scope.resources),
            },
        )
        return EphemeralCredential(
            lease_id=lease.lease_id,
            resource=scope.resource_id,
            expires_at=expires_at,
            scope=decision.constraints,
            material=minted.material,
        )

    async def revoke(self, lease: Lease) -> bool:
        """Revoke the downstream credential bound to ``lease``, if any."""
        if not lease.credential_ref:
            return False
        return await self._revoke_ref(lease, lease.credential_ref)

    async def drain(self) -> None:
        """Wait for abandoned mints to finish and their credentials to be revoked."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _mint_with_retry(
        self, lease: Lease, scope: CredentialScope, session_name: str
    ) -> MintedCredential:
        for attempt in range(1, self._max_attempts + 1):
            ttl = self._remaining_seconds(lease)
            if ttl <= 0:
                raise ProviderError("Lease expired before issuance", "lease_expired")
            try:
                return await self._mint_once(lease, scope, ttl, session_name)
            except asyncio.TimeoutError:
                error = ProviderError(
                    f"Provider call timed out after {self._call_timeout}s",
                    "timeout",
                    transient=True,
                )
            except ProviderError as exc:
                error = exc

            if not error.transient or attempt == self._max_attempts:
                raise error
            logger.warning(
                "Mint attempt %d/%d for lease %s failed: %s",
                attempt,
                self._max_attempts,
                lease.lease_id,
                error.code,
            )
            await asyncio.sleep(min(self._backoff * 2 ** (attempt - 1), _MAX_BACKOFF_SECONDS))
        raise IssuanceFailedError(f"No mint attempt made for lease {lease.lease_id}")

    async def _mint_once(
        self, lease: Lease, scope: CredentialScope, ttl: int, session_name: str
    ) -> MintedCredential:
        # Timing out or cancelling the wait does not stop a provider call running
        # in a worker thread, so the call is shielded and reaped if it finishes late.
        call = asyncio.ensure_future(self._provider.mint_credential(scope, ttl, session_name))
        try:
            return await asyncio.wait_for(asyncio.shield(call), timeout=self._call_timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            self._reap_late_mint(lease, call)
            raise

    def _reap_late_mint(self, lease: Lease, call: asyncio.Future[MintedCredential]) -> None:
        def on_done(done: asyncio.Future[MintedCredential]) -> None:
            if done.cancelled() or done.exception() is not None:
                return
            credential_ref = done.result().credential_ref
            logger.warning(
                "Mint for lease %s finished after it was abandoned; revoking %s",
                lease.lease_id,
                credential_ref,
            )
            self._track(asyncio.ensure_future(self._revoke_abandoned(lease, credential_ref)))

        call.add_done_callback(on_done)
        self._track(call)

    async def _revoke_abandoned(self, lease: Lease, credential_ref: str) -> None:
        try:
            await self._revoke_ref(lease, credential_ref)
        except AuditWriteError:
            logger.exception("Audit write failed revoking abandoned mint for %s", lease.lease_id)

    def _track(self, task: asyncio.Future) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _revoke_ref(self, lease: Lease, credential_ref: str) -> bool:
        for attempt in range(1, self._max_attempts + 1):
            try:
                await asyncio.wait_for(
                    self._provider.revoke_credential(credential_ref),
                    timeout=self._call_timeout,
                )
            except asyncio.TimeoutError:
                error = ProviderError("Provider revoke timed out", "timeout", transient=True)
            except ProviderError as exc:
                error = exc
            except Exception as exc:
                logger.exception("Provider fault revoking credential for lease %s", lease.lease_id)
                error = ProviderError(f"Provider fault: {exc}", "provider_fault")
            else:
                await self._record_revoke(lease, SUCCESS)
                return True

            if not error.transient or attempt == self._max_attempts:
                logger.error(
                    "Revoking credential for lease %s failed: %s", lease.lease_id, error
                )
                await self._record_revoke(lease, FAILURE, reason=error.code)
                return False
            await asyncio.sleep(min(self._backoff * 2 ** (attempt - 1), _MAX_BACKOFF_SECONDS))
        return False

    def _remaining_seconds(self, lease: Lease) -> int:
        if lease.expires_at is None:
            raise ProviderError(f"Lease {lease.lease_id} has no expiry", "lease_not_active")
        return math.floor((lease.expires_at - self._clock()).total_seconds())

    async def _record_issue(
        self,
        lease: Lease,
        outcome: str,
        reason: str | None = None,
        detail: dict | None = None,
    ) -> None:
        await self._audit.record(
            AuditEvent(
                event_type=CREDENTIAL_ISSUE,
                outcome=outcome,
                actor=lease.identity_id,
                resource=lease.profile_name,
                lease_id=lease.lease_id,
                reason=reason,
                detail=detail or {},
            )
        )

    async def _record_revoke(self, lease: Lease, outcome: str, reason: str | None = None) -> None:
        await self._audit.record(
            AuditEvent(
                event_type=CREDENTIAL_REVOKE,
                outcome=outcome,
                actor=lease.identity_id,
                resource=lease.profile_name,
                lease_id=lease.lease_id,
                reason=reason,
                detail={"end_reason": lease.end_reason},
            )
        )
