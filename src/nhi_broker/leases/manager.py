"""Lease lifecycle: pending -> active -> checked_in / expired / revoked."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from ..audit.logger import AuditLogger
from ..audit.models import (
    CONFLICT,
    LEASE_CHECKIN,
    LEASE_CHECKOUT,
    LEASE_TRANSITION,
    NOOP,
    SUCCESS,
    AuditEvent,
)
from ..errors import (
    AuditWriteError,
    IssuanceFailedError,
    LeaseConflictError,
    UnknownLeaseError,
)
from ..policy.models import Decision
from ..registry.models import AccessProfile, ServiceIdentity
from ..utils.time import Clock, utc_now
from .arena import LeaseArena
from .models import CheckInResult, Lease, LeaseState, RevokeReason

logger = logging.getLogger(__name__)

_CHECKED_IN = "checked_in"
_EXPIRED = "expired"


class LeaseManager:
    """Owns every lease transition.

    Transitions are optimistic: read a snapshot, commit the next version with
    compare-and-swap, and audit only what was committed. Revocation fences the
    lease first so it wins over any check-in or expiry that has not committed.
    """

    def __init__(
        self,
        audit: AuditLogger,
        *,
        clock: Clock = utc_now,
        pending_timeout_seconds: int = 120,
        archive_max_entries: int = 10_000,
    ) -> None:
        self._audit = audit
        self._clock = clock
        self._pending_timeout = timedelta(seconds=pending_timeout_seconds)
        self._arena = LeaseArena(archive_max_entries)

    def get(self, lease_id: str) -> Lease | None:
        return self._arena.get(lease_id)

    def live_leases(self) -> list[Lease]:
        return self._arena.live_leases()

    def active_leases(self) -> list[Lease]:
        return [lease for lease in self._arena.live_leases() if lease.state is LeaseState.ACTIVE]

    def leases_for(self, identity_id: str) -> list[Lease]:
        return [lease for lease in self._arena.live_leases() if lease.identity_id == identity_id]

    async def checkout(
        self,
        identity: ServiceIdentity,
        profile: AccessProfile,
        decision: Decision,
        ttl_seconds: int | None = None,
    ) -> Lease:
        """Create a lease and activate it, or raise ``LeaseConflictError``."""
        if not decision.allowed:
            raise ValueError("Cannot check out a lease for a denied decision")

        ttl = decision.max_ttl_seconds
        if ttl_seconds is not None:
            ttl = min(ttl_seconds, ttl)
        # Never exceed the profile cap, whatever the decision says.
        ttl = min(ttl, profile.max_ttl_seconds)
        if ttl <= 0:
            raise ValueError("Lease TTL must be positive")

        limit = decision.constraints.max_concurrent_leases
        pending = Lease(
            lease_id=uuid.uuid4().hex,
            identity_id=identity.id,
            profile_name=profile.name,
            state=LeaseState.PENDING,
            version=0,
            created_at=self._clock(),
            ttl_seconds=ttl,
            max_concurrent=limit,
        )

        if not self._arena.insert_if_capacity(pending, limit):
            await self._audit.record(
                AuditEvent(
                    event_type=LEASE_CHECKOUT,
                    outcome=CONFLICT,
                    actor=identity.id,
                    resource=profile.name,
                    reason="lease_conflict",
                    detail={"max_concurrent_leases": limit},
                )
            )
            raise LeaseConflictError(
                f"Identity {identity.id} already holds {limit} live lease(s) for {profile.name}"
            )

        try:
            started_at = self._clock()
            active = pending.evolve(
                state=LeaseState.ACTIVE,
                started_at=started_at,
                expires_at=started_at + timedelta(seconds=ttl),
            )
            if not self._arena.compare_and_swap(pending.lease_id, pending.version, active):
                raise IssuanceFailedError("Lease was closed before activation")
            await self._record_transition(pending, active, None)
            await self._audit.record(
                AuditEvent(
                    event_type=LEASE_CHECKOUT,
                    outcome=SUCCESS,
                    actor=identity.id,
                    resource=profile.name,
                    lease_id=active.lease_id,
                    detail={
                        "ttl_seconds": ttl,
                        "expires_at": active.expires_at.isoformat() if active.expires_at else None,
                    },
                )
            )
        except BaseException:
            await self._rollback(pending.lease_id)
            raise

        logger.info(
            "Lease %s active for %s/%s until %s",
            active.lease_id,
            identity.id,
            profile.name,
            active.expires_at,
        )
        return active

    def attach_credential(self, lease_id: str, credential_ref: str) -> Lease:
        """Bind a minted credential to an active lease."""
        while True:
            current = self._arena.get(lease_id)
            if (
                current is None
                or current.state is not LeaseState.ACTIVE
                or self._arena.is_fenced(lease_id)
            ):
                raise IssuanceFailedError(f"Lease {lease_id} is no longer active")
            bound = current.evolve(credential_ref=credential_ref)
            if self._arena.compare_and_swap(lease_id, current.version, bound):
                return bound

    async def check_in(self, lease_id: str) -> CheckInResult:
        """End an active lease. Repeated check-ins succeed without side effects."""
        while True:
            current = self._arena.get(lease_id)
            if current is None:
                raise UnknownLeaseError(f"Unknown lease {lease_id}")

            if current.is_terminal or self._arena.is_fenced(lease_id):
                # Already closed, or a revocation is committing and wins.
                await self._audit.record(
                    AuditEvent(
                        event_type=LEASE_CHECKIN,
                        outcome=NOOP,
                        actor=current.identity_id,
                        resource=current.profile_name,
                        lease_id=lease_id,
                        detail={"state": current.state.value},
                    )
                )
                return CheckInResult(current, False)

            if current.state is LeaseState.PENDING:
                await self._audit.record(
                    AuditEvent(
                        event_type=LEASE_CHECKIN,
                        outcome=CONFLICT,
                        actor=current.identity_id,
                        resource=current.profile_name,
                        lease_id=lease_id,
                        reason="issuance_in_progress",
                    )
                )
                raise LeaseConflictError(f"Lease {lease_id} is still being issued")

            closed = current.evolve(
                state=LeaseState.CHECKED_IN,
                ended_at=self._clock(),
                end_reason=_CHECKED_IN,
            )
            if self._arena.compare_and_swap(lease_id, current.version, closed):
                await self._record_transition(current, closed, _CHECKED_IN)
                await self._audit.record(
                    AuditEvent(
                        event_type=LEASE_CHECKIN,
                        outcome=SUCCESS,
                        actor=closed.identity_id,
                        resource=closed.profile_name,
                        lease_id=lease_id,
                    )
                )
                return CheckInResult(closed, True)

    async def revoke(self, lease_id: str, reason: RevokeReason) -> Lease | None:
        """Force a live lease to ``revoked``.

        Returns the revoked lease if this call made the transition, or None if
        the lease was unknown or already terminal.
        """
        if not self._arena.fence(lease_id):
            return None
        while True:
            current = self._arena.get(lease_id)
            if current is None or current.is_terminal:
                return None
            revoked = current.evolve(
                state=LeaseState.REVOKED,
                ended_at=self._clock(),
                end_reason=reason.value,
            )
            if self._arena.compare_and_swap(lease_id, current.version, revoked, fenced_ok=True):
                logger.info("Lease %s revoked (%s)", lease_id, reason.value)
                try:
                    await self._record_transition(current, revoked, reason.value)
                except AuditWriteError:
                    # Committed; the caller still owns revoking the credential.
                    logger.exception("Audit write failed for revoked lease %s", lease_id)
                return revoked

    async def sweep(self, now: datetime | None = None) -> list[Lease]:
        """Expire overdue active leases and revoke stale pending ones.

        Returns only the leases this call transitioned.
        """
        now = now or self._clock()
        transitioned: list[Lease] = []
        for lease in self._arena.live_leases():
            if lease.state is LeaseState.ACTIVE and lease.is_past_expiry(now):
                closed = lease.evolve(state=LeaseState.EXPIRED, ended_at=now, end_reason=_EXPIRED)
            elif (
                lease.state is LeaseState.PENDING
                and now - lease.created_at >= self._pending_timeout
            ):
                closed = lease.evolve(
                    state=LeaseState.REVOKED,
                    ended_at=now,
                    end_reason=RevokeReason.PENDING_TIMEOUT.value,
                )
            else:
                continue

            if not self._arena.compare_and_swap(lease.lease_id, lease.version, closed):
                continue
            transitioned.append(closed)
            try:
                await self._record_transition(lease, closed, closed.end_reason)
            except AuditWriteError:
                # The transition is committed; its credential must still be revoked.
                logger.exception("Audit write failed for swept lease %s", lease.lease_id)

        if transitioned:
            logger.info("Sweep closed %d lease(s)", len(transitioned))
        return transitioned

    async def _record_transition(self, old: Lease, new: Lease, reason: str | None) -> None:
        await self._audit.record(
            AuditEvent(
                event_type=LEASE_TRANSITION,
                outcome=SUCCESS,
                actor=new.identity_id,
                resource=new.profile_name,
                lease_id=new.lease_id,
                reason=reason,
                detail={
                    "from_state": old.state.value,
                    "to_state": new.state.value,
                    "version": new.version,
                },
            )
        )

    async def _rollback(self, lease_id: str) -> None:
        await self.revoke(lease_id, RevokeReason.INTERNAL_FAULT)
