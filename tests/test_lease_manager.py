"""Tests for the lease lifecycle."""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from nhi_broker.audit.models import LEASE_CHECKIN, LEASE_CHECKOUT, LEASE_TRANSITION
from nhi_broker.errors import AuditWriteError, LeaseConflictError, UnknownLeaseError
from nhi_broker.leases.arena import LeaseArena
from nhi_broker.leases.manager import LeaseManager
from nhi_broker.leases.models import Lease, LeaseState, RevokeReason
from nhi_broker.policy.engine import PolicyEngine
from nhi_broker.policy.models import Decision
from nhi_broker.registry.models import Registry

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(audit, clock) -> LeaseManager:
    return LeaseManager(audit, clock=clock, pending_timeout_seconds=60)


def _grant(registry: Registry, profile: str = "s3-readonly"):
    engine = PolicyEngine(registry)
    identity = registry.get_identity("ci-deployer")
    decision = engine.authorize(identity, profile)
    assert decision.allowed
    return identity, decision.profile, decision


def _transitions(audit_store, lease_id: str) -> list[tuple[str, str]]:
    return [
        (r.detail["from_state"], r.detail["to_state"])
        for r in audit_store.list_records(event_type=LEASE_TRANSITION, lease_id=lease_id)
    ]


class TestCheckout:
    @pytest.mark.asyncio
    async def test_creates_active_lease(self, manager, registry, audit_store, clock) -> None:
        identity, profile, decision = _grant(registry)

        lease = await manager.checkout(identity, profile, decision)

        assert lease.state is LeaseState.ACTIVE
        assert lease.ttl_seconds == 3600
        assert lease.started_at == START
        assert lease.expires_at == START + timedelta(seconds=3600)
        assert manager.get(lease.lease_id) == lease
        assert manager.active_leases() == [lease]
        assert manager.leases_for("ci-deployer") == [lease]
        assert _transitions(audit_store, lease.lease_id) == [("pending", "active")]
        assert audit_store.count(event_type=LEASE_CHECKOUT, outcome="success") == 1

    @pytest.mark.asyncio
    async def test_requested_ttl_is_capped_by_decision(self, manager, registry) -> None:
        identity, profile, decision = _grant(registry)

        short = await manager.checkout(identity, profile, decision, ttl_seconds=900)

        assert short.ttl_seconds == 900

        other = await manager.checkout(identity, *_grant(registry, "deploy")[1:], ttl_seconds=99999)
        assert other.ttl_seconds == 1800

    @pytest.mark.asyncio
    async def test_denied_decision_is_rejected(self, manager, registry) -> None:
        identity, profile, _ = _grant(registry)

        with pytest.raises(ValueError):
            await manager.checkout(identity, profile, Decision.deny("profile_not_allowed", profile))

    @pytest.mark.asyncio
    async def test_second_checkout_conflicts(self, manager, registry, audit_store) -> None:
        identity, profile, decision = _grant(registry)
        await manager.checkout(identity, profile, decision)

        with pytest.raises(LeaseConflictError):
            await manager.checkout(identity, profile, decision)

        assert len(manager.live_leases()) == 1
        assert audit_store.count(event_type=LEASE_CHECKOUT, outcome="conflict") == 1

    @pytest.mark.asyncio
    async def test_concurrent_checkouts_yield_one_lease(
        self, manager, registry, audit_store
    ) -> None:
        identity, profile, decision = _grant(registry)
        workers = 8

        results = await asyncio.gather(
            *(manager.checkout(identity, profile, decision) for _ in range(workers)),
            return_exceptions=True,
        )

        granted = [r for r in results if isinstance(r, Lease)]
        conflicts = [r for r in results if isinstance(r, LeaseConflictError)]
        assert len(granted) == 1
        assert len(conflicts) == workers - 1
        assert manager.active_leases() == granted
        assert audit_store.count(event_type=LEASE_CHECKOUT, outcome="conflict") == workers - 1

    @pytest.mark.asyncio
    async def test_max_concurrent_leases_from_policy(self, audit, clock, registry_data) -> None:
        registry_data["policies"][0]["max_concurrent_leases"] = 2
        registry = Registry.model_validate(registry_data)
        manager = LeaseManager(audit, clock=clock)
        identity, profile, decision = _grant(registry)

        first = await manager.checkout(identity, profile, decision)
        second = await manager.checkout(identity, profile, decision)
        with pytest.raises(LeaseConflictError):
            await manager.checkout(identity, profile, decision)

        assert first.lease_id != second.lease_id
        assert first.max_concurrent == 2

    @pytest.mark.asyncio
    async def test_audit_failure_rolls_back(self, manager, registry, audit, monkeypatch) -> None:
        identity, profile, decision = _grant(registry)
        original = audit.record

        async def failing_record(event):
            if event.event_type == LEASE_CHECKOUT and event.outcome == "success":
                raise AuditWriteError("disk full")
            return await original(event)

        monkeypatch.setattr(audit, "record", failing_record)

        with pytest.raises(AuditWriteError):
            await manager.checkout(identity, profile, decision)

        assert manager.live_leases() == []
        monkeypatch.setattr(audit, "record", original)
        assert (await manager.checkout(identity, profile, decision)).state is LeaseState.ACTIVE


class TestCheckIn:
    @pytest.mark.asyncio
    async def test_check_in_is_idempotent(self, manager, registry, audit_store) -> None:
        identity, profile, decision = _grant(registry)
        lease = await manager.checkout(identity, profile, decision)

        first = await manager.check_in(lease.lease_id)
        second = await manager.check_in(lease.lease_id)

        assert first.transitioned is True
        assert first.lease.state is LeaseState.CHECKED_IN
        assert second.transitioned is False
        assert second.lease == first.lease
        assert _transitions(audit_store, lease.lease_id) == [
            ("pending", "active"),
            ("active", "checked_in"),
        ]
        assert audit_store.count(event_type=LEASE_CHECKIN, outcome="success") == 1
        assert audit_store.count(event_type=LEASE_CHECKIN, outcome="noop") == 1

    @pytest.mark.asyncio
    async def test_check_in_frees_the_slot(self, manager, registry) -> None:
        identity, profile, decision = _grant(registry)
        lease = await manager.checkout(identity, profile, decision)
        await manager.check_in(lease.lease_id)

        assert (await manager.checkout(identity, profile, decision)).lease_id != lease.lease_id

    @pytest.mark.asyncio
    async def test_unknown_lease(self, manager) -> None:
        with pytest.raises(UnknownLeaseError):
            await manager.check_in("does-not-exist")

    @pytest.mark.asyncio
    async def test_pending_lease_conflicts(self, manager, clock) -> None:
        pending = _pending_lease(clock())
        manager._arena.insert_if_capacity(pending, 1)  # noqa: SLF001

        with pytest.raises(LeaseConflictError):
            await manager.check_in(pending.lease_id)


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_active_lease(self, manager, registry, audit_store) -> None:
        identity, profile, decision = _grant(registry)
        lease = await manager.checkout(identity, profile, decision)

        revoked = await manager.revoke(lease.lease_id, RevokeReason.ADMINISTRATIVE)

        assert revoked is not None
        assert revoked.state is LeaseState.REVOKED
        assert revoked.end_reason == "administrative"
        assert await manager.revoke(lease.lease_id, RevokeReason.ADMINISTRATIVE) is None
        assert (await manager.check_in(lease.lease_id)).transitioned is False
        assert _transitions(audit_store, lease.lease_id)[-1] == ("active", "revoked")

    @pytest.mark.asyncio
    async def test_fenced_lease_refuses_check_in(self, manager, registry) -> None:
        identity, profile, decision = _grant(registry)
        lease = await manager.checkout(identity, profile, decision)
        manager._arena.fence(lease.lease_id)  # noqa: SLF001

        result = await manager.check_in(lease.lease_id)
        assert result.transitioned is False
        assert result.lease.state is LeaseState.ACTIVE

        revoked = await manager.revoke(lease.lease_id, RevokeReason.REGISTRY_CHANGED)
        assert revoked is not None
        assert revoked.state is LeaseState.REVOKED

    @pytest.mark.asyncio
    async def test_revoke_unknown_lease(self, manager) -> None:
        assert await manager.revoke("missing", RevokeReason.ADMINISTRATIVE) is None

    @pytest.mark.asyncio
    async def test_revoke_returns_lease_when_audit_fails(
        self, manager, registry, audit, monkeypatch
    ) -> None:
        identity, profile, decision = _grant(registry)
        lease = await manager.checkout(identity, profile, decision)

        async def failing_record(event):
            raise AuditWriteError("disk full")

        monkeypatch.setattr(audit, "record", failing_record)
        revoked = await manager.revoke(lease.lease_id, RevokeReason.ADMINISTRATIVE)

        assert revoked is not None
        assert revoked.state is LeaseState.REVOKED
        assert manager.live_leases() == []


class TestSweep:
    @pytest.mark.asyncio
    async def test_expires_active_leases_once(self, manager, registry, clock, audit_store) -> None:
        identity, profile, decision = _grant(registry)
        lease = await manager.checkout(identity, profile, decision, ttl_seconds=900)

        clock.advance(899)
        assert await manager.sweep() == []

        clock.advance(1)
        swept = await manager.sweep()
        assert [s.lease_id for s in swept] == [lease.lease_id]
        assert swept[0].state is LeaseState.EXPIRED
        assert await manager.sweep() == []
        assert (await manager.check_in(lease.lease_id)).lease.state is LeaseState.EXPIRED
        assert _transitions(audit_store, lease.lease_id)[-1] == ("active", "expired")

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_transition_once(self, manager, registry, clock) -> None:
        identity, profile, decision = _grant(registry)
        await manager.checkout(identity, profile, decision)
        clock.advance(3600)

        results = await asyncio.gather(*(manager.sweep() for _ in range(4)))

        assert sum(len(r) for r in results) == 1

    @pytest.mark.asyncio
    async def test_revokes_stale_pending_leases(self, manager, clock) -> None:
        pending = _pending_lease(clock())
        manager._arena.insert_if_capacity(pending, 1)  # noqa: SLF001

        clock.advance(59)
        assert await manager.sweep() == []
        clock.advance(1)
        swept = await manager.sweep()

        assert swept[0].state is LeaseState.REVOKED
        assert swept[0].end_reason == "pending_timeout"


class TestArena:
    def test_archive_is_bounded(self, clock) -> None:
        arena = LeaseArena(archive_max_entries=2)
        ids = []
        for n in range(3):
            lease = _pending_lease(clock(), lease_id=f"lease-{n}", identity_id=f"id-{n}")
            arena.insert_if_capacity(lease, 1)
            arena.compare_and_swap(
                lease.lease_id, 0, lease.evolve(state=LeaseState.REVOKED), fenced_ok=True
            )
            ids.append(lease.lease_id)

        assert arena.get(ids[0]) is None
        assert arena.get(ids[2]).state is LeaseState.REVOKED

    def test_stale_version_loses(self, clock) -> None:
        arena = LeaseArena()
        lease = _pending_lease(clock())
        arena.insert_if_capacity(lease, 1)
        active = lease.evolve(state=LeaseState.ACTIVE)

        assert arena.compare_and_swap(lease.lease_id, 0, active)
        assert not arena.compare_and_swap(lease.lease_id, 0, active)

    def test_illegal_transition(self, clock) -> None:
        lease = _pending_lease(clock()).evolve(state=LeaseState.REVOKED)

        with pytest.raises(ValueError):
            lease.evolve(state=LeaseState.ACTIVE)


    def test_concurrent_inserts_respect_capacity(self, clock) -> None:
        arena = LeaseArena()
        workers = 8
        barrier = threading.Barrier(workers)

        def attempt(n: int) -> bool:
            barrier.wait()
            return arena.insert_if_capacity(_pending_lease(clock(), lease_id=f"lease-{n}"), 1)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(attempt, range(workers)))

        assert results.count(True) == 1
        assert len(arena.live_leases()) == 1

def _pending_lease(
    now: datetime, lease_id: str = "pending-1", identity_id: str = "ci-deployer"
) -> Lease:
    return Lease(
        lease_id=lease_id,
        identity_id=identity_id,
        profile_name="s3-readonly",
        state=LeaseState.PENDING,
        version=0,
        created_at=now,
        ttl_seconds=900,
    )
