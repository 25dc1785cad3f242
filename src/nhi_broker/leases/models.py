"""Lease records and states."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum


class LeaseState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CHECKED_IN = "checked_in"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @property
    def is_terminal(self) -> bool:
        return self not in (LeaseState.PENDING, LeaseState.ACTIVE)


class RevokeReason(str, Enum):
    ISSUANCE_FAILED = "issuance_failed"
    ADMINISTRATIVE = "administrative"
    REGISTRY_CHANGED = "registry_changed"
    PENDING_TIMEOUT = "pending_timeout"
    INTERNAL_FAULT = "internal_fault"
    CANCELLED = "cancelled"


_ALLOWED_TRANSITIONS: dict[LeaseState, frozenset[LeaseState]] = {
    LeaseState.PENDING: frozenset({LeaseState.ACTIVE, LeaseState.REVOKED}),
    LeaseState.ACTIVE: frozenset(
        {LeaseState.CHECKED_IN, LeaseState.EXPIRED, LeaseState.REVOKED}
    ),
    LeaseState.CHECKED_IN: frozenset(),
    LeaseState.EXPIRED: frozenset(),
    LeaseState.REVOKED: frozenset(),
}


def can_transition(current: LeaseState, target: LeaseState) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class Lease:
    """Immutable snapshot of a lease at one ``version``.

    Every transition produces a new snapshot with ``version + 1``; the arena
    only accepts it if the stored version is unchanged.
    """

    lease_id: str
    identity_id: str
    profile_name: str
    state: LeaseState
    version: int
    created_at: datetime
    ttl_seconds: int
    max_concurrent: int = 1
    started_at: datetime | None = None
    expires_at: datetime | None = None
    credential_ref: str | None = None
    ended_at: datetime | None = None
    end_reason: str | None = None

    @property
    def pair(self) -> tuple[str, str]:
        return (self.identity_id, self.profile_name)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def is_past_expiry(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def evolve(self, **changes: object) -> "Lease":
        """Return the next version of this lease with ``changes`` applied."""
        target = changes.get("state", self.state)
        if target != self.state and not can_transition(
            self.state, target  # type: ignore[arg-type]
        ):
            raise ValueError(f"Illegal lease transition {self.state.value} -> {target}")
        return replace(self, version=self.version + 1, **changes)  # type: ignore[arg-type]


@dataclass(frozen=True)
class CheckInResult:
    lease: Lease
    # False when the lease was already terminal and nothing changed.
    transitioned: bool
