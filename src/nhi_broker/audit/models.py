"""Data models for audit records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Event types
ASSERTION_VALIDATE = "assertion.validate"
FEDERATION_RESOLVE = "federation.resolve"
POLICY_AUTHORIZE = "policy.authorize"
LEASE_CHECKOUT = "lease.checkout"
LEASE_TRANSITION = "lease.transition"
LEASE_CHECKIN = "lease.checkin"
CREDENTIAL_ISSUE = "credential.issue"
CREDENTIAL_REVOKE = "credential.revoke"
BROKER_FAULT = "broker.fault"

EVENT_TYPES = frozenset(
    {
        ASSERTION_VALIDATE,
        FEDERATION_RESOLVE,
        POLICY_AUTHORIZE,
        LEASE_CHECKOUT,
        LEASE_TRANSITION,
        LEASE_CHECKIN,
        CREDENTIAL_ISSUE,
        CREDENTIAL_REVOKE,
        BROKER_FAULT,
    }
)

# Outcomes
SUCCESS = "success"
FAILURE = "failure"
DENIED = "denied"
CONFLICT = "conflict"
NOOP = "noop"

OUTCOMES = frozenset({SUCCESS, FAILURE, DENIED, CONFLICT, NOOP})

UNKNOWN_ACTOR = "unknown"


@dataclass(frozen=True)
class AuditEvent:
    """Something that happened, before it is made durable."""

    event_type: str
    outcome: str
    actor: str = UNKNOWN_ACTOR
    resource: str | None = None
    reason: str | None = None
    lease_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown audit event type: {self.event_type}")
        if self.outcome not in OUTCOMES:
            raise ValueError(f"Unknown audit outcome: {self.outcome}")


@dataclass(frozen=True)
class AuditRecord:
    """A durable audit record. ``seq`` is the store's monotonic order."""

    seq: int
    event_id: str
    recorded_at: str
    event_type: str
    actor: str
    resource: str | None
    outcome: str
    reason: str | None
    lease_id: str | None
    detail: dict[str, Any]
