"""Broker error taxonomy.

Every failure the broker surfaces is a ``BrokerError`` subclass carrying a
stable ``code``. The ``message`` is for server-side logs and audit records
only; callers receive ``to_public()``, which never includes internal detail.
"""

from __future__ import annotations

from typing import Any

DENIED = "denied"
CONFLICT = "conflict"
UNAVAILABLE = "unavailable"
NOT_FOUND = "not_found"
INTERNAL = "internal"


class BrokerError(Exception):
    """Base class for all broker failures."""

    code = "internal_fault"
    category = INTERNAL
    retryable = False
    public_message = "Request could not be processed"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)

    def to_public(self) -> dict[str, Any]:
        """Caller-facing payload. Never includes ``message``."""
        return {
            "error": self.public_code,
            "message": self.public_message,
            "retryable": self.retryable,
        }

    @property
    def public_code(self) -> str:
        return self.code


class AccessDeniedError(BrokerError):
    """Authentication or authorization failure. Never retried automatically."""

    category = DENIED
    public_message = "Access denied"

    @property
    def public_code(self) -> str:
        # Individual denial reasons would leak configuration structure.
        return "access_denied"


class AssertionRejectedError(AccessDeniedError):
    """The presented identity assertion failed validation."""

    public_message = "Identity assertion rejected"

    @property
    def public_code(self) -> str:
        return "invalid_assertion"


class InvalidSignatureError(AssertionRejectedError):
    code = "invalid_signature"


class UntrustedIssuerError(AssertionRejectedError):
    code = "untrusted_issuer"


class AudienceMismatchError(AssertionRejectedError):
    code = "audience_mismatch"


class ExpiredAssertionError(AssertionRejectedError):
    code = "expired_assertion"


class UnknownIdentityError(AccessDeniedError):
    code = "unknown_identity"


class AmbiguousFederationError(AccessDeniedError):
    code = "ambiguous_federation"


class PolicyDeniedError(AccessDeniedError):
    code = "policy_denied"

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class LeaseConflictError(BrokerError):
    """An active lease already holds the (identity, profile) slot."""

    code = "lease_conflict"
    category = CONFLICT
    retryable = True
    public_message = "An active lease already exists for this identity and profile"


class IssuanceFailedError(BrokerError):
    """The downstream provider could not mint a credential for the lease."""

    code = "issuance_failed"
    category = UNAVAILABLE
    retryable = True
    public_message = "Credential issuance is temporarily unavailable"


class UnknownLeaseError(BrokerError):
    code = "unknown_lease"
    category = NOT_FOUND
    public_message = "Lease not found"


class InternalFaultError(BrokerError):
    code = "internal_fault"
    category = INTERNAL
    public_message = "Internal error"


class AuditWriteError(InternalFaultError):
    """An audit record could not be made durable."""

    code = "internal_fault"
