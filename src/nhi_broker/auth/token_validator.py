"""OIDC identity assertion validation.

Security features:
- JWT format detection (rejects opaque tokens)
- alg=none rejection and per-trust algorithm allowlist
- Exact issuer match (trailing slash normalized)
- Signature verification against the issuer's JWKS before any claim is trusted
- Audience intersection
- Bounded validation window: an assertion is only accepted within
  ``validation_window_seconds`` of its ``iat``, even if ``exp`` is later
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Protocol

import jwt

from ..errors import (
    AudienceMismatchError,
    ExpiredAssertionError,
    InvalidSignatureError,
    UntrustedIssuerError,
)
from ..utils.time import Clock, from_timestamp, utc_now

logger = logging.getLogger(__name__)


class SigningKeyResolver(Protocol):
    async def get_signing_key(self, kid: str | None) -> Any: ...


def _normalize_issuer(issuer: str) -> str:
    return issuer.rstrip("/")


def _is_jwt_format(token: str) -> bool:
    """Check if token is in JWT format (3 dot-separated base64 parts)."""
    if not token:
        return False

    parts = token.split(".")
    if len(parts) != 3:
        return False

    for part in parts[:2]:
        if not part:
            return False
        try:
            remainder = len(part) % 4
            if remainder:
                part += "=" * (4 - remainder)
            base64.urlsafe_b64decode(part)
        except (ValueError, TypeError):
            return False

    return True


def _audience_values(raw: Any) -> frozenset[str]:
    if isinstance(raw, str):
        return frozenset({raw})
    if isinstance(raw, list):
        return frozenset(value for value in raw if isinstance(value, str))
    return frozenset()


def _timestamp(claims: Mapping[str, Any], name: str) -> datetime | None:
    value = claims.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return from_timestamp(value)


@dataclass(frozen=True)
class IdentityAssertion:
    """A presented OIDC assertion, decoded but NOT verified.

    Exists only for the duration of one validation call. ``raw`` holds the
    signed token and is excluded from repr.
    """

    issuer: str
    subject: str | None
    audiences: frozenset[str]
    issued_at: datetime | None
    expires_at: datetime | None
    header: Mapping[str, Any]
    raw: str = field(repr=False)

    @classmethod
    def parse(cls, token: str) -> "IdentityAssertion":
        """Decode header and payload without verifying the signature."""
        token = (token or "").strip()
        if not _is_jwt_format(token):
            raise InvalidSignatureError(
                "Assertion is not in JWT format. Opaque tokens are not supported.",
                "malformed_assertion",
            )
        try:
            header = jwt.get_unverified_header(token)
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            raise InvalidSignatureError(f"Invalid assertion: {e}", "malformed_assertion") from e

        issuer = claims.get("iss")
        subject = claims.get("sub")
        return cls(
            issuer=issuer if isinstance(issuer, str) else "",
            subject=subject if isinstance(subject, str) else None,
            audiences=_audience_values(claims.get("aud")),
            issued_at=_timestamp(claims, "iat"),
            expires_at=_timestamp(claims, "exp"),
            header=MappingProxyType(dict(header)),
            raw=token,
        )


@dataclass(frozen=True)
class ValidatedClaims:
    """Claims of an assertion that passed every check."""

    subject: str
    issuer: str
    audiences: frozenset[str]
    issued_at: datetime
    expires_at: datetime
    jti: str | None
    raw_claims: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw_claims", MappingProxyType(dict(self.raw_claims)))


class TokenValidator:
    """Validates OIDC assertions against a trusted issuer's signing keys."""

    def __init__(
        self,
        key_resolver: SigningKeyResolver,
        *,
        allowed_algorithms: Iterable[str] = ("RS256", "ES256"),
        clock_skew_seconds: int = 30,
        clock: Clock = utc_now,
    ) -> None:
        self._keys = key_resolver
        self._allowed_algorithms = frozenset(allowed_algorithms)
        self._skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock

    async def validate(
        self,
        assertion: str | IdentityAssertion,
        expected_issuer: str,
        expected_audiences: Iterable[str],
        validation_window_seconds: int,
    ) -> ValidatedClaims:
        """Validate an assertion and return its claims.

        Raises an ``AssertionRejectedError`` subclass on any failure.
        """
        parsed = (
            assertion
            if isinstance(assertion, IdentityAssertion)
            else IdentityAssertion.parse(assertion)
        )

        alg = str(parsed.header.get("alg", ""))
        if alg.lower() == "none":
            raise InvalidSignatureError("Algorithm 'none' is not allowed", "invalid_algorithm")
        if alg not in self._allowed_algorithms:
            raise InvalidSignatureError(f"Algorithm '{alg}' not allowed", "invalid_algorithm")

        expected = _normalize_issuer(expected_issuer)
        if _normalize_issuer(parsed.issuer) != expected:
            logger.debug("Assertion issuer %r does not match trusted issuer", parsed.issuer)
            raise UntrustedIssuerError("Assertion issuer is not trusted")

        key = await self._keys.get_signing_key(parsed.header.get("kid"))
        verified = self._verify_signature(parsed.raw, key, alg)

        # The unverified issuer check above only avoids a key fetch; re-check on
        # the verified payload.
        if _normalize_issuer(str(verified.get("iss", ""))) != expected:
            raise UntrustedIssuerError("Assertion issuer is not trusted")

        audiences = _audience_values(verified.get("aud"))
        if not audiences & frozenset(expected_audiences):
            raise AudienceMismatchError("Assertion audience does not match")

        issued_at, expires_at = self._check_times(verified, validation_window_seconds)

        subject = verified.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidSignatureError("Missing required claim: sub", "malformed_assertion")

        jti = verified.get("jti")
        return ValidatedClaims(
            subject=subject,
            issuer=expected,
            audiences=audiences,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=jti if isinstance(jti, str) else None,
            raw_claims=verified,
        )

    @staticmethod
    def _verify_signature(token: str, key: Any, alg: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                key,
                algorithms=[alg],
                options={
                    "verify_signature": True,
                    # Claim checks below map to the broker's own error taxonomy.
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "verify_aud": False,
                    "verify_iss": False,
                },
            )
        except jwt.InvalidSignatureError as e:
            raise InvalidSignatureError("Signature verification failed") from e
        except jwt.PyJWTError as e:
            raise InvalidSignatureError(f"Invalid assertion: {e}") from e

    def _check_times(
        self, claims: Mapping[str, Any], window_seconds: int
    ) -> tuple[datetime, datetime]:
        issued_at = _timestamp(claims, "iat")
        expires_at = _timestamp(claims, "exp")
        if issued_at is None:
            raise ExpiredAssertionError("Missing or invalid iat claim", "missing_claim")
        if expires_at is None:
            raise ExpiredAssertionError("Missing or invalid exp claim", "missing_claim")

        now = self._clock()
        if now >= expires_at + self._skew:
            raise ExpiredAssertionError("Assertion expired")
        if now < issued_at - self._skew:
            raise ExpiredAssertionError("Assertion issued in the future", "assertion_immature")

        not_before = _timestamp(claims, "nbf")
        if not_before is not None and now < not_before - self._skew:
            raise ExpiredAssertionError("Assertion not yet valid (nbf)", "assertion_immature")

        # Window edge is inclusive; no skew on the upper bound.
        if now > issued_at + timedelta(seconds=window_seconds):
            raise ExpiredAssertionError(
                "Assertion is outside the validation window", "validation_window_exceeded"
            )

        return issued_at, expires_at
