"""Issuer signing keys, fetched over HTTPS and cached."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

import httpx
import jwt

from ..errors import InternalFaultError, InvalidSignatureError
from ..utils.http import validate_oidc_url
from ..utils.time import Clock, utc_now
from .trust import JWKSCacheConfig

logger = logging.getLogger(__name__)

# A kid outside the cached set may force a refetch at most this often.
_FORCED_REFRESH_INTERVAL_SECONDS = 30.0
_MAX_RETRY_SLEEP_SECONDS = 30.0

_ALGORITHM_BY_KTY = {
    "RSA": jwt.algorithms.RSAAlgorithm,
    "EC": jwt.algorithms.ECAlgorithm,
    "OKP": jwt.algorithms.OKPAlgorithm,
}


class JWKSClient:
    """Resolves an issuer's signing keys by ``kid``.

    The key set is cached for ``ttl_seconds`` and refreshed
    ``refresh_before_seconds`` early. Without a configured ``jwks_uri`` the
    URI is discovered from ``<issuer>/.well-known/openid-configuration``.
    A failed refresh keeps serving the cached set and is not retried until
    ``failure_backoff_seconds`` have passed.
    """

    def __init__(
        self,
        issuer: str,
        config: JWKSCacheConfig,
        jwks_uri: str | None = None,
        http_timeout_seconds: float = 10.0,
        clock: Clock = utc_now,
    ) -> None:
        self.issuer = issuer.rstrip("/")
        self.config = config
        self.jwks_uri = jwks_uri
        self._http_timeout = http_timeout_seconds
        self._clock = clock
        self._keyset: list[dict[str, Any]] | None = None
        self._fetched_at: datetime | None = None
        self._failed_at: datetime | None = None
        self._lock = asyncio.Lock()

    async def get_signing_key(self, kid: str | None) -> Any:
        async with self._lock:
            if self._is_stale():
                await self._load()
            jwk = self._select(kid)
            if jwk is None and self._may_force_refresh():
                # The issuer may have rotated keys since the last fetch.
                await self._load(force=True)
                jwk = self._select(kid)

        if jwk is None:
            raise InvalidSignatureError(f"Signing key not found for kid={kid}", "key_not_found")
        return self._jwk_to_key(jwk)

    def _select(self, kid: str | None) -> dict[str, Any] | None:
        if self._keyset is None:
            raise InternalFaultError("JWKS not available", "jwks_unavailable")
        if not self._keyset:
            raise InternalFaultError(f"JWKS for {self.issuer} holds no keys", "jwks_unavailable")

        if kid is None:
            if len(self._keyset) > 1:
                raise InvalidSignatureError(
                    "Assertion has no kid and the JWKS holds several keys", "key_not_found"
                )
            return self._keyset[0]
        return next((jwk for jwk in self._keyset if jwk.get("kid") == kid), None)

    @staticmethod
    def _jwk_to_key(jwk: dict[str, Any]) -> Any:
        kty = str(jwk.get("kty", "")).upper()
        algorithm = _ALGORITHM_BY_KTY.get(kty)
        if algorithm is None:
            raise InvalidSignatureError(
                f"Unsupported key type: {kty or '<missing>'}", "unsupported_key_type"
            )
        return algorithm.from_jwk(jwk)

    def _age_seconds(self, moment: datetime | None) -> float | None:
        if moment is None:
            return None
        return (self._clock() - moment).total_seconds()

    def _is_stale(self) -> bool:
        age = self._age_seconds(self._fetched_at)
        if self._keyset is None or age is None:
            return True
        return age >= self.config.ttl_seconds - self.config.refresh_before_seconds

    def _may_force_refresh(self) -> bool:
        age = self._age_seconds(self._fetched_at)
        return age is None or age >= _FORCED_REFRESH_INTERVAL_SECONDS

    def _in_backoff(self) -> bool:
        age = self._age_seconds(self._failed_at)
        return age is not None and age < self.config.failure_backoff_seconds

    async def _load(self, force: bool = False) -> None:
        """Fetch the key set. Caller holds ``self._lock``."""
        if not force and self._in_backoff():
            if self._keyset is None:
                raise InternalFaultError(
                    f"JWKS for {self.issuer} unavailable (backing off)", "jwks_unavailable"
                )
            return

        error: Exception | None = None
        for attempt in range(1, self.config.max_retries + 1):
            try:
                keys = await self._fetch_keys()
            except (httpx.HTTPError, ValueError) as exc:
                error = exc
                logger.warning(
                    "JWKS fetch attempt %d/%d for %s failed: %s",
                    attempt,
                    self.config.max_retries,
                    self.issuer,
                    exc,
                )
                if attempt < self.config.max_retries:
                    await asyncio.sleep(min(2 ** (attempt - 1), _MAX_RETRY_SLEEP_SECONDS))
                continue

            self._keyset = keys
            self._fetched_at = self._clock()
            self._failed_at = None
            logger.info("Loaded %d signing key(s) from %s", len(keys), self.jwks_uri)
            return

        self._failed_at = self._clock()
        if self._keyset is None:
            raise InternalFaultError(
                f"JWKS fetch failed for {self.issuer}: {error}", "jwks_unavailable"
            ) from error
        logger.warning("Keeping cached JWKS for %s after failed refresh", self.issuer)

    async def _fetch_keys(self) -> list[dict[str, Any]]:
        async with httpx.AsyncClient() as client:
            if self.jwks_uri is None:
                self.jwks_uri = await self._discover(client)
            document = await self._get_json(client, self.jwks_uri)

        keys = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(keys, list):
            raise ValueError(f"JWKS document from {self.jwks_uri} has no 'keys' list")
        return [key for key in keys if isinstance(key, dict)]

    async def _discover(self, client: httpx.AsyncClient) -> str:
        document = await self._get_json(
            client, f"{self.issuer}/.well-known/openid-configuration"
        )
        jwks_uri = document.get("jwks_uri") if isinstance(document, dict) else None
        if not jwks_uri:
            raise ValueError(f"OIDC discovery for {self.issuer} returned no jwks_uri")
        validate_oidc_url(str(jwks_uri), label="jwks_uri")
        logger.info("Discovered JWKS URI for %s: %s", self.issuer, jwks_uri)
        return str(jwks_uri)

    async def _get_json(self, client: httpx.AsyncClient, url: str) -> Any:
        response = await client.get(url, timeout=self._http_timeout)
        response.raise_for_status()
        return response.json()
