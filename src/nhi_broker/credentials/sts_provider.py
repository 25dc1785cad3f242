"""AWS STS credential provider.

Mints with ``sts:AssumeRole`` using the broker's own AWS identity, narrowed by
an inline session policy built from the lease constraints. STS sessions
cannot be ended early, so revocation attaches a deny-all inline policy to the
role conditioned on the session's ``aws:userid``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import threading
from typing import Any

import botocore.session
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..utils.time import ensure_utc
from .provider import CredentialProvider, CredentialScope, MintedCredential, ProviderError

logger = logging.getLogger(__name__)

STS_MIN_DURATION_SECONDS = 900
STS_MAX_DURATION_SECONDS = 43200

_TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "IDPCommunicationError",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalFailure",
        "InternalError",
    }
)

_CODE_MAP = {
    "MalformedPolicyDocument": "policy_error",
    "PackedPolicyTooLarge": "policy_too_large",
    "RegionDisabledException": "region_disabled",
    "AccessDenied": "access_denied",
    "NoSuchEntity": "role_not_found",
    "LimitExceeded": "limit_exceeded",
    "IDPCommunicationError": "idp_error",
}

_NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def build_session_policy(scope: CredentialScope) -> dict[str, Any] | None:
    """Inline session policy restricting the role to ``scope``.

    Returns None when the scope adds no restriction beyond the role itself.
    """
    if not scope.actions and not scope.resources:
        return None
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": list(scope.actions) or ["*"],
                "Resource": list(scope.resources) or ["*"],
            }
        ],
    }


def build_revoke_policy(assumed_role_id: str) -> dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Deny",
                "Action": "*",
                "Resource": "*",
                "Condition": {"StringEquals": {"aws:userid": assumed_role_id}},
            }
        ],
    }


def _role_name(role_arn: str) -> str:
    return role_arn.split(":role/", 1)[1].rsplit("/", 1)[-1]


class STSCredentialProvider(CredentialProvider):
    """Thread-safe STS/IAM provider."""

    name = "aws-sts"

    def __init__(self, region: str = "us-east-1", iam_enabled: bool = True) -> None:
        self._region = region
        self._iam_enabled = iam_enabled
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()

    def _get_client(self, service: str) -> Any:
        client = self._clients.get(service)
        if client is not None:
            return client

        with self._lock:
            client = self._clients.get(service)
            if client is not None:
                return client

            session = botocore.session.get_session()
            client = session.create_client(
                service,
                region_name=self._region,
                config=Config(
                    connect_timeout=5,
                    read_timeout=15,
                    retries={"max_attempts": 2},
                ),
            )
            self._clients[service] = client
            logger.info("%s client initialized (region=%s)", service.upper(), self._region)
            return client

    async def mint_credential(
        self,
        scope: CredentialScope,
        ttl_seconds: int,
        session_name: str,
    ) -> MintedCredential:
        if ttl_seconds < STS_MIN_DURATION_SECONDS:
            raise ProviderError(
                f"TTL {ttl_seconds}s is below the STS minimum of {STS_MIN_DURATION_SECONDS}s",
                "ttl_below_minimum",
            )
        return await asyncio.to_thread(
            self._assume_role_sync,
            scope,
            min(ttl_seconds, STS_MAX_DURATION_SECONDS),
            session_name,
        )

    async def revoke_credential(self, credential_ref: str) -> None:
        await asyncio.to_thread(self._revoke_sync, credential_ref)

    def _assume_role_sync(
        self,
        scope: CredentialScope,
        duration_seconds: int,
        session_name: str,
    ) -> MintedCredential:
        client = self._get_client("sts")
        safe_session_name = self._sanitize_session_name(session_name)
        role_arn = scope.target.role_arn

        params: dict[str, Any] = {
            "RoleArn": role_arn,
            "RoleSessionName": safe_session_name,
            "DurationSeconds": duration_seconds,
        }
        session_policy = build_session_policy(scope)
        if session_policy is not None:
            params["Policy"] = json.dumps(session_policy, separators=(",", ":"))

        try:
            response = client.assume_role(**params)
        except ClientError as exc:
            raise self._client_error("AssumeRole", role_arn, exc) from exc
        except _NETWORK_ERRORS as exc:
            logger.warning("STS AssumeRole network failure: role=%s: %s", role_arn, exc)
            raise ProviderError(str(exc), "network_error", transient=True) from exc

        creds = response["Credentials"]
        assumed = response["AssumedRoleUser"]
        logger.info("Assumed role: %s, session=%s", role_arn, safe_session_name)

        return MintedCredential(
            credential_ref=f"{role_arn}#{assumed['AssumedRoleId']}",
            expires_at=ensure_utc(creds["Expiration"]),
            material={
                "access_key_id": creds["AccessKeyId"],
                "secret_access_key": creds["SecretAccessKey"],
                "session_token": creds["SessionToken"],
            },
        )

    def _revoke_sync(self, credential_ref: str) -> None:
        role_arn, _, assumed_role_id = credential_ref.partition("#")
        if not assumed_role_id or ":role/" not in role_arn:
            raise ProviderError("Malformed credential reference", "invalid_reference")

        if not self._iam_enabled:
            logger.info(
                "IAM revocation disabled; session %s ends at its own expiry", assumed_role_id
            )
            return

        # TODO: delete revoke policies once STS_MAX_DURATION_SECONDS has passed;
        # until then they accumulate on the role (IAM allows ~10KB of inline policy).
        policy_name = "nhi-broker-revoke-" + hashlib.sha256(
            assumed_role_id.encode("utf-8")
        ).hexdigest()[:16]
        client = self._get_client("iam")
        try:
            client.put_role_policy(
                RoleName=_role_name(role_arn),
                PolicyName=policy_name,
                PolicyDocument=json.dumps(build_revoke_policy(assumed_role_id)),
            )
        except ClientError as exc:
            raise self._client_error("PutRolePolicy", role_arn, exc) from exc
        except _NETWORK_ERRORS as exc:
            logger.warning("IAM PutRolePolicy network failure: role=%s: %s", role_arn, exc)
            raise ProviderError(str(exc), "network_error", transient=True) from exc

        logger.info("Revoked session %s on %s", assumed_role_id, role_arn)

    @staticmethod
    def _client_error(action: str, role_arn: str, exc: ClientError) -> ProviderError:
        error_code = exc.response.get("Error", {}).get("Code", "Unknown")
        error_message = exc.response.get("Error", {}).get("Message", str(exc))
        transient = error_code in _TRANSIENT_ERROR_CODES
        logger.warning(
            "%s failed: role=%s, error=%s (transient=%s): %s",
            action,
            role_arn,
            error_code,
            transient,
            error_message,
        )
        return ProviderError(
            error_message,
            code=_CODE_MAP.get(error_code, "throttled" if transient else "sts_error"),
            transient=transient,
        )

    def _sanitize_session_name(self, name: str) -> str:
        """Sanitize for STS (2-64 chars, alphanumeric/=,.@-)."""
        safe = re.sub(r"[^a-zA-Z0-9=,.@-]", "-", name)
        safe = re.sub(r"-+", "-", safe).strip("-")
        if len(safe) > 64:
            suffix = hashlib.sha256(name.encode()).hexdigest()[:8]
            safe = safe[:55] + "-" + suffix
        return safe if len(safe) >= 2 else "nhi-" + safe
