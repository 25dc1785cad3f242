"""Starlette HTTP surface for checkout and check-in."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager

from pydantic import BaseModel, Field, ValidationError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from nhi_broker.app import BrokerContext, get_broker_context
from nhi_broker.credentials.provider import EphemeralCredential
from nhi_broker.credentials.sts_provider import STSCredentialProvider
from nhi_broker.errors import (
    CONFLICT,
    DENIED,
    INTERNAL,
    NOT_FOUND,
    UNAVAILABLE,
    AssertionRejectedError,
    BrokerError,
)
from nhi_broker.policy.models import ScopeRequest
from nhi_broker.transport.middleware import PreAuthSecurityMiddleware

logger = logging.getLogger(__name__)

_STATUS_BY_CATEGORY = {
    DENIED: 403,
    CONFLICT: 409,
    UNAVAILABLE: 503,
    NOT_FOUND: 404,
    INTERNAL: 500,
}
_LEASE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class ScopeBody(BaseModel):
    actions: list[str] = Field(default_factory=list, max_length=100)
    resources: list[str] = Field(default_factory=list, max_length=100)


class CheckoutBody(BaseModel):
    profile: str = Field(min_length=1, max_length=128)
    ttl_seconds: int | None = Field(default=None, ge=1)
    scope: ScopeBody | None = None


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def error_response(exc: BrokerError) -> JSONResponse:
    status = _STATUS_BY_CATEGORY.get(exc.category, 500)
    headers = dict(_NO_STORE)
    if isinstance(exc, AssertionRejectedError):
        status = 401
        headers["WWW-Authenticate"] = 'Bearer error="invalid_token"'
    elif exc.retryable:
        headers["Retry-After"] = "1"
    return JSONResponse(exc.to_public(), status_code=status, headers=headers)


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(
        {"error": "invalid_request", "message": message, "retryable": False},
        status_code=400,
        headers=_NO_STORE,
    )


def _credential_payload(credential: EphemeralCredential) -> dict[str, object]:
    return {
        "lease_id": credential.lease_id,
        "resource": credential.resource,
        "expires_at": credential.expires_at.isoformat(),
        "scope": {
            "actions": list(credential.scope.actions),
            "resources": list(credential.scope.resources),
        },
        "credentials": dict(credential.material),
    }


def create_http_app(context: BrokerContext | None = None) -> Starlette:
    """Create the broker HTTP application."""
    ctx = context or get_broker_context()
    settings = ctx.settings
    broker = ctx.broker
    max_body_size = settings.server.max_body_size_kb * 1024

    async def checkout_handler(request: Request) -> Response:
        assertion = _bearer_token(request)
        if assertion is None:
            try:
                return error_response(await broker.reject_missing_assertion())
            except BrokerError as exc:
                return error_response(exc)

        raw = await request.body()
        if len(raw) > max_body_size:
            return JSONResponse(
                {
                    "error": "request_too_large",
                    "message": "Request body too large",
                    "retryable": False,
                },
                status_code=413,
            )
        try:
            body = CheckoutBody.model_validate(json.loads(raw or b"{}"))
        except (ValueError, ValidationError):
            return _bad_request("Body must be JSON with a 'profile' field")

        scope = None
        if body.scope is not None:
            scope = ScopeRequest.of(body.scope.actions, body.scope.resources)

        try:
            credential = await broker.checkout(
                assertion,
                body.profile,
                ttl_seconds=body.ttl_seconds,
                requested_scope=scope,
            )
        except BrokerError as exc:
            logger.info("Checkout failed: %s (%s)", exc.code, exc.category)
            return error_response(exc)

        return JSONResponse(_credential_payload(credential), headers=_NO_STORE)

    async def checkin_handler(request: Request) -> Response:
        lease_id = request.path_params["lease_id"]
        if not _LEASE_ID_RE.match(lease_id):
            return _bad_request("Malformed lease id")
        try:
            lease = await broker.check_in(lease_id)
        except BrokerError as exc:
            return error_response(exc)
        return JSONResponse({"lease_id": lease.lease_id, "state": lease.state.value})

    async def health_handler(request: Request) -> Response:
        return JSONResponse({"status": "healthy"})

    async def ready_handler(request: Request) -> Response:
        if not ctx.sweeper.running:
            return JSONResponse({"status": "starting"}, status_code=503)
        return JSONResponse(
            {
                "status": "ready",
                "registry_version": broker.registry.version,
                "trust_version": broker.trust.version,
            }
        )

    routes = [
        Route("/v1/checkout", endpoint=checkout_handler, methods=["POST"]),
        Route("/v1/leases/{lease_id}/checkin", endpoint=checkin_handler, methods=["POST"]),
        Route("/health", endpoint=health_handler, methods=["GET"]),
        Route("/ready", endpoint=ready_handler, methods=["GET"]),
    ]

    middleware = [
        Middleware(
            PreAuthSecurityMiddleware,
            max_body_size_bytes=max_body_size,
            rate_limit_per_ip=settings.server.rate_limit_per_ip,
            trust_forwarded_headers=settings.server.trust_forwarded_headers,
        ),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting credential broker HTTP server...")
        if isinstance(ctx.provider, STSCredentialProvider):
            await asyncio.to_thread(ctx.provider._get_client, "sts")
        ctx.sweeper.start()
        try:
            yield
        finally:
            await ctx.sweeper.stop()
            await ctx.issuer.drain()
            logger.info("Credential broker HTTP server stopped")

    return Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
