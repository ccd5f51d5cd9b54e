"""API key authentication and its composition with the admission gate.

Keys travel as ``Authorization: Bearer <key>`` or ``X-API-Key``. A key's
scopes grant permissions; ``*`` grants all of them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, Response, status

from app.core.config import Settings, get_settings
from app.core.errors import StorageUnavailableError
from app.deps import get_admission_gate, get_api_key_store
from app.services.api_keys import ApiKeyRecord, SQLApiKeyStore
from app.services.rate_limit import (
    AdmissionGate,
    Decision,
    DecisionReason,
    RateLimitPolicy,
    RequestContext,
    create_headers,
    named_policies,
)

logger = logging.getLogger(__name__)

API_PERMISSIONS = {
    "PRODUCTS_READ": "products:read",
    "PRODUCTS_WRITE": "products:write",
    "ORDERS_READ": "orders:read",
    "ORDERS_WRITE": "orders:write",
    "INVENTORY_READ": "inventory:read",
    "INVENTORY_WRITE": "inventory:write",
    "CATEGORIES_READ": "categories:read",
    "CATEGORIES_WRITE": "categories:write",
    "WEBHOOKS_MANAGE": "webhooks:manage",
    "FEEDS_READ": "feeds:read",
    "ALL": "*",
}


@dataclass(slots=True)
class AuthResult:
    success: bool
    api_key: ApiKeyRecord | None = None
    error: str | None = None
    status_code: int = status.HTTP_200_OK
    decision: Decision | None = None

    @property
    def seller_id(self) -> int | None:
        return self.api_key.seller_id if self.api_key else None

    @property
    def user_id(self) -> int | None:
        return self.api_key.user_id if self.api_key else None


@dataclass(slots=True)
class RateLimitError:
    """Returned instead of an AuthResult when the gate denies the request."""

    error: str
    decision: Decision

    @property
    def status_code(self) -> int:
        if self.decision.reason is DecisionReason.KEY_INACTIVE:
            return status.HTTP_403_FORBIDDEN
        return status.HTTP_429_TOO_MANY_REQUESTS


def get_api_key_from_request(request: RequestContext) -> str | None:
    auth_header = request.header("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip() or None
    return request.header("x-api-key")


def has_permission(rec: ApiKeyRecord, permission: str | None) -> bool:
    if not permission:
        return True
    return "*" in rec.scopes or permission in rec.scopes


async def authenticate_api_request(
    request: RequestContext,
    required_permission: str | None,
    store: SQLApiKeyStore,
) -> AuthResult:
    plaintext = get_api_key_from_request(request)
    if not plaintext:
        return AuthResult(success=False, error="API key required", status_code=status.HTTP_401_UNAUTHORIZED)
    try:
        rec = await store.verify_key(plaintext)
    except StorageUnavailableError as exc:
        logger.error("API key lookup failed", extra={"details": exc.details})
        return AuthResult(
            success=False,
            error="Authentication temporarily unavailable",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    if not rec:
        return AuthResult(success=False, error="Invalid or expired API key", status_code=status.HTTP_401_UNAUTHORIZED)
    if not has_permission(rec, required_permission):
        return AuthResult(success=False, error="Insufficient permissions", status_code=status.HTTP_403_FORBIDDEN)
    try:
        await store.touch_last_used(rec)
    except StorageUnavailableError as exc:
        logger.warning("Could not update API key last use", extra={"api_key_id": rec.id, "details": exc.details})
    return AuthResult(success=True, api_key=rec)


async def authenticate_and_rate_limit(
    request: RequestContext,
    required_permission: str | None,
    policy: RateLimitPolicy | None = None,
    *,
    gate: AdmissionGate,
    store: SQLApiKeyStore,
) -> AuthResult | RateLimitError:
    """IP tier first, then authentication, then the keyed tiers.

    Over-limit callers are refused before authentication touches the key
    registry. Failed authentication attempts still count against the IP.
    """

    ip_decision = await gate.peek(request, policy)
    if not ip_decision.allowed:
        return RateLimitError(error=ip_decision.message, decision=ip_decision)

    auth = await authenticate_api_request(request, required_permission, store)
    if not auth.success or auth.api_key is None:
        decision = await gate.check_rate_limit(request, None, policy)
        if not decision.allowed:
            return RateLimitError(error=decision.message, decision=decision)
        auth.decision = decision
        return auth

    decision = await gate.check_rate_limit(request, auth.api_key.id, policy)
    if not decision.allowed:
        return RateLimitError(error=decision.message, decision=decision)
    auth.decision = decision
    return auth


def _policy(settings: Settings, policy_name: str) -> RateLimitPolicy:
    try:
        return named_policies(settings)[policy_name]
    except KeyError as exc:
        raise ValueError(f"unknown rate limit policy: {policy_name}") from exc


def require_api_key(permission: Optional[str] = None, policy_name: str = "api") -> Callable:
    """Dependency: authenticated, rate-limited access for ``/api/v1`` routes."""

    async def _dep(
        request: Request,
        response: Response,
        settings: Settings = Depends(get_settings),
        gate: AdmissionGate = Depends(get_admission_gate),
        store: SQLApiKeyStore = Depends(get_api_key_store),
    ) -> ApiKeyRecord:
        ctx = RequestContext.from_request(request)
        if settings.rate_limit_enabled:
            result = await authenticate_and_rate_limit(
                ctx, permission, _policy(settings, policy_name), gate=gate, store=store
            )
        else:
            result = await authenticate_api_request(ctx, permission, store)

        if isinstance(result, RateLimitError):
            raise HTTPException(
                status_code=result.status_code,
                detail=result.error,
                headers=create_headers(result.decision),
            )
        headers = create_headers(result.decision) if result.decision else {}
        if not result.success or result.api_key is None:
            raise HTTPException(status_code=result.status_code, detail=result.error, headers=headers or None)
        response.headers.update(headers)
        request.state.actor = {"type": "api_key", "id": result.api_key.id}
        request.state.rate_limit_decision = result.decision
        return result.api_key

    return _dep


def rate_limit(policy_name: str = "api") -> Callable:
    """Dependency: IP-only limiting for public routes such as feed exports."""

    async def _dep(
        request: Request,
        response: Response,
        settings: Settings = Depends(get_settings),
        gate: AdmissionGate = Depends(get_admission_gate),
    ) -> Decision | None:
        if not settings.rate_limit_enabled:
            return None
        decision = await gate.check_rate_limit(
            RequestContext.from_request(request), None, _policy(settings, policy_name)
        )
        headers = create_headers(decision)
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=decision.message,
                headers=headers,
            )
        response.headers.update(headers)
        return decision

    return _dep
