from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header, Query, Request, Response

from taskgate.logging import get_logger
from taskgate.service import policies
from taskgate.service.errors import RateLimitedError
from taskgate.service.gate import AuthContext
from taskgate.service.runtime import Runtime

logger = get_logger(__name__)


class RateLimitInfo:
    """Rate limit state for response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(self.remaining)
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_ip(request: Request, *, trust_forwarded_for: bool = False) -> str:
    """Socket peer address; the first ``X-Forwarded-For`` hop only when trusted."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        if forwarded:
            return forwarded
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def get_current_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return runtime.gate.authenticate(authorization)


async def get_optional_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Optional[AuthContext]:
    return runtime.gate.authenticate_optional(authorization)


def require_roles(*roles: str) -> Callable:
    async def _dependency(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
        return policies.require_role(principal, *roles)

    return _dependency


require_admin = require_roles(*policies.ADMIN_ONLY)
require_manager = require_roles(*policies.MANAGER_OR_ADMIN)


def require_permission(permission: str) -> Callable:
    async def _dependency(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
        return policies.require_permission(principal, permission)

    return _dependency


async def _body_two_factor_token(request: Request) -> Optional[str]:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        payload = await request.json()
    except ValueError:
        return None
    value = payload.get("twoFactorToken") if isinstance(payload, dict) else None
    return value if isinstance(value, str) else None


async def require_two_factor(
    request: Request,
    principal: AuthContext = Depends(get_current_user),
    two_factor_token: Optional[str] = Header(None, alias="X-2FA-Token"),
) -> AuthContext:
    """Second-factor gate; the token comes from ``X-2FA-Token`` or the JSON body."""
    token = two_factor_token
    if not token and principal.user.two_factor_enabled:
        token = await _body_two_factor_token(request)
    return policies.require_two_factor(principal, token)


async def require_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    api_key: Optional[str] = Query(None, alias="apiKey"),
    runtime: Runtime = Depends(get_runtime),
) -> None:
    policies.require_api_key(runtime.settings.api_key, x_api_key or api_key)


def rate_limit(scope: str, limit_attr: str, window_attr: str) -> Callable:
    """Fixed-window limit per client IP; limit and window are read from settings by name."""

    async def _dependency(
        request: Request,
        response: Response,
        runtime: Runtime = Depends(get_runtime),
    ) -> RateLimitInfo:
        limit = getattr(runtime.settings, limit_attr)
        window_seconds = getattr(runtime.settings, window_attr)
        ip = client_ip(request, trust_forwarded_for=runtime.settings.trust_forwarded_for)
        result = await runtime.rate_limiter.hit(f"{scope}:{ip}", limit, window_seconds)
        info = RateLimitInfo(limit, result.remaining, result.reset_after)
        if not result.allowed:
            logger.warning(
                "rate_limit_exceeded", scope=scope, limit=limit, retry_after=result.retry_after
            )
            raise RateLimitedError(
                "Too many requests, please try again later",
                retry_after=result.retry_after,
                detail={"scope": scope},
            )
        info.apply_headers(response)
        return info

    return _dependency
