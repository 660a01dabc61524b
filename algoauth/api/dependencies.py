"""FastAPI dependencies composing the request-side auth chain.

``authenticate`` -> optional privilege checks -> ``rate_limit_authenticated``.
Each dependency unwraps a :class:`Result` so failures reach the exception
handlers as typed service errors.
"""

from __future__ import annotations

import asyncio
import json
from typing import Awaitable, Callable, Optional, TypeVar

from fastapi import Depends, Header, Request, Response

from algoauth.logging import get_logger
from algoauth.service import authorization
from algoauth.service.auth import AuthContext
from algoauth.service.errors import RateLimitError
from algoauth.service.rate_limit import RateLimitResult
from algoauth.service.runtime import Runtime, get_runtime
from algoauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

RATE_LIMIT_MESSAGE = "Too many requests, please try again later"


def runtime_dependency() -> Runtime:
    return get_runtime()


async def _bounded(runtime: Runtime, awaitable: Awaitable[T]) -> T:
    try:
        return await asyncio.wait_for(
            awaitable, timeout=runtime.settings.store_timeout_seconds
        )
    except asyncio.TimeoutError as exc:
        raise StoreUnavailable("rate limiter timed out", backend="cache") from exc


async def authenticate(
    request: Request,
    authorization_header: Optional[str] = Header(None, alias="Authorization"),
    runtime: Runtime = Depends(runtime_dependency),
) -> AuthContext:
    token = runtime.auth.extract_bearer(authorization_header)
    ctx = (await runtime.auth.authenticate(token)).unwrap()
    request.state.auth = ctx
    return ctx


async def optional_authenticate(
    request: Request,
    authorization_header: Optional[str] = Header(None, alias="Authorization"),
    runtime: Runtime = Depends(runtime_dependency),
) -> Optional[AuthContext]:
    token = runtime.auth.extract_bearer(authorization_header)
    ctx = await runtime.auth.optional_authenticate(token)
    request.state.auth = ctx
    return ctx


def require_verified(ctx: AuthContext = Depends(authenticate)) -> AuthContext:
    return authorization.require_verified(ctx).unwrap()


def require_premium(ctx: AuthContext = Depends(authenticate)) -> AuthContext:
    return authorization.require_premium(ctx).unwrap()


def require_level(min_level: int) -> Callable[..., AuthContext]:
    def dependency(ctx: AuthContext = Depends(authenticate)) -> AuthContext:
        return authorization.require_level(ctx, min_level).unwrap()

    return dependency


async def _owner_from_request(request: Request, field: str) -> Optional[str]:
    if field in request.path_params:
        return request.path_params[field]
    if field in request.query_params:
        return request.query_params[field]
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        raw = await request.body()
        if raw:
            try:
                body = json.loads(raw)
            except ValueError:
                return None
            if isinstance(body, dict) and body.get(field) is not None:
                return str(body[field])
    return None


def require_ownership(field: str = "userId") -> Callable[..., Awaitable[AuthContext]]:
    """Only the owner named by ``field`` (path, query or JSON body) may proceed."""

    async def dependency(
        request: Request, ctx: AuthContext = Depends(authenticate)
    ) -> AuthContext:
        owner_id = await _owner_from_request(request, field)
        return authorization.require_ownership(ctx, owner_id).unwrap()

    return dependency


def _enforce(result: RateLimitResult, response: Response) -> None:
    if not result.allowed:
        headers = result.headers()
        headers["Retry-After"] = str(max(1, result.reset_seconds))
        raise RateLimitError(RATE_LIMIT_MESSAGE, headers=headers)
    result.apply_headers(response)


def rate_limit_authenticated(
    limit: Optional[int] = None, window_seconds: Optional[int] = None
) -> Callable[..., Awaitable[AuthContext]]:
    """Per-user fixed-window limit; runs after ``authenticate``.

    ``None`` means the configured default. X-RateLimit-* headers are set on
    both allowed and rejected responses.
    """

    async def dependency(
        response: Response,
        ctx: AuthContext = Depends(authenticate),
        runtime: Runtime = Depends(runtime_dependency),
    ) -> AuthContext:
        settings = runtime.settings
        result = await _bounded(
            runtime,
            runtime.rate_limiter.hit(
                f"user:{ctx.user_id}",
                settings.rate_limit_default_limit if limit is None else limit,
                settings.rate_limit_default_window_seconds
                if window_seconds is None
                else window_seconds,
            ),
        )
        _enforce(result, response)
        return ctx

    return dependency


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit_by_ip(
    scope: str, limit_setting: str, window_seconds: int = 60
) -> Callable[..., Awaitable[None]]:
    """Per-IP limit for anonymous endpoints; the limit is read from settings per request."""

    async def dependency(
        request: Request,
        response: Response,
        runtime: Runtime = Depends(runtime_dependency),
    ) -> None:
        limit = getattr(runtime.settings, limit_setting)
        result = await _bounded(
            runtime,
            runtime.rate_limiter.hit(
                f"ip:{scope}:{client_ip(request)}", limit, window_seconds
            ),
        )
        _enforce(result, response)

    return dependency
