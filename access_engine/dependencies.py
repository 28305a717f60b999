"""
FastAPI dependencies that put a route behind the access gate.

Usage::

    @app.get("/api/v1/whoami")
    async def whoami(principal: PrincipalContext = Depends(require_access())):
        ...

The endpoint key defaults to ``"<METHOD> <route template>"`` of the matched
route, the same form the policy's endpoint map uses.
"""

import secrets
from typing import Optional

from fastapi import Request

from shared.errors import AuthenticationError, AuthorizationError
from shared.models import PrincipalContext

from service_gateway.app.gate import RawCredential, extract_credential

from .container import Engine


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def endpoint_key(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    return f"{request.method} {path}"


def request_credential(request: Request, engine: Engine) -> Optional[RawCredential]:
    return extract_credential(request.cookies, request.headers, engine.config.session_cookie_name)


def require_access(endpoint: Optional[str] = None):
    """Dependency factory: authorize the caller for ``endpoint`` or the matched route."""

    async def dependency(request: Request) -> PrincipalContext:
        engine = get_engine(request)
        principal = await engine.gate.authorize(
            request_credential(request, engine),
            endpoint or endpoint_key(request)
        )
        request.state.principal = principal
        return principal

    return dependency


async def require_internal(request: Request) -> None:
    """Guard for service-to-service routes (billing webhooks, scheduled jobs)."""
    config = get_engine(request).config
    expected = config.internal_token
    if not expected:
        # Without a configured token only a local environment is left open.
        if config.env == "local":
            return
        raise AuthorizationError(
            "Internal routes are disabled until ACCESS_INTERNAL_TOKEN is set",
            {"env": config.env},
            code="INTERNAL_ROUTES_DISABLED"
        )
    if not secrets.compare_digest(request.headers.get("X-Internal-Token", ""), expected):
        raise AuthenticationError("Internal token required", code="INTERNAL_TOKEN_REQUIRED")
