"""
API Gateway service for the Access Engine.
"""

from typing import Any, Dict, Optional

from fastapi import Depends, Request, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.models import CamelModel, PrincipalContext

from access_engine.container import Engine, build_engine
from access_engine.dependencies import request_credential, require_access


class AuthorizeRequest(CamelModel):
    endpoint: str


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(self, engine: Optional[Engine] = None, config: Optional[ServiceConfig] = None):
        super().__init__("gateway", 8000, config, description="Access Engine - API Gateway")
        self.engine = engine or build_engine(self.config)
        self.app.state.engine = self.engine
        self._setup_gateway_routes()

    def _set_rate_limit_headers(self, response: Response, rate_result: Optional[Dict[str, Any]]) -> None:
        """Propagate rate limiting metadata via standard headers."""
        if not rate_result:
            return
        limit = rate_result.get("limit")
        remaining = rate_result.get("remaining")
        reset = rate_result.get("resetAt")

        if limit is not None:
            response.headers["X-RateLimit-Limit"] = str(limit)
        if remaining is not None:
            response.headers["X-RateLimit-Remaining"] = str(remaining)
        if reset is not None:
            response.headers["X-RateLimit-Reset"] = reset

    def _setup_gateway_routes(self):
        """Set up gateway routes."""
        engine = self.engine

        @self.app.post("/access/authorize")
        async def authorize(body: AuthorizeRequest, request: Request, response: Response):
            """Decide whether the caller's credential may reach ``endpoint``.

            Used by content services that sit behind the gateway: they forward
            the caller's cookie or key along with the endpoint key they serve.
            """
            principal = await engine.gate.authorize(request_credential(request, engine), body.endpoint)
            self._set_rate_limit_headers(response, principal.rate_limit)
            return {"allowed": True, "endpoint": body.endpoint, "principal": principal.to_dict()}

        @self.app.get("/api/v1/whoami")
        async def whoami(response: Response, principal: PrincipalContext = Depends(require_access())):
            self._set_rate_limit_headers(response, principal.rate_limit)
            return principal.to_dict()

        @self.app.get("/api/v1/rate-limit")
        async def rate_limit_status(response: Response,
                                    principal: PrincipalContext = Depends(require_access())):
            """Current hourly budget of the caller's account."""
            status = await engine.rate_limiter.get_status(principal.account_id)
            result = status.to_dict()
            self._set_rate_limit_headers(response, result)
            return result

    async def _check_dependencies(self):
        """Check gateway dependencies."""
        await self.engine.store.get("health:probe")
        return {"store": "ok"}

    async def _shutdown(self):
        await self.engine.close()


def create_app(engine: Optional[Engine] = None):
    """Create FastAPI application."""
    service = GatewayService(engine)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
