"""
Auth service for the Access Engine.
"""

from typing import Optional

from fastapi import Depends, Response
from pydantic import Field

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.models import CamelModel, PrincipalContext

from access_engine.container import Engine, build_engine
from access_engine.dependencies import require_access, require_internal

from .tokens import ACCESS_TOKEN_TTL, TokenPair


class SignupRequest(CamelModel):
    email: str
    password: str


class LoginRequest(CamelModel):
    email: str
    password: str


class RefreshRequest(CamelModel):
    refresh_token: str


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = None


class ApiKeyCreateRequest(CamelModel):
    name: str = Field(default="default", max_length=64)


class AuthService(BaseService):
    """Auth service implementation."""

    def __init__(self, engine: Optional[Engine] = None, config: Optional[ServiceConfig] = None):
        super().__init__("auth", 8010, config)
        self.engine = engine or build_engine(self.config)
        self.app.state.engine = self.engine
        self._setup_auth_routes()

    def _set_session_cookie(self, response: Response, pair: TokenPair):
        response.set_cookie(
            key=self.engine.config.session_cookie_name,
            value=pair.access_token,
            max_age=int(ACCESS_TOKEN_TTL.total_seconds()),
            httponly=True,
            secure=self.config.env != "local",
            samesite="lax",
        )

    def _setup_auth_routes(self):
        """Set up auth-specific routes."""
        engine = self.engine

        @self.app.post("/auth/signup", status_code=201)
        async def signup(request: SignupRequest):
            """Create a standard account on the free tier."""
            account = await engine.accounts.signup(request.email, request.password)
            return {
                "accountId": account.id,
                "email": account.email,
                "role": account.role.value,
                "tier": account.tier.value,
            }

        @self.app.post("/auth/login")
        async def login(request: LoginRequest, response: Response):
            """Password login; starts a refresh chain and sets the session cookie."""
            account = await engine.accounts.authenticate(request.email, request.password)
            pair = await engine.tokens.issue_initial_pair(account.id)
            self._set_session_cookie(response, pair)

            principal = engine.tokens.validate(pair.access_token)
            self.logger.info("Login succeeded", account_id=account.id)
            return {**pair.to_dict(), "principal": principal.to_dict()}

        @self.app.post("/auth/refresh")
        async def refresh(request: RefreshRequest, response: Response):
            """Rotate a refresh token. The presented token cannot be used again."""
            pair = await engine.tokens.rotate(request.refresh_token)
            self._set_session_cookie(response, pair)
            return pair.to_dict()

        @self.app.post("/auth/logout")
        async def logout(request: LogoutRequest, response: Response):
            """Revoke the refresh token and clear the session cookie. Idempotent."""
            if request.refresh_token:
                await engine.tokens.revoke(request.refresh_token)
            response.delete_cookie(engine.config.session_cookie_name)
            return {}

        @self.app.get("/auth/api-keys")
        async def list_api_keys(principal: PrincipalContext = Depends(require_access())):
            keys = await engine.api_keys.list_keys(principal.account_id)
            return {
                "apiKeys": [
                    {
                        "keyId": k.key_id,
                        "name": k.name,
                        "keyPrefix": k.key_prefix,
                        "status": k.status.value,
                        "statusReason": k.status_reason,
                        "createdAt": k.created_at.isoformat(),
                    }
                    for k in keys
                ]
            }

        @self.app.post("/auth/api-keys", status_code=201)
        async def create_api_key(request: ApiKeyCreateRequest,
                                 principal: PrincipalContext = Depends(require_access())):
            """Issue an API key. The secret is only ever returned here."""
            api_key, secret = await engine.api_keys.create_key(principal.account_id, request.name)
            return {
                "keyId": api_key.key_id,
                "name": api_key.name,
                "key": secret,
                "keyPrefix": api_key.key_prefix,
                "createdAt": api_key.created_at.isoformat(),
            }

        @self.app.delete("/auth/api-keys/{key_id}")
        async def revoke_api_key(key_id: str, principal: PrincipalContext = Depends(require_access())):
            api_key = await engine.api_keys.revoke_key(principal.account_id, key_id)
            return {"keyId": api_key.key_id, "status": api_key.status.value}

        @self.app.post("/internal/jobs/token-sweep", dependencies=[Depends(require_internal)])
        async def token_sweep():
            """Mark expired refresh tokens invalid."""
            return {"expiredCount": await engine.tokens.sweep_expired()}

    async def _check_dependencies(self):
        """Check auth dependencies."""
        await self.engine.store.get("health:probe")
        return {"store": "ok"}

    async def _shutdown(self):
        await self.engine.close()


def create_app(engine: Optional[Engine] = None):
    """Create FastAPI application."""
    service = AuthService(engine)
    return service.app


if __name__ == "__main__":
    service = AuthService()
    service.run()
