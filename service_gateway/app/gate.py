"""
Access gate: the single decision point every protected request passes.

Order of checks, first failure wins:

1. credential present and of a known kind
2. session: access token validated; API key: key active, account exists
3. permissions (session: from the token, re-clamped for sub-accounts;
   API key: resolved from the account)
4. endpoint permission (unmapped endpoints are denied)
5. API key only: hourly rate limit, then tier endpoint allow-list
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from shared.errors import (
    AccessLayerException, AuthenticationError, AuthorizationError, TierRestrictedError,
)
from shared.logging import get_logger, set_principal_context
from shared.metrics import MetricsCollector
from shared.models import AuthMethod, PrincipalContext
from shared.repositories import Repositories

from service_auth.app.api_keys import KEY_PREFIX, ApiKeyService
from service_auth.app.tokens import TokenService
from service_entitlements.app.permissions import PermissionResolver, clamp_to_role

from .ratelimit import FixedWindowRateLimiter


class CredentialKind(str, Enum):
    SESSION = "session"
    API_KEY = "api_key"


@dataclass(frozen=True)
class RawCredential:
    kind: CredentialKind
    value: str


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    return headers.get(name) or headers.get(name.lower())


def extract_credential(cookies: Mapping[str, str], headers: Mapping[str, str],
                       cookie_name: str = "access_session") -> Optional[RawCredential]:
    """Pick the caller's credential out of a request's cookies and headers."""
    session = cookies.get(cookie_name)
    if session:
        return RawCredential(CredentialKind.SESSION, session)

    api_key = _header(headers, "X-API-Key")
    if api_key:
        return RawCredential(CredentialKind.API_KEY, api_key.strip())

    authorization = _header(headers, "Authorization") or ""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        value = value.strip()
        if value.startswith(KEY_PREFIX):
            return RawCredential(CredentialKind.API_KEY, value)
        return RawCredential(CredentialKind.SESSION, value)

    return None


class AccessGate:
    """Composes token validation, permissions, rate limiting and tier gating."""

    def __init__(self, tokens: TokenService, api_keys: ApiKeyService, resolver: PermissionResolver,
                 rate_limiter: FixedWindowRateLimiter, repos: Repositories,
                 metrics: Optional[MetricsCollector] = None):
        self.tokens = tokens
        self.api_keys = api_keys
        self.resolver = resolver
        self.rate_limiter = rate_limiter
        self.repos = repos
        self.metrics = metrics
        self.logger = get_logger("gateway.gate")

    async def authorize(self, credential: Optional[RawCredential], endpoint: str) -> PrincipalContext:
        """Decide whether the credential may call ``endpoint`` ("METHOD /route/template")."""
        start_time = time.time()
        method = credential.kind.value if credential else "none"
        try:
            principal = await self._authorize(credential, endpoint)
        except AccessLayerException as e:
            self._record(method, e.code, start_time)
            self.logger.info("Access denied", endpoint=endpoint, auth_method=method, code=e.code)
            raise

        self._record(method, "allowed", start_time)
        return principal

    async def _authorize(self, credential: Optional[RawCredential], endpoint: str) -> PrincipalContext:
        if credential is None:
            raise AuthenticationError("Authentication required")

        if credential.kind == CredentialKind.SESSION:
            principal = self.tokens.validate(credential.value)
            principal.permissions = clamp_to_role(principal.role, principal.permissions)
        else:
            principal = await self._api_key_principal(credential.value)

        set_principal_context(principal.account_id, principal.parent_account_id)

        required = self.resolver.required_permission(endpoint)
        if not self.resolver.authorize_endpoint(principal.permissions, required):
            if required is None:
                raise AuthorizationError("Endpoint is not available", {"endpoint": endpoint},
                                         code="ENDPOINT_NOT_MAPPED")
            raise AuthorizationError(
                "Missing permission for this endpoint",
                {"endpoint": endpoint, "required": required.value},
                code="PERMISSION_DENIED"
            )

        if principal.auth_method == AuthMethod.API_KEY:
            decision = await self.rate_limiter.check_and_increment(principal.account_id)
            principal.rate_limit = decision.to_dict()
            if not await self.rate_limiter.check_endpoint_allowed(principal.account_id, endpoint):
                raise TierRestrictedError(
                    "This endpoint is not available on your plan",
                    decision.tier.value,
                    code="ENDPOINT_NOT_ALLOWED_FOR_TIER",
                    details={"endpoint": endpoint}
                )

        return principal

    async def _api_key_principal(self, secret: str) -> PrincipalContext:
        api_key = await self.api_keys.lookup(secret)
        account = await self.repos.accounts.get(api_key.account_id)
        if account is None:
            raise AuthenticationError("Invalid API key", code="INVALID_API_KEY")

        permission_set = await self.resolver.resolve(account)
        return PrincipalContext(
            account_id=account.id,
            role=account.role,
            permissions=permission_set.permissions,
            auth_method=AuthMethod.API_KEY,
            parent_account_id=permission_set.parent_account_id,
            effective_tier=permission_set.effective_tier,
            api_key_id=api_key.key_id,
        )

    def _record(self, auth_method: str, outcome: str, start_time: float):
        if self.metrics:
            self.metrics.increment_counter("access_decisions_total", auth_method=auth_method, outcome=outcome)
            histogram = self.metrics.get_metric("access_decision_duration_seconds")
            if histogram is not None:
                histogram.observe(time.time() - start_time)
