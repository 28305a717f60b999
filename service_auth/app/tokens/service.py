"""
Token service.

Access tokens are HS256 JWTs that live exactly 15 minutes and are validated
without touching the store. Refresh tokens are opaque random values whose
state lives in the store; rotating one invalidates it and creates its
successor in a single conditional commit, so of two concurrent rotations of
the same token exactly one wins.
"""

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import jwt

from shared.errors import (
    InvalidTokenError, MalformedTokenError, NotFoundError, SignatureInvalidError,
    TokenExpiredError, TokenRevokedError, ValidationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.models import (
    Account, AuthMethod, PrincipalContext, RefreshToken, Role, parse_permissions, utcnow,
)
from shared.repositories import Repositories, dump

ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class TokenPair:
    """Access token plus the refresh token that can replace it."""
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": "Bearer",
            "expiresIn": int(ACCESS_TOKEN_TTL.total_seconds()),
        }


class TokenService:
    """Issues, rotates, validates and revokes session credentials."""

    def __init__(self, repos: Repositories, resolver, secret: str, algorithm: str = "HS256",
                 clock: Callable[[], datetime] = utcnow, metrics: Optional[MetricsCollector] = None):
        self.repos = repos
        self.resolver = resolver
        self.secret = secret
        self.algorithm = algorithm
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("auth.tokens")

    def _record(self, operation: str, status: str):
        if self.metrics:
            self.metrics.increment_counter("token_operations_total", operation=operation, status=status)

    async def _mint_access_token(self, account: Account, now: datetime) -> Tuple[str, datetime]:
        """Returns the token and its expiry, both from the same whole-second ``iat``."""
        permission_set = await self.resolver.resolve(account)
        issued_at = int(now.timestamp())
        expires_at = issued_at + int(ACCESS_TOKEN_TTL.total_seconds())
        claims = {
            "sub": account.id,
            "role": account.role.value,
            "perms": sorted(p.value for p in permission_set.permissions),
            "typ": ACCESS_TOKEN_TYPE,
            "iat": issued_at,
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        if permission_set.parent_account_id:
            claims["parent"] = permission_set.parent_account_id
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)
        return token, datetime.fromtimestamp(expires_at, tz=timezone.utc)

    def _new_refresh_record(self, account_id: str, chain_id: str, now: datetime) -> RefreshToken:
        return RefreshToken(
            token_value=secrets.token_urlsafe(32),
            account_id=account_id,
            chain_id=chain_id,
            issued_at=now,
            expires_at=now + REFRESH_TOKEN_TTL,
        )

    async def issue_initial_pair(self, account_id: str) -> TokenPair:
        """Start a new refresh chain for an account that just authenticated."""
        account = await self.repos.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})

        now = self.clock()
        access_token, access_expires_at = await self._mint_access_token(account, now)
        record = self._new_refresh_record(account.id, uuid.uuid4().hex, now)

        tokens = self.repos.refresh_tokens
        key = tokens.key(record.token_value)
        if not await self.repos.store.commit({key: None}, {key: dump(record)}):
            raise InvalidTokenError("Refresh token collision")

        self._record("issue", "success")
        self.logger.info("Token pair issued", account_id=account.id, chain_id=record.chain_id)
        return TokenPair(access_token, record.token_value, access_expires_at, record.expires_at)

    async def rotate(self, presented: str) -> TokenPair:
        """Exchange a refresh token for a new pair. The presented token is spent."""
        tokens = self.repos.refresh_tokens
        loaded = await tokens.load(presented) if presented else None
        if loaded is None:
            self._record("rotate", "invalid")
            raise InvalidTokenError()
        record, raw = loaded
        now = self.clock()

        if not record.is_valid:
            self._record("rotate", record.invalidated_reason or "invalid")
            if record.invalidated_reason == "logout":
                raise TokenRevokedError()
            if record.invalidated_reason == "expired":
                raise TokenExpiredError("Refresh token expired")
            self.logger.warning(
                "Spent refresh token presented",
                account_id=record.account_id,
                chain_id=record.chain_id
            )
            raise InvalidTokenError()

        if record.is_expired(now):
            await tokens.replace(raw, self._invalidated(record, "expired", now), presented)
            self._record("rotate", "expired")
            raise TokenExpiredError("Refresh token expired")

        account = await self.repos.accounts.get(record.account_id)
        if account is None:
            self._record("rotate", "invalid")
            raise InvalidTokenError()

        access_token, access_expires_at = await self._mint_access_token(account, now)
        successor = self._new_refresh_record(account.id, record.chain_id, now)
        committed = await self.repos.store.commit(
            {
                tokens.key(presented): raw,
                tokens.key(successor.token_value): None,
            },
            {
                tokens.key(presented): dump(self._invalidated(record, "rotated", now)),
                tokens.key(successor.token_value): dump(successor),
            }
        )
        if not committed:
            self._record("rotate", "conflict")
            self.logger.info("Concurrent rotation lost", account_id=account.id, chain_id=record.chain_id)
            raise InvalidTokenError()

        self._record("rotate", "success")
        self.logger.info("Refresh token rotated", account_id=account.id, chain_id=record.chain_id)
        return TokenPair(access_token, successor.token_value, access_expires_at, successor.expires_at)

    def validate(self, access_token: str) -> PrincipalContext:
        """Check signature, type and expiry of an access token. Never reads the store."""
        try:
            claims = jwt.decode(
                access_token,
                self.secret,
                algorithms=[self.algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["sub", "role", "perms", "typ", "iat", "exp"],
                }
            )
        except jwt.InvalidSignatureError:
            raise SignatureInvalidError()
        except jwt.PyJWTError as e:
            raise MalformedTokenError(f"Malformed token: {e}")

        if claims.get("typ") != ACCESS_TOKEN_TYPE:
            raise MalformedTokenError("Not an access token")

        # Expiry is judged against the injected clock, not the wall clock.
        if self.clock().timestamp() >= claims["exp"]:
            raise TokenExpiredError()

        try:
            role = Role(claims["role"])
            permissions = parse_permissions(claims["perms"])
        except (ValueError, TypeError, ValidationError):
            raise MalformedTokenError("Token carries unknown role or permissions")

        return PrincipalContext(
            account_id=claims["sub"],
            role=role,
            permissions=permissions,
            auth_method=AuthMethod.SESSION,
            parent_account_id=claims.get("parent"),
            issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            token_id=claims.get("jti"),
        )

    def _invalidated(self, record: RefreshToken, reason: str, now: datetime) -> RefreshToken:
        return record.model_copy(update={
            "is_valid": False,
            "invalidated_reason": reason,
            "invalidated_at": now,
        })

    async def revoke(self, refresh_token: str) -> None:
        """Invalidate a refresh token on logout. Unknown or spent tokens are ignored."""
        tokens = self.repos.refresh_tokens
        for _ in range(3):
            loaded = await tokens.load(refresh_token) if refresh_token else None
            if loaded is None:
                return
            record, raw = loaded
            if not record.is_valid:
                return
            if await tokens.replace(raw, self._invalidated(record, "logout", self.clock()), refresh_token):
                self._record("revoke", "success")
                self.logger.info("Refresh token revoked", account_id=record.account_id, chain_id=record.chain_id)
                return
        # Every attempt lost to a concurrent rotation or revocation; the token is spent either way.

    async def _invalidate_if(self, token_value: str, should_invalidate: Callable[[RefreshToken], bool],
                             reason: str) -> bool:
        loaded = await self.repos.refresh_tokens.load(token_value)
        if loaded is None:
            return False
        record, raw = loaded
        if not record.is_valid or not should_invalidate(record):
            return False
        return await self.repos.refresh_tokens.replace(
            raw, self._invalidated(record, reason, self.clock()), token_value
        )

    async def revoke_all(self, account_id: str) -> int:
        """Invalidate every valid refresh token of an account."""
        revoked = 0
        for record in await self.repos.refresh_tokens.all():
            if record.account_id == account_id and await self._invalidate_if(
                record.token_value, lambda r: True, "logout"
            ):
                revoked += 1
        if revoked:
            self.logger.info("Refresh tokens revoked", account_id=account_id, count=revoked)
        return revoked

    async def sweep_expired(self) -> int:
        """Mark valid-but-expired refresh tokens invalid. Returns how many were marked."""
        swept = 0
        now = self.clock()
        for record in await self.repos.refresh_tokens.all():
            if record.is_valid and record.is_expired(now) and await self._invalidate_if(
                record.token_value, lambda r: r.is_expired(now), "expired"
            ):
                swept += 1
        self.logger.info("Expired refresh tokens swept", count=swept)
        return swept
