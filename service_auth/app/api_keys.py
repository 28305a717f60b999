"""
API-key issuance and lookup.

Only the SHA-256 of a key is stored; the secret is returned once, at creation.
"""

import hashlib
import secrets
import uuid
from datetime import datetime
from typing import Callable, List, Tuple

from shared.errors import AuthenticationError, ConflictError, NotFoundError, QuotaExceededError
from shared.logging import get_logger
from shared.models import ApiKey, ResourceKind, ResourceStatus, utcnow
from shared.repositories import Repositories

KEY_PREFIX = "ak_"


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class ApiKeyService:
    """Creates, revokes and looks up API keys."""

    def __init__(self, repos: Repositories, catalog, clock: Callable[[], datetime] = utcnow):
        self.repos = repos
        self.catalog = catalog
        self.clock = clock
        self.logger = get_logger("auth.api_keys")

    async def create_key(self, account_id: str, name: str = "default") -> Tuple[ApiKey, str]:
        """Issue a key if the account's tier has room for one. Returns the record and the secret."""
        account = await self.repos.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})

        decision = await self.catalog.check_resource_quota(account_id, ResourceKind.API_KEYS)

        secret = KEY_PREFIX + secrets.token_urlsafe(32)
        api_key = ApiKey(
            key_id=uuid.uuid4().hex,
            account_id=account_id,
            name=name,
            key_prefix=secret[:10],
            key_hash=hash_secret(secret),
            created_at=self.clock(),
        )
        await self.repos.api_keys.create(api_key)

        # A concurrent creation may have taken the last slot after our check.
        if decision.limit != -1:
            active = await self.repos.api_keys.count_active(account_id)
            if active > decision.limit:
                await self.repos.api_keys.remove(account_id, api_key.key_id)
                await self.repos.store.delete(self.repos.api_keys.hash_key(api_key.key_hash))
                raise QuotaExceededError(
                    ResourceKind.API_KEYS.value, active - 1, decision.limit, current_tier=decision.tier.value
                )

        self.logger.info("API key created", account_id=account_id, key_id=api_key.key_id)
        return api_key, secret

    async def revoke_key(self, account_id: str, key_id: str) -> ApiKey:
        for _ in range(5):
            loaded = await self.repos.api_keys.load(account_id, key_id)
            if loaded is None:
                raise NotFoundError(f"API key {key_id} not found", {"key_id": key_id})
            api_key, raw = loaded
            if api_key.status != ResourceStatus.ACTIVE:
                return api_key

            revoked = api_key.model_copy(update={
                "status": ResourceStatus.DISABLED,
                "status_reason": "revoked",
                "status_changed_at": self.clock(),
            })
            if await self.repos.api_keys.replace(raw, revoked, account_id, key_id):
                self.logger.info("API key revoked", account_id=account_id, key_id=key_id)
                return revoked

        raise ConflictError("API key is being modified concurrently", {"key_id": key_id})

    async def list_keys(self, account_id: str) -> List[ApiKey]:
        return await self.repos.api_keys.for_account(account_id)

    async def lookup(self, secret: str) -> ApiKey:
        """Resolve a presented secret to its active key."""
        api_key = await self.repos.api_keys.find_by_hash(hash_secret(secret)) if secret else None
        if api_key is None:
            raise AuthenticationError("Invalid API key", code="INVALID_API_KEY")
        if api_key.status != ResourceStatus.ACTIVE:
            raise AuthenticationError("API key is disabled", {"reason": api_key.status_reason},
                                      code="API_KEY_DISABLED")
        return api_key
