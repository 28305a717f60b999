"""
Typed repositories over the key-value store.

Key layout:
    account:{id}                     Account
    email:{email}                    {"account_id": ...}
    relationship:{sub_id}            SubAccountRelationship (one parent per sub-account)
    owned:{parent_id}:{sub_id}       {} index of a parent's sub-accounts
    refresh:{token}                  RefreshToken
    apikey:{account_id}:{key_id}     ApiKey
    apikey_hash:{sha256}             {"account_id": ..., "key_id": ...}
    page:{account_id}:{page_id}      Page
    link:{account_id}:{link_id}      Link
    appearance:{account_id}          Appearance
    audit:cleanup:{account_id}:{ts}  cleanup report
"""

from typing import Generic, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from .models import (
    Account, ApiKey, Appearance, Link, Page, RefreshToken, ResourceStatus,
    SubAccountRelationship, RelationshipStatus,
)
from .store import KeyValueStore, Record

M = TypeVar("M", bound=BaseModel)


def dump(model: BaseModel) -> Record:
    return model.model_dump(mode="json")


class Repository(Generic[M]):
    """Load/save one record type under a key prefix."""

    model: Type[M]
    prefix: str

    def __init__(self, store: KeyValueStore):
        self.store = store

    def key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    async def load(self, *parts: str) -> Optional[Tuple[M, Record]]:
        """Return the record and its raw form, for use as a commit check."""
        raw = await self.store.get(self.key(*parts))
        if raw is None:
            return None
        return self.model.model_validate(raw), raw

    async def get(self, *parts: str) -> Optional[M]:
        loaded = await self.load(*parts)
        return loaded[0] if loaded else None

    async def save(self, item: M, *parts: str) -> None:
        await self.store.put(self.key(*parts), dump(item))

    async def replace(self, expected: Record, item: M, *parts: str) -> bool:
        return await self.store.compare_and_set(self.key(*parts), expected, dump(item))

    async def remove(self, *parts: str) -> bool:
        return await self.store.delete(self.key(*parts))

    async def list(self, *parts: str) -> List[M]:
        prefix = self.key(*parts) + ":" if parts else self.prefix + ":"
        return [self.model.model_validate(raw) for _, raw in await self.store.scan(prefix)]


class AccountRepository(Repository[Account]):
    model = Account
    prefix = "account"

    async def find_by_email(self, email: str) -> Optional[Account]:
        index = await self.store.get(f"email:{email.lower()}")
        if index is None:
            return None
        return await self.get(index["account_id"])

    async def create(self, account: Account) -> bool:
        """Insert a new account, claiming its email if it has one."""
        checks = {self.key(account.id): None}
        writes = {self.key(account.id): dump(account)}
        if account.email:
            email_key = f"email:{account.email.lower()}"
            checks[email_key] = None
            writes[email_key] = {"account_id": account.id}
        return await self.store.commit(checks, writes)

    async def all(self) -> List[Account]:
        return await self.list()


class RelationshipRepository(Repository[SubAccountRelationship]):
    model = SubAccountRelationship
    prefix = "relationship"

    async def for_sub_account(self, sub_account_id: str) -> Optional[SubAccountRelationship]:
        return await self.get(sub_account_id)

    async def owned_by(self, parent_account_id: str) -> List[SubAccountRelationship]:
        entries = await self.store.scan(f"owned:{parent_account_id}:")
        relationships = []
        for key, _ in entries:
            relationship = await self.get(key.rsplit(":", 1)[1])
            if relationship is not None:
                relationships.append(relationship)
        return relationships

    async def count_active(self, parent_account_id: str) -> int:
        return sum(1 for r in await self.owned_by(parent_account_id) if r.status == RelationshipStatus.ACTIVE)

    def index_key(self, parent_account_id: str, sub_account_id: str) -> str:
        return f"owned:{parent_account_id}:{sub_account_id}"


class RefreshTokenRepository(Repository[RefreshToken]):
    model = RefreshToken
    prefix = "refresh"

    async def all(self) -> List[RefreshToken]:
        return await self.list()


class ApiKeyRepository(Repository[ApiKey]):
    model = ApiKey
    prefix = "apikey"

    def hash_key(self, key_hash: str) -> str:
        return f"apikey_hash:{key_hash}"

    async def find_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        index = await self.store.get(self.hash_key(key_hash))
        if index is None:
            return None
        return await self.get(index["account_id"], index["key_id"])

    async def create(self, api_key: ApiKey) -> bool:
        return await self.store.commit(
            {self.hash_key(api_key.key_hash): None},
            {
                self.key(api_key.account_id, api_key.key_id): dump(api_key),
                self.hash_key(api_key.key_hash): {"account_id": api_key.account_id, "key_id": api_key.key_id},
            }
        )

    async def for_account(self, account_id: str) -> List[ApiKey]:
        keys = await self.list(account_id)
        return sorted(keys, key=lambda k: (k.created_at, k.key_id))

    async def count_active(self, account_id: str) -> int:
        return sum(1 for k in await self.for_account(account_id) if k.status == ResourceStatus.ACTIVE)


class PageRepository(Repository[Page]):
    model = Page
    prefix = "page"

    async def for_account(self, account_id: str) -> List[Page]:
        pages = await self.list(account_id)
        return sorted(pages, key=lambda p: (p.created_at, p.page_id))

    async def count(self, account_id: str) -> int:
        return len(await self.list(account_id))


class LinkRepository(Repository[Link]):
    model = Link
    prefix = "link"

    async def for_account(self, account_id: str) -> List[Link]:
        links = await self.list(account_id)
        return sorted(links, key=lambda l: (l.display_order, l.link_id))

    async def count_active(self, account_id: str) -> int:
        return sum(1 for l in await self.for_account(account_id) if l.status == ResourceStatus.ACTIVE)


class AppearanceRepository(Repository[Appearance]):
    model = Appearance
    prefix = "appearance"


class Repositories:
    """Bundle of every repository over one store."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.accounts = AccountRepository(store)
        self.relationships = RelationshipRepository(store)
        self.refresh_tokens = RefreshTokenRepository(store)
        self.api_keys = ApiKeyRepository(store)
        self.pages = PageRepository(store)
        self.links = LinkRepository(store)
        self.appearance = AppearanceRepository(store)
