"""
Sub-account and pack management.

Sub-accounts cannot own sub-accounts; that is checked here, at creation and
transfer time, so tier resolution never has to follow more than one hop.
Pack capacity is enforced by bumping the parent's revision in the same
conditional commit as the new relationship: two concurrent creations for the
same parent cannot both succeed against a stale count.
"""

import uuid
from datetime import datetime
from typing import Callable, Optional, Tuple

from shared.errors import (
    AuthorizationError, ConflictError, NotFoundError, QuotaExceededError, ValidationError,
)
from shared.logging import get_logger
from shared.models import (
    Account, PackType, ResourceStatus, Role, SubAccountRelationship, Tier, utcnow,
)
from shared.repositories import Repositories, dump


class SubAccountManager:
    """Creates, deletes and transfers sub-accounts; manages packs."""

    def __init__(self, repos: Repositories, tokens=None, cas_retries: int = 16,
                 clock: Callable[[], datetime] = utcnow):
        self.repos = repos
        self.tokens = tokens
        self.cas_retries = cas_retries
        self.clock = clock
        self.logger = get_logger("entitlements.subaccounts")

    async def _load_owner(self, account_id: str) -> Tuple[Account, dict]:
        loaded = await self.repos.accounts.load(account_id)
        if loaded is None:
            raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})
        account, raw = loaded
        if account.is_sub_account:
            raise ValidationError("Sub-accounts cannot own sub-accounts", {"account_id": account_id})
        return account, raw

    async def _check_capacity(self, parent: Account) -> None:
        now = self.clock()
        if parent.pack_type == PackType.NONE or (parent.pack_expires_at and parent.pack_expires_at <= now):
            raise QuotaExceededError("sub_accounts", 0, 0, current_tier=parent.tier.value)

        active = await self.repos.relationships.count_active(parent.id)
        if parent.pack_limit != -1 and active >= parent.pack_limit:
            raise QuotaExceededError("sub_accounts", active, parent.pack_limit, current_tier=parent.tier.value)

    async def create_sub_account(self, parent_account_id: str,
                                 relationship_type: str = "client") -> Tuple[Account, SubAccountRelationship]:
        for _ in range(self.cas_retries):
            parent, parent_raw = await self._load_owner(parent_account_id)
            await self._check_capacity(parent)

            now = self.clock()
            sub_account = Account(
                id=uuid.uuid4().hex,
                role=Role.SUB_ACCOUNT,
                is_sub_account=True,
                auth_disabled=True,
                tier=Tier.FREE,
                created_at=now,
                updated_at=now,
            )
            relationship = SubAccountRelationship(
                parent_account_id=parent.id,
                sub_account_id=sub_account.id,
                type=relationship_type,
                created_at=now,
            )
            touched_parent = parent.model_copy(update={"updated_at": now, "revision": parent.revision + 1})

            accounts, relationships = self.repos.accounts, self.repos.relationships
            committed = await self.repos.store.commit(
                {
                    accounts.key(parent.id): parent_raw,
                    accounts.key(sub_account.id): None,
                    relationships.key(sub_account.id): None,
                },
                {
                    accounts.key(parent.id): dump(touched_parent),
                    accounts.key(sub_account.id): dump(sub_account),
                    relationships.key(sub_account.id): dump(relationship),
                    relationships.index_key(parent.id, sub_account.id): {},
                }
            )
            if committed:
                self.logger.info(
                    "Sub-account created",
                    parent_account_id=parent.id,
                    sub_account_id=sub_account.id,
                    relationship_type=relationship_type
                )
                return sub_account, relationship

        raise ConflictError("Parent account is being modified concurrently", {"account_id": parent_account_id})

    async def _owned_relationship(self, parent_account_id: str, sub_account_id: str):
        loaded = await self.repos.relationships.load(sub_account_id)
        if loaded is None:
            raise NotFoundError(f"Sub-account {sub_account_id} not found", {"sub_account_id": sub_account_id})
        relationship, raw = loaded
        if relationship.parent_account_id != parent_account_id:
            raise AuthorizationError("Not the owner of this sub-account", code="NOT_OWNER")
        return relationship, raw

    async def delete_sub_account(self, parent_account_id: str, sub_account_id: str) -> None:
        """Hard-delete a sub-account and its relationship."""
        relationship, relationship_raw = await self._owned_relationship(parent_account_id, sub_account_id)

        accounts, relationships = self.repos.accounts, self.repos.relationships
        committed = await self.repos.store.commit(
            {relationships.key(sub_account_id): relationship_raw},
            {
                accounts.key(sub_account_id): None,
                relationships.key(sub_account_id): None,
                relationships.index_key(parent_account_id, sub_account_id): None,
            }
        )
        if not committed:
            raise ConflictError("Sub-account changed during deletion", {"sub_account_id": sub_account_id})

        for api_key in await self.repos.api_keys.for_account(sub_account_id):
            if api_key.status == ResourceStatus.ACTIVE:
                await self.repos.api_keys.save(
                    api_key.model_copy(update={
                        "status": ResourceStatus.DISABLED,
                        "status_reason": "account deleted",
                        "status_changed_at": self.clock(),
                    }),
                    sub_account_id, api_key.key_id
                )
        if self.tokens is not None:
            await self.tokens.revoke_all(sub_account_id)

        self.logger.info("Sub-account deleted", parent_account_id=parent_account_id, sub_account_id=sub_account_id)

    async def transfer_sub_account(self, sub_account_id: str, from_parent_id: str, to_parent_id: str) -> SubAccountRelationship:
        """Move ownership of a sub-account to another parent with pack capacity."""
        if from_parent_id == to_parent_id:
            raise ValidationError("Sub-account already belongs to this parent")

        for _ in range(self.cas_retries):
            relationship, relationship_raw = await self._owned_relationship(from_parent_id, sub_account_id)
            new_parent, new_parent_raw = await self._load_owner(to_parent_id)
            await self._check_capacity(new_parent)

            now = self.clock()
            moved = relationship.model_copy(update={"parent_account_id": to_parent_id, "created_at": now})
            relationships, accounts = self.repos.relationships, self.repos.accounts
            committed = await self.repos.store.commit(
                {
                    relationships.key(sub_account_id): relationship_raw,
                    accounts.key(to_parent_id): new_parent_raw,
                },
                {
                    relationships.key(sub_account_id): dump(moved),
                    relationships.index_key(from_parent_id, sub_account_id): None,
                    relationships.index_key(to_parent_id, sub_account_id): {},
                    accounts.key(to_parent_id): dump(
                        new_parent.model_copy(update={"updated_at": now, "revision": new_parent.revision + 1})
                    ),
                }
            )
            if committed:
                self.logger.info(
                    "Sub-account ownership transferred",
                    sub_account_id=sub_account_id,
                    from_parent_id=from_parent_id,
                    to_parent_id=to_parent_id
                )
                return moved

        raise ConflictError("Ownership changed during transfer", {"sub_account_id": sub_account_id})

    async def purchase_pack(self, account_id: str, pack_type: PackType,
                            expires_at: Optional[datetime] = None) -> Account:
        pack_type = PackType(pack_type)
        if pack_type == PackType.NONE:
            raise ValidationError("Use cancel_pack to remove a pack")

        new_limit = pack_type.default_limit
        for _ in range(self.cas_retries):
            account, raw = await self._load_owner(account_id)
            # A smaller pack must still cover the sub-accounts already owned.
            active = await self.repos.relationships.count_active(account_id)
            if new_limit != -1 and active > new_limit:
                raise ConflictError(
                    "Delete sub-accounts before switching to a smaller pack",
                    {"account_id": account_id, "active_sub_accounts": active, "pack_limit": new_limit}
                )

            updated = account.model_copy(update={
                "pack_type": pack_type,
                "pack_limit": new_limit,
                "pack_expires_at": expires_at,
                "role": Role.AGENCY_ADMIN,
                "updated_at": self.clock(),
            })
            if await self.repos.accounts.replace(raw, updated, account_id):
                self.logger.info("Pack purchased", account_id=account_id, pack_type=pack_type.value)
                return updated

        raise ConflictError("Account is being modified concurrently", {"account_id": account_id})

    async def cancel_pack(self, account_id: str) -> Account:
        # Sub-account creation rewrites the parent record, so a creation racing
        # this cancellation fails the conditional write and the count is redone.
        for _ in range(self.cas_retries):
            account, raw = await self._load_owner(account_id)
            active = await self.repos.relationships.count_active(account_id)
            if active:
                raise ConflictError(
                    "Delete every sub-account before cancelling the pack",
                    {"account_id": account_id, "active_sub_accounts": active}
                )

            updated = account.model_copy(update={
                "pack_type": PackType.NONE,
                "pack_limit": 0,
                "pack_expires_at": None,
                "role": Role.STANDARD,
                "updated_at": self.clock(),
            })
            if await self.repos.accounts.replace(raw, updated, account_id):
                self.logger.info("Pack cancelled", account_id=account_id)
                return updated

        raise ConflictError("Account is being modified concurrently", {"account_id": account_id})
