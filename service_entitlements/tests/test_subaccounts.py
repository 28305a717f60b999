"""
Tests for sub-account and pack management.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from shared.errors import (
    AuthorizationError, ConflictError, NotFoundError, QuotaExceededError, ValidationError,
)
from shared.models import PackType, ResourceStatus, Role, Tier


class TestSubAccountCreation:
    """Pack capacity and ownership depth."""

    @pytest.mark.asyncio
    async def test_creates_auth_disabled_sub_account(self, engine, factory, repos):
        parent = await factory.create_agency()

        sub_account, relationship = await engine.subaccounts.create_sub_account(parent.id, "client")

        stored = await repos.accounts.get(sub_account.id)
        assert stored.is_sub_account is True
        assert stored.auth_disabled is True
        assert stored.role == Role.SUB_ACCOUNT
        assert relationship.parent_account_id == parent.id
        assert [r.sub_account_id for r in await repos.relationships.owned_by(parent.id)] == [sub_account.id]

    @pytest.mark.asyncio
    async def test_pack_capacity(self, engine, factory):
        parent = await factory.create_agency(pack_type=PackType.AGENCY_5)
        for _ in range(5):
            await engine.subaccounts.create_sub_account(parent.id)

        with pytest.raises(QuotaExceededError) as exc_info:
            await engine.subaccounts.create_sub_account(parent.id)

        assert exc_info.value.resource == "sub_accounts"
        assert exc_info.value.limit == 5

    @pytest.mark.asyncio
    async def test_unlimited_pack(self, engine, factory, repos):
        parent = await factory.create_agency(pack_type=PackType.AGENCY_UNLIMITED)
        for _ in range(30):
            await engine.subaccounts.create_sub_account(parent.id)

        assert await repos.relationships.count_active(parent.id) == 30

    @pytest.mark.asyncio
    async def test_no_pack(self, engine, factory):
        account = await factory.create_account(tier=Tier.BUSINESS)

        with pytest.raises(QuotaExceededError):
            await engine.subaccounts.create_sub_account(account.id)

    @pytest.mark.asyncio
    async def test_expired_pack(self, engine, factory, clock):
        parent = await factory.create_agency(pack_expires_at=clock() + timedelta(days=1))
        clock.advance(days=1)

        with pytest.raises(QuotaExceededError):
            await engine.subaccounts.create_sub_account(parent.id)

    @pytest.mark.asyncio
    async def test_sub_accounts_cannot_own_sub_accounts(self, engine, factory):
        parent = await factory.create_agency()
        sub_account = await factory.attach_sub_account(parent)

        with pytest.raises(ValidationError):
            await engine.subaccounts.create_sub_account(sub_account.id)

    def test_concurrent_creation_respects_capacity(self, engine, factory):
        parent = asyncio.run(factory.create_agency(pack_type=PackType.AGENCY_5))
        for _ in range(4):
            asyncio.run(engine.subaccounts.create_sub_account(parent.id))

        def attempt():
            try:
                return asyncio.run(engine.subaccounts.create_sub_account(parent.id))
            except QuotaExceededError as e:
                return e

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: attempt(), range(8)))

        assert sum(not isinstance(r, QuotaExceededError) for r in results) == 1
        assert asyncio.run(engine.repos.relationships.count_active(parent.id)) == 5


class TestSubAccountDeletionAndTransfer:
    """Ownership checks on delete and transfer."""

    @pytest.mark.asyncio
    async def test_delete_removes_account_and_revokes_credentials(self, engine, factory, repos):
        parent = await factory.create_agency()
        sub_account, _ = await engine.subaccounts.create_sub_account(parent.id)
        pair = await engine.tokens.issue_initial_pair(sub_account.id)
        await factory.create_api_keys(sub_account.id, 1)

        await engine.subaccounts.delete_sub_account(parent.id, sub_account.id)

        assert await repos.accounts.get(sub_account.id) is None
        assert await repos.relationships.owned_by(parent.id) == []
        assert (await repos.refresh_tokens.get(pair.refresh_token)).is_valid is False
        keys = await repos.api_keys.for_account(sub_account.id)
        assert [k.status for k in keys] == [ResourceStatus.DISABLED]

    @pytest.mark.asyncio
    async def test_only_the_owner_may_delete(self, engine, factory):
        owner = await factory.create_agency()
        other = await factory.create_agency()
        sub_account = await factory.attach_sub_account(owner)

        with pytest.raises(AuthorizationError) as exc_info:
            await engine.subaccounts.delete_sub_account(other.id, sub_account.id)

        assert exc_info.value.code == "NOT_OWNER"

    @pytest.mark.asyncio
    async def test_delete_unknown(self, engine, factory):
        owner = await factory.create_agency()

        with pytest.raises(NotFoundError):
            await engine.subaccounts.delete_sub_account(owner.id, "missing")

    @pytest.mark.asyncio
    async def test_transfer_moves_ownership(self, engine, factory, repos):
        source = await factory.create_agency(tier=Tier.BUSINESS)
        target = await factory.create_agency(tier=Tier.PREMIUM)
        sub_account = await factory.attach_sub_account(source)

        moved = await engine.subaccounts.transfer_sub_account(sub_account.id, source.id, target.id)

        assert moved.parent_account_id == target.id
        assert await repos.relationships.owned_by(source.id) == []
        assert (await engine.catalog.resolve_effective_tier(sub_account)).tier == Tier.PREMIUM

    @pytest.mark.asyncio
    async def test_transfer_needs_capacity(self, engine, factory):
        source = await factory.create_agency()
        target = await factory.create_account(tier=Tier.BUSINESS)
        sub_account = await factory.attach_sub_account(source)

        with pytest.raises(QuotaExceededError):
            await engine.subaccounts.transfer_sub_account(sub_account.id, source.id, target.id)


class TestPacks:
    """Purchasing and cancelling agency packs."""

    @pytest.mark.asyncio
    async def test_purchase_makes_agency_admin(self, engine, factory):
        account = await factory.create_account(tier=Tier.BUSINESS)

        updated = await engine.subaccounts.purchase_pack(account.id, PackType.AGENCY_25)

        assert updated.role == Role.AGENCY_ADMIN
        assert updated.pack_limit == 25

    @pytest.mark.asyncio
    async def test_smaller_pack_must_cover_owned_sub_accounts(self, engine, factory, repos):
        parent = await factory.create_agency(pack_type=PackType.AGENCY_25)
        for _ in range(10):
            await engine.subaccounts.create_sub_account(parent.id)

        with pytest.raises(ConflictError) as exc_info:
            await engine.subaccounts.purchase_pack(parent.id, PackType.AGENCY_5)

        assert exc_info.value.details["active_sub_accounts"] == 10
        stored = await repos.accounts.get(parent.id)
        assert stored.pack_type == PackType.AGENCY_25
        assert stored.pack_limit == 25

    @pytest.mark.asyncio
    async def test_smaller_pack_that_still_fits(self, engine, factory):
        parent = await factory.create_agency(pack_type=PackType.AGENCY_25)
        for _ in range(5):
            await engine.subaccounts.create_sub_account(parent.id)

        updated = await engine.subaccounts.purchase_pack(parent.id, PackType.AGENCY_5)

        assert updated.pack_limit == 5
        with pytest.raises(QuotaExceededError):
            await engine.subaccounts.create_sub_account(parent.id)

    @pytest.mark.asyncio
    async def test_purchase_none_is_rejected(self, engine, factory):
        account = await factory.create_account()

        with pytest.raises(ValidationError):
            await engine.subaccounts.purchase_pack(account.id, PackType.NONE)

    @pytest.mark.asyncio
    async def test_cancel_with_active_sub_accounts_conflicts(self, engine, factory):
        parent = await factory.create_agency()
        sub_account, _ = await engine.subaccounts.create_sub_account(parent.id)

        with pytest.raises(ConflictError):
            await engine.subaccounts.cancel_pack(parent.id)

        await engine.subaccounts.delete_sub_account(parent.id, sub_account.id)
        cancelled = await engine.subaccounts.cancel_pack(parent.id)

        assert cancelled.pack_type == PackType.NONE
        assert cancelled.role == Role.STANDARD
