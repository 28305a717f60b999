"""
Tests for inbound subscription-change events.
"""

import pytest

from shared.errors import NotFoundError, ValidationError
from shared.models import ResourceStatus, SubscriptionStatus, Tier

from service_entitlements.app.billing import SubscriptionChangeReason, TierTransition


class TestSubscriptionChanged:
    """Tier changes reported by billing."""

    @pytest.mark.asyncio
    async def test_downgrade_applies_tier_and_cleans_up(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.BUSINESS)
        await factory.create_pages(account.id, 12)

        result = await engine.events.notify_subscription_changed(
            account.id, Tier.FREE, SubscriptionChangeReason.PLAN_CHANGED
        )

        assert result.transition == TierTransition.DOWNGRADE
        assert result.previous_tier == Tier.BUSINESS
        assert result.report.trigger == "billing:plan_changed"
        assert (await repos.accounts.get(account.id)).tier == Tier.FREE
        assert await repos.pages.count(account.id) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason,status", [
        (SubscriptionChangeReason.SUBSCRIPTION_DELETED, SubscriptionStatus.EXPIRED),
        (SubscriptionChangeReason.PAYMENT_FAILED, SubscriptionStatus.SUSPENDED),
        (SubscriptionChangeReason.PLAN_CHANGED, SubscriptionStatus.ACTIVE),
    ])
    async def test_reason_sets_subscription_status(self, engine, factory, repos, reason, status):
        account = await factory.create_account(tier=Tier.PREMIUM)

        await engine.events.notify_subscription_changed(account.id, Tier.FREE, reason)

        assert (await repos.accounts.get(account.id)).subscription_status == status

    @pytest.mark.asyncio
    async def test_explicit_status_wins(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.FREE, subscription_status=SubscriptionStatus.EXPIRED)

        await engine.events.notify_subscription_changed(
            account.id, Tier.STARTER, SubscriptionChangeReason.PLAN_CHANGED, SubscriptionStatus.TRIAL
        )

        assert (await repos.accounts.get(account.id)).subscription_status == SubscriptionStatus.TRIAL

    @pytest.mark.asyncio
    async def test_upgrade_reinstates(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.BUSINESS)
        await factory.create_api_keys(account.id, 3)
        await engine.events.notify_subscription_changed(
            account.id, Tier.FREE, SubscriptionChangeReason.PAYMENT_FAILED
        )
        assert await repos.api_keys.count_active(account.id) == 0

        result = await engine.events.notify_subscription_changed(
            account.id, Tier.BUSINESS, SubscriptionChangeReason.PLAN_CHANGED, SubscriptionStatus.ACTIVE
        )

        assert result.transition == TierTransition.UPGRADE
        assert len(result.report.actions) == 3
        keys = await repos.api_keys.for_account(account.id)
        assert {k.status for k in keys} == {ResourceStatus.ACTIVE}

    @pytest.mark.asyncio
    async def test_same_tier_runs_nothing(self, engine, factory):
        account = await factory.create_account(tier=Tier.STARTER)

        result = await engine.events.notify_subscription_changed(
            account.id, "starter", "plan_changed"
        )

        assert result.transition == TierTransition.UNCHANGED
        assert result.report is None
        assert result.to_dict()["report"] is None
        assert await engine.audit.history(account.id) == []

    @pytest.mark.asyncio
    async def test_sub_account_tier_cannot_be_set(self, engine, factory):
        parent = await factory.create_agency()
        sub_account = await factory.attach_sub_account(parent)

        with pytest.raises(ValidationError):
            await engine.events.notify_subscription_changed(
                sub_account.id, Tier.PREMIUM, SubscriptionChangeReason.PLAN_CHANGED
            )

    @pytest.mark.asyncio
    async def test_unknown_account(self, engine):
        with pytest.raises(NotFoundError):
            await engine.events.notify_subscription_changed(
                "missing", Tier.FREE, SubscriptionChangeReason.SUBSCRIPTION_DELETED
            )

    @pytest.mark.asyncio
    async def test_agency_downgrade_constrains_sub_accounts(self, engine, factory):
        parent = await factory.create_agency(tier=Tier.ENTERPRISE)
        sub_account = await factory.attach_sub_account(parent)

        await engine.events.notify_subscription_changed(
            parent.id, Tier.STARTER, SubscriptionChangeReason.PLAN_CHANGED
        )

        effective = await engine.catalog.resolve_effective_tier(sub_account)
        assert effective.tier == Tier.STARTER
