"""
Tests for downgrade cleanup and reinstatement.
"""

from unittest.mock import AsyncMock, patch

import pytest

from shared.errors import NotFoundError, ValidationError
from shared.models import (
    BASELINE_BACKGROUND, BASELINE_THEME, DOWNGRADE_REASON, ResourceKind, ResourceStatus, Tier,
)


async def _set_tier(repos, account, tier):
    updated = account.model_copy(update={"tier": tier})
    await repos.accounts.save(updated, account.id)
    return updated


class TestPageCleanup:
    """Pages over the limit are deleted, oldest first, default page kept."""

    @pytest.mark.asyncio
    async def test_business_to_free_keeps_only_default_page(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.FREE)
        await factory.create_pages(account.id, 12)

        report = await engine.orchestrator.run_cleanup(account.id)

        remaining = await repos.pages.for_account(account.id)
        assert [p.page_id for p in remaining] == ["page-000"]
        assert remaining[0].is_default is True
        deleted = [a for a in report.actions if a.resource == ResourceKind.PAGES]
        assert len(deleted) == 11
        assert {a.action for a in deleted} == {"deleted"}

    @pytest.mark.asyncio
    async def test_default_page_survives_even_when_newest(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.FREE)
        pages = await factory.create_pages(account.id, 3, with_default=False)
        newest = pages[-1].model_copy(update={"is_default": True})
        await repos.pages.save(newest, account.id, newest.page_id)

        await engine.orchestrator.run_cleanup(account.id)

        assert [p.page_id for p in await repos.pages.for_account(account.id)] == ["page-002"]

    @pytest.mark.asyncio
    async def test_oldest_pages_go_first(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.STARTER)
        await factory.create_pages(account.id, 5)

        await engine.orchestrator.run_cleanup(account.id)

        assert [p.page_id for p in await repos.pages.for_account(account.id)] == [
            "page-000", "page-003", "page-004",
        ]


class TestApiKeyAndLinkCleanup:
    """Keys and links are disabled, not deleted."""

    @pytest.mark.asyncio
    async def test_newest_keys_disabled_with_reason(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.STARTER)
        await factory.create_api_keys(account.id, 3)

        report = await engine.orchestrator.run_cleanup(account.id)

        keys = {k.key_id: k for k in await repos.api_keys.for_account(account.id)}
        assert keys["key-000"].status == ResourceStatus.ACTIVE
        for key_id in ("key-001", "key-002"):
            assert keys[key_id].status == ResourceStatus.DISABLED
            assert keys[key_id].status_reason == DOWNGRADE_REASON
        disabled = [a.target_id for a in report.actions if a.resource == ResourceKind.API_KEYS]
        assert disabled == ["key-001", "key-002"]

    @pytest.mark.asyncio
    async def test_links_beyond_limit_deactivated(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.FREE)
        await factory.create_links(account.id, 12)

        await engine.orchestrator.run_cleanup(account.id)

        links = await repos.links.for_account(account.id)
        inactive = [l.link_id for l in links if l.status == ResourceStatus.INACTIVE]
        assert inactive == ["link-010", "link-011"]
        assert await repos.links.count_active(account.id) == 10

    @pytest.mark.asyncio
    async def test_unlimited_tier_is_untouched(self, engine, factory):
        account = await factory.create_account(tier=Tier.ENTERPRISE)
        await factory.create_pages(account.id, 40)
        await factory.create_api_keys(account.id, 15)

        report = await engine.orchestrator.run_cleanup(account.id)

        assert report.actions == []


class TestAppearanceCleanup:
    """Theme and video background resets."""

    @pytest.mark.asyncio
    async def test_free_tier_resets_theme_and_video(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.FREE)
        await factory.set_appearance(
            account.id, theme="neon", background_type="video", video_url="https://cdn.example.com/bg.mp4"
        )

        report = await engine.orchestrator.run_cleanup(account.id)

        appearance = await repos.appearance.get(account.id)
        assert appearance.theme == BASELINE_THEME
        assert appearance.background_type == BASELINE_BACKGROUND
        assert appearance.video_url is None
        assert {a.resource for a in report.actions} == {ResourceKind.THEMES, ResourceKind.VIDEO_BACKGROUNDS}

    @pytest.mark.asyncio
    async def test_starter_keeps_theme_loses_video(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.STARTER)
        await factory.set_appearance(account.id, theme="neon", video_url="https://cdn.example.com/bg.mp4")

        await engine.orchestrator.run_cleanup(account.id)

        appearance = await repos.appearance.get(account.id)
        assert appearance.theme == "neon"
        assert appearance.video_url is None

    @pytest.mark.asyncio
    async def test_no_appearance_record(self, engine, factory):
        account = await factory.create_account(tier=Tier.FREE)

        report = await engine.orchestrator.run_cleanup(account.id)

        assert report.actions == []


class TestCleanupRuns:
    """Idempotency, partial failure and audit."""

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, engine, factory):
        account = await factory.create_account(tier=Tier.FREE)
        await factory.create_pages(account.id, 4)
        await factory.create_links(account.id, 15)
        await factory.set_appearance(account.id, theme="neon")

        first = await engine.orchestrator.run_cleanup(account.id)
        second = await engine.orchestrator.run_cleanup(account.id)

        assert len(first.actions) == 3 + 5 + 1
        assert second.actions == []
        assert second.succeeded is True

    @pytest.mark.asyncio
    async def test_failing_class_does_not_block_others(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.STARTER)
        await factory.create_pages(account.id, 5)
        await factory.create_api_keys(account.id, 2)

        with patch.object(engine.orchestrator, "_cleanup_pages",
                          AsyncMock(side_effect=RuntimeError("store hiccup"))):
            report = await engine.orchestrator.run_cleanup(account.id)

        assert report.succeeded is False
        assert [(f.resource, f.error_type) for f in report.failures] == [(ResourceKind.PAGES, "RuntimeError")]
        assert await repos.pages.count(account.id) == 5
        assert await repos.api_keys.count_active(account.id) == 1

        history = await engine.audit.history(account.id)
        assert len(history) == 1
        assert history[0]["succeeded"] is False
        assert history[0]["failures"][0]["message"] == "store hiccup"

        # The next run picks up what the failed one left.
        retry = await engine.orchestrator.run_cleanup(account.id)
        assert [a.resource for a in retry.actions] == [ResourceKind.PAGES, ResourceKind.PAGES]
        assert await repos.pages.count(account.id) == 3

    @pytest.mark.asyncio
    async def test_every_run_is_audited(self, engine, factory):
        account = await factory.create_account(tier=Tier.FREE)
        await factory.create_pages(account.id, 2)

        await engine.orchestrator.run_cleanup(account.id, trigger="billing:plan_changed")

        history = await engine.audit.history(account.id)
        assert len(history) == 1
        assert history[0]["trigger"] == "billing:plan_changed"
        assert history[0]["tier"] == "free"
        assert history[0]["actions"][0]["detail"] == DOWNGRADE_REASON

    @pytest.mark.asyncio
    async def test_target_tier_overrides_stored_tier(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.BUSINESS)
        await factory.create_pages(account.id, 4)

        report = await engine.orchestrator.run_cleanup(account.id, target_tier=Tier.STARTER)

        assert report.tier == "starter"
        assert await repos.pages.count(account.id) == 3

    @pytest.mark.asyncio
    async def test_sub_accounts_are_rejected(self, engine, factory):
        parent = await factory.create_agency()
        sub_account = await factory.attach_sub_account(parent)

        with pytest.raises(ValidationError):
            await engine.orchestrator.run_cleanup(sub_account.id)

    @pytest.mark.asyncio
    async def test_unknown_account(self, engine):
        with pytest.raises(NotFoundError):
            await engine.orchestrator.run_cleanup("missing")


class TestReinstatement:
    """Upgrades bring back what a downgrade disabled."""

    @pytest.mark.asyncio
    async def test_upgrade_reactivates_downgraded_keys_only(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.STARTER)
        await factory.create_api_keys(account.id, 3)
        await engine.orchestrator.run_cleanup(account.id)
        await engine.api_keys.revoke_key(account.id, "key-000")
        account = await _set_tier(repos, account, Tier.BUSINESS)

        report = await engine.orchestrator.reinstate(account.id)

        assert [a.target_id for a in report.actions] == ["key-001", "key-002"]
        keys = {k.key_id: k for k in await repos.api_keys.for_account(account.id)}
        assert keys["key-000"].status_reason == "revoked"
        assert keys["key-001"].status == ResourceStatus.ACTIVE
        assert keys["key-001"].status_reason is None

    @pytest.mark.asyncio
    async def test_reinstatement_respects_new_limit(self, engine, factory, repos):
        account = await factory.create_account(tier=Tier.FREE)
        await factory.create_api_keys(account.id, 3)
        await factory.create_links(account.id, 30)
        await engine.orchestrator.run_cleanup(account.id)
        assert await repos.api_keys.count_active(account.id) == 0
        account = await _set_tier(repos, account, Tier.STARTER)

        await engine.orchestrator.reinstate(account.id)

        keys = await repos.api_keys.for_account(account.id)
        assert [k.key_id for k in keys if k.status == ResourceStatus.ACTIVE] == ["key-000"]
        assert await repos.links.count_active(account.id) == 25
