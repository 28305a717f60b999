"""
Downgrade cleanup orchestrator.

Brings an account's resources back within the limits of its (new) tier.
Every trigger (billing webhook, scheduled sweep, manual run) calls the same
``run_cleanup`` entrypoint. A run re-reads live state for each resource class,
so it is safe to re-run: an account that is already within its limits
produces an empty action list.

Pages and theme/background settings are deleted or reset outright. API keys
and links are only disabled, with a recorded reason, so ``reinstate`` can
bring them back after an upgrade.
"""

from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.models import (
    Account, BASELINE_BACKGROUND, BASELINE_THEME, DOWNGRADE_REASON,
    ResourceKind, ResourceStatus, Tier, utcnow,
)
from shared.repositories import Repositories

from ..catalog import EntitlementCatalog, TierLimit, UNLIMITED
from .audit import CleanupAuditLog
from .models import CleanupAction, CleanupPartialFailure, CleanupReport

Step = Callable[[str, TierLimit], Awaitable[List[CleanupAction]]]

APPEARANCE_UPDATE_ATTEMPTS = 5


class DowngradeCleanupOrchestrator:
    """Reconciles tier-gated resources down to the account's tier limits."""

    def __init__(self, catalog: EntitlementCatalog, repos: Repositories, audit: CleanupAuditLog,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.catalog = catalog
        self.repos = repos
        self.audit = audit
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("entitlements.cleanup")

    def _cleanup_steps(self) -> Sequence[Tuple[ResourceKind, Step]]:
        return (
            (ResourceKind.PAGES, self._cleanup_pages),
            (ResourceKind.THEMES, self._cleanup_theme),
            (ResourceKind.VIDEO_BACKGROUNDS, self._cleanup_video_background),
            (ResourceKind.API_KEYS, self._cleanup_api_keys),
            (ResourceKind.LINKS, self._cleanup_links),
        )

    def _reinstate_steps(self) -> Sequence[Tuple[ResourceKind, Step]]:
        return (
            (ResourceKind.API_KEYS, self._reinstate_api_keys),
            (ResourceKind.LINKS, self._reinstate_links),
        )

    async def _load_parent_account(self, account_id: str) -> Account:
        account = await self.repos.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})
        if account.is_sub_account:
            # Sub-accounts inherit the parent's tier and are constrained on next resolution.
            raise ValidationError("Cleanup runs on parent accounts only", {"account_id": account_id})
        return account

    async def run_cleanup(self, account_id: str, trigger: str = "manual",
                          target_tier: Optional[Union[Tier, str]] = None) -> CleanupReport:
        """Enforce the tier limits on every resource class of one account."""
        account = await self._load_parent_account(account_id)
        tier = target_tier or account.tier
        limits = self.catalog.lookup_tier_limit(tier)
        tier_name = tier.value if isinstance(tier, Tier) else tier

        report = await self._run(account_id, tier_name, trigger, limits, self._cleanup_steps())
        self.logger.info(
            "Downgrade cleanup finished",
            account_id=account_id,
            tier=tier_name,
            trigger=trigger,
            actions=len(report.actions),
            succeeded=report.succeeded
        )
        return report

    async def reinstate(self, account_id: str, trigger: str = "upgrade") -> CleanupReport:
        """Re-activate keys and links disabled by an earlier downgrade, up to the current limits."""
        account = await self._load_parent_account(account_id)
        limits = self.catalog.lookup_tier_limit(account.tier)
        return await self._run(account_id, account.tier.value, trigger, limits, self._reinstate_steps())

    async def _run(self, account_id: str, tier: str, trigger: str, limits: TierLimit,
                   steps: Sequence[Tuple[ResourceKind, Step]]) -> CleanupReport:
        report = CleanupReport(account_id=account_id, tier=tier, trigger=trigger, started_at=self.clock())

        for resource, step in steps:
            try:
                actions = await step(account_id, limits)
            except Exception as e:
                # One failing class must not block the others; the failure goes to the audit trail.
                self.logger.error(
                    "Cleanup step failed",
                    account_id=account_id,
                    resource=resource.value,
                    error=str(e),
                    exc_info=True
                )
                report.failures.append(CleanupPartialFailure(resource, type(e).__name__, str(e)))
                if self.metrics:
                    self.metrics.increment_counter("cleanup_failures_total", resource=resource.value)
                continue

            report.actions.extend(actions)
            if self.metrics:
                for action in actions:
                    self.metrics.increment_counter(
                        "cleanup_actions_total", resource=resource.value, action=action.action
                    )

        report.finished_at = self.clock()
        await self.audit.record(report)
        return report

    async def _cleanup_pages(self, account_id: str, limits: TierLimit) -> List[CleanupAction]:
        pages = await self.repos.pages.for_account(account_id)
        if limits.max_pages == UNLIMITED or len(pages) <= limits.max_pages:
            return []

        excess = len(pages) - limits.max_pages
        # Oldest first, and the default page is never a candidate.
        candidates = [p for p in pages if not p.is_default][:excess]

        actions = []
        for page in candidates:
            if await self.repos.pages.remove(account_id, page.page_id):
                actions.append(CleanupAction(ResourceKind.PAGES, "deleted", page.page_id, DOWNGRADE_REASON))
        return actions

    async def _update_appearance(self, account_id: str, resource: ResourceKind,
                                 needs_reset: Callable, reset: dict, detail: str) -> List[CleanupAction]:
        for _ in range(APPEARANCE_UPDATE_ATTEMPTS):
            loaded = await self.repos.appearance.load(account_id)
            if loaded is None:
                return []
            appearance, raw = loaded
            if not needs_reset(appearance):
                return []
            if await self.repos.appearance.replace(raw, appearance.model_copy(update=reset), account_id):
                return [CleanupAction(resource, "reset", account_id, detail)]

        raise RuntimeError(f"Appearance of {account_id} kept changing during cleanup")

    async def _cleanup_theme(self, account_id: str, limits: TierLimit) -> List[CleanupAction]:
        if limits.custom_themes_allowed:
            return []
        return await self._update_appearance(
            account_id,
            ResourceKind.THEMES,
            lambda a: a.theme != BASELINE_THEME,
            {"theme": BASELINE_THEME},
            f"theme reset to {BASELINE_THEME}"
        )

    async def _cleanup_video_background(self, account_id: str, limits: TierLimit) -> List[CleanupAction]:
        if limits.video_background_allowed:
            return []
        return await self._update_appearance(
            account_id,
            ResourceKind.VIDEO_BACKGROUNDS,
            lambda a: a.video_url is not None or a.background_type == "video",
            {"video_url": None, "background_type": BASELINE_BACKGROUND},
            f"video background cleared, fill reset to {BASELINE_BACKGROUND}"
        )

    async def _set_status(self, repo, account_id: str, item_id: str, expected: ResourceStatus,
                          status: ResourceStatus, reason: Optional[str]) -> bool:
        loaded = await repo.load(account_id, item_id)
        if loaded is None:
            return False
        item, raw = loaded
        if item.status != expected:
            return False
        updated = item.model_copy(update={
            "status": status,
            "status_reason": reason,
            "status_changed_at": self.clock(),
        })
        return await repo.replace(raw, updated, account_id, item_id)

    async def _cleanup_api_keys(self, account_id: str, limits: TierLimit) -> List[CleanupAction]:
        if limits.max_api_keys == UNLIMITED:
            return []
        active = [k for k in await self.repos.api_keys.for_account(account_id) if k.status == ResourceStatus.ACTIVE]
        # Keep the oldest keys; disable the newest beyond the limit.
        actions = []
        for key in active[limits.max_api_keys:]:
            if await self._set_status(self.repos.api_keys, account_id, key.key_id,
                                      ResourceStatus.ACTIVE, ResourceStatus.DISABLED, DOWNGRADE_REASON):
                actions.append(CleanupAction(ResourceKind.API_KEYS, "disabled", key.key_id, DOWNGRADE_REASON))
        return actions

    async def _cleanup_links(self, account_id: str, limits: TierLimit) -> List[CleanupAction]:
        if limits.max_links == UNLIMITED:
            return []
        active = [l for l in await self.repos.links.for_account(account_id) if l.status == ResourceStatus.ACTIVE]
        actions = []
        for link in active[limits.max_links:]:
            if await self._set_status(self.repos.links, account_id, link.link_id,
                                      ResourceStatus.ACTIVE, ResourceStatus.INACTIVE, DOWNGRADE_REASON):
                actions.append(CleanupAction(ResourceKind.LINKS, "deactivated", link.link_id, DOWNGRADE_REASON))
        return actions

    def _capacity(self, limit: int, active: int, waiting: int) -> int:
        if limit == UNLIMITED:
            return waiting
        return max(0, min(waiting, limit - active))

    async def _reinstate_api_keys(self, account_id: str, limits: TierLimit) -> List[CleanupAction]:
        keys = await self.repos.api_keys.for_account(account_id)
        active = sum(1 for k in keys if k.status == ResourceStatus.ACTIVE)
        waiting = [k for k in keys if k.status == ResourceStatus.DISABLED and k.status_reason == DOWNGRADE_REASON]

        actions = []
        for key in waiting[:self._capacity(limits.max_api_keys, active, len(waiting))]:
            if await self._set_status(self.repos.api_keys, account_id, key.key_id,
                                      ResourceStatus.DISABLED, ResourceStatus.ACTIVE, None):
                actions.append(CleanupAction(ResourceKind.API_KEYS, "reactivated", key.key_id))
        return actions

    async def _reinstate_links(self, account_id: str, limits: TierLimit) -> List[CleanupAction]:
        links = await self.repos.links.for_account(account_id)
        active = sum(1 for l in links if l.status == ResourceStatus.ACTIVE)
        waiting = [l for l in links if l.status == ResourceStatus.INACTIVE and l.status_reason == DOWNGRADE_REASON]

        actions = []
        for link in waiting[:self._capacity(limits.max_links, active, len(waiting))]:
            if await self._set_status(self.repos.links, account_id, link.link_id,
                                      ResourceStatus.INACTIVE, ResourceStatus.ACTIVE, None):
                actions.append(CleanupAction(ResourceKind.LINKS, "reactivated", link.link_id))
        return actions
