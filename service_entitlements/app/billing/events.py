"""
Inbound billing events.

The payment-webhook handler (outside this engine) reports tier changes here.
A lower-ranked tier runs downgrade cleanup; a higher-ranked tier reinstates
resources disabled by an earlier downgrade.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.logging import get_logger
from shared.models import SubscriptionStatus, Tier, utcnow
from shared.repositories import Repositories

from ..cleanup import CleanupReport, DowngradeCleanupOrchestrator


class SubscriptionChangeReason(str, Enum):
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_FAILED = "payment_failed"
    PLAN_CHANGED = "plan_changed"
    SUBSCRIPTION_LAPSED = "subscription_lapsed"


class TierTransition(str, Enum):
    DOWNGRADE = "downgrade"
    UPGRADE = "upgrade"
    UNCHANGED = "unchanged"


@dataclass
class SubscriptionChangeResult:
    account_id: str
    previous_tier: Tier
    new_tier: Tier
    transition: TierTransition
    report: Optional[CleanupReport] = None

    def to_dict(self) -> dict:
        return {
            "accountId": self.account_id,
            "previousTier": self.previous_tier.value,
            "newTier": self.new_tier.value,
            "transition": self.transition.value,
            "report": self.report.to_dict() if self.report else None,
        }


# Status the account moves to when the event itself implies one.
_STATUS_FOR_REASON = {
    SubscriptionChangeReason.SUBSCRIPTION_DELETED: SubscriptionStatus.EXPIRED,
    SubscriptionChangeReason.PAYMENT_FAILED: SubscriptionStatus.SUSPENDED,
}


class SubscriptionEventHandler:
    """Applies tier changes and dispatches cleanup or reinstatement."""

    def __init__(self, repos: Repositories, orchestrator: DowngradeCleanupOrchestrator,
                 cas_retries: int = 16, clock: Callable[[], datetime] = utcnow):
        self.repos = repos
        self.orchestrator = orchestrator
        self.cas_retries = cas_retries
        self.clock = clock
        self.logger = get_logger("entitlements.billing")

    async def notify_subscription_changed(self, account_id: str, new_tier: Tier,
                                          reason: SubscriptionChangeReason,
                                          subscription_status: Optional[SubscriptionStatus] = None
                                          ) -> SubscriptionChangeResult:
        new_tier = Tier(new_tier)
        reason = SubscriptionChangeReason(reason)
        status = subscription_status or _STATUS_FOR_REASON.get(reason)

        previous_tier = await self._apply_tier(account_id, new_tier, status)

        if new_tier.rank < previous_tier.rank:
            transition = TierTransition.DOWNGRADE
        elif new_tier.rank > previous_tier.rank:
            transition = TierTransition.UPGRADE
        else:
            transition = TierTransition.UNCHANGED

        self.logger.info(
            "Subscription changed",
            account_id=account_id,
            previous_tier=previous_tier.value,
            new_tier=new_tier.value,
            reason=reason.value,
            transition=transition.value
        )

        report = None
        if transition == TierTransition.DOWNGRADE:
            report = await self.orchestrator.run_cleanup(account_id, trigger=f"billing:{reason.value}")
        elif transition == TierTransition.UPGRADE:
            report = await self.orchestrator.reinstate(account_id, trigger=f"billing:{reason.value}")

        return SubscriptionChangeResult(account_id, previous_tier, new_tier, transition, report)

    async def _apply_tier(self, account_id: str, new_tier: Tier,
                          status: Optional[SubscriptionStatus]) -> Tier:
        """Conditionally write the new tier; returns the tier it replaced."""
        for _ in range(self.cas_retries):
            loaded = await self.repos.accounts.load(account_id)
            if loaded is None:
                raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})
            account, raw = loaded
            if account.is_sub_account:
                raise ValidationError("Sub-accounts inherit their tier from the parent", {"account_id": account_id})

            changes = {"tier": new_tier, "updated_at": self.clock()}
            if status is not None:
                changes["subscription_status"] = status
            if await self.repos.accounts.replace(raw, account.model_copy(update=changes), account_id):
                return account.tier

        raise ConflictError("Account is being modified concurrently", {"account_id": account_id})
