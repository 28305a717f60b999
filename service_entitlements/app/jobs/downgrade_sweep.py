"""
Scheduled downgrade sweep.

Finds parent accounts whose subscription lapsed (expired, suspended, or
cancelled with an end date in the past) but which still hold a paid tier,
usually because the billing webhook never arrived. Each one is moved to the
free tier through the same path a billing event takes, which runs cleanup.

Usage:
    python -m service_entitlements.app.jobs.downgrade_sweep
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from shared.logging import get_logger
from shared.models import Tier, utcnow
from shared.repositories import Repositories

from ..billing import SubscriptionChangeReason, SubscriptionEventHandler


@dataclass
class SweepStats:
    """Track sweep run statistics; times come from the job's clock."""
    started_at: datetime
    processed_count: int = 0
    error_count: int = 0
    accounts_scanned: int = 0
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        duration = ((self.finished_at or self.started_at) - self.started_at).total_seconds()
        return {
            "processedCount": self.processed_count,
            "errorCount": self.error_count,
            "accountsScanned": self.accounts_scanned,
            "durationSeconds": duration,
        }


class DowngradeSweepJob:
    """Catches tier downgrades that no billing event reported."""

    def __init__(self, repos: Repositories, events: SubscriptionEventHandler,
                 clock: Callable[[], datetime] = utcnow):
        self.repos = repos
        self.events = events
        self.clock = clock
        self.logger = get_logger("entitlements.jobs.downgrade_sweep")

    async def run_scheduled_cleanup(self) -> SweepStats:
        now = self.clock()
        stats = SweepStats(started_at=now)

        for account in await self.repos.accounts.all():
            stats.accounts_scanned += 1
            if account.is_sub_account or account.tier == Tier.FREE:
                continue
            if not account.subscription_lapsed(now):
                continue

            try:
                result = await self.events.notify_subscription_changed(
                    account.id, Tier.FREE, SubscriptionChangeReason.SUBSCRIPTION_LAPSED
                )
            except Exception as e:
                self.logger.error("Sweep failed for account", account_id=account.id, error=str(e), exc_info=True)
                stats.error_count += 1
                continue

            stats.processed_count += 1
            if result.report is not None and not result.report.succeeded:
                stats.error_count += 1

        stats.finished_at = self.clock()
        self.logger.info("Downgrade sweep completed", **stats.to_dict())
        return stats


async def main() -> dict:
    """Run one sweep against the configured store."""
    from access_engine.container import build_engine
    from shared.config import get_config
    from shared.logging import configure_logging

    config = get_config("entitlements", 8011)
    configure_logging("entitlements", config.log_level)
    engine = build_engine(config)
    try:
        stats = await engine.sweep.run_scheduled_cleanup()
    finally:
        await engine.close()
    return stats.to_dict()


if __name__ == "__main__":
    print(asyncio.run(main()))
