"""
Fixed-window rate limiter for API-key callers.

One counter record per account, ``{"window_start": <epoch seconds>, "count": n}``,
stored under ``ratelimit:{account_id}``. A record from an earlier window counts
as zero. Every increment is a conditional write retried on contention, so
concurrent requests never lose an increment.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from shared.errors import ConflictError, NotFoundError, RateLimitError, TierRestrictedError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.models import Account, Tier, utcnow
from shared.store import KeyValueStore

from service_entitlements.app.catalog import UNLIMITED, EntitlementCatalog


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of an allowed request."""
    limit: int
    remaining: Optional[int]
    reset_at: Optional[datetime]
    used: int
    tier: Tier

    @property
    def unmetered(self) -> bool:
        return self.limit == UNLIMITED

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "used": self.used,
            "resetAt": self.reset_at.isoformat() if self.reset_at else None,
            "tier": self.tier.value,
        }


class FixedWindowRateLimiter:
    """Hourly request budget per account, sized by the effective tier."""

    def __init__(self, store: KeyValueStore, catalog: EntitlementCatalog, window_seconds: int = 3600,
                 cas_retries: int = 16, clock: Callable[[], datetime] = utcnow,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.catalog = catalog
        self.window_seconds = window_seconds
        self.cas_retries = cas_retries
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("gateway.rate_limiter")

    def _make_key(self, account_id: str) -> str:
        return f"ratelimit:{account_id}"

    def _window_start(self, now: datetime) -> int:
        epoch = int(now.timestamp())
        return epoch - (epoch % self.window_seconds)

    def _window_end(self, window_start: int) -> datetime:
        return datetime.fromtimestamp(window_start + self.window_seconds, tz=timezone.utc)

    async def _account(self, account_id: str) -> Account:
        account = await self.catalog.repos.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})
        return account

    async def _tier_and_limit(self, account_id: str):
        effective, limits = await self.catalog.effective_limit(await self._account(account_id))
        return effective.tier, limits.api_requests_per_hour

    async def check_and_increment(self, account_id: str) -> RateLimitDecision:
        """Count one request, or raise RateLimitError once the window is spent."""
        tier, limit = await self._tier_and_limit(account_id)
        if limit == UNLIMITED:
            return RateLimitDecision(limit=UNLIMITED, remaining=None, reset_at=None, used=0, tier=tier)
        if limit == 0:
            raise TierRestrictedError(
                "API access is not included in your plan", tier.value, code="API_ACCESS_NOT_IN_TIER"
            )

        key = self._make_key(account_id)
        for _ in range(self.cas_retries):
            now = self.clock()
            window_start = self._window_start(now)
            reset_at = self._window_end(window_start)

            current = await self.store.get(key)
            count = current["count"] if current and current.get("window_start") == window_start else 0

            if count >= limit:
                retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
                if self.metrics:
                    self.metrics.increment_counter("rate_limit_rejections_total", tier=tier.value)
                self.logger.warning(
                    "Rate limit exceeded",
                    account_id=account_id,
                    tier=tier.value,
                    current_count=count,
                    limit=limit,
                    retry_after=retry_after
                )
                raise RateLimitError(retry_after, limit)

            updated = {"window_start": window_start, "count": count + 1}
            if await self.store.compare_and_set(key, current, updated):
                return RateLimitDecision(
                    limit=limit, remaining=limit - count - 1, reset_at=reset_at, used=count + 1, tier=tier
                )

        raise ConflictError("Rate limit counter is under heavy contention", {"account_id": account_id})

    async def check_endpoint_allowed(self, account_id: str, endpoint: str) -> bool:
        tier, _ = await self._tier_and_limit(account_id)
        return self.catalog.endpoint_allowed_for_tier(tier, endpoint)

    async def get_status(self, account_id: str) -> RateLimitDecision:
        """Current window usage without counting a request."""
        tier, limit = await self._tier_and_limit(account_id)
        if limit == UNLIMITED:
            return RateLimitDecision(limit=UNLIMITED, remaining=None, reset_at=None, used=0, tier=tier)

        now = self.clock()
        window_start = self._window_start(now)
        current = await self.store.get(self._make_key(account_id))
        used = current["count"] if current and current.get("window_start") == window_start else 0
        return RateLimitDecision(
            limit=limit,
            remaining=max(0, limit - used),
            reset_at=self._window_end(window_start),
            used=used,
            tier=tier
        )

    async def reset(self, account_id: str) -> None:
        await self.store.delete(self._make_key(account_id))
        self.logger.info("Rate limit counter reset", account_id=account_id)
