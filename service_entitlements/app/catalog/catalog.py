"""
Entitlement catalog: tier limits, tier inheritance and resource quotas.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from shared.errors import (
    CyclicOwnershipError, DataIntegrityError, OwnershipDepthError,
    QuotaExceededError, UnknownTierError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.models import Account, ResourceKind, Tier
from shared.repositories import Repositories

from .policy import PolicyProvider, TierLimit, UNLIMITED

# Sub-accounts cannot own sub-accounts, so an ownership chain is at most one hop.
MAX_OWNERSHIP_DEPTH = 1


@dataclass(frozen=True)
class EffectiveTier:
    tier: Tier
    is_inherited: bool = False
    inherited_from_account_id: Optional[str] = None


@dataclass(frozen=True)
class QuotaDecision:
    resource: ResourceKind
    current: int
    limit: int
    tier: Tier

    @property
    def remaining(self) -> Optional[int]:
        if self.limit == UNLIMITED:
            return None
        return max(0, self.limit - self.current)


class EntitlementCatalog:
    """Resolves which tier applies to an account and what it allows."""

    def __init__(self, policy: PolicyProvider, repos: Repositories,
                 metrics: Optional[MetricsCollector] = None):
        self.policy = policy
        self.repos = repos
        self.metrics = metrics
        self.logger = get_logger("entitlements.catalog")

    def lookup_tier_limit(self, tier: Union[Tier, str]) -> TierLimit:
        """Static table lookup; a missing tier is a configuration fault."""
        name = tier.value if isinstance(tier, Tier) else tier
        limit = self.policy.current.tiers.get(name)
        if limit is None:
            self.logger.error("Tier not configured", tier=name, policy_version=self.policy.current.version)
            raise UnknownTierError(name)
        return limit

    async def resolve_effective_tier(self, account: Account) -> EffectiveTier:
        """Follow sub-account ownership to the account whose tier applies."""
        current = account
        chain = [account.id]
        visited = {account.id}
        depth = 0

        while current.is_sub_account:
            relationship = await self.repos.relationships.for_sub_account(current.id)
            if relationship is None:
                raise DataIntegrityError(
                    f"Sub-account {current.id} has no owning relationship",
                    {"account_id": current.id}
                )

            parent_id = relationship.parent_account_id
            if parent_id in visited:
                self.logger.error("Cyclic ownership detected", account_id=account.id, chain=chain + [parent_id])
                raise CyclicOwnershipError(account.id, chain + [parent_id])

            depth += 1
            if depth > MAX_OWNERSHIP_DEPTH:
                self.logger.error("Ownership chain too deep", account_id=account.id, chain=chain + [parent_id])
                raise OwnershipDepthError(account.id, chain + [parent_id])

            parent = await self.repos.accounts.get(parent_id)
            if parent is None:
                raise DataIntegrityError(
                    f"Parent account {parent_id} of sub-account {current.id} does not exist",
                    {"account_id": current.id, "parent_account_id": parent_id}
                )

            visited.add(parent_id)
            chain.append(parent_id)
            current = parent

        if current.id == account.id:
            return EffectiveTier(tier=account.tier)
        return EffectiveTier(tier=current.tier, is_inherited=True, inherited_from_account_id=current.id)

    async def effective_limit(self, account: Account) -> Tuple[EffectiveTier, TierLimit]:
        effective = await self.resolve_effective_tier(account)
        return effective, self.lookup_tier_limit(effective.tier)

    async def live_count(self, account_id: str, kind: ResourceKind) -> int:
        if kind == ResourceKind.PAGES:
            return await self.repos.pages.count(account_id)
        if kind == ResourceKind.LINKS:
            return await self.repos.links.count_active(account_id)
        if kind == ResourceKind.API_KEYS:
            return await self.repos.api_keys.count_active(account_id)
        raise ValueError(f"{kind.value} is not a counted resource")

    async def check_resource_quota(self, account_id: str, resource_kind: ResourceKind,
                                   requested_count: int = 1) -> QuotaDecision:
        """Allow creating ``requested_count`` more resources, or raise QuotaExceededError."""
        account = await self.repos.accounts.get(account_id)
        if account is None:
            raise DataIntegrityError(f"Account {account_id} does not exist", {"account_id": account_id})

        effective, limits = await self.effective_limit(account)
        limit = limits.limit_for(resource_kind)
        current = await self.live_count(account_id, resource_kind)
        decision = QuotaDecision(resource=resource_kind, current=current, limit=limit, tier=effective.tier)

        if limit != UNLIMITED and current + requested_count > limit:
            self._record_quota(resource_kind, "exceeded")
            self.logger.info(
                "Resource quota exceeded",
                account_id=account_id,
                resource=resource_kind.value,
                current=current,
                requested=requested_count,
                limit=limit,
                tier=effective.tier.value
            )
            raise QuotaExceededError(resource_kind.value, current, limit, current_tier=effective.tier.value)

        self._record_quota(resource_kind, "allowed")
        return decision

    def endpoint_allowed_for_tier(self, tier: Union[Tier, str], endpoint: str) -> bool:
        return self.lookup_tier_limit(tier).allows_endpoint(endpoint)

    def _record_quota(self, kind: ResourceKind, decision: str):
        if self.metrics:
            self.metrics.increment_counter("quota_checks_total", resource=kind.value, decision=decision)
