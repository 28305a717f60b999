"""
Permission resolution.

Effective permissions are ``role defaults ∪ grants \\ revocations``; for a
sub-account the result is then clamped to the content capability mask, so
grants recorded on a sub-account can never reach account, billing, user or
sub-account management.
"""

from dataclasses import dataclass
from typing import FrozenSet, Optional

from shared.logging import get_logger
from shared.models import (
    Account, CONTENT_CAPABILITY_MASK, PermissionId, Role, Tier,
)

from ..catalog import EntitlementCatalog, PolicyProvider


@dataclass(frozen=True)
class EffectivePermissionSet:
    """Derived permissions of one account. Never persisted."""
    account_id: str
    permissions: FrozenSet[PermissionId]
    effective_tier: Tier
    parent_account_id: Optional[str] = None
    clamped: bool = False

    def __contains__(self, permission: PermissionId) -> bool:
        return permission in self.permissions


def clamp_to_role(role: Role, permissions: FrozenSet[PermissionId]) -> FrozenSet[PermissionId]:
    """Apply the fixed sub-account mask. Other roles pass through."""
    if role == Role.SUB_ACCOUNT:
        return permissions & CONTENT_CAPABILITY_MASK
    return permissions


class PermissionResolver:
    """Maps an account to its effective permission set."""

    def __init__(self, policy: PolicyProvider, catalog: EntitlementCatalog):
        self.policy = policy
        self.catalog = catalog
        self.logger = get_logger("entitlements.permissions")

    def base_permissions(self, account: Account) -> FrozenSet[PermissionId]:
        defaults = self.policy.current.role_defaults.get(account.role, frozenset())
        return (defaults | frozenset(account.granted_permissions)) - frozenset(account.revoked_permissions)

    async def resolve(self, account: Account) -> EffectivePermissionSet:
        permissions = self.base_permissions(account)
        parent_account_id = None
        clamped = False

        # Tier comes from the parent; permissions never do.
        effective = await self.catalog.resolve_effective_tier(account)

        if account.is_sub_account:
            parent_account_id = effective.inherited_from_account_id
            dropped = permissions - CONTENT_CAPABILITY_MASK
            if dropped:
                self.logger.debug(
                    "Sub-account permissions clamped",
                    account_id=account.id,
                    dropped=sorted(p.value for p in dropped)
                )
            permissions = permissions & CONTENT_CAPABILITY_MASK
            clamped = True

        return EffectivePermissionSet(
            account_id=account.id,
            permissions=permissions,
            effective_tier=effective.tier,
            parent_account_id=parent_account_id,
            clamped=clamped,
        )

    @staticmethod
    def authorize_endpoint(permissions, required: Optional[PermissionId]) -> bool:
        """Pure membership check. ``None`` (an unmapped endpoint) is always denied."""
        if required is None:
            return False
        if isinstance(permissions, EffectivePermissionSet):
            permissions = permissions.permissions
        return required in permissions

    def required_permission(self, endpoint: str) -> Optional[PermissionId]:
        """Permission configured for ``"METHOD /path/template"``, or None if unmapped."""
        return self.policy.current.endpoint_permissions.get(endpoint)
