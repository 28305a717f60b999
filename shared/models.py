"""
Domain records shared by every Access Engine service.

Persisted records are pydantic models so they round-trip through the
key-value store as JSON. Derived values (principal context) are dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Account roles."""
    STANDARD = "standard"
    AGENCY_ADMIN = "agency_admin"
    SUB_ACCOUNT = "sub_account"


class Tier(str, Enum):
    """Subscription tiers, lowest first."""
    FREE = "free"
    STARTER = "starter"
    BUSINESS = "business"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return list(Tier).index(self)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PackType(str, Enum):
    """Sub-account packs an account can hold."""
    NONE = "none"
    AGENCY_5 = "agency_5"
    AGENCY_25 = "agency_25"
    AGENCY_UNLIMITED = "agency_unlimited"

    @property
    def default_limit(self) -> int:
        return {
            PackType.NONE: 0,
            PackType.AGENCY_5: 5,
            PackType.AGENCY_25: 25,
            PackType.AGENCY_UNLIMITED: -1,
        }[self]


class PermissionId(str, Enum):
    """Every permission the engine knows about."""
    READ_PROFILE = "read:profile"
    MANAGE_PROFILE = "manage:profile"
    READ_LINKS = "read:links"
    MANAGE_LINKS = "manage:links"
    READ_PAGES = "read:pages"
    MANAGE_PAGES = "manage:pages"
    MANAGE_APPEARANCE = "manage:appearance"
    READ_ANALYTICS = "read:analytics"
    MANAGE_API_KEYS = "manage:api_keys"
    MANAGE_BILLING = "manage:billing"
    MANAGE_AUTH = "manage:auth"
    MANAGE_USERS = "manage:users"
    MANAGE_SUB_ACCOUNTS = "manage:sub_accounts"


# Sub-accounts are clamped to this set regardless of grants or parent role.
CONTENT_CAPABILITY_MASK: FrozenSet[PermissionId] = frozenset({
    PermissionId.READ_PROFILE,
    PermissionId.MANAGE_PROFILE,
    PermissionId.READ_LINKS,
    PermissionId.MANAGE_LINKS,
    PermissionId.READ_PAGES,
    PermissionId.MANAGE_PAGES,
    PermissionId.MANAGE_APPEARANCE,
    PermissionId.READ_ANALYTICS,
})


def parse_permissions(values: Iterable[str]) -> FrozenSet[PermissionId]:
    """Convert raw permission strings, rejecting anything unknown."""
    parsed = set()
    unknown = []
    for value in values:
        try:
            parsed.add(PermissionId(value))
        except ValueError:
            unknown.append(value)
    if unknown:
        raise ValidationError("Unknown permission", details={"unknown": sorted(unknown)})
    return frozenset(parsed)


class ResourceKind(str, Enum):
    """Tier-gated resource classes."""
    PAGES = "pages"
    LINKS = "links"
    API_KEYS = "api_keys"
    THEMES = "themes"
    VIDEO_BACKGROUNDS = "video_backgrounds"


class Account(BaseModel):
    """Identity and tier state."""

    id: str
    email: Optional[str] = None
    password_hash: Optional[str] = None
    role: Role = Role.STANDARD
    is_sub_account: bool = False
    auth_disabled: bool = False
    tier: Tier = Tier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    subscription_ends_at: Optional[datetime] = None
    pack_type: PackType = PackType.NONE
    pack_limit: int = 0
    pack_expires_at: Optional[datetime] = None
    granted_permissions: Set[PermissionId] = Field(default_factory=set)
    revoked_permissions: Set[PermissionId] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    # Bumped by writes that must invalidate concurrent conditional writes on this record.
    revision: int = 0

    @model_validator(mode="after")
    def _check_invariants(self) -> "Account":
        if self.is_sub_account:
            if not self.auth_disabled or self.role != Role.SUB_ACCOUNT:
                raise ValidationError(
                    "Sub-accounts must have auth disabled and the sub_account role",
                    details={"account_id": self.id}
                )
            if self.pack_type != PackType.NONE:
                raise ValidationError("Sub-accounts cannot hold a pack", details={"account_id": self.id})
        elif self.role == Role.SUB_ACCOUNT:
            raise ValidationError("The sub_account role requires a sub-account", details={"account_id": self.id})
        return self

    def subscription_lapsed(self, now: datetime) -> bool:
        if self.subscription_status in (SubscriptionStatus.EXPIRED, SubscriptionStatus.SUSPENDED):
            return True
        if self.subscription_status == SubscriptionStatus.CANCELLED:
            return self.subscription_ends_at is None or self.subscription_ends_at <= now
        return False


class RelationshipStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class SubAccountRelationship(BaseModel):
    """Ownership edge between a parent and one of its sub-accounts."""

    parent_account_id: str
    sub_account_id: str
    type: str = "client"
    status: RelationshipStatus = RelationshipStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)


class RefreshToken(BaseModel):
    """Rotation record for an opaque refresh token."""

    token_value: str
    account_id: str
    chain_id: str
    issued_at: datetime
    expires_at: datetime
    is_valid: bool = True
    invalidated_reason: Optional[str] = None  # rotated | logout | expired
    invalidated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ResourceStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    INACTIVE = "inactive"


DOWNGRADE_REASON = "tier downgrade"


class ApiKey(BaseModel):
    key_id: str
    account_id: str
    name: str = "default"
    key_prefix: str
    key_hash: str
    created_at: datetime = Field(default_factory=utcnow)
    status: ResourceStatus = ResourceStatus.ACTIVE
    status_reason: Optional[str] = None
    status_changed_at: Optional[datetime] = None


class Page(BaseModel):
    page_id: str
    account_id: str
    title: str = ""
    is_default: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Link(BaseModel):
    link_id: str
    account_id: str
    url: str = ""
    display_order: int = 0
    status: ResourceStatus = ResourceStatus.ACTIVE
    status_reason: Optional[str] = None
    status_changed_at: Optional[datetime] = None


BASELINE_THEME = "default"
BASELINE_BACKGROUND = "solid"


class Appearance(BaseModel):
    account_id: str
    theme: str = BASELINE_THEME
    background_type: str = BASELINE_BACKGROUND  # solid | gradient | image | video
    background_color: Optional[str] = None
    gradient: Optional[str] = None
    video_url: Optional[str] = None


class AuthMethod(str, Enum):
    SESSION = "session"
    API_KEY = "api_key"


@dataclass
class PrincipalContext:
    """Resolved identity handed to downstream handlers."""
    account_id: str
    role: Role
    permissions: FrozenSet[PermissionId]
    auth_method: AuthMethod = AuthMethod.SESSION
    parent_account_id: Optional[str] = None
    effective_tier: Optional[Tier] = None
    api_key_id: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    rate_limit: Optional[dict] = None
    token_id: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "accountId": self.account_id,
            "role": self.role.value,
            "permissions": sorted(p.value for p in self.permissions),
            "authMethod": self.auth_method.value,
            "parentAccountId": self.parent_account_id,
            "effectiveTier": self.effective_tier.value if self.effective_tier else None,
            "apiKeyId": self.api_key_id,
            "rateLimit": self.rate_limit,
        }


class CamelModel(BaseModel):
    """Request body accepting camelCase (or snake_case) field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
