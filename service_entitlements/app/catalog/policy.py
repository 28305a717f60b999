"""
Access policy: tier limits, role defaults and the endpoint permission map.

A policy is loaded once into an immutable, versioned ``PolicySnapshot`` and
injected into the resolver and the catalog. ``PolicyProvider.reload`` swaps in
a new snapshot; existing snapshots are never mutated.
"""

import fnmatch
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Set

import yaml
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.models import PermissionId, ResourceKind, Role

UNLIMITED = -1


class TierLimit(BaseModel):
    """Entitlements of one tier. ``-1`` means unlimited."""

    model_config = ConfigDict(frozen=True)

    max_pages: int
    max_links: int
    max_api_keys: int
    analytics_retention_days: int
    custom_themes_allowed: bool
    video_background_allowed: bool
    api_requests_per_hour: int
    allowed_endpoints: FrozenSet[str] = frozenset()

    def limit_for(self, kind: ResourceKind) -> int:
        if kind == ResourceKind.PAGES:
            return self.max_pages
        if kind == ResourceKind.LINKS:
            return self.max_links
        if kind == ResourceKind.API_KEYS:
            return self.max_api_keys
        raise ValueError(f"{kind.value} is not a counted resource")

    def allows_endpoint(self, endpoint: str) -> bool:
        return any(fnmatch.fnmatchcase(endpoint, pattern) for pattern in self.allowed_endpoints)


class PolicyDocument(BaseModel):
    """Raw policy as written in YAML."""

    tiers: Dict[str, TierLimit]
    role_defaults: Dict[Role, Set[PermissionId]]
    endpoint_permissions: Dict[str, PermissionId]


_CONTENT_READ = ["read:profile", "read:links", "read:pages"]
_CONTENT = _CONTENT_READ + ["manage:profile", "manage:links", "manage:pages", "manage:appearance", "read:analytics"]
_ACCOUNT = ["manage:api_keys", "manage:billing", "manage:auth"]

DEFAULT_POLICY: Dict[str, Any] = {
    "tiers": {
        "free": {
            "max_pages": 1, "max_links": 10, "max_api_keys": 0,
            "analytics_retention_days": 7,
            "custom_themes_allowed": False, "video_background_allowed": False,
            "api_requests_per_hour": 0, "allowed_endpoints": [],
        },
        "starter": {
            "max_pages": 3, "max_links": 25, "max_api_keys": 1,
            "analytics_retention_days": 30,
            "custom_themes_allowed": True, "video_background_allowed": False,
            "api_requests_per_hour": 100,
            "allowed_endpoints": [
                "GET /api/v1/profile", "GET /api/v1/links", "GET /api/v1/pages",
                "GET /api/v1/whoami", "GET /api/v1/rate-limit",
            ],
        },
        "business": {
            "max_pages": 10, "max_links": 100, "max_api_keys": 3,
            "analytics_retention_days": 90,
            "custom_themes_allowed": True, "video_background_allowed": True,
            "api_requests_per_hour": 1000,
            "allowed_endpoints": [
                "GET /api/v1/*", "POST /api/v1/links", "POST /api/v1/pages", "PUT /api/v1/profile",
            ],
        },
        "premium": {
            "max_pages": 25, "max_links": UNLIMITED, "max_api_keys": 10,
            "analytics_retention_days": 365,
            "custom_themes_allowed": True, "video_background_allowed": True,
            "api_requests_per_hour": 5000,
            "allowed_endpoints": ["* /api/v1/*"],
        },
        "enterprise": {
            "max_pages": UNLIMITED, "max_links": UNLIMITED, "max_api_keys": UNLIMITED,
            "analytics_retention_days": UNLIMITED,
            "custom_themes_allowed": True, "video_background_allowed": True,
            "api_requests_per_hour": 20000,
            "allowed_endpoints": ["*"],
        },
    },
    "role_defaults": {
        "standard": _CONTENT + _ACCOUNT,
        "agency_admin": _CONTENT + _ACCOUNT + ["manage:users", "manage:sub_accounts"],
        "sub_account": _CONTENT,
    },
    "endpoint_permissions": {
        "GET /api/v1/profile": "read:profile",
        "PUT /api/v1/profile": "manage:profile",
        "GET /api/v1/links": "read:links",
        "POST /api/v1/links": "manage:links",
        "GET /api/v1/pages": "read:pages",
        "POST /api/v1/pages": "manage:pages",
        "PUT /api/v1/appearance": "manage:appearance",
        "GET /api/v1/analytics": "read:analytics",
        "GET /api/v1/whoami": "read:profile",
        "GET /api/v1/rate-limit": "read:profile",
        "POST /api/v1/billing/checkout": "manage:billing",
        "POST /api/v1/billing/portal": "manage:billing",
        "GET /entitlements/tier": "read:profile",
        "POST /entitlements/quota/check": "read:profile",
        "GET /auth/api-keys": "manage:api_keys",
        "POST /auth/api-keys": "manage:api_keys",
        "DELETE /auth/api-keys/{key_id}": "manage:api_keys",
        "GET /accounts/sub-accounts": "manage:sub_accounts",
        "POST /accounts/sub-accounts": "manage:sub_accounts",
        "DELETE /accounts/sub-accounts/{sub_account_id}": "manage:sub_accounts",
    },
}


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable policy version."""
    version: int
    tiers: Mapping[str, TierLimit]
    role_defaults: Mapping[Role, FrozenSet[PermissionId]]
    endpoint_permissions: Mapping[str, PermissionId]
    source: str = "defaults"
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def build_snapshot(document: Mapping[str, Any], version: int, source: str) -> PolicySnapshot:
    """Validate a raw policy document and freeze it."""
    try:
        parsed = PolicyDocument.model_validate(document)
    except PydanticValidationError as e:
        raise ConfigurationError(
            "Invalid access policy",
            {"source": source, "errors": e.errors(include_url=False)}
        ) from e

    missing_roles = set(Role) - set(parsed.role_defaults)
    if missing_roles:
        raise ConfigurationError(
            "Access policy is missing role defaults",
            {"source": source, "roles": sorted(r.value for r in missing_roles)}
        )

    return PolicySnapshot(
        version=version,
        tiers=MappingProxyType(dict(parsed.tiers)),
        role_defaults=MappingProxyType({role: frozenset(perms) for role, perms in parsed.role_defaults.items()}),
        endpoint_permissions=MappingProxyType(dict(parsed.endpoint_permissions)),
        source=source,
    )


def load_policy_file(path: str) -> Dict[str, Any]:
    """Read a YAML policy document."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError("Unable to read access policy", {"path": path, "error": str(e)}) from e

    if not isinstance(document, dict):
        raise ConfigurationError("Access policy must be a mapping", {"path": path})
    return document


class PolicyProvider:
    """Holds the current policy snapshot and performs versioned reloads."""

    def __init__(self, policy_file: Optional[str] = None):
        self.logger = get_logger("entitlements.policy")
        self.policy_file = policy_file
        self._reload_lock = threading.Lock()
        self._snapshot = self._build(1, policy_file)

    @property
    def current(self) -> PolicySnapshot:
        return self._snapshot

    def _build(self, version: int, policy_file: Optional[str]) -> PolicySnapshot:
        if policy_file:
            return build_snapshot(load_policy_file(policy_file), version, policy_file)
        return build_snapshot(DEFAULT_POLICY, version, "defaults")

    def reload(self, policy_file: Optional[str] = None) -> PolicySnapshot:
        """Load a new policy version; the previous snapshot stays valid for in-flight readers."""
        with self._reload_lock:
            source = policy_file or self.policy_file
            snapshot = self._build(self._snapshot.version + 1, source)
            self.policy_file = source
            self._snapshot = snapshot

        self.logger.info(
            "Access policy reloaded",
            version=snapshot.version,
            source=snapshot.source,
            tiers=sorted(snapshot.tiers)
        )
        return snapshot
