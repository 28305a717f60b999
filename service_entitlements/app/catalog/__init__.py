"""
Entitlement catalog package.

- policy: versioned, immutable policy snapshots (tiers, role defaults,
  endpoint permission map) loaded from defaults or YAML.
- catalog: tier lookups, effective-tier resolution for sub-accounts and
  resource quota checks.
"""

from .catalog import EffectiveTier, EntitlementCatalog, QuotaDecision, MAX_OWNERSHIP_DEPTH
from .policy import (
    DEFAULT_POLICY, PolicyProvider, PolicySnapshot, TierLimit, UNLIMITED,
    build_snapshot, load_policy_file,
)

__all__ = [
    "EffectiveTier", "EntitlementCatalog", "QuotaDecision", "MAX_OWNERSHIP_DEPTH",
    "DEFAULT_POLICY", "PolicyProvider", "PolicySnapshot", "TierLimit", "UNLIMITED",
    "build_snapshot", "load_policy_file",
]
