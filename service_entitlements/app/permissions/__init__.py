"""
Permission resolution for accounts and sub-accounts.
"""

from .resolver import EffectivePermissionSet, PermissionResolver, clamp_to_role

__all__ = ["EffectivePermissionSet", "PermissionResolver", "clamp_to_role"]
