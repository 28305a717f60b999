"""
Scheduled jobs for the Entitlements Service.
"""

from .downgrade_sweep import DowngradeSweepJob, SweepStats

__all__ = ["DowngradeSweepJob", "SweepStats"]
