"""
Downgrade cleanup.

- orchestrator: the single idempotent cleanup/reinstatement entrypoint.
- audit: persisted, structured audit trail of every run.
- models: report, action and partial-failure records.
"""

from .audit import CleanupAuditLog
from .models import CleanupAction, CleanupPartialFailure, CleanupReport
from .orchestrator import DowngradeCleanupOrchestrator

__all__ = [
    "CleanupAuditLog", "CleanupAction", "CleanupPartialFailure", "CleanupReport",
    "DowngradeCleanupOrchestrator",
]
