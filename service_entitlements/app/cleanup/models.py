"""
Cleanup report and audit record models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from shared.models import ResourceKind


@dataclass
class CleanupAction:
    """One mutation performed by a cleanup or reinstatement run."""
    resource: ResourceKind
    action: str  # deleted | disabled | deactivated | reset | reactivated
    target_id: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource.value,
            "action": self.action,
            "target_id": self.target_id,
            "detail": self.detail,
        }


@dataclass
class CleanupPartialFailure:
    """A resource class that could not be reconciled in this run."""
    resource: ResourceKind
    error_type: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"resource": self.resource.value, "error_type": self.error_type, "message": self.message}


@dataclass
class CleanupReport:
    """Audit record of one run."""
    account_id: str
    tier: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    actions: List[CleanupAction] = field(default_factory=list)
    failures: List[CleanupPartialFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "tier": self.tier,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "succeeded": self.succeeded,
            "actions": [a.to_dict() for a in self.actions],
            "failures": [f.to_dict() for f in self.failures],
        }
