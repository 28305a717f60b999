"""
Audit trail for downgrade cleanup runs.
"""

import uuid
from typing import Any, Dict, List

from shared.logging import get_logger
from shared.store import KeyValueStore

from .models import CleanupReport


class CleanupAuditLog:
    """Persists every cleanup report and emits it as a structured log event."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.logger = get_logger("entitlements.cleanup.audit")

    def _key(self, report: CleanupReport) -> str:
        return f"audit:cleanup:{report.account_id}:{report.started_at.isoformat()}:{uuid.uuid4().hex[:8]}"

    async def record(self, report: CleanupReport) -> None:
        record = report.to_dict()
        await self.store.put(self._key(report), record)

        log = self.logger.info if report.succeeded else self.logger.warning
        log(
            "Cleanup audit record",
            account_id=report.account_id,
            tier=report.tier,
            trigger=report.trigger,
            succeeded=report.succeeded,
            action_count=len(report.actions),
            actions=record["actions"],
            failures=record["failures"]
        )

    async def history(self, account_id: str) -> List[Dict[str, Any]]:
        return [record for _, record in await self.store.scan(f"audit:cleanup:{account_id}:")]
