"""
Audit Retention Job

Enforces the in-process audit retention window (AUDIT_RETENTION_DAYS):
- Drops buffered audit entries older than the window
- Records an audit_retention_sweep entry with the purge count
- Runs every AUDIT_SWEEP_INTERVAL_HOURS (daily by default)

Retention of the external audit store is that store's responsibility.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from rbac_core.core.types import AuditAction
from rbac_core.services.audit_service import AuditLogger

logger = logging.getLogger(__name__)

SWEEP_OPERATOR = "audit_retention_job"


def run_audit_retention_sweep(audit: AuditLogger, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Run one sweep.

    Returns:
        Summary dict with purge results
    """
    summary = {
        "started_at": datetime.now(timezone.utc).isoformat(),
        "retention_days": audit.retention_days,
        "entries_purged": 0,
    }

    purged = audit.sweep(now)
    summary["entries_purged"] = purged

    if purged:
        audit.log(
            AuditAction.AUDIT_RETENTION_SWEEP,
            None,
            {
                "entries_purged": purged,
                "retention_days": audit.retention_days,
                "operator_id": SWEEP_OPERATOR,
            },
        )
    else:
        logger.debug("[AuditRetention] No expired audit entries to purge")

    return summary


class AuditRetentionJob:
    """Periodic background sweep of the audit buffer."""

    def __init__(self, audit: AuditLogger, interval_hours: float = 24):
        self.audit = audit
        self.interval_hours = interval_hours
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start background sweep task."""
        if self._task is not None and not self._task.done():
            return

        async def sweep_loop():
            while True:
                await asyncio.sleep(self.interval_hours * 3600)
                try:
                    run_audit_retention_sweep(self.audit)
                except Exception as e:
                    logger.error(f"[AuditRetention] Sweep failed: {e}")

        self._task = asyncio.create_task(sweep_loop())
        logger.info(f"[AuditRetention] Sweep task started (interval: {self.interval_hours} h)")

    async def stop(self) -> None:
        """Stop background sweep task."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("[AuditRetention] Sweep task stopped")
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
