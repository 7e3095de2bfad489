"""
Audit Logger

Append-only trail of authorization decisions and role mutations.

- log() is synchronous and non-blocking: the entry lands in a bounded
  in-process ring buffer at once and is queued for forwarding
- a background worker forwards entries to the persistent store with
  bounded retries; failures are logged locally and never raised to the
  caller that triggered the audited action
- the forwarding backlog is capped at the buffer size; entries beyond it
  stay in the ring buffer only and are counted in `dropped`
- a periodic sweep drops buffered entries older than the retention window
- query() requires the caller to hold admin.audit_logs
"""
import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from rbac_core.core.exceptions import AuthorizationError, DependencyError, ValidationError
from rbac_core.core.permissions import Permission
from rbac_core.core.types import AuditAction, AuditEntry, AuditPage, AuditQuery, utcnow
from rbac_core.core.utils import bounded
from rbac_core.services.store import PersistentStore

logger = logging.getLogger(__name__)

# Structured audit mirror
audit_logger = logging.getLogger("audit")

MAX_QUERY_LIMIT = 1000
SENSITIVE_DETAIL_KEYS = ("password", "secret", "token", "key", "credential")

Authorizer = Callable[[str, str], Awaitable[bool]]


def _safe(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not details:
        return {}
    return {k: v for k, v in details.items() if k.lower() not in SENSITIVE_DETAIL_KEYS}


class AuditLogger:
    """
    Audit trail with local ring buffer and asynchronous write-through.

    Usage:
        audit = AuditLogger(store)
        await audit.start()
        audit.log(AuditAction.ROLE_ASSIGNED, "u1", {"role_id": "developer"})
        await audit.stop()
    """

    def __init__(
        self,
        store: Optional[PersistentStore] = None,
        enabled: bool = True,
        retention_days: int = 365,
        buffer_size: int = 10000,
        forward_retries: int = 3,
        retry_delay: float = 0.5,
        store_timeout: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.enabled = enabled
        self.retention_days = retention_days
        self.forward_retries = forward_retries
        self.retry_delay = retry_delay
        self.store_timeout = store_timeout
        self._clock = clock
        self._buffer: Deque[AuditEntry] = deque(maxlen=buffer_size)
        # Entries awaiting forwarding; capped like the ring buffer
        self.max_pending = buffer_size
        self._pending: Dict[str, AuditEntry] = {}
        self._backlog_full = False
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._subscribers: List[Callable[[AuditEntry], None]] = []
        self._authorizer: Optional[Authorizer] = None
        self.dropped = 0

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def bind_authorizer(self, authorizer: Authorizer) -> None:
        """Set the permission check used to gate query()."""
        self._authorizer = authorizer

    def subscribe(self, callback: Callable[[AuditEntry], None]) -> None:
        """Register a callback invoked synchronously for every new entry."""
        self._subscribers.append(callback)

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def log(
        self,
        action: str,
        user_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEntry]:
        """Record an entry. Never blocks and never raises for forwarding problems."""
        if not self.enabled:
            return None
        if action not in AuditAction.ALL:
            raise ValidationError(f"Unknown audit action '{action}'", value=action)

        entry = AuditEntry(
            action=action,
            user_id=user_id,
            details=_safe(details),
            context=dict(context or {}),
            timestamp=self._clock(),
        )
        self._buffer.append(entry)

        audit_logger.info(
            f"AUDIT: {action} user={user_id}",
            extra={"audit": entry.to_dict()},
        )

        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception as e:
                logger.warning(f"Audit subscriber failed for {entry.id}: {e}")

        if self.store is not None:
            self._enqueue(entry)

        return entry

    def _enqueue(self, entry: AuditEntry) -> None:
        if len(self._pending) >= self.max_pending:
            self._drop(entry)
            return
        if self._queue is not None:
            try:
                self._queue.put_nowait(entry)
            except asyncio.QueueFull:
                self._drop(entry)
                return
        self._pending[entry.id] = entry
        self._backlog_full = False

    def _drop(self, entry: AuditEntry) -> None:
        self.dropped += 1
        if not self._backlog_full:
            self._backlog_full = True
            logger.warning(
                f"Audit forward backlog full ({self.max_pending} entries), "
                f"{entry.id} and later entries kept locally only until it drains"
            )

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the forwarding worker; entries logged before start are queued first."""
        if self.store is None or self._worker is not None:
            return
        self._queue = asyncio.Queue(maxsize=self.max_pending)
        for entry in list(self._pending.values()):
            self._queue.put_nowait(entry)
        self._worker = asyncio.create_task(self._forward_loop())
        logger.info("Audit forwarding worker started")

    async def _forward_loop(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self.forward(entry)
            finally:
                self._queue.task_done()

    async def forward(self, entry: AuditEntry) -> bool:
        """Write one entry through to the store with bounded retries."""
        attempts = self.forward_retries + 1
        for attempt in range(attempts):
            try:
                await bounded(self.store.append_audit_entry(entry), self.store_timeout, "audit store")
                self._pending.pop(entry.id, None)
                return True
            except DependencyError as e:
                if attempt + 1 < attempts:
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
                    continue
                self._pending.pop(entry.id, None)
                self.dropped += 1
                logger.warning(
                    f"Audit entry {entry.id} ({entry.action}) not forwarded after "
                    f"{attempts} attempts, kept locally only: {e.message}"
                )
        return False

    async def flush(self, timeout: float = 5.0) -> None:
        """Wait for queued entries to be forwarded (or dropped)."""
        if self._queue is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Audit flush timed out with {self._queue.qsize()} entries queued")

    async def stop(self, timeout: float = 5.0) -> None:
        """Flush pending forwards and stop the worker."""
        if self._worker is None:
            return
        await self.flush(timeout)
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None
        logger.info("Audit forwarding worker stopped")

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Drop buffered entries older than the retention window. Returns count dropped."""
        cutoff = (now or self._clock()) - timedelta(days=self.retention_days)
        kept = [e for e in self._buffer if e.timestamp >= cutoff]
        removed = len(self._buffer) - len(kept)
        if removed:
            self._buffer = deque(kept, maxlen=self._buffer.maxlen)
            logger.info(f"Audit retention sweep dropped {removed} entries older than {cutoff.isoformat()}")
        return removed

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    @property
    def backlog(self) -> int:
        """Entries logged but not yet forwarded to the store."""
        return len(self._pending)

    def entries(self) -> List[AuditEntry]:
        """Snapshot of the local buffer, oldest first."""
        return list(self._buffer)

    async def query(self, caller_id: str, filters: AuditQuery) -> AuditPage:
        """
        Filtered, timestamp-ordered page of audit entries.

        Raises:
            AuthorizationError: caller lacks admin.audit_logs
            ValidationError: limit/offset out of range
            DependencyError: the audit store could not be queried
        """
        if self._authorizer is None or not await self._authorizer(caller_id, Permission.ADMIN_AUDIT_LOGS):
            raise AuthorizationError()

        if filters.limit < 1 or filters.limit > MAX_QUERY_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_QUERY_LIMIT}", value=filters.limit)
        if filters.offset < 0:
            raise ValidationError("offset must not be negative", value=filters.offset)

        if self.store is None:
            return filters.paginate(self._buffer)

        # Snapshot before awaiting the store; the worker may forward entries meanwhile
        pending = [e for e in list(self._pending.values()) if filters.matches(e)]

        # Read the window from the start so entries not yet forwarded can be merged in order
        window = AuditQuery(
            start_date=filters.start_date,
            end_date=filters.end_date,
            user_id=filters.user_id,
            action=filters.action,
            limit=filters.offset + filters.limit,
            offset=0,
        )
        stored = await bounded(self.store.query_audit_entries(window), self.store_timeout, "audit store")
        stored_ids = {e.id for e in stored.entries}
        pending = [e for e in pending if e.id not in stored_ids]

        merged = sorted(stored.entries + pending, key=lambda e: e.timestamp)
        return AuditPage(
            entries=merged[filters.offset:filters.offset + filters.limit],
            total=stored.total + len(pending),
        )
