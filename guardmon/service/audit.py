from __future__ import annotations

import secrets
from datetime import timedelta
from typing import List, Optional

from guardmon.logging import get_logger
from guardmon.service.errors import AuditWriteFailure
from guardmon.storage.common import archive_partition_name
from guardmon.storage.models import AuditEvent, Clock, utc_now

logger = get_logger(__name__)

DEFAULT_RECENT_LIMIT = 10
SYSTEM_ACTOR = "System"


class AuditAction:
    LOGIN = "Login"
    LOGOUT = "Logout"
    ADD = "Add"
    UPDATE = "Update"
    DELETE = "Delete"
    VIOLATION = "Violation"
    ACCOMPLISHMENT = "Accomplishment"


class AuditLogger:
    """Append-only audit trail over the account store.

    ``record`` is best-effort: a failed write is logged and reported as
    ``None`` so the operation being audited still completes.
    """

    def __init__(self, store, *, clock: Clock = utc_now, retention_days: int = 365) -> None:
        self.store = store
        self._clock = clock
        self.retention_days = retention_days

    def _next_audit_id(self, moment) -> str:
        return f"AUD{moment:%Y%m%d%H%M%S}{secrets.token_hex(3).upper()}"

    def write(
        self,
        actor: Optional[str],
        action: str,
        target_type: str,
        target_name: str,
        details: str = "",
    ) -> AuditEvent:
        """Append an event, raising ``AuditWriteFailure`` when the store rejects it."""
        now = self._clock()
        event = AuditEvent(
            audit_id=self._next_audit_id(now),
            timestamp=now,
            actor=(actor or "").strip() or SYSTEM_ACTOR,
            action=action,
            target_type=target_type or "",
            target_name=target_name or "",
            details=details or "",
        )
        try:
            self.store.append_audit_event(event)
        except Exception as exc:
            raise AuditWriteFailure(
                "audit event could not be written", detail={"action": action}
            ) from exc
        return event

    def record(
        self,
        actor: Optional[str],
        action: str,
        target_type: str,
        target_name: str,
        details: str = "",
    ) -> Optional[AuditEvent]:
        try:
            return self.write(actor, action, target_type, target_name, details)
        except Exception as exc:
            cause = exc.__cause__ or exc
            logger.warning(
                "audit_write_failed",
                action=action,
                target_type=target_type,
                error=str(cause),
            )
            return None

    def recent(self, limit: Optional[int] = DEFAULT_RECENT_LIMIT) -> List[AuditEvent]:
        if not limit or limit <= 0:
            limit = DEFAULT_RECENT_LIMIT
        try:
            rows = self.store.list_audit_rows()
        except Exception as exc:
            logger.error("audit_read_failed", error=str(exc))
            return []
        events: List[tuple] = []
        skipped = 0
        for position, row in enumerate(rows):
            try:
                events.append((AuditEvent.from_row(row), position))
            except (ValueError, TypeError, AttributeError):
                skipped += 1
        if skipped:
            logger.info("audit_rows_skipped", skipped=skipped)
        # Insertion order breaks timestamp ties so the latest append comes first
        events.sort(key=lambda item: (item[0].timestamp, item[1]), reverse=True)
        return [event for event, _ in events[:limit]]

    def archive(self, retention_days: Optional[int] = None) -> int:
        days = self.retention_days if retention_days is None else retention_days
        if days < 0:
            raise ValueError("retention_days must not be negative")
        now = self._clock()
        cutoff = now - timedelta(days=days)
        partition = archive_partition_name(now)
        moved = self.store.archive_audit_events(cutoff, partition)
        logger.info(
            "audit_archived",
            moved=moved,
            partition=partition,
            cutoff=cutoff.isoformat(),
        )
        return moved
