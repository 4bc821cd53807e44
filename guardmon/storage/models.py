from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Coerce a stored timestamp (datetime or ISO string) to aware UTC."""

    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, str):
        return ensure_utc(datetime.fromisoformat(raw))
    raise ValueError(f"unsupported timestamp value: {raw!r}")


class Role(str, Enum):
    ADMIN = "Admin"
    VIEWER = "Viewer"


class AccountStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


@dataclass
class UserAccount:
    id: str
    username: str
    password_hash: str
    full_name: str
    role: Role = Role.VIEWER
    status: AccountStatus = AccountStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    failed_attempts: int = 0
    last_failed_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    # Most recent first
    password_history: List[str] = field(default_factory=list)
    force_password_change: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def profile(self) -> Dict[str, str]:
        return {
            "username": self.username,
            "full_name": self.full_name,
            "role": self.role.value,
        }


# Fields callers may change through ``update_account_fields``
ACCOUNT_MUTABLE_FIELDS = frozenset(
    {
        "username",
        "password_hash",
        "full_name",
        "role",
        "status",
        "failed_attempts",
        "last_failed_at",
        "locked_until",
        "password_history",
        "force_password_change",
    }
)


@dataclass
class SessionRecord:
    token: str
    username: str
    issued_at: datetime


@dataclass(frozen=True)
class AuditEvent:
    audit_id: str
    timestamp: datetime
    actor: str
    action: str
    target_type: str
    target_name: str
    details: str = ""

    def to_row(self) -> Dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "action": self.action,
            "target_type": self.target_type,
            "target_name": self.target_name,
            "details": self.details,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AuditEvent":
        """Build an event from a stored row.

        Raises ``ValueError`` for rows without an id or a parseable timestamp.
        """
        audit_id = row.get("audit_id")
        if not audit_id or not str(audit_id).strip():
            raise ValueError("audit row missing audit_id")
        timestamp = parse_timestamp(row.get("timestamp"))
        if timestamp is None:
            raise ValueError("audit row missing timestamp")
        return cls(
            audit_id=str(audit_id),
            timestamp=timestamp,
            actor=str(row.get("actor") or ""),
            action=str(row.get("action") or ""),
            target_type=str(row.get("target_type") or ""),
            target_name=str(row.get("target_name") or ""),
            details=str(row.get("details") or ""),
        )
